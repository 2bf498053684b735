"""Configuration shared by the proxy, writer and downsampler.

Durations are :class:`datetime.timedelta` values.  They are read from
strings such as ``"90d"``, ``"2h"`` or ``"1h30m"``.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from fractions import Fraction
from typing import Any

__all__ = [
    "ConfigError",
    "CHConfig",
    "ColumnConfig",
    "SchemaConfig",
    "TierConfig",
    "QuerySegment",
    "DownsamplingConfig",
    "parse_duration",
    "format_duration",
]

# The raw segment reaches this far past a tier's compact_after boundary,
# covering the gap before a materialized view refresh has produced data.
RAW_OVERLAP = timedelta(hours=2)


class ConfigError(ValueError):
    """Raised for malformed or inconsistent configuration."""


_DAYS_RE = re.compile(r"[+-]?[0-9]+d")
_COMPONENT_RE = re.compile(r"([0-9]*(?:\.[0-9]*)?)([^0-9.]+)")
_UNIT_MICROS = {
    "ns": Fraction(1, 1000),
    "us": Fraction(1),
    "\u00b5s": Fraction(1),
    "\u03bcs": Fraction(1),
    "ms": Fraction(1000),
    "s": Fraction(1_000_000),
    "m": Fraction(60_000_000),
    "h": Fraction(3_600_000_000),
}


def _parse_go_duration(text: str) -> timedelta:
    """Parse a duration made of number-unit pairs such as ``"1h30m"``."""
    rest = text
    negative = False
    if rest[:1] in ("+", "-"):
        negative = rest[0] == "-"
        rest = rest[1:]
    if rest == "0":
        return timedelta(0)
    if not rest:
        raise ConfigError(f"invalid duration {text!r}")

    total = Fraction(0)
    pos = 0
    while pos < len(rest):
        match = _COMPONENT_RE.match(rest, pos)
        if match is None:
            raise ConfigError(f"invalid duration {text!r}")
        number, unit = match.groups()
        if number in ("", "."):
            raise ConfigError(f"invalid duration {text!r}")
        if unit not in _UNIT_MICROS:
            raise ConfigError(f"invalid duration {text!r}: unknown unit {unit!r}")
        whole, _, frac = number.partition(".")
        amount = Fraction(int(whole or "0"))
        if frac:
            amount += Fraction(int(frac), 10 ** len(frac))
        total += amount * _UNIT_MICROS[unit]
        pos = match.end()

    micros = round(-total if negative else total)
    try:
        return timedelta(microseconds=micros)
    except OverflowError as exc:
        raise ConfigError(f"invalid duration {text!r}: out of range") from exc


def parse_duration(text: str) -> timedelta:
    """Parse ``"90d"`` style day counts as well as ``"2h"``, ``"5m"``, ``"1h30m"``."""
    if not isinstance(text, str):
        raise ConfigError(f"invalid duration {text!r}: expected a string")
    if len(text) > 1 and _DAYS_RE.fullmatch(text):
        return timedelta(days=int(text[:-1]))
    return _parse_go_duration(text)


def _fixed(amount: int, scale: int) -> str:
    whole, frac = divmod(amount, scale)
    if not frac:
        return str(whole)
    digits = str(frac).rjust(len(str(scale)) - 1, "0").rstrip("0")
    return f"{whole}.{digits}"


def _go_duration_string(value: timedelta) -> str:
    micros = value // timedelta(microseconds=1)
    if micros == 0:
        return "0s"
    sign = "-" if micros < 0 else ""
    micros = abs(micros)
    if micros < 1000:
        return f"{sign}{micros}\u00b5s"
    if micros < 1_000_000:
        return f"{sign}{_fixed(micros, 1000)}ms"
    hours, rest = divmod(micros, 3_600_000_000)
    minutes, rest = divmod(rest, 60_000_000)
    seconds = _fixed(rest, 1_000_000)
    if hours:
        return f"{sign}{hours}h{minutes}m{seconds}s"
    if minutes:
        return f"{sign}{minutes}m{seconds}s"
    return f"{sign}{seconds}s"


def format_duration(value: timedelta) -> str:
    """Format a duration: whole-day counts as ``"2d"``, others as ``"5h0m0s"``."""
    hours = value.total_seconds() / 3600
    if hours >= 24 and int(hours) % 24 == 0:
        return f"{int(hours) // 24}d"
    return _go_duration_string(value)


def _as_mapping(data: Any, what: str) -> Mapping:
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"{what}: expected a mapping, got {type(data).__name__}")
    return data


def _as_str(data: Mapping, key: str, default: str = "") -> str:
    value = data.get(key)
    if value is None:
        return default
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    raise ConfigError(f"{key}: expected a string, got {type(value).__name__}")


def _as_int(data: Mapping, key: str, default: int = 0) -> int:
    value = data.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key}: expected an integer, got {value!r}")
    return value


def _as_bool(data: Mapping, key: str, default: bool = False) -> bool:
    value = data.get(key)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"{key}: expected a boolean, got {value!r}")
    return value


def _as_duration(data: Mapping, key: str) -> timedelta:
    value = data.get(key)
    if value is None:
        return timedelta(0)
    if isinstance(value, timedelta):
        return value
    if isinstance(value, str):
        return parse_duration(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return parse_duration(str(value))
    raise ConfigError(f"{key}: invalid duration {value!r}")


@dataclass
class CHConfig:
    """ClickHouse connection settings."""

    http_addr: str = ""
    native_addr: str = ""
    database: str = ""
    user: str = ""
    password: str = ""

    @classmethod
    def from_mapping(cls, data: Any) -> "CHConfig":
        data = _as_mapping(data, "clickhouse")
        return cls(
            http_addr=_as_str(data, "http_addr"),
            native_addr=_as_str(data, "native_addr"),
            database=_as_str(data, "database"),
            user=_as_str(data, "user"),
            password=_as_str(data, "password"),
        )


@dataclass
class ColumnConfig:
    """Column names of the samples and time_series tables."""

    metric_name: str = ""
    timestamp: str = ""
    value: str = ""
    fingerprint: str = ""
    labels: str = ""

    @classmethod
    def from_mapping(cls, data: Any) -> "ColumnConfig":
        data = _as_mapping(data, "columns")
        return cls(
            metric_name=_as_str(data, "metric_name"),
            timestamp=_as_str(data, "timestamp"),
            value=_as_str(data, "value"),
            fingerprint=_as_str(data, "fingerprint"),
            labels=_as_str(data, "labels"),
        )


@dataclass
class SchemaConfig:
    """Table layout of the metric store."""

    samples_table: str = ""
    time_series_table: str = ""
    columns: ColumnConfig = field(default_factory=ColumnConfig)
    labels_type: str = ""

    @classmethod
    def from_mapping(cls, data: Any) -> "SchemaConfig":
        data = _as_mapping(data, "schema")
        return cls(
            samples_table=_as_str(data, "samples_table"),
            time_series_table=_as_str(data, "time_series_table"),
            columns=ColumnConfig.from_mapping(data.get("columns")),
            labels_type=_as_str(data, "labels_type"),
        )


@dataclass
class TierConfig:
    """One downsampling tier."""

    name: str = ""
    resolution: timedelta = timedelta(0)
    table: str = ""
    compact_after: timedelta = timedelta(0)
    retention: timedelta = timedelta(0)
    min_step: timedelta = timedelta(0)

    @classmethod
    def from_mapping(cls, data: Any) -> "TierConfig":
        data = _as_mapping(data, "tier")
        return cls(
            name=_as_str(data, "name"),
            resolution=_as_duration(data, "resolution"),
            table=_as_str(data, "table"),
            compact_after=_as_duration(data, "compact_after"),
            retention=_as_duration(data, "retention"),
            min_step=_as_duration(data, "min_step"),
        )


@dataclass
class QuerySegment:
    """A time range read from one source: raw samples or a tier table."""

    source: str
    table: str
    is_raw: bool
    start: datetime
    end: datetime
    tier: TierConfig | None = None


@dataclass
class DownsamplingConfig:
    """Downsampling tiers, from finest to coarsest."""

    enabled: bool = False
    raw_retention: timedelta = timedelta(0)
    tiers: list[TierConfig] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data: Any) -> "DownsamplingConfig":
        data = _as_mapping(data, "downsampling")
        raw_tiers = data.get("tiers")
        if raw_tiers is None:
            raw_tiers = []
        if not isinstance(raw_tiers, list):
            raise ConfigError("tiers: expected a list")
        return cls(
            enabled=_as_bool(data, "enabled"),
            raw_retention=_as_duration(data, "raw_retention"),
            tiers=[TierConfig.from_mapping(item) for item in raw_tiers],
        )

    def validate(self) -> None:
        """Raise :class:`ConfigError` if the tiers are inconsistent."""
        if not self.enabled:
            return
        if not self.tiers:
            raise ConfigError("downsampling enabled but no tiers defined")
        first = self.tiers[0]
        if self.raw_retention <= first.compact_after:
            raise ConfigError(
                f"raw_retention ({format_duration(self.raw_retention)}) must be > "
                f"tiers[0].compact_after ({format_duration(first.compact_after)}): "
                "raw data would be deleted before MV can process it"
            )
        for index, (prev, tier) in enumerate(zip(self.tiers, self.tiers[1:]), start=1):
            if tier.compact_after <= prev.compact_after:
                raise ConfigError(
                    f"tier[{index}].compact_after ({format_duration(tier.compact_after)}) "
                    f"must be > tier[{index - 1}].compact_after "
                    f"({format_duration(prev.compact_after)})"
                )
            if tier.min_step <= prev.min_step:
                raise ConfigError(
                    f"tier[{index}].min_step ({format_duration(tier.min_step)}) "
                    f"must be > tier[{index - 1}].min_step "
                    f"({format_duration(prev.min_step)})"
                )

    def select_tier(self, step: timedelta) -> TierConfig | None:
        """Return the coarsest tier whose min_step the step reaches, or None for raw."""
        if not self.enabled:
            return None
        selected = None
        for tier in self.tiers:
            if step >= tier.min_step:
                selected = tier
        return selected

    def query_segments(
        self,
        query_start: datetime,
        query_end: datetime,
        selected_tier: TierConfig | None,
        now: datetime | None = None,
    ) -> list[QuerySegment]:
        """Split a query range into tier segments followed by a raw tail."""
        if not self.enabled or selected_tier is None:
            return [
                QuerySegment(
                    source="raw",
                    table="samples",
                    is_raw=True,
                    start=query_start,
                    end=query_end,
                )
            ]

        if now is None:
            now = datetime.now(query_start.tzinfo)

        boundaries = [now - tier.compact_after - RAW_OVERLAP for tier in self.tiers]
        segments: list[QuerySegment] = []
        seg_start = query_start

        for tier, boundary in reversed(list(zip(self.tiers, boundaries))):
            if seg_start >= boundary or seg_start >= query_end:
                continue
            seg_end = min(boundary, query_end)
            if tier.resolution <= selected_tier.resolution:
                segments.append(
                    QuerySegment(
                        source=tier.name,
                        table=tier.table,
                        is_raw=False,
                        tier=tier,
                        start=seg_start,
                        end=seg_end,
                    )
                )
            seg_start = seg_end

        if seg_start < query_end:
            segments.append(
                QuerySegment(
                    source="raw",
                    table="samples",
                    is_raw=True,
                    start=seg_start,
                    end=query_end,
                )
            )
        return segments