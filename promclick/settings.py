"""Configuration files of the proxy, writer and downsampler, with defaults."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

from promclick.config import (
    CHConfig,
    ConfigError,
    DownsamplingConfig,
    SchemaConfig,
    _as_bool,
    _as_int,
    _as_mapping,
    _as_str,
    _parse_go_duration,
)

__all__ = [
    "CacheConfig",
    "LabelsConfig",
    "CORSConfig",
    "ProxyConfig",
    "DownsamplerConfig",
    "WriteSettings",
    "WriterConfig",
    "load",
    "load_downsampler",
    "load_writer",
]

_CLICKHOUSE_DEFAULTS: dict[str, Any] = {
    "http_addr": "http://localhost:8123",
    "database": "metrics",
    "user": "default",
}

_SCHEMA_DEFAULTS: dict[str, Any] = {
    "samples_table": "samples",
    "time_series_table": "time_series",
    "columns": {
        "metric_name": "metric_name",
        "timestamp": "unix_milli",
        "value": "value",
        "fingerprint": "fingerprint",
        "labels": "labels",
    },
    "labels_type": "json",
}

_PROXY_DEFAULTS: dict[str, Any] = {
    "listen_addr": ":9090",
    "query_timeout": "2m",
    "clickhouse": _CLICKHOUSE_DEFAULTS,
    "cache": {"enabled": False, "max_size": 1000, "ttl": "60s", "max_freshness": "60s"},
    "labels": {"cache_enabled": True, "cache_ttl": "60s", "cache_max_series": 10000},
    "cors": {"allow_origin": "*"},
    "schema": _SCHEMA_DEFAULTS,
    "downsampling": {"enabled": False},
}

_DOWNSAMPLER_DEFAULTS: dict[str, Any] = {
    "clickhouse": _CLICKHOUSE_DEFAULTS,
    "schema": _SCHEMA_DEFAULTS,
    "downsampling": {"enabled": False},
    "daemon": False,
    "interval": "1h",
}

_WRITER_DEFAULTS: dict[str, Any] = {
    "listen_addr": ":9091",
    "clickhouse": _CLICKHOUSE_DEFAULTS,
    "schema": _SCHEMA_DEFAULTS,
    "write": {"batch_size": 10000, "queue_size": 100000, "flush_interval": "5s"},
}


@dataclass
class CacheConfig:
    """Optional query result cache."""

    enabled: bool
    max_size: int
    ttl: timedelta
    max_freshness: timedelta


@dataclass
class LabelsConfig:
    """In-memory label cache settings."""

    cache_enabled: bool
    cache_ttl: timedelta
    cache_max_series: int


@dataclass
class CORSConfig:
    """CORS response settings."""

    allow_origin: str


@dataclass
class ProxyConfig:
    """Configuration of the query proxy."""

    listen_addr: str
    query_timeout: timedelta
    clickhouse: CHConfig
    cache: CacheConfig
    labels: LabelsConfig
    cors: CORSConfig
    schema: SchemaConfig
    downsampling: DownsamplingConfig


@dataclass
class DownsamplerConfig:
    """Configuration of the standalone downsampler."""

    clickhouse: CHConfig
    schema: SchemaConfig
    downsampling: DownsamplingConfig
    daemon: bool
    interval: timedelta


@dataclass
class WriteSettings:
    """Batching of remote_write inserts."""

    batch_size: int
    queue_size: int
    flush_interval: timedelta


@dataclass
class WriterConfig:
    """Configuration of the remote_write receiver."""

    listen_addr: str
    clickhouse: CHConfig
    schema: SchemaConfig
    write: WriteSettings


def _merged(base: Mapping, override: Mapping) -> dict:
    result = dict(base)
    for key, value in override.items():
        if value is None:
            continue
        current = result.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            result[key] = _merged(current, value)
        else:
            result[key] = value
    return result


def _read_document(path: str | os.PathLike, defaults: Mapping) -> dict:
    try:
        text = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        return dict(defaults)
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"{path}: {exc}") from exc
    return _merged(defaults, _as_mapping(document, str(path)))


def _std_duration(data: Mapping, key: str) -> timedelta:
    value = data.get(key)
    if value is None:
        return timedelta(0)
    if isinstance(value, timedelta):
        return value
    if isinstance(value, str):
        return _parse_go_duration(value)
    raise ConfigError(f"{key}: invalid duration {value!r}")


def load(path: str | os.PathLike) -> ProxyConfig:
    """Read the proxy configuration; a missing file yields the defaults."""
    data = _read_document(path, _PROXY_DEFAULTS)
    cache = _as_mapping(data.get("cache"), "cache")
    labels = _as_mapping(data.get("labels"), "labels")
    cors = _as_mapping(data.get("cors"), "cors")
    return ProxyConfig(
        listen_addr=_as_str(data, "listen_addr"),
        query_timeout=_std_duration(data, "query_timeout"),
        clickhouse=CHConfig.from_mapping(data.get("clickhouse")),
        cache=CacheConfig(
            enabled=_as_bool(cache, "enabled"),
            max_size=_as_int(cache, "max_size"),
            ttl=_std_duration(cache, "ttl"),
            max_freshness=_std_duration(cache, "max_freshness"),
        ),
        labels=LabelsConfig(
            cache_enabled=_as_bool(labels, "cache_enabled"),
            cache_ttl=_std_duration(labels, "cache_ttl"),
            cache_max_series=_as_int(labels, "cache_max_series"),
        ),
        cors=CORSConfig(allow_origin=_as_str(cors, "allow_origin")),
        schema=SchemaConfig.from_mapping(data.get("schema")),
        downsampling=DownsamplingConfig.from_mapping(data.get("downsampling")),
    )


def load_downsampler(path: str | os.PathLike) -> DownsamplerConfig:
    """Read the downsampler configuration; a missing file yields the defaults."""
    data = _read_document(path, _DOWNSAMPLER_DEFAULTS)
    return DownsamplerConfig(
        clickhouse=CHConfig.from_mapping(data.get("clickhouse")),
        schema=SchemaConfig.from_mapping(data.get("schema")),
        downsampling=DownsamplingConfig.from_mapping(data.get("downsampling")),
        daemon=_as_bool(data, "daemon"),
        interval=_std_duration(data, "interval"),
    )


def load_writer(path: str | os.PathLike) -> WriterConfig:
    """Read the writer configuration; a missing file yields the defaults."""
    data = _read_document(path, _WRITER_DEFAULTS)
    write = _as_mapping(data.get("write"), "write")
    return WriterConfig(
        listen_addr=_as_str(data, "listen_addr"),
        clickhouse=CHConfig.from_mapping(data.get("clickhouse")),
        schema=SchemaConfig.from_mapping(data.get("schema")),
        write=WriteSettings(
            batch_size=_as_int(write, "batch_size"),
            queue_size=_as_int(write, "queue_size"),
            flush_interval=_std_duration(write, "flush_interval"),
        ),
    )