"""In-memory cache of series labels, so queries need no join against time_series."""

from __future__ import annotations

import functools
import json
import logging
import re
import threading
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import timedelta

import requests

__all__ = ["LabelMatcher", "LabelCache", "match_all"]

log = logging.getLogger(__name__)

_REFRESH_TIMEOUT = 30.0
_ERROR_BODY_LIMIT = 1024


@dataclass(frozen=True)
class LabelMatcher:
    """A label filter: ``op`` is one of ``=``, ``!=``, ``=~``, ``!~``."""

    name: str
    op: str = "="
    value: str = ""


@functools.lru_cache(maxsize=None)
def _compiled(pattern: str) -> re.Pattern | None:
    try:
        return re.compile(f"(?:{pattern})")
    except re.error:
        return None


def match_all(labels: Mapping[str, str] | None, matchers: Iterable[LabelMatcher]) -> bool:
    """Whether the labels satisfy every matcher; regexes match the whole value.

    A missing label counts as the empty string; an invalid regex matches nothing.
    """
    if labels is None:
        return False
    for matcher in matchers:
        value = labels.get(matcher.name, "")
        if matcher.op == "=":
            if value != matcher.value:
                return False
        elif matcher.op == "!=":
            if value == matcher.value:
                return False
        elif matcher.op == "=~":
            pattern = _compiled(matcher.value)
            if pattern is None or pattern.fullmatch(value) is None:
                return False
        elif matcher.op == "!~":
            pattern = _compiled(matcher.value)
            if pattern is None or pattern.fullmatch(value) is not None:
                return False
    return True


def _parse_row(line: str) -> tuple[str, str, dict[str, str]] | None:
    try:
        row = json.loads(line)
    except ValueError as exc:
        log.warning("label cache: skip malformed row: %s", exc)
        return None
    if not isinstance(row, dict):
        log.warning("label cache: skip malformed row: not an object")
        return None
    fp, mn, raw_labels = row.get("fp", ""), row.get("mn", ""), row.get("labels", "")
    if not all(isinstance(item, str) for item in (fp, mn, raw_labels)):
        log.warning("label cache: skip malformed row: non-string field")
        return None
    try:
        labels = json.loads(raw_labels)
    except ValueError as exc:
        log.warning("label cache: skip invalid labels JSON fp=%s: %s", fp, exc)
        return None
    if not isinstance(labels, dict) or not all(
        isinstance(value, str) for value in labels.values()
    ):
        log.warning("label cache: skip invalid labels JSON fp=%s", fp)
        return None
    return fp, mn, labels


class LabelCache:
    """Labels per fingerprint and fingerprints per metric name, refreshed from ClickHouse."""

    def __init__(
        self,
        ttl: timedelta,
        max_series: int,
        session: requests.Session | None,
        http_addr: str,
        database: str,
        user: str,
        password: str,
        table: str,
        fp_col: str,
        mn_col: str,
        lbl_col: str,
    ) -> None:
        self.ttl = ttl
        self.max_series = max_series
        self.session = session if session is not None else requests.Session()
        self.http_addr = http_addr
        self.database = database
        self.user = user
        self.password = password
        self.table = table
        self.fp_col = fp_col
        self.mn_col = mn_col
        self.lbl_col = lbl_col
        self._lock = threading.Lock()
        self._data: dict[str, dict[str, str]] = {}
        self._metric_index: dict[str, list[str]] = {}
        self._loaded = False

    def is_loaded(self) -> bool:
        """Whether the cache has been filled at least once."""
        with self._lock:
            return self._loaded

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def load(self, rows: Iterable[tuple[str, str, Mapping[str, str]]]) -> None:
        """Replace the cache contents with ``(fingerprint, metric_name, labels)`` rows."""
        data: dict[str, dict[str, str]] = {}
        index: dict[str, list[str]] = {}
        for fp, metric_name, labels in rows:
            data[fp] = dict(labels)
            index.setdefault(metric_name, []).append(fp)
        with self._lock:
            self._data = data
            self._metric_index = index
            self._loaded = True

    def get_labels(self, fp: str) -> dict[str, str] | None:
        """Labels of a fingerprint, or None when it is not cached."""
        with self._lock:
            return self._data.get(fp)

    def get_fingerprints(
        self, metric_name: str, matchers: Sequence[LabelMatcher] = ()
    ) -> list[str] | None:
        """Fingerprints of a metric that satisfy the matchers.

        An unknown metric gives an empty list.  None means the metric has more
        series than the cache serves and the caller must query the database.
        """
        with self._lock:
            data = self._data
            fps = self._metric_index.get(metric_name)
        if fps is None:
            return []
        if self.max_series > 0 and len(fps) > self.max_series:
            return None
        if not matchers:
            return list(fps)
        return sorted(fp for fp in fps if match_all(data.get(fp), matchers))

    def _query(self) -> str:
        return (
            f"SELECT toString({self.fp_col}) AS fp, {self.mn_col} AS mn, "
            f"{self.lbl_col} AS labels FROM {self.table} "
            f"ORDER BY unix_milli DESC LIMIT 1 BY {self.mn_col}, {self.fp_col}"
        )

    def refresh(self) -> None:
        """Reload all labels from the time-series table.

        Raises :class:`requests.RequestException` on transport or HTTP errors.
        """
        url = self.http_addr.rstrip("/") + "/"
        auth = (self.user, self.password) if self.user else None
        with self.session.post(
            url,
            params={"database": self.database, "default_format": "JSONEachRow"},
            data=self._query().encode("utf-8"),
            auth=auth,
            stream=True,
            timeout=_REFRESH_TIMEOUT,
        ) as response:
            if response.status_code != 200:
                body = response.raw.read(_ERROR_BODY_LIMIT, decode_content=True)
                raise requests.HTTPError(
                    f"label cache HTTP {response.status_code}: "
                    f"{body.decode('utf-8', 'replace')}",
                    response=response,
                )
            rows = [
                parsed
                for line in response.iter_lines(decode_unicode=False)
                if line.strip()
                for parsed in [_parse_row(line.decode("utf-8", "replace"))]
                if parsed is not None
            ]
        self.load(rows)

    def start_background_refresh(self, stop_event: threading.Event) -> threading.Thread:
        """Refresh every ``ttl`` in a daemon thread until ``stop_event`` is set."""
        interval = self.ttl.total_seconds()

        def run() -> None:
            while not stop_event.wait(interval):
                try:
                    self.refresh()
                except requests.RequestException as exc:
                    log.warning("label cache refresh failed: %s", exc)

        thread = threading.Thread(target=run, name="label-cache-refresh", daemon=True)
        thread.start()
        return thread