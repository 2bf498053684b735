"""Small helpers for building ClickHouse SQL text."""

from __future__ import annotations

from datetime import timedelta

__all__ = ["escape_sql", "start_of_interval_expr", "ch_interval"]

_NAMED_BUCKETS = {
    timedelta(minutes=1): "toStartOfMinute",
    timedelta(minutes=5): "toStartOfFiveMinutes",
    timedelta(minutes=10): "toStartOfTenMinutes",
    timedelta(minutes=15): "toStartOfFifteenMinutes",
    timedelta(hours=1): "toStartOfHour",
    timedelta(days=1): "toStartOfDay",
}

_DAY = timedelta(days=1)
_HOUR = timedelta(hours=1)
_MINUTE = timedelta(minutes=1)


def escape_sql(text: str) -> str:
    """Escape single quotes for a ClickHouse string literal."""
    return text.replace("'", "''")


def start_of_interval_expr(column: str, interval: timedelta) -> str:
    """SQL expression that truncates a DateTime column to the interval's bucket."""
    func = _NAMED_BUCKETS.get(interval)
    if func is not None:
        return f"{func}({column})"
    seconds = int(interval.total_seconds())
    return f"toStartOfInterval({column}, INTERVAL {seconds} SECOND)"


def ch_interval(interval: timedelta) -> str:
    """Format a duration as a ClickHouse INTERVAL body such as ``"5 MINUTE"``."""
    if interval >= _DAY and interval % _DAY == timedelta(0):
        return f"{interval // _DAY} DAY"
    if interval >= _HOUR and interval % _HOUR == timedelta(0):
        return f"{interval // _HOUR} HOUR"
    if interval >= _MINUTE and interval % _MINUTE == timedelta(0):
        return f"{interval // _MINUTE} MINUTE"
    return f"{int(interval.total_seconds())} SECOND"