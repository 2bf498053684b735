"""Prometheus metric types and inference from metric naming conventions."""

from __future__ import annotations

from enum import Enum

__all__ = [
    "MetricType",
    "is_counter_like",
    "infer_type_from_name",
    "strip_metric_suffixes",
]

_COUNTER_SUFFIXES = ("_total", "_count", "_sum", "_created")
_STRIPPED_SUFFIXES = ("_total", "_count", "_sum", "_bucket", "_created", "_info")


class MetricType(str, Enum):
    """The type a Prometheus metric was declared with."""

    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"
    SUMMARY = "summary"
    UNKNOWN = "unknown"

    def __str__(self) -> str:
        return self.value


def infer_type_from_name(name: str) -> MetricType:
    """Guess a metric's type from its name suffix."""
    if name.endswith(_COUNTER_SUFFIXES):
        return MetricType.COUNTER
    if name.endswith("_bucket"):
        return MetricType.HISTOGRAM
    if name.endswith("_info"):
        return MetricType.GAUGE
    return MetricType.UNKNOWN


def is_counter_like(metric_name: str, metric_type: MetricType | str) -> bool:
    """Whether the metric increases monotonically (counters and histogram buckets).

    A declared type decides; only an unknown type falls back to the name.
    """
    if metric_type in (MetricType.COUNTER, MetricType.HISTOGRAM):
        return True
    if metric_type != MetricType.UNKNOWN:
        return False
    inferred = infer_type_from_name(metric_name)
    return inferred in (MetricType.COUNTER, MetricType.HISTOGRAM)


def strip_metric_suffixes(name: str) -> str:
    """Remove the first matching conventional suffix such as ``_total``."""
    for suffix in _STRIPPED_SUFFIXES:
        if name.endswith(suffix):
            return name[: -len(suffix)]
    return name