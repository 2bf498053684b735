"""SQL for range functions evaluated over downsampled tiers joined with raw samples.

Each query reads every segment separately and joins them with UNION ALL.
Window functions run only after the union, never inside a segment.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import datetime, timedelta, timezone

from promclick.config import QuerySegment
from promclick.metric_type import MetricType, is_counter_like
from promclick.sqlexpr import escape_sql, start_of_interval_expr

__all__ = ["RequiresRawSamples", "build_segmented_query", "uint_slice_to_sql"]

_RAW_BUCKET = "toStartOfFiveMinutes(toDateTime(intDiv(unix_milli, 1000)))"
_UNION = "\n    UNION ALL\n"
_DEFAULT_PREDICT = timedelta(seconds=3600)
_UINT64_MAX = 2**64 - 1

_GAUGE_FUNCTIONS = frozenset(
    {"avg_over_time", "min_over_time", "max_over_time", "sum_over_time", "count_over_time"}
)


class RequiresRawSamples(Exception):
    """The function cannot be computed from downsampled data; query raw samples."""

    def __init__(self, message: str = "function requires raw samples, fallback to raw query"):
        super().__init__(message)


def uint_slice_to_sql(fps: Sequence[int]) -> str:
    """Join unsigned 64-bit fingerprints with commas, without spaces."""
    parts = []
    for fp in fps:
        if not 0 <= fp <= _UINT64_MAX:
            raise ValueError(f"fingerprint {fp} is not an unsigned 64-bit integer")
        parts.append(str(fp))
    return ",".join(parts)


def _utc_text(moment: datetime) -> str:
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%d %H:%M:%S")


def _range(seg: QuerySegment) -> tuple[str, str]:
    return _utc_text(seg.start), _utc_text(seg.end)


def _union(
    segments: Sequence[QuerySegment],
    fps: Sequence[int],
    metric: str,
    raw: Callable[[QuerySegment, Sequence[int], str], str],
    tier: Callable[[QuerySegment, Sequence[int], str], str],
) -> str:
    return _UNION.join(
        raw(seg, fps, metric) if seg.is_raw else tier(seg, fps, metric) for seg in segments
    )


# --- rate() / increase() ---


def _tier_counter_segment(seg: QuerySegment, fps: Sequence[int], metric: str) -> str:
    start, end = _range(seg)
    return f"""
    SELECT fingerprint, ts,
        toFloat64(counter_total) AS counter_total,
        toInt64(first_time) AS first_time,
        toInt64(last_time) AS last_time
    FROM metrics.{seg.table}
    WHERE metric_name = '{metric}'
      AND fingerprint IN ({uint_slice_to_sql(fps)})
      AND ts BETWEEN toDateTime('{start}') AND toDateTime('{end}')"""


def _raw_counter_segment(seg: QuerySegment, fps: Sequence[int], metric: str) -> str:
    start, end = _range(seg)
    return f"""
    SELECT
        fingerprint,
        {_RAW_BUCKET} AS ts,
        sum(
            CASE
                WHEN rn = 1              THEN 0
                WHEN value >= prev_value THEN value - prev_value
                ELSE value
            END
        )                              AS counter_total,
        min(unix_milli)                AS first_time,
        max(unix_milli)                AS last_time
    FROM (
        SELECT
            fingerprint, unix_milli, value,
            lagInFrame(value, 1, 0) OVER (
                PARTITION BY fingerprint
                ORDER BY unix_milli ASC
                ROWS BETWEEN UNBOUNDED PRECEDING AND UNBOUNDED FOLLOWING
            ) AS prev_value,
            row_number() OVER (
                PARTITION BY fingerprint
                ORDER BY unix_milli ASC
            ) AS rn
        FROM metrics.samples
        WHERE metric_name = '{metric}'
          AND fingerprint IN ({uint_slice_to_sql(fps)})
          AND unix_milli >= toInt64(toUnixTimestamp(toDateTime('{start}'))) * 1000
          AND unix_milli <  toInt64(toUnixTimestamp(toDateTime('{end}'))) * 1000
        ORDER BY fingerprint, unix_milli
    )
    GROUP BY fingerprint, {_RAW_BUCKET}"""


def _counter_rate_union(segments: Sequence[QuerySegment], fps: Sequence[int], metric: str) -> str:
    union = _union(segments, fps, metric, _raw_counter_segment, _tier_counter_segment)
    return f"""
WITH all_segments AS (
    {union}
)
SELECT
    fingerprint,
    toInt64(toUnixTimestamp(ts)) * 1000 AS step_ts,
    toFloat64(counter_total) AS value,
    toInt64(first_time) AS ft,
    toInt64(last_time) AS lt
FROM all_segments
ORDER BY fingerprint, step_ts"""


# --- *_over_time() ---


def _tier_gauge_segment(seg: QuerySegment, fps: Sequence[int], metric: str) -> str:
    start, end = _range(seg)
    return f"""
    SELECT fingerprint, ts,
        toFloat64(val_sum) AS val_sum,
        toUInt64(val_count) AS val_count,
        toFloat64(val_min) AS val_min,
        toFloat64(val_max) AS val_max
    FROM metrics.{seg.table}
    WHERE metric_name = '{metric}'
      AND fingerprint IN ({uint_slice_to_sql(fps)})
      AND ts BETWEEN toDateTime('{start}') AND toDateTime('{end}')"""


def _raw_gauge_segment(seg: QuerySegment, fps: Sequence[int], metric: str) -> str:
    start, end = _range(seg)
    return f"""
    SELECT
        fingerprint,
        {_RAW_BUCKET} AS ts,
        sum(value)        AS val_sum,
        toUInt64(count()) AS val_count,
        min(value)        AS val_min,
        max(value)        AS val_max
    FROM metrics.samples
    WHERE metric_name = '{metric}'
      AND fingerprint IN ({uint_slice_to_sql(fps)})
      AND unix_milli >= toInt64(toUnixTimestamp(toDateTime('{start}'))) * 1000
      AND unix_milli <  toInt64(toUnixTimestamp(toDateTime('{end}'))) * 1000
    GROUP BY fingerprint, {_RAW_BUCKET}"""


def _gauge_union(
    segments: Sequence[QuerySegment],
    fps: Sequence[int],
    metric: str,
    step: timedelta | None,
) -> str:
    union = _union(segments, fps, metric, _raw_gauge_segment, _tier_gauge_segment)
    if step is not None and step > timedelta(0):
        step_expr = start_of_interval_expr("ts", step)
        return f"""
WITH all_segments AS (
    {union}
)
SELECT fingerprint,
    toInt64(toUnixTimestamp({step_expr})) * 1000 AS step_ts,
    sum(val_sum) AS val_sum,
    sum(val_count) AS val_count,
    min(val_min) AS val_min,
    max(val_max) AS val_max
FROM all_segments
GROUP BY fingerprint, step_ts
ORDER BY fingerprint, step_ts"""
    return f"""
WITH all_segments AS (
    {union}
)
SELECT fingerprint,
    toInt64(toUnixTimestamp(ts)) * 1000 AS step_ts,
    val_sum, val_count, val_min, val_max
FROM all_segments
ORDER BY fingerprint, step_ts"""


# --- irate() ---


def _tier_irate_segment(seg: QuerySegment, fps: Sequence[int], metric: str) -> str:
    start, end = _range(seg)
    return f"""
    SELECT fingerprint, ts,
        argMaxMerge(last_value) AS last_value,
        max(last_time)          AS last_time
    FROM metrics.{seg.table}
    WHERE metric_name = '{metric}'
      AND fingerprint IN ({uint_slice_to_sql(fps)})
      AND ts BETWEEN toDateTime('{start}') AND toDateTime('{end}')
    GROUP BY fingerprint, ts"""


def _raw_irate_segment(seg: QuerySegment, fps: Sequence[int], metric: str) -> str:
    start, end = _range(seg)
    return f"""
    SELECT fingerprint,
        {_RAW_BUCKET} AS ts,
        argMax(value, unix_milli) AS last_value,
        max(unix_milli)           AS last_time
    FROM metrics.samples
    WHERE metric_name = '{metric}'
      AND fingerprint IN ({uint_slice_to_sql(fps)})
      AND unix_milli >= toInt64(toUnixTimestamp(toDateTime('{start}'))) * 1000
      AND unix_milli <  toInt64(toUnixTimestamp(toDateTime('{end}'))) * 1000
    GROUP BY fingerprint, {_RAW_BUCKET}"""


def _irate_union(
    segments: Sequence[QuerySegment], fps: Sequence[int], metric: str, step: timedelta
) -> str:
    union = _union(segments, fps, metric, _raw_irate_segment, _tier_irate_segment)
    step_expr = start_of_interval_expr("ts", step)
    return f"""
WITH all_segments AS (
    {union}
),
with_prev AS (
    SELECT
        fingerprint, ts,
        last_value, last_time,
        lagInFrame(last_value, 1, toFloat64(0)) OVER (
            PARTITION BY fingerprint
            ORDER BY ts ASC
            ROWS BETWEEN UNBOUNDED PRECEDING AND UNBOUNDED FOLLOWING
        ) AS prev_last_value,
        lagInFrame(last_time, 1, toInt64(0)) OVER (
            PARTITION BY fingerprint
            ORDER BY ts ASC
            ROWS BETWEEN UNBOUNDED PRECEDING AND UNBOUNDED FOLLOWING
        ) AS prev_last_time,
        row_number() OVER (
            PARTITION BY fingerprint
            ORDER BY ts ASC
        ) AS rn
    FROM all_segments
)
SELECT fingerprint,
    {step_expr} AS step_ts,
    CASE
        WHEN rn = 1                     THEN 0
        WHEN last_time = prev_last_time THEN 0
        WHEN last_value >= prev_last_value
            THEN (last_value - prev_last_value)
                 / ((last_time - prev_last_time) / 1000.0)
        ELSE last_value / ((last_time - prev_last_time) / 1000.0)
    END AS value
FROM with_prev
WHERE rn > 1
ORDER BY fingerprint, step_ts"""


# --- deriv() / predict_linear() ---


def _tier_regression_segment(seg: QuerySegment, fps: Sequence[int], metric: str) -> str:
    start, end = _range(seg)
    return f"""
    SELECT fingerprint, ts,
        argMaxMerge(last_value)  AS last_value,
        toUnixTimestamp(ts)      AS ts_unix
    FROM metrics.{seg.table}
    WHERE metric_name = '{metric}'
      AND fingerprint IN ({uint_slice_to_sql(fps)})
      AND ts BETWEEN toDateTime('{start}') AND toDateTime('{end}')
    GROUP BY fingerprint, ts"""


def _raw_regression_segment(seg: QuerySegment, fps: Sequence[int], metric: str) -> str:
    start, end = _range(seg)
    return f"""
    SELECT fingerprint,
        {_RAW_BUCKET} AS ts,
        argMax(value, unix_milli)  AS last_value,
        toUnixTimestamp({_RAW_BUCKET})        AS ts_unix
    FROM metrics.samples
    WHERE metric_name = '{metric}'
      AND fingerprint IN ({uint_slice_to_sql(fps)})
      AND unix_milli >= toInt64(toUnixTimestamp(toDateTime('{start}'))) * 1000
      AND unix_milli <  toInt64(toUnixTimestamp(toDateTime('{end}'))) * 1000
    GROUP BY fingerprint, {_RAW_BUCKET}"""


def _deriv_union(
    segments: Sequence[QuerySegment], fps: Sequence[int], metric: str, step: timedelta
) -> str:
    union = _union(segments, fps, metric, _raw_regression_segment, _tier_regression_segment)
    step_expr = start_of_interval_expr("ts", step)
    return f"""
WITH all_segments AS (
    {union}
),
regression AS (
    SELECT fingerprint,
        {step_expr} AS step_ts,
        simpleLinearRegression(last_value, ts_unix) AS reg
    FROM all_segments
    GROUP BY fingerprint, step_ts
)
SELECT fingerprint, step_ts,
    reg.1 AS value
FROM regression
ORDER BY fingerprint, step_ts"""


def _predict_linear_union(
    segments: Sequence[QuerySegment],
    fps: Sequence[int],
    metric: str,
    step: timedelta,
    predict_duration: timedelta,
) -> str:
    union = _union(segments, fps, metric, _raw_regression_segment, _tier_regression_segment)
    step_expr = start_of_interval_expr("ts", step)
    predict_secs = int(predict_duration.total_seconds())
    return f"""
WITH all_segments AS (
    {union}
),
regression AS (
    SELECT fingerprint,
        {step_expr} AS step_ts,
        simpleLinearRegression(last_value, ts_unix) AS reg,
        max(ts_unix) AS last_ts_unix
    FROM all_segments
    GROUP BY fingerprint, step_ts
)
SELECT fingerprint, step_ts,
    reg.2 + reg.1 * (last_ts_unix + {predict_secs}) AS value
FROM regression
ORDER BY fingerprint, step_ts"""


def build_segmented_query(
    fn: str,
    metric_type: MetricType | str,
    metric_name: str,
    segments: Sequence[QuerySegment],
    fingerprints: Sequence[int],
    step: timedelta,
    predict_duration: timedelta | None = None,
) -> str:
    """Build the UNION ALL query computing ``fn`` across tier and raw segments.

    Raises :class:`ValueError` when there are no segments and
    :class:`RequiresRawSamples` when ``fn`` cannot use downsampled data.
    """
    if not segments:
        raise ValueError("no segments")

    metric = escape_sql(metric_name)
    counter = is_counter_like(metric_name, metric_type)

    if fn in ("rate", "increase"):
        if counter:
            return _counter_rate_union(segments, fingerprints, metric)
        raise RequiresRawSamples()
    if fn in _GAUGE_FUNCTIONS:
        return _gauge_union(segments, fingerprints, metric, step)
    if fn == "irate":
        if counter:
            return _irate_union(segments, fingerprints, metric, step)
        raise RequiresRawSamples()
    if fn == "deriv":
        return _deriv_union(segments, fingerprints, metric, step)
    if fn == "predict_linear":
        horizon = _DEFAULT_PREDICT if predict_duration is None else predict_duration
        return _predict_linear_union(segments, fingerprints, metric, step, horizon)
    raise RequiresRawSamples()