from datetime import datetime, timedelta, timezone

import pytest

from promclick.config import QuerySegment, TierConfig
from promclick.metric_type import MetricType
from promclick.tier_query import (
    RequiresRawSamples,
    build_segmented_query,
    uint_slice_to_sql,
)

START = datetime(2024, 1, 1, 0, 0, 0, tzinfo=timezone.utc)
MIDDLE = datetime(2024, 1, 2, 12, 0, 0, tzinfo=timezone.utc)
END = datetime(2024, 1, 3, 6, 30, 15, tzinfo=timezone.utc)


@pytest.fixture
def segments():
    tier = TierConfig(
        name="5m",
        resolution=timedelta(minutes=5),
        table="samples_5m",
        compact_after=timedelta(hours=2),
        min_step=timedelta(minutes=5),
    )
    return [
        QuerySegment(source="5m", table="samples_5m", is_raw=False, tier=tier, start=START, end=MIDDLE),
        QuerySegment(source="raw", table="samples", is_raw=True, start=MIDDLE, end=END),
    ]


# --- uint_slice_to_sql ---


def test_uint_slice_to_sql_empty():
    assert uint_slice_to_sql([]) == ""


def test_uint_slice_to_sql_single():
    assert uint_slice_to_sql([12345]) == "12345"


def test_uint_slice_to_sql_multiple():
    assert uint_slice_to_sql([1, 2, 3]) == "1,2,3"


def test_uint_slice_to_sql_large():
    assert uint_slice_to_sql([18446744073709551615]) == "18446744073709551615"


def test_uint_slice_to_sql_no_spaces():
    assert " " not in uint_slice_to_sql([100, 200, 300])


def test_uint_slice_to_sql_rejects_out_of_range():
    with pytest.raises(ValueError):
        uint_slice_to_sql([2**64])
    with pytest.raises(ValueError):
        uint_slice_to_sql([-1])


# --- build_segmented_query ---


def test_no_segments_raises():
    with pytest.raises(ValueError, match="no segments"):
        build_segmented_query("rate", MetricType.COUNTER, "x_total", [], [1], timedelta(minutes=5))


def test_rate_on_counter(segments):
    sql = build_segmented_query(
        "rate", MetricType.COUNTER, "http_requests", segments, [11, 22], timedelta(minutes=5)
    )
    assert "toInt64(first_time) AS ft" in sql
    assert "toInt64(last_time) AS lt" in sql
    assert sql.count("UNION ALL") == 1
    assert "FROM metrics.samples_5m" in sql
    assert "FROM metrics.samples\n" in sql
    assert "fingerprint IN (11,22)" in sql
    assert "metric_name = 'http_requests'" in sql


def test_segment_times_are_utc(segments):
    sql = build_segmented_query(
        "increase", MetricType.COUNTER, "c", segments, [1], timedelta(minutes=5)
    )
    assert "toDateTime('2024-01-01 00:00:00') AND toDateTime('2024-01-02 12:00:00')" in sql
    assert "toDateTime('2024-01-03 06:30:15')" in sql


def test_aware_times_converted_to_utc():
    offset = timezone(timedelta(hours=2))
    seg = QuerySegment(
        source="raw",
        table="samples",
        is_raw=True,
        start=datetime(2024, 5, 1, 10, 0, 0, tzinfo=offset),
        end=datetime(2024, 5, 1, 12, 0, 0, tzinfo=offset),
    )
    sql = build_segmented_query("sum_over_time", MetricType.GAUGE, "g", [seg], [5], timedelta(0))
    assert "toDateTime('2024-05-01 08:00:00')" in sql
    assert "toDateTime('2024-05-01 10:00:00')" in sql


def test_rate_on_gauge_requires_raw(segments):
    with pytest.raises(RequiresRawSamples):
        build_segmented_query(
            "rate", MetricType.GAUGE, "temperature", segments, [1], timedelta(minutes=5)
        )


def test_rate_unknown_type_infers_counter_from_name(segments):
    sql = build_segmented_query(
        "rate", MetricType.UNKNOWN, "http_requests_total", segments, [1], timedelta(minutes=5)
    )
    assert "counter_total" in sql


def test_irate_on_gauge_requires_raw(segments):
    with pytest.raises(RequiresRawSamples):
        build_segmented_query("irate", MetricType.GAUGE, "g", segments, [1], timedelta(minutes=5))


def test_irate_on_counter(segments):
    sql = build_segmented_query(
        "irate", MetricType.COUNTER, "c", segments, [1], timedelta(hours=1)
    )
    assert "prev_last_value" in sql
    assert "toStartOfHour(ts) AS step_ts" in sql
    assert "WHERE rn > 1" in sql


def test_unsupported_function_requires_raw(segments):
    with pytest.raises(RequiresRawSamples):
        build_segmented_query(
            "quantile_over_time", MetricType.GAUGE, "g", segments, [1], timedelta(minutes=5)
        )


def test_gauge_with_step_groups_by_step(segments):
    sql = build_segmented_query(
        "avg_over_time", MetricType.GAUGE, "g", segments, [1], timedelta(hours=1)
    )
    assert "toInt64(toUnixTimestamp(toStartOfHour(ts))) * 1000 AS step_ts" in sql
    assert "GROUP BY fingerprint, step_ts" in sql


def test_gauge_without_step_has_no_grouping(segments):
    sql = build_segmented_query(
        "max_over_time", MetricType.GAUGE, "g", segments, [1], timedelta(0)
    )
    assert "GROUP BY fingerprint, step_ts" not in sql
    assert "val_sum, val_count, val_min, val_max" in sql


def test_deriv_uses_regression_slope(segments):
    sql = build_segmented_query("deriv", MetricType.GAUGE, "g", segments, [1], timedelta(minutes=5))
    assert "simpleLinearRegression(last_value, ts_unix)" in sql
    assert "reg.1 AS value" in sql
    assert "toStartOfFiveMinutes(ts) AS step_ts" in sql


def test_predict_linear_default_horizon(segments):
    sql = build_segmented_query(
        "predict_linear", MetricType.GAUGE, "g", segments, [1], timedelta(minutes=5)
    )
    assert "reg.2 + reg.1 * (last_ts_unix + 3600) AS value" in sql


def test_predict_linear_custom_horizon(segments):
    sql = build_segmented_query(
        "predict_linear",
        MetricType.GAUGE,
        "g",
        segments,
        [1],
        timedelta(minutes=5),
        timedelta(minutes=10),
    )
    assert "(last_ts_unix + 600)" in sql


def test_only_raw_segment_has_no_union():
    seg = QuerySegment(source="raw", table="samples", is_raw=True, start=START, end=END)
    sql = build_segmented_query("count_over_time", "gauge", "g", [seg], [7], timedelta(minutes=5))
    assert "UNION ALL" not in sql
    assert "toStartOfFiveMinutes(toDateTime(intDiv(unix_milli, 1000)))" in sql


def test_metric_name_quotes_escaped(segments):
    sql = build_segmented_query("sum_over_time", MetricType.GAUGE, "a'b", segments, [1], timedelta(0))
    assert "metric_name = 'a''b'" in sql


def test_requires_raw_samples_message():
    assert str(RequiresRawSamples()) == "function requires raw samples, fallback to raw query"