from datetime import timedelta

import pytest

from promclick.sqlexpr import ch_interval, escape_sql, start_of_interval_expr


def test_escape_sql_doubles_quotes():
    assert escape_sql("it's") == "it''s"


def test_escape_sql_without_quotes_unchanged():
    assert escape_sql("mv_downsample_5m") == "mv_downsample_5m"


def test_escape_sql_quote_count_doubles():
    text = "a'b''c'"
    assert escape_sql(text).count("'") == 2 * text.count("'")


@pytest.mark.parametrize(
    "interval, func",
    [
        (timedelta(minutes=1), "toStartOfMinute"),
        (timedelta(minutes=5), "toStartOfFiveMinutes"),
        (timedelta(minutes=10), "toStartOfTenMinutes"),
        (timedelta(minutes=15), "toStartOfFifteenMinutes"),
        (timedelta(hours=1), "toStartOfHour"),
        (timedelta(hours=24), "toStartOfDay"),
    ],
)
def test_named_bucket_functions(interval, func):
    assert start_of_interval_expr("ts", interval) == f"{func}(ts)"


def test_generic_bucket_uses_seconds():
    assert (
        start_of_interval_expr("ts", timedelta(seconds=30))
        == "toStartOfInterval(ts, INTERVAL 30 SECOND)"
    )


def test_generic_bucket_wraps_expression():
    column = "toDateTime(intDiv(unix_milli, 1000))"
    expr = start_of_interval_expr(column, timedelta(hours=2))
    assert expr.startswith(f"toStartOfInterval({column}, INTERVAL ")
    assert expr.endswith(" SECOND)")


def test_ch_interval_days():
    assert ch_interval(timedelta(days=2)) == "2 DAY"


def test_ch_interval_hours():
    assert ch_interval(timedelta(hours=3)) == "3 HOUR"


def test_ch_interval_minutes():
    assert ch_interval(timedelta(minutes=5)) == "5 MINUTE"
    assert ch_interval(timedelta(minutes=90)) == "90 MINUTE"


def test_ch_interval_seconds():
    assert ch_interval(timedelta(seconds=45)) == "45 SECOND"


def test_ch_interval_partial_day_is_hours():
    assert ch_interval(timedelta(hours=36)) == "36 HOUR"