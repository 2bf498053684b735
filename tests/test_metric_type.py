import pytest

from promclick.metric_type import (
    MetricType,
    infer_type_from_name,
    is_counter_like,
    strip_metric_suffixes,
)


@pytest.mark.parametrize(
    "name",
    ["http_requests_total", "rpc_duration_count", "rpc_duration_sum", "process_created"],
)
def test_infer_counter_suffixes(name):
    assert infer_type_from_name(name) is MetricType.COUNTER


def test_infer_histogram_and_gauge():
    assert infer_type_from_name("latency_seconds_bucket") is MetricType.HISTOGRAM
    assert infer_type_from_name("build_info") is MetricType.GAUGE


def test_infer_unknown():
    assert infer_type_from_name("node_load1") is MetricType.UNKNOWN


def test_metric_type_values_match_strings():
    assert MetricType("counter") is MetricType.COUNTER
    assert str(MetricType.SUMMARY) == "summary"


def test_declared_counter_and_histogram_are_counter_like():
    assert is_counter_like("anything", MetricType.COUNTER)
    assert is_counter_like("anything", MetricType.HISTOGRAM)


def test_declared_gauge_overrides_name():
    assert not is_counter_like("requests_total", MetricType.GAUGE)
    assert not is_counter_like("requests_total", MetricType.SUMMARY)


def test_unknown_type_falls_back_to_name():
    assert is_counter_like("requests_total", MetricType.UNKNOWN)
    assert is_counter_like("latency_bucket", MetricType.UNKNOWN)
    assert not is_counter_like("build_info", MetricType.UNKNOWN)
    assert not is_counter_like("node_load1", MetricType.UNKNOWN)


def test_plain_strings_accepted_as_types():
    assert is_counter_like("x", "counter")
    assert not is_counter_like("x_total", "gauge")
    assert is_counter_like("x_total", "unknown")


def test_unrecognised_declared_type_is_not_counter_like():
    assert not is_counter_like("x_total", "stateset")


@pytest.mark.parametrize(
    "name, stem",
    [
        ("http_requests_total", "http_requests"),
        ("rpc_count", "rpc"),
        ("rpc_sum", "rpc"),
        ("latency_bucket", "latency"),
        ("process_created", "process"),
        ("build_info", "build"),
    ],
)
def test_strip_suffixes(name, stem):
    assert strip_metric_suffixes(name) == stem


def test_strip_only_one_suffix():
    assert strip_metric_suffixes("a_sum_total") == "a_sum"


def test_strip_no_suffix_unchanged():
    assert strip_metric_suffixes("node_load1") == "node_load1"