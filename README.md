# promclick

Helpers for keeping Prometheus metrics in ClickHouse and querying them
through downsampled tiers. The package provides:

- **Configuration** (`promclick.config`): dataclasses for the ClickHouse
  connection (`CHConfig`), the table layout (`SchemaConfig`, `ColumnConfig`)
  and downsampling tiers (`DownsamplingConfig`, `TierConfig`), plus
  `parse_duration` and `format_duration`. `DownsamplingConfig.validate()`
  raises `ConfigError` for inconsistent tiers, `select_tier(step)` picks the
  coarsest tier whose `min_step` the step reaches, and
  `query_segments(start, end, tier, now)` splits a query range into tier
  segments followed by a raw-samples tail.
- **Configuration files** (`promclick.settings`): `load`, `load_downsampler`
  and `load_writer` read YAML files into `ProxyConfig`, `DownsamplerConfig`
  and `WriterConfig`. Values missing from a file keep their defaults, and a
  missing file yields the defaults alone.
- **Metric types** (`promclick.metric_type`): the `MetricType` enum,
  `infer_type_from_name`, `is_counter_like` and `strip_metric_suffixes`.
- **SQL helpers** (`promclick.sqlexpr`): `escape_sql`,
  `start_of_interval_expr` and `ch_interval`.
- **Label cache** (`promclick.label_cache`): `LabelCache`, an in-memory map
  from fingerprints to labels and from metric names to fingerprints,
  filled with `load(rows)` or over HTTP with `refresh()`, with
  Prometheus-style `LabelMatcher`s (`=`, `!=`, `=~`, `!~`) and `match_all`.
- **Tier queries** (`promclick.tier_query`): `build_segmented_query` builds
  `UNION ALL` SQL across tier and raw segments for `rate`, `increase`,
  `irate`, `deriv`, `predict_linear` and the `*_over_time` functions.

## Installation

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Configuration

A downsampler configuration file looks like this:

```yaml
clickhouse:
  http_addr: http://localhost:8123
  database: metrics
  user: default

downsampling:
  enabled: true
  raw_retention: 7d
  tiers:
    - name: 5m
      resolution: 5m
      table: samples_5m
      compact_after: 2h
      retention: 90d
      min_step: 5m
    - name: 1h
      resolution: 1h
      table: samples_1h
      compact_after: 1d
      retention: 365d
      min_step: 1h

daemon: true
interval: 1h
```

Durations in the `downsampling` section accept a whole number of days
(`90d`) as well as forms such as `5m`, `2h` or `1h30m`. The other durations
(`interval`, `query_timeout`, cache TTLs, `flush_interval`) accept only the
latter forms. Each tier's `compact_after` and `min_step` must grow from one
tier to the next, and `raw_retention` must be longer than the first tier's
`compact_after`.

## Building a tier query

```python
from datetime import datetime, timedelta, timezone

from promclick.metric_type import MetricType
from promclick.settings import load_downsampler
from promclick.tier_query import RequiresRawSamples, build_segmented_query

cfg = load_downsampler("downsampler.yaml")
ds = cfg.downsampling
ds.validate()

step = timedelta(hours=1)
tier = ds.select_tier(step)

now = datetime.now(timezone.utc)
segments = ds.query_segments(now - timedelta(days=7), now, tier, now)
try:
    sql = build_segmented_query(
        "rate", MetricType.COUNTER, "http_requests_total",
        segments, [1234, 5678], step, None,
    )
except RequiresRawSamples:
    ...  # answer the query from raw samples instead
```

`build_segmented_query` raises `ValueError` when there are no segments and
`RequiresRawSamples` for functions that cannot be answered from downsampled
data, such as `rate` on a gauge.

## Using the label cache

```python
from datetime import timedelta

from promclick.label_cache import LabelCache, LabelMatcher

password = "password"
cache = LabelCache(
    timedelta(seconds=60), 10000, None,
    "http://localhost:8123", "metrics", "default", password,
    "time_series", "fingerprint", "metric_name", "labels",
)
cache.load([
    ("1", "node_cpu_seconds_total", {"mode": "idle"}),
    ("2", "node_cpu_seconds_total", {"mode": "user"}),
])
cache.get_fingerprints(
    "node_cpu_seconds_total", [LabelMatcher("mode", "!~", "idle|iowait")]
)  # ["2"]
```

`get_fingerprints` returns an empty list for an unknown metric and `None`
when the metric has more series than `max_series`, so the caller can query
the database instead. `refresh()` reloads everything from the time-series
table over ClickHouse's HTTP interface, and
`start_background_refresh(stop_event)` repeats it every `ttl` in a daemon
thread.

## What this package does not do

The package builds configuration, routing decisions and SQL text; it does
not run queries against ClickHouse apart from the label cache's own
`refresh()`. It has no command-line program, no HTTP server, no
remote_write receiver, and it does not create tier tables, TTLs or
materialized views or backfill them: the SQL it produces has to be sent
to ClickHouse by the caller.