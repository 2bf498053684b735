"""Configuration, tier routing, label caching and SQL building for Prometheus metrics in ClickHouse."""

__version__ = "0.1.0"