"""
Tests for the in-process metrics collector.
"""

from src.core.metrics import MetricsCollector


def test_counters_accumulate_per_label_set():
    metrics = MetricsCollector()
    metrics.increment("checks_total", {"outcome": "admitted"})
    metrics.increment("checks_total", {"outcome": "admitted"}, value=2)
    metrics.increment("checks_total", {"outcome": "rejected"})

    assert metrics.get_counter("checks_total", {"outcome": "admitted"}) == 3
    assert metrics.get_counter("checks_total", {"outcome": "rejected"}) == 1
    assert metrics.get_counter("checks_total") == 0


def test_gauges_overwrite():
    metrics = MetricsCollector()
    metrics.set_gauge("entries", value=4)
    metrics.set_gauge("entries", value=1)

    assert metrics.get_gauge("entries") == 1
    assert metrics.get_gauge("missing") is None


def test_prometheus_format():
    metrics = MetricsCollector(namespace="test")
    metrics.increment("hits_total", {"b": "2", "a": "1"})
    metrics.set_gauge("entries", value=7)

    text = metrics.prometheus_format()

    assert "# TYPE test_uptime_seconds gauge" in text
    assert "# TYPE test_hits_total counter" in text
    assert 'test_hits_total{a="1",b="2"} 1' in text
    assert "# TYPE test_entries gauge" in text
    assert "test_entries 7" in text
    assert text.endswith("\n")


def test_reset_clears_series():
    metrics = MetricsCollector()
    metrics.increment("hits_total")
    metrics.reset()

    assert metrics.get_counter("hits_total") == 0


def test_names_exported_under_namespace():
    metrics = MetricsCollector()
    metrics.increment("cache_errors_total", {"operation": "get"})

    assert 'campusmind_cache_errors_total{operation="get"} 1' in metrics.prometheus_format()
