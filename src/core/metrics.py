"""
In-process metrics for the CampusMind API, rendered as Prometheus text.

Counters and gauges only. Names are given without the namespace prefix:
`increment("cache_errors_total")` is exported as
`campusmind_cache_errors_total`. Values live in the worker process and reset on
restart; scrape each worker separately when running several.
"""

import threading
import time
from collections import defaultdict


class MetricsCollector:
    """Thread-safe counters and gauges with Prometheus text rendering."""

    def __init__(self, namespace: str = "campusmind"):
        self.namespace = namespace
        self._lock = threading.Lock()
        self._counters: dict[str, int] = defaultdict(int)
        self._gauges: dict[str, float] = {}
        self._start_time = time.time()

    def increment(self, name: str, labels: dict[str, str] | None = None, value: int = 1):
        """Increment a counter."""
        key = self._key(name, labels)
        with self._lock:
            self._counters[key] += value

    def set_gauge(self, name: str, labels: dict[str, str] | None = None, *, value: float):
        """Set a gauge to an absolute value."""
        key = self._key(name, labels)
        with self._lock:
            self._gauges[key] = value

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> int:
        key = self._key(name, labels)
        with self._lock:
            return self._counters.get(key, 0)

    def get_gauge(self, name: str, labels: dict[str, str] | None = None) -> float | None:
        key = self._key(name, labels)
        with self._lock:
            return self._gauges.get(key)

    def prometheus_format(self) -> str:
        """Render all metrics in Prometheus text exposition format."""
        uptime_name = f"{self.namespace}_uptime_seconds"
        lines: list[str] = [
            f"# HELP {uptime_name} Seconds since process start",
            f"# TYPE {uptime_name} gauge",
            f"{uptime_name} {time.time() - self._start_time:.1f}",
            "",
        ]

        with self._lock:
            for kind, series in (("counter", self._counters), ("gauge", self._gauges)):
                rendered: set[str] = set()
                for key, val in sorted(series.items()):
                    base_name = key.split("{")[0]
                    if base_name not in rendered:
                        lines.append(f"# TYPE {base_name} {kind}")
                        rendered.add(base_name)
                    lines.append(f"{key} {val}")
                if series:
                    lines.append("")

        return "\n".join(lines) + "\n"

    def reset(self):
        with self._lock:
            self._counters.clear()
            self._gauges.clear()

    def _key(self, name: str, labels: dict[str, str] | None) -> str:
        full_name = f"{self.namespace}_{name}"
        if not labels:
            return full_name
        label_str = ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))
        return f"{full_name}{{{label_str}}}"


# Singleton
_collector: MetricsCollector | None = None


def get_metrics() -> MetricsCollector:
    """Get or create the metrics collector singleton."""
    global _collector
    if _collector is None:
        _collector = MetricsCollector()
    return _collector
