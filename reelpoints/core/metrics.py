"""In-process metrics rendered in Prometheus text format."""

from __future__ import annotations

import re
import threading
from typing import Dict, Iterable, List, Optional, Tuple


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\"", "\\\"")


def _render_labels(label_names: List[str], values: Tuple[str, ...]) -> str:
    if not label_names:
        return ""
    return "{" + ",".join(f'{name}="{_escape(val)}"' for name, val in zip(label_names, values)) + "}"


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, label_names: Optional[Iterable[str]] = None):
        self.name = name
        self.label_names = list(label_names or [])
        self._values: Dict[Tuple[str, ...], float] = {}
        self._lock = threading.Lock()

    def _key(self, labels: Optional[Dict[str, str]]) -> Tuple[str, ...]:
        labels = labels or {}
        return tuple(str(labels.get(name, "")) for name in self.label_names)

    def _add(self, labels: Optional[Dict[str, str]], amount: float) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + float(amount)

    def value(self, labels: Optional[Dict[str, str]] = None) -> float:
        with self._lock:
            return self._values.get(self._key(labels), 0.0)

    def export(self) -> List[str]:
        lines = [f"# TYPE {self.name} {self.kind}"]
        with self._lock:
            for label_values, value in self._values.items():
                lines.append(f"{self.name}{_render_labels(self.label_names, label_values)} {value}")
        return lines

    def reset(self):
        with self._lock:
            self._values.clear()


class Counter(_Metric):
    kind = "counter"

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0):
        self._add(labels, amount)


class Gauge(_Metric):
    kind = "gauge"

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0):
        self._add(labels, amount)

    def dec(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0):
        self._add(labels, -amount)


class MetricsRegistry:
    def __init__(self):
        self.metrics: Dict[str, _Metric] = {}
        self._lock = threading.Lock()

    def _register(self, cls, name: str, label_names: Optional[Iterable[str]]):
        with self._lock:
            if name not in self.metrics:
                self.metrics[name] = cls(name, label_names)
            return self.metrics[name]

    def counter(self, name: str, label_names: Optional[Iterable[str]] = None) -> Counter:
        return self._register(Counter, name, label_names)

    def gauge(self, name: str, label_names: Optional[Iterable[str]] = None) -> Gauge:
        return self._register(Gauge, name, label_names)

    def export_prometheus(self) -> str:
        lines: List[str] = []
        for metric in list(self.metrics.values()):
            lines.extend(metric.export())
        return "\n".join(lines) + "\n"

    def reset(self):
        for metric in self.metrics.values():
            metric.reset()


METRICS = MetricsRegistry()

http_requests_total = METRICS.counter("http_requests_total", ["method", "path", "status"])
purchases_total = METRICS.counter("purchases_total", ["family", "scope", "outcome"])
purchase_conflicts_total = METRICS.counter("purchase_conflicts_total", ["family"])
view_count_failures_total = METRICS.counter("view_count_failures_total", ["family"])

purchases_in_flight = METRICS.gauge("purchases_in_flight", ["family"])


_ID_SEGMENT_RE = re.compile(r"^(\d+|[0-9a-fA-F-]{8,})$")


def normalize_path(path: str) -> str:
    """Collapse numeric/UUID path segments to :id to keep label cardinality low."""
    segments = [":id" if _ID_SEGMENT_RE.match(s) else s for s in path.split("/") if s]
    return "/" + "/".join(segments)
