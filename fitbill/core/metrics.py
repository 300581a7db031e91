"""In-memory counters and gauges exported in Prometheus text format."""

from __future__ import annotations

import re
import threading
from typing import Dict, Iterable, List, Optional, Tuple

LabelKey = Tuple[str, ...]


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\"", "\\\"").replace("\n", "\\n")


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, label_names: Optional[Iterable[str]] = None):
        self.name = name
        self.label_names = list(label_names or [])
        self._values: Dict[LabelKey, float] = {}
        self._lock = threading.Lock()

    def _key(self, labels: Optional[Dict[str, str]]) -> LabelKey:
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
            for key, value in sorted(self._values.items()):
                if self.label_names:
                    pairs = ",".join(f'{n}="{_escape(v)}"' for n, v in zip(self.label_names, key))
                    lines.append(f"{self.name}{{{pairs}}} {value}")
                else:
                    lines.append(f"{self.name} {value}")
        return lines

    def reset(self) -> None:
        with self._lock:
            self._values.clear()


class Counter(_Metric):
    kind = "counter"

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("Counters only go up")
        self._add(labels, amount)


class Gauge(_Metric):
    kind = "gauge"

    def set(self, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = float(value)


class MetricsRegistry:
    def __init__(self):
        self._metrics: Dict[str, _Metric] = {}
        self._lock = threading.Lock()

    def _register(self, cls, name: str, label_names: Optional[Iterable[str]]):
        with self._lock:
            if name not in self._metrics:
                self._metrics[name] = cls(name, label_names)
            return self._metrics[name]

    def counter(self, name: str, label_names: Optional[Iterable[str]] = None) -> Counter:
        return self._register(Counter, name, label_names)

    def gauge(self, name: str, label_names: Optional[Iterable[str]] = None) -> Gauge:
        return self._register(Gauge, name, label_names)

    def export_prometheus(self) -> str:
        lines: List[str] = []
        for metric in list(self._metrics.values()):
            lines.extend(metric.export())
        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        for metric in list(self._metrics.values()):
            metric.reset()


METRICS = MetricsRegistry()

http_requests_total = METRICS.counter("http_requests_total", ["method", "path", "status"])
webhook_outcomes_total = METRICS.counter("webhook_outcomes_total", ["provider", "outcome"])
webhook_rejections_total = METRICS.counter("webhook_rejections_total", ["provider", "reason"])
payment_reviews_total = METRICS.counter("payment_reviews_total", ["decision"])
plans_downgraded_total = METRICS.counter("plans_downgraded_total")

pending_payment_requests = METRICS.gauge("pending_payment_requests")


# Payment request ids are uuid4; numeric ids are audit rows
_ID_SEGMENT = re.compile(r"^(\d+|[0-9a-fA-F]{8}-[0-9a-fA-F-]{27})$")


def normalize_path(path: str) -> str:
    """Collapse id segments to :id so per-request paths share one series."""
    segments = [s for s in path.split("/") if s]
    return "/" + "/".join(":id" if _ID_SEGMENT.match(s) else s for s in segments)
