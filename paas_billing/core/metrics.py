"""In-process metrics rendered in the Prometheus text format."""

from __future__ import annotations

import re
import threading
from typing import Dict, Iterable, List, Optional, Tuple


def _sanitize_label_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\"", "\\\"")


def _format_labels(label_names: List[str], values: Tuple[str, ...]) -> str:
    if not label_names:
        return ""
    parts = [f'{name}="{_sanitize_label_value(val)}"' for name, val in zip(label_names, values)]
    return "{" + ",".join(parts) + "}"


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, help_text: str = "", label_names: Optional[Iterable[str]] = None):
        self.name = name
        self.help_text = help_text
        self.label_names = list(label_names or [])
        self._values: Dict[Tuple[str, ...], float] = {}
        self._lock = threading.Lock()

    def _key(self, labels: Optional[Dict[str, str]]) -> Tuple[str, ...]:
        labels = labels or {}
        return tuple(str(labels.get(name, "")) for name in self.label_names)

    def value(self, labels: Optional[Dict[str, str]] = None) -> float:
        with self._lock:
            return self._values.get(self._key(labels), 0.0)

    def _add(self, labels: Optional[Dict[str, str]], amount: float) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + float(amount)

    def export(self) -> List[str]:
        lines = []
        if self.help_text:
            lines.append(f"# HELP {self.name} {self.help_text}")
        lines.append(f"# TYPE {self.name} {self.kind}")
        with self._lock:
            for label_values, value in sorted(self._values.items()):
                lines.append(f"{self.name}{_format_labels(self.label_names, label_values)} {value}")
        return lines

    def reset(self):
        with self._lock:
            self._values.clear()


class Counter(_Metric):
    kind = "counter"

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0):
        if amount < 0:
            raise ValueError("counters can only increase")
        self._add(labels, amount)


class Gauge(_Metric):
    kind = "gauge"

    def set(self, value: float, labels: Optional[Dict[str, str]] = None):
        key = self._key(labels)
        with self._lock:
            self._values[key] = float(value)

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0):
        self._add(labels, amount)


class MetricsRegistry:
    def __init__(self):
        self._metrics: Dict[str, _Metric] = {}
        self._lock = threading.Lock()

    def _register(self, cls, name: str, help_text: str, label_names: Optional[Iterable[str]]):
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                metric = self._metrics[name] = cls(name, help_text, label_names)
            elif not isinstance(metric, cls):
                raise ValueError(f"metric {name} already registered as {metric.kind}")
            return metric

    def counter(self, name: str, help_text: str = "", label_names: Optional[Iterable[str]] = None) -> Counter:
        return self._register(Counter, name, help_text, label_names)

    def gauge(self, name: str, help_text: str = "", label_names: Optional[Iterable[str]] = None) -> Gauge:
        return self._register(Gauge, name, help_text, label_names)

    def export_prometheus(self) -> str:
        lines: List[str] = []
        for metric in list(self._metrics.values()):
            lines.extend(metric.export())
        return "\n".join(lines) + "\n"

    def reset(self):
        for metric in self._metrics.values():
            metric.reset()


METRICS = MetricsRegistry()

http_requests_total = METRICS.counter("http_requests_total", "HTTP requests served", ["method", "path", "status"])
collector_events_stored_total = METRICS.counter("collector_events_stored_total", "Raw events persisted by the collector", ["kind"])
collector_errors_total = METRICS.counter("collector_errors_total", "Collector ticks that failed", ["kind"])
collector_events_dropped_total = METRICS.counter("collector_events_dropped_total", "Raw events dropped because their month is consolidated", ["kind"])
consolidated_months_total = METRICS.counter("consolidated_months_total", "Months frozen by the consolidator")
dummy_plans_created = METRICS.counter("dummy_plans_created", "Placeholder pricing plans synthesised for unpriced usage")

vat_configured_rate = METRICS.gauge("vat_configured_rate", "Currently effective VAT rate", ["code"])
currency_configured_ratio = METRICS.gauge("currency_configured_ratio", "Currently effective rate to GBP", ["code"])
inconsistent_plans = METRICS.gauge("inconsistent_plans", "Plans referenced by usage but missing from configuration")


_ID_RE = re.compile(r"^[0-9a-fA-F-]{8,}$")


def normalize_path(path: str) -> str:
    """Reduce cardinality by replacing GUID/number segments with :id."""
    parts = []
    for segment in path.split("/"):
        if not segment:
            continue
        if segment.isdigit() or _ID_RE.match(segment):
            parts.append(":id")
        else:
            parts.append(segment)
    return "/" + "/".join(parts)
