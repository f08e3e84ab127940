"""Metrics recording and Prometheus text export.

The engine and runner receive a recorder instead of touching module globals,
so tests (or a caller that doesn't want metrics) can hand in ``NullRecorder``.
"""
import math
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Protocol


Labels = dict[str, str] | None
LabelKey = tuple[tuple[str, str], ...]

LATENCY_BUCKETS = (0.25, 0.5, 1.0, 2.0, 4.0, 8.0, 15.0, 30.0, 60.0, 120.0)


class MetricsRecorder(Protocol):
    def inc_counter(self, name: str, labels: Labels = None, value: float = 1.0) -> None: ...
    def observe_histogram(self, name: str, value: float, labels: Labels = None) -> None: ...
    def set_gauge(self, name: str, value: float, labels: Labels = None) -> None: ...


class NullRecorder:
    def inc_counter(self, name: str, labels: Labels = None, value: float = 1.0) -> None:
        pass

    def observe_histogram(self, name: str, value: float, labels: Labels = None) -> None:
        pass

    def set_gauge(self, name: str, value: float, labels: Labels = None) -> None:
        pass


@dataclass
class _Histogram:
    buckets: tuple[float, ...]
    counts: list[int] = field(default_factory=list)
    total: float = 0.0
    count: int = 0

    def __post_init__(self):
        self.counts = [0] * len(self.buckets)

    def observe(self, value: float) -> None:
        self.total += value
        self.count += 1
        for i, bound in enumerate(self.buckets):
            if value <= bound:
                self.counts[i] += 1


def _key(labels: Labels) -> LabelKey:
    return tuple(sorted((labels or {}).items()))


def _fmt_labels(key: LabelKey, extra: tuple[str, str] | None = None) -> str:
    pairs = list(key) + ([extra] if extra else [])
    if not pairs:
        return ""
    body = ",".join(f'{k}="{_escape(str(v))}"' for k, v in pairs)
    return "{" + body + "}"


def _escape(v: str) -> str:
    return v.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _fmt_value(v: float) -> str:
    if math.isinf(v):
        return "+Inf" if v > 0 else "-Inf"
    if float(v).is_integer():
        return str(int(v))
    return repr(float(v))


class PrometheusRecorder:
    """In-memory counters, gauges and histograms behind a single lock.

    Safe to call from the event loop and from the uvicorn thread that renders
    ``/metrics``. Names are exported as ``{namespace}_{name}``.
    """

    def __init__(self, namespace: str = "txrelay", *, buckets: tuple[float, ...] = LATENCY_BUCKETS):
        self.namespace = namespace
        self.buckets = tuple(sorted(buckets))
        self._lock = threading.Lock()
        self._counters: dict[str, dict[LabelKey, float]] = defaultdict(dict)
        self._gauges: dict[str, dict[LabelKey, float]] = defaultdict(dict)
        self._histograms: dict[str, dict[LabelKey, _Histogram]] = defaultdict(dict)

    def _full(self, name: str) -> str:
        return f"{self.namespace}_{name}" if self.namespace else name

    def inc_counter(self, name: str, labels: Labels = None, value: float = 1.0) -> None:
        if value < 0:
            raise ValueError(f"counter {name} can only increase, got {value}")
        k = _key(labels)
        with self._lock:
            series = self._counters[name]
            series[k] = series.get(k, 0.0) + value

    def observe_histogram(self, name: str, value: float, labels: Labels = None) -> None:
        k = _key(labels)
        with self._lock:
            series = self._histograms[name]
            h = series.get(k)
            if h is None:
                h = series[k] = _Histogram(self.buckets)
            h.observe(value)

    def set_gauge(self, name: str, value: float, labels: Labels = None) -> None:
        with self._lock:
            self._gauges[name][_key(labels)] = float(value)

    def counter_value(self, name: str, labels: Labels = None) -> float:
        with self._lock:
            return self._counters.get(name, {}).get(_key(labels), 0.0)

    def gauge_value(self, name: str, labels: Labels = None) -> float | None:
        with self._lock:
            return self._gauges.get(name, {}).get(_key(labels))

    def histogram_count(self, name: str, labels: Labels = None) -> int:
        with self._lock:
            h = self._histograms.get(name, {}).get(_key(labels))
            return h.count if h else 0

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "counters": {n: {str(dict(k)): v for k, v in s.items()} for n, s in self._counters.items()},
                "gauges": {n: {str(dict(k)): v for k, v in s.items()} for n, s in self._gauges.items()},
                "histograms": {
                    n: {str(dict(k)): {"count": h.count, "sum": h.total} for k, h in s.items()}
                    for n, s in self._histograms.items()
                },
            }

    def render(self) -> str:
        """Prometheus text exposition format (version 0.0.4)."""
        lines: list[str] = []
        with self._lock:
            for name in sorted(self._counters):
                full = self._full(name)
                lines.append(f"# TYPE {full} counter")
                for k, v in sorted(self._counters[name].items()):
                    lines.append(f"{full}{_fmt_labels(k)} {_fmt_value(v)}")

            for name in sorted(self._gauges):
                full = self._full(name)
                lines.append(f"# TYPE {full} gauge")
                for k, v in sorted(self._gauges[name].items()):
                    lines.append(f"{full}{_fmt_labels(k)} {_fmt_value(v)}")

            for name in sorted(self._histograms):
                full = self._full(name)
                lines.append(f"# TYPE {full} histogram")
                for k, h in sorted(self._histograms[name].items()):
                    for bound, c in zip(h.buckets, h.counts):
                        lines.append(f"{full}_bucket{_fmt_labels(k, ('le', _fmt_value(bound)))} {c}")
                    lines.append(f"{full}_bucket{_fmt_labels(k, ('le', '+Inf'))} {h.count}")
                    lines.append(f"{full}_sum{_fmt_labels(k)} {_fmt_value(h.total)}")
                    lines.append(f"{full}_count{_fmt_labels(k)} {h.count}")
        return "\n".join(lines) + "\n"
