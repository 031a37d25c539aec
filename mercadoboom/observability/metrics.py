"""In-process diagnostic metrics. Never a source of truth for business state."""
from __future__ import annotations

import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Optional, Tuple

MetricKey = Tuple[str, Tuple[Tuple[str, str], ...]]

_MAX_EVENTS = 100


def _labels_tuple(labels: Optional[Dict[str, str]]) -> Tuple[Tuple[str, str], ...]:
    if not labels:
        return ()
    return tuple(sorted((key, str(value)) for key, value in labels.items()))


@dataclass
class Histogram:
    count: int = 0
    total: float = 0.0
    min_value: float = field(default=float("inf"))
    max_value: float = field(default=float("-inf"))

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.min_value = min(self.min_value, value)
        self.max_value = max(self.max_value, value)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "avg": self.total / self.count if self.count else 0.0,
            "min": None if self.count == 0 else self.min_value,
            "max": None if self.count == 0 else self.max_value,
        }


_lock = threading.Lock()
_counters: Dict[MetricKey, float] = defaultdict(float)
_gauges: Dict[MetricKey, float] = {}
_histograms: Dict[MetricKey, Histogram] = {}
_events: Deque[Dict[str, Any]] = deque(maxlen=_MAX_EVENTS)


def increment_counter(name: str, amount: float = 1.0, labels: Optional[Dict[str, str]] = None) -> None:
    with _lock:
        _counters[(name, _labels_tuple(labels))] += amount


def set_gauge(name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
    with _lock:
        _gauges[(name, _labels_tuple(labels))] = value


def observe_latency(name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
    with _lock:
        _histograms.setdefault((name, _labels_tuple(labels)), Histogram()).observe(value)


def record_event(name: str, payload: Dict[str, Any]) -> None:
    with _lock:
        _events.append({"name": name, "timestamp": time.time(), "payload": payload})


def counter_total(name: str) -> float:
    """Sum a counter across all of its label sets."""
    with _lock:
        return sum(value for (key, _), value in _counters.items() if key == name)


def get_metrics_snapshot() -> Dict[str, Any]:
    snapshot: Dict[str, Any] = {"counters": {}, "gauges": {}, "histograms": {}}
    with _lock:
        for (name, labels), value in _counters.items():
            snapshot["counters"].setdefault(name, []).append({"labels": dict(labels), "value": value})
        for (name, labels), value in _gauges.items():
            snapshot["gauges"].setdefault(name, []).append({"labels": dict(labels), "value": value})
        for (name, labels), histogram in _histograms.items():
            snapshot["histograms"].setdefault(name, []).append(
                {"labels": dict(labels), "stats": histogram.snapshot()}
            )
        snapshot["events"] = list(_events)
    return snapshot


def reset_metrics() -> None:
    """Testing helper."""
    with _lock:
        _counters.clear()
        _gauges.clear()
        _histograms.clear()
        _events.clear()
