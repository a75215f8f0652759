"""In-process metrics for the job engine.

Metrics are keyed by name plus an optional label set, so per-type series such
as ``jobs.processed_total{type="deploy"}`` live next to unlabelled ones.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Type, TypeVar

Labels = Tuple[Tuple[str, str], ...]


def _labels(values: Dict[str, Any]) -> Labels:
    return tuple(sorted((key, str(value)) for key, value in values.items()))


def series_name(name: str, labels: Labels = ()) -> str:
    if not labels:
        return name
    rendered = ",".join(f'{key}="{value}"' for key, value in labels)
    return f"{name}{{{rendered}}}"


@dataclass
class _Metric:
    name: str
    labels: Labels = ()
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def series(self) -> str:
        return series_name(self.name, self.labels)

    def samples(self) -> Dict[str, float]:
        raise NotImplementedError


@dataclass
class Counter(_Metric):
    _value: float = 0.0

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError(f"Counter {self.name} cannot decrease")
        with self._lock:
            self._value += amount

    @property
    def value(self) -> float:
        with self._lock:
            return self._value

    def samples(self) -> Dict[str, float]:
        return {self.series: self.value}


@dataclass
class Gauge(_Metric):
    _value: float = 0.0

    def set(self, value: float) -> None:
        with self._lock:
            self._value = float(value)

    @property
    def value(self) -> float:
        with self._lock:
            return self._value

    def samples(self) -> Dict[str, float]:
        return {self.series: self.value}


@dataclass
class Summary(_Metric):
    """Count, sum and maximum of observed values (e.g. executor durations)."""

    _count: int = 0
    _sum: float = 0.0
    _max: float = 0.0

    def observe(self, value: float) -> None:
        with self._lock:
            self._count += 1
            self._sum += value
            self._max = max(self._max, value)

    def samples(self) -> Dict[str, float]:
        with self._lock:
            count, total, peak = self._count, self._sum, self._max
        return {
            series_name(f"{self.name}_count", self.labels): float(count),
            series_name(f"{self.name}_sum", self.labels): total,
            series_name(f"{self.name}_max", self.labels): peak,
        }


M = TypeVar("M", bound=_Metric)


class MetricsRegistry:
    """Thread-safe registry of metrics keyed by name and labels."""

    def __init__(self) -> None:
        self._metrics: Dict[Tuple[str, Labels], _Metric] = {}
        self._lock = threading.Lock()

    def counter(self, name: str, **labels: Any) -> Counter:
        return self._get_or_create(Counter, name, labels)

    def gauge(self, name: str, **labels: Any) -> Gauge:
        return self._get_or_create(Gauge, name, labels)

    def summary(self, name: str, **labels: Any) -> Summary:
        return self._get_or_create(Summary, name, labels)

    def get(self, name: str, **labels: Any) -> Optional[_Metric]:
        with self._lock:
            return self._metrics.get((name, _labels(labels)))

    def snapshot(self, prefix: str = "") -> Dict[str, float]:
        with self._lock:
            metrics = [metric for (name, _), metric in self._metrics.items() if name.startswith(prefix)]
        values: Dict[str, float] = {}
        for metric in metrics:
            values.update(metric.samples())
        return values

    def _get_or_create(self, kind: Type[M], name: str, labels: Dict[str, Any]) -> M:
        key = (name, _labels(labels))
        with self._lock:
            metric = self._metrics.get(key)
            if metric is None:
                metric = kind(name=name, labels=key[1])
                self._metrics[key] = metric
            elif not isinstance(metric, kind):
                raise TypeError(f"Metric {series_name(*key)} is a {type(metric).__name__}")
            return metric


_DEFAULT_REGISTRY = MetricsRegistry()


def get_registry() -> MetricsRegistry:
    return _DEFAULT_REGISTRY


__all__ = [
    "Counter",
    "Gauge",
    "MetricsRegistry",
    "Summary",
    "get_registry",
    "series_name",
]
