"""In-process metric registry rendering the Prometheus text format."""

from __future__ import annotations

from threading import Lock
from typing import Mapping, Sequence


def _format_value(value: float) -> str:
    if value.is_integer():
        return str(int(value))
    return f"{value:.6f}".rstrip("0").rstrip(".")


def _format_labels(names: Sequence[str], values: Sequence[str]) -> str:
    if not names:
        return ""
    pairs = []
    for name, value in zip(names, values, strict=False):
        escaped = value.replace("\\", r"\\").replace("\n", r"\n").replace('"', r"\"")
        pairs.append(f'{name}="{escaped}"')
    return "{" + ",".join(pairs) + "}"


class _Metric:
    metric_type = "untyped"

    def __init__(self, name: str, description: str, label_names: Sequence[str]) -> None:
        self.name = name
        self.description = description
        self.label_names = tuple(label_names)
        self._samples: dict[tuple[str, ...], float] = {}
        self._lock = Lock()

    def _key(self, values: Sequence[object]) -> tuple[str, ...]:
        if len(values) != len(self.label_names):
            expected = ", ".join(self.label_names) or "<none>"
            raise ValueError(
                f"Metric '{self.name}' expected {len(self.label_names)} label values [{expected}] "
                f"but received {len(values)}"
            )
        return tuple(str(value) for value in values)

    def _named_key(self, labels: Mapping[str, object]) -> tuple[str, ...]:
        if set(labels) != set(self.label_names):
            expected = ", ".join(self.label_names) or "<none>"
            received = ", ".join(sorted(labels)) or "<none>"
            raise ValueError(
                f"Metric '{self.name}' expected labels [{expected}] but received [{received}]"
            )
        return tuple(str(labels[name]) for name in self.label_names)

    def _add(self, key: tuple[str, ...], amount: float) -> None:
        with self._lock:
            self._samples[key] = self._samples.get(key, 0.0) + amount

    def value(self, *label_values: object) -> float:
        with self._lock:
            return self._samples.get(self._key(label_values), 0.0)

    def labels(self, *values: object) -> "_BoundMetric":
        return _BoundMetric(self, self._key(values))

    def render(self) -> list[str]:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} {self.metric_type}"]
        with self._lock:
            samples = sorted(self._samples.items())
        if not samples:
            lines.append(f"{self.name} 0")
            return lines
        for key, value in samples:
            lines.append(f"{self.name}{_format_labels(self.label_names, key)} {_format_value(value)}")
        return lines


class CounterMetric(_Metric):
    metric_type = "counter"

    def inc(self, *, amount: float = 1.0, **labels: object) -> None:
        if amount < 0:
            raise ValueError("Counters cannot be incremented by negative values")
        self._add(self._named_key(labels), amount)


class GaugeMetric(_Metric):
    metric_type = "gauge"

    def set(self, value: float, **labels: object) -> None:
        key = self._named_key(labels)
        with self._lock:
            self._samples[key] = float(value)

    def inc(self, *, amount: float = 1.0, **labels: object) -> None:
        self._add(self._named_key(labels), amount)

    def dec(self, *, amount: float = 1.0, **labels: object) -> None:
        self._add(self._named_key(labels), -amount)


class _BoundMetric:
    """Metric bound to concrete label values: ``metric.labels("a").inc()``."""

    def __init__(self, metric: _Metric, key: tuple[str, ...]) -> None:
        self._metric = metric
        self._key = key

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0 and isinstance(self._metric, CounterMetric):
            raise ValueError("Counters cannot be incremented by negative values")
        self._metric._add(self._key, amount)

    def dec(self, amount: float = 1.0) -> None:
        if not isinstance(self._metric, GaugeMetric):
            raise AttributeError("Only gauges support dec()")
        self._metric._add(self._key, -amount)

    def set(self, value: float) -> None:
        if not isinstance(self._metric, GaugeMetric):
            raise AttributeError("Only gauges support set()")
        with self._metric._lock:
            self._metric._samples[self._key] = float(value)


class MetricsRegistry:
    """Collects metrics so they can be rendered together."""

    def __init__(self) -> None:
        self._metrics: dict[str, _Metric] = {}
        self._lock = Lock()

    def _register(self, metric: _Metric) -> None:
        with self._lock:
            if metric.name in self._metrics:
                raise ValueError(f"Metric '{metric.name}' already registered")
            self._metrics[metric.name] = metric

    def counter(self, name: str, description: str, *, label_names: Sequence[str] = ()) -> CounterMetric:
        metric = CounterMetric(name, description, label_names)
        self._register(metric)
        return metric

    def gauge(self, name: str, description: str, *, label_names: Sequence[str] = ()) -> GaugeMetric:
        metric = GaugeMetric(name, description, label_names)
        self._register(metric)
        return metric

    def reset(self) -> None:
        with self._lock:
            metrics = list(self._metrics.values())
        for metric in metrics:
            with metric._lock:
                metric._samples.clear()

    def render(self) -> str:
        lines: list[str] = []
        for name in sorted(self._metrics):
            lines.extend(self._metrics[name].render())
        return "\n".join(lines) + "\n"


# Shared registry instance used across the package.
registry = MetricsRegistry()
