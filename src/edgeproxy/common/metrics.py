"""Metrics utilities for exposing Prometheus-formatted data."""

from __future__ import annotations

from typing import Callable, Dict


class Counter:
    def __init__(self, name: str, description: str = "") -> None:
        self.name = name
        self.description = description
        self._value = 0.0

    def inc(self, amount: float = 1.0) -> None:
        self._value += amount

    @property
    def value(self) -> float:
        return self._value

    def render(self) -> str:
        return f"# HELP {self.name} {self.description}\n# TYPE {self.name} counter\n{self.name} {self._value}\n"


class LabeledCounter:
    """Counter partitioned by a single label, e.g. the resolution outcome."""

    def __init__(self, name: str, label: str, description: str = "") -> None:
        self.name = name
        self.label = label
        self.description = description
        self._values: Dict[str, float] = {}

    def inc(self, label_value: str, amount: float = 1.0) -> None:
        self._values[label_value] = self._values.get(label_value, 0.0) + amount

    def value(self, label_value: str) -> float:
        return self._values.get(label_value, 0.0)

    def render(self) -> str:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} counter"]
        for label_value in sorted(self._values):
            lines.append(f'{self.name}{{{self.label}="{label_value}"}} {self._values[label_value]}')
        return "\n".join(lines) + "\n"


class Gauge:
    def __init__(self, name: str, description: str = "", supplier: Callable[[], float] | None = None) -> None:
        self.name = name
        self.description = description
        self._value = 0.0
        self._supplier = supplier

    def set(self, value: float) -> None:
        self._value = value

    def render(self) -> str:
        value = self._supplier() if self._supplier else self._value
        return f"# HELP {self.name} {self.description}\n# TYPE {self.name} gauge\n{self.name} {value}\n"


class Histogram:
    def __init__(self, name: str, buckets: list[float], description: str = "") -> None:
        self.name = name
        self.description = description
        self._buckets = sorted(buckets)
        self._counts = {b: 0 for b in self._buckets}
        self._sum = 0.0
        self._count = 0

    def observe(self, value: float) -> None:
        self._count += 1
        self._sum += value
        for bucket in self._buckets:
            if value <= bucket:
                self._counts[bucket] += 1

    def render(self) -> str:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} histogram"]
        for bucket in self._buckets:
            lines.append(f'{self.name}_bucket{{le="{bucket}"}} {self._counts[bucket]}')
        lines.append(f'{self.name}_bucket{{le="+Inf"}} {self._count}')
        lines.append(f"{self.name}_sum {self._sum}")
        lines.append(f"{self.name}_count {self._count}")
        return "\n".join(lines) + "\n"


class MetricsRegistry:
    def __init__(self) -> None:
        self._metrics: Dict[str, object] = {}

    def register(self, metric):
        self._metrics[getattr(metric, "name")] = metric
        return metric

    def render(self) -> str:
        return "\n".join(metric.render() for metric in self._metrics.values()) + "\n"


GLOBAL_REGISTRY = MetricsRegistry()
