from __future__ import annotations

from dataclasses import dataclass, field
import threading

LabelKey = tuple[tuple[str, str], ...]


def _label_key(labels: dict[str, str]) -> LabelKey:
    return tuple(sorted((key, str(value)) for key, value in labels.items()))


def _render(name: str, key: LabelKey) -> str:
    if not key:
        return name
    rendered = ",".join(f"{label}={value}" for label, value in key)
    return f"{name}{{{rendered}}}"


@dataclass
class _Summary:
    count: int = 0
    total: float = 0.0
    maximum: float = 0.0

    def add(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.maximum = max(self.maximum, value)


@dataclass
class InMemoryMetricsCollector:
    """Process-wide counters, handed to components explicitly at bootstrap."""

    counters: dict[tuple[str, LabelKey], int] = field(default_factory=dict)
    summaries: dict[tuple[str, LabelKey], _Summary] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def increment(self, name: str, value: int = 1, **labels: str) -> None:
        key = (name, _label_key(labels))
        with self._lock:
            self.counters[key] = self.counters.get(key, 0) + value

    def observe(self, name: str, value: float, **labels: str) -> None:
        key = (name, _label_key(labels))
        with self._lock:
            self.summaries.setdefault(key, _Summary()).add(value)

    def counter(self, name: str, **labels: str) -> int:
        return self.counters.get((name, _label_key(labels)), 0)

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            counters = {_render(name, key): value for (name, key), value in self.counters.items()}
            summaries = {
                _render(name, key): {
                    "count": summary.count,
                    "sum": round(summary.total, 3),
                    "max": round(summary.maximum, 3),
                }
                for (name, key), summary in self.summaries.items()
            }
        return {"counters": counters, "summaries": summaries}


class NoopMetricsCollector:
    def increment(self, name: str, value: int = 1, **labels: str) -> None:
        del name, value, labels

    def observe(self, name: str, value: float, **labels: str) -> None:
        del name, value, labels

    def snapshot(self) -> dict[str, object]:
        return {"counters": {}, "summaries": {}}
