"""Fixed-capacity metric history used for charting."""

from __future__ import annotations

from collections import deque
from datetime import datetime, timezone
from typing import Iterable, Iterator

from .models import MetricSample

DEFAULT_CAPACITY = 30


class MetricHistory:
    """Append-only ring buffer; the oldest sample is evicted when full."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY, samples: Iterable[MetricSample] = ()) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._samples: deque[MetricSample] = deque(samples, maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._samples.maxlen or DEFAULT_CAPACITY

    def append(self, value: float, timestamp: datetime | None = None) -> MetricSample:
        sample = MetricSample(
            timestamp=timestamp or datetime.now(tz=timezone.utc),
            value=float(value),
        )
        self._samples.append(sample)
        return sample

    def latest(self) -> MetricSample | None:
        return self._samples[-1] if self._samples else None

    def samples(self) -> tuple[MetricSample, ...]:
        """Samples oldest-first."""

        return tuple(self._samples)

    def __len__(self) -> int:
        return len(self._samples)

    def __iter__(self) -> Iterator[MetricSample]:
        return iter(tuple(self._samples))


class MetricHistorySet:
    """Named histories sharing one capacity (cpu, memory, disk, io)."""

    def __init__(self, names: Iterable[str], capacity: int = DEFAULT_CAPACITY) -> None:
        self._capacity = capacity
        self._histories: dict[str, MetricHistory] = {name: MetricHistory(capacity) for name in names}

    def record(self, values: dict[str, float], timestamp: datetime | None = None) -> None:
        """Append one sample per metric, all stamped with the same instant."""

        timestamp = timestamp or datetime.now(tz=timezone.utc)
        for name, value in values.items():
            history = self._histories.get(name)
            if history is None:
                history = self._histories[name] = MetricHistory(self._capacity)
            history.append(value, timestamp)

    def get(self, name: str) -> MetricHistory:
        return self._histories[name]

    def names(self) -> tuple[str, ...]:
        return tuple(self._histories)

    def as_dict(self) -> dict[str, list[dict[str, object]]]:
        return {
            name: [sample.as_dict() for sample in history.samples()]
            for name, history in self._histories.items()
        }


__all__ = ["DEFAULT_CAPACITY", "MetricHistory", "MetricHistorySet"]
