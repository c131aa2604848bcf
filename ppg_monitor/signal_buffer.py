"""
Rolling buffer of timestamped PPG samples.

The buffer holds at most ``max_samples`` entries; appending past that
evicts the oldest sample first.  Windows handed out to the filter and the
quality evaluator are copies, so analysis never mutates the buffer.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from itertools import islice
from typing import Deque, Iterator, NamedTuple

import numpy as np


class Sample(NamedTuple):
    value: float
    timestamp: float       # seconds since measurement start


@dataclass(frozen=True)
class SignalWindow:
    """Contiguous, time-ordered slice of the buffer."""

    values: np.ndarray
    timestamps: np.ndarray

    def __len__(self) -> int:
        return len(self.values)

    @property
    def duration(self) -> float:
        """Time span covered by the window (0 for fewer than two samples)."""
        if len(self.timestamps) < 2:
            return 0.0
        return float(self.timestamps[-1] - self.timestamps[0])

    def observed_sample_rate(self, default: float) -> float:
        """Sample rate implied by the timestamps, or *default* if undefined."""
        duration = self.duration
        if duration <= 0:
            return default
        return (len(self.timestamps) - 1) / duration


class SignalBuffer:
    """
    FIFO sample buffer bounded to ``max_samples``.

    Parameters
    ----------
    max_samples:
        Maximum number of samples retained (default 600 ≈ 20 s at 30 Hz).
    """

    def __init__(self, max_samples: int = 600) -> None:
        if max_samples < 1:
            raise ValueError(f"max_samples must be >= 1, got {max_samples}")
        self.max_samples = max_samples
        self._samples: Deque[Sample] = deque(maxlen=max_samples)

    def append(self, sample: Sample) -> None:
        self._samples.append(sample)

    def windowed(self, n: int | None = None) -> SignalWindow:
        """
        Return the most recent *n* samples (all of them when *n* is None).

        Fewer samples are returned if the buffer holds less than *n*.
        """
        count = len(self._samples)
        if n is None or n > count:
            n = count
        if n <= 0:
            return SignalWindow(np.array([], dtype=np.float64), np.array([], dtype=np.float64))
        recent = list(islice(self._samples, count - n, count))
        values = np.fromiter((s.value for s in recent), dtype=np.float64, count=n)
        timestamps = np.fromiter((s.timestamp for s in recent), dtype=np.float64, count=n)
        return SignalWindow(values, timestamps)

    def clear(self) -> None:
        self._samples.clear()

    @property
    def fill_ratio(self) -> float:
        """How full the rolling buffer is (0 – 1)."""
        return len(self._samples) / self.max_samples

    def __len__(self) -> int:
        return len(self._samples)

    def __iter__(self) -> Iterator[Sample]:
        return iter(tuple(self._samples))
