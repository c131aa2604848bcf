"""
Pulse peak detection on the band-passed PPG signal.

A sample is a peak when it is a strict local maximum, lies above an
adaptive threshold (the 60th percentile of ``|signal|`` over the window)
and is at least ``min_distance`` samples after the previously accepted
peak.  Candidates are accepted greedily from left to right; an accepted
peak is never replaced by a later, higher one.

The percentile threshold follows the amplitude of each session, and the
minimum distance keeps the dicrotic notch of one pulse from being counted
as a second beat.
"""

from __future__ import annotations

from typing import List, Sequence

import numpy as np


class PeakDetector:
    """
    Parameters
    ----------
    threshold_percentile:
        Percentile of the absolute signal used as the minimum peak height
        (default 60).
    """

    def __init__(self, threshold_percentile: float = 60.0) -> None:
        if not 0.0 <= threshold_percentile <= 100.0:
            raise ValueError(f"threshold_percentile must be in [0, 100], got {threshold_percentile}")
        self.threshold_percentile = threshold_percentile

    def threshold(self, signal: np.ndarray) -> float:
        return float(np.percentile(np.abs(signal), self.threshold_percentile))

    def find_peaks(self, signal: Sequence[float] | np.ndarray, min_distance: int) -> List[int]:
        """Return the indices of accepted peaks in ascending order."""
        s = np.asarray(signal, dtype=np.float64)
        if len(s) <= 2:
            return []
        min_distance = max(int(min_distance), 1)

        centre = s[1:-1]
        is_candidate = (
            (centre > s[:-2])
            & (centre > s[2:])
            & (centre > self.threshold(s))
        )
        candidates = np.flatnonzero(is_candidate) + 1

        peaks: List[int] = []
        for idx in candidates:
            if not peaks or idx - peaks[-1] >= min_distance:
                peaks.append(int(idx))
        return peaks
