"""
Band-pass filter for the raw PPG signal.

Algorithm
---------
1. Subtract the mean of the whole window (DC removal).
2. First-order exponential low-pass at ``high_cutoff_hz`` (default 3.5 Hz)
   removes sensor and quantisation noise:
   ``y[i] = y[i-1] + a·(x[i] − y[i-1])``, ``a = dt / (rc + dt)``.
3. First-order exponential high-pass at ``low_cutoff_hz`` (default 0.7 Hz)
   removes baseline drift from ambient light and finger pressure:
   ``y[i] = a·(y[i-1] + x[i] − x[i-1])``, ``a = rc / (rc + dt)``.

with ``rc = 1 / (2π·cutoff)`` and ``dt = 1 / fs``.  Both stages start from
``y[0] = x[0]``.  The pass band 0.7 – 3.5 Hz is 42 – 210 BPM.

The filter is recomputed from scratch over the whole buffer on every tick;
no state is carried between calls.  Inputs of 10 samples or fewer are
returned unchanged.
"""

from __future__ import annotations

import math
from typing import Sequence

import numpy as np
from scipy.signal import lfilter

# Shortest input that is filtered; anything at or below is passed through
PASSTHROUGH_LENGTH = 10


def _rc_dt(cutoff_hz: float, sample_rate_hz: float) -> tuple[float, float]:
    if sample_rate_hz <= 0:
        raise ValueError(f"sample_rate_hz must be positive, got {sample_rate_hz}")
    rc = 1.0 / (2.0 * math.pi * cutoff_hz)
    dt = 1.0 / sample_rate_hz
    return rc, dt


def low_pass(signal: np.ndarray, cutoff_hz: float, sample_rate_hz: float) -> np.ndarray:
    """Single-pole exponential smoothing filter."""
    rc, dt = _rc_dt(cutoff_hz, sample_rate_hz)
    alpha = dt / (rc + dt)
    # Initial condition makes y[0] == x[0]
    zi = [(1.0 - alpha) * signal[0]]
    filtered, _ = lfilter([alpha], [1.0, alpha - 1.0], signal, zi=zi)
    return filtered


def high_pass(signal: np.ndarray, cutoff_hz: float, sample_rate_hz: float) -> np.ndarray:
    """Single-pole exponential high-pass filter."""
    rc, dt = _rc_dt(cutoff_hz, sample_rate_hz)
    alpha = rc / (rc + dt)
    zi = [(1.0 - alpha) * signal[0]]
    filtered, _ = lfilter([alpha, -alpha], [1.0, -alpha], signal, zi=zi)
    return filtered


class BandpassFilter:
    """
    Two-stage (low-pass then high-pass) IIR band-pass filter.

    Parameters
    ----------
    low_cutoff_hz:
        High-pass corner (default 0.7 Hz = 42 BPM).
    high_cutoff_hz:
        Low-pass corner (default 3.5 Hz = 210 BPM).
    """

    def __init__(self, low_cutoff_hz: float = 0.7, high_cutoff_hz: float = 3.5) -> None:
        if not 0 < low_cutoff_hz < high_cutoff_hz:
            raise ValueError(
                f"Invalid cutoffs: low={low_cutoff_hz} Hz, high={high_cutoff_hz} Hz"
            )
        self.low_cutoff_hz = low_cutoff_hz
        self.high_cutoff_hz = high_cutoff_hz

    def apply(self, signal: Sequence[float] | np.ndarray, sample_rate_hz: float) -> np.ndarray:
        """
        Return the band-passed signal, same length as *signal*.

        Inputs of ``PASSTHROUGH_LENGTH`` samples or fewer come back
        unchanged (as a float array), without mean removal.
        """
        x = np.asarray(signal, dtype=np.float64)
        if len(x) <= PASSTHROUGH_LENGTH:
            return x.copy()

        centered = x - x.mean()
        smoothed = low_pass(centered, self.high_cutoff_hz, sample_rate_hz)
        return high_pass(smoothed, self.low_cutoff_hz, sample_rate_hz)
