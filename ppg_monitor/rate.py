"""
Heart-rate estimation from detected pulse peaks.

Algorithm
---------
1. Convert consecutive peak spacings to intervals in seconds.
2. Drop intervals whose implied rate ``60 / interval`` lies outside the
   physiological range (default 40 – 200 BPM).
3. Take the **median** of the remaining intervals (the upper-middle one
   for an even count).  A single missed or doubled peak produces one long
   or short interval; the median ignores it where the mean would be
   dragged away.
4. ``BPM = round(60 / median_interval)``.

Two independent estimates are available as an optional cross-check: the
dominant FFT bin in the BPM band, refined by parabolic interpolation, and
the strongest autocorrelation lag.  :meth:`RateEstimator.combine` merges
them with the peak estimate.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)


class RateEstimator:
    """
    Parameters
    ----------
    min_bpm / max_bpm:
        Physiological range.  No value outside it is ever returned.
    min_peaks:
        Peaks required before an estimate is attempted (default 3).
    """

    def __init__(self, min_bpm: float = 40.0, max_bpm: float = 200.0, min_peaks: int = 3) -> None:
        if not 0 < min_bpm < max_bpm:
            raise ValueError(f"Invalid BPM range: {min_bpm} – {max_bpm}")
        self.min_bpm = min_bpm
        self.max_bpm = max_bpm
        self.min_peaks = max(min_peaks, 2)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def calculate_bpm(self, peaks: Sequence[int], sample_rate_hz: float) -> Optional[int]:
        """
        Return the BPM implied by peak indices, or *None* when unavailable.

        *None* is not an error: it means too few peaks or no plausible
        interval yet.
        """
        if len(peaks) < self.min_peaks:
            return None
        if sample_rate_hz <= 0:
            raise ValueError(f"sample_rate_hz must be positive, got {sample_rate_hz}")
        intervals = np.diff(np.asarray(peaks, dtype=np.float64)) / sample_rate_hz
        return self._bpm_from_intervals(intervals)

    def calculate_bpm_from_times(self, peak_times: Sequence[float]) -> Optional[int]:
        """Same as :meth:`calculate_bpm` but with peak timestamps in seconds."""
        if len(peak_times) < self.min_peaks:
            return None
        intervals = np.diff(np.asarray(peak_times, dtype=np.float64))
        return self._bpm_from_intervals(intervals)

    def spectral_bpm(self, signal: Sequence[float] | np.ndarray, sample_rate_hz: float) -> Optional[int]:
        """
        Return the dominant frequency of *signal* within the BPM band.

        Needs at least 64 samples.  Returns *None* if the band holds no
        bins or no power.
        """
        x = np.asarray(signal, dtype=np.float64)
        if len(x) < 64:
            return None

        n = len(x)
        freqs = np.fft.rfftfreq(n, d=1.0 / sample_rate_hz)   # Hz
        power = np.abs(np.fft.rfft(x - x.mean())) ** 2

        band_mask = (freqs >= self.min_bpm / 60.0) & (freqs <= self.max_bpm / 60.0)
        if not band_mask.any():
            return None
        band_power = power[band_mask]
        band_freqs = freqs[band_mask]
        if float(band_power.sum()) <= 0.0:
            return None

        peak_idx = int(np.argmax(band_power))
        peak_freq = band_freqs[peak_idx]

        # Parabolic interpolation for sub-bin frequency resolution
        if 0 < peak_idx < len(band_power) - 1:
            alpha = band_power[peak_idx - 1]
            beta = band_power[peak_idx]
            gamma = band_power[peak_idx + 1]
            denom = alpha - 2 * beta + gamma
            if denom != 0:
                p = 0.5 * (alpha - gamma) / denom
                freq_step = band_freqs[1] - band_freqs[0]
                peak_freq = band_freqs[peak_idx] + p * freq_step

        bpm = int(round(peak_freq * 60.0))
        if not self.min_bpm <= bpm <= self.max_bpm:
            return None
        return bpm

    def autocorrelation_bpm(self, signal: Sequence[float] | np.ndarray, sample_rate_hz: float) -> Optional[int]:
        """
        Return the BPM of the strongest self-similarity lag in the BPM band.

        Lags run from ``60·fs / max_bpm`` to ``60·fs / min_bpm`` samples; each
        correlation sum is normalised by its overlap length.  Needs at least
        128 samples and a window longer than twice the largest lag.
        """
        x = np.asarray(signal, dtype=np.float64)
        n = len(x)
        if n < 128 or sample_rate_hz <= 0:
            return None

        min_lag = max(int(sample_rate_hz * 60.0 / self.max_bpm), 1)
        max_lag = int(sample_rate_hz * 60.0 / self.min_bpm)
        if max_lag >= n // 2:
            return None

        centered = x - x.mean()
        if float(np.dot(centered, centered)) <= 0.0:
            return None

        lags = np.arange(min_lag, max_lag + 1)
        full = np.correlate(centered, centered, mode="full")[n - 1:]
        correlation = full[lags] / (n - lags)
        best = int(np.argmax(correlation))
        if correlation[best] <= 0.0:
            return None

        bpm = int(round(60.0 * sample_rate_hz / lags[best]))
        if not self.min_bpm <= bpm <= self.max_bpm:
            return None
        return bpm

    @staticmethod
    def combine(
        peak_bpm: Optional[int],
        fft_bpm: Optional[int],
        autocorr_bpm: Optional[int] = None,
        agreement_bpm: int = 10,
    ) -> Optional[int]:
        """
        Merge the peak estimate with the spectral and autocorrelation ones.

        The first agreeing pair (within *agreement_bpm*) is averaged, tried
        in the order autocorrelation/peak, autocorrelation/FFT, peak/FFT.
        Three disagreeing estimates give their median; otherwise the peak
        estimate wins.  Nothing is reported without a peak estimate.
        """
        if peak_bpm is None:
            return None

        def agree(a: Optional[int], b: Optional[int]) -> bool:
            return a is not None and b is not None and abs(a - b) <= agreement_bpm

        if agree(autocorr_bpm, peak_bpm):
            return (autocorr_bpm + peak_bpm) // 2
        if agree(autocorr_bpm, fft_bpm):
            return (autocorr_bpm + fft_bpm) // 2
        if agree(peak_bpm, fft_bpm):
            return (peak_bpm + fft_bpm) // 2
        if fft_bpm is not None and autocorr_bpm is not None:
            return sorted((peak_bpm, fft_bpm, autocorr_bpm))[1]
        if fft_bpm is not None or autocorr_bpm is not None:
            logger.debug(
                "Estimates disagree: peak=%d fft=%s autocorrelation=%s.",
                peak_bpm, fft_bpm, autocorr_bpm,
            )
        return peak_bpm

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _bpm_from_intervals(self, intervals: np.ndarray) -> Optional[int]:
        intervals = intervals[intervals > 0]
        if len(intervals) == 0:
            return None
        rates = 60.0 / intervals
        valid = intervals[(rates >= self.min_bpm) & (rates <= self.max_bpm)]
        if len(valid) == 0:
            return None

        median = float(np.sort(valid)[len(valid) // 2])
        return int(round(60.0 / median))
