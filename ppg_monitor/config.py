"""
Measurement configuration.

Every tunable constant of the detector lives in :class:`MeasurementConfig`
so that the session and the command line share a single source of truth.
The quality and peak thresholds are calibration constants chosen against
real finger-on-lens traces, not physically derived values.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class MeasurementConfig:
    """
    Parameters
    ----------
    sample_rate_hz:
        Target camera frame rate.  Used to convert peak spacing to seconds.
    measurement_duration_seconds:
        Auto-stop after this much elapsed time.
    min_samples_for_calculation:
        Samples required before a BPM estimate is attempted (≈ 5 s at 30 Hz).
    max_samples:
        Rolling buffer length (≈ 20 s at 30 Hz).
    min_peak_distance_seconds:
        Minimum spacing between two accepted peaks (0.3 s → 200 BPM).
    low_cutoff_hz / high_cutoff_hz:
        Band-pass corners (0.7 Hz → 42 BPM, 3.5 Hz → 210 BPM).
    min_bpm / max_bpm:
        Physiological range; readings outside it are never reported.
    quality_window:
        Number of raw samples scored by the quality evaluator.
    use_spectral_check:
        Cross-check the peak estimate with the dominant FFT frequency.
    use_observed_sample_rate:
        Derive the sample rate from frame timestamps instead of trusting
        ``sample_rate_hz``.
    """

    sample_rate_hz: float = 30.0
    measurement_duration_seconds: float = 20.0
    min_samples_for_calculation: int = 150
    max_samples: int = 600
    min_peak_distance_seconds: float = 0.3
    low_cutoff_hz: float = 0.7
    high_cutoff_hz: float = 3.5
    min_bpm: int = 40
    max_bpm: int = 200
    quality_window: int = 30
    use_spectral_check: bool = False
    use_observed_sample_rate: bool = False

    def __post_init__(self) -> None:
        if self.sample_rate_hz <= 0:
            raise ValueError(f"sample_rate_hz must be positive, got {self.sample_rate_hz}")
        if self.measurement_duration_seconds <= 0:
            raise ValueError("measurement_duration_seconds must be positive")
        if self.max_samples < 1:
            raise ValueError("max_samples must be at least 1")
        if not 1 <= self.min_samples_for_calculation <= self.max_samples:
            raise ValueError(
                f"min_samples_for_calculation must be in [1, {self.max_samples}], "
                f"got {self.min_samples_for_calculation}"
            )
        if not 0 < self.low_cutoff_hz < self.high_cutoff_hz:
            raise ValueError(
                f"Invalid band-pass corners: {self.low_cutoff_hz} – {self.high_cutoff_hz} Hz"
            )
        if not 0 < self.min_bpm < self.max_bpm:
            raise ValueError(f"Invalid BPM range: {self.min_bpm} – {self.max_bpm}")
        if self.min_peak_distance_seconds < 0:
            raise ValueError("min_peak_distance_seconds must not be negative")
        if self.quality_window < 2:
            raise ValueError("quality_window must be at least 2")

    @property
    def min_peak_distance(self) -> int:
        """Minimum peak spacing in samples (never below 1)."""
        return max(int(self.sample_rate_hz * self.min_peak_distance_seconds), 1)
