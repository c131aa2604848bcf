"""
Signal-quality evaluation.

With the torch on, a fingertip that covers the lens gives:
  - A bright red field (mean red intensity well above 100).
  - A visible pulsatile swing of a few intensity levels.
  - Small, steady frame-to-frame changes.
  - A red tint: red well above the green and blue levels.

An uncovered lens, a loose finger or a moving hand breaks one of these.
The evaluator scores the most recent raw (unfiltered) samples and maps
them onto four levels used to guide the user.  The thresholds are
empirical calibration constants, not physical ones.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional, Sequence, Tuple

import numpy as np


class SignalQuality(Enum):
    POOR = "poor"
    FAIR = "fair"
    GOOD = "good"
    EXCELLENT = "excellent"

    @property
    def hint(self) -> str:
        """User-facing guidance for this level."""
        return _HINTS[self]


_HINTS = {
    SignalQuality.POOR: "Place finger firmly covering camera and flash",
    SignalQuality.FAIR: "Hold steady...",
    SignalQuality.GOOD: "Detecting pulse...",
    SignalQuality.EXCELLENT: "Excellent signal",
}


class MotionDetector:
    """
    Flags hand movement from the mean absolute first difference.

    Normal pulsation changes the red mean by a few levels per frame;
    shifting the finger changes it by tens.

    Parameters
    ----------
    window:
        Number of most recent samples examined (default 10).
    threshold:
        Mean absolute frame-to-frame change above which motion is
        excessive (default 20).
    """

    def __init__(self, window: int = 10, threshold: float = 20.0) -> None:
        self.window = window
        self.threshold = threshold

    def is_excessive(self, values: Sequence[float] | np.ndarray) -> bool:
        recent = np.asarray(values, dtype=np.float64)[-self.window:]
        if len(recent) < self.window or len(recent) < 2:
            return False
        return float(np.abs(np.diff(recent)).mean()) > self.threshold


class QualityEvaluator:
    """
    Heuristic quality classifier over the last ``window`` raw samples.

    Rules, first match wins:

    * red mean of the current frame below ``red_dominance × (green + blue)``
      → POOR (the lens sees a scene, not a fingertip)
    * ``mean < poor_mean`` or ``amplitude < poor_amplitude`` → POOR
      (finger not covering the sensor)
    * excessive motion → POOR
    * ``mean < fair_mean`` or ``amplitude < fair_amplitude`` or
      ``std < fair_std`` → FAIR (weak contact)
    * ``std < good_std`` → GOOD
    * otherwise → EXCELLENT
    """

    def __init__(
        self,
        window: int = 30,
        poor_mean: float = 100.0,
        poor_amplitude: float = 2.0,
        fair_mean: float = 150.0,
        fair_amplitude: float = 5.0,
        fair_std: float = 1.0,
        good_std: float = 3.0,
        red_dominance: float = 0.8,
        motion: MotionDetector | None = None,
    ) -> None:
        self.window = window
        self.poor_mean = poor_mean
        self.poor_amplitude = poor_amplitude
        self.fair_mean = fair_mean
        self.fair_amplitude = fair_amplitude
        self.fair_std = fair_std
        self.good_std = good_std
        self.red_dominance = red_dominance
        self.motion = motion if motion is not None else MotionDetector()

    def evaluate(
        self,
        recent_samples: Sequence[float] | np.ndarray,
        color: Optional[Tuple[float, float, float]] = None,
    ) -> SignalQuality:
        """
        Classify the last ``window`` raw samples.

        *color* is the ``(red, green, blue)`` mean of the newest frame; when
        given, a frame that is not red-dominated is POOR regardless of the
        sample statistics.
        """
        if color is not None and not self.is_red_dominant(color):
            return SignalQuality.POOR

        values = np.asarray(recent_samples, dtype=np.float64)
        if len(values) < self.window:
            return SignalQuality.POOR
        values = values[-self.window:]

        mean = float(values.mean())
        amplitude = float(values.max() - values.min())
        std = float(values.std())

        if mean < self.poor_mean or amplitude < self.poor_amplitude:
            return SignalQuality.POOR
        if self.motion.is_excessive(values):
            return SignalQuality.POOR
        if mean < self.fair_mean or amplitude < self.fair_amplitude or std < self.fair_std:
            return SignalQuality.FAIR
        if std < self.good_std:
            return SignalQuality.GOOD
        return SignalQuality.EXCELLENT

    def is_red_dominant(self, color: Tuple[float, float, float]) -> bool:
        red, green, blue = color
        return red >= (green + blue) * self.red_dominance

    @staticmethod
    def score(quality: SignalQuality) -> float:
        """Numeric weight of a quality level, used to scale confidence."""
        return _SCORES[quality]


_SCORES = {
    SignalQuality.POOR: 0.25,
    SignalQuality.FAIR: 0.6,
    SignalQuality.GOOD: 0.85,
    SignalQuality.EXCELLENT: 1.0,
}
