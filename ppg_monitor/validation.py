"""
Summary statistics for a finished measurement.

The session's reported average is the plain integer mean of its readings.
The helpers here add context to that number: a category, a confidence
score from the spread of the readings, and an error margin.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Tuple

import numpy as np


class BPMCategory(Enum):
    LOW = "Low (Bradycardia)"
    ATHLETE = "Athletic Range"
    NORMAL = "Normal"
    ELEVATED = "Elevated"
    HIGH = "High (Tachycardia)"


class ConfidenceLevel(Enum):
    VERY_LOW = "Very Low"
    LOW = "Low"
    MODERATE = "Moderate"
    HIGH = "High"
    VERY_HIGH = "Very High"


@dataclass
class MeasurementResult:
    average_bpm: int
    readings: List[int] = field(default_factory=list)
    confidence: float = 0.0
    error_margin: Optional[int] = None
    category: BPMCategory = BPMCategory.NORMAL
    duration: float = 0.0

    @property
    def confidence_level(self) -> ConfidenceLevel:
        return confidence_level(self.confidence)


def bpm_category(bpm: int) -> BPMCategory:
    if bpm < 50:
        return BPMCategory.LOW
    if bpm < 60:
        return BPMCategory.ATHLETE
    if bpm < 100:
        return BPMCategory.NORMAL
    if bpm < 120:
        return BPMCategory.ELEVATED
    return BPMCategory.HIGH


def _iqr_clean(readings: np.ndarray, k: float) -> np.ndarray:
    """Drop readings outside ``[q1 − k·iqr, q3 + k·iqr]`` (index quartiles)."""
    ordered = np.sort(readings)
    q1 = ordered[len(ordered) // 4]
    q3 = ordered[(len(ordered) * 3) // 4]
    iqr = q3 - q1
    mask = (readings >= q1 - k * iqr) & (readings <= q3 + k * iqr)
    return readings[mask]


def calculate_confidence(readings: Sequence[int], quality_score: float = 1.0) -> float:
    """
    Confidence (0 – 0.99) that the readings describe a stable pulse.

    Needs at least 5 readings after removing extreme (3 × IQR) outliers.
    The score weighs consistency (std-dev), the coefficient of variation
    and the number of readings, then scales by *quality_score*.  Camera
    PPG never earns full confidence, hence the 0.99 cap.
    """
    if len(readings) < 5:
        return 0.0
    cleaned = _iqr_clean(np.asarray(readings, dtype=np.float64), 3.0)
    if len(cleaned) < 5:
        return 0.0

    mean = float(cleaned.mean())
    std = float(cleaned.std())
    cv = std / mean if mean > 0 else 1.0

    count_factor = min(1.0, len(cleaned) / 20.0)
    consistency = max(0.0, min(1.0, 1.0 - std / 8.0))
    cv_score = max(0.0, min(1.0, 1.0 - cv * 20.0))

    base = consistency * 0.5 + cv_score * 0.3 + count_factor * 0.2
    return max(0.0, min(0.99, base * quality_score))


def confidence_level(confidence: float) -> ConfidenceLevel:
    if confidence >= 0.85:
        return ConfidenceLevel.VERY_HIGH
    if confidence >= 0.7:
        return ConfidenceLevel.HIGH
    if confidence >= 0.5:
        return ConfidenceLevel.MODERATE
    if confidence >= 0.3:
        return ConfidenceLevel.LOW
    return ConfidenceLevel.VERY_LOW


def error_bounds(readings: Sequence[int]) -> Optional[Tuple[int, int, int]]:
    """
    Return ``(min_bpm, max_bpm, margin)`` or *None* with fewer than 5 readings.

    Margin is ``ceil(1.5 × std)`` of the 1.5 × IQR-cleaned readings,
    clamped to 2 – 10 BPM.
    """
    if len(readings) < 5:
        return None
    cleaned = _iqr_clean(np.asarray(readings, dtype=np.float64), 1.5)
    if len(cleaned) < 3:
        return None
    margin = int(math.ceil(float(cleaned.std()) * 1.5))
    margin = max(2, min(margin, 10))
    return int(cleaned.min()), int(cleaned.max()), margin


def summarize(
    readings: Sequence[int],
    duration: float = 0.0,
    quality_score: float = 1.0,
) -> Optional[MeasurementResult]:
    """Build the result for *readings*; *None* if there are none."""
    if not readings:
        return None
    values = [int(r) for r in readings]
    average = sum(values) // len(values)
    bounds = error_bounds(values)
    return MeasurementResult(
        average_bpm=average,
        readings=values,
        confidence=calculate_confidence(values, quality_score),
        error_margin=bounds[2] if bounds is not None else None,
        category=bpm_category(average),
        duration=duration,
    )
