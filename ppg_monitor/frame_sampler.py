"""
Frame sampler.

With the torch on and a fingertip pressed on the lens, the frame is a
nearly uniform red field whose brightness rises and falls with the blood
volume under the skin.  Each frame is reduced to one scalar: the mean
red-channel intensity over the central region of the image.

Only the middle ``roi_fraction`` of each axis is read, and only every
``stride``-th pixel in it.  This keeps per-frame cost low and stays clear
of the vignetted, distorted border of the lens.
"""

from __future__ import annotations

from typing import Tuple

import numpy as np

from .errors import FrameReadError


class FrameSampler:
    """
    Reduce BGR frames to a single PPG sample.

    Parameters
    ----------
    roi_fraction:
        Fraction of width and height sampled around the centre
        (default 0.5 → the middle 50 % × 50 %).
    stride:
        Pixel step along each axis inside the region (default 2).
    channel:
        Channel index to average.  Frames are BGR (OpenCV order) so the
        red channel is 2.
    """

    def __init__(
        self,
        roi_fraction: float = 0.5,
        stride: int = 2,
        channel: int = 2,
    ) -> None:
        if not 0.0 < roi_fraction <= 1.0:
            raise ValueError(f"roi_fraction must be in (0, 1], got {roi_fraction}")
        if stride < 1:
            raise ValueError(f"stride must be >= 1, got {stride}")
        self.roi_fraction = roi_fraction
        self.stride = stride
        self.channel = channel

    def sample(self, frame: np.ndarray | None) -> float:
        """
        Return the mean intensity of the sampled channel.

        Raises
        ------
        FrameReadError
            If the frame is missing, malformed, or the region holds no pixels.
        """
        region = self._region(frame)
        return float(region[:, :, self.channel].mean())

    def color_means(self, frame: np.ndarray | None) -> Tuple[float, float, float]:
        """Return ``(red, green, blue)`` means over the same region."""
        region = self._region(frame)
        means = region[:, :, :3].reshape(-1, 3).mean(axis=0)
        return float(means[2]), float(means[1]), float(means[0])

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _region(self, frame: np.ndarray | None) -> np.ndarray:
        if frame is None:
            raise FrameReadError("No frame data.")
        frame = np.asarray(frame)
        if frame.ndim != 3 or frame.shape[2] < 3:
            raise FrameReadError(f"Expected an H × W × 3 frame, got shape {frame.shape}")
        if self.channel >= frame.shape[2]:
            raise FrameReadError(f"Frame has no channel {self.channel}")

        h, w = frame.shape[:2]
        margin = (1.0 - self.roi_fraction) / 2.0
        y0, y1 = int(h * margin), int(h * (1.0 - margin))
        x0, x1 = int(w * margin), int(w * (1.0 - margin))
        # Tiny frames: fall back to the single centre pixel row/column
        if y1 <= y0 and h > 0:
            y0, y1 = h // 2, h // 2 + 1
        if x1 <= x0 and w > 0:
            x0, x1 = w // 2, w // 2 + 1

        region = frame[y0:y1:self.stride, x0:x1:self.stride]
        if region.size == 0:
            raise FrameReadError(f"No readable pixels in frame of shape {frame.shape}")
        return region.astype(np.float64, copy=False)
