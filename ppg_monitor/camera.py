"""
OpenCV camera backend.

Wraps ``cv2.VideoCapture`` (any webcam index, or a recorded video file)
and runs a background grabber thread that publishes frames into the
device's :class:`~ppg_monitor.hardware.FrameSlot`.  The slot keeps only the
newest frame, so a slow consumer skips frames instead of falling behind.

OpenCV has no torch control.  ``torch_available`` declares whether a light
source is present next to the lens; torch on/off is then logged only.
"""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Tuple, Union

import cv2
import numpy as np

from .hardware import CameraDevice, FrameSlot, PermissionStatus

logger = logging.getLogger(__name__)

Source = Union[int, str, Path]


class OpenCVCamera(CameraDevice):
    """
    Parameters
    ----------
    source:
        OpenCV camera index, or a path to a video file.
    resolution:
        (width, height) requested from the device.
    fps:
        Target frame rate.  Video files are paced to this rate.
    torch_available:
        Whether an illumination source is available for the lens.
    """

    def __init__(
        self,
        source: Source = 0,
        resolution: Tuple[int, int] = (640, 480),
        fps: int = 30,
        torch_available: bool = True,
    ) -> None:
        super().__init__(device_id=f"opencv:{source}")
        self.source = source
        self.resolution = resolution
        self.fps = fps
        self.torch_available = torch_available

        self._cap: cv2.VideoCapture | None = None
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._torch_on = False

    @property
    def is_file(self) -> bool:
        return isinstance(self.source, (str, Path))

    # ------------------------------------------------------------------
    # Capability queries
    # ------------------------------------------------------------------

    def is_available(self) -> bool:
        if self.is_file:
            return Path(self.source).is_file()
        return True

    def has_torch(self) -> bool:
        return self.torch_available

    def permission_status(self) -> PermissionStatus:
        # Desktop OpenCV has no permission model; failure to open is
        # reported as CameraUnavailable by open().
        return PermissionStatus.AUTHORIZED

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> None:
        """Open the capture device and start the grabber thread."""
        if self._cap is not None:
            return
        super().open()
        source = str(self.source) if self.is_file else self.source
        cap = cv2.VideoCapture(source)
        if not cap.isOpened():
            cap.release()
            raise RuntimeError(f"Cannot open video source {self.source!r}")
        if not self.is_file:
            w, h = self.resolution
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, w)
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, h)
            cap.set(cv2.CAP_PROP_FPS, self.fps)
            # Keep the driver queue short; the slot already holds the newest frame
            cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        self._cap = cap

        # Each open gets its own stop flag; a grabber that outlives close()
        # only ever touches the capture and slot it was started with
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._capture_loop,
            args=(cap, self.frames, self._stop_event),
            name="ppg-grabber",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "Camera opened – source=%s resolution=%s fps=%d",
            self.source,
            self.resolution,
            self.fps,
        )

    def close(self) -> None:
        """Stop the grabber thread and release the device."""
        self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=2.0)
            if self._thread.is_alive():
                logger.warning("Grabber thread did not stop within 2 s.")
        self._thread = None
        if self._cap is not None:
            self._cap.release()
            self._cap = None
            logger.info(
                "Camera closed – %d frames delivered, %d dropped.",
                self.frames.delivered,
                self.frames.dropped,
            )
        super().close()

    def set_torch(self, on: bool) -> None:
        if not self.torch_available:
            raise RuntimeError("No illumination source available.")
        self._torch_on = on
        logger.info("Torch %s.", "on" if on else "off")

    @property
    def torch_on(self) -> bool:
        return self._torch_on

    # Context-manager support
    def __enter__(self) -> "OpenCVCamera":
        self.open()
        return self

    def __exit__(self, *_) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _capture_loop(self, cap: cv2.VideoCapture, slot: FrameSlot, stop_event: threading.Event) -> None:
        """Grab frames until stopped, the source ends or it keeps failing."""
        frame_interval = 1.0 / self.fps if self.fps > 0 else 0.0
        null_streak = 0
        while not stop_event.is_set():
            started = time.monotonic()
            ok, frame = cap.read()
            if not ok or frame is None:
                if self.is_file:
                    logger.info("End of video file reached.")
                    break
                null_streak += 1
                if null_streak >= 10:
                    logger.error("Camera returned 10 consecutive empty frames – aborting.")
                    break
                continue
            null_streak = 0
            if frame.ndim == 3 and frame.shape[2] == 4:
                frame = frame[:, :, :3]
            slot.put(np.ascontiguousarray(frame), started)

            if self.is_file and frame_interval:
                # Replay recordings in real time
                remaining = frame_interval - (time.monotonic() - started)
                if remaining > 0:
                    stop_event.wait(remaining)
        slot.close()
        logger.debug("Capture loop exited.")
