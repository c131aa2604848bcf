"""
Shared fixtures: a scriptable camera handle and synthetic PPG frames.
"""

from __future__ import annotations

import threading
import time

import numpy as np
import pytest

from ppg_monitor.events import QueueListener
from ppg_monitor.hardware import CameraDevice, PermissionStatus


class FakeCamera(CameraDevice):
    """Camera handle that records every hardware call."""

    def __init__(
        self,
        device_id: str = "fake",
        available: bool = True,
        torch: bool = True,
        permission: PermissionStatus = PermissionStatus.AUTHORIZED,
        grant: bool = True,
        torch_fails: bool = False,
        feed=None,
    ) -> None:
        super().__init__(device_id)
        self.available = available
        self.torch = torch
        self.permission = permission
        self.grant = grant
        self.torch_fails = torch_fails
        self.feed = feed                # callable(camera) run on a thread after open()
        self.torch_calls: list[bool] = []
        self.permission_requests = 0
        self.open_calls = 0
        self.close_calls = 0
        self._feeder: threading.Thread | None = None

    def is_available(self) -> bool:
        return self.available

    def has_torch(self) -> bool:
        return self.torch

    def permission_status(self) -> PermissionStatus:
        return self.permission

    def request_permission(self) -> bool:
        self.permission_requests += 1
        return self.grant

    def set_torch(self, on: bool) -> None:
        if on and self.torch_fails:
            raise RuntimeError("torch busy")
        self.torch_calls.append(on)

    def open(self) -> None:
        super().open()
        self.open_calls += 1
        if self.feed is not None:
            self._feeder = threading.Thread(target=self.feed, args=(self,), daemon=True)
            self._feeder.start()

    def close(self) -> None:
        self.close_calls += 1
        super().close()

    @property
    def torch_off_count(self) -> int:
        return self.torch_calls.count(False)


def make_frame(red: float, size: int = 16) -> np.ndarray:
    """Uniform BGR frame with the given red level (typical finger-on-lens tint)."""
    frame = np.zeros((size, size, 3), dtype=np.uint8)
    frame[:, :, 2] = int(np.clip(round(red), 0, 255))
    frame[:, :, 1] = 30
    frame[:, :, 0] = 20
    return frame


def ppg_signal(bpm: float, seconds: float, fps: float = 30.0, mean: float = 128.0,
               amplitude: float = 10.0, noise: float = 0.3, seed: int = 7) -> np.ndarray:
    """``mean + amplitude·sin(2π·f·t)`` plus Gaussian noise, one value per frame."""
    rng = np.random.default_rng(seed)
    t = np.arange(int(round(seconds * fps)) + 1) / fps
    return mean + amplitude * np.sin(2 * np.pi * (bpm / 60.0) * t) + rng.normal(0.0, noise, len(t))


def feed_frames(session, values, fps: float = 30.0) -> int:
    """Push one frame per value with timestamps ``i / fps``; return frames pushed."""
    pushed = 0
    for i, value in enumerate(values):
        if not session.is_running:
            break
        session.process_frame(make_frame(value), i / fps)
        pushed += 1
    return pushed


def constant_feed(value: float = 128.0, interval: float = 0.01, limit: int | None = None):
    """Return a feeder that pushes constant frames into the camera's slot."""
    def _feed(camera: FakeCamera) -> None:
        slot = camera.frames
        count = 0
        while not slot.closed:
            if limit is not None and count >= limit:
                slot.close()
                return
            slot.put(make_frame(value), time.monotonic())
            count += 1
            time.sleep(interval)
    return _feed


@pytest.fixture
def camera():
    cam = FakeCamera()
    yield cam
    cam.release()


@pytest.fixture
def listener():
    return QueueListener()
