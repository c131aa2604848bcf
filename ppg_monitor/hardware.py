"""
Camera + torch capability handle.

The camera and its illumination source are a process-wide singleton
resource: only one measurement may hold a device at a time.  A
:class:`CameraDevice` is handed to the session explicitly and enforces
that exclusivity through :meth:`CameraDevice.acquire` /
:meth:`CameraDevice.release`, keyed by ``device_id``.

Concrete backends (see :mod:`ppg_monitor.camera`) override the capability
queries, torch control and open/close, and publish frames into a
:class:`FrameSlot`.
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Dict, Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)

_claims_lock = threading.Lock()
_claims: Dict[str, "CameraDevice"] = {}


class PermissionStatus(Enum):
    AUTHORIZED = "authorized"
    NOT_DETERMINED = "not_determined"
    DENIED = "denied"


class FrameSlot:
    """
    Single-slot mailbox holding only the newest frame.

    The producer overwrites the slot; a frame replaced before the consumer
    took it is counted in :attr:`dropped`.  Consumers always get the most
    recent frame, never a backlog.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._frame: Optional[np.ndarray] = None
        self._timestamp = 0.0
        self._fresh = False
        self._closed = False
        self.delivered = 0
        self.dropped = 0

    def put(self, frame: np.ndarray, timestamp: float | None = None) -> None:
        with self._cond:
            if self._fresh:
                self.dropped += 1
            self._frame = frame
            self._timestamp = time.monotonic() if timestamp is None else timestamp
            self._fresh = True
            self._cond.notify_all()

    def take(self, timeout: float | None = None) -> Optional[Tuple[np.ndarray, float]]:
        """
        Return ``(frame, timestamp)`` for the newest unseen frame.

        Blocks up to *timeout* seconds; returns *None* on timeout or once
        the slot is closed and empty.
        """
        with self._cond:
            if not self._cond.wait_for(lambda: self._fresh or self._closed, timeout=timeout):
                return None
            if not self._fresh:
                return None
            self._fresh = False
            self.delivered += 1
            return self._frame, self._timestamp

    def close(self) -> None:
        """Wake up waiting consumers; no further frames will arrive."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        return self._closed


class CameraDevice:
    """
    Base class for camera backends.

    Parameters
    ----------
    device_id:
        Identity of the physical device.  Two handles with the same id
        cannot be acquired at the same time.
    """

    def __init__(self, device_id: str = "default") -> None:
        self.device_id = device_id
        self.frames = FrameSlot()

    # ------------------------------------------------------------------
    # Capability queries – override in backends
    # ------------------------------------------------------------------

    def is_available(self) -> bool:
        return True

    def has_torch(self) -> bool:
        return False

    def permission_status(self) -> PermissionStatus:
        return PermissionStatus.AUTHORIZED

    def request_permission(self) -> bool:
        """Ask the user for camera access; return whether it was granted."""
        return self.permission_status() is PermissionStatus.AUTHORIZED

    # ------------------------------------------------------------------
    # Hardware control – override in backends
    # ------------------------------------------------------------------

    def open(self) -> None:
        """Start delivering frames into a fresh :attr:`frames` slot."""
        self.frames = FrameSlot()

    def close(self) -> None:
        """Stop delivering frames."""
        self.frames.close()

    def set_torch(self, on: bool) -> None:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Exclusive claim
    # ------------------------------------------------------------------

    def acquire(self) -> bool:
        """Claim the device; return *False* if another handle holds it."""
        with _claims_lock:
            if self.device_id in _claims:
                return False
            _claims[self.device_id] = self
        logger.debug("Device %s acquired.", self.device_id)
        return True

    def release(self) -> None:
        with _claims_lock:
            if _claims.get(self.device_id) is self:
                del _claims[self.device_id]
                logger.debug("Device %s released.", self.device_id)

    @property
    def is_held(self) -> bool:
        with _claims_lock:
            return _claims.get(self.device_id) is self
