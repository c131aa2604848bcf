"""
Measurement events delivered to the caller.

A :class:`SessionListener` bundles optional callbacks.  They run on the
session's processing thread, so they must return quickly.  Callers that
consume events on another thread use :class:`QueueListener`, which turns
every callback into a non-blocking ``put_nowait`` and exposes the events
as an iterator.
"""

from __future__ import annotations

import logging
import queue
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterator, Optional

from .errors import ErrorKind
from .quality import SignalQuality

logger = logging.getLogger(__name__)


class EventType(Enum):
    BPM = "bpm"
    QUALITY = "quality"
    PROGRESS = "progress"
    FINISHED = "finished"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (EventType.FINISHED, EventType.ERROR)


@dataclass(frozen=True)
class Event:
    type: EventType
    payload: Any


@dataclass
class SessionListener:
    on_bpm_update: Optional[Callable[[int], None]] = None
    on_quality_update: Optional[Callable[[SignalQuality], None]] = None
    on_progress_update: Optional[Callable[[float], None]] = None
    on_finished: Optional[Callable[[int], None]] = None
    on_error: Optional[Callable[[ErrorKind], None]] = None

    def emit(self, event_type: EventType, payload: Any) -> None:
        """
        Invoke the callback for *event_type*, if any.

        Exceptions raised by the callback are logged and swallowed so that a
        faulty consumer cannot stall frame processing.
        """
        callback = getattr(self, _CALLBACKS[event_type])
        if callback is None:
            return
        try:
            callback(payload)
        except Exception:                                # noqa: BLE001
            logger.exception("Listener callback for %s failed.", event_type.value)


_CALLBACKS = {
    EventType.BPM: "on_bpm_update",
    EventType.QUALITY: "on_quality_update",
    EventType.PROGRESS: "on_progress_update",
    EventType.FINISHED: "on_finished",
    EventType.ERROR: "on_error",
}


class QueueListener(SessionListener):
    """
    Listener that records every event in a queue.

    Parameters
    ----------
    maxsize:
        Queue bound (0 = unbounded).  When full, the oldest event is
        discarded to make room.  The terminal event is always the last one
        of a session, so it is never the one discarded.
    """

    def __init__(self, maxsize: int = 0) -> None:
        super().__init__(
            on_bpm_update=lambda bpm: self._put(EventType.BPM, bpm),
            on_quality_update=lambda q: self._put(EventType.QUALITY, q),
            on_progress_update=lambda p: self._put(EventType.PROGRESS, p),
            on_finished=lambda bpm: self._put(EventType.FINISHED, bpm),
            on_error=lambda kind: self._put(EventType.ERROR, kind),
        )
        self.queue: "queue.Queue[Event]" = queue.Queue(maxsize=maxsize)

    def events(self, timeout: float | None = None) -> Iterator[Event]:
        """
        Yield events until a terminal one (finished / error) is seen.

        Stops early if no event arrives within *timeout* seconds.
        """
        while True:
            try:
                event = self.queue.get(timeout=timeout)
            except queue.Empty:
                return
            yield event
            if event.type.is_terminal:
                return

    def drain(self) -> list[Event]:
        """Return all queued events without blocking."""
        drained: list[Event] = []
        while True:
            try:
                drained.append(self.queue.get_nowait())
            except queue.Empty:
                return drained

    def _put(self, event_type: EventType, payload: Any) -> None:
        event = Event(event_type, payload)
        try:
            self.queue.put_nowait(event)
            return
        except queue.Full:
            pass
        # Slow consumer: discard the oldest event so the newest is kept
        try:
            self.queue.get_nowait()
        except queue.Empty:
            pass
        try:
            self.queue.put_nowait(event)
        except queue.Full:
            logger.warning("Event queue full, dropped %s event.", event_type.value)
