"""
Measurement session.

Owns one fixed-duration heart-rate measurement and wires the pipeline
together::

    frame ─► FrameSampler ─► SignalBuffer ─┬─► QualityEvaluator (raw)
                                           └─► BandpassFilter ─► PeakDetector ─► RateEstimator

States
------
``IDLE ─► RUNNING ─► FINISHED``, plus ``RUNNING ─► IDLE`` when the caller
stops early.  There is no paused state.

Threading
---------
With ``background=True`` a daemon worker thread takes the newest frame
from the camera's frame slot and runs :meth:`MeasurementSession.process_frame`.
Listener callbacks run on that worker thread.  :meth:`stop_measurement`
may be called from any thread, including from inside a callback; it turns
the torch off and releases the device exactly once, under the session
lock, before returning.  Tick events are delivered under a separate
emission lock and tagged with the run they belong to, so nothing from a
finished or restarted run reaches the listener after its terminal event.
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Callable, List, NamedTuple, Optional

import numpy as np

from .config import MeasurementConfig
from .errors import (
    CameraUnavailable,
    ErrorKind,
    FrameReadError,
    HeartRateError,
    IlluminationUnavailable,
    PermissionDenied,
)
from .events import EventType, SessionListener
from .filters import BandpassFilter
from .frame_sampler import FrameSampler
from .hardware import CameraDevice, PermissionStatus
from .peaks import PeakDetector
from .quality import QualityEvaluator
from .rate import RateEstimator
from .signal_buffer import Sample, SignalBuffer, SignalWindow
from .validation import MeasurementResult, summarize

logger = logging.getLogger(__name__)


class SessionState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    FINISHED = "finished"


class BPMReading(NamedTuple):
    bpm: int
    computed_at: float     # seconds since measurement start


class MeasurementSession:
    """
    Parameters
    ----------
    camera:
        Capability handle for the camera + torch.  Held exclusively while
        the session runs.
    config:
        Tunable constants (defaults: 30 Hz, 20 s, 150 / 600 samples).
    listener:
        Callbacks for BPM, quality, progress, finished and error events.
    clock:
        Monotonic time source in seconds, used when frames carry no
        timestamp.
    """

    def __init__(
        self,
        camera: CameraDevice,
        config: MeasurementConfig | None = None,
        listener: SessionListener | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.camera = camera
        self.config = config if config is not None else MeasurementConfig()
        self.listener = listener if listener is not None else SessionListener()
        self._clock = clock

        cfg = self.config
        self.sampler = FrameSampler()
        self.buffer = SignalBuffer(cfg.max_samples)
        self.bandpass = BandpassFilter(cfg.low_cutoff_hz, cfg.high_cutoff_hz)
        self.peak_detector = PeakDetector()
        self.rate_estimator = RateEstimator(cfg.min_bpm, cfg.max_bpm)
        self.quality_evaluator = QualityEvaluator(window=cfg.quality_window)

        self._lock = threading.RLock()
        # Serialises listener delivery; never taken while holding _lock
        self._emit_lock = threading.RLock()
        self._generation = 0
        self._state = SessionState.IDLE
        self._readings: List[BPMReading] = []
        self._quality_scores: List[float] = []
        self._start_time = 0.0
        self._started_monotonic = 0.0
        self._last_elapsed = 0.0
        self._hardware_held = False
        self._camera_open = False
        self._stop_event = threading.Event()
        self._worker: threading.Thread | None = None
        self.result: MeasurementResult | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def is_running(self) -> bool:
        return self.state is SessionState.RUNNING

    @property
    def readings(self) -> List[BPMReading]:
        with self._lock:
            return list(self._readings)

    def start_measurement(self, background: bool = True) -> None:
        """
        Claim the hardware, turn the torch on and start measuring.

        A running measurement on this session is stopped first.  With
        ``background=False`` no worker is started and the caller feeds
        frames through :meth:`process_frame`.

        Raises
        ------
        CameraUnavailable, PermissionDenied, IlluminationUnavailable
            The state stays ``IDLE`` and ``on_error`` has been emitted.
        """
        if self.is_running:
            logger.info("Measurement already running – restarting.")
            self.stop_measurement()
        self._join_worker()

        try:
            self._claim_hardware(open_camera=background)
        except HeartRateError as exc:
            logger.warning("Cannot start measurement: %s", exc)
            self.listener.emit(EventType.ERROR, exc.kind)
            raise

        with self._lock:
            self.buffer.clear()
            self._readings = []
            self._quality_scores = []
            self.result = None
            self._start_time = self._clock()
            self._started_monotonic = time.monotonic()
            self._last_elapsed = 0.0
            self._stop_event.clear()
            self._generation += 1
            self._state = SessionState.RUNNING

        logger.info(
            "Measurement started – %.0f s at %.0f Hz.",
            self.config.measurement_duration_seconds,
            self.config.sample_rate_hz,
        )
        if background:
            self._worker = threading.Thread(target=self._run, name="ppg-session", daemon=True)
            self._worker.start()

    def stop_measurement(self) -> Optional[MeasurementResult]:
        """Stop early; the session returns to ``IDLE``.  See :meth:`_finish`."""
        return self._finish(SessionState.IDLE)

    def wait(self, timeout: float | None = None) -> Optional[MeasurementResult]:
        """Block until the background worker ends; return the result, if any."""
        self._join_worker(timeout)
        return self.result

    def process_frame(self, frame: np.ndarray, timestamp: float | None = None) -> None:
        """
        Run one tick of the pipeline for *frame*.

        *timestamp* is seconds since the measurement started; the session
        clock is used when omitted.  Unreadable frames and out-of-order
        timestamps skip the tick.  Never raises for bad input.
        """
        if not self.is_running:
            return

        try:
            value = self.sampler.sample(frame)
            color = self.sampler.color_means(frame)
        except FrameReadError as exc:
            logger.debug("Skipping unreadable frame: %s", exc)
            return

        elapsed = self._clock() - self._start_time if timestamp is None else float(timestamp)
        with self._lock:
            if self._state is not SessionState.RUNNING:
                return
            generation = self._generation
            if len(self.buffer) and elapsed < self._last_elapsed:
                logger.debug("Skipping out-of-order frame (%.3f < %.3f).", elapsed, self._last_elapsed)
                return
            self._last_elapsed = elapsed
            self.buffer.append(Sample(value, elapsed))
            enough = len(self.buffer) >= self.config.min_samples_for_calculation
            window = self.buffer.windowed() if enough else self.buffer.windowed(self.config.quality_window)

        duration = self.config.measurement_duration_seconds
        self._emit(generation, EventType.PROGRESS, min(max(elapsed / duration, 0.0), 1.0))

        quality = self.quality_evaluator.evaluate(window.values[-self.config.quality_window:], color)
        self._emit(generation, EventType.QUALITY, quality)

        bpm = self._estimate_bpm(window) if enough else None
        if bpm is not None:
            with self._lock:
                if self._state is not SessionState.RUNNING or self._generation != generation:
                    return
                self._readings.append(BPMReading(bpm, elapsed))
                self._quality_scores.append(QualityEvaluator.score(quality))
            self._emit(generation, EventType.BPM, bpm)

        if elapsed >= duration:
            logger.info("Measurement duration reached (%.1f s).", elapsed)
            self._finish(SessionState.FINISHED, generation)

    # Context-manager support
    def __enter__(self) -> "MeasurementSession":
        return self

    def __exit__(self, *_) -> None:
        self.stop_measurement()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _estimate_bpm(self, window: SignalWindow) -> Optional[int]:
        cfg = self.config
        values = window.values
        fs = cfg.sample_rate_hz
        if cfg.use_observed_sample_rate:
            fs = window.observed_sample_rate(cfg.sample_rate_hz)

        filtered = self.bandpass.apply(values, fs)
        min_distance = max(int(fs * cfg.min_peak_distance_seconds), 1)
        peaks = self.peak_detector.find_peaks(filtered, min_distance)
        if cfg.use_observed_sample_rate:
            bpm = self.rate_estimator.calculate_bpm_from_times(window.timestamps[peaks])
        else:
            bpm = self.rate_estimator.calculate_bpm(peaks, fs)
        if cfg.use_spectral_check:
            bpm = RateEstimator.combine(
                bpm,
                self.rate_estimator.spectral_bpm(filtered, fs),
                self.rate_estimator.autocorrelation_bpm(filtered, fs),
            )

        if bpm is None or not cfg.min_bpm <= bpm <= cfg.max_bpm:
            return None
        logger.debug("BPM %d from %d peaks over %d samples.", bpm, len(peaks), len(values))
        return bpm

    def _finish(
        self,
        final_state: SessionState,
        generation: int | None = None,
    ) -> Optional[MeasurementResult]:
        """
        Leave ``RUNNING``: release the hardware, then report.

        Emits ``on_finished(average)`` when readings were collected, and
        ``on_error(MEASUREMENT_FAILED)`` otherwise.  Idempotent: calling
        it on a stopped session returns the previous result and emits
        nothing.  A *generation* other than the current one (a tick
        or worker left over from an earlier run) is ignored the same way.
        """
        with self._lock:
            if self._state is not SessionState.RUNNING:
                return self.result
            if generation is not None and generation != self._generation:
                return self.result
            self._state = final_state
            self._stop_event.set()
            readings = [r.bpm for r in self._readings]
            self._readings = []
            quality_score = float(np.mean(self._quality_scores)) if self._quality_scores else 1.0
            self.result = summarize(readings, duration=self._last_elapsed, quality_score=quality_score)
            self._release_hardware()

        if threading.current_thread() is not self._worker:
            self._join_worker(timeout=1.0)

        result = self.result
        # Waits for an in-flight tick emission so the terminal event is last
        with self._emit_lock:
            if result is not None:
                logger.info(
                    "Measurement finished – average %d BPM from %d readings.",
                    result.average_bpm,
                    len(readings),
                )
                self.listener.emit(EventType.FINISHED, result.average_bpm)
            else:
                logger.warning("Measurement ended without a valid heart-rate reading.")
                self.listener.emit(EventType.ERROR, ErrorKind.MEASUREMENT_FAILED)
        return result

    def _claim_hardware(self, open_camera: bool) -> None:
        camera = self.camera
        if not camera.is_available():
            raise CameraUnavailable()

        status = camera.permission_status()
        if status is PermissionStatus.DENIED:
            raise PermissionDenied()
        if status is PermissionStatus.NOT_DETERMINED and not camera.request_permission():
            raise PermissionDenied()

        if not camera.has_torch():
            raise IlluminationUnavailable()

        if not camera.acquire():
            raise CameraUnavailable("Camera is in use by another measurement.")
        with self._lock:
            self._hardware_held = True

        try:
            camera.set_torch(True)
        except Exception as exc:
            self._release_hardware()
            raise IlluminationUnavailable(f"Could not turn the torch on: {exc}") from exc

        if open_camera:
            try:
                camera.open()
            except Exception as exc:
                self._release_hardware()
                raise CameraUnavailable(f"Could not open the camera: {exc}") from exc
            with self._lock:
                self._camera_open = True

    def _release_hardware(self) -> None:
        """Torch off, close, unclaim.  Runs at most once per claim."""
        with self._lock:
            if not self._hardware_held:
                return
            self._hardware_held = False
            try:
                self.camera.set_torch(False)
            except Exception as exc:                     # noqa: BLE001
                logger.warning("Failed to turn off torch: %s", exc)
            finally:
                try:
                    if self._camera_open:
                        self._camera_open = False
                        self.camera.close()
                finally:
                    self.camera.release()

    def _emit(self, generation: int, event_type: EventType, payload) -> None:
        """Deliver a tick event unless its run has already ended."""
        with self._emit_lock:
            with self._lock:
                live = self._state is SessionState.RUNNING and self._generation == generation
            if live:
                self.listener.emit(event_type, payload)

    def _join_worker(self, timeout: float | None = None) -> None:
        worker = self._worker
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout)

    def _run(self) -> None:
        """Worker loop: newest frame in, one tick out."""
        slot = self.camera.frames
        generation = self._generation
        while not self._stop_event.is_set():
            taken = slot.take(timeout=0.5)
            if taken is None:
                if self._stop_event.is_set():
                    break
                if slot.closed:
                    logger.warning("Frame source ended before the measurement completed.")
                    self._finish(SessionState.FINISHED, generation)
                    break
                continue
            frame, captured_at = taken
            self.process_frame(frame, max(captured_at - self._started_monotonic, 0.0))
        logger.debug("Session worker exited.")
