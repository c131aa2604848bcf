"""
Tests for MeasurementSession, its events and the hardware handle.
Run with:  pytest tests/test_session.py
"""

from __future__ import annotations

import threading
import time

import numpy as np
import pytest

from conftest import FakeCamera, constant_feed, feed_frames, make_frame, ppg_signal
from ppg_monitor.config import MeasurementConfig
from ppg_monitor.errors import (
    CameraUnavailable,
    ErrorKind,
    IlluminationUnavailable,
    PermissionDenied,
)
from ppg_monitor.events import Event, EventType, QueueListener, SessionListener
from ppg_monitor.hardware import FrameSlot, PermissionStatus
from ppg_monitor.quality import SignalQuality
from ppg_monitor.session import MeasurementSession, SessionState


def _of_type(events, event_type):
    return [e.payload for e in events if e.type is event_type]


# ---------------------------------------------------------------------------
# End-to-end scenarios
# ---------------------------------------------------------------------------

class TestMeasurementScenarios:

    def test_synthetic_72_bpm(self, camera, listener):
        session = MeasurementSession(camera, listener=listener)
        session.start_measurement(background=False)
        feed_frames(session, ppg_signal(72, 20.0))

        assert session.state is SessionState.FINISHED
        events = listener.drain()
        finished = _of_type(events, EventType.FINISHED)
        assert len(finished) == 1
        assert abs(finished[0] - 72) <= 3
        assert _of_type(events, EventType.ERROR) == []

        # First BPM update arrives before the 10-second mark
        progress = 0.0
        for event in events:
            if event.type is EventType.PROGRESS:
                progress = event.payload
            elif event.type is EventType.BPM:
                assert progress * 20.0 < 10.0
                break
        else:
            pytest.fail("no BPM update emitted")

        assert all(40 <= bpm <= 200 for bpm in _of_type(events, EventType.BPM))
        assert session.result is not None
        assert session.result.average_bpm == finished[0]
        assert camera.torch_off_count == 1
        assert not camera.is_held

    def test_constant_signal_fails(self, camera, listener):
        session = MeasurementSession(camera, listener=listener)
        session.start_measurement(background=False)
        feed_frames(session, np.full(601, 128.0))

        events = listener.drain()
        assert session.state is SessionState.FINISHED
        assert _of_type(events, EventType.FINISHED) == []
        assert _of_type(events, EventType.BPM) == []
        assert _of_type(events, EventType.ERROR) == [ErrorKind.MEASUREMENT_FAILED]
        assert session.result is None
        assert camera.torch_off_count == 1

    def test_progress_and_quality_every_frame(self, camera, listener):
        session = MeasurementSession(camera, listener=listener)
        session.start_measurement(background=False)
        feed_frames(session, ppg_signal(72, 2.0))
        session.stop_measurement()

        events = listener.drain()
        progress = _of_type(events, EventType.PROGRESS)
        assert len(progress) == 61
        assert progress == sorted(progress)
        assert all(0.0 <= p <= 1.0 for p in progress)
        quality = _of_type(events, EventType.QUALITY)
        assert len(quality) == 61
        assert all(isinstance(q, SignalQuality) for q in quality)

    def test_no_bpm_before_min_samples(self, camera, listener):
        session = MeasurementSession(camera, listener=listener)
        session.start_measurement(background=False)
        feed_frames(session, ppg_signal(72, 4.0))      # 121 frames < 150
        assert _of_type(listener.drain(), EventType.BPM) == []

    def test_observed_sample_rate(self, camera, listener):
        config = MeasurementConfig(measurement_duration_seconds=12.0, use_observed_sample_rate=True)
        session = MeasurementSession(camera, config=config, listener=listener)
        session.start_measurement(background=False)
        feed_frames(session, ppg_signal(72, 12.0, fps=25.0), fps=25.0)

        finished = _of_type(listener.drain(), EventType.FINISHED)
        assert len(finished) == 1
        assert abs(finished[0] - 72) <= 3

    def test_spectral_cross_check(self, camera, listener):
        config = MeasurementConfig(use_spectral_check=True)
        session = MeasurementSession(camera, config=config, listener=listener)
        session.start_measurement(background=False)
        feed_frames(session, ppg_signal(72, 20.0))

        finished = _of_type(listener.drain(), EventType.FINISHED)
        assert len(finished) == 1
        assert abs(finished[0] - 72) <= 3


# ---------------------------------------------------------------------------
# Lifecycle and resource handling
# ---------------------------------------------------------------------------

class TestSessionLifecycle:

    def test_initial_state(self, camera):
        session = MeasurementSession(camera)
        assert session.state is SessionState.IDLE
        assert session.stop_measurement() is None
        assert camera.torch_calls == []

    def test_explicit_stop_reports_average(self, camera, listener):
        session = MeasurementSession(camera, listener=listener)
        session.start_measurement(background=False)
        feed_frames(session, ppg_signal(72, 8.0))
        result = session.stop_measurement()

        assert session.state is SessionState.IDLE
        assert result is not None
        assert result.average_bpm == sum(result.readings) // len(result.readings)
        assert _of_type(listener.drain(), EventType.FINISHED) == [result.average_bpm]

    def test_explicit_stop_without_readings(self, camera, listener):
        session = MeasurementSession(camera, listener=listener)
        session.start_measurement(background=False)
        feed_frames(session, np.full(10, 150.0))
        assert session.stop_measurement() is None
        assert session.state is SessionState.IDLE
        assert _of_type(listener.drain(), EventType.ERROR) == [ErrorKind.MEASUREMENT_FAILED]

    def test_stop_is_idempotent(self, camera, listener):
        session = MeasurementSession(camera, listener=listener)
        session.start_measurement(background=False)
        session.stop_measurement()
        session.stop_measurement()
        assert camera.torch_off_count == 1
        assert len(_of_type(listener.drain(), EventType.ERROR)) == 1

    def test_frames_after_stop_are_ignored(self, camera, listener):
        session = MeasurementSession(camera, listener=listener)
        session.start_measurement(background=False)
        session.stop_measurement()
        listener.drain()
        session.process_frame(make_frame(150), 0.1)
        assert listener.drain() == []

    def test_unreadable_frames_skip_the_tick(self, camera, listener):
        session = MeasurementSession(camera, listener=listener)
        session.start_measurement(background=False)
        session.process_frame(None, 0.0)
        session.process_frame(np.zeros((4, 4), dtype=np.uint8), 0.1)
        assert len(session.buffer) == 0
        assert listener.drain() == []
        assert session.is_running

    def test_negative_timestamp_keeps_progress_in_range(self, camera, listener):
        session = MeasurementSession(camera, listener=listener)
        session.start_measurement(background=False)
        session.process_frame(make_frame(150), -2.0)
        session.process_frame(make_frame(150), 1.0)
        progress = _of_type(listener.drain(), EventType.PROGRESS)
        assert progress == [0.0, pytest.approx(0.05)]

    def test_scene_without_red_tint_is_poor(self, camera, listener):
        session = MeasurementSession(camera, listener=listener)
        session.start_measurement(background=False)
        bright = np.full((16, 16, 3), 200, dtype=np.uint8)     # white wall, no finger
        for i in range(40):
            session.process_frame(bright, i / 30.0)
        quality = _of_type(listener.drain(), EventType.QUALITY)
        assert set(quality) == {SignalQuality.POOR}

    def test_out_of_order_frames_skipped(self, camera):
        session = MeasurementSession(camera)
        session.start_measurement(background=False)
        session.process_frame(make_frame(150), 1.0)
        session.process_frame(make_frame(150), 0.5)
        assert len(session.buffer) == 1

    def test_buffer_bounded(self, camera):
        config = MeasurementConfig(measurement_duration_seconds=60.0)
        session = MeasurementSession(camera, config=config)
        session.start_measurement(background=False)
        feed_frames(session, np.full(700, 150.0))
        assert len(session.buffer) == config.max_samples

    def test_stop_inside_callback_releases_once(self, camera):
        session = MeasurementSession(camera)
        session.listener = SessionListener(on_quality_update=lambda _q: session.stop_measurement())
        session.start_measurement(background=False)
        session.process_frame(make_frame(150), 0.0)

        assert session.state is SessionState.IDLE
        assert camera.torch_off_count == 1
        assert not camera.is_held

    def test_stop_mid_tick_from_another_thread(self, camera):
        in_tick = threading.Event()
        proceed = threading.Event()

        def block(_progress):
            in_tick.set()
            proceed.wait(timeout=5.0)

        listener = QueueListener()
        session = MeasurementSession(camera, listener=listener)
        session.start_measurement(background=False)
        feed_frames(session, ppg_signal(72, 6.0)[:170])
        listener.drain()
        listener.on_progress_update = block

        ticker = threading.Thread(target=session.process_frame, args=(make_frame(130), 5.7))
        ticker.start()
        assert in_tick.wait(timeout=5.0)

        stopper = threading.Thread(target=session.stop_measurement)
        stopper.start()
        deadline = time.monotonic() + 5.0
        while camera.is_held and time.monotonic() < deadline:
            time.sleep(0.01)
        assert camera.torch_off_count == 1          # released while the tick is still busy
        assert listener.drain() == []               # terminal event waits for the tick

        proceed.set()
        ticker.join(timeout=5.0)
        stopper.join(timeout=5.0)
        assert camera.torch_off_count == 1
        assert session.state is SessionState.IDLE
        assert session.readings == []

        # Nothing from the interrupted tick follows the terminal event
        events = listener.drain()
        assert len(events) == 1
        assert events[0].type.is_terminal

    def test_restart_stops_previous_measurement(self, camera):
        session = MeasurementSession(camera)
        session.start_measurement(background=False)
        session.start_measurement(background=False)
        assert camera.torch_calls == [True, False, True]
        assert session.is_running
        session.stop_measurement()

    def test_listener_errors_do_not_stop_processing(self, camera):
        def boom(_value):
            raise RuntimeError("consumer bug")

        session = MeasurementSession(camera, listener=SessionListener(on_progress_update=boom))
        session.start_measurement(background=False)
        feed_frames(session, np.full(5, 150.0))
        assert len(session.buffer) == 5
        session.stop_measurement()

    def test_context_manager_stops(self, camera):
        with MeasurementSession(camera) as session:
            session.start_measurement(background=False)
        assert session.state is SessionState.IDLE
        assert camera.torch_off_count == 1


class TestBackgroundWorker:

    def test_auto_stop_in_background(self, listener):
        camera = FakeCamera(device_id="bg-auto", feed=constant_feed(150.0))
        config = MeasurementConfig(measurement_duration_seconds=0.5, min_samples_for_calculation=10)
        session = MeasurementSession(camera, config=config, listener=listener)
        try:
            session.start_measurement()
            session.wait(timeout=5.0)
            assert session.state is SessionState.FINISHED
            assert camera.open_calls == 1
            assert camera.close_calls == 1
            assert camera.torch_off_count == 1
            assert _of_type(listener.drain(), EventType.ERROR) == [ErrorKind.MEASUREMENT_FAILED]
        finally:
            session.stop_measurement()
            camera.release()

    def test_source_ending_finishes_session(self, listener):
        camera = FakeCamera(device_id="bg-end", feed=constant_feed(150.0, limit=5))
        session = MeasurementSession(camera, listener=listener)
        try:
            session.start_measurement()
            session.wait(timeout=5.0)
            assert session.state is SessionState.FINISHED
            assert camera.torch_off_count == 1
        finally:
            session.stop_measurement()
            camera.release()

    def test_stop_from_caller_thread(self, listener):
        camera = FakeCamera(device_id="bg-stop", feed=constant_feed(150.0))
        session = MeasurementSession(camera, listener=listener)
        try:
            session.start_measurement()
            assert session.is_running
            session.stop_measurement()
            assert camera.torch_off_count == 1
            session.wait(timeout=5.0)
            assert session.state is SessionState.IDLE
        finally:
            camera.release()


# ---------------------------------------------------------------------------
# Start-time failures
# ---------------------------------------------------------------------------

class TestStartFailures:

    @pytest.mark.parametrize("kwargs,exc,kind", [
        ({"available": False}, CameraUnavailable, ErrorKind.CAMERA_UNAVAILABLE),
        ({"permission": PermissionStatus.DENIED}, PermissionDenied, ErrorKind.PERMISSION_DENIED),
        ({"permission": PermissionStatus.NOT_DETERMINED, "grant": False},
         PermissionDenied, ErrorKind.PERMISSION_DENIED),
        ({"torch": False}, IlluminationUnavailable, ErrorKind.ILLUMINATION_UNAVAILABLE),
        ({"torch_fails": True}, IlluminationUnavailable, ErrorKind.ILLUMINATION_UNAVAILABLE),
    ])
    def test_failure_keeps_idle(self, kwargs, exc, kind, listener):
        camera = FakeCamera(**kwargs)
        session = MeasurementSession(camera, listener=listener)
        with pytest.raises(exc):
            session.start_measurement(background=False)
        assert session.state is SessionState.IDLE
        assert not camera.is_held
        assert _of_type(listener.drain(), EventType.ERROR) == [kind]

    def test_permission_requested_when_undetermined(self):
        camera = FakeCamera(permission=PermissionStatus.NOT_DETERMINED, grant=True)
        session = MeasurementSession(camera)
        session.start_measurement(background=False)
        assert camera.permission_requests == 1
        assert session.is_running
        session.stop_measurement()

    def test_device_is_exclusive(self):
        first_cam = FakeCamera(device_id="shared")
        second_cam = FakeCamera(device_id="shared")
        first = MeasurementSession(first_cam)
        second = MeasurementSession(second_cam)

        first.start_measurement(background=False)
        with pytest.raises(CameraUnavailable):
            second.start_measurement(background=False)
        assert second_cam.torch_calls == []

        first.stop_measurement()
        second.start_measurement(background=False)
        assert second.is_running
        second.stop_measurement()

    def test_error_messages(self):
        assert "Settings" in PermissionDenied().args[0]
        assert CameraUnavailable("busy").detail == "busy"
        assert ErrorKind.MEASUREMENT_FAILED.message.startswith("Measurement failed")


# ---------------------------------------------------------------------------
# Events, frame slot and configuration
# ---------------------------------------------------------------------------

class TestEvents:

    def test_events_iterator_stops_at_terminal(self):
        listener = QueueListener()
        listener.on_progress_update(0.5)
        listener.on_finished(72)
        listener.on_bpm_update(80)
        events = list(listener.events(timeout=0.1))
        assert [e.type for e in events] == [EventType.PROGRESS, EventType.FINISHED]

    def test_events_iterator_timeout(self):
        assert list(QueueListener().events(timeout=0.01)) == []

    def test_bounded_queue_keeps_newest(self):
        listener = QueueListener(maxsize=2)
        for bpm in (70, 71, 72):
            listener.on_bpm_update(bpm)
        assert listener.drain() == [Event(EventType.BPM, 71), Event(EventType.BPM, 72)]


class TestFrameSlot:

    def test_newest_frame_wins(self):
        slot = FrameSlot()
        slot.put(make_frame(10), 1.0)
        slot.put(make_frame(20), 2.0)
        frame, ts = slot.take(timeout=0.1)
        assert ts == 2.0
        assert frame[0, 0, 2] == 20
        assert slot.dropped == 1
        assert slot.take(timeout=0.01) is None

    def test_each_open_gets_a_fresh_slot(self):
        cam = FakeCamera(device_id="slots")
        cam.open()
        first = cam.frames
        cam.close()
        cam.open()
        assert cam.frames is not first
        assert first.closed
        assert not cam.frames.closed
        cam.close()

    def test_close_wakes_consumer(self):
        slot = FrameSlot()
        threading.Timer(0.05, slot.close).start()
        assert slot.take(timeout=5.0) is None
        assert slot.closed


class TestMeasurementConfig:

    def test_defaults(self):
        cfg = MeasurementConfig()
        assert cfg.sample_rate_hz == 30.0
        assert cfg.measurement_duration_seconds == 20.0
        assert cfg.min_samples_for_calculation == 150
        assert cfg.max_samples == 600
        assert cfg.min_peak_distance == 9

    @pytest.mark.parametrize("kwargs", [
        {"sample_rate_hz": 0},
        {"measurement_duration_seconds": -1},
        {"min_samples_for_calculation": 700},
        {"low_cutoff_hz": 4.0},
        {"min_bpm": 210},
        {"quality_window": 1},
    ])
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            MeasurementConfig(**kwargs)


# ---------------------------------------------------------------------------
# OpenCV backend
# ---------------------------------------------------------------------------

class TestOpenCVCamera:

    def test_missing_file_is_unavailable(self, tmp_path, listener):
        from ppg_monitor.camera import OpenCVCamera

        cam = OpenCVCamera(source=str(tmp_path / "missing.avi"))
        assert cam.is_file
        assert not cam.is_available()
        with pytest.raises(CameraUnavailable):
            MeasurementSession(cam, listener=listener).start_measurement()

    def test_torch_requires_light_source(self):
        from ppg_monitor.camera import OpenCVCamera

        cam = OpenCVCamera(source=0, torch_available=False)
        assert not cam.has_torch()
        with pytest.raises(RuntimeError):
            cam.set_torch(True)

    def test_grabber_closes_only_its_own_slot(self, tmp_path):
        from ppg_monitor.camera import OpenCVCamera

        class EndedCapture:
            def read(self):
                return False, None

        cam = OpenCVCamera(source=str(tmp_path / "clip.avi"))
        stale = FrameSlot()
        cam._capture_loop(EndedCapture(), stale, threading.Event())
        assert stale.closed
        assert not cam.frames.closed

    def test_recorded_video_drives_session(self, tmp_path, listener):
        cv2 = pytest.importorskip("cv2")
        from ppg_monitor.camera import OpenCVCamera

        path = tmp_path / "finger.avi"
        writer = cv2.VideoWriter(str(path), cv2.VideoWriter_fourcc(*"MJPG"), 30, (32, 32))
        if not writer.isOpened():
            pytest.skip("MJPG writer unavailable")
        for value in ppg_signal(72, 2.0, mean=160.0):
            writer.write(make_frame(value, size=32))
        writer.release()

        cam = OpenCVCamera(source=str(path), fps=30)
        config = MeasurementConfig(measurement_duration_seconds=1.0, min_samples_for_calculation=10)
        session = MeasurementSession(cam, config=config, listener=listener)
        try:
            session.start_measurement()
            session.wait(timeout=10.0)
            assert session.state is SessionState.FINISHED
            assert cam.torch_on is False
            assert not cam.is_held
            progress = _of_type(listener.drain(), EventType.PROGRESS)
            assert progress and progress[-1] > 0.5
        finally:
            session.stop_measurement()
