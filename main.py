#!/usr/bin/env python3
"""
PPG Monitor – main entry point.

Usage
-----
    python main.py [OPTIONS]

Options
-------
    --source SRC         Camera index or path to a recorded video (default: 0)
    --resolution WxH     Camera resolution (default: 640x480)
    --fps INT            Target frame rate  (default: 30)
    --duration FLOAT     Measurement length in seconds (default: 20)
    --spectral           Cross-check peak BPM with the FFT estimate
    --observed-rate      Use the frame rate observed from timestamps
    --no-torch           Declare that no light source is available
    --verbose            Debug logging

Press Ctrl-C to cancel a running measurement.
"""

from __future__ import annotations

import argparse
import logging
import sys

from ppg_monitor.camera import OpenCVCamera
from ppg_monitor.config import MeasurementConfig
from ppg_monitor.errors import HeartRateError
from ppg_monitor.events import EventType, QueueListener
from ppg_monitor.session import MeasurementSession
from ppg_monitor.validation import MeasurementResult

logger = logging.getLogger("ppg_monitor")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Camera-based heart-rate measurement (finger PPG)",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--source", default="0",
                        help="OpenCV camera index or path to a video file")
    parser.add_argument("--resolution", default="640x480",
                        help="Camera resolution, e.g. 640x480")
    parser.add_argument("--fps", type=int, default=30,
                        help="Target capture frame rate")
    parser.add_argument("--duration", type=float, default=20.0,
                        help="Measurement duration in seconds")
    parser.add_argument("--spectral", action="store_true",
                        help="Cross-check peak BPM with the dominant FFT frequency")
    parser.add_argument("--observed-rate", action="store_true",
                        help="Derive the sample rate from frame timestamps")
    parser.add_argument("--no-torch", action="store_true",
                        help="No illumination source next to the lens")
    parser.add_argument("--verbose", action="store_true",
                        help="Enable debug logging")
    return parser.parse_args(argv)


def _parse_source(value: str) -> int | str:
    return int(value) if value.isdigit() else value


def _print_summary(result: MeasurementResult) -> None:
    margin = f"±{result.error_margin} BPM" if result.error_margin is not None else "±5 BPM (estimated)"
    print(f"Average heart rate: {result.average_bpm} BPM ({margin})")
    print(f"Category:           {result.category.value}")
    print(f"Confidence:         {result.confidence:.0%} ({result.confidence_level.value})")
    print(f"Readings:           {len(result.readings)} over {result.duration:.1f} s")


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def run(args: argparse.Namespace) -> int:
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s – %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        res_w, res_h = (int(v) for v in args.resolution.lower().split("x"))
    except ValueError:
        logger.error("Invalid --resolution format.  Use WxH, e.g. 640x480.")
        return 1

    try:
        config = MeasurementConfig(
            sample_rate_hz=float(args.fps),
            measurement_duration_seconds=args.duration,
            use_spectral_check=args.spectral,
            use_observed_sample_rate=args.observed_rate,
        )
    except ValueError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1

    camera = OpenCVCamera(
        source=_parse_source(args.source),
        resolution=(res_w, res_h),
        fps=args.fps,
        torch_available=not args.no_torch,
    )
    listener = QueueListener()
    session = MeasurementSession(camera, config=config, listener=listener)

    print("Place your fingertip over the camera lens and hold still…")
    try:
        session.start_measurement()
    except HeartRateError as exc:
        print(f"Error: {exc}")
        return 1

    last_quality = None
    last_percent = -1
    try:
        for event in listener.events():
            if event.type is EventType.BPM:
                print(f"  BPM={event.payload}")
            elif event.type is EventType.QUALITY and event.payload is not last_quality:
                last_quality = event.payload
                print(f"  Signal: {last_quality.value} – {last_quality.hint}")
            elif event.type is EventType.PROGRESS:
                percent = int(event.payload * 100)
                if percent // 10 != last_percent // 10:
                    print(f"  Progress: {percent}%")
                last_percent = percent
            elif event.type is EventType.ERROR:
                print(f"Error: {event.payload.message}")
                return 1
    except KeyboardInterrupt:
        logger.info("Interrupted.")
        return 130
    finally:
        session.stop_measurement()

    if session.result is None:
        return 1
    _print_summary(session.result)
    return 0


def main() -> int:
    return run(parse_args())


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    sys.exit(main())
