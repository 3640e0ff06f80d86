#!/usr/bin/env python3
"""
Activity capture command-line entry point.

Builds every service from config, starts capture + detection, logs accepted
detections and stops cleanly on Ctrl-C or after --duration seconds.

Usage:
  python -m activity_capture.main
  python -m activity_capture.main --config config.yaml --duration 60
  python -m activity_capture.main --prune-history
"""
from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading

from activity_capture.config_loader import load_config
from activity_capture.errors import StartupError
from activity_capture.log import configure_logging

logger = logging.getLogger("activity_capture.main")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Camera/microphone activity capture pipeline")
    parser.add_argument("--config", type=str, default="", help="Path to config.yaml")
    parser.add_argument("--duration", type=float, default=0.0, help="Stop after N seconds (0 = until Ctrl-C)")
    parser.add_argument("--no-video", action="store_true", help="Do not start video capture")
    parser.add_argument("--no-audio", action="store_true", help="Do not start audio capture")
    parser.add_argument("--prune-history", action="store_true", help="Apply history retention and exit")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    config = load_config(args.config or None)
    configure_logging(config)

    if args.prune_history:
        from activity_capture.history import HistoryStore
        deleted = HistoryStore(config).cleanup_old_files()
        print(f"Removed {deleted} history file(s) older than {config['history']['retention_days']} days.")
        return 0

    from activity_capture.orchestrator import build_orchestrator

    orchestrator = build_orchestrator(config, enable_video=not args.no_video, enable_audio=not args.no_audio)
    orchestrator.detection.add_detection_listener(lambda d: print(d))

    done = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: done.set())
    signal.signal(signal.SIGTERM, lambda *_: done.set())

    try:
        orchestrator.start_all()
    except StartupError as e:
        logger.error("%s", e)
        return 1
    try:
        done.wait(args.duration if args.duration > 0 else None)
    finally:
        orchestrator.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
