"""
Activity capture: camera/RTSP/microphone ingestion, presence gating and
activity classification with optional image/audio fusion.

Entry point: python -m activity_capture.main
"""
from __future__ import annotations

__version__ = "0.1.0"
