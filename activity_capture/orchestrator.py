"""
Start/stop everything in dependency order.

start_all: history -> video -> audio -> detection. If any step raises,
everything is stopped again and StartupError is raised with the cause.
stop_all: detection -> audio -> video, then history is flushed.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Any

from activity_capture.audio import AudioCaptureProducer
from activity_capture.detection import ActivityDetectionService
from activity_capture.errors import StartupError
from activity_capture.history import HistoryStore
from activity_capture.inference import KIND_IMAGE, KIND_SOUND, ModelGateway, TorchModelGateway
from activity_capture.log import log_structured
from activity_capture.models import Detection
from activity_capture.presence import build_presence_gate
from activity_capture.video import VideoCaptureSupervisor

logger = logging.getLogger(__name__)


class CaptureOrchestrator:
    def __init__(
        self,
        video: VideoCaptureSupervisor,
        audio: AudioCaptureProducer,
        detection: ActivityDetectionService,
        history: HistoryStore,
        gateway: ModelGateway,
        enable_video: bool = True,
        enable_audio: bool = True,
    ) -> None:
        self.video = video
        self.audio = audio
        self.detection = detection
        self.history = history
        self.gateway = gateway
        self.enable_video = enable_video
        self.enable_audio = enable_audio
        self._lock = threading.RLock()
        self._running = False
        self._started: set[str] = set()
        video.add_frame_listener(detection.on_frame)
        audio.add_audio_listener(detection.on_audio)
        detection.add_detection_listener(self._on_detection)

    def _on_detection(self, detection: Detection) -> None:
        self.history.add_detection(detection)
        logger.debug("Added to history: %s (%.2f)", detection.predicted_activity, detection.confidence)

    def start_all(self) -> None:
        with self._lock:
            logger.info("Starting all capture services")
            try:
                self.history.start()
                if self.enable_video:
                    self.video.start()
                    self._started.add("video")
                if self.enable_audio:
                    self.audio.start()
                    # an optional microphone may fail to open; only a line that came up is tracked
                    if self.audio.is_capturing():
                        self._started.add("audio")
                self.detection.start_detection()
                self._started.add("detection")
            except Exception as e:
                logger.error("Startup failed, stopping what did start: %s", e)
                log_structured("startup_failed", error=str(e))
                self.stop_all()
                raise StartupError(f"Failed to start capture services: {e}") from e
            self._running = True
            logger.info("All capture services started")
            log_structured("capture_started", video=self.video.is_capturing(), audio=self.audio.is_capturing())

    def stop_all(self) -> None:
        with self._lock:
            logger.info("Stopping all capture services")
            for name, stop in (("detection", self.detection.stop_detection), ("audio", self.audio.stop),
                               ("video", self.video.stop), ("history", self.history.stop)):
                try:
                    stop()
                except Exception as e:
                    logger.error("Stopping %s failed: %s", name, e)
            self._started.clear()
            self._running = False
            logger.info("All capture services stopped")
            log_structured("capture_stopped")

    def restart(self, delay_sec: float = 2.0) -> None:
        logger.info("Restarting all capture services")
        self.stop_all()
        time.sleep(delay_sec)
        self.start_all()

    def shutdown(self) -> None:
        """Final stop; the model cache is released as well."""
        self.stop_all()
        self.gateway.clear_cache()

    @property
    def running(self) -> bool:
        return self._running

    def is_healthy(self) -> bool:
        """True while every started service is still running. Missing models only warn."""
        for kind in (KIND_IMAGE, KIND_SOUND):
            if not self.gateway.is_available(kind):
                logger.warning("No %s model available", kind)
        if not self._running:
            return True
        started = set(self._started)
        if "detection" in started and not self.detection.is_detecting():
            return False
        if "video" in started and self.video.configured_sources() and not self.video.is_capturing():
            return False
        if "audio" in started and not self.audio.is_capturing():
            logger.warning("Audio capture loop has stopped; restart() brings it back")
            return False
        return True

    def stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "healthy": self.is_healthy(),
            "video": self.video.stats(),
            "audio": self.audio.stats(),
            "detection": self.detection.stats(),
            "presence": self.detection.presence_gate.stats(),
            "history": self.history.stats(),
            "models": self.gateway.stats(),
        }


def build_orchestrator(
    config: dict[str, Any],
    gateway: ModelGateway | None = None,
    *,
    capture_factory=None,
    line_factory=None,
    enable_video: bool = True,
    enable_audio: bool = True,
) -> CaptureOrchestrator:
    """Wire every service from one config dict."""
    gateway = gateway or TorchModelGateway(config)
    presence = build_presence_gate(config, gateway)
    return CaptureOrchestrator(
        video=VideoCaptureSupervisor(config, capture_factory=capture_factory),
        audio=AudioCaptureProducer(config, line_factory=line_factory),
        detection=ActivityDetectionService(config, gateway, presence),
        history=HistoryStore(config),
        gateway=gateway,
        enable_video=enable_video,
        enable_audio=enable_audio and bool(config.get("capture", {}).get("microphone", {}).get("enabled", True)),
    )
