"""
Video capture supervisor: local camera plus any number of RTSP streams.

- Every source has its own periodic grab task (camera at its FPS, RTSP at a
  fixed capture interval regardless of the stream's native rate).
- Grab failures are logged at DEBUG and the schedule keeps going.
- Each RTSP source also gets a slower health task: a failed probe grab closes
  the handle and reconnects to the same URL under the same source key.
- Frames are delivered to frame listeners as RGB uint8 arrays (H, W, 3).
"""
from __future__ import annotations

import hashlib
import logging
import os
import platform
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

import cv2
import numpy as np

from activity_capture.listeners import ListenerRegistry
from activity_capture.log import log_structured
from activity_capture.tasks import TaskScheduler

logger = logging.getLogger(__name__)

LOCAL_CAMERA_KEY = "local_camera"

CaptureFactory = Callable[[int | str, int | None], Any]


def rtsp_source_key(url: str) -> str:
    """Stable key for an RTSP URL; the same URL always maps to the same key."""
    return "rtsp_" + hashlib.sha1(url.encode("utf-8")).hexdigest()[:12]


def open_video_capture(source: int | str, timeout_ms: int | None = None):
    """Open VideoCapture for source (int index or URL). On macOS, use AVFoundation for device indices.
    Sets CAP_PROP_BUFFERSIZE=1 when supported to keep the newest frame first.
    For RTSP/URL, forces TCP transport. Open/read timeouts are only honoured by FFmpeg at
    construction, so they go in as open parameters where the OpenCV build has them."""
    cap = None
    if isinstance(source, str) and not source.isdigit():
        os.environ.setdefault("OPENCV_FFMPEG_CAPTURE_OPTIONS", "rtsp_transport;tcp")
        params: list[int] = []
        if timeout_ms:
            for prop in ("CAP_PROP_OPEN_TIMEOUT_MSEC", "CAP_PROP_READ_TIMEOUT_MSEC"):
                if hasattr(cv2, prop):
                    params += [getattr(cv2, prop), int(timeout_ms)]
        if params:
            cap = cv2.VideoCapture(source, cv2.CAP_FFMPEG, params)
        else:
            cap = cv2.VideoCapture(source)
    else:
        idx = int(source)
        if platform.system() == "Darwin":
            cap = cv2.VideoCapture(idx, cv2.CAP_AVFOUNDATION)
            if not cap.isOpened():
                cap.release()
                cap = None
        if cap is None:
            cap = cv2.VideoCapture(idx)
    if cap is not None and cap.isOpened():
        cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
    return cap


@dataclass
class CaptureSource:
    """One camera or stream. The handle is swapped in place on reconnect; the key never changes."""
    key: str
    kind: str
    target: int | str
    handle: Any = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    frames: int = 0
    failures: int = 0
    reconnects: int = 0

    @property
    def connected(self) -> bool:
        return self.handle is not None and bool(self.handle.isOpened())

    def release(self) -> None:
        if self.handle is not None:
            try:
                self.handle.release()
            except Exception as e:
                logger.debug("Release of %s failed: %s", self.key, e)
            self.handle = None


def _usable(ok: bool, frame: np.ndarray | None) -> bool:
    return bool(ok) and frame is not None and getattr(frame, "size", 0) > 0


class VideoCaptureSupervisor:
    """Starts/stops all video sources and broadcasts their frames."""

    def __init__(self, config: dict[str, Any], capture_factory: CaptureFactory | None = None) -> None:
        capture = config.get("capture", {})
        self.camera_cfg: dict[str, Any] = capture.get("camera", {})
        self.rtsp_cfg: dict[str, Any] = capture.get("rtsp", {})
        self.grace_sec = float(config.get("shutdown", {}).get("grace_sec", 5))
        self._factory: CaptureFactory = capture_factory or open_video_capture
        self._frame_listeners = ListenerRegistry("frame")
        self._sources: dict[str, CaptureSource] = {}
        self._sources_lock = threading.Lock()
        self._state_lock = threading.RLock()
        self._scheduler: TaskScheduler | None = None
        self._capturing = False

    # -- listeners --------------------------------------------------------

    def add_frame_listener(self, listener: Callable[[np.ndarray], None]) -> None:
        self._frame_listeners.add(listener)

    def remove_frame_listener(self, listener: Callable[[np.ndarray], None]) -> bool:
        return self._frame_listeners.remove(listener)

    # -- lifecycle --------------------------------------------------------

    def start(self) -> None:
        with self._state_lock:
            if self._capturing:
                logger.info("Video capture already running")
                return
            scheduler = TaskScheduler("video", self.grace_sec)
            if self.camera_cfg.get("enabled", True):
                self._start_camera(scheduler)
            if self.rtsp_cfg.get("enabled", False):
                self._start_rtsp(scheduler, self.rtsp_cfg.get("urls") or [])
            self._scheduler = scheduler
            self._capturing = True
            logger.info("Video capture started: %d/%d source(s) connected",
                        self.active_source_count(), len(self._sources))
            log_structured("video_capture_started", sources=self.configured_sources(),
                           connected=self.active_sources())

    def _start_camera(self, scheduler: TaskScheduler) -> None:
        device_id = int(self.camera_cfg.get("device_id", 0))
        handle = self._open(device_id)
        if handle is None:
            logger.error("Local camera %s could not be opened", device_id)
            return
        for prop, key in ((cv2.CAP_PROP_FRAME_WIDTH, "width"), (cv2.CAP_PROP_FRAME_HEIGHT, "height"),
                          (cv2.CAP_PROP_FPS, "fps")):
            if self.camera_cfg.get(key):
                handle.set(prop, self.camera_cfg[key])
        source = CaptureSource(LOCAL_CAMERA_KEY, "camera", device_id, handle)
        self._register(source)
        fps = max(1.0, float(self.camera_cfg.get("fps", 15)))
        scheduler.schedule(f"grab:{source.key}", lambda: self._capture_frame(source), 1.0 / fps)

    def _start_rtsp(self, scheduler: TaskScheduler, urls: list[str]) -> None:
        interval = float(self.rtsp_cfg.get("capture_interval_ms", 100)) / 1000.0
        health = float(self.rtsp_cfg.get("reconnect_delay_ms", 10000)) / 1000.0
        for url in urls:
            key = rtsp_source_key(url)
            with self._sources_lock:
                if key in self._sources:
                    logger.warning("RTSP URL configured twice, ignoring duplicate: %s", key)
                    continue
            handle = self._open(url)
            if handle is None:
                # stays registered; the health task keeps retrying
                logger.error("RTSP source %s could not be opened, will retry every %.1fs", key, health)
            source = CaptureSource(key, "rtsp", url, handle)
            self._register(source)
            scheduler.schedule(f"grab:{key}", lambda s=source: self._capture_frame(s), interval)
            scheduler.schedule(f"health:{key}", lambda s=source: self._check_and_reconnect(s),
                               health, initial_delay=health)

    def stop(self) -> None:
        with self._state_lock:
            if not self._capturing:
                return
            self._capturing = False
            scheduler, self._scheduler = self._scheduler, None
            if scheduler is not None:
                scheduler.shutdown()
            with self._sources_lock:
                sources = list(self._sources.values())
                self._sources.clear()
            for source in sources:
                with source.lock:
                    source.release()
            logger.info("Video capture stopped (%d source(s) closed)", len(sources))
            log_structured("video_capture_stopped", sources=[s.key for s in sources])

    def _open(self, target: int | str):
        timeout = self.rtsp_cfg.get("timeout_ms") if isinstance(target, str) else None
        try:
            handle = self._factory(target, timeout)
        except Exception as e:
            logger.error("Opening video source failed: %s", e)
            return None
        if handle is None or not handle.isOpened():
            if handle is not None:
                handle.release()
            return None
        return handle

    def _register(self, source: CaptureSource) -> None:
        with self._sources_lock:
            self._sources[source.key] = source

    # -- periodic work ----------------------------------------------------

    def _capture_frame(self, source: CaptureSource) -> bool:
        """Grab one frame from source and broadcast it. False when nothing usable was read."""
        with source.lock:
            if not source.connected:
                return False
            try:
                ok, frame = source.handle.read()
            except Exception as e:
                source.failures += 1
                logger.debug("Grab from %s raised: %s", source.key, e)
                return False
            if not _usable(ok, frame):
                source.failures += 1
                logger.debug("Grab from %s returned no frame", source.key)
                return False
            source.frames += 1
        if frame.ndim == 2:
            rgb = cv2.cvtColor(frame, cv2.COLOR_GRAY2RGB)
        else:
            rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        self._frame_listeners.notify(rgb)
        return True

    def _check_and_reconnect(self, source: CaptureSource) -> bool:
        """Probe the source; on failure close it and reopen the same target. True if a reconnect was attempted."""
        with source.lock:
            if source.connected:
                try:
                    ok, frame = source.handle.read()
                except Exception as e:
                    logger.debug("Probe of %s raised: %s", source.key, e)
                    ok, frame = False, None
                if _usable(ok, frame):
                    return False
            logger.warning("Source %s unhealthy, reconnecting", source.key)
            source.release()
            source.reconnects += 1
            source.handle = self._open(source.target)
            connected = source.connected
        if connected:
            logger.info("Source %s reconnected", source.key)
        else:
            logger.warning("Reconnect of %s failed, next attempt on the next health check", source.key)
        log_structured("source_reconnect", source=source.key, success=connected, attempt=source.reconnects)
        return True

    # -- introspection ----------------------------------------------------

    def is_capturing(self) -> bool:
        return self._capturing

    def configured_sources(self) -> list[str]:
        with self._sources_lock:
            return list(self._sources)

    def active_sources(self) -> list[str]:
        with self._sources_lock:
            return [k for k, s in self._sources.items() if s.connected]

    def active_source_count(self) -> int:
        return len(self.active_sources())

    def get_source(self, key: str) -> CaptureSource | None:
        with self._sources_lock:
            return self._sources.get(key)

    def stats(self) -> dict[str, Any]:
        with self._sources_lock:
            sources = {
                k: {"kind": s.kind, "connected": s.connected, "frames": s.frames,
                    "failures": s.failures, "reconnects": s.reconnects}
                for k, s in self._sources.items()
            }
        return {
            "capturing": self._capturing,
            "active_source_count": sum(1 for s in sources.values() if s["connected"]),
            "configured_source_count": len(sources),
            "frame_listeners": len(self._frame_listeners),
            "sources": sources,
        }
