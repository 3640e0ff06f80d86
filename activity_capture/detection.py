"""
Fusion/detection scheduler.

Stopped -> Running -> Stopped. While running, one cycle every
detection.interval_ms:

1. peek the newest frame; when presence is required, ask the presence gate and
   end the cycle if nobody is there
2. fusion off: image detection, falling back to audio when the image result is
   missing or under the threshold
   fusion on: image and audio, combined per class with the configured weights
3. keep the candidate only if confidence >= detection.confidence_threshold;
   it becomes last_detection and goes to every detection listener

Per-modality predictions go through a PredictionCache keyed by modality and a
10 s time bucket, so at most one inference per modality per bucket.
"""
from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from typing import Any, Callable

import numpy as np

from activity_capture.audio import convert_to_mfcc, convert_to_spectrogram
from activity_capture.buffers import DropOldestBuffer, PredictionCache
from activity_capture.errors import ModelUnavailableError, PreprocessingError
from activity_capture.inference import ModelGateway
from activity_capture.listeners import ListenerRegistry
from activity_capture.log import log_structured
from activity_capture.models import (
    Detection,
    DetectionSource,
    FusionWeights,
    fuse_predictions,
    parse_predictions,
)
from activity_capture.preprocessing import to_tensor
from activity_capture.presence import PresenceGate
from activity_capture.tasks import TaskScheduler

logger = logging.getLogger(__name__)

IMAGE = "image"
AUDIO = "audio"


class ActivityDetectionService:
    """Owns the frame/audio buffers, the prediction cache and the last accepted detection."""

    def __init__(
        self,
        config: dict[str, Any],
        gateway: ModelGateway,
        presence_gate: PresenceGate,
        clock: Callable[[], float] = time.time,
    ) -> None:
        det = config.get("detection", {})
        self.interval_sec = float(det.get("interval_ms", 2000)) / 1000.0
        self.confidence_threshold = float(det.get("confidence_threshold", 0.6))
        self.require_person_presence = bool(det.get("require_person_presence", True))
        image = det.get("image", {})
        self.image_width = int(image.get("width", 224))
        self.image_height = int(image.get("height", 224))
        self.image_normalization = str(image.get("normalization", "standard"))
        fusion = det.get("fusion", {})
        self.fusion_enabled = bool(fusion.get("enabled", True))
        self.fusion_weights = FusionWeights(float(fusion.get("image_weight", 0.7)),
                                            float(fusion.get("sound_weight", 0.3)))
        audio = det.get("audio", {})
        self.window_size = int(audio.get("window_size", 1024))
        self.hop_size = int(audio.get("hop_size", 512))
        self.mfcc_coefficients = int(audio.get("mfcc_coefficients", 13))
        self.sound_features = str(
            config.get("models", {}).get("activity", {}).get("sound", {}).get("default", "spectrogram")
        )
        self.person_detection_type = str(config.get("person_detection", {}).get("type", "presence"))
        cache_cfg = config.get("cache", {}).get("predictions", {})
        self.grace_sec = float(config.get("shutdown", {}).get("grace_sec", 5))

        self.gateway = gateway
        self.presence_gate = presence_gate
        self._clock = clock
        self.image_buffer = DropOldestBuffer(int(det.get("image_buffer_size", 10)))
        self.audio_buffer = DropOldestBuffer(int(det.get("audio_buffer_size", 5)))
        self.cache = PredictionCache(float(cache_cfg.get("ttl_sec", 30)),
                                     float(cache_cfg.get("bucket_sec", 10)), clock=clock)
        self._listeners = ListenerRegistry("detection")
        self._state_lock = threading.RLock()
        self._last_lock = threading.Lock()
        self._last_detection: Detection | None = None
        self._scheduler: TaskScheduler | None = None
        self._detecting = False
        self.cycles = 0
        self.accepted = 0

    # -- inputs -----------------------------------------------------------

    def on_frame(self, frame: np.ndarray) -> None:
        """Frame listener. Ignored while stopped."""
        if self._detecting:
            self.image_buffer.push(frame)

    def on_audio(self, chunk: bytes) -> None:
        """Audio listener. Ignored while stopped."""
        if self._detecting:
            self.audio_buffer.push(chunk)

    def add_detection_listener(self, listener: Callable[[Detection], None]) -> None:
        self._listeners.add(listener)

    def remove_detection_listener(self, listener: Callable[[Detection], None]) -> bool:
        return self._listeners.remove(listener)

    # -- lifecycle --------------------------------------------------------

    def start_detection(self) -> None:
        with self._state_lock:
            if self._detecting:
                logger.info("Activity detection already running")
                return
            scheduler = TaskScheduler("detection", self.grace_sec)
            self._detecting = True
            scheduler.schedule("cycle", self.detect_once, self.interval_sec, initial_delay=self.interval_sec)
            scheduler.schedule("cache-sweep", self._sweep_cache, self.cache.ttl_sec,
                               initial_delay=self.cache.ttl_sec)
            self._scheduler = scheduler
            logger.info("Activity detection started (every %.1fs, fusion=%s, presence=%s)",
                        self.interval_sec, self.fusion_enabled, self.require_person_presence)

    def stop_detection(self) -> None:
        with self._state_lock:
            if not self._detecting:
                return
            self._detecting = False
            scheduler, self._scheduler = self._scheduler, None
            if scheduler is not None:
                scheduler.shutdown()
            dropped = self.image_buffer.clear() + self.audio_buffer.clear()
            logger.info("Activity detection stopped (%d buffered item(s) discarded)", dropped)

    def is_detecting(self) -> bool:
        return self._detecting

    def _sweep_cache(self) -> None:
        removed = self.cache.sweep()
        if removed:
            logger.debug("Prediction cache: %d expired entr(ies) removed", removed)

    # -- detection cycle --------------------------------------------------

    def detect_once(self) -> Detection | None:
        """Run one detection cycle. Returns the accepted detection, if any."""
        self.cycles += 1
        try:
            person_confidence = self._check_presence()
            if person_confidence is None:
                logger.debug("No person present, activity detection skipped")
                return None
            if self.fusion_enabled:
                candidate = self._detect_fusion(person_confidence)
            else:
                candidate = self._detect_image(person_confidence)
                if candidate is None or candidate.confidence < self.confidence_threshold:
                    candidate = self._detect_audio(person_confidence)
            if candidate is None or candidate.confidence < self.confidence_threshold:
                logger.debug("No detection above threshold %.2f", self.confidence_threshold)
                return None
            self._accept(candidate)
            return candidate
        except Exception:
            logger.exception("Detection cycle failed")
            return None

    def _check_presence(self) -> float | None:
        """Person confidence for this cycle, or None when the cycle should end."""
        if not self.require_person_presence:
            return 1.0
        frame = self.image_buffer.peek_newest()
        if frame is None:
            return None
        return self.presence_gate.detect_presence(frame)

    def _accept(self, detection: Detection) -> None:
        with self._last_lock:
            self._last_detection = detection
        self.accepted += 1
        logger.info("Activity detected: %s (confidence %.2f, %s)",
                    detection.predicted_activity, detection.confidence, detection.source.value)
        log_structured("detection_accepted", activity=detection.predicted_activity,
                       confidence=round(detection.confidence, 4), source=detection.source.value)
        self._listeners.notify(detection)

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock())

    def _cached_predictions(self, modality: str, infer: Callable[[], dict[str, float]]) -> dict[str, float] | None:
        key = self.cache.key_for(modality)
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        try:
            predictions = infer()
        except ModelUnavailableError as e:
            logger.warning("%s model unavailable: %s", modality, e)
            return None
        except PreprocessingError as e:
            logger.error("%s input rejected: %s", modality, e)
            return None
        except Exception as e:
            logger.error("%s inference failed: %s", modality, e)
            return None
        if not predictions:
            logger.warning("%s model returned an empty prediction vector", modality)
            return None
        self.cache.put(key, predictions)
        return predictions

    def image_predictions(self) -> dict[str, float] | None:
        """Consume the newest frame and classify it (or reuse this bucket's cached result)."""
        frame = self.image_buffer.poll_newest()
        if frame is None:
            return None

        def infer() -> dict[str, float]:
            tensor = to_tensor(frame, self.image_width, self.image_height, self.image_normalization)
            return parse_predictions(self.gateway.classify_image(tensor))

        return self._cached_predictions(IMAGE, infer)

    def audio_predictions(self) -> dict[str, float] | None:
        """Consume the newest audio chunk and classify it (or reuse this bucket's cached result)."""
        chunk = self.audio_buffer.poll_newest()
        if chunk is None:
            return None

        def infer() -> dict[str, float]:
            return parse_predictions(self.gateway.classify_sound(self.sound_input(chunk)))

        return self._cached_predictions(AUDIO, infer)

    def sound_input(self, chunk: bytes) -> np.ndarray:
        """[1, N] MFCC vector for the mfcc model, else a [1, frames, bins, 1] spectrogram."""
        if self.sound_features == "mfcc":
            mfcc = convert_to_mfcc(chunk, self.mfcc_coefficients, self.window_size, self.hop_size)
            return mfcc.reshape(1, -1)
        spec = convert_to_spectrogram(chunk, self.window_size, self.hop_size)
        return spec.reshape(1, spec.shape[0], spec.shape[1], 1)

    def _detect_image(self, person_confidence: float) -> Detection | None:
        predictions = self.image_predictions()
        if predictions is None:
            return None
        return Detection.from_predictions(predictions, DetectionSource.CAMERA, person_confidence,
                                          timestamp=self._now())

    def _detect_audio(self, person_confidence: float) -> Detection | None:
        predictions = self.audio_predictions()
        if predictions is None:
            return None
        return Detection.from_predictions(predictions, DetectionSource.MICROPHONE, person_confidence,
                                          timestamp=self._now())

    def _detect_fusion(self, person_confidence: float) -> Detection | None:
        image = self.image_predictions()
        audio = self.audio_predictions()
        if image is None and audio is None:
            return None
        if image is not None and audio is not None:
            predictions = fuse_predictions(image, audio, self.fusion_weights)
        else:
            # single modality: its raw scores, unweighted
            predictions = image if image is not None else audio
        return Detection.from_predictions(predictions, DetectionSource.FUSION, person_confidence,
                                          fusion_weights=self.fusion_weights, timestamp=self._now())

    # -- state ------------------------------------------------------------

    @property
    def last_detection(self) -> Detection | None:
        with self._last_lock:
            return self._last_detection

    def clear_cache(self) -> None:
        self.cache.clear()

    def stats(self) -> dict[str, Any]:
        last = self.last_detection
        return {
            "is_detecting": self._detecting,
            "image_buffer_size": len(self.image_buffer),
            "audio_buffer_size": len(self.audio_buffer),
            "prediction_cache_size": len(self.cache),
            "cache_hits": self.cache.hits,
            "cache_misses": self.cache.misses,
            "last_detection": last.to_dict() if last else None,
            "detection_listeners_count": len(self._listeners),
            "require_person_presence": self.require_person_presence,
            "person_detection_type": self.person_detection_type,
            "fusion_enabled": self.fusion_enabled,
            "cycles": self.cycles,
            "accepted": self.accepted,
        }
