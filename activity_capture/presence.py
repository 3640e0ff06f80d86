"""
Presence gate: is a person in the frame?

The strategy is chosen once from config person_detection.type:
- presence: binary classifier, output [absence, presence], accept presence >= threshold
- facenet: embedding compared (cosine) with named reference faces, accept best >= threshold
- disabled: never reports presence

Any failure inside a strategy (missing model, bad tensor shape) is logged and
counts as "no person" for that call.
"""
from __future__ import annotations

import logging
import re
import threading
from pathlib import Path
from typing import Any

import cv2
import numpy as np

from activity_capture.errors import ModelUnavailableError, PreprocessingError
from activity_capture.inference import KIND_FACENET, KIND_PRESENCE, ModelGateway
from activity_capture.preprocessing import check_shape, to_tensor

logger = logging.getLogger(__name__)

FACE_EXTENSIONS = (".jpg", ".jpeg", ".png")


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity in [-1, 1]; 0.0 for empty or mismatched vectors."""
    a = np.asarray(a, dtype=np.float64).ravel()
    b = np.asarray(b, dtype=np.float64).ravel()
    if a.size == 0 or b.size == 0 or a.size != b.size:
        return 0.0
    denom = np.linalg.norm(a) * np.linalg.norm(b)
    if denom == 0:
        return 0.0
    return float(np.clip(np.dot(a, b) / denom, -1.0, 1.0))


class DisabledPresence:
    name = "disabled"
    threshold = 1.0

    def detect(self, frame: np.ndarray) -> float | None:
        return None

    def model_available(self) -> bool:
        return False


class PresenceModelStrategy:
    """Binary presence classifier behind the inference gateway."""

    name = "presence"

    def __init__(self, gateway: ModelGateway, width: int = 101, height: int = 101, channels: int = 3,
                 normalization: str = "standard", threshold: float = 0.5) -> None:
        self.gateway = gateway
        self.width = int(width)
        self.height = int(height)
        self.channels = int(channels)
        self.normalization = normalization
        self.threshold = float(threshold)

    def detect(self, frame: np.ndarray) -> float | None:
        tensor = to_tensor(frame, self.width, self.height, self.normalization)
        check_shape(tensor, (1, self.channels, self.height, self.width))
        output = np.asarray(self.gateway.presence(tensor), dtype=np.float64).ravel()
        if output.size < 2:
            logger.warning("Presence model returned %d value(s), expected [absence, presence]", output.size)
            return None
        presence = float(output[1])
        return presence if presence >= self.threshold else None

    def model_available(self) -> bool:
        return self.gateway.is_available(KIND_PRESENCE)


class FaceEmbeddingStrategy:
    """Match the frame's face embedding against reference images stored in faces_directory."""

    name = "facenet"

    def __init__(self, gateway: ModelGateway, faces_directory: str | Path = "faces",
                 image_size: int = 160, threshold: float = 0.7) -> None:
        self.gateway = gateway
        self.faces_directory = Path(faces_directory)
        self.image_size = int(image_size)
        self.threshold = float(threshold)
        self._references: dict[str, np.ndarray] = {}
        self._lock = threading.Lock()
        self.faces_directory.mkdir(parents=True, exist_ok=True)
        self.reload_reference_images()

    def _embed(self, image: np.ndarray) -> np.ndarray:
        tensor = to_tensor(image, self.image_size, self.image_size, "normalized")
        return np.asarray(self.gateway.embed(tensor), dtype=np.float64).ravel()

    def detect(self, frame: np.ndarray) -> float | None:
        with self._lock:
            references = dict(self._references)
        if not references:
            return None
        embedding = self._embed(frame)
        best_name, best = None, -1.0
        for name, ref in references.items():
            score = cosine_similarity(embedding, ref)
            if score > best:
                best_name, best = name, score
        if best >= self.threshold:
            logger.debug("Face match %s (%.3f)", best_name, best)
            return best
        return None

    def reload_reference_images(self) -> int:
        """Re-embed every image in faces_directory. Returns the number of references loaded."""
        loaded: dict[str, np.ndarray] = {}
        for path in sorted(self.faces_directory.iterdir()):
            if path.suffix.lower() not in FACE_EXTENSIONS:
                continue
            bgr = cv2.imread(str(path))
            if bgr is None:
                logger.warning("Unreadable reference image %s", path)
                continue
            try:
                loaded[path.stem] = self._embed(cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB))
            except (ModelUnavailableError, PreprocessingError) as e:
                logger.warning("Reference image %s skipped: %s", path.name, e)
        with self._lock:
            self._references = loaded
        logger.info("Loaded %d reference face(s) from %s", len(loaded), self.faces_directory)
        return len(loaded)

    def add_reference_image(self, person_name: str, image: np.ndarray) -> bool:
        """Embed image, store it as <faces_directory>/<person_name>.jpg and register it."""
        if not re.fullmatch(r"[\w\- ]+", person_name or ""):
            logger.error("Invalid person name %r", person_name)
            return False
        try:
            embedding = self._embed(image)
        except (ModelUnavailableError, PreprocessingError) as e:
            logger.error("Could not add reference for %s: %s", person_name, e)
            return False
        path = self.faces_directory / f"{person_name}.jpg"
        if not cv2.imwrite(str(path), cv2.cvtColor(image, cv2.COLOR_RGB2BGR)):
            logger.error("Could not write %s", path)
            return False
        with self._lock:
            self._references[person_name] = embedding
        logger.info("Reference face added: %s", person_name)
        return True

    def remove_reference_image(self, person_name: str) -> bool:
        with self._lock:
            removed = self._references.pop(person_name, None) is not None
        for ext in FACE_EXTENSIONS:
            path = self.faces_directory / f"{person_name}{ext}"
            if path.is_file():
                path.unlink()
                removed = True
        if removed:
            logger.info("Reference face removed: %s", person_name)
        return removed

    def reference_persons(self) -> list[str]:
        with self._lock:
            return sorted(self._references)

    def model_available(self) -> bool:
        return self.gateway.is_available(KIND_FACENET)


PresenceStrategy = DisabledPresence | PresenceModelStrategy | FaceEmbeddingStrategy


class PresenceGate:
    """Runs the configured strategy and keeps attempt/success counters."""

    def __init__(self, strategy: PresenceStrategy) -> None:
        self.strategy = strategy
        self._lock = threading.Lock()
        self.total_attempts = 0
        self.successful_detections = 0

    @property
    def enabled(self) -> bool:
        return not isinstance(self.strategy, DisabledPresence)

    def detect_presence(self, frame: np.ndarray | None) -> float | None:
        """Presence confidence, or None when absent, disabled, or the check failed."""
        if frame is None or not self.enabled:
            return None
        with self._lock:
            self.total_attempts += 1
        try:
            confidence = self.strategy.detect(frame)
        except (ModelUnavailableError, PreprocessingError) as e:
            logger.error("Presence check (%s) failed: %s", self.strategy.name, e)
            return None
        except Exception:
            logger.exception("Presence check (%s) raised", self.strategy.name)
            return None
        if confidence is not None:
            with self._lock:
                self.successful_detections += 1
        return confidence

    def update_confidence_threshold(self, threshold: float) -> None:
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"Threshold must be within [0, 1], got {threshold}")
        self.strategy.threshold = float(threshold)
        logger.info("Presence threshold set to %.2f", threshold)

    def reset_stats(self) -> None:
        with self._lock:
            self.total_attempts = 0
            self.successful_detections = 0

    def success_rate(self) -> float:
        with self._lock:
            if self.total_attempts == 0:
                return 0.0
            return self.successful_detections / self.total_attempts

    def stats(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "strategy": self.strategy.name,
            "confidence_threshold": self.strategy.threshold,
            "total_attempts": self.total_attempts,
            "successful_detections": self.successful_detections,
            "success_rate": self.success_rate(),
            "model_available": self.strategy.model_available(),
        }
        if isinstance(self.strategy, FaceEmbeddingStrategy):
            out["reference_persons"] = self.strategy.reference_persons()
        return out


def build_presence_gate(config: dict[str, Any], gateway: ModelGateway) -> PresenceGate:
    kind = str(config.get("person_detection", {}).get("type", "presence")).lower()
    models = config.get("models", {})
    if kind == "presence":
        p = config.get("detection", {}).get("presence", {})
        strategy: PresenceStrategy = PresenceModelStrategy(
            gateway,
            width=p.get("width", 101),
            height=p.get("height", 101),
            channels=p.get("channels", 3),
            normalization=p.get("normalization", "standard"),
            threshold=models.get("presence", {}).get("confidence_threshold", 0.5),
        )
    elif kind == "facenet":
        f = models.get("facenet", {})
        strategy = FaceEmbeddingStrategy(
            gateway,
            faces_directory=f.get("faces_directory", "faces"),
            image_size=f.get("image_size", 160),
            threshold=f.get("confidence_threshold", 0.7),
        )
    elif kind == "disabled":
        strategy = DisabledPresence()
    else:
        raise ValueError(f"Unknown person_detection.type {kind!r} (presence, facenet or disabled)")
    logger.info("Presence gate strategy: %s", strategy.name)
    return PresenceGate(strategy)
