"""
Model inference gateway.

The detection core only sees ModelGateway: tensor in, flat probability
vector out, or ModelUnavailableError. TorchModelGateway loads TorchScript
artifacts (torch.jit.load) per kind and variant, caches them in memory and
runs them on the best available device (mps > cuda > cpu unless configured).
"""
from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any

import numpy as np

from activity_capture.errors import ModelUnavailableError

logger = logging.getLogger(__name__)

KIND_IMAGE = "activity_image"
KIND_SOUND = "activity_sound"
KIND_PRESENCE = "presence"
KIND_FACENET = "facenet"


class ModelGateway:
    """Contract the detection core depends on. Subclasses implement _predict()."""

    def classify_image(self, tensor: np.ndarray) -> np.ndarray:
        return self._predict(KIND_IMAGE, tensor)

    def classify_sound(self, features: np.ndarray) -> np.ndarray:
        return self._predict(KIND_SOUND, features)

    def presence(self, tensor: np.ndarray) -> np.ndarray:
        """[p_absent, p_present]."""
        return self._predict(KIND_PRESENCE, tensor)

    def embed(self, tensor: np.ndarray) -> np.ndarray:
        return self._predict(KIND_FACENET, tensor)

    def _predict(self, kind: str, data: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def is_available(self, kind: str, variant: str | None = None) -> bool:
        return False

    def clear_cache(self) -> None:
        pass

    def stats(self) -> dict[str, Any]:
        return {}


def resolve_device(preference: str = "auto") -> str:
    """Prefer MPS (Mac) > CUDA > CPU when preference is 'auto'."""
    if preference and preference != "auto":
        return preference
    import torch
    if getattr(torch.backends, "mps", None) and torch.backends.mps.is_available():
        return "mps"
    if torch.cuda.is_available():
        return "cuda"
    return "cpu"


class TorchModelGateway(ModelGateway):
    """TorchScript models resolved from config['models']."""

    def __init__(self, config: dict[str, Any]) -> None:
        models = config.get("models", {})
        self.cache_enabled = bool(models.get("cache_enabled", True))
        self.device_preference = str(models.get("device", "auto"))
        activity = models.get("activity", {})
        presence = models.get("presence", {})
        facenet = models.get("facenet", {})
        self._paths: dict[str, dict[str, str]] = {
            KIND_IMAGE: dict(activity.get("image", {}).get("paths", {})),
            KIND_SOUND: dict(activity.get("sound", {}).get("paths", {})),
            KIND_PRESENCE: dict(presence.get("paths", {})),
            KIND_FACENET: {"default": facenet.get("path", "")} if facenet.get("path") else {},
        }
        self._defaults: dict[str, str] = {
            KIND_IMAGE: activity.get("image", {}).get("default", "standard"),
            KIND_SOUND: activity.get("sound", {}).get("default", "spectrogram"),
            KIND_PRESENCE: presence.get("default", "standard"),
            KIND_FACENET: "default",
        }
        self._cache: dict[tuple[str, str], Any] = {}
        self._lock = threading.Lock()
        self._device: str | None = None
        self.calls = 0
        self.failures = 0

    @property
    def device(self) -> str:
        if self._device is None:
            self._device = resolve_device(self.device_preference)
        return self._device

    def default_variant(self, kind: str) -> str:
        return self._defaults.get(kind, "standard")

    def model_path(self, kind: str, variant: str | None = None) -> Path | None:
        variant = variant or self.default_variant(kind)
        path = self._paths.get(kind, {}).get(variant)
        return Path(path) if path else None

    def is_available(self, kind: str, variant: str | None = None) -> bool:
        variant = variant or self.default_variant(kind)
        with self._lock:
            if (kind, variant) in self._cache:
                return True
        path = self.model_path(kind, variant)
        return path is not None and path.is_file()

    def load(self, kind: str, variant: str | None = None):
        """Load (or fetch from cache) the model for kind/variant. Raises ModelUnavailableError."""
        import torch

        variant = variant or self.default_variant(kind)
        key = (kind, variant)
        with self._lock:
            model = self._cache.get(key)
            if model is not None:
                return model
            path = self.model_path(kind, variant)
            if path is None:
                raise ModelUnavailableError(f"No model configured for {kind}/{variant}")
            if not path.is_file():
                raise ModelUnavailableError(f"Model file not found: {path}")
            try:
                model = torch.jit.load(str(path), map_location=self.device)
            except (RuntimeError, ValueError, OSError) as e:
                raise ModelUnavailableError(f"Could not load {path}: {e}") from e
            model.eval()
            logger.info("Loaded %s/%s model from %s on %s", kind, variant, path, self.device)
            if self.cache_enabled:
                self._cache[key] = model
            return model

    def _predict(self, kind: str, data: np.ndarray) -> np.ndarray:
        import torch

        model = self.load(kind)
        self.calls += 1
        try:
            with torch.no_grad():
                out = model(torch.from_numpy(np.ascontiguousarray(data, dtype=np.float32)).to(self.device))
        except RuntimeError:
            self.failures += 1
            raise
        if isinstance(out, (tuple, list)):
            out = out[0]
        return out.detach().cpu().numpy().astype(np.float64).ravel()

    def clear_cache(self) -> None:
        with self._lock:
            n = len(self._cache)
            self._cache.clear()
        logger.info("Model cache cleared (%d model(s))", n)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            cached = [f"{k}/{v}" for k, v in self._cache]
        availability = {
            kind: {variant: self.is_available(kind, variant) for variant in variants}
            for kind, variants in self._paths.items()
        }
        return {
            "device": self._device or self.device_preference,
            "cache_enabled": self.cache_enabled,
            "cached_models": cached,
            "defaults": dict(self._defaults),
            "availability": availability,
            "calls": self.calls,
            "failures": self.failures,
        }
