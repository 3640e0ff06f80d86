"""Image -> model tensor: resize, scale and lay out as float32 [1, 3, H, W]."""
from __future__ import annotations

import cv2
import numpy as np

from activity_capture.errors import PreprocessingError

IMAGENET_MEAN = np.array([0.485, 0.456, 0.406], dtype=np.float32)
IMAGENET_STD = np.array([0.229, 0.224, 0.225], dtype=np.float32)

NORMALIZATIONS = ("standard", "normalized", "imagenet")


def as_rgb(image: np.ndarray) -> np.ndarray:
    """Return a 3-channel uint8 view of an RGB, RGBA or grayscale frame."""
    if image is None or not isinstance(image, np.ndarray) or image.size == 0:
        raise PreprocessingError("Empty or missing image")
    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2RGB)
    if image.ndim == 3 and image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_RGBA2RGB)
    if image.ndim == 3 and image.shape[2] == 3:
        return image
    raise PreprocessingError(f"Unsupported image shape {image.shape}")


def to_tensor(image: np.ndarray, width: int, height: int, normalization: str = "standard") -> np.ndarray:
    """
    Resize an RGB frame to (width, height) and return a [1, 3, height, width] float32 tensor.

    normalization:
      standard   -> [0, 1]
      normalized -> [-1, 1]
      imagenet   -> (x/255 - mean) / std per channel
    """
    if width < 1 or height < 1:
        raise PreprocessingError(f"Invalid target size {width}x{height}")
    rgb = as_rgb(image)
    resized = cv2.resize(rgb, (int(width), int(height)), interpolation=cv2.INTER_AREA).astype(np.float32)
    if normalization == "standard":
        scaled = resized / 255.0
    elif normalization == "normalized":
        scaled = resized / 127.5 - 1.0
    elif normalization == "imagenet":
        scaled = (resized / 255.0 - IMAGENET_MEAN) / IMAGENET_STD
    else:
        raise PreprocessingError(f"Unknown normalization {normalization!r}; expected one of {NORMALIZATIONS}")
    return np.ascontiguousarray(scaled.transpose(2, 0, 1)[np.newaxis], dtype=np.float32)


def check_shape(tensor: np.ndarray, expected: tuple[int, ...]) -> None:
    if tuple(tensor.shape) != tuple(expected):
        raise PreprocessingError(f"Tensor shape {tuple(tensor.shape)} does not match expected {tuple(expected)}")
