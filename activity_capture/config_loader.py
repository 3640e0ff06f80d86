"""Load config from config.yaml (or env override), merged over built-in defaults."""
from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

CONFIG_PATH = Path(__file__).resolve().parent / "config.yaml"


def load_config(path: Path | str | None = None, *, use_env: bool = True) -> dict[str, Any]:
    """
    Load YAML config and deep-merge it over the defaults.

    Path resolution: explicit path, then ACTIVITY_CAPTURE_CONFIG, then the
    config.yaml shipped next to this module. A missing file yields the defaults.
    Environment overrides (after .env is loaded) are applied last when use_env.
    """
    if use_env:
        load_dotenv()
    env_path = os.environ.get("ACTIVITY_CAPTURE_CONFIG", "").strip() if use_env else ""
    p = Path(path) if path else Path(env_path) if env_path else CONFIG_PATH
    out = _default_config()
    if p.is_file():
        with open(p, encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config file {p} must contain a mapping, got {type(loaded).__name__}")
        out = merge_config(out, loaded)
    if use_env:
        _apply_env_overrides(out)
    return out


def merge_config(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursive merge; mappings merge key by key, anything else replaces."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _apply_env_overrides(config: dict[str, Any]) -> None:
    urls = os.environ.get("CAPTURE_RTSP_URLS", "").strip()
    if urls:
        rtsp = config["capture"]["rtsp"]
        rtsp["urls"] = [u.strip() for u in urls.split(",") if u.strip()]
        rtsp["enabled"] = True
    history_dir = os.environ.get("HISTORY_DIRECTORY", "").strip()
    if history_dir:
        config["history"]["directory"] = history_dir
    retention = os.environ.get("RETENTION_DAYS", "").strip()
    if retention.isdigit():
        config["history"]["retention_days"] = int(retention)
    level = os.environ.get("LOG_LEVEL", "").strip()
    if level:
        config["logging"]["level"] = level


def _default_config() -> dict[str, Any]:
    return {
        "capture": {
            "camera": {"enabled": True, "device_id": 0, "width": 640, "height": 480, "fps": 15},
            "rtsp": {
                "enabled": False,
                "urls": [],
                "timeout_ms": 5000,
                "reconnect_delay_ms": 10000,
                "capture_interval_ms": 100,
            },
            "microphone": {
                "enabled": True,
                "required": False,
                "device_index": None,
                "sample_rate": 16000,
                "channels": 1,
                "sample_size_bits": 16,
                "buffer_size": 4096,
            },
        },
        "detection": {
            "interval_ms": 2000,
            "confidence_threshold": 0.6,
            "require_person_presence": True,
            "image": {"width": 224, "height": 224, "normalization": "standard"},
            "fusion": {"enabled": True, "image_weight": 0.7, "sound_weight": 0.3},
            "audio": {"duration_sec": 3, "window_size": 1024, "hop_size": 512, "mfcc_coefficients": 13},
            "presence": {"width": 101, "height": 101, "channels": 3, "normalization": "standard"},
            "image_buffer_size": 10,
            "audio_buffer_size": 5,
        },
        "person_detection": {"type": "presence"},
        "models": {
            "directory": "models",
            "device": "auto",
            "cache_enabled": True,
            "activity": {
                "image": {
                    "default": "standard",
                    "paths": {
                        "standard": "models/activity_image_standard.pt",
                        "vgg16": "models/activity_image_vgg16.pt",
                        "resnet": "models/activity_image_resnet.pt",
                    },
                },
                "sound": {
                    "default": "spectrogram",
                    "paths": {
                        "standard": "models/activity_sound_standard.pt",
                        "spectrogram": "models/activity_sound_spectrogram.pt",
                        "mfcc": "models/activity_sound_mfcc.pt",
                    },
                },
            },
            "presence": {
                "default": "standard",
                "confidence_threshold": 0.5,
                "paths": {
                    "standard": "models/presence_standard.pt",
                    "yolo": "models/presence_yolo.pt",
                },
            },
            "facenet": {
                "path": "models/facenet.pt",
                "confidence_threshold": 0.7,
                "faces_directory": "faces",
                "image_size": 160,
            },
        },
        "cache": {"predictions": {"ttl_sec": 30, "bucket_sec": 10}},
        "history": {
            "directory": "history",
            "file_format": "json",
            "retention_days": 30,
            "auto_save_interval_sec": 60,
            "buffer_limit": 1000,
            "cleanup_interval_sec": 86400,
        },
        "logging": {"level": "INFO", "structured": True},
        "shutdown": {"grace_sec": 5},
    }
