"""
Logging setup: one stream handler on the package logger, plus one-line JSON
events for log aggregation (capture start/stop, reconnects, detections, saves).
"""
from __future__ import annotations

import json
import logging
import time
from typing import Any

PACKAGE_LOGGER = "activity_capture"
EVENTS_LOGGER = "activity_capture.events"

_configured = False


def configure_logging(config: dict[str, Any] | None = None) -> logging.Logger:
    """Install a stream handler on the package logger once. Level from config logging.level."""
    global _configured
    cfg = (config or {}).get("logging", {})
    level = str(cfg.get("level") or "INFO").upper()
    log = logging.getLogger(PACKAGE_LOGGER)
    log.setLevel(getattr(logging, level, logging.INFO))
    if not _configured and not log.handlers:
        h = logging.StreamHandler()
        h.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        log.addHandler(h)
        _configured = True

    events = logging.getLogger(EVENTS_LOGGER)
    events.disabled = not cfg.get("structured", True)
    return log


def log_structured(event: str, **kwargs: Any) -> None:
    """Emit one JSON line for log aggregation. Values that are not JSON-native are str()'d."""
    events = logging.getLogger(EVENTS_LOGGER)
    if not events.isEnabledFor(logging.INFO):
        return
    payload = {"event": event, "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()), **kwargs}
    try:
        line = json.dumps(payload, default=str)
    except (TypeError, ValueError):
        line = json.dumps({"event": event, "ts": payload["ts"], "detail": repr(kwargs)})
    events.info(line)
