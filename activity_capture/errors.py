"""Exception hierarchy shared by capture, inference and orchestration."""
from __future__ import annotations


class ActivityCaptureError(Exception):
    """Base class for errors raised by this package."""


class CaptureError(ActivityCaptureError):
    """A capture resource (camera, stream, microphone) could not be used."""


class AudioFormatError(CaptureError):
    """Requested audio format is not supported or no input line is available."""


class ModelUnavailableError(ActivityCaptureError):
    """The inference gateway has no usable model for the requested kind."""


class PreprocessingError(ActivityCaptureError):
    """Input could not be turned into a tensor of the expected shape."""


class StartupError(ActivityCaptureError):
    """Starting all services failed; whatever had started was stopped again."""
