"""
Audio capture producer and feature extraction.

A read loop pulls raw 16-bit PCM from the microphone into an accumulation
buffer; a periodic drain task emits the buffer as one AudioChunk (bytes) to
every audio listener once per duration window. Reader and drain share one lock.

convert_to_spectrogram / convert_to_mfcc turn a chunk into model input:
Hamming-windowed rfft magnitudes (frames x bins) and a cosine projection of
those bins.
"""
from __future__ import annotations

import logging
import threading
from typing import Any, Callable

import numpy as np

from activity_capture.errors import AudioFormatError
from activity_capture.listeners import ListenerRegistry
from activity_capture.log import log_structured
from activity_capture.tasks import TaskScheduler

logger = logging.getLogger(__name__)

SAMPLE_WIDTH_BYTES = 2


def pcm16_to_float(chunk: bytes) -> np.ndarray:
    """Little-endian signed 16-bit PCM -> float32 in [-1, 1). A trailing odd byte is dropped."""
    usable = len(chunk) - (len(chunk) % SAMPLE_WIDTH_BYTES)
    samples = np.frombuffer(chunk[:usable], dtype="<i2")
    return samples.astype(np.float32) / 32768.0


def convert_to_spectrogram(chunk: bytes, window_size: int = 1024, hop_size: int = 512) -> np.ndarray:
    """Magnitude spectrogram of shape (frames, window_size // 2 + 1).

    Chunks shorter than one window are zero-padded to exactly one frame.
    """
    if window_size < 2 or hop_size < 1:
        raise ValueError(f"Invalid window/hop: {window_size}/{hop_size}")
    samples = pcm16_to_float(chunk)
    if samples.size < window_size:
        samples = np.pad(samples, (0, window_size - samples.size))
    n_frames = 1 + (samples.size - window_size) // hop_size
    frames = np.lib.stride_tricks.sliding_window_view(samples, window_size)[::hop_size][:n_frames]
    windowed = frames * np.hamming(window_size).astype(np.float32)
    return np.abs(np.fft.rfft(windowed, axis=1)).astype(np.float32)


def convert_to_mfcc(chunk: bytes, n_coeffs: int = 13, window_size: int = 1024, hop_size: int = 512) -> np.ndarray:
    """n_coeffs cepstral-style coefficients: coeff[i] = sum_f,k S[f,k] * cos(pi*i*k/bins) / (frames*bins).

    The projection runs over linear spectrogram bins (no mel filterbank) so
    features stay compatible with models trained on this representation.
    """
    spec = convert_to_spectrogram(chunk, window_size, hop_size)
    n_frames, n_bins = spec.shape
    k = np.arange(n_bins)
    basis = np.cos(np.pi * np.outer(np.arange(n_coeffs), k) / n_bins)
    coeffs = basis @ spec.sum(axis=0, dtype=np.float64)
    return (coeffs / (n_frames * n_bins)).astype(np.float32)


class MicrophoneLine:
    """Blocking PyAudio input stream. Only 16-bit signed PCM is supported."""

    def __init__(self, sample_rate: int, channels: int, sample_size_bits: int,
                 buffer_size: int, device_index: int | None = None) -> None:
        if sample_size_bits != 16:
            raise AudioFormatError(f"Unsupported sample size: {sample_size_bits} bits (16 required)")
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        self.buffer_size = int(buffer_size)
        self.device_index = device_index
        self._pa = None
        self._stream = None

    @property
    def frames_per_read(self) -> int:
        return max(1, self.buffer_size // (self.channels * SAMPLE_WIDTH_BYTES))

    def open(self) -> None:
        try:
            import pyaudio  # type: ignore[reportMissingModuleSource]
            self._pa = pyaudio.PyAudio()
        except (ImportError, OSError) as e:
            raise AudioFormatError(f"PyAudio unavailable: {e}") from e
        try:
            self._stream = self._pa.open(
                format=pyaudio.paInt16,
                channels=self.channels,
                rate=self.sample_rate,
                input=True,
                frames_per_buffer=self.frames_per_read,
                input_device_index=self.device_index,
            )
        except (OSError, ValueError) as e:
            self._pa.terminate()
            self._pa = None
            raise AudioFormatError(f"Microphone line unavailable: {e}") from e

    def read(self) -> bytes:
        if self._stream is None:
            raise AudioFormatError("Microphone line is not open")
        return self._stream.read(self.frames_per_read, exception_on_overflow=False)

    def close(self) -> None:
        if self._stream is not None:
            self._stream.stop_stream()
            self._stream.close()
            self._stream = None
        if self._pa is not None:
            self._pa.terminate()
            self._pa = None


LineFactory = Callable[[dict[str, Any]], Any]


def _default_line(mic: dict[str, Any]) -> MicrophoneLine:
    return MicrophoneLine(
        sample_rate=int(mic.get("sample_rate", 16000)),
        channels=int(mic.get("channels", 1)),
        sample_size_bits=int(mic.get("sample_size_bits", 16)),
        buffer_size=int(mic.get("buffer_size", 4096)),
        device_index=mic.get("device_index"),
    )


class AudioCaptureProducer:
    """Continuous microphone reader emitting one chunk per duration window."""

    def __init__(self, config: dict[str, Any], line_factory: LineFactory | None = None) -> None:
        self.mic_cfg: dict[str, Any] = config.get("capture", {}).get("microphone", {})
        audio = config.get("detection", {}).get("audio", {})
        self.duration_sec = float(audio.get("duration_sec", 3))
        self.window_size = int(audio.get("window_size", 1024))
        self.hop_size = int(audio.get("hop_size", 512))
        self.mfcc_coefficients = int(audio.get("mfcc_coefficients", 13))
        self.grace_sec = float(config.get("shutdown", {}).get("grace_sec", 5))
        self._line_factory: LineFactory = line_factory or _default_line
        self._listeners = ListenerRegistry("audio")
        self._buffer = bytearray()
        self._buffer_lock = threading.Lock()
        self._state_lock = threading.RLock()
        self._line = None
        self._scheduler: TaskScheduler | None = None
        self._capturing = False
        self.chunks_emitted = 0
        self.bytes_read = 0

    def add_audio_listener(self, listener: Callable[[bytes], None]) -> None:
        self._listeners.add(listener)

    def remove_audio_listener(self, listener: Callable[[bytes], None]) -> bool:
        return self._listeners.remove(listener)

    def start(self) -> None:
        """Open the line and start reading. Raises AudioFormatError only when the microphone is required."""
        with self._state_lock:
            if self._capturing:
                logger.info("Audio capture already running")
                return
            if self._scheduler is not None:
                # read loop died earlier; release its leftovers first
                self.stop()
            try:
                line = self._line_factory(self.mic_cfg)
                line.open()
            except AudioFormatError as e:
                logger.error("Audio capture not started: %s", e)
                if self.mic_cfg.get("required", False):
                    raise
                return
            self._line = line
            self._capturing = True
            scheduler = TaskScheduler("audio", self.grace_sec)
            scheduler.spawn("read", lambda: self._read_loop(line, scheduler.stop_event))
            scheduler.schedule("drain", self._drain, self.duration_sec, initial_delay=self.duration_sec)
            self._scheduler = scheduler
            logger.info("Audio capture started (%s Hz, %s ch, window %.1fs)",
                        self.mic_cfg.get("sample_rate", 16000), self.mic_cfg.get("channels", 1), self.duration_sec)
            log_structured("audio_capture_started", sample_rate=self.mic_cfg.get("sample_rate", 16000))

    def _read_loop(self, line: Any, stop_event: threading.Event) -> None:
        """Owns the line: reads until stopped, then closes it on this thread."""
        try:
            while not stop_event.is_set():
                try:
                    data = line.read()
                except Exception as e:
                    # not restarted here; the orchestrator owns restart policy
                    if not stop_event.is_set():
                        logger.error("Microphone read failed, capture loop ends: %s", e)
                    self._capturing = False
                    return
                if data:
                    with self._buffer_lock:
                        self._buffer.extend(data)
                    self.bytes_read += len(data)
        finally:
            try:
                line.close()
            except Exception as e:
                logger.warning("Closing microphone line failed: %s", e)

    def _drain(self) -> None:
        with self._buffer_lock:
            if not self._buffer:
                return
            chunk = bytes(self._buffer)
            self._buffer.clear()
        self.chunks_emitted += 1
        self._listeners.notify(chunk)

    def stop(self) -> None:
        with self._state_lock:
            scheduler, self._scheduler = self._scheduler, None
            line, self._line = self._line, None
            if scheduler is None and line is None:
                return
            self._capturing = False
            # the read loop closes the line once its current read returns
            if scheduler is not None and not scheduler.shutdown():
                logger.warning("Microphone read loop did not exit within %.1fs, line left open", self.grace_sec)
            with self._buffer_lock:
                self._buffer = bytearray()
            logger.info("Audio capture stopped")
            log_structured("audio_capture_stopped", chunks=self.chunks_emitted)

    def is_capturing(self) -> bool:
        return self._capturing

    def buffered_bytes(self) -> int:
        with self._buffer_lock:
            return len(self._buffer)

    def convert_to_spectrogram(self, chunk: bytes) -> np.ndarray:
        return convert_to_spectrogram(chunk, self.window_size, self.hop_size)

    def convert_to_mfcc(self, chunk: bytes) -> np.ndarray:
        return convert_to_mfcc(chunk, self.mfcc_coefficients, self.window_size, self.hop_size)

    def stats(self) -> dict[str, Any]:
        return {
            "capturing": self._capturing,
            "buffered_bytes": self.buffered_bytes(),
            "bytes_read": self.bytes_read,
            "chunks_emitted": self.chunks_emitted,
            "audio_listeners": len(self._listeners),
        }


def list_input_devices() -> list[dict[str, Any]]:
    """List audio input devices as {index, name, sample_rate, channels}. [] if PyAudio cannot enumerate."""
    try:
        import pyaudio  # type: ignore[reportMissingModuleSource]
        pa = pyaudio.PyAudio()
    except (ImportError, OSError) as e:
        logger.warning("PyAudio unavailable: %s", e)
        return []
    try:
        devices = []
        for i in range(pa.get_device_count()):
            info = pa.get_device_info_by_index(i)
            if info.get("maxInputChannels", 0) > 0:
                devices.append({
                    "index": i,
                    "name": info.get("name", f"Microphone {i}"),
                    "sample_rate": int(info.get("defaultSampleRate", 44100)),
                    "channels": int(info.get("maxInputChannels", 1)),
                })
        return devices
    finally:
        pa.terminate()


def is_microphone_available() -> bool:
    return bool(list_input_devices())
