"""
Audio Capture Coordinator

Records raw audio next to a dictation recognition stream and turns the
recording into a portable artifact (base64 data URL) when both sides are done.

The recognizer and the recorder finish independently and in no fixed order,
so the artifact is only built once *both* have reported their end. This way
the trailing chunk the recorder flushes on stop is never lost.
"""

from __future__ import annotations

import asyncio
import base64
import io
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

import numpy as np

from ..errors import PermissionDeniedError, UnsupportedError
from ..logging_setup import TimingContext

try:
    import sounddevice as sd
except (ImportError, OSError):  # pragma: no cover - PortAudio missing
    sd = None  # type: ignore[assignment]

try:
    import soundfile as sf
except (ImportError, OSError):  # pragma: no cover - libsndfile missing
    sf = None  # type: ignore[assignment]


MIME_TYPES = {
    "WAV": "audio/wav",
    "FLAC": "audio/flac",
    "OGG": "audio/ogg",
}

DataCallback = Callable[[np.ndarray], None]


class Recorder(Protocol):
    sample_rate: int
    channels: int

    def start(self, on_data: DataCallback, on_stopped: Callable[[], None]) -> None: ...

    def stop(self) -> None: ...


@dataclass(frozen=True)
class AudioArtifact:
    """Finalized recording, ready to be attached to a note"""

    data_url: str
    mime_type: str
    duration_ms: int
    size: int
    sample_rate: int
    timestamp: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "data_url": self.data_url,
            "mime_type": self.mime_type,
            "duration_ms": self.duration_ms,
            "size": self.size,
            "sample_rate": self.sample_rate,
            "timestamp": self.timestamp,
        }


def encode_artifact(
    chunks: list[np.ndarray],
    sample_rate: int,
    artifact_format: str = "WAV",
    subtype: str = "PCM_16",
) -> Optional[AudioArtifact]:
    """Merge ordered chunks into one recording and encode it as a data URL."""
    if not chunks:
        return None
    if sf is None:
        raise UnsupportedError("soundfile is not installed")

    audio = np.concatenate(chunks, axis=0)
    fmt = artifact_format.upper()
    buffer = io.BytesIO()
    sf.write(buffer, audio, sample_rate, format=fmt, subtype=subtype)
    payload = buffer.getvalue()

    mime_type = MIME_TYPES.get(fmt, "application/octet-stream")
    encoded = base64.b64encode(payload).decode("ascii")
    return AudioArtifact(
        data_url=f"data:{mime_type};base64,{encoded}",
        mime_type=mime_type,
        duration_ms=int(len(audio) * 1000 / sample_rate),
        size=len(payload),
        sample_rate=sample_rate,
        timestamp=int(time.time() * 1000),
    )


class AudioCaptureCoordinator:
    """
    Owns the raw recording of one dictation session

    Usage:
        capture = AudioCaptureCoordinator(recorder)
        capture.start()                    # alongside the recognition stream
        ...
        capture.stop()                     # recorder flushes, then on_stopped
        capture.mark_recognition_ended()   # recognizer end notification
        artifact = await capture.wait_artifact(timeout=3.0)
    """

    def __init__(
        self,
        recorder: Recorder,
        artifact_format: str = "WAV",
        subtype: str = "PCM_16",
    ):
        self.recorder = recorder
        self.artifact_format = artifact_format
        self.subtype = subtype
        self.logger = logging.getLogger('AudioCapture')

        self.chunks: list[np.ndarray] = []
        self.recording = False
        self.stop_requested = False
        self.recorder_done = False
        self.recognition_done = False
        self._done = asyncio.Event()

    @property
    def sample_rate(self) -> int:
        return self.recorder.sample_rate

    def start(self) -> None:
        """Start the recorder (may raise PermissionDeniedError)."""
        self.recorder.start(self.on_data, self.on_stopped)
        self.recording = True
        self.logger.debug("Audio capture started")

    def on_data(self, chunk: np.ndarray) -> None:
        """Recorder 'data available' notification"""
        if self.recorder_done:
            return
        if chunk is None or len(chunk) == 0:
            return
        self.chunks.append(chunk)

    def on_stopped(self) -> None:
        """Recorder has flushed its last chunk"""
        if self.recorder_done:
            return
        self.recorder_done = True
        self.recording = False
        self._maybe_finish()

    def mark_recognition_ended(self) -> None:
        if self.recognition_done:
            return
        self.recognition_done = True
        self._maybe_finish()

    def stop(self) -> None:
        if self.stop_requested or self.recorder_done:
            return
        self.stop_requested = True
        try:
            self.recorder.stop()
        except Exception as exc:
            self.logger.warning("Recorder stop failed: %s", exc)
            self.on_stopped()

    @property
    def finished(self) -> bool:
        return self.recorder_done and self.recognition_done

    def _maybe_finish(self) -> None:
        if self.finished:
            self.logger.debug("Both recorder and recognizer ended (%d chunks)", len(self.chunks))
            self._done.set()

    async def wait_artifact(self, timeout: Optional[float] = None) -> Optional[AudioArtifact]:
        """
        Wait until both sides ended, then encode the recording

        On timeout the chunks collected so far are encoded anyway.
        """
        try:
            await asyncio.wait_for(self._done.wait(), timeout)
        except asyncio.TimeoutError:
            self.logger.warning(
                "Audio finalization timed out (recorder_done=%s, recognition_done=%s)",
                self.recorder_done,
                self.recognition_done,
            )
            self.recorder_done = True
            self.recognition_done = True

        chunks = list(self.chunks)
        if not chunks:
            return None

        with TimingContext(self.logger, "Audio artifact encoding", warn_threshold_ms=250.0):
            return await asyncio.to_thread(
                encode_artifact,
                chunks,
                self.sample_rate,
                self.artifact_format,
                self.subtype,
            )


class SoundDeviceRecorder:
    """
    Microphone recorder on sounddevice

    Audio arrives in small blocks on PortAudio's thread and is coalesced into
    ``chunk_ms`` chunks. Every notification is marshalled onto the event loop
    that called ``start()``; ``stop()`` flushes the partial trailing chunk
    before reporting ``on_stopped``.
    """

    def __init__(
        self,
        sample_rate: int = 16000,
        channels: int = 1,
        chunk_ms: int = 1000,
        block_ms: int = 100,
    ):
        self.sample_rate = sample_rate
        self.channels = channels
        self.chunk_frames = max(int(sample_rate * chunk_ms / 1000), 1)
        self.block_frames = max(int(sample_rate * block_ms / 1000), 1)
        self.logger = logging.getLogger('SoundDeviceRecorder')

        self._lock = threading.Lock()
        self._stream: Any = None
        self._running = False
        self._pending: list[np.ndarray] = []
        self._pending_frames = 0
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._on_data: Optional[DataCallback] = None
        self._on_stopped: Optional[Callable[[], None]] = None

    def start(self, on_data: DataCallback, on_stopped: Callable[[], None]) -> None:
        if sd is None:
            raise UnsupportedError("sounddevice is not installed")

        with self._lock:
            if self._running:
                return
            self._loop = asyncio.get_running_loop()
            self._on_data = on_data
            self._on_stopped = on_stopped
            self._pending = []
            self._pending_frames = 0
            try:
                self._stream = sd.InputStream(
                    samplerate=self.sample_rate,
                    channels=self.channels,
                    dtype="float32",
                    blocksize=self.block_frames,
                    callback=self._callback,
                )
                self._stream.start()
            except sd.PortAudioError as exc:
                self._stream = None
                raise PermissionDeniedError(f"Microphone unavailable: {exc}") from exc
            self._running = True

        self.logger.debug("Recorder started (%d Hz, %d ch)", self.sample_rate, self.channels)

    def stop(self) -> None:
        with self._lock:
            if not self._running:
                return
            self._running = False
            stream = self._stream
            self._stream = None

        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except sd.PortAudioError as exc:
                self.logger.warning("Error closing input stream: %s", exc)

        with self._lock:
            trailing = self._drain_pending()

        if trailing is not None:
            self._dispatch(self._on_data, trailing)
        self._dispatch(self._on_stopped)
        self.logger.debug("Recorder stopped")

    def _callback(self, indata, frames, time_info, status) -> None:
        if status:
            self.logger.warning("Audio status: %s", status)

        with self._lock:
            if not self._running:
                return
            self._pending.append(indata.copy())
            self._pending_frames += frames
            if self._pending_frames < self.chunk_frames:
                return
            chunk = self._drain_pending()

        self._dispatch(self._on_data, chunk)

    def _drain_pending(self) -> Optional[np.ndarray]:
        """Concatenate pending blocks (lock must be held)"""
        if not self._pending:
            return None
        chunk = np.concatenate(self._pending, axis=0)
        self._pending = []
        self._pending_frames = 0
        return chunk

    def _dispatch(self, callback, *args) -> None:
        if callback is None or self._loop is None:
            return
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            # Loop already closed during shutdown
            self.logger.debug("Dropping recorder notification, loop closed")
