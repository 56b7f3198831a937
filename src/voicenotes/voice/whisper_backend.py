#!/usr/bin/env python3
"""
Whisper Recognizer Backend

Continuous recognition on top of faster-whisper and sounddevice. Audio blocks
are segmented into utterances with an adaptive RMS silence detector; each
finished utterance is transcribed into a final result and, for interim-capable
streams, the growing utterance is re-transcribed periodically.

All sink notifications are marshalled onto the event loop that started the
stream.
"""

from __future__ import annotations

import asyncio
import logging
import queue
import threading
import time
from typing import Any, Optional

import numpy as np

from ..errors import AUDIO_CAPTURE, NO_SPEECH, PermissionDeniedError, UnsupportedError
from .recognition import RecognitionResult, StreamConfig, StreamSink

try:
    import sounddevice as sd
except (ImportError, OSError):  # pragma: no cover - PortAudio missing
    sd = None  # type: ignore[assignment]

try:
    from faster_whisper import WhisperModel
    WHISPER_AVAILABLE = True
except ImportError:  # pragma: no cover - optional heavy dependency
    WhisperModel = None  # type: ignore[assignment]
    WHISPER_AVAILABLE = False


_STOP = object()


class WhisperRecognizerBackend:
    """
    Recognizer backend backed by a local Whisper model

    The model is loaded lazily on the first stream and shared by every stream
    afterwards. A preloaded model (anything with a faster-whisper compatible
    ``transcribe``) can be injected.
    """

    def __init__(
        self,
        model_name: str = "base",
        device: str = "cpu",
        language: str = "en",
        sample_rate: int = 16000,
        block_ms: int = 100,
        silence_threshold: float = 0.01,
        silence_duration_s: float = 0.8,
        interim_interval_s: float = 1.0,
        no_speech_timeout_s: float = 8.0,
        max_utterance_s: float = 15.0,
        model: Any = None,
    ):
        self.model_name = model_name
        self.device = device
        self.language = language
        self.sample_rate = sample_rate
        self.block_frames = max(int(sample_rate * block_ms / 1000), 1)
        self.silence_threshold = silence_threshold
        self.silence_duration_s = silence_duration_s
        self.interim_interval_s = interim_interval_s
        self.no_speech_timeout_s = no_speech_timeout_s
        self.max_utterance_s = max_utterance_s
        self.logger = logging.getLogger('WhisperBackend')

        self._model = model
        self._model_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: dict) -> "WhisperRecognizerBackend":
        whisper_cfg = config.get('whisper', {}) or {}
        audio_cfg = config.get('audio', {}) or {}
        return cls(
            model_name=whisper_cfg.get('model', 'base'),
            device=whisper_cfg.get('device', 'cpu'),
            language=whisper_cfg.get('language', 'en'),
            sample_rate=int(audio_cfg.get('sample_rate', 16000)),
            block_ms=int(audio_cfg.get('block_ms', 100)),
            silence_threshold=float(audio_cfg.get('silence_threshold', 0.01)),
            silence_duration_s=float(audio_cfg.get('end_of_utterance_s', 0.8)),
            interim_interval_s=float(audio_cfg.get('interim_interval_s', 1.0)),
            no_speech_timeout_s=float(audio_cfg.get('no_speech_timeout_s', 8.0)),
            max_utterance_s=float(audio_cfg.get('max_utterance_s', 15.0)),
        )

    def is_supported(self) -> bool:
        if sd is None:
            return False
        return self._model is not None or WHISPER_AVAILABLE

    async def acquire_microphone(self) -> None:
        """Check the default input device can be opened."""
        if sd is None:
            raise UnsupportedError("sounddevice is not installed")
        try:
            await asyncio.to_thread(
                sd.check_input_settings,
                samplerate=self.sample_rate,
                channels=1,
                dtype="float32",
            )
        except (sd.PortAudioError, ValueError) as exc:
            raise PermissionDeniedError(f"Microphone unavailable: {exc}") from exc

    def create_stream(self, config: StreamConfig) -> "WhisperStream":
        return WhisperStream(self, config)

    def load_model(self) -> Any:
        """Load the Whisper model once (thread-safe)."""
        with self._model_lock:
            if self._model is not None:
                return self._model
            if not WHISPER_AVAILABLE:
                raise UnsupportedError("faster-whisper is not installed")

            compute_type = "float16" if self.device == "cuda" else "int8"
            self.logger.info(
                "Loading Whisper model '%s' on %s (compute_type=%s)",
                self.model_name,
                self.device,
                compute_type,
            )
            self._model = WhisperModel(
                self.model_name,
                device=self.device,
                compute_type=compute_type,
            )
            self.logger.info("Model '%s' loaded", self.model_name)
            return self._model

    def transcribe(self, audio: np.ndarray, language: Optional[str] = None) -> str:
        model = self.load_model()
        segments, _info = model.transcribe(
            audio.astype(np.float32).flatten(),
            language=language or self.language,
        )
        return "".join(segment.text for segment in segments).strip()


class WhisperStream:
    """One continuous recognition stream (microphone -> utterances -> text)"""

    def __init__(self, backend: WhisperRecognizerBackend, config: StreamConfig):
        self.backend = backend
        self.config = config
        self.logger = logging.getLogger('WhisperStream')

        self._sink: Optional[StreamSink] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._blocks: "queue.Queue[Any]" = queue.Queue()
        self._input: Any = None
        self._worker: Optional[threading.Thread] = None
        self._stopping = threading.Event()

        # Worker-thread state
        self._utterance: list[np.ndarray] = []
        self._utterance_frames = 0
        self._speech_detected = False
        self._max_rms = 0.0
        self._last_sound = 0.0
        self._last_interim = 0.0
        self._idle_since = 0.0

    def start(self, sink: StreamSink) -> None:
        if sd is None:
            raise UnsupportedError("sounddevice is not installed")

        self._sink = sink
        self._loop = asyncio.get_running_loop()
        try:
            self._input = sd.InputStream(
                samplerate=self.backend.sample_rate,
                channels=1,
                dtype="float32",
                blocksize=self.backend.block_frames,
                callback=self._audio_callback,
            )
            self._input.start()
        except sd.PortAudioError as exc:
            self._input = None
            raise PermissionDeniedError(f"Microphone unavailable: {exc}") from exc

        self._worker = threading.Thread(
            target=self._run,
            name="WhisperStream",
            daemon=True,
        )
        self._worker.start()
        self._post("on_start")

    def stop(self) -> None:
        if self._stopping.is_set():
            return
        self._stopping.set()
        self._close_input()
        self._blocks.put(_STOP)

    def _close_input(self) -> None:
        stream = self._input
        self._input = None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except sd.PortAudioError as exc:
            self.logger.warning("Error closing input stream: %s", exc)

    def _audio_callback(self, indata, frames, time_info, status) -> None:
        if status:
            self.logger.debug("Audio status: %s", status)
        if not self._stopping.is_set():
            self._blocks.put(indata.copy())

    # ------------------------------------------------------------------
    # Worker thread
    # ------------------------------------------------------------------

    def _run(self) -> None:
        now = time.monotonic()
        self._idle_since = now
        self._last_interim = now
        try:
            while True:
                block = self._blocks.get()
                if block is _STOP:
                    break
                self._process_block(block)
            self._flush_utterance()
        except Exception as exc:
            self.logger.error("Recognition worker failed: %s", exc, exc_info=True)
            self._post("on_error", AUDIO_CAPTURE, str(exc))
            self._close_input()
        finally:
            self._post("on_end")

    def _process_block(self, block: np.ndarray) -> None:
        now = time.monotonic()
        rms = float(np.sqrt(np.mean(block ** 2))) if len(block) else 0.0
        threshold = self.backend.silence_threshold

        if not self._speech_detected:
            # Speech only starts above the fixed threshold
            if rms <= threshold:
                if now - self._idle_since >= self.backend.no_speech_timeout_s:
                    self._post("on_error", NO_SPEECH, "")
                    self._idle_since = now
                return
            self._speech_detected = True
            self._max_rms = rms
            self._last_sound = now
        else:
            # Adaptive end-of-speech threshold: 20% of the utterance peak
            self._max_rms = max(self._max_rms, rms)
            if rms > min(threshold, self._max_rms * 0.2):
                self._last_sound = now

        self._utterance.append(block)
        self._utterance_frames += len(block)

        duration = self._utterance_frames / self.backend.sample_rate
        silent_for = now - self._last_sound
        if silent_for >= self.backend.silence_duration_s or duration >= self.backend.max_utterance_s:
            self._flush_utterance()
            return

        if self.config.interim_results and now - self._last_interim >= self.backend.interim_interval_s:
            self._last_interim = now
            text = self.backend.transcribe(np.concatenate(self._utterance, axis=0), self.config.language)
            if text:
                self._post("on_result", [RecognitionResult((text,), is_final=False)], 0)

    def _flush_utterance(self) -> None:
        if not self._utterance:
            return
        audio = np.concatenate(self._utterance, axis=0)
        self._utterance = []
        self._utterance_frames = 0
        self._speech_detected = False
        self._max_rms = 0.0
        self._idle_since = time.monotonic()

        text = self.backend.transcribe(audio, self.config.language)
        if text:
            self._post("on_result", [RecognitionResult((text,), is_final=True)], 0)
        else:
            self._post("on_error", NO_SPEECH, "")

    def _post(self, method: str, *args: Any) -> None:
        if self._sink is None or self._loop is None:
            return
        try:
            self._loop.call_soon_threadsafe(getattr(self._sink, method), *args)
        except RuntimeError:
            self.logger.debug("Dropping %s, event loop closed", method)
