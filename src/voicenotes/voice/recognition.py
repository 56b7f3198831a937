"""
Recognition Session

Wraps one continuous recognizer stream and presents a uniform callback
interface (started / interim / final / ended / error) whatever the stream's
granularity. Backends only need to implement ``RecognizerBackend`` and
``RecognizerStream`` and report raw results to a ``StreamSink``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Sequence


@dataclass(frozen=True)
class RecognitionResult:
    """One recognized segment; alternatives are ordered best first."""

    alternatives: tuple[str, ...]
    is_final: bool = False

    @property
    def best(self) -> str:
        return self.alternatives[0] if self.alternatives else ""


@dataclass(frozen=True)
class StreamConfig:
    """Granularity requested from a recognizer stream"""

    continuous: bool = True
    interim_results: bool = False
    max_alternatives: int = 1
    language: str = "en"

    @classmethod
    def ambient(cls, language: str = "en") -> "StreamConfig":
        """Low-granularity stream that only watches for the wake phrase"""
        return cls(continuous=True, interim_results=False, max_alternatives=1, language=language)

    @classmethod
    def active(cls, language: str = "en") -> "StreamConfig":
        """High-granularity stream for commands and dictation"""
        return cls(continuous=True, interim_results=True, max_alternatives=1, language=language)


class StreamSink(Protocol):
    def on_start(self) -> None: ...

    def on_result(self, results: Sequence[RecognitionResult], result_index: int = 0) -> None: ...

    def on_end(self) -> None: ...

    def on_error(self, kind: str, message: str = "") -> None: ...


class RecognizerStream(Protocol):
    def start(self, sink: StreamSink) -> None: ...

    def stop(self) -> None: ...


class RecognizerBackend(Protocol):
    def is_supported(self) -> bool: ...

    async def acquire_microphone(self) -> None: ...

    def create_stream(self, config: StreamConfig) -> RecognizerStream: ...


TextCallback = Callable[[str], None]
ErrorCallback = Callable[[str, str], None]


def _noop(*_args) -> None:
    return None


class RecognitionSession:
    """
    Owns one recognizer stream

    Ambient streams (``interim_results=False``) forward only the newest final
    result's best alternative. Active streams forward, per result event, one
    combined final string (all final segments since ``result_index``) followed
    by one combined interim string, so a dictated sentence split over several
    segments arrives as a single ``on_final`` call.

    Nothing is forwarded after the stream reports its end.
    """

    def __init__(
        self,
        stream: RecognizerStream,
        config: StreamConfig,
        *,
        on_started: Callable[[], None] = _noop,
        on_interim: TextCallback = _noop,
        on_final: TextCallback = _noop,
        on_ended: Callable[[], None] = _noop,
        on_error: ErrorCallback = _noop,
        name: str = "recognition",
    ) -> None:
        self.stream = stream
        self.config = config
        self.name = name
        self._on_started = on_started
        self._on_interim = on_interim
        self._on_final = on_final
        self._on_ended = on_ended
        self._on_error = on_error
        self.logger = logging.getLogger('RecognitionSession')

        self.started = False
        self.ended = False
        self.stop_requested = False

    def start(self) -> None:
        """Start the underlying stream (may raise PermissionDeniedError)."""
        self.stream.start(self)

    def stop(self) -> None:
        """Ask the stream to end; the end notification arrives later."""
        if self.ended or self.stop_requested:
            return
        self.stop_requested = True
        self.stream.stop()

    # ------------------------------------------------------------------
    # StreamSink
    # ------------------------------------------------------------------

    def on_start(self) -> None:
        if self.ended or self.started:
            return
        self.started = True
        self._on_started()

    def on_result(self, results: Sequence[RecognitionResult], result_index: int = 0) -> None:
        if self.ended or not results:
            return

        if not self.config.interim_results:
            latest = results[-1]
            if latest.is_final:
                text = latest.best.strip()
                if text:
                    self._on_final(text)
            return

        final_parts: list[str] = []
        interim_parts: list[str] = []
        for result in results[max(result_index, 0):]:
            text = result.best.strip()
            if not text:
                continue
            if result.is_final:
                final_parts.append(text)
            else:
                interim_parts.append(text)

        if final_parts:
            self._on_final(" ".join(final_parts))
        if interim_parts:
            self._on_interim(" ".join(interim_parts))

    def on_end(self) -> None:
        if self.ended:
            return
        self.ended = True
        self.logger.debug("%s stream ended (requested=%s)", self.name, self.stop_requested)
        self._on_ended()

    def on_error(self, kind: str, message: str = "") -> None:
        if self.ended:
            return
        self._on_error(kind, message)
