"""Listening modes and the per-session record owned by the lifecycle controller."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .audio_capture import AudioCaptureCoordinator
    from .recognition import RecognitionSession


class ListeningMode(str, Enum):
    """Current engagement level of the voice core"""

    IDLE = "idle"
    AMBIENT = "ambient"
    COMMAND = "command"
    DICTATION = "dictation"

    @property
    def is_active(self) -> bool:
        return self in (ListeningMode.COMMAND, ListeningMode.DICTATION)


@dataclass
class Session:
    """
    One open listening session

    ``is_active`` is the authoritative flag: once it is False, the stream's end
    notification finalizes the session and never restarts it.
    """
    session_id: str
    mode: ListeningMode
    started_at: datetime = field(default_factory=datetime.now)
    is_active: bool = True
    transcript_buffer: list[str] = field(default_factory=list)
    recognition: Optional["RecognitionSession"] = None
    capture: Optional["AudioCaptureCoordinator"] = None
    restart_count: int = 0
    announced: bool = False
    finalizing: bool = False
    closed: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def transcript(self) -> str:
        return " ".join(part for part in self.transcript_buffer if part)
