"""Error taxonomy shared by the voice core.

Backends, recorders and loaders raise these; the lifecycle controller turns
them into status/error events so nothing escapes the event boundary.
"""

from __future__ import annotations


class VoiceError(Exception):
    """Base class for voice subsystem failures."""


class UnsupportedError(VoiceError):
    """The platform lacks the speech recognition capability."""


class PermissionDeniedError(VoiceError):
    """Microphone access was refused by the user or the platform."""


class CommandTableError(VoiceError, ValueError):
    """A command table entry is malformed."""


# Recognizer error kinds, as reported through ``StreamSink.on_error``
NO_SPEECH = "no-speech"
AUDIO_CAPTURE = "audio-capture"
NOT_ALLOWED = "not-allowed"
SERVICE_NOT_ALLOWED = "service-not-allowed"

TRANSIENT_ERROR_KINDS = frozenset({NO_SPEECH, AUDIO_CAPTURE})
PERMISSION_ERROR_KINDS = frozenset({NOT_ALLOWED, SERVICE_NOT_ALLOWED})

PERMISSION_DENIED = "permission-denied"
UNSUPPORTED = "unsupported"

ERROR_MESSAGES = {
    UNSUPPORTED: "Speech not supported",
    PERMISSION_DENIED: "Mic access denied",
    NO_SPEECH: "No speech detected",
    AUDIO_CAPTURE: "Audio capture glitch",
}
