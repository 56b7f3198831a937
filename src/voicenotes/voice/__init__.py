"""
VoiceNotes voice core

Event-driven listening lifecycle: wake-phrase ambient listening, one-shot
voice commands and continuous dictation with audio capture.
"""

from .events import Event, EventType, EventPubSub, Status
from .state import ListeningMode, Session
from .commands import AppCommand, EditorCommand, DEFAULT_COMMANDS, load_command_table
from .matcher import CommandMatcher, MatchResult, MatchStatus, parse_phrase_command
from .recognition import RecognitionResult, RecognitionSession, StreamConfig
from .audio_capture import AudioArtifact, AudioCaptureCoordinator, SoundDeviceRecorder
from .controller import LifecycleController

__all__ = [
    'Event',
    'EventType',
    'EventPubSub',
    'Status',
    'ListeningMode',
    'Session',
    'AppCommand',
    'EditorCommand',
    'DEFAULT_COMMANDS',
    'load_command_table',
    'CommandMatcher',
    'MatchResult',
    'MatchStatus',
    'parse_phrase_command',
    'RecognitionResult',
    'RecognitionSession',
    'StreamConfig',
    'AudioArtifact',
    'AudioCaptureCoordinator',
    'SoundDeviceRecorder',
    'LifecycleController',
]
