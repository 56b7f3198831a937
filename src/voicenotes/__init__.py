"""VoiceNotes - hands-free voice control and dictation."""

__version__ = "0.1.0"
