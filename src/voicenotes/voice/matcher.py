"""
Command Matcher

Decides whether a transcript fragment is a command.

- Final results are authoritative: ``match_final`` may trigger side effects,
  so it applies scope rules and the dedupe window. Command sessions match
  on a keyword prefix (the rest is the argument); dictation only on the
  exact keyword.
- Interim results are provisional: ``could_be_command_prefix`` only decides
  whether to hold text back from the live dictation stream.

Matching is a literal phrase-prefix test on lower-cased, stripped text. There
is no punctuation stripping or stemming, so "hey notes," with a trailing comma
from the recognizer will not match "hey notes". Known limitation.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional

from .commands import Command, CommandScope, DEFAULT_COMMANDS
from .events import EventType
from .state import ListeningMode


DEFAULT_DEDUPE_WINDOW_S = 1.5


class MatchStatus(str, Enum):
    UNMATCHED = "unmatched"
    EXECUTE = "execute"
    SUPPRESSED = "suppressed"


@dataclass(frozen=True)
class MatchResult:
    status: MatchStatus
    transcript: str
    command: Optional[Command] = None
    keyword: str = ""
    argument: str = ""

    @property
    def matched(self) -> bool:
        """True when the transcript was consumed as a command (even if suppressed)"""
        return self.status != MatchStatus.UNMATCHED

    @property
    def should_execute(self) -> bool:
        return self.status == MatchStatus.EXECUTE


def normalize(transcript: str) -> str:
    return (transcript or "").strip().lower()


def scope_allowed(scope: CommandScope, mode: ListeningMode) -> bool:
    """App commands work in both active modes; editor commands only while dictating."""
    if scope == CommandScope.APP:
        return mode.is_active
    return mode == ListeningMode.DICTATION


class CommandMatcher:
    """
    Classifies transcript fragments against a command table

    Args:
        commands: Command descriptors (defaults to the built-in table)
        dedupe_window_s: Interval during which a repeat of the same keyword is
            matched but not dispatched again
        clock: Monotonic time source, injectable for tests
    """

    def __init__(
        self,
        commands: Iterable[Command] = DEFAULT_COMMANDS,
        dedupe_window_s: float = DEFAULT_DEDUPE_WINDOW_S,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.commands: tuple[Command, ...] = tuple(commands)
        self.dedupe_window_s = dedupe_window_s
        self._clock = clock
        self.logger = logging.getLogger('CommandMatcher')

        # Dedupe window: single most-recent match record
        self._last_keyword: Optional[str] = None
        self._last_matched_at = 0.0

    def match_final(self, transcript: str, mode: ListeningMode) -> MatchResult:
        """
        Classify a final transcript

        The keyword must start at position 0 of the normalized transcript, so a
        command phrase in the middle of a dictated sentence never interrupts it.
        While dictating the whole fragment must equal the keyword: "add a task
        for groceries" is content, not "add a task" plus a lost remainder.
        When several keywords match, the longest one wins.
        """
        text = normalize(transcript)
        if not text:
            return MatchResult(MatchStatus.UNMATCHED, transcript=text)

        exact = mode == ListeningMode.DICTATION
        best: Optional[tuple[Command, str]] = None
        for command in self.commands:
            if not scope_allowed(command.scope, mode):
                continue
            for keyword in command.keywords:
                if exact and text != keyword:
                    continue
                if not text.startswith(keyword):
                    continue
                if best is None or len(keyword) > len(best[1]):
                    best = (command, keyword)

        if best is None:
            return MatchResult(MatchStatus.UNMATCHED, transcript=text)

        command, keyword = best
        argument = text[len(keyword):].strip()
        now = self._clock()

        if (
            self._last_keyword == keyword
            and now - self._last_matched_at < self.dedupe_window_s
        ):
            self.logger.debug("Suppressing repeated command %r", keyword)
            return MatchResult(MatchStatus.SUPPRESSED, text, command, keyword, argument)

        self._last_keyword = keyword
        self._last_matched_at = now
        return MatchResult(MatchStatus.EXECUTE, text, command, keyword, argument)

    def could_be_command_prefix(self, interim_transcript: str) -> bool:
        """True if the interim words are the leading words of some keyword."""
        words = normalize(interim_transcript).split()
        if not words:
            return False

        for command in self.commands:
            for keyword in command.keywords:
                keyword_words = keyword.split()
                if len(words) > len(keyword_words):
                    continue
                if keyword_words[:len(words)] == words:
                    return True
        return False

    def reset(self) -> None:
        """Forget the dedupe record"""
        self._last_keyword = None
        self._last_matched_at = 0.0


# ---------------------------------------------------------------------------
# Command-mode phrase patterns
# ---------------------------------------------------------------------------

_CREATE_NOTE_FULL = re.compile(
    r"create note(?: titled| called)?\s*(.*?)\s*(?:with content|that says|with)\s*(.*)",
    re.IGNORECASE,
)
_CREATE_NOTE = re.compile(r"create note\s(.*)", re.IGNORECASE)
_SEARCH = re.compile(r"search for\s(.*)", re.IGNORECASE)
_DELETE_NOTE = re.compile(r"delete note\s(.*)", re.IGNORECASE)


@dataclass(frozen=True)
class PhraseCommand:
    event_type: EventType
    data: dict


def parse_phrase_command(transcript: str) -> Optional[PhraseCommand]:
    """Recognize the fixed note-management phrases spoken in command mode."""
    text = normalize(transcript)
    if not text:
        return None

    match = _CREATE_NOTE_FULL.search(text)
    if match:
        return PhraseCommand(
            EventType.CREATE_NOTE,
            {"summary": match.group(1).strip(), "content": match.group(2).strip()},
        )
    match = _CREATE_NOTE.search(text)
    if match:
        return PhraseCommand(EventType.CREATE_NOTE, {"content": match.group(1).strip()})
    match = _SEARCH.search(text)
    if match:
        return PhraseCommand(EventType.SEARCH, {"query": match.group(1).strip()})
    match = _DELETE_NOTE.search(text)
    if match:
        return PhraseCommand(EventType.DELETE_NOTE, {"query": match.group(1).strip()})
    if "summarize" in text:
        return PhraseCommand(EventType.SUMMARIZE_NOTES, {})
    return None
