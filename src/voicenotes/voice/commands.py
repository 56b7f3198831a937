"""
Command table

Static, declarative list of voice commands. A command is either an
``AppCommand`` (application-level action, valid in command and dictation
sessions) or an ``EditorCommand`` (forwarded to the note editor, valid only
while dictating). The built-in table can be replaced by a YAML file:

    - keywords: [new line, next line]
      scope: editor
      method: insert_line_break
    - keywords: [save note]
      scope: app
      action: save_note
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Optional, Union

import yaml

from ..errors import CommandTableError


class CommandScope(str, Enum):
    APP = "app"
    EDITOR = "editor"


def _normalize_keywords(keywords: Iterable[str]) -> tuple[str, ...]:
    normalized = tuple(str(k).strip().lower() for k in keywords if str(k).strip())
    if not normalized:
        raise CommandTableError("command needs at least one keyword")
    return normalized


@dataclass(frozen=True)
class AppCommand:
    """Application-level command, dispatched as a named action."""

    keywords: tuple[str, ...]
    action: str
    requires_argument: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "keywords", _normalize_keywords(self.keywords))

    @property
    def scope(self) -> CommandScope:
        return CommandScope.APP

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope": self.scope.value,
            "keywords": list(self.keywords),
            "action": self.action,
            "requires_argument": self.requires_argument,
        }


@dataclass(frozen=True)
class EditorCommand:
    """Editor command, forwarded to the note editor as ``method(value)``."""

    keywords: tuple[str, ...]
    method: str
    value: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "keywords", _normalize_keywords(self.keywords))

    @property
    def scope(self) -> CommandScope:
        return CommandScope.EDITOR

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope": self.scope.value,
            "keywords": list(self.keywords),
            "method": self.method,
            "value": self.value,
        }


Command = Union[AppCommand, EditorCommand]


DEFAULT_COMMANDS: tuple[Command, ...] = (
    # App-level: free-form request handed to the assistant collaborator
    AppCommand(
        keywords=(
            "hey notes", "search for", "find", "search", "create", "summarize",
            "open", "what are", "do i have", "can you", "show me", "add",
            "remind me", "delete",
        ),
        action="ai_query",
        requires_argument=True,
    ),
    AppCommand(
        keywords=("start writing", "start dictating", "begin writing",
                  "begin dictating", "start dictation"),
        action="start_dictation",
    ),
    AppCommand(
        keywords=("stop writing", "stop dictating", "end writing", "end dictating",
                  "stop dictation", "done writing"),
        action="stop_dictation",
    ),
    AppCommand(
        keywords=("close editor", "done editing", "finish note", "close note"),
        action="close_editor",
    ),
    AppCommand(
        keywords=("save this note", "save changes", "save note"),
        action="save_note",
    ),

    # Editor-level
    EditorCommand(keywords=("next line", "new line", "enter", "break line"),
                  method="insert_line_break"),
    EditorCommand(keywords=("add a task", "new task", "insert task", "checkbox", "task item"),
                  method="insert_task"),
    EditorCommand(keywords=("add bullet list", "start bullets", "bullet points", "unordered list"),
                  method="insert_unordered_list"),
    EditorCommand(keywords=("add number list", "start numbering", "numbered list", "ordered list"),
                  method="insert_ordered_list"),
    EditorCommand(keywords=("add a line", "insert divider", "horizontal rule", "line separator"),
                  method="insert_horizontal_rule"),
    EditorCommand(keywords=("make it bold", "start bold", "bold this", "stop bold", "end bold", "bold"),
                  method="toggle_bold"),
    EditorCommand(keywords=("underline this", "start underline", "add underline",
                            "stop underline", "end underline", "underline"),
                  method="toggle_underline"),
    EditorCommand(keywords=("italicize", "make it italic", "start italic", "italic"),
                  method="toggle_italic"),
    EditorCommand(keywords=("clear formatting", "remove style", "normal text", "clear style"),
                  method="clear_formatting"),
    EditorCommand(keywords=("delete word", "delete last word", "remove word", "scratch word"),
                  method="delete_last_unit", value="word"),
    EditorCommand(keywords=("delete sentence", "delete last sentence", "remove sentence",
                            "scratch sentence"),
                  method="delete_last_unit", value="sentence"),
    EditorCommand(keywords=("delete paragraph", "delete last paragraph", "remove paragraph",
                            "scratch paragraph"),
                  method="delete_last_unit", value="paragraph"),
    EditorCommand(keywords=("undo that", "undo", "undo last"), method="undo"),
    EditorCommand(keywords=("redo that", "redo", "redo last"), method="redo"),
    EditorCommand(keywords=("summarize this note", "summary of this", "create summary", "summarize"),
                  method="summarize_note"),
    EditorCommand(keywords=("proofread this note", "proofread this", "check my writing",
                            "proof read this", "proofread"),
                  method="proofread_note"),
)


def command_from_dict(entry: dict[str, Any]) -> Command:
    """Build one descriptor from a mapping (one YAML list item)."""
    if not isinstance(entry, dict):
        raise CommandTableError(f"command entry must be a mapping, got {type(entry).__name__}")

    keywords = entry.get("keywords")
    if isinstance(keywords, str):
        keywords = [keywords]
    if not keywords:
        raise CommandTableError(f"command entry without keywords: {entry!r}")

    scope = str(entry.get("scope", "")).lower()
    if scope == CommandScope.APP.value:
        action = entry.get("action")
        if not action:
            raise CommandTableError(f"app command needs an action: {entry!r}")
        return AppCommand(
            keywords=tuple(keywords),
            action=str(action),
            requires_argument=bool(entry.get("requires_argument", False)),
        )
    if scope == CommandScope.EDITOR.value:
        method = entry.get("method")
        if not method:
            raise CommandTableError(f"editor command needs a method: {entry!r}")
        value = entry.get("value")
        return EditorCommand(
            keywords=tuple(keywords),
            method=str(method),
            value=None if value is None else str(value),
        )
    raise CommandTableError(f"unknown command scope {entry.get('scope')!r}")


def load_command_table(path: Optional[Path | str] = None) -> tuple[Command, ...]:
    """
    Load the command table

    Args:
        path: YAML file holding a list of command entries (or a mapping with a
            ``commands`` list). ``None`` returns the built-in table.

    Returns:
        Tuple of command descriptors, in file order
    """
    if path is None:
        return DEFAULT_COMMANDS

    table_file = Path(path)
    with open(table_file, 'r', encoding='utf-8') as f:
        raw = yaml.safe_load(f)

    if isinstance(raw, dict):
        raw = raw.get("commands")
    if not raw:
        raise CommandTableError(f"no commands defined in {table_file}")
    if not isinstance(raw, list):
        raise CommandTableError(f"{table_file}: expected a list of commands")

    return tuple(command_from_dict(entry) for entry in raw)
