"""
Logging bootstrap for VoiceNotes

Each run logs into its own directory below ``logging.directory``; setting
VOICENOTES_RUN_DIR pins the directory instead. Records emitted while a
recognition session's callbacks run are stamped with that session's id and
listening mode, so a single dictation can be followed through the plain log
and the optional JSON-lines file.
"""

from __future__ import annotations

import json
import logging
import logging.config
import os
import shutil
import time
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional


RUN_DIR_ENV = "VOICENOTES_RUN_DIR"
TRACE_EVENTS_ENV = "VOICENOTES_TRACE_EVENTS"

LOG_FILE = "voicenotes.log"
JSON_LOG_FILE = "voicenotes.jsonl"

_RUN_PREFIX = "run-"
_PLAIN_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(session_tag)s%(message)s"

# (session_id, mode) of the session whose callback is running
_active_session: ContextVar[Optional[tuple[str, str]]] = ContextVar(
    "voicenotes_session", default=None
)

_CURRENT_STATE: Optional["LoggingState"] = None


@dataclass(slots=True)
class LoggingState:
    run_dir: Path
    structured: bool
    trace_events: bool


@contextmanager
def session_context(session_id: str, mode: str) -> Iterator[None]:
    """Attribute every record logged inside the block to one session."""
    token = _active_session.set((session_id, mode))
    try:
        yield
    finally:
        _active_session.reset(token)


class SessionContextFilter(logging.Filter):
    """
    Fills ``session_id``/``mode`` from the active session context

    Values passed explicitly through ``extra=`` win. ``session_tag`` is the
    prefix the plain formatter prints ("[session_3 dictation] " or nothing).
    """

    def filter(self, record: logging.LogRecord) -> bool:
        active = _active_session.get()
        if getattr(record, "session_id", None) is None:
            record.session_id = active[0] if active else None
        if getattr(record, "mode", None) is None:
            record.mode = active[1] if active else None

        if record.session_id and record.mode:
            record.session_tag = f"[{record.session_id} {record.mode}] "
        elif record.session_id:
            record.session_tag = f"[{record.session_id}] "
        else:
            record.session_tag = ""
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line; session fields only when known"""

    def format(self, record: logging.LogRecord) -> str:
        data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in ("session_id", "mode", "event_type"):
            value = getattr(record, name, None)
            if value is not None:
                data[name] = value
        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(data, ensure_ascii=True)


class TimingContext:
    """
    Measures a block; logs at DEBUG, or WARNING once it exceeds
    ``warn_threshold_ms``
    """

    def __init__(self, logger: logging.Logger, label: str, warn_threshold_ms: Optional[float] = None):
        self.logger = logger
        self.label = label
        self.warn_threshold_ms = warn_threshold_ms
        self.elapsed_ms = 0.0
        self._started = 0.0

    def __enter__(self) -> "TimingContext":
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.elapsed_ms = (time.perf_counter() - self._started) * 1000.0
        slow = self.warn_threshold_ms is not None and self.elapsed_ms >= self.warn_threshold_ms
        self.logger.log(
            logging.WARNING if slow else logging.DEBUG,
            "%s took %.1f ms%s",
            self.label,
            self.elapsed_ms,
            " (slow)" if slow else "",
        )


def bootstrap_logging(config: dict[str, Any]) -> LoggingState:
    """Install console/file handlers (plus JSON lines when structured)."""
    global _CURRENT_STATE

    logging_cfg = config.get("logging", {}) or {}
    service_cfg = config.get("service", {}) or {}

    level_name = str(logging_cfg.get("level") or service_cfg.get("log_level") or "INFO").upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    structured = bool(logging_cfg.get("structured", False))
    run_dir = prepare_run_dir(
        logging_cfg.get("directory", "logs"),
        int(logging_cfg.get("run_retention", 5)),
    )

    handlers: dict[str, Any] = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "plain",
            "filters": ["session"],
            "stream": "ext://sys.stdout",
        },
        "file": {
            "class": "logging.FileHandler",
            "formatter": "plain",
            "filters": ["session"],
            "filename": str(run_dir / Path(service_cfg.get("log_file") or LOG_FILE).name),
            "encoding": "utf-8",
        },
    }
    if structured:
        handlers["json"] = {
            "class": "logging.FileHandler",
            "formatter": "json",
            "filters": ["session"],
            "filename": str(run_dir / JSON_LOG_FILE),
            "encoding": "utf-8",
        }

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {"session": {"()": SessionContextFilter}},
        "formatters": {
            "plain": {"format": _PLAIN_FORMAT},
            "json": {"()": JsonFormatter},
        },
        "handlers": handlers,
        "root": {"level": level, "handlers": list(handlers)},
    })

    _CURRENT_STATE = LoggingState(
        run_dir=run_dir,
        structured=structured,
        trace_events=_env_flag(TRACE_EVENTS_ENV, logging_cfg.get("trace_events", False)),
    )
    logging.getLogger(__name__).debug("Logging to %s", run_dir)
    return _CURRENT_STATE


def prepare_run_dir(base: str | os.PathLike, retention: int) -> Path:
    """
    Create this run's log directory

    Only the newest ``retention`` run directories under ``base`` are kept
    (0 keeps all). The environment override is used as-is and never pruned.
    """
    override = os.environ.get(RUN_DIR_ENV)
    if override:
        run_dir = Path(override).expanduser().resolve()
        run_dir.mkdir(parents=True, exist_ok=True)
        return run_dir

    base_dir = Path(base).expanduser().resolve()
    run_dir = base_dir / f"{_RUN_PREFIX}{datetime.now():%Y%m%d-%H%M%S}"
    run_dir.mkdir(parents=True, exist_ok=True)

    if retention > 0:
        runs = sorted(p for p in base_dir.iterdir() if p.is_dir() and p.name.startswith(_RUN_PREFIX))
        for stale in runs[:-retention]:
            shutil.rmtree(stale, ignore_errors=True)
    return run_dir


def is_event_tracing_enabled() -> bool:
    """True when every bus event should be logged, not just the notable ones"""
    return bool(_CURRENT_STATE and _CURRENT_STATE.trace_events)


def shutdown_logging() -> None:
    """Detach and close the root handlers; forget the run state."""
    global _CURRENT_STATE
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    _CURRENT_STATE = None


def _env_flag(name: str, default: Any) -> bool:
    value = os.environ.get(name)
    if value is None:
        return bool(default)
    return value.strip().lower() in {"1", "true", "yes", "on"}
