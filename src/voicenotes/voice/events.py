"""
Event bus for the voice core

Everything the core tells the outside world (status ticks, dictated text,
matched commands, errors) is an Event published here. Consumers such as the
note editor either iterate ``poll()`` or register a plain listener.
"""

import asyncio
import logging
import threading
from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


logger = logging.getLogger("EventPubSub")


class EventType(str, Enum):
    """Events emitted by the voice core"""

    # Lifecycle / status
    STATUS_UPDATE = "command-status-update"
    LISTENING_STARTED = "listening-started"
    LISTENING_FINISHED = "listening-finished"

    # Dictated content
    DICTATION_UPDATE = "dictation-update"
    DICTATION_FINALIZED = "dictation-finalized"

    # Commands
    COMMAND_EXECUTE = "command-execute"
    APP_ACTION = "app-action"
    EDITOR_ACTION = "editor-action"
    COMMAND_UNRECOGNIZED = "command-unrecognized"

    # Command-mode phrase patterns
    CREATE_NOTE = "command-create-note"
    SEARCH = "command-search"
    DELETE_NOTE = "command-delete-note"
    SUMMARIZE_NOTES = "command-summarize-notes"

    # Errors
    COMMAND_ERROR = "command-error"


class Status(str, Enum):
    """Values carried by STATUS_UPDATE events"""

    READY = "ready"
    DISABLED = "disabled"
    LISTENING = "listening"
    ACTIVE = "active"
    RECORDING = "recording"
    RECONNECTING = "reconnecting"
    ERROR = "error"


@dataclass
class Event:
    """
    Voice core event

    Treated as immutable once published; subscribers receive copies.
    """
    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)
    session_id: str | None = None

    def model_copy(self) -> 'Event':
        """Create a copy of this event (for safe distribution)"""
        return Event(
            type=self.type,
            data=self.data.copy(),
            timestamp=self.timestamp,
            session_id=self.session_id
        )


EventListener = Callable[[Event], None]


class EventPubSub:
    """
    Publish-subscribe hub

    - ``poll()`` subscribers get an asyncio queue each (blocking wait, no polling)
    - ``add_listener()`` callbacks run synchronously, in publish order
    - ``publish_nowait()`` may be called from foreign threads once the loop is set

    Usage:
        pubsub = EventPubSub()

        async for event in pubsub.poll():
            if event.type == EventType.DICTATION_FINALIZED:
                editor.append(event.data["transcript"])
    """

    def __init__(self, max_history: int = 1000):
        self.subscribers: set[asyncio.Queue[Event]] = set()
        self.listeners: list[EventListener] = []
        self._lock = asyncio.Lock()
        self.event_history: list[Event] = []  # For debugging and tests
        self.max_history = max_history
        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_thread: int | None = None

    def set_event_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """
        Set event loop for thread-safe publishing

        Must be called from the event loop's thread.
        """
        self._loop = loop
        self._loop_thread = threading.get_ident()

    def add_listener(self, listener: EventListener) -> None:
        self.listeners.append(listener)

    def publish_nowait(self, event: Event) -> None:
        """
        Publish event to all subscribers and listeners

        Calls from a thread other than the loop's are re-scheduled onto the
        loop so ordering is decided there.
        """
        if (
            self._loop is not None
            and self._loop_thread is not None
            and threading.get_ident() != self._loop_thread
        ):
            self._loop.call_soon_threadsafe(self.publish_nowait, event)
            return

        self.event_history.append(event)
        if len(self.event_history) > self.max_history:
            self.event_history = self.event_history[-self.max_history:]

        for subscriber in list(self.subscribers):
            try:
                subscriber.put_nowait(event.model_copy())
            except asyncio.QueueFull:
                logger.warning("Dropping %s for a full subscriber queue", event.type.value)

        for listener in list(self.listeners):
            try:
                listener(event.model_copy())
            except Exception:
                logger.exception("Event listener failed on %s", event.type.value)

    async def poll(self) -> AsyncGenerator[Event, None]:
        """
        Poll for events (async generator)

        Blocks on ``await queue.get()``; wakes as soon as an event is published.
        """
        subscriber_queue: asyncio.Queue[Event] = asyncio.Queue()

        async with self._lock:
            self.subscribers.add(subscriber_queue)

        try:
            while True:
                event = await subscriber_queue.get()
                yield event
        finally:
            async with self._lock:
                self.subscribers.discard(subscriber_queue)

    def events_of(self, *types: EventType) -> list[Event]:
        """History filtered to the given event types"""
        return [event for event in self.event_history if event.type in types]
