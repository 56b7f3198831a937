"""
Lifecycle Controller

Top-level state machine of the voice core. Owns the ListeningMode, the single
open Session, restart policy and command dispatch.

    idle ──start_ambient──▶ ambient ──wake phrase──▶ command
      ▲                        ▲                        │
      │                        └──hands-free restart────┤
      └────────stop / end──────────── dictation ◀───────┘

Everything runs on one asyncio loop. Backends marshal their notifications
onto that loop, so session state is only ever touched from loop callbacks.
The only suspension point while opening a session is the microphone request.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Coroutine, Optional

from ..errors import (
    ERROR_MESSAGES,
    PERMISSION_DENIED,
    PERMISSION_ERROR_KINDS,
    TRANSIENT_ERROR_KINDS,
    UNSUPPORTED,
    PermissionDeniedError,
    UnsupportedError,
)
from ..logging_setup import session_context
from .audio_capture import AudioCaptureCoordinator, Recorder
from .commands import AppCommand
from .events import Event, EventPubSub, EventType, Status
from .matcher import CommandMatcher, MatchResult, parse_phrase_command
from .recognition import RecognitionSession, RecognizerBackend, StreamConfig
from .state import ListeningMode, Session


DEFAULT_WAKE_PHRASE = "hey notes"


class LifecycleController:
    """
    Owns listening mode transitions and the open session

    Args:
        backend: Recognizer backend used to open streams
        pubsub: Event bus everything is published on
        matcher: Command matcher (built-in command table if omitted)
        recorder_factory: Builds a fresh Recorder for each dictation session;
            None disables audio attachments
        hands_free: Returns the persisted hands-free setting; read at every
            restart decision
        wake_phrase: Phrase that promotes ambient listening to a command session
        restart_delay_s: Debounce before ambient listening is reopened
        teardown_timeout_s: Upper bound for waiting on a stream/recorder end
        max_stream_restarts: Consecutive unexpected ends (without any result in
            between) tolerated in an active session before it is finalized
        command_single_shot: Stop a command session after its first final result
    """

    def __init__(
        self,
        backend: RecognizerBackend,
        pubsub: Optional[EventPubSub] = None,
        matcher: Optional[CommandMatcher] = None,
        recorder_factory: Optional[Callable[[], Recorder]] = None,
        hands_free: Callable[[], bool] = lambda: False,
        wake_phrase: str = DEFAULT_WAKE_PHRASE,
        restart_delay_s: float = 0.5,
        teardown_timeout_s: float = 3.0,
        max_stream_restarts: int = 5,
        command_single_shot: bool = True,
        language: str = "en",
        artifact_format: str = "WAV",
    ):
        self.backend = backend
        self.pubsub = pubsub or EventPubSub()
        self.matcher = matcher or CommandMatcher()
        self.recorder_factory = recorder_factory
        self._hands_free = hands_free
        self.wake_phrase = wake_phrase.strip().lower()
        self.restart_delay_s = restart_delay_s
        self.teardown_timeout_s = teardown_timeout_s
        self.max_stream_restarts = max_stream_restarts
        self.command_single_shot = command_single_shot
        self.language = language
        self.artifact_format = artifact_format
        self.logger = logging.getLogger('LifecycleController')

        self._mode = ListeningMode.IDLE
        self._session: Optional[Session] = None
        self._session_counter = 0
        self._start_lock = asyncio.Lock()
        self._initialized = False
        self._disabled = False
        self._shutting_down = False
        self._restart_handle: Optional[asyncio.TimerHandle] = None
        self._tasks: set[asyncio.Task] = set()

        self._builtin_actions: dict[str, Callable[[], None]] = {
            "start_dictation": lambda: self._spawn(self.start_active(ListeningMode.DICTATION)),
            "stop_dictation": self._stop_dictation,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def mode(self) -> ListeningMode:
        return self._mode

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def disabled(self) -> bool:
        return self._disabled

    def initialize(self, supported: bool = True) -> bool:
        """
        Check recognition support

        Unsupported platforms (backend says so, or ``supported`` is False
        after a failed capability check) are reported once and the controller
        stays disabled; every later start request is a no-op.
        """
        if self._initialized:
            return not self._disabled
        self._initialized = True

        try:
            self.pubsub.set_event_loop(asyncio.get_running_loop())
        except RuntimeError:
            self.logger.debug("No running loop yet, events stay synchronous")

        if not supported or not self.backend.is_supported():
            self._disabled = True
            self.logger.warning("Speech recognition not supported, voice control disabled")
            self._status(Status.DISABLED, ERROR_MESSAGES[UNSUPPORTED])
            return False

        self._status(Status.READY, "Voice commands ready")
        return True

    async def start_ambient(self) -> None:
        """Open a wake-phrase stream unless any session is open or opening."""
        if not self.initialize():
            return
        if self._session is not None or self._start_lock.locked():
            return

        async with self._start_lock:
            if self._session is not None:
                return
            try:
                await self.backend.acquire_microphone()
            except PermissionDeniedError as exc:
                self._report_permission_denied(exc)
                return

            session = self._new_session(ListeningMode.AMBIENT)
            try:
                self._open_stream(session)
            except PermissionDeniedError as exc:
                self._abort(session)
                self._report_permission_denied(exc)
            except Exception as exc:
                self._abort(session)
                self.logger.warning("Failed to start ambient listening: %s", exc)

    async def start_active(self, mode: ListeningMode) -> None:
        """
        Open a command or dictation session

        Ambient listening, or an active session in the other mode, is stopped
        and its teardown awaited first. Same mode already active: no-op.
        """
        if not mode.is_active:
            raise ValueError(f"start_active needs command or dictation, got {mode.value}")
        if not self.initialize():
            return
        if self._is_open_in(mode):
            return

        async with self._start_lock:
            if self._is_open_in(mode):
                return
            self._cancel_scheduled_restart()

            previous = self._session
            resume_ambient = previous is not None and previous.mode == ListeningMode.AMBIENT
            if previous is not None:
                self.logger.info("Switching %s -> %s", previous.mode.value, mode.value)
                await self._close(previous)

            try:
                await self.backend.acquire_microphone()
            except PermissionDeniedError as exc:
                self._report_permission_denied(exc, resume_ambient=resume_ambient)
                return

            session = self._new_session(mode)
            try:
                if mode == ListeningMode.DICTATION:
                    self._start_capture(session)
                self._open_stream(session)
            except PermissionDeniedError as exc:
                self._abort(session)
                self._report_permission_denied(exc, resume_ambient=resume_ambient)
            except Exception as exc:
                self._abort(session)
                self.logger.error("Failed to start %s session: %s", mode.value, exc)
                self._status(Status.ERROR, f"Could not start {mode.value}")

    def stop(self) -> None:
        """
        Request the active session to end

        Cooperative: resources are released when the stream reports its end,
        not before this returns.
        """
        session = self._session
        if session is None or not session.mode.is_active:
            return
        self._request_stop(session)

    def stop_ambient(self) -> None:
        """Stop ambient listening without scheduling a restart."""
        self._cancel_scheduled_restart()
        session = self._session
        if session is not None and session.mode == ListeningMode.AMBIENT:
            self._request_stop(session)

    async def apply_hands_free(self, enabled: bool) -> None:
        """React to the hands-free setting being switched."""
        if enabled:
            await self.start_ambient()
        else:
            self.stop_ambient()

    async def shutdown(self) -> None:
        """Close whatever is open and cancel pending work."""
        self._shutting_down = True
        self._cancel_scheduled_restart()
        session = self._session
        if session is not None:
            await self._close(session)
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Session plumbing
    # ------------------------------------------------------------------

    def _is_open_in(self, mode: ListeningMode) -> bool:
        session = self._session
        return session is not None and session.mode == mode and session.is_active

    def _set_mode(self, mode: ListeningMode) -> None:
        if mode == self._mode:
            return
        self.logger.debug("Mode transition: %s -> %s", self._mode.value, mode.value)
        self._mode = mode

    def _new_session(self, mode: ListeningMode) -> Session:
        self._session_counter += 1
        session = Session(session_id=f"session_{self._session_counter}", mode=mode)
        self._session = session
        self._set_mode(mode)
        return session

    def _start_capture(self, session: Session) -> None:
        if self.recorder_factory is None:
            return
        capture = AudioCaptureCoordinator(self.recorder_factory(), artifact_format=self.artifact_format)
        try:
            capture.start()
        except UnsupportedError as exc:
            self.logger.warning("Audio capture unavailable, dictating without recording: %s", exc)
            return
        session.capture = capture

    def _open_stream(self, session: Session) -> None:
        """Create and start a recognition stream for ``session``."""
        if session.mode == ListeningMode.AMBIENT:
            config = StreamConfig.ambient(self.language)
        else:
            config = StreamConfig.active(self.language)

        def bind(handler: Callable[..., None]) -> Callable[..., None]:
            # Notifications from a replaced stream or a closed session are dropped
            def callback(*args: Any) -> None:
                if self._session is not session or session.recognition is not recognition:
                    self.logger.debug(
                        "Ignoring %s from superseded stream %s", handler.__name__, recognition.name
                    )
                    return
                with session_context(session.session_id, session.mode.value):
                    try:
                        handler(session, *args)
                    except Exception:
                        self.logger.exception("Error in %s", handler.__name__)
            return callback

        recognition = RecognitionSession(
            self.backend.create_stream(config),
            config,
            on_started=bind(self._handle_started),
            on_interim=bind(self._handle_interim),
            on_final=bind(self._handle_final),
            on_ended=bind(self._handle_ended),
            on_error=bind(self._handle_error),
            name=f"{session.mode.value}:{session.session_id}",
        )
        session.recognition = recognition
        recognition.start()

    def _request_stop(self, session: Session) -> None:
        # is_active must be False before the end notification can arrive
        session.is_active = False
        if session.recognition is not None:
            try:
                session.recognition.stop()
            except Exception as exc:
                self.logger.warning("Recognizer stop failed, finalizing anyway: %s", exc)
                self._spawn(self._finalize(session))
        if session.capture is not None:
            session.capture.stop()

    async def _close(self, session: Session) -> None:
        """Stop ``session`` and wait for its teardown (forced after a timeout)."""
        self._request_stop(session)
        try:
            await asyncio.wait_for(session.closed.wait(), self.teardown_timeout_s)
        except asyncio.TimeoutError:
            self.logger.warning(
                "%s did not end within %.1fs, forcing teardown",
                session.session_id,
                self.teardown_timeout_s,
            )
            if session.finalizing:
                await session.closed.wait()
            else:
                await self._finalize(session)

    def _abort(self, session: Session) -> None:
        """Discard a session that never got going."""
        session.is_active = False
        if session.capture is not None:
            session.capture.stop()
        if session.recognition is not None:
            try:
                session.recognition.stop()
            except Exception:
                self.logger.debug("Stream stop after failed start raised", exc_info=True)
        if self._session is session:
            self._session = None
            self._set_mode(ListeningMode.IDLE)
        session.closed.set()

    async def _finalize(self, session: Session, restart_ambient: bool = False) -> None:
        """Merge audio, announce the end, release the session."""
        if session.finalizing:
            return
        session.finalizing = True
        session.is_active = False

        with session_context(session.session_id, session.mode.value):
            artifact = None
            if session.capture is not None:
                session.capture.stop()
                session.capture.mark_recognition_ended()
                try:
                    artifact = await session.capture.wait_artifact(self.teardown_timeout_s)
                except Exception as exc:
                    self.logger.error("Could not finalize audio: %s", exc)

            if session.mode.is_active and session.announced:
                data: dict[str, Any] = {
                    "mode": session.mode.value,
                    "transcript": session.transcript,
                }
                if artifact is not None:
                    data["audio"] = artifact.to_dict()
                self._publish(EventType.LISTENING_FINISHED, data, session)

            if self._session is session:
                self._session = None
                self._set_mode(ListeningMode.IDLE)
            session.closed.set()
            self.logger.info("Session finished")

        if (session.mode.is_active or restart_ambient) and self._hands_free():
            self._schedule_ambient_restart()

    # ------------------------------------------------------------------
    # Restart policy
    # ------------------------------------------------------------------

    def _schedule_ambient_restart(self) -> None:
        self._cancel_scheduled_restart()
        if self._shutting_down:
            return
        loop = asyncio.get_running_loop()
        self._restart_handle = loop.call_later(self.restart_delay_s, self._fire_ambient_restart)

    def _fire_ambient_restart(self) -> None:
        self._restart_handle = None
        if not self._hands_free():
            return
        self._spawn(self.start_ambient())

    def _cancel_scheduled_restart(self) -> None:
        if self._restart_handle is not None:
            self._restart_handle.cancel()
            self._restart_handle = None

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error("Background task failed: %s", exc, exc_info=exc)

    # ------------------------------------------------------------------
    # Stream notifications (always for the current session)
    # ------------------------------------------------------------------

    def _handle_started(self, session: Session) -> None:
        if session.mode == ListeningMode.AMBIENT:
            self._status(Status.LISTENING, f"Listening for '{self.wake_phrase}'...", session)
            return
        if session.announced:
            self.logger.info("Stream resumed")
            self._status(Status.RECORDING, self._recording_message(session), session)
            return
        self._announce(session)

    def _announce(self, session: Session) -> None:
        session.announced = True
        self._publish(EventType.LISTENING_STARTED, {"mode": session.mode.value}, session)
        self._status(Status.RECORDING, self._recording_message(session), session)

    @staticmethod
    def _recording_message(session: Session) -> str:
        if session.mode == ListeningMode.DICTATION:
            return "Dictating..."
        return "Listening for command..."

    def _handle_interim(self, session: Session, text: str) -> None:
        session.restart_count = 0
        if session.mode == ListeningMode.AMBIENT:
            return
        if not session.announced:
            self._announce(session)

        if session.mode != ListeningMode.DICTATION:
            self._status(Status.RECORDING, f'"{text}"', session)
            return

        if self.matcher.could_be_command_prefix(text):
            self._status(Status.RECORDING, f'Command detected: "{text}"', session)
        else:
            self._publish(EventType.DICTATION_UPDATE, {"transcript": text}, session)

    def _handle_final(self, session: Session, text: str) -> None:
        session.restart_count = 0
        if session.mode == ListeningMode.AMBIENT:
            self._handle_wake(session, text)
            return
        if not session.announced:
            self._announce(session)
        self._status(Status.RECORDING, f'"{text}"', session)

        if session.mode == ListeningMode.DICTATION:
            result = self.matcher.match_final(text, ListeningMode.DICTATION)
            if result.matched:
                if result.should_execute:
                    self._dispatch(result, session)
                return
            session.transcript_buffer.append(text)
            self._publish(EventType.DICTATION_FINALIZED, {"transcript": text}, session)
            return

        self._handle_command_text(text, session)
        if self.command_single_shot and session.is_active and self._session is session:
            self._request_stop(session)

    def _handle_wake(self, session: Session, text: str) -> None:
        lowered = text.lower()
        position = lowered.find(self.wake_phrase)
        if position < 0:
            return

        self._status(Status.ACTIVE, f"Command: {lowered}", session)
        remainder = lowered[position + len(self.wake_phrase):].strip()
        if remainder:
            self._handle_command_text(remainder, session)
        else:
            self._spawn(self.start_active(ListeningMode.COMMAND))

    def _handle_command_text(self, text: str, session: Session) -> None:
        phrase = parse_phrase_command(text)
        if phrase is not None:
            self._publish(phrase.event_type, dict(phrase.data), session)
            return

        result = self.matcher.match_final(text, ListeningMode.COMMAND)
        if result.matched:
            if result.should_execute:
                self._dispatch(result, session)
            return

        self.logger.info("Unrecognized command: %r", text)
        self._publish(EventType.COMMAND_UNRECOGNIZED, {"transcript": text}, session)

    def _dispatch(self, result: MatchResult, session: Session) -> None:
        command = result.command
        if command is None:
            return
        self.logger.info("Executing command %r", result.keyword)
        self._publish(
            EventType.COMMAND_EXECUTE,
            {"command": command.to_dict(), "keyword": result.keyword, "argument": result.argument},
            session,
        )

        if isinstance(command, AppCommand):
            self._publish(
                EventType.APP_ACTION,
                {
                    "action": command.action,
                    "argument": result.argument,
                    "transcript": result.transcript,
                },
                session,
            )
            handler = self._builtin_actions.get(command.action)
            if handler is not None:
                handler()
        else:
            self._publish(
                EventType.EDITOR_ACTION,
                {"method": command.method, "value": command.value},
                session,
            )

    def _stop_dictation(self) -> None:
        session = self._session
        if session is not None and session.mode == ListeningMode.DICTATION:
            self._request_stop(session)

    def _handle_ended(self, session: Session) -> None:
        if session.capture is not None and not session.is_active:
            session.capture.mark_recognition_ended()

        if not session.is_active:
            self._spawn(self._finalize(session))
            return

        # The recognizer ended on its own
        if session.mode == ListeningMode.AMBIENT:
            self.logger.info("Ambient stream ended unexpectedly")
            session.is_active = False
            self._spawn(self._finalize(session, restart_ambient=True))
            return

        session.restart_count += 1
        if session.restart_count > self.max_stream_restarts:
            self.logger.warning(
                "Stream ended %d times without results, giving up",
                session.restart_count,
            )
            session.is_active = False
            self._spawn(self._finalize(session))
            return

        self.logger.info(
            "Stream ended unexpectedly, restarting (%d/%d)",
            session.restart_count,
            self.max_stream_restarts,
        )
        self._status(Status.RECONNECTING, "Reconnecting...", session)
        try:
            self._open_stream(session)
        except Exception as exc:
            self.logger.error("Could not restart %s stream: %s", session.mode.value, exc)
            session.is_active = False
            self._spawn(self._finalize(session))

    def _handle_error(self, session: Session, kind: str, message: str = "") -> None:
        if kind in TRANSIENT_ERROR_KINDS:
            self.logger.debug("Transient recognizer error: %s", kind)
            return

        if kind in PERMISSION_ERROR_KINDS:
            self._request_stop(session)
            self._report_permission_denied(PermissionDeniedError(message or kind))
            return

        self.logger.warning("Recognizer error: %s %s", kind, message)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _report_permission_denied(
        self,
        exc: PermissionDeniedError,
        resume_ambient: bool = False,
    ) -> None:
        self.logger.warning("Microphone access denied: %s", exc)
        self._publish(
            EventType.COMMAND_ERROR,
            {"kind": PERMISSION_DENIED, "message": str(exc)},
        )
        self._status(Status.ERROR, ERROR_MESSAGES[PERMISSION_DENIED])
        if resume_ambient:
            self._spawn(self.start_ambient())

    def _status(self, status: Status, message: str, session: Optional[Session] = None) -> None:
        self._publish(
            EventType.STATUS_UPDATE,
            {"status": status.value, "message": message},
            session,
        )

    def _publish(
        self,
        event_type: EventType,
        data: dict[str, Any],
        session: Optional[Session] = None,
    ) -> None:
        self.pubsub.publish_nowait(Event(
            type=event_type,
            data=data,
            session_id=session.session_id if session is not None else None,
        ))
