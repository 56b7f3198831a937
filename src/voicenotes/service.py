#!/usr/bin/env python3
"""
VoiceNotes Service

Wires configuration, logging, capability checks, the recognizer backend and
the lifecycle controller together and runs them on one asyncio loop.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Optional

from . import logging_setup
from .capabilities import CapabilityCheck, CapabilityReport, write_status_file
from .config import SettingsStore, load_config
from .hotkeys import HotkeyManager
from .voice.audio_capture import SoundDeviceRecorder
from .voice.commands import DEFAULT_COMMANDS, load_command_table
from .voice.controller import LifecycleController
from .voice.events import Event, EventPubSub, EventType
from .voice.matcher import CommandMatcher
from .voice.recognition import RecognizerBackend
from .voice.state import ListeningMode
from .voice.whisper_backend import WhisperRecognizerBackend


# Events worth an info line even without event tracing
_NOTABLE_EVENTS = {
    EventType.LISTENING_STARTED,
    EventType.LISTENING_FINISHED,
    EventType.COMMAND_EXECUTE,
    EventType.COMMAND_UNRECOGNIZED,
    EventType.COMMAND_ERROR,
    EventType.CREATE_NOTE,
    EventType.SEARCH,
    EventType.DELETE_NOTE,
    EventType.SUMMARIZE_NOTES,
}


class VoiceNotesService:
    """Main service class for VoiceNotes"""

    def __init__(
        self,
        config_path: str = "config.yaml",
        settings_path: Optional[str] = None,
        backend: Optional[RecognizerBackend] = None,
        report: Optional[CapabilityReport] = None,
    ):
        self.config_path = config_path
        self.config = load_config(config_path)
        self.logging_state = logging_setup.bootstrap_logging(self.config)
        self.run_dir: Optional[Path] = self.logging_state.run_dir
        self.logger = logging.getLogger('VoiceNotesService')
        self.logger.info(
            "Logging initialized (run_dir=%s, structured=%s)",
            self.run_dir,
            self.logging_state.structured,
        )

        voice_cfg = self.config['voice']
        audio_cfg = self.config['audio']

        self.report = report or CapabilityCheck(self.config).run(quick=True)
        self._apply_capabilities()
        write_status_file(self.report, self.run_dir)

        if settings_path is None:
            settings_path = str(Path(config_path).with_name("settings.yaml"))
        self.settings = SettingsStore(settings_path, default_hands_free=bool(voice_cfg['hands_free']))

        commands_file = voice_cfg.get('commands_file')
        commands = load_command_table(commands_file) if commands_file else DEFAULT_COMMANDS
        self.matcher = CommandMatcher(commands, dedupe_window_s=float(voice_cfg['dedupe_window_s']))

        self.pubsub = EventPubSub()
        self.pubsub.add_listener(self._on_event)
        self.event_callbacks: list[Callable[[Event], None]] = []

        self.backend = backend or WhisperRecognizerBackend.from_config(self.config)

        recorder_factory = None
        if self._attachments_available:
            def recorder_factory() -> SoundDeviceRecorder:
                return SoundDeviceRecorder(
                    sample_rate=int(audio_cfg['sample_rate']),
                    channels=int(audio_cfg['channels']),
                    chunk_ms=int(audio_cfg['chunk_ms']),
                    block_ms=int(audio_cfg['block_ms']),
                )

        self.controller = LifecycleController(
            self.backend,
            pubsub=self.pubsub,
            matcher=self.matcher,
            recorder_factory=recorder_factory,
            hands_free=self.settings.get_hands_free,
            wake_phrase=voice_cfg['wake_phrase'],
            restart_delay_s=float(voice_cfg['restart_delay_s']),
            teardown_timeout_s=float(voice_cfg['teardown_timeout_s']),
            max_stream_restarts=int(voice_cfg['max_stream_restarts']),
            command_single_shot=bool(voice_cfg['command_single_shot']),
            language=self.config['whisper']['language'],
            artifact_format=audio_cfg['artifact_format'],
        )

        self.hotkeys: Optional[HotkeyManager] = None
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._stop_event: Optional[asyncio.Event] = None
        self.running = False

    def _apply_capabilities(self) -> None:
        """Disable optional features the environment cannot support"""
        self._attachments_available = self.report.audio_attachments
        self._hotkeys_available = self.report.hotkeys

        device = self.report.get("Whisper Device")
        if device is not None and device.status == "critical":
            self.config['whisper']['device'] = 'cpu'
            self.logger.warning("Falling back to CPU: %s", device.message)

        if not self._attachments_available:
            self.logger.warning("Audio attachments disabled, dictation will carry no recording")

        if self.report.overall_status == "healthy":
            self.logger.info(self.report.summary())
        else:
            self.logger.warning(self.report.summary())

    def register_event_callback(self, callback: Callable[[Event], None]) -> None:
        """Register a callback for every bus event: callback(event)"""
        self.event_callbacks.append(callback)

    def _on_event(self, event: Event) -> None:
        if logging_setup.is_event_tracing_enabled():
            self.logger.debug(
                "Event %s %s",
                event.type.value,
                event.data,
                extra={"event_type": event.type.value, "session_id": event.session_id},
            )
        elif event.type in _NOTABLE_EVENTS:
            self.logger.info("Event %s %s", event.type.value, self._summarize(event))

        for callback in self.event_callbacks:
            try:
                callback(event)
            except Exception as e:
                self.logger.error("Error in event callback: %s", e)

    @staticmethod
    def _summarize(event: Event) -> dict[str, Any]:
        data = dict(event.data)
        audio = data.pop("audio", None)
        if audio:
            data["audio"] = f"{audio['mime_type']} {audio['duration_ms']}ms {audio['size']}B"
        return data

    # ------------------------------------------------------------------
    # User entry points (hotkeys, CLI)
    # ------------------------------------------------------------------

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        task.add_done_callback(self._log_task_failure)

    def _log_task_failure(self, task: asyncio.Future) -> None:
        if not task.cancelled() and task.exception() is not None:
            self.logger.error("Action failed: %s", task.exception(), exc_info=task.exception())

    def start_command(self) -> None:
        self._spawn(self.controller.start_active(ListeningMode.COMMAND))

    def toggle_dictation(self) -> None:
        if self.controller.mode == ListeningMode.DICTATION:
            self.controller.stop()
        else:
            self._spawn(self.controller.start_active(ListeningMode.DICTATION))

    def stop_listening(self) -> None:
        self.controller.stop()

    async def set_hands_free(self, enabled: bool) -> None:
        """Persist the hands-free flag and start/stop ambient listening"""
        self.settings.set_hands_free(enabled)
        await self.controller.apply_hands_free(enabled)

    def _start_hotkeys(self) -> None:
        hotkeys_cfg = self.config['hotkeys']
        if not hotkeys_cfg.get('enabled', True) or not self._hotkeys_available:
            return

        self.hotkeys = HotkeyManager(self.loop)
        self.hotkeys.bind(hotkeys_cfg.get('command', ''), self.start_command)
        self.hotkeys.bind(hotkeys_cfg.get('dictation', ''), self.toggle_dictation)
        self.hotkeys.bind(hotkeys_cfg.get('stop', ''), self.stop_listening)
        self.hotkeys.start()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self, hands_free: Optional[bool] = None, dictate: bool = False) -> None:
        """Run until ``request_stop`` is called"""
        self.loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self.pubsub.set_event_loop(self.loop)
        self.running = True
        self.logger.info("VoiceNotes service started")

        if hands_free is not None and hands_free != self.settings.get_hands_free():
            self.settings.set_hands_free(hands_free)

        try:
            if not self.controller.initialize(self.report.recognition_supported):
                self.logger.error("Speech recognition unavailable, nothing to listen with")
            else:
                self._start_hotkeys()
                if dictate:
                    await self.controller.start_active(ListeningMode.DICTATION)
                elif self.settings.get_hands_free():
                    await self.controller.start_ambient()

            await self._stop_event.wait()
        finally:
            await self.shutdown()

    def request_stop(self) -> None:
        """Ask ``run`` to return (safe from any thread)"""
        if self.loop is None or self._stop_event is None:
            return
        try:
            self.loop.call_soon_threadsafe(self._stop_event.set)
        except RuntimeError:
            self.logger.debug("Event loop already closed")

    async def shutdown(self) -> None:
        if not self.running:
            return
        self.running = False
        self.logger.info("VoiceNotes service stopping...")

        if self.hotkeys:
            self.hotkeys.stop()
            self.hotkeys = None

        await self.controller.shutdown()
        self.logger.info("VoiceNotes service stopped")
