"""Global hotkeys for the push-to-talk entry points (command, dictation, stop)."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

try:
    from pynput import keyboard
except ImportError:  # pragma: no cover - no display / unsupported platform
    keyboard = None  # type: ignore[assignment]


def parse_hotkey(hotkey_str: str) -> str:
    """Convert "ctrl+alt+v" to pynput's "<ctrl>+<alt>+v" format"""
    parts = hotkey_str.lower().split('+')
    parsed = []

    for part in parts:
        part = part.strip()
        if not part:
            continue
        if part in ['ctrl', 'control']:
            parsed.append('<ctrl>')
        elif part in ['alt']:
            parsed.append('<alt>')
        elif part in ['shift']:
            parsed.append('<shift>')
        elif part in ['cmd', 'win', 'super']:
            parsed.append('<cmd>')
        elif len(part) > 1:
            # Named keys: f1, space, esc...
            parsed.append(f'<{part}>')
        else:
            parsed.append(part)

    return '+'.join(parsed)


class HotkeyManager:
    """
    Registers global hotkeys and runs their actions on the event loop

    pynput calls back on its own listener thread; every action is handed to
    ``loop.call_soon_threadsafe`` so controller state is only touched on the
    loop.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self.loop = loop
        self.logger = logging.getLogger('HotkeyManager')
        self._bindings: dict[str, Callable[[], None]] = {}
        self._listener = None

    @property
    def available(self) -> bool:
        return keyboard is not None

    def bind(self, hotkey_str: str, action: Callable[[], None]) -> None:
        if not hotkey_str:
            return
        parsed = parse_hotkey(hotkey_str)
        self._bindings[parsed] = self._marshal(hotkey_str, action)
        self.logger.info("Listening for hotkey: %s", hotkey_str)

    def _marshal(self, label: str, action: Callable[[], None]) -> Callable[[], None]:
        def callback() -> None:
            self.logger.debug("Hotkey pressed: %s", label)
            try:
                self.loop.call_soon_threadsafe(action)
            except RuntimeError:
                self.logger.debug("Event loop closed, ignoring hotkey %s", label)
        return callback

    def start(self) -> bool:
        if not self.available:
            self.logger.warning("pynput unavailable, global hotkeys disabled")
            return False
        if not self._bindings or self._listener is not None:
            return self._listener is not None

        self._listener = keyboard.GlobalHotKeys(self._bindings)
        self._listener.start()
        return True

    def stop(self) -> None:
        listener: Optional[object] = self._listener
        self._listener = None
        if listener is not None:
            listener.stop()
