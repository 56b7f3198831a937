"""
Configuration loading

``config.yaml`` holds static options; missing sections and keys are filled
from the defaults without overwriting user values. The hands-free flag lives
in a separate, small settings file because it is toggled at runtime.
"""

from __future__ import annotations

import copy
import logging
import threading
from pathlib import Path
from typing import Any, Optional, Union

import yaml


DEFAULT_CONFIG: dict[str, Any] = {
    'voice': {
        'wake_phrase': 'hey notes',
        'hands_free': False,
        'restart_delay_s': 0.5,
        'teardown_timeout_s': 3.0,
        'max_stream_restarts': 5,
        'dedupe_window_s': 1.5,
        'command_single_shot': True,
        'commands_file': '',
    },
    'whisper': {
        'model': 'base',
        'device': 'cpu',
        'language': 'en',
    },
    'audio': {
        'sample_rate': 16000,
        'channels': 1,
        'chunk_ms': 1000,
        'block_ms': 100,
        'artifact_format': 'WAV',
        'silence_threshold': 0.01,
        'end_of_utterance_s': 0.8,
        'no_speech_timeout_s': 8.0,
        'interim_interval_s': 1.0,
        'max_utterance_s': 15.0,
    },
    'hotkeys': {
        'enabled': True,
        'command': 'ctrl+alt+c',
        'dictation': 'ctrl+alt+d',
        'stop': 'ctrl+alt+s',
    },
    'service': {
        'log_level': 'INFO',
        'log_file': '',
    },
    'logging': {
        'level': 'INFO',
        'directory': 'logs',
        'structured': False,
        'run_retention': 5,
        'trace_events': False,
    },
}


def get_default_config() -> dict[str, Any]:
    """Return a fresh copy of the default configuration"""
    return copy.deepcopy(DEFAULT_CONFIG)


def load_config(config_path: Union[str, Path] = "config.yaml") -> dict[str, Any]:
    """Load configuration from YAML file (defaults if missing or empty)"""
    config_file = Path(config_path)

    if not config_file.exists():
        return get_default_config()

    with open(config_file, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f)

    if not config:
        return get_default_config()
    if not isinstance(config, dict):
        raise ValueError(f"{config_file} must contain a mapping, got {type(config).__name__}")

    ensure_config_defaults(config)
    return config


def ensure_config_defaults(config: dict[str, Any]) -> dict[str, Any]:
    """Fill in missing sections/keys in place without overwriting user values."""
    for section, defaults in DEFAULT_CONFIG.items():
        section_cfg = config.get(section)
        if not isinstance(section_cfg, dict):
            section_cfg = {}
            config[section] = section_cfg
        for key, value in defaults.items():
            section_cfg.setdefault(key, copy.deepcopy(value))

    # Older configs only carry service.log_level
    logging_cfg = config['logging']
    if 'level' not in logging_cfg or not logging_cfg['level']:
        logging_cfg['level'] = config['service'].get('log_level', 'INFO')
    return config


class SettingsStore:
    """
    Persists runtime-toggled user settings (the hands-free flag)

    Values are cached in memory; every ``set`` writes the whole file back.
    A missing or unreadable file falls back to ``default_hands_free``.
    """

    def __init__(self, path: Union[str, Path], default_hands_free: bool = False):
        self.path = Path(path)
        self.default_hands_free = default_hands_free
        self.logger = logging.getLogger('SettingsStore')
        self._lock = threading.Lock()
        self._values: Optional[dict[str, Any]] = None

    def _load(self) -> dict[str, Any]:
        if self._values is not None:
            return self._values

        values: dict[str, Any] = {}
        if self.path.exists():
            try:
                with open(self.path, 'r', encoding='utf-8') as f:
                    loaded = yaml.safe_load(f)
                if isinstance(loaded, dict):
                    values = loaded
                elif loaded is not None:
                    self.logger.warning("Ignoring malformed settings file %s", self.path)
            except (OSError, yaml.YAMLError) as exc:
                self.logger.warning("Could not read settings %s: %s", self.path, exc)

        self._values = values
        return values

    def get_hands_free(self) -> bool:
        with self._lock:
            return bool(self._load().get('hands_free', self.default_hands_free))

    def set_hands_free(self, enabled: bool) -> None:
        with self._lock:
            values = self._load()
            values['hands_free'] = bool(enabled)
            self._save(values)
        self.logger.info("Hands-free %s", "enabled" if enabled else "disabled")

    def _save(self, values: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w', encoding='utf-8') as f:
            yaml.safe_dump(values, f, default_flow_style=False)
