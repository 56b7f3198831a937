#!/usr/bin/env python3
"""
Capability Check

Validates the runtime environment at startup and decides which features can
run. Speech recognition needs faster-whisper and a working input device;
everything else degrades gracefully (no audio attachments without soundfile,
no global hotkeys without pynput).
"""

import importlib
import json
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

__all__ = ['CapabilityCheck', 'CapabilityReport', 'ComponentStatus', 'write_status_file']


RECOGNITION = "Speech Recognition"
AUDIO_ATTACHMENTS = "Audio Attachments"
HOTKEYS = "Global Hotkeys"

# package -> feature lost when it is missing
OPTIONAL_PACKAGES = {
    'soundfile': AUDIO_ATTACHMENTS,
    'pynput': HOTKEYS,
}
REQUIRED_PACKAGES = ['faster_whisper', 'sounddevice', 'numpy', 'yaml']


@dataclass
class ComponentStatus:
    """Status of an individual component/dependency"""
    name: str
    status: str  # "healthy", "degraded", "unavailable", "critical"
    required: bool = False
    enabled: bool = True
    message: str = ""
    fix_hint: str = ""
    feature: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization"""
        return {k: v for k, v in asdict(self).items() if v}

    @property
    def failed(self) -> bool:
        return self.status in ("unavailable", "critical")


@dataclass
class CapabilityReport:
    """Consolidated capability report"""
    timestamp: str
    overall_status: str  # "healthy", "degraded", "critical"
    components: List[ComponentStatus]
    degraded_features: List[str] = field(default_factory=list)

    @property
    def recognition_supported(self) -> bool:
        return RECOGNITION not in self.degraded_features

    @property
    def audio_attachments(self) -> bool:
        return AUDIO_ATTACHMENTS not in self.degraded_features

    @property
    def hotkeys(self) -> bool:
        return HOTKEYS not in self.degraded_features

    def get(self, name: str) -> Optional[ComponentStatus]:
        for component in self.components:
            if component.name == name:
                return component
        return None

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "overall_status": self.overall_status,
            "degraded_features": self.degraded_features,
            "components": [c.to_dict() for c in self.components],
        }

    def summary(self, base_text: str = "VoiceNotes") -> str:
        if self.overall_status == "healthy":
            return f"{base_text} - Healthy"
        if self.degraded_features:
            features = ", ".join(self.degraded_features)
            label = "Degraded" if self.overall_status == "degraded" else "Critical"
            return f"{base_text} - {label} ({features})"
        return f"{base_text} - Degraded"


class CapabilityCheck:
    """
    Runs every capability check and consolidates the results

    Args:
        config: Application configuration dictionary
    """

    def __init__(self, config: dict):
        self.config = config
        self.logger = logging.getLogger('CapabilityCheck')

    def run(self, quick: bool = False) -> CapabilityReport:
        """
        Run all checks

        Args:
            quick: Skip slow checks (model cache lookup)
        """
        self.logger.info("Running capability checks...")

        components = [
            self.check_python_packages(),
            self.check_optional_packages(),
            self.check_audio_device(),
            self.check_whisper_device(),
        ]
        if not quick:
            components.append(self.check_whisper_cache())

        overall_status = "healthy"
        degraded_features: List[str] = []

        for component in components:
            if component.status == "healthy":
                self.logger.info("%s: %s", component.name, component.message)
            else:
                self.logger.warning("%s: %s", component.name, component.message)
                if component.fix_hint:
                    self.logger.warning("   Fix: %s", component.fix_hint)

            if component.failed:
                for feature in component.feature.split(","):
                    feature = feature.strip()
                    if feature and feature not in degraded_features:
                        degraded_features.append(feature)

            if component.status == "critical" and component.required:
                overall_status = "critical"
            elif component.status != "healthy" and overall_status != "critical":
                overall_status = "degraded"

        return CapabilityReport(
            timestamp=datetime.now().isoformat(),
            overall_status=overall_status,
            components=components,
            degraded_features=degraded_features,
        )

    @staticmethod
    def _missing(packages) -> List[str]:
        missing = []
        for package in packages:
            try:
                importlib.import_module(package)
            except (ImportError, OSError):
                missing.append(package)
        return missing

    def check_python_packages(self) -> ComponentStatus:
        """Verify the packages recognition cannot run without"""
        missing = self._missing(REQUIRED_PACKAGES)
        if missing:
            return ComponentStatus(
                name="Python Packages",
                status="critical",
                required=True,
                message=f"Missing packages: {', '.join(missing)}",
                fix_hint="Run: pip install -e .",
                feature=RECOGNITION,
            )

        return ComponentStatus(
            name="Python Packages",
            status="healthy",
            required=True,
            message=f"All packages installed ({len(REQUIRED_PACKAGES)}/{len(REQUIRED_PACKAGES)})",
        )

    def check_optional_packages(self) -> ComponentStatus:
        """Verify packages whose absence only disables a feature"""
        missing = self._missing(OPTIONAL_PACKAGES)
        if missing:
            features = [OPTIONAL_PACKAGES[name] for name in missing]
            return ComponentStatus(
                name="Optional Packages",
                status="unavailable",
                required=False,
                message=f"Missing packages: {', '.join(missing)}",
                fix_hint="Run: pip install " + " ".join(missing),
                feature=", ".join(features),
            )

        return ComponentStatus(
            name="Optional Packages",
            status="healthy",
            message="Audio attachments and hotkeys available",
        )

    def check_audio_device(self) -> ComponentStatus:
        """Verify an audio input device is accessible"""
        audio_cfg = self.config.get('audio', {}) or {}
        try:
            import sounddevice as sd

            device_info = sd.query_devices(kind='input')
            sd.check_input_settings(
                samplerate=int(audio_cfg.get('sample_rate', 16000)),
                channels=int(audio_cfg.get('channels', 1)),
                dtype='float32',
            )
            return ComponentStatus(
                name="Audio Device",
                status="healthy",
                required=True,
                message=f"Microphone: {device_info['name']}",
                details={"device": device_info['name']},
            )

        except Exception as e:
            return ComponentStatus(
                name="Audio Device",
                status="critical",
                required=True,
                message=f"Cannot access microphone: {e}",
                fix_hint="Check microphone permissions and the default input device",
                feature=RECOGNITION,
            )

    def check_whisper_device(self) -> ComponentStatus:
        """Verify CUDA is usable when the config asks for it"""
        device = self.config.get('whisper', {}).get('device', 'cpu')

        if device == 'cpu':
            return ComponentStatus(
                name="Whisper Device",
                status="healthy",
                enabled=False,
                message="CPU mode configured (GPU not needed)",
            )

        try:
            import ctranslate2

            count = ctranslate2.get_cuda_device_count()
        except ImportError:
            return ComponentStatus(
                name="Whisper Device",
                status="degraded",
                required=False,
                message="Cannot verify CUDA (ctranslate2 not importable)",
            )

        if count > 0:
            return ComponentStatus(
                name="Whisper Device",
                status="healthy",
                required=False,
                message=f"CUDA available ({count} device(s))",
                details={"cuda_devices": count},
            )

        # Not required: the service falls back to CPU
        return ComponentStatus(
            name="Whisper Device",
            status="critical",
            required=False,
            message="device=cuda in config but CUDA not available",
            fix_hint="Install NVIDIA drivers or set whisper.device to cpu",
        )

    def check_whisper_cache(self) -> ComponentStatus:
        """Verify the Whisper model is cached locally"""
        try:
            cache_dir = Path.home() / ".cache" / "huggingface" / "hub"
            model_name = self.config.get('whisper', {}).get('model', 'base')

            if not cache_dir.exists():
                return ComponentStatus(
                    name="Whisper Cache",
                    status="degraded",
                    message="Model cache not found (will download on first run)",
                    details={"cache_dir": str(cache_dir)},
                )

            if list(cache_dir.glob(f"*{model_name}*")):
                return ComponentStatus(
                    name="Whisper Cache",
                    status="healthy",
                    message=f"Model '{model_name}' cached",
                    details={"cache_dir": str(cache_dir)},
                )

            return ComponentStatus(
                name="Whisper Cache",
                status="degraded",
                message=f"Model '{model_name}' not cached (will download on first run)",
            )

        except OSError as e:
            return ComponentStatus(
                name="Whisper Cache",
                status="degraded",
                message=f"Check failed: {e}",
            )


def write_status_file(report: CapabilityReport, run_dir: Optional[Path]) -> Optional[Path]:
    """Write the report as status.json into the run directory"""
    if not run_dir:
        return None

    status_file = Path(run_dir) / "status.json"
    try:
        with open(status_file, 'w', encoding='utf-8') as f:
            json.dump(report.to_dict(), f, indent=2)
    except OSError as e:
        logging.getLogger('CapabilityCheck').warning("Failed to write status file: %s", e)
        return None
    return status_file
