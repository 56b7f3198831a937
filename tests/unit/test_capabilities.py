#!/usr/bin/env python3
"""
Unit tests for the capability check

Tests individual checks and report consolidation.
"""

import json
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from voicenotes.capabilities import (
    AUDIO_ATTACHMENTS,
    HOTKEYS,
    RECOGNITION,
    CapabilityCheck,
    CapabilityReport,
    ComponentStatus,
    write_status_file,
)


def healthy(name):
    return ComponentStatus(name=name, status="healthy", message="OK")


class TestComponentStatus(unittest.TestCase):

    def test_to_dict_skips_empty_fields(self):
        status = ComponentStatus(name="Audio Device", status="healthy", required=True, message="OK")
        result = status.to_dict()
        self.assertEqual(result["name"], "Audio Device")
        self.assertNotIn("fix_hint", result)
        self.assertNotIn("details", result)

    def test_failed(self):
        self.assertTrue(ComponentStatus("x", "critical").failed)
        self.assertTrue(ComponentStatus("x", "unavailable").failed)
        self.assertFalse(ComponentStatus("x", "degraded").failed)


class TestCapabilityReport(unittest.TestCase):

    def test_feature_flags(self):
        report = CapabilityReport(
            timestamp="2026-01-01T00:00:00",
            overall_status="degraded",
            components=[],
            degraded_features=[AUDIO_ATTACHMENTS],
        )
        self.assertTrue(report.recognition_supported)
        self.assertFalse(report.audio_attachments)
        self.assertTrue(report.hotkeys)
        self.assertEqual(report.summary(), "VoiceNotes - Degraded (Audio Attachments)")

    def test_healthy_summary(self):
        report = CapabilityReport("2026-01-01T00:00:00", "healthy", [])
        self.assertEqual(report.summary(), "VoiceNotes - Healthy")


class TestCapabilityCheck(unittest.TestCase):

    def setUp(self):
        self.config = {"whisper": {"device": "cpu", "model": "base"}, "audio": {"sample_rate": 16000}}
        self.checker = CapabilityCheck(self.config)

    def _patch_checks(self, **overrides):
        names = ["check_python_packages", "check_optional_packages", "check_audio_device",
                 "check_whisper_device", "check_whisper_cache"]
        for name in names:
            result = overrides.get(name, healthy(name))
            patcher = patch.object(CapabilityCheck, name, return_value=result)
            patcher.start()
            self.addCleanup(patcher.stop)

    def test_all_healthy(self):
        self._patch_checks()
        report = self.checker.run()
        self.assertEqual(report.overall_status, "healthy")
        self.assertEqual(report.degraded_features, [])
        self.assertEqual(len(report.components), 5)

    def test_quick_skips_cache_check(self):
        self._patch_checks()
        report = self.checker.run(quick=True)
        self.assertEqual(len(report.components), 4)

    def test_missing_microphone_is_critical(self):
        self._patch_checks(check_audio_device=ComponentStatus(
            name="Audio Device", status="critical", required=True,
            message="no device", feature=RECOGNITION,
        ))
        report = self.checker.run(quick=True)
        self.assertEqual(report.overall_status, "critical")
        self.assertFalse(report.recognition_supported)

    def test_optional_packages_degrade_features(self):
        self._patch_checks(check_optional_packages=ComponentStatus(
            name="Optional Packages", status="unavailable",
            message="Missing packages: soundfile, pynput",
            feature=f"{AUDIO_ATTACHMENTS}, {HOTKEYS}",
        ))
        report = self.checker.run(quick=True)
        self.assertEqual(report.overall_status, "degraded")
        self.assertEqual(report.degraded_features, [AUDIO_ATTACHMENTS, HOTKEYS])
        self.assertTrue(report.recognition_supported)

    def test_missing_required_package(self):
        with patch.object(CapabilityCheck, "_missing", return_value=["faster_whisper"]):
            status = self.checker.check_python_packages()
        self.assertEqual(status.status, "critical")
        self.assertEqual(status.feature, RECOGNITION)
        self.assertIn("faster_whisper", status.message)

    def test_missing_optional_package_maps_feature(self):
        with patch.object(CapabilityCheck, "_missing", return_value=["soundfile"]):
            status = self.checker.check_optional_packages()
        self.assertEqual(status.status, "unavailable")
        self.assertEqual(status.feature, AUDIO_ATTACHMENTS)

    def test_cpu_device_needs_no_gpu(self):
        status = self.checker.check_whisper_device()
        self.assertEqual(status.status, "healthy")
        self.assertFalse(status.enabled)

    def test_cuda_without_devices(self):
        checker = CapabilityCheck({"whisper": {"device": "cuda"}})
        fake_ct2 = MagicMock()
        fake_ct2.get_cuda_device_count.return_value = 0
        with patch.dict(sys.modules, {"ctranslate2": fake_ct2}):
            status = checker.check_whisper_device()
        self.assertEqual(status.status, "critical")
        self.assertFalse(status.required)

    def test_cuda_devices_counted(self):
        checker = CapabilityCheck({"whisper": {"device": "cuda"}})
        fake_ct2 = MagicMock()
        fake_ct2.get_cuda_device_count.return_value = 2
        with patch.dict(sys.modules, {"ctranslate2": fake_ct2}):
            status = checker.check_whisper_device()
        self.assertEqual(status.status, "healthy")
        self.assertEqual(status.details, {"cuda_devices": 2})

    def test_audio_device_failure(self):
        fake_sd = MagicMock()
        fake_sd.query_devices.side_effect = RuntimeError("No input device")
        with patch.dict(sys.modules, {"sounddevice": fake_sd}):
            status = self.checker.check_audio_device()
        self.assertEqual(status.status, "critical")
        self.assertIn("No input device", status.message)

    def test_audio_device_ok(self):
        fake_sd = MagicMock()
        fake_sd.query_devices.return_value = {"name": "USB Mic"}
        with patch.dict(sys.modules, {"sounddevice": fake_sd}):
            status = self.checker.check_audio_device()
        self.assertEqual(status.status, "healthy")
        self.assertEqual(status.details["device"], "USB Mic")
        fake_sd.check_input_settings.assert_called_once()


class TestStatusFile(unittest.TestCase):

    def test_written_into_run_dir(self):
        report = CapabilityReport("2026-01-01T00:00:00", "healthy", [healthy("Audio Device")])
        with tempfile.TemporaryDirectory() as tmp:
            path = write_status_file(report, Path(tmp))
            payload = json.loads(path.read_text(encoding="utf-8"))
        self.assertEqual(payload["overall_status"], "healthy")
        self.assertEqual(payload["components"][0]["name"], "Audio Device")

    def test_no_run_dir(self):
        report = CapabilityReport("2026-01-01T00:00:00", "healthy", [])
        self.assertIsNone(write_status_file(report, None))


if __name__ == '__main__':
    unittest.main()
