"""Unit tests for config loading, env overrides, logging setup and the CLI."""
import json
import logging
import os
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from activity_capture.config_loader import CONFIG_PATH, load_config, merge_config
from activity_capture.log import configure_logging, log_structured
from activity_capture.main import main, parse_args


class TestLoadConfig(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def _write(self, text):
        path = Path(self.tmp) / "config.yaml"
        path.write_text(text, encoding="utf-8")
        return path

    def test_missing_file_yields_defaults(self):
        cfg = load_config(Path(self.tmp) / "absent.yaml", use_env=False)
        self.assertEqual(cfg["detection"]["interval_ms"], 2000)
        self.assertEqual(cfg["detection"]["fusion"]["image_weight"], 0.7)
        self.assertEqual(cfg["history"]["retention_days"], 30)

    def test_partial_file_overrides_only_what_it_names(self):
        path = self._write("detection:\n  fusion:\n    enabled: false\ncapture:\n  rtsp:\n    urls: [rtsp://a]\n")
        cfg = load_config(path, use_env=False)
        self.assertFalse(cfg["detection"]["fusion"]["enabled"])
        self.assertEqual(cfg["detection"]["fusion"]["sound_weight"], 0.3)
        self.assertEqual(cfg["capture"]["rtsp"]["urls"], ["rtsp://a"])
        self.assertEqual(cfg["capture"]["rtsp"]["timeout_ms"], 5000)

    def test_non_mapping_rejected(self):
        with self.assertRaises(ValueError):
            load_config(self._write("- just\n- a list\n"), use_env=False)

    def test_shipped_config_loads(self):
        self.assertTrue(CONFIG_PATH.is_file())
        cfg = load_config(CONFIG_PATH, use_env=False)
        self.assertIn(cfg["person_detection"]["type"], ("presence", "facenet", "disabled"))

    def test_env_overrides(self):
        env = {"CAPTURE_RTSP_URLS": "rtsp://a, rtsp://b", "HISTORY_DIRECTORY": "/tmp/h",
               "RETENTION_DAYS": "7", "LOG_LEVEL": "debug"}
        with mock.patch.dict(os.environ, env):
            cfg = load_config(Path(self.tmp) / "absent.yaml")
        self.assertTrue(cfg["capture"]["rtsp"]["enabled"])
        self.assertEqual(cfg["capture"]["rtsp"]["urls"], ["rtsp://a", "rtsp://b"])
        self.assertEqual(cfg["history"]["directory"], "/tmp/h")
        self.assertEqual(cfg["history"]["retention_days"], 7)
        self.assertEqual(cfg["logging"]["level"], "debug")

    def test_merge_does_not_mutate_inputs(self):
        base = {"a": {"b": 1, "c": 2}}
        merged = merge_config(base, {"a": {"b": 5}})
        self.assertEqual(merged, {"a": {"b": 5, "c": 2}})
        self.assertEqual(base, {"a": {"b": 1, "c": 2}})


class TestLogging(unittest.TestCase):

    def test_level_and_structured_events(self):
        log = configure_logging({"logging": {"level": "warning", "structured": True}})
        self.assertEqual(log.level, logging.WARNING)
        events = logging.getLogger("activity_capture.events")
        events.setLevel(logging.INFO)
        with self.assertLogs("activity_capture.events", level="INFO") as cm:
            log_structured("source_reconnect", source="rtsp_abc", success=True)
        payload = json.loads(cm.records[0].getMessage())
        self.assertEqual(payload["event"], "source_reconnect")
        self.assertEqual(payload["source"], "rtsp_abc")
        self.assertTrue(payload["ts"].endswith("Z"))
        configure_logging({"logging": {"level": "INFO", "structured": False}})
        self.assertTrue(events.disabled)
        configure_logging({"logging": {"level": "INFO", "structured": True}})


class TestCli(unittest.TestCase):

    def test_args(self):
        args = parse_args(["--duration", "5", "--no-audio"])
        self.assertEqual(args.duration, 5.0)
        self.assertTrue(args.no_audio)
        self.assertFalse(args.no_video)

    def test_prune_history(self):
        tmp = tempfile.mkdtemp()
        try:
            history = Path(tmp) / "history"
            history.mkdir()
            (history / "detections_2000-01-01.json").write_text("[]", encoding="utf-8")
            config = Path(tmp) / "config.yaml"
            config.write_text(f"history:\n  directory: {history.as_posix()}\n  retention_days: 30\n",
                              encoding="utf-8")
            with mock.patch.dict(os.environ, {"ACTIVITY_CAPTURE_CONFIG": ""}):
                self.assertEqual(main(["--config", str(config), "--prune-history"]), 0)
            self.assertEqual(list(history.iterdir()), [])
        finally:
            shutil.rmtree(tmp, ignore_errors=True)


if __name__ == "__main__":
    unittest.main()
