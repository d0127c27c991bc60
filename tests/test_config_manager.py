import errno
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from studysync.config_manager import ConfigManager
from studysync.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def test_save_fallback_when_replace_ebusy(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            config = AppConfig.from_dict(
                {
                    "google": {"client_id": "cid", "client_secret": "csecret"},
                    "sync": {"interval_seconds": 600},
                }
            )

            original_replace = Path.replace

            def replace_side_effect(self: Path, target: Path) -> Path:
                if str(self).endswith(".tmp"):
                    raise OSError(errno.EBUSY, "Device or resource busy")
                return original_replace(self, target)

            with mock.patch("pathlib.Path.replace", new=replace_side_effect):
                manager.save(config)

            self.assertTrue(config_path.exists())
            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["google"]["client_id"], "cid")
            self.assertEqual(data["sync"]["interval_seconds"], 600)

    def test_creates_default_file(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "nested" / "config.yaml"
            manager = ConfigManager(str(config_path))
            self.assertTrue(config_path.exists())
            self.assertEqual(manager.load().google.calendar_id, "primary")

    def test_update_deep_merges(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.update({"google": {"client_id": "cid", "webhook_url": "https://hooks.example.com"}})
            updated = manager.update({"google": {"calendar_id": "school"}})
            self.assertEqual(updated.google.client_id, "cid")
            self.assertEqual(updated.google.webhook_url, "https://hooks.example.com")
            self.assertEqual(updated.google.calendar_id, "school")

    def test_env_overrides_do_not_leak_into_file(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            with mock.patch.dict(os.environ, {"GOOGLE_CLIENT_SECRET": "env-secret"}):
                self.assertEqual(manager.load().google.client_secret, "env-secret")
                manager.update({"sync": {"lookahead_months": 6}})
            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["google"]["client_secret"], "")
            self.assertEqual(data["sync"]["lookahead_months"], 6)

    def test_masked_hides_client_secret(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.update({"google": {"client_secret": "very-secret"}})
            with mock.patch.dict(os.environ, {}, clear=False):
                os.environ.pop("GOOGLE_CLIENT_SECRET", None)
                masked = manager.masked()
            self.assertEqual(masked["google"]["client_secret"], "***")


if __name__ == "__main__":
    unittest.main()
