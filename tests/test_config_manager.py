import errno
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from calmirror.config_manager import ConfigManager, apply_env_overrides, resolve_feed_settings
from calmirror.errors import ConfigurationError
from calmirror.models import AppConfig, RemoteFeedConfig


class ConfigManagerTests(unittest.TestCase):
    def test_save_fallback_when_replace_ebusy(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path), environ={})
            config = AppConfig.from_dict(
                {
                    "feed": {"ics_url": "https://calendar.example.com/basic.ics", "lookahead_days": 90},
                    "store": {"shop_domain": "demo.myshopify.com", "access_token": "shpat_x"},
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
            self.assertEqual(data["feed"]["ics_url"], "https://calendar.example.com/basic.ics")
            self.assertEqual(data["store"]["access_token"], "shpat_x")

    def test_missing_file_is_created_with_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "nested" / "config.yaml"
            config = ConfigManager(str(config_path), environ={}).load()

            self.assertTrue(config_path.exists())
            self.assertEqual(config.feed.lookahead_days, 180)
            self.assertEqual(config.sync.interval_seconds, 10800)
            self.assertEqual(config.store.metaobject_type, "event")

    def test_environment_overlays_file_values(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            environ = {
                "ICS_URL": "https://calendar.example.com/env.ics",
                "LOOKAHEAD_DAYS": "30",
                "SHOP": "env-shop.myshopify.com",
                "ADMIN_TOKEN": "shpat_env",
                "HMAC_SECRET": "s3cret",
            }
            manager = ConfigManager(str(config_path), environ=environ)
            manager.update({"feed": {"ics_url": "https://calendar.example.com/file.ics"}})

            config = manager.load()
            self.assertEqual(config.feed.ics_url, "https://calendar.example.com/env.ics")
            self.assertEqual(config.feed.lookahead_days, 30)
            self.assertEqual(config.store.shop_domain, "env-shop.myshopify.com")
            self.assertEqual(config.server.sync_secret, "s3cret")

            # Environment values never leak into the saved file.
            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["feed"]["ics_url"], "https://calendar.example.com/file.ics")
            self.assertEqual(data["store"]["access_token"], "")

    def test_masked_hides_secrets(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"), environ={})
            manager.update({"store": {"access_token": "shpat_x"}, "server": {"sync_secret": "abc"}})

            masked = manager.masked()
            self.assertEqual(masked["store"]["access_token"], "***")
            self.assertEqual(masked["server"]["sync_secret"], "***")
            self.assertEqual(manager.load().store.access_token, "shpat_x")

    def test_apply_env_overrides_prefers_first_named_variable(self) -> None:
        merged = apply_env_overrides(
            {"feed": {"ics_url": "file"}},
            {"CALMIRROR_ICS_URL": "primary", "ICS_URL": "secondary", "SYNC_SECRET": "  "},
        )
        self.assertEqual(merged["feed"]["ics_url"], "primary")
        self.assertNotIn("server", merged)


class FeedSettingsResolutionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.config = AppConfig.from_dict(
            {"feed": {"ics_url": "https://calendar.example.com/local.ics", "lookahead_days": 60}}
        )

    def test_local_configuration(self) -> None:
        settings = resolve_feed_settings(self.config)
        self.assertEqual(settings.ics_url, "https://calendar.example.com/local.ics")
        self.assertEqual(settings.lookahead_days, 60)
        self.assertEqual(settings.source, "local")

    def test_remote_configuration_beats_local(self) -> None:
        remote = RemoteFeedConfig(ics_url="https://calendar.example.com/remote.ics", lookahead_days=14)
        settings = resolve_feed_settings(self.config, remote)
        self.assertEqual(settings.ics_url, "https://calendar.example.com/remote.ics")
        self.assertEqual(settings.lookahead_days, 14)
        self.assertEqual(settings.source, "remote")

    def test_remote_lookahead_without_url_still_applies(self) -> None:
        settings = resolve_feed_settings(self.config, RemoteFeedConfig(lookahead_days=7))
        self.assertEqual(settings.ics_url, "https://calendar.example.com/local.ics")
        self.assertEqual(settings.lookahead_days, 7)

    def test_overrides_beat_everything(self) -> None:
        remote = RemoteFeedConfig(ics_url="https://calendar.example.com/remote.ics", lookahead_days=14)
        settings = resolve_feed_settings(
            self.config,
            remote,
            feed_url_override="https://calendar.example.com/override.ics",
            lookahead_override=3,
        )
        self.assertEqual(settings.ics_url, "https://calendar.example.com/override.ics")
        self.assertEqual(settings.lookahead_days, 3)
        self.assertEqual(settings.source, "override")

    def test_missing_url_is_configuration_error(self) -> None:
        with self.assertRaises(ConfigurationError):
            resolve_feed_settings(AppConfig())


if __name__ == "__main__":
    unittest.main()
