#!/usr/bin/env python3
"""
Unit Tests for environment-driven settings
"""

import unittest
import sys
import os
import tempfile
from pathlib import Path
from unittest.mock import patch

# Add the src directory to the Python path
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

from pydantic import ValidationError

from parking_ledger.config import LedgerSettings


class SettingsTestBase(unittest.TestCase):
    """Runs each test from an empty directory so no .env file is picked up"""

    def setUp(self):
        self._cwd = os.getcwd()
        self._tmp = tempfile.TemporaryDirectory()
        os.chdir(self._tmp.name)

    def tearDown(self):
        os.chdir(self._cwd)
        self._tmp.cleanup()


class TestLedgerSettings(SettingsTestBase):

    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            settings = LedgerSettings.from_env()

        self.assertEqual(settings.app_environment, "development")
        self.assertEqual(settings.database_url, "sqlite:///./parking_ledger.db")
        self.assertFalse(settings.db_echo)
        self.assertEqual(settings.db_pool_size, 10)
        self.assertEqual(settings.ledger_worker_pool_size, 8)
        self.assertEqual(settings.notification_backend, "log")
        self.assertEqual(settings.notification_recipient, "user@example.com")
        self.assertEqual(settings.notification_timeout_seconds, 5.0)
        self.assertEqual(settings.notification_workers, 2)
        self.assertEqual(settings.notification_channel, "parking.notifications")
        self.assertEqual(settings.log_level, "INFO")
        self.assertEqual(settings.log_dir, "logs")
        self.assertTrue(settings.is_sqlite)

    def test_environment_overrides(self):
        env = {
            "DATABASE_URL": "postgresql://ledger@db/ledger",
            "DB_ECHO": "true",
            "DB_POOL_SIZE": "25",
            "LEDGER_WORKER_POOL_SIZE": "16",
            "NOTIFICATION_BACKEND": "RabbitMQ",
            "NOTIFICATION_RECIPIENT": "ops@example.com",
            "LOG_LEVEL": "debug",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = LedgerSettings.from_env()

        self.assertEqual(settings.database_url, "postgresql://ledger@db/ledger")
        self.assertTrue(settings.db_echo)
        self.assertEqual(settings.db_pool_size, 25)
        self.assertEqual(settings.ledger_worker_pool_size, 16)
        self.assertEqual(settings.notification_backend, "rabbitmq")
        self.assertEqual(settings.notification_recipient, "ops@example.com")
        self.assertEqual(settings.log_level, "DEBUG")
        self.assertFalse(settings.is_sqlite)

    def test_unparsable_number_falls_back_with_warning(self):
        with patch.dict(os.environ, {"DB_POOL_SIZE": "lots", "NOTIFICATION_TIMEOUT_SECONDS": "soon"}, clear=True):
            with self.assertLogs("parking_ledger.config", level="WARNING") as logs:
                settings = LedgerSettings.from_env()

        self.assertEqual(settings.db_pool_size, 10)
        self.assertEqual(settings.notification_timeout_seconds, 5.0)
        self.assertTrue(any("DB_POOL_SIZE" in line for line in logs.output))

    def test_non_positive_number_falls_back(self):
        with patch.dict(os.environ, {"NOTIFICATION_WORKERS": "0"}, clear=True):
            with self.assertLogs("parking_ledger.config", level="WARNING"):
                settings = LedgerSettings.from_env()

        self.assertEqual(settings.notification_workers, 2)

    def test_unknown_backend_rejected(self):
        with patch.dict(os.environ, {"NOTIFICATION_BACKEND": "carrier-pigeon"}, clear=True):
            with self.assertRaises(ValidationError):
                LedgerSettings.from_env()

    def test_keyword_overrides_win(self):
        with patch.dict(os.environ, {"NOTIFICATION_BACKEND": "redis"}, clear=True):
            settings = LedgerSettings.from_env(notification_backend="memory")

        self.assertEqual(settings.notification_backend, "memory")

    def test_dotenv_file_is_read(self):
        Path(".env").write_text("NOTIFICATION_RECIPIENT=desk@example.com\n", encoding="utf-8")

        with patch.dict(os.environ, {}, clear=True):
            settings = LedgerSettings.from_env()

        self.assertEqual(settings.notification_recipient, "desk@example.com")


if __name__ == "__main__":
    unittest.main()
