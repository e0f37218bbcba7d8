import os
import unittest
from unittest.mock import patch

import env_validation
from env_validation import EnvironmentError, get_env_bool, load_settings, validate_environment


class ValidateEnvironmentTests(unittest.TestCase):
    def test_defaults_are_applied(self):
        with patch.dict(os.environ, {}, clear=True):
            validate_environment()
            self.assertEqual(os.environ["APP_ENV"], "production")
            self.assertEqual(os.environ["DB_PATH"], "data.db")
            self.assertTrue(os.environ["LLM_URL"].startswith("https://"))

    def test_invalid_app_env_is_rejected(self):
        with patch.dict(os.environ, {"APP_ENV": "staging"}, clear=True):
            with self.assertRaises(EnvironmentError):
                validate_environment()

    def test_invalid_llm_url_is_rejected(self):
        with patch.dict(os.environ, {"LLM_URL": "ftp://llm.internal"}, clear=True):
            with self.assertRaises(EnvironmentError):
                validate_environment()

    def test_non_positive_integers_are_rejected(self):
        for raw in ("0", "-5", "ten"):
            with patch.dict(os.environ, {"DB_MAX_CONNECTIONS": raw}, clear=True):
                with self.assertRaises(EnvironmentError):
                    validate_environment()

    def test_missing_optional_vars_only_warn(self):
        with patch.dict(os.environ, {}, clear=True):
            with self.assertLogs(env_validation.logger, level="WARNING") as logs:
                validate_environment()
        self.assertTrue(any("LLM_API_KEY" in line for line in logs.output))


class LoadSettingsTests(unittest.TestCase):
    def test_values_come_from_environment(self):
        env = {
            "DB_PATH": "/tmp/buddy.db",
            "APP_ENV": "Development",
            "AUTH_TOKEN_TTL_HOURS": "24",
            "LLM_TEMPERATURE": "0.2",
            "SEED_CATALOG": "no",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = load_settings()
        self.assertEqual(settings.db_path, "/tmp/buddy.db")
        self.assertEqual(settings.app_env, "development")
        self.assertTrue(settings.debug)
        self.assertEqual(settings.token_ttl_hours, 24)
        self.assertAlmostEqual(settings.llm_temperature, 0.2)
        self.assertFalse(settings.seed_catalog)

    def test_garbage_numbers_fall_back_to_defaults(self):
        with patch.dict(os.environ, {"LLM_MAX_TOKENS": "lots", "LLM_TIMEOUT": "soon"}, clear=True):
            settings = load_settings()
        self.assertEqual(settings.llm_max_tokens, 1000)
        self.assertEqual(settings.llm_timeout, 60.0)
        self.assertFalse(settings.debug)

    def test_overrides_win(self):
        with patch.dict(os.environ, {"MODEL_ID": "env-model"}, clear=True):
            settings = load_settings({"model_id": "override-model", "db_max_connections": 2})
        self.assertEqual(settings.model_id, "override-model")
        self.assertEqual(settings.db_max_connections, 2)


def test_get_env_bool_parsing():
    with patch.dict(os.environ, {"FLAG_ON": "Yes", "FLAG_OFF": "0"}, clear=True):
        assert get_env_bool("FLAG_ON") is True
        assert get_env_bool("FLAG_OFF", default=True) is False
        assert get_env_bool("FLAG_MISSING", default=True) is True
