"""Tests for settings and environment loading."""

import os

import pytest
import yaml

from buyly.config import DEFAULT_SETTINGS, load_dotenv, load_settings, require_env
from buyly.errors import ConfigurationError


class TestLoadSettings:
    def test_defaults_without_file(self, tmp_path):
        settings = load_settings(tmp_path / "missing.yaml")
        assert settings == DEFAULT_SETTINGS
        assert settings["budget_alert"]["threshold_percent"] == 50
        assert settings["bulk_write"]["batch_size"] == 500

    def test_overrides_are_deep_merged(self, tmp_path):
        path = tmp_path / "settings.yaml"
        with open(path, "w") as f:
            yaml.dump({"budget_alert": {"require_alert_flag": True}, "email": {"ops_address": "ops@example.com"}}, f)

        settings = load_settings(path)

        assert settings["budget_alert"] == {"threshold_percent": 50, "require_alert_flag": True}
        assert settings["email"]["ops_address"] == "ops@example.com"
        assert settings["email"]["report_to"] == "info@buyly.co.za"

    def test_defaults_not_mutated(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("budget_alert:\n  threshold_percent: 80\n")
        load_settings(path)
        assert DEFAULT_SETTINGS["budget_alert"]["threshold_percent"] == 50

    def test_settings_path_from_env(self, tmp_path, monkeypatch):
        path = tmp_path / "custom.yaml"
        path.write_text("credits:\n  signup_amount: 250\n")
        monkeypatch.setenv("BUYLY_SETTINGS", str(path))
        assert load_settings()["credits"]["signup_amount"] == 250

    @pytest.mark.parametrize("batch_size", [0, 501, "500"])
    def test_invalid_batch_size(self, tmp_path, batch_size):
        path = tmp_path / "settings.yaml"
        with open(path, "w") as f:
            yaml.dump({"bulk_write": {"batch_size": batch_size}}, f)
        with pytest.raises(ConfigurationError):
            load_settings(path)

    def test_non_mapping_file(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ConfigurationError):
            load_settings(path)


class TestEnv:
    def test_require_env_lists_every_missing_name(self, monkeypatch):
        monkeypatch.setenv("BUYLY_A", "1")
        monkeypatch.delenv("BUYLY_B", raising=False)
        monkeypatch.setenv("BUYLY_C", "")
        with pytest.raises(ConfigurationError, match="BUYLY_B, BUYLY_C"):
            require_env("BUYLY_A", "BUYLY_B", "BUYLY_C")

    def test_require_env_returns_values(self, monkeypatch):
        monkeypatch.setenv("BUYLY_A", "1")
        monkeypatch.setenv("BUYLY_B", "2")
        assert require_env("BUYLY_A", "BUYLY_B") == ["1", "2"]

    def test_load_dotenv(self, tmp_path, monkeypatch):
        monkeypatch.delenv("BUYLY_DOTENV_TEST", raising=False)
        monkeypatch.delenv("BUYLY_QUOTED", raising=False)
        env_file = tmp_path / ".env"
        env_file.write_text("# comment\n\nBUYLY_DOTENV_TEST=hello\nBUYLY_QUOTED=\"with spaces\"\n")

        load_dotenv(env_file)

        assert os.environ["BUYLY_DOTENV_TEST"] == "hello"
        assert os.environ["BUYLY_QUOTED"] == "with spaces"

    def test_load_dotenv_missing_file(self, tmp_path):
        load_dotenv(tmp_path / ".env")
