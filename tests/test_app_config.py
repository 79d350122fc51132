"""
Tests for the app configuration folder and diagnostics preferences.

Run tests:
    pytest tests/test_app_config.py -v
"""

import json
import logging

import pytest

from api.app_config import AppConfigManager, DiagnosticsPreferences
from api.shared.logger import resolve_log_level


@pytest.fixture
def manager(tmp_path, monkeypatch):
    monkeypatch.setenv("AUDIOVIZ_CONFIG", str(tmp_path))
    return AppConfigManager()


class TestAppConfig:
    def test_config_dir_from_env(self, manager, tmp_path):
        assert manager.get_config_path() == str(tmp_path)

    def test_defaults(self, manager):
        settings = manager.get_app_settings()
        assert settings["diagnostics"] == DiagnosticsPreferences().to_dict()
        assert manager.get_log_level() == "INFO"

    def test_update_deep_merges(self, manager, tmp_path):
        manager.update_app_settings({"logging": {"level": "debug"}})
        manager.update_app_settings({"diagnostics": {"sort": "profile"}})

        stored = json.loads((tmp_path / "app_settings.json").read_text(encoding="utf-8"))
        assert stored["logging"]["level"] == "debug"
        assert stored["diagnostics"]["sort"] == "profile"
        assert stored["diagnostics"]["history_display_limit"] == 100
        assert manager.get_log_level() == "DEBUG"

    def test_corrupt_settings_fall_back_to_defaults(self, manager, tmp_path):
        (tmp_path / "app_settings.json").write_text("{not json", encoding="utf-8")
        assert manager.get_diagnostics_preferences() == DiagnosticsPreferences()

    def test_set_config_path_requires_existing_dir(self, manager, tmp_path):
        with pytest.raises(ValueError):
            manager.set_config_path(str(tmp_path / "nope"))


class TestDiagnosticsPreferences:
    def test_update_ignores_none(self, manager):
        prefs = manager.update_diagnostics_preferences({"show_only_issues": True, "sort": None})
        assert prefs.show_only_issues is True
        assert prefs.sort == "issues"
        assert manager.get_diagnostics_preferences().show_only_issues is True

    def test_invalid_values_use_defaults(self):
        prefs = DiagnosticsPreferences.from_dict({"sort": "random", "history_display_limit": -5})
        assert prefs.sort == "issues"
        assert prefs.history_display_limit == 100


class TestLogLevel:
    @pytest.mark.parametrize("value, expected", [("debug", "DEBUG"), ("WARNING", "WARNING"), ("bogus", "INFO")])
    def test_resolve_log_level(self, value, expected):
        assert resolve_log_level(value) == getattr(logging, expected)
