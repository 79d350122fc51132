"""
Global app configuration manager for the audio diagnostics backend.

Settings live in ``app_settings.json`` inside the app config folder:
- diagnostics: panel preferences and auto-regeneration
- logging: log level

The app config folder location is determined by (in order of priority):
1. AUDIOVIZ_CONFIG environment variable
2. Redirect file (~/.audioviz/config_redirect.txt) pointing to custom path
3. Default platform-specific location:
   - Linux/macOS: ~/.audioviz/
   - Windows: %APPDATA%/audioviz/
"""

import json
import os
import sys
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict

from .shared.logger import get_logger

logger = get_logger(__name__)

CONFIG_ENV = "AUDIOVIZ_CONFIG"

# Default config directory name
_CONFIG_DIR_NAME = "audioviz"
_REDIRECT_FILE_NAME = "config_redirect.txt"
_SETTINGS_FILE_NAME = "app_settings.json"

DIAGNOSTICS_SORT_KEYS = ("issues", "source", "profile", "updated")


@dataclass
class DiagnosticsPreferences:
    """How the diagnostics panel is shown and whether missing features regenerate on their own."""

    show_only_issues: bool = False
    sort: str = "issues"
    history_display_limit: int = 100
    auto_regenerate: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DiagnosticsPreferences":
        defaults = cls()
        sort = data.get("sort", defaults.sort)
        limit = data.get("history_display_limit", defaults.history_display_limit)
        return cls(
            show_only_issues=bool(data.get("show_only_issues", defaults.show_only_issues)),
            sort=sort if sort in DIAGNOSTICS_SORT_KEYS else defaults.sort,
            history_display_limit=limit if isinstance(limit, int) and limit >= 0 else defaults.history_display_limit,
            auto_regenerate=bool(data.get("auto_regenerate", defaults.auto_regenerate)),
        )


class AppConfigManager:
    """Manages the global app configuration folder."""

    def __init__(self):
        self._config_dir = self._get_config_dir()
        self._config_dir.mkdir(parents=True, exist_ok=True)
        self._app_settings_path = self._config_dir / _SETTINGS_FILE_NAME

    def _get_config_dir(self) -> Path:
        """Get the config directory following priority order."""
        env_config = os.environ.get(CONFIG_ENV)
        if env_config:
            return Path(env_config)

        default_path = self._get_default_config_dir()
        redirect_file = default_path / _REDIRECT_FILE_NAME
        if redirect_file.exists():
            try:
                redirect_path = redirect_file.read_text(encoding="utf-8").strip()
            except OSError as e:
                logger.warning("Cannot read config redirect %s: %s", redirect_file, e)
                redirect_path = ""
            if redirect_path and Path(redirect_path).exists():
                return Path(redirect_path)

        return default_path

    def _get_default_config_dir(self) -> Path:
        """Get the default platform-specific config directory.

        Returns:
            - Linux/macOS: ~/.audioviz/
            - Windows: %APPDATA%/audioviz/
        """
        if sys.platform == "win32":
            appdata = os.environ.get("APPDATA")
            if appdata:
                return Path(appdata) / _CONFIG_DIR_NAME
            return Path.home() / "AppData" / "Roaming" / _CONFIG_DIR_NAME
        return Path.home() / f".{_CONFIG_DIR_NAME}"

    def get_config_path(self) -> str:
        return str(self._config_dir)

    def is_using_custom_path(self) -> bool:
        return self._config_dir != self._get_default_config_dir()

    def set_config_path(self, path: str) -> bool:
        """Point the config folder at ``path`` through the redirect file.

        Raises:
            ValueError: If the path doesn't exist
        """
        new_path = Path(path).resolve()
        if not new_path.exists():
            raise ValueError(f"Config path does not exist: {path}")

        default_path = self._get_default_config_dir()
        default_path.mkdir(parents=True, exist_ok=True)

        redirect_file = default_path / _REDIRECT_FILE_NAME
        try:
            redirect_file.write_text(str(new_path), encoding="utf-8")
        except OSError as e:
            logger.error("Failed to set config path: %s", e)
            return False

        self._config_dir = new_path
        self._app_settings_path = self._config_dir / _SETTINGS_FILE_NAME
        return True

    # ============================================================================
    # App Settings
    # ============================================================================

    def _default_app_settings(self) -> Dict[str, Any]:
        return {
            "version": "1.0",
            "diagnostics": DiagnosticsPreferences().to_dict(),
            "logging": {"level": "INFO"},
            "last_updated": datetime.now().isoformat(),
        }

    def get_app_settings(self) -> Dict[str, Any]:
        """Load app settings from disk, filled in with defaults."""
        settings = self._default_app_settings()
        if self._app_settings_path.exists():
            try:
                with open(self._app_settings_path, "r", encoding="utf-8") as f:
                    stored = json.load(f)
            except (OSError, ValueError) as e:
                logger.error("Failed to load app settings: %s", e)
            else:
                if isinstance(stored, dict):
                    settings = self._deep_merge(settings, stored)
        return settings

    def save_app_settings(self, settings: Dict[str, Any]) -> bool:
        try:
            settings["last_updated"] = datetime.now().isoformat()
            with open(self._app_settings_path, "w", encoding="utf-8") as f:
                json.dump(settings, f, indent=2)
            return True
        except OSError as e:
            logger.error("Failed to save app settings: %s", e)
            return False

    def update_app_settings(self, updates: Dict[str, Any]) -> bool:
        """Update app settings with deep merge."""
        current = self.get_app_settings()
        merged = self._deep_merge(current, updates)
        return self.save_app_settings(merged)

    def _deep_merge(self, base: Dict, updates: Dict) -> Dict:
        result = base.copy()
        for key, value in updates.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value
        return result

    # ============================================================================
    # Diagnostics preferences
    # ============================================================================

    def get_diagnostics_preferences(self) -> DiagnosticsPreferences:
        return DiagnosticsPreferences.from_dict(self.get_app_settings().get("diagnostics", {}))

    def update_diagnostics_preferences(self, updates: Dict[str, Any]) -> DiagnosticsPreferences:
        """Merge ``updates`` into the stored preferences and return the result."""
        current = self.get_diagnostics_preferences().to_dict()
        current.update({key: value for key, value in updates.items() if value is not None})
        preferences = DiagnosticsPreferences.from_dict(current)
        self.update_app_settings({"diagnostics": preferences.to_dict()})
        return preferences

    # ============================================================================
    # Logging
    # ============================================================================

    def get_log_level(self) -> str:
        return str(self.get_app_settings().get("logging", {}).get("level") or "INFO").upper()


# Global app config instance
app_config = AppConfigManager()
