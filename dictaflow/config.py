"""
Configuration management with immutable snapshots.

Loads from: environment variables > .env > settings.json > defaults
Provides immutable snapshots so managers never see a half-applied change.
"""

import json
import os
from dataclasses import fields
from pathlib import Path
from typing import Any, Dict, Optional

from .types import ConfigSnapshot


# Defaults, one entry per ConfigSnapshot field
DEFAULT_CONFIG: Dict[str, Any] = {f.name: f.default for f in fields(ConfigSnapshot)}

# Never written to settings.json
SECRET_KEYS = ("openai_api_key", "groq_api_key", "azure_speech_key")

ENV_KEYS = {
    "OPENAI_API_KEY": "openai_api_key",
    "GROQ_API_KEY": "groq_api_key",
    "AZURE_SPEECH_KEY": "azure_speech_key",
    "AZURE_SPEECH_REGION": "azure_speech_region",
}

MIN_RECORDING_SECONDS = 10
MAX_RECORDING_SECONDS = 600


def _coerce(value: Any, default: Any) -> Any:
    """Convert a settings value to the type of its default."""
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    return type(default)(value)


class Config:
    """
    Single source of truth for all settings.

    Usage:
        config = Config.load()
        snapshot = config.snapshot()  # Immutable copy for the managers
    """

    def __init__(self, data_dir: Optional[Path] = None):
        for key, default in DEFAULT_CONFIG.items():
            setattr(self, key, default)

        # Paths
        self.data_dir: Path = Path(data_dir) if data_dir else Path.home() / ".dictaflow"
        self.metrics_file: Path = self.data_dir / "metrics.jsonl"
        self.settings_file: Path = self.data_dir / "settings.json"
        self.env_file: Path = self.data_dir / ".env"
        self.server_pid_file: Path = self.data_dir / "whisper-server.pid"
        self.server_log_file: Path = self.data_dir / "whisper-server.log"

        self.whisper_server_dir = str(self.data_dir / "whisper-server")
        self.piper_dir = str(self.data_dir / "piper")

    @classmethod
    def load(cls, data_dir: Optional[Path] = None) -> "Config":
        """Load configuration from all sources."""
        config = cls(data_dir)
        config._ensure_data_dir()
        config._load_settings()
        config._load_env()
        return config

    def _ensure_data_dir(self) -> None:
        """Create data directory if it doesn't exist."""
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def _load_env(self) -> None:
        """Load API keys from .env files and environment."""
        # Check for .env in current directory (project root) first
        env_file = Path(".env")
        if env_file.exists():
            self._parse_env_file(env_file)

        if self.env_file.exists():
            self._parse_env_file(self.env_file)

        # Environment variables override file values
        for env_key, attr in ENV_KEYS.items():
            setattr(self, attr, os.getenv(env_key, getattr(self, attr)))

    def _parse_env_file(self, env_file: Path) -> None:
        """Parse a .env file and extract API keys."""
        try:
            with open(env_file) as f:
                for line in f:
                    line = line.strip()
                    if not line or line.startswith("#") or "=" not in line:
                        continue
                    key, value = line.split("=", 1)
                    key = key.strip()
                    value = value.strip().strip("'\"")

                    if key in ENV_KEYS:
                        setattr(self, ENV_KEYS[key], value)
        except Exception as e:
            print(f"Error loading {env_file}: {e}")

    def _load_settings(self) -> None:
        """Load settings from settings.json."""
        # Project root first
        project_settings = Path("settings.json")
        if project_settings.exists():
            self._apply_settings_file(project_settings)

        # Then ~/.dictaflow/settings.json (overrides)
        if self.settings_file.exists():
            self._apply_settings_file(self.settings_file)

    def _apply_settings_file(self, settings_file: Path) -> None:
        """Apply settings from a JSON file."""
        try:
            with open(settings_file) as f:
                data = json.load(f)
        except Exception as e:
            print(f"Error loading {settings_file}: {e}")
            return

        if not isinstance(data, dict):
            print(f"Error loading {settings_file}: expected a JSON object")
            return

        # Apply settings with type validation, one key at a time
        for key, default in DEFAULT_CONFIG.items():
            if key not in data:
                continue
            try:
                setattr(self, key, _coerce(data[key], default))
            except (TypeError, ValueError) as e:
                print(f"Ignoring invalid {key} in {settings_file}: {e}")

        self.max_recording_seconds = min(
            max(self.max_recording_seconds, MIN_RECORDING_SECONDS), MAX_RECORDING_SECONDS
        )

    def save_settings(self) -> None:
        """Save current settings to settings.json (API keys stay in .env)."""
        data = {
            key: getattr(self, key)
            for key in DEFAULT_CONFIG
            if key not in SECRET_KEYS
        }

        self._ensure_data_dir()
        with open(self.settings_file, "w") as f:
            json.dump(data, f, indent=2)

    def snapshot(self) -> ConfigSnapshot:
        """Return immutable copy."""
        return ConfigSnapshot(**{key: getattr(self, key) for key in DEFAULT_CONFIG})

    def reload(self) -> None:
        """Re-read every source, starting from defaults."""
        fresh = type(self).load(self.data_dir)
        self.__dict__.update(fresh.__dict__)
