"""Configuration management for KeeNotes.

This module handles loading and saving application configuration to/from
a JSON file. The config directory can be customized via CLI argument.

The encryption password is deliberately not part of the config file. It is
held in memory by the Config instance and can be seeded from the
KEENOTES_PASSWORD environment variable.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from uuid6 import uuid7

from .kdf import DEFAULT_KDF_BACKEND
from .validation import ValidationError, validate_config_value

logger = logging.getLogger(__name__)

__all__ = ["Config", "ConfigurationError", "PASSWORD_ENV_VAR"]

PASSWORD_ENV_VAR = "KEENOTES_PASSWORD"

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "keenotes"


class ConfigurationError(Exception):
    """Required configuration (endpoint, token) is missing."""


class Config:
    """Manages application configuration stored in JSON format.

    Attributes:
        config_dir: Path to the configuration directory
        config_file: Path to config.json
        config_data: Current configuration values
    """

    def __init__(self, config_dir: Optional[Path] = None) -> None:
        """Initialize configuration manager.

        Args:
            config_dir: Custom config directory path. If None, uses ~/.config/keenotes/
        """
        self.config_dir = Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.config_file = self.config_dir / "config.json"
        self.config_data = self.load_config()
        self._password: Optional[str] = os.environ.get(PASSWORD_ENV_VAR) or None

    def _defaults(self) -> Dict[str, Any]:
        return {
            "endpoint_url": "",
            "token": "",
            "client_id": str(uuid7()),
            "channel": "cli",
            "database_file": str(self.config_dir / "notes.db"),
            "review_days": 7,
            "kdf_backend": DEFAULT_KDF_BACKEND,
            "reconnect_delay": 5.0,
            "request_timeout": 30,
        }

    def load_config(self) -> Dict[str, Any]:
        """Load configuration, filling in and persisting missing defaults.

        Returns:
            Configuration dictionary
        """
        defaults = self._defaults()
        data: Dict[str, Any] = {}

        if self.config_file.exists():
            try:
                with open(self.config_file, "r", encoding="utf-8") as f:
                    loaded = json.load(f)
                if isinstance(loaded, dict):
                    data = loaded
                else:
                    logger.warning(f"Ignoring non-object config in {self.config_file}")
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Could not read {self.config_file}: {e}; using defaults")

        # Never keep a password that an older version may have written
        data.pop("password", None)

        missing = [k for k in defaults if k not in data]
        for key in missing:
            data[key] = defaults[key]
        if missing:
            self.save_config(data)

        return data

    def save_config(self, config: Optional[Dict[str, Any]] = None) -> None:
        """Write configuration to config.json."""
        data = dict(self.config_data if config is None else config)
        data.pop("password", None)
        with open(self.config_file, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value."""
        value = self.config_data.get(key)
        return value if value is not None else default

    def set(self, key: str, value: Any) -> None:
        """Validate, set a configuration value and save to file.

        Raises:
            ValidationError: If the key is unknown or the value invalid
        """
        if key == "password":
            raise ValidationError("key", "the password is never stored in the config file")
        self.config_data[key] = validate_config_value(key, value)
        self.save_config()

    def get_config_dir(self) -> Path:
        """Get the configuration directory path."""
        return self.config_dir

    # ===== Typed accessors =====

    def get_endpoint_url(self) -> str:
        return str(self.get("endpoint_url", "")).strip()

    def get_token(self) -> str:
        return str(self.get("token", ""))

    def get_client_id(self) -> str:
        return str(self.get("client_id"))

    def get_channel(self) -> str:
        return str(self.get("channel", "cli"))

    def get_database_file(self) -> Path:
        return Path(self.get("database_file", self.config_dir / "notes.db"))

    def get_review_days(self) -> int:
        return int(self.get("review_days", 7))

    def get_kdf_backend(self) -> str:
        return str(self.get("kdf_backend", DEFAULT_KDF_BACKEND))

    def get_reconnect_delay(self) -> float:
        return float(self.get("reconnect_delay", 5.0))

    def get_request_timeout(self) -> int:
        return int(self.get("request_timeout", 30))

    def is_configured(self) -> bool:
        """Check that endpoint and token are both set."""
        return bool(self.get_endpoint_url() and self.get_token())

    def require_server(self) -> None:
        """Raise ConfigurationError unless endpoint and token are set."""
        if not self.get_endpoint_url():
            raise ConfigurationError("Endpoint URL not configured")
        if not self.get_token():
            raise ConfigurationError("Token not configured")

    # ===== In-memory password =====

    def set_encryption_password(self, password: Optional[str]) -> None:
        """Cache the encryption password for this session (never persisted)."""
        self._password = password or None

    def get_encryption_password(self) -> Optional[str]:
        """Get the cached encryption password, or None."""
        return self._password

    def has_encryption_password(self) -> bool:
        return bool(self._password)
