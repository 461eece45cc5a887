"""Realtime forum application configuration.

Loads settings from a single YAML file:
  * forum.settings.yaml  (non-secret configuration)

The path can be overridden with the ``FORUM_SETTINGS_FILE`` environment
variable. A missing file is not an error; every field has a default.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("forum.settings.yaml")
SETTINGS_ENV_VAR = "FORUM_SETTINGS_FILE"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def _settings_path() -> Path:
    override = os.environ.get(SETTINGS_ENV_VAR)
    return Path(override) if override else SETTINGS_FILE


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8080


class LoggingSettings(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if not isinstance(getattr(logging, value.upper(), None), int):
            raise ValueError(f"Unknown log level: {value}")
        return value.lower()


class ChatSettings(BaseModel):
    """Tuning knobs for the connection hub and message router."""
    outbound_queue_size:     int   = Field(default=256, ge=1)
    persist_timeout_seconds: float = Field(default=3.0, gt=0)
    sort_timeout_seconds:    float = Field(default=2.0, gt=0)
    history_page_size:       int   = Field(default=10, ge=1)
    max_history_page_size:   int   = Field(default=100, ge=1)


class StorageSettings(BaseModel):
    db_path: str = "chat_messages.duckdb"


class AppSettings(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    chat:    ChatSettings    = Field(default_factory=ChatSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------

_config: Optional[AppSettings] = None


def load_settings(path: Optional[Path] = None) -> AppSettings:
    """Load settings from YAML into a single *AppSettings* object."""
    settings_data = _load_yaml(path or _settings_path())

    app_settings = AppSettings(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, db_path=%s, queue_size=%d)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.storage.db_path,
        app_settings.chat.outbound_queue_size,
    )
    return app_settings


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_settings()
    return _config


def set_config(config: AppSettings) -> None:
    """Replace the process-wide settings (used by tests and embedders)."""
    global _config
    _config = config


def reset_config() -> None:
    """Forget cached settings so the next get_config() reloads the file."""
    global _config
    _config = None
