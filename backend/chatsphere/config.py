"""Chatsphere application configuration.

Loads settings from two YAML files:
  * chatsphere.settings.yaml: non-secret configuration
  * chatsphere.secrets.yaml: secrets (never committed)

Both paths can be overridden with the CHATSPHERE_SETTINGS and
CHATSPHERE_SECRETS environment variables.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("chatsphere.settings.yaml")
SECRETS_FILE  = Path("chatsphere.secrets.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class JWTSecrets(BaseModel):
    secret_key: str = "change-me-in-production"
    algorithm:  str = "HS256"


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 5000
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"


class RelaySettings(BaseModel):
    """Limits applied by the room/message core."""
    history_limit:        int = 50
    max_history_page:     int = 100
    max_body_length:      int = 4000
    idle_timeout_seconds: int = 0  # 0 = no idle timeout
    max_pending_frames:   int = 256

    @field_validator("history_limit", "max_history_page", "max_body_length", "max_pending_frames")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @field_validator("idle_timeout_seconds")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value


class StorageSettings(BaseModel):
    db_path: str = "chatsphere.duckdb"


class AuthSettings(BaseModel):
    token_query_param: str = "token"


class AppConfig(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    relay:   RelaySettings   = Field(default_factory=RelaySettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    auth:    AuthSettings    = Field(default_factory=AuthSettings)
    secrets: Secrets         = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Path resolution
# ---------------------------------------------------------------------------


def _resolve_db_path(db_path: str, settings_path: Path) -> str:
    """Resolve a relative database path against the settings file directory.

    ``:memory:`` and absolute paths are returned unchanged.
    """
    if db_path == ":memory:":
        return db_path
    path = Path(db_path)
    if path.is_absolute():
        return str(path)
    return str(settings_path.resolve().parent / path)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    if settings_path is None:
        settings_path = Path(os.environ.get("CHATSPHERE_SETTINGS", SETTINGS_FILE))
    if secrets_path is None:
        secrets_path = Path(os.environ.get("CHATSPHERE_SECRETS", SECRETS_FILE))
    settings_path = Path(settings_path)
    secrets_path = Path(secrets_path)

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)
    config.storage.db_path = _resolve_db_path(config.storage.db_path, settings_path)

    logger.info(
        "Settings loaded (server=%s:%s, db=%s, history_limit=%d)",
        config.server.host,
        config.server.port,
        config.storage.db_path,
        config.relay.history_limit,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[AppConfig]) -> None:
    """Replace the process-wide config. Passing None forces a reload."""
    global _config
    _config = config
