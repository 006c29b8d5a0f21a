"""Upload relay configuration.

Loads settings from two YAML files:
  * relay.settings.yaml  : non-secret configuration
  * relay.secrets.yaml   : object store credentials (never committed)

Byte sizes may be given as integers or as human-readable strings
("25MB", "2GiB"); they are normalised to ints on load.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import humanfriendly
import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("relay.settings.yaml")
SECRETS_FILE  = Path("relay.secrets.yaml")

MiB = 1024 * 1024

# S3 rejects non-final multipart parts smaller than this.
MIN_PART_SIZE = 5 * MiB


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def _parse_size(value: Any) -> int:
    if isinstance(value, str):
        return humanfriendly.parse_size(value, binary=True)
    return int(value)


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class StorageSecrets(BaseModel):
    access_key_id:     Optional[str] = None
    secret_access_key: Optional[str] = None


class Secrets(BaseModel):
    storage: StorageSecrets = Field(default_factory=StorageSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 3000
    reload:          bool      = False
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"


class StorageSettings(BaseModel):
    """Remote object store (any S3-compatible endpoint, B2 by default)."""
    bucket:                str           = "uploads"
    endpoint_url:          Optional[str] = "https://s3.us-east-005.backblazeb2.com"
    region:                str           = "us-east-005"
    cdn_base_url:          str           = "https://cdn.example.com"
    single_shot_threshold: int           = 25 * MiB
    part_size:             int           = 25 * MiB
    max_part_workers:      int           = 4

    @field_validator("single_shot_threshold", "part_size", mode="before")
    @classmethod
    def _sizes(cls, value: Any) -> int:
        return _parse_size(value)

    @field_validator("part_size")
    @classmethod
    def _part_size_minimum(cls, value: int) -> int:
        if value < MIN_PART_SIZE:
            raise ValueError(
                f"part_size must be at least {MIN_PART_SIZE} bytes, got {value}"
            )
        return value

    @field_validator("max_part_workers")
    @classmethod
    def _workers(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_part_workers must be >= 1")
        return value


class UploadSettings(BaseModel):
    chunk_dir:                   str = "./uploads/chunks"
    spool_dir:                   str = "./uploads/spool"
    max_chunk_size:              int = 15 * MiB
    legacy_max_file_size:        int = 2 * 1024 * MiB
    legacy_max_files:            int = 10
    default_user_id:             str = "guest"
    key_resolution_max_attempts: int = 1000

    @field_validator("max_chunk_size", "legacy_max_file_size", mode="before")
    @classmethod
    def _sizes(cls, value: Any) -> int:
        return _parse_size(value)


class ReaperSettings(BaseModel):
    enabled:                 bool = True
    session_timeout_seconds: int  = 24 * 60 * 60
    max_orphan_age_seconds:  int  = 2 * 60 * 60
    interval_seconds:        int  = 60 * 60
    start_delay_seconds:     int  = 30


class AppSettings(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    uploads: UploadSettings  = Field(default_factory=UploadSettings)
    reaper:  ReaperSettings  = Field(default_factory=ReaperSettings)
    secrets: Secrets         = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Path resolution
# ---------------------------------------------------------------------------


def _resolve_dir(value: str, base_dir: Path) -> str:
    path = Path(value).expanduser()
    if path.is_absolute():
        return str(path)
    return str((base_dir / path).resolve())


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------

_config: Optional[AppSettings] = None


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppSettings:
    """Load and merge settings + secrets into a single *AppSettings* object.

    Relative ``chunk_dir``/``spool_dir`` values resolve against the directory
    holding the settings file.
    """
    settings_path = Path(settings_path or SETTINGS_FILE)
    secrets_path = Path(secrets_path or settings_path.with_name(SECRETS_FILE.name))

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in AppSettings
    settings_data["secrets"] = secrets_data

    app_settings = AppSettings(**settings_data)

    base_dir = settings_path.resolve().parent
    app_settings.uploads.chunk_dir = _resolve_dir(app_settings.uploads.chunk_dir, base_dir)
    app_settings.uploads.spool_dir = _resolve_dir(app_settings.uploads.spool_dir, base_dir)

    logger.info(
        "Settings loaded (server=%s:%s, bucket=%s, reaper.enabled=%s)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.storage.bucket,
        app_settings.reaper.enabled,
    )
    return app_settings


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Forget the cached settings (for testing)."""
    global _config
    _config = None
