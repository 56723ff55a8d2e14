"""Centralized application configuration."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional
import os
import sys


def get_default_data_dir(
    app_name: str,
    *,
    platform: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    home: Optional[Path] = None,
) -> Path:
    """Return an OS-specific user data directory for ``app_name``."""

    platform_id = (platform or sys.platform).lower()
    environ = dict(env or os.environ)
    home_dir = Path(home or Path.home())
    sanitized = app_name.strip() or "app"
    sanitized = sanitized.replace("/", "-").replace("\\", "-")

    if platform_id.startswith("win"):
        base = Path(environ.get("APPDATA") or home_dir / "AppData" / "Roaming")
    elif platform_id == "darwin":
        base = Path(environ.get("APPDATA") or home_dir / "Library" / "Application Support")
    else:
        base = Path(environ.get("XDG_DATA_HOME") or home_dir / ".local" / "share")

    return (base.expanduser() / sanitized)


APP_NAME = "BiometricClient"


DATA_DIR = get_default_data_dir(APP_NAME)
STORAGE_DIR = DATA_DIR / "storage"
SECRETS_DIR = DATA_DIR / "secrets"
LOG_DIR = DATA_DIR / "logs"

for _dir in (DATA_DIR, STORAGE_DIR, SECRETS_DIR, LOG_DIR):
    _dir.mkdir(parents=True, exist_ok=True)


DB_PATH = DATA_DIR / "biometric.db"
CONFIG_PATH = DATA_DIR / "config.json"
TOKEN_PATH = SECRETS_DIR / "token.json"
SYNC_LOG_PATH = LOG_DIR / "sync.log"


@dataclass(frozen=True)
class SyncSettings:
    api_url: str = "https://your-domain.com/api"
    auto_sync_enabled: bool = True
    sync_interval_minutes: int = 5
    max_attempts: int = 3
    batch_size: int = 20
    connect_timeout_sec: float = 5.0
    request_timeout_sec: float = 30.0
    connectivity_timeout_sec: float = 5.0
    # False: only never-tried rows are picked up by cycles, failed rows wait for a manual reset
    auto_retry_errors: bool = True
    retention_days: int = 7
    max_payload_bytes: int = 2_000_000
    stop_timeout_sec: float = 30.0


SYNC = SyncSettings()


@dataclass(frozen=True)
class StorageSettings:
    db_path: Path = DB_PATH
    echo_sql: bool = False


STORAGE = StorageSettings()


__all__ = [
    "APP_NAME",
    "DATA_DIR",
    "STORAGE_DIR",
    "SECRETS_DIR",
    "LOG_DIR",
    "DB_PATH",
    "CONFIG_PATH",
    "TOKEN_PATH",
    "SYNC_LOG_PATH",
    "SYNC",
    "STORAGE",
    "StorageSettings",
    "SyncSettings",
    "get_default_data_dir",
]
