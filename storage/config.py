"""Simple JSON-backed configuration store."""
from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

from core.settings import CONFIG_PATH, SYNC, SyncSettings
from services.errors import ConfigError


@dataclass
class AppConfig:
    """Operator-editable settings persisted to ``config.json``."""

    api_url: str = SYNC.api_url
    auto_sync_enabled: bool = SYNC.auto_sync_enabled
    sync_interval_minutes: int = SYNC.sync_interval_minutes
    max_attempts: int = SYNC.max_attempts
    retention_days: int = SYNC.retention_days

    def validate(self) -> Optional[str]:
        """Return a human readable problem, or ``None`` when the config is usable."""

        url = (self.api_url or "").strip()
        if not url:
            return "API URL is required"
        if not url.startswith(("http://", "https://")):
            return "API URL must start with http:// or https://"
        if not isinstance(self.sync_interval_minutes, int) or not 1 <= self.sync_interval_minutes <= 60:
            return "Sync interval must be between 1 and 60 minutes"
        if not isinstance(self.max_attempts, int) or not 1 <= self.max_attempts <= 10:
            return "Max attempts must be between 1 and 10"
        if not isinstance(self.retention_days, int) or self.retention_days < 0:
            return "Retention must be zero or more days"
        return None

    def is_valid(self) -> bool:
        return self.validate() is None


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _load_raw(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return {}
    return data if isinstance(data, dict) else {}


def load_config(path: Optional[Path] = None) -> AppConfig:
    target = path or CONFIG_PATH
    data = _load_raw(target)
    known = {f.name for f in fields(AppConfig)}
    return AppConfig(**{key: value for key, value in data.items() if key in known})


def save_config(config: AppConfig, path: Optional[Path] = None) -> None:
    target = path or CONFIG_PATH
    _ensure_parent(target)
    payload = json.dumps(asdict(config), ensure_ascii=False, indent=2, sort_keys=True)
    tmp = target.with_suffix(".tmp")
    try:
        tmp.write_text(payload, encoding="utf-8")
        tmp.replace(target)
    finally:
        if tmp.exists():
            try:
                tmp.unlink()
            except OSError:
                pass


def update_config(path: Optional[Path] = None, **changes: Any) -> AppConfig:
    target = path or CONFIG_PATH
    cfg = load_config(target)
    for key, value in changes.items():
        if hasattr(cfg, key):
            setattr(cfg, key, value)
    problem = cfg.validate()
    if problem:
        raise ConfigError(problem)
    save_config(cfg, target)
    return cfg


def build_sync_settings(config: AppConfig, base: SyncSettings = SYNC) -> SyncSettings:
    problem = config.validate()
    if problem:
        raise ConfigError(problem)
    return replace(
        base,
        api_url=config.api_url.strip().rstrip("/"),
        auto_sync_enabled=bool(config.auto_sync_enabled),
        sync_interval_minutes=config.sync_interval_minutes,
        max_attempts=config.max_attempts,
        retention_days=config.retention_days,
    )


__all__ = ["AppConfig", "build_sync_settings", "load_config", "save_config", "update_config"]
