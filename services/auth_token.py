"""Bearer token persisted by the login flow and read by the Sync Client."""
from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from core.settings import TOKEN_PATH
from datetime_utils import ensure_utc, parse_rfc3339, to_rfc3339_utc, utc_now


class TokenStore:
    def __init__(self, path: Path | str | None = None):
        self.path = Path(path or TOKEN_PATH)

    # ------------------------------------------------------------------
    # generic helpers
    def _load(self) -> Dict[str, Any]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError:
            return {}
        if isinstance(data, str):
            return {"access_token": data}
        if isinstance(data, dict):
            return data
        return {}

    def _save(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data), encoding="utf-8")

    # ------------------------------------------------------------------
    def get_token(self) -> Optional[str]:
        data = self._load()
        if data.get("invalid"):
            return None
        token = data.get("access_token")
        if not token:
            return None
        expires_at = self.get_expires_at()
        if expires_at and expires_at <= utc_now():
            return None
        return str(token)

    def get_expires_at(self) -> Optional[datetime]:
        value = self._load().get("expires_at")
        return ensure_utc(parse_rfc3339(value)) if value else None

    def set_token(self, token: str, expires_at: Optional[datetime] = None) -> None:
        data: Dict[str, Any] = {"access_token": token}
        if expires_at:
            data["expires_at"] = to_rfc3339_utc(expires_at)
        self._save(data)

    def has_valid_token(self) -> bool:
        return self.get_token() is not None

    def mark_invalid(self) -> None:
        """Called when the server rejected the token; the login flow must refresh it."""

        data = self._load()
        if not data:
            return
        data["invalid"] = True
        self._save(data)

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()


__all__ = ["TokenStore"]
