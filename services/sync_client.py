"""HTTP client for the bulk synchronization endpoints.

Every call returns typed per-item results instead of raw responses so the
background processor only has to decide between success, retry and abandon.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import requests

from core.log import get_sync_logger
from core.settings import SYNC, SyncSettings
from services.auth_token import TokenStore
from services.errors import SyncClientError


RETRYABLE_STATUS = {408, 425, 429, 500, 502, 503, 504}
AUTH_STATUS = {401, 419}
ACCEPTED_DETAIL_STATUSES = {"success", "successful", "synced", "created", "updated", "duplicate", "exists"}


class SyncOutcome:
    SUCCESS = "success"
    RETRYABLE = "retryable"
    AUTH = "auth"
    PERMANENT = "permanent"


@dataclass(frozen=True)
class SyncResult:
    outcome: str
    message: Optional[str] = None
    status_code: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.outcome == SyncOutcome.SUCCESS

    @property
    def permanent(self) -> bool:
        return self.outcome == SyncOutcome.PERMANENT


@dataclass
class RemoteSyncStatus:
    total_students: int
    registered_fingerprints: int
    pending_verifications: int
    completed_verifications: int
    server_time: Optional[str] = None


def registration_dto(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "student_id": payload.get("student_id"),
        "roll_number": payload.get("roll_number"),
        "fingerprint_template": payload.get("fingerprint_template"),
        "fingerprint_image": payload.get("fingerprint_image"),
        "quality_score": payload.get("quality_score"),
        "captured_at": payload.get("captured_at"),
        "operator_id": payload.get("operator_id"),
    }


def verification_dto(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "student_id": payload.get("student_id"),
        "roll_number": payload.get("roll_number"),
        "match_result": payload.get("match_result"),
        "confidence_score": payload.get("confidence_score"),
        "entry_allowed": payload.get("entry_allowed"),
        "verified_at": payload.get("verified_at"),
        "verifier_id": payload.get("verifier_id"),
        "remarks": payload.get("notes"),
    }


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        errors = body.get("errors")
        if isinstance(errors, dict) and errors:
            parts = []
            for field, messages in errors.items():
                if isinstance(messages, list):
                    messages = ", ".join(str(m) for m in messages)
                parts.append(f"{field}: {messages}")
            return "; ".join(parts)
        if body.get("message"):
            return str(body["message"])
    text = (response.text or "").strip()
    return text[:200] if text else f"HTTP {response.status_code}"


class SyncClient:
    REGISTRATIONS_PATH = "api/v1/sync/registrations"
    VERIFICATIONS_PATH = "api/v1/sync/verifications"
    STATUS_PATH = "api/v1/sync/status"

    def __init__(
        self,
        base_url: Optional[str] = None,
        token_store: Optional[TokenStore] = None,
        *,
        settings: SyncSettings = SYNC,
        session: Optional[requests.Session] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.base_url = (base_url or settings.api_url).rstrip("/")
        self.tokens = token_store
        self.settings = settings
        self.session = session or requests.Session()
        self.logger = logger or get_sync_logger("client")

    # ------------------------------------------------------------------
    # Public API
    def sync_registrations(self, batch: Sequence[Dict[str, Any]]) -> List[SyncResult]:
        items = [registration_dto(payload) for payload in batch]
        return self._post_batch(self.REGISTRATIONS_PATH, "registrations", items)

    def sync_verifications(self, batch: Sequence[Dict[str, Any]]) -> List[SyncResult]:
        items = [verification_dto(payload) for payload in batch]
        return self._post_batch(self.VERIFICATIONS_PATH, "verifications", items)

    def get_remote_sync_status(self) -> RemoteSyncStatus:
        try:
            response = self.session.get(
                self._url(self.STATUS_PATH),
                headers=self._headers(),
                timeout=self._timeout(),
            )
        except requests.RequestException as exc:
            raise SyncClientError(f"Status request failed: {exc}") from exc

        if response.status_code in AUTH_STATUS:
            self._invalidate_token()
        if not response.ok:
            raise SyncClientError(_error_message(response), response.status_code)
        try:
            body = response.json()
        except ValueError as exc:
            raise SyncClientError("Status response is not JSON", response.status_code) from exc
        if not isinstance(body, dict) or not body.get("success"):
            message = body.get("message") if isinstance(body, dict) else None
            raise SyncClientError(message or "Failed to get status", response.status_code)

        stats = body.get("stats") or {}
        return RemoteSyncStatus(
            total_students=int(stats.get("total_students") or 0),
            registered_fingerprints=int(stats.get("registered_fingerprints") or 0),
            pending_verifications=int(stats.get("pending_verifications") or 0),
            completed_verifications=int(stats.get("completed_verifications") or 0),
            server_time=body.get("server_time"),
        )

    def close(self) -> None:
        self.session.close()

    # ------------------------------------------------------------------
    # helpers
    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _timeout(self) -> tuple[float, float]:
        return (self.settings.connect_timeout_sec, self.settings.request_timeout_sec)

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        token = self.tokens.get_token() if self.tokens else None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _invalidate_token(self) -> None:
        if self.tokens is not None:
            self.tokens.mark_invalid()

    def _post_batch(self, path: str, key: str, items: List[Dict[str, Any]]) -> List[SyncResult]:
        if not items:
            return []

        def _all(outcome: str, message: str, status: Optional[int] = None) -> List[SyncResult]:
            return [SyncResult(outcome, message, status) for _ in items]

        self.logger.info("Syncing %d %s", len(items), key)
        try:
            response = self.session.post(
                self._url(path),
                json={key: items},
                headers=self._headers(),
                timeout=self._timeout(),
            )
        except requests.Timeout as exc:
            self.logger.warning("Sync %s timed out: %s", key, exc)
            return _all(SyncOutcome.RETRYABLE, f"Timeout: {exc}")
        except requests.RequestException as exc:
            self.logger.warning("Sync %s network error: %s", key, exc)
            return _all(SyncOutcome.RETRYABLE, f"Network error: {exc}")

        status = response.status_code
        if status in AUTH_STATUS:
            self.logger.warning("Sync %s rejected credentials (HTTP %s)", key, status)
            self._invalidate_token()
            return _all(SyncOutcome.AUTH, "Authentication failed. Please login again.", status)
        if status in RETRYABLE_STATUS:
            return _all(SyncOutcome.RETRYABLE, _error_message(response), status)
        if 400 <= status < 500:
            return _all(SyncOutcome.PERMANENT, _error_message(response), status)
        if not response.ok:
            return _all(SyncOutcome.RETRYABLE, _error_message(response), status)

        try:
            body = response.json()
        except ValueError:
            return _all(SyncOutcome.RETRYABLE, "Malformed response from server", status)
        if not isinstance(body, dict):
            return _all(SyncOutcome.RETRYABLE, "Malformed response from server", status)
        return self._per_item_results(items, body, status)

    def _per_item_results(
        self, items: List[Dict[str, Any]], body: Dict[str, Any], status: int
    ) -> List[SyncResult]:
        accepted = bool(body.get("success"))
        message = body.get("message")
        details = (body.get("results") or {}).get("details") or []
        if not isinstance(details, list):
            details = []

        by_roll: Dict[str, Dict[str, Any]] = {}
        for detail in details:
            if isinstance(detail, dict) and detail.get("roll_number"):
                by_roll.setdefault(str(detail["roll_number"]), detail)

        results: List[SyncResult] = []
        for index, item in enumerate(items):
            detail = None
            if len(details) == len(items) and isinstance(details[index], dict):
                detail = details[index]
            if detail is None:
                detail = by_roll.get(str(item.get("roll_number")))

            if detail is None:
                if accepted:
                    results.append(SyncResult(SyncOutcome.SUCCESS, message, status))
                else:
                    results.append(SyncResult(SyncOutcome.RETRYABLE, message or "Sync failed", status))
                continue

            item_status = str(detail.get("status") or "").lower()
            if item_status in ACCEPTED_DETAIL_STATUSES:
                results.append(SyncResult(SyncOutcome.SUCCESS, detail.get("error") or message, status))
            else:
                reason = detail.get("error") or message or f"Rejected with status '{item_status}'"
                results.append(SyncResult(SyncOutcome.PERMANENT, str(reason), status))
        return results


__all__ = [
    "RemoteSyncStatus",
    "SyncClient",
    "SyncOutcome",
    "SyncResult",
    "registration_dto",
    "verification_dto",
]
