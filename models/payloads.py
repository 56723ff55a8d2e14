"""Biometric records produced by the capture workflow.

Payloads are immutable once queued. The queue stores them as JSON text and
only looks inside for validation; the Sync Client turns them into the wire
DTOs expected by the bulk endpoints.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from datetime_utils import parse_rfc3339, to_rfc3339_utc, utc_now


MATCH = "match"
NO_MATCH = "no_match"
MATCH_RESULTS = (MATCH, NO_MATCH)


def _encode_image(image: Optional[bytes]) -> Optional[str]:
    if not image:
        return None
    return base64.b64encode(image).decode("ascii")


def _decode_image(value: Optional[str]) -> Optional[bytes]:
    if not value:
        return None
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return None


def _blank(value: Any) -> bool:
    return not isinstance(value, str) or not value.strip()


def _optional_int(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    return int(value)


@dataclass(frozen=True)
class RegistrationPayload:
    student_id: int
    roll_number: str
    fingerprint_template: str
    quality_score: int
    fingerprint_image: Optional[bytes] = None
    captured_at: datetime = field(default_factory=utc_now)
    operator_id: Optional[int] = None
    operator_name: Optional[str] = None

    def problems(self) -> List[str]:
        issues: List[str] = []
        if not isinstance(self.student_id, int) or isinstance(self.student_id, bool) or self.student_id <= 0:
            issues.append("student_id must be a positive integer")
        if _blank(self.roll_number):
            issues.append("roll_number must be a non-empty string")
        if _blank(self.fingerprint_template):
            issues.append("fingerprint_template must be a non-empty string")
        if not isinstance(self.quality_score, int) or not 0 <= self.quality_score <= 100:
            issues.append("quality_score must be between 0 and 100")
        if not isinstance(self.captured_at, datetime):
            issues.append("captured_at must be a datetime")
        return issues

    def to_dict(self) -> Dict[str, Any]:
        return {
            "student_id": self.student_id,
            "roll_number": self.roll_number.strip(),
            "fingerprint_template": self.fingerprint_template,
            "fingerprint_image": _encode_image(self.fingerprint_image),
            "quality_score": self.quality_score,
            "captured_at": to_rfc3339_utc(self.captured_at),
            "operator_id": self.operator_id,
            "operator_name": self.operator_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RegistrationPayload":
        return cls(
            student_id=int(data.get("student_id") or 0),
            roll_number=data.get("roll_number") or "",
            fingerprint_template=data.get("fingerprint_template") or "",
            quality_score=int(data.get("quality_score") or 0),
            fingerprint_image=_decode_image(data.get("fingerprint_image")),
            captured_at=parse_rfc3339(data.get("captured_at")) or utc_now(),
            operator_id=_optional_int(data.get("operator_id")),
            operator_name=data.get("operator_name"),
        )


@dataclass(frozen=True)
class VerificationPayload:
    roll_number: str
    match_result: str
    confidence_score: float
    entry_allowed: bool
    student_id: Optional[int] = None
    fingerprint_template: Optional[str] = None
    verified_at: datetime = field(default_factory=utc_now)
    verifier_id: Optional[int] = None
    verifier_name: Optional[str] = None
    notes: Optional[str] = None

    def problems(self) -> List[str]:
        issues: List[str] = []
        if self.student_id is not None and (
            not isinstance(self.student_id, int) or isinstance(self.student_id, bool) or self.student_id <= 0
        ):
            issues.append("student_id must be a positive integer")
        if _blank(self.roll_number):
            issues.append("roll_number must be a non-empty string")
        if self.match_result not in MATCH_RESULTS:
            issues.append(f"match_result must be one of {', '.join(MATCH_RESULTS)}")
        if not isinstance(self.confidence_score, (int, float)) or not 0 <= self.confidence_score <= 100:
            issues.append("confidence_score must be between 0 and 100")
        if self.fingerprint_template is not None and _blank(self.fingerprint_template):
            issues.append("fingerprint_template must be a non-empty string")
        if not isinstance(self.verified_at, datetime):
            issues.append("verified_at must be a datetime")
        return issues

    def to_dict(self) -> Dict[str, Any]:
        return {
            "student_id": self.student_id,
            "roll_number": self.roll_number.strip(),
            "match_result": self.match_result,
            "confidence_score": float(self.confidence_score),
            "entry_allowed": bool(self.entry_allowed),
            "fingerprint_template": self.fingerprint_template,
            "verified_at": to_rfc3339_utc(self.verified_at),
            "verifier_id": self.verifier_id,
            "verifier_name": self.verifier_name,
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VerificationPayload":
        return cls(
            roll_number=data.get("roll_number") or "",
            match_result=data.get("match_result") or NO_MATCH,
            confidence_score=float(data.get("confidence_score") or 0.0),
            entry_allowed=bool(data.get("entry_allowed")),
            student_id=_optional_int(data.get("student_id")),
            fingerprint_template=data.get("fingerprint_template"),
            verified_at=parse_rfc3339(data.get("verified_at")) or utc_now(),
            verifier_id=_optional_int(data.get("verifier_id")),
            verifier_name=data.get("verifier_name"),
            notes=data.get("notes"),
        )


__all__ = [
    "MATCH",
    "MATCH_RESULTS",
    "NO_MATCH",
    "RegistrationPayload",
    "VerificationPayload",
]
