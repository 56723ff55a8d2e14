"""ORM models and payload records used by the biometric sync client."""
from .payloads import RegistrationPayload, VerificationPayload
from .sync_log import SyncLog
from .sync_operation import OperationType, SyncOperation, SyncStatus

__all__ = [
    "OperationType",
    "RegistrationPayload",
    "SyncLog",
    "SyncOperation",
    "SyncStatus",
    "VerificationPayload",
]
