"""
Error taxonomy shared by the service, the API and the device agent.

Every error carries a machine readable ``code`` and the HTTP status the API
answers with. ``category`` groups codes the way callers react to them:
validation and conflicts are terminal for a change, transient failures are
retried on the next cycle.
"""

from typing import Any, Optional


class ClipSyncError(Exception):
    category = "INTERNAL"
    status = 500

    def __init__(self, code: str, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        if status is not None:
            self.status = status

    def to_dict(self) -> dict:
        return {"ok": False, "code": self.code, "message": self.message}


class ValidationFailed(ClipSyncError):
    category = "VALIDATION"
    status = 400


class NotFound(ClipSyncError):
    category = "NOT_FOUND"
    status = 404

    def __init__(self, message: str = "not found") -> None:
        super().__init__("NOT_FOUND", message)


class ConflictError(ClipSyncError):
    """A stale write. ``record`` is the winning server copy."""

    category = "CONFLICT"
    status = 409

    def __init__(self, message: str, record: Any = None) -> None:
        super().__init__("CONFLICT", message)
        self.record = record

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.record is not None:
            data["record"] = self.record.model_dump(mode="json")
        return data


class AuthError(ClipSyncError):
    """The server did not accept the device's session or identity headers."""

    category = "AUTH"
    status = 401


class CapacityError(ClipSyncError):
    category = "CAPACITY"
    status = 413

    def __init__(self, message: str, attempted_bytes: int = 0, code: str = "IMAGE_TOO_LARGE") -> None:
        super().__init__(code, message)
        self.attempted_bytes = attempted_bytes


class TransientError(ClipSyncError):
    category = "TRANSIENT"
    status = 503

    def __init__(self, message: str, code: str = "UNAVAILABLE") -> None:
        super().__init__(code, message)


class InternalError(ClipSyncError):
    category = "INTERNAL"
    status = 500

    def __init__(self, message: str) -> None:
        super().__init__("INTERNAL_ERROR", message)
