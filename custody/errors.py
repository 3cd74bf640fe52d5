"""
Error taxonomy for the custody handover protocol.

``CustodyError`` subclasses are recoverable and meant to be shown to the
caller as-is; ``ServiceError`` covers storage/transport faults.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class CustodyError(Exception):
    """Base class for user-facing protocol failures"""

    code = "custody_error"

    def __init__(self, message: str, **detail: Any) -> None:
        super().__init__(message)
        self.message = message
        self.detail: Dict[str, Any] = detail

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "message": self.message}
        payload.update(self.detail)
        return payload


class InvalidState(CustodyError):
    """Operation is not allowed for the cheque's current status"""

    code = "invalid_state"


class NotFound(CustodyError):
    """No cheque, active challenge or usable override request"""

    code = "not_found"


class Expired(CustodyError):
    """OTP challenge TTL elapsed"""

    code = "expired"


class InvalidCode(CustodyError):
    """Submitted OTP does not match; attempts remain"""

    code = "invalid_code"

    def __init__(self, message: str, *, remaining_attempts: int) -> None:
        super().__init__(message, remainingAttempts=remaining_attempts, locked=False)
        self.remaining_attempts = remaining_attempts


class Locked(CustodyError):
    """OTP channel is locked; a manual override is required"""

    code = "locked"

    def __init__(self, message: str) -> None:
        super().__init__(message, remainingAttempts=0, locked=True)


class Conflict(CustodyError):
    """Duplicate or concurrent operation"""

    code = "conflict"


class ValidationError(CustodyError):
    """A required field is missing or malformed"""

    code = "validation_error"

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        if field:
            super().__init__(message, field=field)
        else:
            super().__init__(message)
        self.field = field


class Unauthorized(CustodyError):
    """Actor lacks the role for this operation (or tried to self-approve)"""

    code = "unauthorized"


class RateLimited(CustodyError):
    """Too many OTP challenges issued for the cheque in the rolling window"""

    code = "rate_limited"


class ServiceError(Exception):
    """Unexpected storage or transport fault"""

    code = "service_error"

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": "internal error, please retry later"}


class DeliveryError(ServiceError):
    """OTP could not be handed to the notification channel"""

    code = "delivery_error"
