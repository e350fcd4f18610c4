from __future__ import annotations

from datetime import datetime
from typing import Iterable


class AuthError(Exception):
    """Base class for every outcome the credential engine reports to callers.

    Messages are fixed, user-safe strings. Nothing from an underlying library
    exception is ever copied into them.
    """

    status_code: int = 400
    code: str = "auth_error"
    default_message: str = "Authentication request failed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_payload(self) -> dict[str, object]:
        return {"success": False, "code": self.code, "message": self.message}


class InvalidInput(AuthError):
    status_code = 400
    code = "invalid_input"
    default_message = "Invalid request data."


class InvalidPinFormat(InvalidInput):
    code = "invalid_pin_format"
    default_message = "MPIN must be exactly 4 or 6 digits."


class InvalidCiphertext(InvalidInput):
    code = "invalid_ciphertext"
    default_message = "Invalid encrypted data."


class DecryptionError(AuthError):
    status_code = 400
    code = "decryption_error"
    default_message = "Invalid encrypted data."


class AlreadyRegistered(AuthError):
    status_code = 409
    code = "already_registered"
    default_message = "User already registered. Please login instead."


class NotFound(AuthError):
    # Existence is disclosed on purpose: login requires prior registration.
    status_code = 404
    code = "not_found"
    default_message = "User not found. Please register first."


class AccountLocked(AuthError):
    status_code = 423
    code = "account_locked"
    default_message = "Account locked due to too many failed attempts."

    def __init__(self, until: datetime) -> None:
        self.until = until
        super().__init__(f"{self.default_message} Try again after {until.isoformat()}.")

    def to_payload(self) -> dict[str, object]:
        payload = super().to_payload()
        payload["lockedUntil"] = self.until.isoformat()
        return payload


class RiskBlocked(AuthError):
    status_code = 403
    code = "fraud_detected"
    default_message = "Suspicious activity detected. Please verify via OTP again."
    require_otp_reverify = True

    def __init__(self, flags: Iterable[str], score: int) -> None:
        self.flags = sorted(str(flag) for flag in flags)
        self.score = score
        super().__init__()

    def to_payload(self) -> dict[str, object]:
        payload = super().to_payload()
        payload["requireOtpReverify"] = self.require_otp_reverify
        payload["riskFlags"] = list(self.flags)
        return payload


class WrongCredential(AuthError):
    status_code = 401
    code = "wrong_mpin"

    def __init__(self, attempts_remaining: int) -> None:
        self.attempts_remaining = attempts_remaining
        if attempts_remaining > 0:
            message = f"Incorrect MPIN. {attempts_remaining} attempts remaining."
        else:
            message = "Incorrect MPIN. Account has been locked."
        super().__init__(message)

    def to_payload(self) -> dict[str, object]:
        payload = super().to_payload()
        payload["attemptsRemaining"] = self.attempts_remaining
        return payload


class StorageUnavailable(AuthError):
    """Raised when the identity or attempt store cannot serve a request."""

    status_code = 503
    code = "storage_unavailable"
    default_message = "Service temporarily unavailable. Please retry later."
