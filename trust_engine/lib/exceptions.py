"""
Exception hierarchy for the Trust & Compliance Engine.

Every error raised by the engine inherits from TrustEngineError so callers
can catch engine failures as a group and still tell the specific cases apart.

Two families:
- Caller-facing (ValidationError, NotFoundError, ConsentMissingError,
  PrivacyDisabledError, ...): carry a precise message meant for the caller.
- Internal (CryptoOperationError, IntegrityError, StorageError): the full
  cause is logged where it happens, and the caller only sees a generic
  ``public_message``.

``build_error_response`` projects any exception into the structured error
dict that a transport layer hands back to clients.

References:
    - Data-handling error taxonomy (crypto, storage, consent, privacy)
"""

from __future__ import annotations

from typing import Any

# =============================================================================
# Error Code Constants
# =============================================================================

VALIDATION_ERROR = "VALIDATION_ERROR"
NOT_FOUND = "NOT_FOUND"
CONSENT_REQUIRED = "CONSENT_REQUIRED"
PRIVACY_DISABLED = "PRIVACY_DISABLED"
INTEGRITY_ERROR = "INTEGRITY_ERROR"
CRYPTO_ERROR = "CRYPTO_ERROR"
STORAGE_ERROR = "STORAGE_ERROR"
CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
INVALID_STATE = "INVALID_STATE"
IMMUTABLE_RECORD = "IMMUTABLE_RECORD"
JOB_TIMEOUT = "JOB_TIMEOUT"
ACCESS_BLOCKED = "ACCESS_BLOCKED"
INTERNAL_ERROR = "INTERNAL_ERROR"


# =============================================================================
# Exception Classes
# =============================================================================


class TrustEngineError(Exception):
    """Base exception for all Trust & Compliance Engine errors."""

    code: str = INTERNAL_ERROR
    generic_message: str | None = None

    @property
    def public_message(self) -> str:
        """Message that is safe to show outside the process."""
        if self.generic_message is not None:
            return self.generic_message
        return str(self) or self.__class__.__name__


class ConfigurationError(TrustEngineError):
    """Missing environment variables, invalid config values, or missing master secret."""

    code = CONFIGURATION_ERROR


class ValidationError(TrustEngineError):
    """Input rejected before any state was touched (e.g. retention days < 1)."""

    code = VALIDATION_ERROR


class NotFoundError(TrustEngineError):
    """Referenced user, request, policy or pattern does not exist."""

    code = NOT_FOUND


class ConsentMissingError(TrustEngineError):
    """A processing action requires a consent type the user has not granted."""

    code = CONSENT_REQUIRED

    def __init__(self, consent_type: str, action: str | None = None) -> None:
        self.consent_type = str(consent_type)
        self.action = str(action) if action is not None else None
        message = f"Consent required: {self.consent_type}"
        if self.action:
            message += f" (action: {self.action})"
        super().__init__(message)


class PrivacyDisabledError(TrustEngineError):
    """The user's privacy settings disable the requested operation."""

    code = PRIVACY_DISABLED

    def __init__(self, operation: str, message: str | None = None) -> None:
        self.operation = str(operation)
        super().__init__(message or f"Operation disabled by privacy settings: {self.operation}")


class CryptoOperationError(TrustEngineError):
    """Encryption, decryption or key derivation failed. Internals stay in the logs."""

    code = CRYPTO_ERROR
    generic_message = "Cryptographic operation failed"


class IntegrityError(CryptoOperationError):
    """Authentication tag or associated data did not verify."""

    code = INTEGRITY_ERROR
    generic_message = "Data integrity check failed"


class StorageError(TrustEngineError):
    """Transient persistence failure."""

    code = STORAGE_ERROR
    generic_message = "Storage operation failed"


class InvalidStateTransitionError(TrustEngineError):
    """Export/delete request state machine was asked for an illegal move."""

    code = INVALID_STATE


class ImmutableRecordError(TrustEngineError):
    """Attempt to modify a record that is append-only."""

    code = IMMUTABLE_RECORD


class JobTimeoutError(TrustEngineError):
    """A poller gave up waiting for a background request."""

    code = JOB_TIMEOUT


class AccessBlockedError(TrustEngineError):
    """User is temporarily restricted because of a high risk score."""

    code = ACCESS_BLOCKED
    generic_message = (
        "Account temporarily restricted due to suspicious activity. Please contact support."
    )


# =============================================================================
# Error Response Builder
# =============================================================================


def build_error_response(exc: BaseException) -> dict[str, Any]:
    """
    Build a structured error dict for a raised exception.

    Engine errors keep their code. Crypto and storage failures only expose
    their generic message. Anything else becomes INTERNAL_ERROR.

    Args:
        exc: The exception to project

    Returns:
        {"code": str, "message": str, "details": dict} (details only when useful)
    """
    if not isinstance(exc, TrustEngineError):
        return {"code": INTERNAL_ERROR, "message": "An internal error occurred. Please try again."}

    error: dict[str, Any] = {"code": exc.code, "message": exc.public_message}
    if isinstance(exc, ConsentMissingError):
        error["details"] = {"consentType": exc.consent_type, "action": exc.action}
    elif isinstance(exc, PrivacyDisabledError):
        error["details"] = {"operation": exc.operation}
    return error
