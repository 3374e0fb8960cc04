"""Custom exceptions for domain-specific errors"""

from typing import Any, Dict, Optional


class DomainException(Exception):
    """Base exception for all domain errors"""

    code = "DOMAIN_ERROR"
    retryable = False

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        *,
        code: Optional[str] = None,
        retryable: Optional[bool] = None,
        suggestion: Optional[str] = None,
        field: Optional[str] = None,
    ):
        self.message = message
        self.details = details or {}
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable
        self.suggestion = suggestion
        self.field = field
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Structured failure for logs, events and API responses"""
        return {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "suggestion": self.suggestion,
            "field": self.field,
            "details": self.details,
        }


# Validation Errors
class ValidationError(DomainException):
    """Raised when input validation fails"""

    code = "VALIDATION_ERROR"

    def __init__(
        self,
        field: str,
        message: str,
        suggestion: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message,
            details={"field": field, **(details or {})},
            suggestion=suggestion or "Please correct the value and try again.",
            field=field,
        )


class RequiredFieldError(ValidationError):
    """Raised when a structurally required field is missing"""

    code = "VALIDATION_REQUIRED_FIELD"

    def __init__(self, field: str, suggestion: Optional[str] = None):
        super().__init__(
            field,
            f"{field} is required",
            suggestion=suggestion or f"Please provide {field}.",
        )


class OwnershipError(ValidationError):
    """Raised when shareholder ownership does not add up"""

    code = "OWNERSHIP_TOTAL_INVALID"

    def __init__(self, total: float, message: Optional[str] = None):
        self.total = total
        super().__init__(
            "shareholders",
            message or f"Total ownership must equal 100% (currently {total:g}%)",
            suggestion="Adjust ownership percentages so they add up to exactly 100%.",
            details={"total_ownership": total},
        )


# Session Errors
class SessionNotFoundError(DomainException):
    """Raised when session does not exist"""

    code = "SESSION_NOT_FOUND"

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(
            f"Session {session_id} not found",
            details={"session_id": session_id},
            suggestion="Start a new formation session.",
        )


class SessionExpiredError(DomainException):
    """Raised when session is past its expiry"""

    code = "SESSION_EXPIRED"

    def __init__(self, session_id: str, expired_at: Any = None):
        self.session_id = session_id
        super().__init__(
            f"Session {session_id} has expired",
            details={"session_id": session_id, "expired_at": str(expired_at) if expired_at else None},
            suggestion="Your session has expired. Please start a new formation.",
        )


class InvalidStateError(DomainException):
    """Raised when an operation is attempted out of workflow order"""

    code = "SESSION_INVALID_STATE"


class InvalidTransitionError(InvalidStateError):
    """Raised when a step transition is not allowed"""

    code = "INVALID_TRANSITION"

    def __init__(self, current_step: str, target_step: str, reason: Optional[str] = None):
        self.current_step = current_step
        self.target_step = target_step
        super().__init__(
            reason or f"Cannot move from {current_step} to {target_step}",
            details={"current_step": current_step, "target_step": target_step},
            suggestion="Complete the current step before moving on.",
        )


# External Service Errors
class ExternalServiceError(DomainException):
    """Raised when external service call fails"""

    code = "API_ERROR"

    def __init__(
        self,
        service: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ):
        self.service = service
        super().__init__(message, details={"service": service, **(details or {})}, **kwargs)


class CollaboratorTransientError(ExternalServiceError):
    """Raised for network errors, 5xx, 429 and 408 once retries are exhausted"""

    code = "API_UNAVAILABLE"
    retryable = True

    def __init__(self, service: str, message: str, status_code: Optional[int] = None, **kwargs: Any):
        self.status_code = status_code
        kwargs.setdefault("suggestion", "The service is temporarily unavailable. Please try again in a moment.")
        super().__init__(service, message, details={"status_code": status_code}, **kwargs)


class CollaboratorRejectedError(ExternalServiceError):
    """Raised when a collaborator rejects the request (non-retryable 4xx or success=false)"""

    code = "API_REJECTED"

    def __init__(
        self,
        service: str,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        **kwargs: Any,
    ):
        self.status_code = status_code
        self.error_code = error_code
        kwargs.setdefault("suggestion", "Please review the submitted information and try again.")
        super().__init__(
            service,
            message,
            details={"status_code": status_code, "error_code": error_code},
            **kwargs,
        )


class CollaboratorResponseError(ExternalServiceError):
    """Raised when a collaborator answers with a malformed payload"""

    code = "API_INVALID_RESPONSE"


# Payment Errors
class AmountMismatchError(DomainException):
    """Raised when a payment amount disagrees with the computed cost"""

    code = "PAYMENT_AMOUNT_MISMATCH"

    def __init__(self, expected: Any, actual: Any):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Payment amount {actual} does not match the expected total {expected}",
            details={"expected": str(expected), "actual": str(actual)},
            suggestion="Request a new quote and pay the exact total.",
        )


# Certificate Errors
class CertificateError(DomainException):
    """Base exception for certificate generation and review"""

    code = "CERTIFICATE_ERROR"


class CertificateExpiredError(CertificateError):
    """Raised when the certificate download link has expired"""

    code = "CERTIFICATE_URL_EXPIRED"

    def __init__(self, certificate_id: str):
        super().__init__(
            f"Certificate {certificate_id} has expired",
            details={"certificate_id": certificate_id},
            suggestion="Generate a new certificate to review.",
        )


class ReviewTimeoutError(CertificateError):
    """Raised when the certificate review deadline elapses"""

    code = "CERTIFICATE_REVIEW_TIMEOUT"

    def __init__(self, deadline_seconds: float):
        super().__init__(
            f"Certificate review was not completed within {deadline_seconds:g} seconds",
            details={"deadline_seconds": deadline_seconds},
            suggestion="Start the certificate review again when you are ready.",
        )


# Storage Errors
class SessionStorageError(DomainException):
    """Raised when the session backend fails"""

    code = "STORAGE_ERROR"
    retryable = True


class BackupNotFoundError(SessionStorageError):
    """Raised when a backup does not exist"""

    code = "BACKUP_NOT_FOUND"
    retryable = False


class BackupCorruptedError(SessionStorageError):
    """Raised when a backup fails checksum verification"""

    code = "BACKUP_CORRUPTED"
    retryable = False


class UnencryptedRecordError(SessionStorageError):
    """Raised when a persisted record holds sensitive data in plaintext"""

    code = "UNENCRYPTED_RECORD"
    retryable = False
