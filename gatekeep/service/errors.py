from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``.
    The ``message`` is the short human-readable text shown to the caller, and
    is stable per failure branch so clients can tell causes apart:
    - validation_error (400)
    - unauthorized (401)
    - not_found (404)
    - expired (410)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Input failed schema validation (400)."""
    status_code = 400
    error_code = "validation_error"


class UnauthorizedError(ServiceError):
    """Credentials rejected, email unverified or two-factor unconfirmed (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Token or user absent (404)."""
    status_code = 404
    error_code = "not_found"


class ExpiredError(ServiceError):
    """Token present but past its expiry (410)."""
    status_code = 410
    error_code = "expired"


class TransactionError(ServiceError):
    """The store failed part-way through an atomic operation (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "UnauthorizedError",
    "NotFoundError",
    "ExpiredError",
    "TransactionError",
]
