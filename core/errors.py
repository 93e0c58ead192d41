"""
core/errors.py -- Error taxonomy for the accounts service.

Every service-layer failure is an AccountError subclass carrying the HTTP
status it maps to and a stable machine-readable code. api/main.py installs a
single exception handler for AccountError, so route handlers never translate
errors by hand.

  ValidationError      400  validation_error   missing/malformed input
  AuthenticationError  401  unauthorized       bad credentials, bad token
  AuthorizationError   403  forbidden          inactive account
  NotFoundError        404  not_found
  ConflictError        409  conflict           duplicate email/username
  RateLimitError       429  rate_limited       carries retry_after_seconds
  TransientStoreError  500  store_unavailable  store unreachable or timed out

InvalidToken is deliberately NOT an AccountError: the Token Issuer raises it
and each caller decides what it means (401 for authenticated routes, a silent
no-op for logout).

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

from __future__ import annotations


class AccountError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses."""

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(self, message: str, *, detail: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ValidationError(AccountError):
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(AccountError):
    status_code = 401
    error_code = "unauthorized"


class AuthorizationError(AccountError):
    status_code = 403
    error_code = "forbidden"


class NotFoundError(AccountError):
    status_code = 404
    error_code = "not_found"


class ConflictError(AccountError):
    status_code = 409
    error_code = "conflict"


class RateLimitError(AccountError):
    """Client exceeded its request quota. Not audited -- operational signal only."""

    status_code = 429
    error_code = "rate_limited"

    def __init__(self, retry_after_seconds: int, message: str = "Too many requests.") -> None:
        super().__init__(message, detail={"retryAfterSeconds": retry_after_seconds})
        self.retry_after_seconds = retry_after_seconds


class TransientStoreError(AccountError):
    """Store unreachable or timed out. Not retried here; the client may retry."""

    status_code = 500
    error_code = "store_unavailable"


class InvalidToken(Exception):
    """Bearer token is malformed, carries a bad signature, or has expired."""
