"""Translate honest broker exceptions into HTTP errors."""
from __future__ import annotations

from fastapi import HTTPException

from honest_broker.errors import (
    AuthError,
    BackupError,
    BrokerAlreadyExistsError,
    BrokerDisabledError,
    BrokerNotFoundError,
    ConfigurationError,
    ConfirmationRequiredError,
    ConflictError,
    HonestBrokerError,
    InvalidInputError,
    LookupTimeoutError,
    RemoteLookupError,
    ScriptError,
)

# First match wins, so subclasses must precede their bases.
_STATUS_BY_ERROR: tuple[tuple[type[HonestBrokerError], int], ...] = (
    (BrokerNotFoundError, 404),
    (BrokerDisabledError, 409),
    (BrokerAlreadyExistsError, 409),
    (ConflictError, 409),
    (InvalidInputError, 400),
    (ConfigurationError, 400),
    (ConfirmationRequiredError, 400),
    (ScriptError, 422),
    (AuthError, 502),
    (RemoteLookupError, 502),
    (LookupTimeoutError, 504),
)

_CLIENT_BACKUP_PATTERNS = ("not found", "invalid", "only supported")


def status_for(exc: HonestBrokerError) -> int:
    if isinstance(exc, BackupError):
        message = str(exc).lower()
        if any(pattern in message for pattern in _CLIENT_BACKUP_PATTERNS):
            return 400
        return 500
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return code
    return 500


def to_http_exception(exc: HonestBrokerError) -> HTTPException:
    """Build an ``HTTPException`` whose detail carries the error kind and message."""

    return HTTPException(status_code=status_for(exc), detail={"error": exc.kind, "message": str(exc)})
