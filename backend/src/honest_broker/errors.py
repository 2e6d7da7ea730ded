"""Exceptions raised by the honest broker subsystem."""

from __future__ import annotations

from typing import Optional


class HonestBrokerError(Exception):
    """Base exception for broker, crosswalk and lookup failures."""

    @property
    def kind(self) -> str:
        return type(self).__name__


class ConfigurationError(HonestBrokerError):
    """Raised when a broker configuration is missing, invalid or unsupported."""


class InvalidInputError(HonestBrokerError):
    """Raised when an identifier is empty or malformed."""


class ScriptError(HonestBrokerError):
    """Base class for lookup-script sandbox failures."""


class ScriptExecutionError(ScriptError):
    """Raised when a lookup script raises, times out or cannot be run."""


class ScriptOutputError(ScriptError):
    """Raised when a lookup script returns an empty or non-string value."""


class ConflictError(HonestBrokerError):
    """Raised when a crosswalk key already maps to a different surrogate."""

    def __init__(self, broker_name: str, id_type: str, id_in: str, existing: str, attempted: str) -> None:
        self.broker_name = broker_name
        self.id_type = id_type
        self.id_in = id_in
        self.existing = existing
        self.attempted = attempted
        super().__init__(
            f"Crosswalk entry for broker '{broker_name}' ({id_type}) already maps to a different value"
        )


class AuthError(HonestBrokerError):
    """Raised when the security token service rejects the configured credentials."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class RemoteLookupError(HonestBrokerError):
    """Raised when the remote lookup API fails after retries."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class LookupTimeoutError(HonestBrokerError, TimeoutError):
    """Raised when a lookup exceeds its deadline before a mapping is committed."""


class BrokerNotFoundError(HonestBrokerError):
    def __init__(self, broker_name: str) -> None:
        self.broker_name = broker_name
        super().__init__(f"Honest broker not found: {broker_name}")


class BrokerDisabledError(HonestBrokerError):
    def __init__(self, broker_name: str) -> None:
        self.broker_name = broker_name
        super().__init__(f"Honest broker is disabled: {broker_name}")


class BrokerAlreadyExistsError(HonestBrokerError):
    def __init__(self, broker_name: str) -> None:
        self.broker_name = broker_name
        super().__init__(f"Honest broker already exists: {broker_name}")


class ConfirmationRequiredError(HonestBrokerError):
    """Raised when a destructive operation is requested without explicit confirmation."""


class BackupError(HonestBrokerError):
    """Raised when a crosswalk backup or restore operation fails."""
