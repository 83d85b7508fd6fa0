from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    DATA = "data"
    INTEGRITY = "integrity"
    CONFIGURATION = "configuration"


class ReminderEngineError(Exception):
    """Base error carrying the kind assigned where the failure originated."""

    def __init__(self, kind: ErrorKind, code: str, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.code = code
        self.message = message

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.TRANSIENT


class RemoteSourceError(ReminderEngineError):
    """Raised when the accounting API cannot serve a page of records."""


class SendError(ReminderEngineError):
    """Raised by a channel sender when a dispatch is not accepted."""

    @property
    def retryable(self) -> bool:
        # Provider outages and credential problems clear up; a bad number does not.
        return self.kind is not ErrorKind.DATA


class PolicyConfigMissingError(ReminderEngineError, KeyError):
    """Raised when an owner has no reminder policy configured."""

    def __init__(self, owner_id: str) -> None:
        super().__init__(
            ErrorKind.CONFIGURATION,
            "policy_config_missing",
            f"no reminder policy configured for owner {owner_id}",
        )
        self.owner_id = owner_id

    def __str__(self) -> str:
        return self.message


class CachedRecordNotFoundError(KeyError):
    """Raised when a cached customer, invoice or reminder does not exist."""
