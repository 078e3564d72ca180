"""Exception taxonomy shared by the cache, the store adapter, and the BLL."""

from __future__ import annotations

from typing import Optional


class StudioError(Exception):
    """Base class for every error raised deliberately by Studio ERP."""


class TenantScopeError(StudioError):
    """Raised when an operation runs without an active team or crosses teams.

    This is a programming error: callers must never catch it to carry on.
    """


class BusinessRuleViolation(StudioError):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced record id is unknown to the cache."""


class PermissionDeniedError(BusinessRuleViolation):
    """Raised when the signed-in role may not perform the operation."""


class RemoteStoreError(StudioError):
    """Raised when the system-of-record store rejects or fails a call."""

    def __init__(self, message: str, *, collection: Optional[str] = None) -> None:
        super().__init__(message)
        self.collection = collection


class PartialWriteError(RemoteStoreError):
    """Raised when a multi-step write fails after its first step succeeded.

    ``rolled_back`` tells the caller whether the compensating delete of the
    first step went through.
    """

    def __init__(self, message: str, *, collection: Optional[str] = None, rolled_back: bool) -> None:
        super().__init__(message, collection=collection)
        self.rolled_back = rolled_back
