#!/usr/bin/env python
"""
Error taxonomy shared by the list service, the HTTP layer and the client.

Every error carries a ``kind`` (one of the four categories below), a short
machine ``code`` and the HTTP ``status`` the server maps it to.

    VALIDATION         bad input shape, duplicate name, locked year
    NOT_FOUND          list or entry identity no longer exists
    TRANSIENT_NETWORK  write or subscribe failed to reach the server
    CORRUPT_MESSAGE    a pushed payload could not be parsed
"""

from __future__ import annotations

from typing import Any, Dict, Optional

VALIDATION = "validation"
NOT_FOUND = "not_found"
TRANSIENT_NETWORK = "transient_network"
CORRUPT_MESSAGE = "corrupt_message"


class ListSyncError(Exception):
    kind = VALIDATION
    code = "error"
    status = 400

    def __init__(self, message: str, *, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.code,
            "kind": self.kind,
            "message": self.message,
        }
        if self.details:
            payload["details"] = self.details
        return payload

    def __str__(self) -> str:
        return self.message


class ValidationError(ListSyncError):
    kind = VALIDATION
    code = "invalid_request"
    status = 400


class DuplicateNameError(ValidationError):
    code = "duplicate_name"
    status = 409


class CredentialsError(ValidationError):
    code = "invalid_credentials"
    status = 401


class YearLockedError(ValidationError):
    """Raised when a structural write targets the main list of a locked year."""

    code = "year_locked"
    status = 403


class NotFoundError(ListSyncError):
    kind = NOT_FOUND
    code = "not_found"
    status = 404


class ListNotFoundError(NotFoundError):
    code = "list_not_found"


class EntryNotFoundError(NotFoundError):
    code = "entry_not_found"


class TransientNetworkError(ListSyncError):
    kind = TRANSIENT_NETWORK
    code = "network_error"
    status = 503


class CorruptMessageError(ListSyncError):
    kind = CORRUPT_MESSAGE
    code = "corrupt_message"
    status = 400


_BY_KIND = {
    VALIDATION: ValidationError,
    NOT_FOUND: NotFoundError,
    TRANSIENT_NETWORK: TransientNetworkError,
    CORRUPT_MESSAGE: CorruptMessageError,
}


def error_from_payload(status: int, payload: Optional[Dict[str, Any]]) -> ListSyncError:
    """Rebuild a taxonomy error from a JSON error body returned by the server."""
    payload = payload if isinstance(payload, dict) else {}
    message = str(payload.get("message") or payload.get("error") or f"HTTP {status}")
    code = payload.get("error")
    kind = payload.get("kind")
    if status == 404:
        cls = NotFoundError
    elif status == 403 and code == YearLockedError.code:
        cls = YearLockedError
    elif status == 401:
        cls = CredentialsError
    elif status == 409:
        cls = DuplicateNameError
    elif status >= 500:
        cls = TransientNetworkError
    else:
        cls = _BY_KIND.get(kind, ValidationError)
    err = cls(message, code=code, details=payload.get("details"))
    err.status = status
    return err


__all__ = [
    "VALIDATION",
    "NOT_FOUND",
    "TRANSIENT_NETWORK",
    "CORRUPT_MESSAGE",
    "ListSyncError",
    "ValidationError",
    "DuplicateNameError",
    "CredentialsError",
    "YearLockedError",
    "NotFoundError",
    "ListNotFoundError",
    "EntryNotFoundError",
    "TransientNetworkError",
    "CorruptMessageError",
    "error_from_payload",
]
