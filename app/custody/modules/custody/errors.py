"""
Custody error taxonomy.

Every failure the engine can report has an ErrorKind and belongs to one
ErrorCategory. Only contention and storage failures are safe to retry.
"""
from __future__ import annotations

from enum import Enum


class ErrorCategory(str, Enum):
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    CONTENTION = "contention"
    FORBIDDEN = "forbidden"
    INVALID = "invalid"
    STORAGE = "storage"
    INTERNAL = "internal"


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    INVALID_LOCATION = "invalid_location"
    INVALID_ACTOR = "invalid_actor"
    INVALID_REQUEST = "invalid_request"
    DUPLICATE_CODE = "duplicate_code"
    DUPLICATE_TAG = "duplicate_tag"
    INVALID_TRANSITION = "invalid_transition"
    VERSION_CONFLICT = "version_conflict"
    LOCK_TIMEOUT = "lock_timeout"
    FORBIDDEN = "forbidden"
    STORAGE_UNAVAILABLE = "storage_unavailable"
    SEQUENCE_CONFLICT = "sequence_conflict"


class CustodyError(Exception):
    kind: ErrorKind = ErrorKind.INVALID_REQUEST
    category: ErrorCategory = ErrorCategory.INVALID

    def __init__(self, message: str, *, object_code: str | None = None):
        super().__init__(message)
        self.message = message
        self.object_code = object_code

    @property
    def retriable(self) -> bool:
        return self.category in (ErrorCategory.CONTENTION, ErrorCategory.STORAGE)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "category": self.category.value,
            "message": self.message,
            "object_code": self.object_code,
            "retriable": self.retriable,
        }


class InvalidRequest(CustodyError):
    kind = ErrorKind.INVALID_REQUEST
    category = ErrorCategory.INVALID


class NotFound(CustodyError):
    kind = ErrorKind.NOT_FOUND
    category = ErrorCategory.NOT_FOUND


class InvalidLocation(CustodyError):
    kind = ErrorKind.INVALID_LOCATION
    category = ErrorCategory.NOT_FOUND


class InvalidActor(CustodyError):
    kind = ErrorKind.INVALID_ACTOR
    category = ErrorCategory.NOT_FOUND


class DuplicateCode(CustodyError):
    kind = ErrorKind.DUPLICATE_CODE
    category = ErrorCategory.CONFLICT


class DuplicateTag(CustodyError):
    kind = ErrorKind.DUPLICATE_TAG
    category = ErrorCategory.CONFLICT


class InvalidTransition(CustodyError):
    kind = ErrorKind.INVALID_TRANSITION
    category = ErrorCategory.CONFLICT


class VersionConflict(CustodyError):
    kind = ErrorKind.VERSION_CONFLICT
    category = ErrorCategory.CONFLICT


class LockTimeout(CustodyError):
    kind = ErrorKind.LOCK_TIMEOUT
    category = ErrorCategory.CONTENTION


class Forbidden(CustodyError):
    kind = ErrorKind.FORBIDDEN
    category = ErrorCategory.FORBIDDEN


class StorageUnavailable(CustodyError):
    kind = ErrorKind.STORAGE_UNAVAILABLE
    category = ErrorCategory.STORAGE


class SequenceConflict(CustodyError):
    """Two appends claimed the same sequence number: the guard was bypassed."""

    kind = ErrorKind.SEQUENCE_CONFLICT
    category = ErrorCategory.INTERNAL
