"""Typed outcomes returned by the lifecycle, policy, and permission services."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

from incidentdesk.models.audit_entries import AuditEntry

SubjectT = TypeVar("SubjectT")


class ErrorKind(str, Enum):
    """Reasons a mutation did not happen."""

    FORBIDDEN = "forbidden"
    TERMINAL_STATE = "terminal_state"
    NOOP = "noop"
    CONFLICT_DETECTED = "conflict_detected"
    PERSISTENCE_UNAVAILABLE = "persistence_unavailable"
    VALIDATION_FAILED = "validation_failed"

    @property
    def retryable(self) -> bool:
        return self in {ErrorKind.CONFLICT_DETECTED, ErrorKind.PERSISTENCE_UNAVAILABLE}


class PersistenceUnavailableError(RuntimeError):
    """Raised when the backing store rejects or cannot complete a write."""


@dataclass(frozen=True)
class MutationResult(Generic[SubjectT]):
    """Result of a guarded mutation.

    ``subject`` is the post-mutation snapshot on success, or the unchanged
    snapshot on ``NOOP``/rejection; after a rolled-back write it is detached
    from the session. ``audit_entry`` is set only when a change was recorded.
    """

    subject: SubjectT
    error: ErrorKind | None = None
    message: str = ""
    audit_entry: AuditEntry | None = None

    @property
    def changed(self) -> bool:
        return self.error is None

    @property
    def ok(self) -> bool:
        # NOOP means "already satisfied", never a user-facing failure.
        return self.error is None or self.error == ErrorKind.NOOP

    @classmethod
    def success(
        cls,
        subject: SubjectT,
        *,
        audit_entry: AuditEntry | None = None,
    ) -> MutationResult[SubjectT]:
        return cls(subject=subject, audit_entry=audit_entry)

    @classmethod
    def rejected(
        cls,
        subject: SubjectT,
        error: ErrorKind,
        message: str = "",
    ) -> MutationResult[SubjectT]:
        return cls(subject=subject, error=error, message=message)
