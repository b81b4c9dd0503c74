from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, TypeVar


T = TypeVar("T")


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"
    EVALUATION_NOT_READY = "evaluation_not_ready"
    RATIONALE_REQUIRED = "rationale_required"
    EMPTY_REASON = "empty_reason"
    ALREADY_CLOSED = "already_closed"
    RESPONSE_REQUIRED = "response_required"
    INVALID_PARTICIPANT_STATE = "invalid_participant_state"
    CONCURRENCY_CONFLICT = "concurrency_conflict"
    VALIDATION_FAILED = "validation_failed"


@dataclass(frozen=True)
class WorkflowError:
    kind: ErrorKind
    message_key: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message_key": self.message_key,
            "details": dict(self.details),
        }


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of a business operation: either a value or a WorkflowError."""

    value: T | None = None
    error: WorkflowError | None = None

    @property
    def is_ok(self) -> bool:
        return self.error is None

    @classmethod
    def ok(cls, value: T | None = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def fail(cls, kind: ErrorKind, message_key: str | None = None, **details: Any) -> "Result[T]":
        return cls(error=WorkflowError(kind=kind, message_key=message_key or kind.value, details=details))

    @classmethod
    def from_error(cls, error: WorkflowError) -> "Result[T]":
        return cls(error=error)
