from __future__ import annotations

from typing import Any, Dict

from gare.domain.results import ErrorKind, WorkflowError
from gare.ui_strings import error_message


class AppError(Exception):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True

    def __init__(
        self,
        code: str | None = None,
        message_key: str | None = None,
        http_status: int | None = None,
        critical: bool | None = None,
        details: str | None = None,
        payload: Dict[str, Any] | None = None,
    ) -> None:
        self.code = (code or self.default_code).strip()
        self.message_key = (message_key or self.default_message_key).strip()
        self.http_status = int(http_status or self.default_http_status)
        self.critical = bool(self.default_critical if critical is None else critical)
        self.details = (details or "").strip() or None
        self.payload = dict(payload or {})
        super().__init__(self.details or self.code)

    def user_message(self) -> str:
        fallback = error_message("unexpected_error", "Impossibile completare l'operazione.")
        return error_message(self.message_key, fallback)

    def to_response_payload(self, request_id: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.code,
            "message": self.user_message(),
            "request_id": request_id,
        }
        if self.payload:
            payload.update(self.payload)
        return payload


class UserActionError(AppError):
    default_code = "action_invalid"
    default_message_key = "invalid_transition"
    default_http_status = 409
    default_critical = False


class ValidationError(UserActionError):
    default_code = "validation_error"
    default_message_key = "validation_failed"
    default_http_status = 400
    default_critical = False


class NotFoundError(UserActionError):
    default_code = "not_found"
    default_message_key = "not_found"
    default_http_status = 404
    default_critical = False


class ConflictError(UserActionError):
    default_code = "conflict"
    default_message_key = "concurrency_conflict"
    default_http_status = 409
    default_critical = False


class ConcurrencyConflictError(ConflictError):
    """Raised by repositories when the stored version no longer matches the caller's copy."""

    default_code = "concurrency_conflict"

    def __init__(self, entity: str, record_id: int | None, expected_version: int | None) -> None:
        self.entity = entity
        self.record_id = record_id
        self.expected_version = expected_version
        super().__init__(
            details=f"{entity}#{record_id} version {expected_version} is stale",
            payload={"entity": entity, "record_id": record_id, "retryable": True},
        )


class SystemError(AppError):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True


_KIND_TO_ERROR: Dict[ErrorKind, type[AppError]] = {
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.INVALID_TRANSITION: UserActionError,
    ErrorKind.EVALUATION_NOT_READY: UserActionError,
    ErrorKind.ALREADY_CLOSED: UserActionError,
    ErrorKind.INVALID_PARTICIPANT_STATE: UserActionError,
    ErrorKind.CONCURRENCY_CONFLICT: ConflictError,
    ErrorKind.RATIONALE_REQUIRED: ValidationError,
    ErrorKind.EMPTY_REASON: ValidationError,
    ErrorKind.RESPONSE_REQUIRED: ValidationError,
    ErrorKind.VALIDATION_FAILED: ValidationError,
}


def app_error_from_workflow(error: WorkflowError) -> AppError:
    error_cls = _KIND_TO_ERROR.get(error.kind, ValidationError)
    payload: Dict[str, Any] = {"kind": error.kind.value, "details": dict(error.details)}
    if error.kind == ErrorKind.CONCURRENCY_CONFLICT:
        payload["retryable"] = True
    return error_cls(
        code=error.kind.value,
        message_key=error.message_key,
        payload=payload,
    )
