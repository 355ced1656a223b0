from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    """Base for errors that carry a kind tag across the worker and HTTP edge.

    ``kind`` is recorded on failed jobs as ``last_error.kind``; ``transient``
    decides whether the worker retries with backoff or fails immediately.
    """

    kind = "InternalError"
    transient = False
    status_code = 500

    def __init__(self, message: str = "", **details: Any) -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.details = details


class ScopeMissing(PipelineError):
    kind = "ScopeMissing"
    status_code = 400


class ScopeInvalid(PipelineError):
    kind = "ScopeInvalid"
    status_code = 404


class Forbidden(PipelineError):
    kind = "Forbidden"
    status_code = 403


class ValidationError(PipelineError, ValueError):
    kind = "ValidationError"
    status_code = 400


class NotFound(ValidationError):
    status_code = 404


class TemplateVariableUnresolved(PipelineError):
    kind = "TemplateVariableUnresolved"
    status_code = 422

    def __init__(self, message: str = "", missing: list[str] | None = None) -> None:
        super().__init__(message or "unresolved: " + ", ".join(missing or []))
        self.missing = list(missing or [])


class ParseFailure(PipelineError):
    kind = "ParseFailure"
    status_code = 422

    def __init__(self, message: str = "", is_truncated: bool = False) -> None:
        super().__init__(message)
        self.is_truncated = is_truncated


class TransientUpstream(PipelineError):
    kind = "TransientUpstream"
    transient = True
    status_code = 502

    def __init__(self, message: str = "", stop_reason: str = "error") -> None:
        super().__init__(message)
        self.stop_reason = stop_reason


class Conflict(PipelineError):
    kind = "Conflict"
    transient = True
    status_code = 409


class QuotaExceeded(PipelineError):
    kind = "QuotaExceeded"
    status_code = 429


class JobCancelled(PipelineError):
    kind = "Cancelled"


def error_kind(exc: BaseException) -> str:
    if isinstance(exc, PipelineError):
        return exc.kind
    return "InternalError"


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, PipelineError):
        return exc.transient
    return True


def error_payload(exc: PipelineError) -> dict[str, Any]:
    return {"error": exc.kind, "message": exc.message, "code": exc.status_code}
