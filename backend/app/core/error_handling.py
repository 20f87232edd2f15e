"""Error handling utilities: error taxonomy, structured logging and response envelopes."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)


class EngineError(Exception):
    """Base class for errors surfaced to API callers with a status code."""

    status_code = 500
    error_code = "ENGINE_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(EngineError):
    """Missing or malformed required fields. `details` maps field -> problem."""

    status_code = 400
    error_code = "VALIDATION_ERROR"


class NotFoundError(EngineError):
    """Referenced session, entity, mapping or execution does not exist."""

    status_code = 404
    error_code = "NOT_FOUND"


class InvalidStateError(EngineError):
    """State-machine transition attempted from the wrong phase."""

    status_code = 409
    error_code = "INVALID_STATE"


class ConcurrencyError(EngineError):
    """A whole-document write lost the optimistic version check."""

    status_code = 409
    error_code = "CONCURRENT_MODIFICATION"


class DatabaseError(EngineError):
    """Persistence failure. Wraps the original cause."""

    status_code = 500
    error_code = "DATABASE_ERROR"

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, details)
        self.cause = cause


def require_fields(values: dict[str, Any]) -> None:
    """Raise ValidationError listing every field whose value is missing or blank."""
    missing = {
        name: "required"
        for name, value in values.items()
        if value is None or (isinstance(value, str) and not value.strip())
    }
    if missing:
        raise ValidationError(
            f"Missing required field(s): {', '.join(sorted(missing))}",
            details=missing,
        )


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def log_error_with_context(
    error: Exception,
    node_name: str,
    session_id: str | None = None,
    execution_id: str | None = None,
    operation: str | None = None,
    extra_context: dict[str, Any] | None = None,
) -> None:
    """
    Log an error with full context: session_id, execution_id, operation and stack trace.

    Args:
        error: The exception that occurred
        node_name: Component where it happened (e.g., 'entity_pool', 'exploration')
        session_id: Session ID for context
        execution_id: Exploration execution ID for context
        operation: Operation or route path (e.g., 'upsert_entity')
        extra_context: Additional context dict to include in log
    """
    context_parts = []
    if session_id:
        context_parts.append(f"session_id={session_id}")
    if execution_id:
        context_parts.append(f"execution_id={execution_id}")
    if operation:
        context_parts.append(f"operation={operation}")
    context_str = ", ".join(context_parts) if context_parts else "no context"

    extra = {}
    if extra_context:
        extra.update(extra_context)
    if session_id:
        extra["session_id"] = session_id
    if execution_id:
        extra["execution_id"] = execution_id
    if operation:
        extra["operation"] = operation
    extra["node_name"] = node_name

    logger.error(
        f"[{node_name}] Error: {type(error).__name__}: {str(error)} ({context_str})",
        exc_info=True,
        extra=extra,
    )


def create_error_response(
    error_code: str,
    message: str,
    node: str | None = None,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Create the error envelope for API endpoints.

    Args:
        error_code: Error code (e.g., 'VALIDATION_ERROR', 'INVALID_STATE')
        message: Human-readable error message
        node: Component where the error occurred
        details: Additional error details

    Returns:
        {"success": False, "error": {...}, "timestamp": ...}
    """
    error: dict[str, Any] = {
        "error_code": error_code,
        "message": message,
    }
    if node:
        error["node"] = node
    if details:
        error["details"] = details
    return {"success": False, "error": error, "timestamp": utc_now_iso()}


def create_success_response(data: Any = None) -> dict[str, Any]:
    """Wrap a payload in the success envelope."""
    return {"success": True, "data": data, "timestamp": utc_now_iso()}
