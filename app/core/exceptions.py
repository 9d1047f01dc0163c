"""Custom exceptions and FastAPI exception handlers.

Implements RFC 7807 Problem Details for machine-readable error responses.

Taxonomy of the KPI engine:

- ``InvalidFilterError``: caller bug (contradictory or malformed filter);
  raised before any data-store call, never retried.
- ``AggregationError``: transient data-store failure or timeout; safe to
  retry with backoff above the engine.
- ``CacheError``: cache backend failure; always swallowed by the result cache.
- ``PartialComparisonError``: one or more entities failed in a multi-entity
  comparison; reported per entity next to the successes.
"""

from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError

from app.core.logging import get_logger
from app.core.problem_details import (
    ERROR_TYPES,
    ProblemDetailResponse,
    problem_response,
)

logger = get_logger(__name__)


# =============================================================================
# Exception Classes
# =============================================================================


class PharmaKpiError(Exception):
    """Base exception for PharmaKPI application errors.

    All application-specific exceptions should inherit from this class.
    Each exception type maps to an RFC 7807 problem type URI.
    """

    error_type_uri: str = ERROR_TYPES["INTERNAL_ERROR"]
    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        status_code: int = 500,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize application error.

        Args:
            message: Human-readable error message.
            code: Machine-readable error code.
            status_code: HTTP status code.
            details: Additional error context.
        """
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}

    @property
    def title(self) -> str:
        """RFC 7807 title - short summary of problem type."""
        return self.code.replace("_", " ").title()


class NotFoundError(PharmaKpiError):
    """Resource not found error."""

    error_type_uri: str = ERROR_TYPES["NOT_FOUND"]

    def __init__(
        self,
        message: str = "Resource not found",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code="NOT_FOUND",
            status_code=404,
            details=details,
        )


class ValidationError(PharmaKpiError):
    """Input validation error."""

    error_type_uri: str = ERROR_TYPES["VALIDATION_ERROR"]

    def __init__(
        self,
        message: str = "Validation failed",
        details: dict[str, Any] | None = None,
        code: str = "VALIDATION_ERROR",
    ) -> None:
        super().__init__(
            message=message,
            code=code,
            status_code=422,
            details=details,
        )


class InvalidFilterError(ValidationError):
    """Contradictory or malformed filter specification.

    Raised by the predicate builder before any query is issued, e.g. when a
    dimension includes and excludes exactly the same members (the result
    would always be empty).
    """

    error_type_uri: str = ERROR_TYPES["INVALID_FILTER"]

    def __init__(
        self,
        message: str = "Invalid filter specification",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message=message, details=details, code="INVALID_FILTER")


class DatabaseError(PharmaKpiError):
    """Database operation error outside of KPI aggregation."""

    error_type_uri: str = ERROR_TYPES["DATABASE_ERROR"]

    def __init__(
        self,
        message: str = "Database operation failed",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code="DATABASE_ERROR",
            status_code=500,
            details=details,
        )


class AggregationError(PharmaKpiError):
    """Data-store failure or timeout while aggregating metrics.

    The engine never retries; callers may retry with backoff.
    """

    error_type_uri: str = ERROR_TYPES["AGGREGATION_ERROR"]
    retryable = True

    def __init__(
        self,
        message: str = "Metric aggregation failed",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code="AGGREGATION_ERROR",
            status_code=503,
            details=details,
        )


class CacheError(PharmaKpiError):
    """Cache backend failure. Never surfaced to API callers."""

    def __init__(
        self,
        message: str = "Cache operation failed",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code="CACHE_ERROR",
            status_code=500,
            details=details,
        )


class ConflictError(PharmaKpiError):
    """Resource conflict error."""

    error_type_uri: str = ERROR_TYPES["CONFLICT"]

    def __init__(
        self,
        message: str = "Resource conflict",
        details: dict[str, Any] | None = None,
        code: str = "CONFLICT",
    ) -> None:
        super().__init__(
            message=message,
            code=code,
            status_code=409,
            details=details,
        )


class ComparisonSupersededError(ConflictError):
    """A newer comparison was issued for the same slot."""

    error_type_uri: str = ERROR_TYPES["COMPARISON_SUPERSEDED"]

    def __init__(
        self,
        message: str = "Comparison superseded by a newer request",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message=message, details=details, code="COMPARISON_SUPERSEDED")


class PartialComparisonError(PharmaKpiError):
    """One or more entities failed in a multi-entity comparison.

    Carried alongside the successful results rather than raised to the
    API caller.
    """

    def __init__(
        self,
        failures: dict[str, PharmaKpiError],
        message: str | None = None,
    ) -> None:
        self.failures = failures
        super().__init__(
            message=message or f"{len(failures)} comparison entity pipeline(s) failed",
            code="PARTIAL_COMPARISON",
            status_code=200,
            details={
                entity_id: {"code": exc.code, "message": exc.message}
                for entity_id, exc in failures.items()
            },
        )


class ForbiddenError(PharmaKpiError):
    """Caller is not allowed to perform the operation."""

    error_type_uri: str = ERROR_TYPES["FORBIDDEN"]

    def __init__(
        self,
        message: str = "Forbidden",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code="FORBIDDEN",
            status_code=403,
            details=details,
        )


class BadRequestError(PharmaKpiError):
    """Bad request error."""

    error_type_uri: str = ERROR_TYPES["BAD_REQUEST"]

    def __init__(
        self,
        message: str = "Bad request",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code="BAD_REQUEST",
            status_code=400,
            details=details,
        )


# =============================================================================
# Exception Handlers (RFC 7807)
# =============================================================================


async def pharmakpi_exception_handler(
    _request: Request,
    exc: PharmaKpiError,
) -> ProblemDetailResponse:
    """Handle PharmaKpiError exceptions with RFC 7807 Problem Details.

    Args:
        _request: FastAPI request object.
        exc: The raised exception.

    Returns:
        RFC 7807 Problem Detail response.
    """
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "app.error_handled",
        error=exc.message,
        error_type=type(exc).__name__,
        error_code=exc.code,
        status_code=exc.status_code,
        details=exc.details,
        exc_info=exc.status_code >= 500,
    )

    return problem_response(
        status=exc.status_code,
        title=exc.title,
        detail=exc.message,
        error_code=exc.code,
        errors=[exc.details] if exc.details else None,
        retryable=exc.retryable,
    )


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> ProblemDetailResponse:
    """Handle Pydantic validation errors with RFC 7807 Problem Details.

    Args:
        request: FastAPI request object.
        exc: Pydantic validation error.

    Returns:
        RFC 7807 Problem Detail response with field-level errors.
    """
    field_errors: list[dict[str, str]] = []
    for error in exc.errors():
        loc = error.get("loc", [])
        field_path = ".".join(str(part) for part in loc if part != "body")
        field_errors.append(
            {
                "field": field_path,
                "message": str(error.get("msg", "Validation failed")),
                "type": str(error.get("type", "unknown")),
            }
        )

    logger.warning(
        "app.validation_error",
        error_count=len(field_errors),
        path=str(request.url.path),
        fields=[e["field"] for e in field_errors],
    )

    return problem_response(
        status=422,
        title="Validation Error",
        detail=f"Request validation failed with {len(field_errors)} error(s). "
        "Check the 'errors' field for details.",
        error_code="VALIDATION_ERROR",
        errors=field_errors,
    )


async def unhandled_exception_handler(
    request: Request,
    exc: Exception,
) -> ProblemDetailResponse:
    """Handle unexpected exceptions with RFC 7807 Problem Details.

    Args:
        request: FastAPI request object.
        exc: The raised exception.

    Returns:
        RFC 7807 Problem Detail response.
    """
    logger.error(
        "app.unhandled_error",
        error=str(exc),
        error_type=type(exc).__name__,
        path=str(request.url.path),
        exc_info=True,
    )

    return problem_response(
        status=500,
        title="Internal Server Error",
        detail="An unexpected error occurred. Please try again later or "
        "contact support with the request_id.",
        error_code="INTERNAL_ERROR",
    )


# =============================================================================
# Handler Registration
# =============================================================================


def register_exception_handlers(app: FastAPI) -> None:
    """Register exception handlers with FastAPI app.

    Args:
        app: FastAPI application instance.
    """
    app.add_exception_handler(PharmaKpiError, pharmakpi_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_exception_handler)
