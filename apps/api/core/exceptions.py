"""
Custom exception classes and error handling.

Provides consistent error responses across the API, plus the domain
errors raised by the experiment services. Services raise the plain
domain errors; routers translate them into API exceptions.
"""
from fastapi import HTTPException, status
from typing import Optional, Dict, Any


class APIException(HTTPException):
    """Base API exception with consistent structure."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code


class NotFoundError(APIException):
    """Resource not found."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{resource} not found: {identifier}",
            error_code="NOT_FOUND"
        )


class ValidationError(APIException):
    """Validation error."""

    def __init__(self, detail: str, field: Optional[str] = None):
        error_code = f"VALIDATION_ERROR_{field.upper()}" if field else "VALIDATION_ERROR"
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=detail,
            error_code=error_code
        )


class ConflictError(APIException):
    """Resource conflict (e.g., deleting an in-flight run)."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
            error_code="CONFLICT"
        )


# ---------------------------------------------------------------------------
# Domain errors (no HTTP coupling)
# ---------------------------------------------------------------------------

class ExperimentConfigError(ValueError):
    """Rejected experiment request: raised before any run row is created."""

    def __init__(self, detail: str, field: Optional[str] = None):
        super().__init__(detail)
        self.detail = detail
        self.field = field


class ExperimentDataError(RuntimeError):
    """The athlete's data cannot support the requested experiment."""


class LLMProviderError(RuntimeError):
    """A provider call failed or returned an unusable response."""

    def __init__(self, provider: str, model: str, detail: str):
        super().__init__(f"{provider}/{model}: {detail}")
        self.provider = provider
        self.model = model


class InvalidStatusTransition(ValueError):
    """An experiment run was asked to move to a state it cannot reach."""


class RunNotDeletable(RuntimeError):
    """Soft delete refused because the run is still in flight."""
