"""
Application error hierarchy and FastAPI exception handlers.

AppError is the base for all typed HTTP-facing errors. The global exception
handler converts AppError subclasses to consistent JSON responses.

PipelineError is the base for evaluation/analytics errors. They are raised
and handled inside the worker and the click aggregator and never reach the
redirect path.

Non-AppError exceptions bubble up as 500s (with Sentry reporting in production).
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


class AppError(Exception):
    """Base application error. All typed errors inherit from this."""

    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        details: Optional[Any] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.field = field
        self.details = details

    def to_dict(self) -> dict:
        payload: dict = {"error": self.message, "code": self.error_code}
        if self.field is not None:
            payload["field"] = self.field
        if self.details is not None:
            payload["details"] = self.details
        return payload


class ValidationError(AppError):
    status_code = 400
    error_code = "validation_error"


class NotFoundError(AppError):
    status_code = 404
    error_code = "not_found"


class RateLimitError(AppError):
    status_code = 429
    error_code = "rate_limit_exceeded"


class ServiceUnavailableError(AppError):
    status_code = 503
    error_code = "service_unavailable"


# ── Pipeline errors ──────────────────────────────────────────────────────────


class PipelineError(Exception):
    """Base for errors contained within the evaluation and analytics paths."""


class TransientFetchError(PipelineError):
    """A single fetch attempt failed (network error or non-2xx response)."""

    def __init__(
        self, url: str, reason: str, *, status_code: Optional[int] = None
    ) -> None:
        super().__init__(f"fetch failed for {url}: {reason}")
        self.url = url
        self.reason = reason
        self.status_code = status_code


class FatalEvaluationError(PipelineError):
    """The fetch retry budget for a destination is exhausted."""

    def __init__(self, url: str, attempts: int) -> None:
        super().__init__(f"evaluation of {url} failed after {attempts} attempts")
        self.url = url
        self.attempts = attempts


class RenderError(PipelineError):
    """The headless renderer could not produce content for a page."""


class ScoringError(PipelineError):
    """The inference collaborator could not score content."""


class ActorOverloadError(PipelineError):
    """A click aggregator inbox is full; the click is dropped."""

    def __init__(self, link_id: str) -> None:
        super().__init__(f"click aggregator for link {link_id} is overloaded")
        self.link_id = link_id


def register_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers on the FastAPI app."""

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        # Sentry integration: if sentry_sdk is initialized it will auto-capture
        # unhandled exceptions before this handler fires.
        return JSONResponse(
            status_code=500,
            content={"error": "An internal server error occurred.", "code": "internal_error"},
        )
