"""
Common response DTOs shared across multiple endpoints.

ErrorResponse    — standard error shape from AppError.to_dict()
HealthResponse   — GET /health
EnqueueResponse  — link mutation notifications (202)
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class ErrorResponse(BaseModel):
    """Standard error JSON body produced by the AppError exception handler."""

    model_config = ConfigDict(populate_by_name=True)

    error: str
    code: str
    field: Optional[str] = None
    details: Optional[Any] = None


class HealthResponse(BaseModel):
    """Response body for GET /health."""

    model_config = ConfigDict(populate_by_name=True)

    status: str
    checks: dict[str, str]
    active_aggregators: int = 0


class EnqueueResponse(BaseModel):
    """How many evaluation jobs a link mutation produced."""

    model_config = ConfigDict(populate_by_name=True)

    accepted: bool = True
    jobs_enqueued: int
    destinations: list[str]
