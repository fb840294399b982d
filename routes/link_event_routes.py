"""
Link mutation notifications from the link management collaborator.

POST /internal/links/created              → 202, evaluations queued
POST /internal/links/updated              → 202, cache dropped, evaluations queued
POST /internal/links/{short_code}/deleted → 202, cache dropped
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from dependencies import get_link_event_service
from schemas.dto.requests.link_events import LinkEventRequest
from schemas.dto.responses.common import EnqueueResponse
from services.link_events import LinkEventService

router = APIRouter(prefix="/internal/links", tags=["link events"])


@router.post("/created", status_code=202, response_model=EnqueueResponse)
async def link_created(
    body: LinkEventRequest,
    service: LinkEventService = Depends(get_link_event_service),
) -> EnqueueResponse:
    destinations = await service.link_created(body.link.to_doc())
    return EnqueueResponse(jobs_enqueued=len(destinations), destinations=destinations)


@router.post("/updated", status_code=202, response_model=EnqueueResponse)
async def link_updated(
    body: LinkEventRequest,
    service: LinkEventService = Depends(get_link_event_service),
) -> EnqueueResponse:
    destinations = await service.link_updated(body.link.to_doc(), body.changed_fields)
    return EnqueueResponse(jobs_enqueued=len(destinations), destinations=destinations)


@router.post("/{short_code}/deleted", status_code=202, response_model=EnqueueResponse)
async def link_deleted(
    short_code: str,
    service: LinkEventService = Depends(get_link_event_service),
) -> EnqueueResponse:
    await service.link_deleted(short_code)
    return EnqueueResponse(jobs_enqueued=0, destinations=[])
