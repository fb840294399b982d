"""
Short-link redirect.

GET /{short_code} — 302 to the destination picked for the requester's
region. The region comes from the CDN edge header when present, otherwise
from a GeoIP lookup of the client address. The destination's last known
verdict is echoed in ``X-Evaluation-Hint``.

This router matches any single path segment, so the app registers it last.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse

from dependencies import get_geoip, get_resolver
from infrastructure.geoip import GeoIPService
from schemas.dto.responses.common import ErrorResponse
from services.resolver import RedirectResolver
from shared.device import classify_device
from shared.ip_utils import get_client_ip, get_edge_country

router = APIRouter(tags=["redirect"])

EVALUATION_HINT_HEADER = "X-Evaluation-Hint"


async def requester_region(request: Request, geoip: Optional[GeoIPService]) -> Optional[str]:
    region = get_edge_country(request)
    if region is not None:
        return region
    if geoip is None:
        return None
    return await geoip.get_country_code(get_client_ip(request))


@router.get(
    "/{short_code}",
    status_code=302,
    response_class=RedirectResponse,
    responses={404: {"model": ErrorResponse}},
)
async def redirect(
    short_code: str,
    request: Request,
    resolver: RedirectResolver = Depends(get_resolver),
    geoip: Optional[GeoIPService] = Depends(get_geoip),
) -> RedirectResponse:
    region = await requester_region(request, geoip)
    device_class = classify_device(request.headers.get("User-Agent", ""))
    resolution = await resolver.resolve(
        short_code, region, device_class, client_ip=get_client_ip(request)
    )
    return RedirectResponse(
        resolution.destination,
        status_code=302,
        headers={
            EVALUATION_HINT_HEADER: resolution.evaluation_hint.value,
            "Cache-Control": "no-store",
        },
    )
