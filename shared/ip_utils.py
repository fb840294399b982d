"""
Client IP and edge-provided region resolution for FastAPI requests.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Request

# Proxy headers checked in priority order before the socket address
CLIENT_IP_HEADERS: tuple[str, ...] = (
    "CF-Connecting-IP",  # Cloudflare
    "True-Client-IP",  # Akamai and others
    "X-Forwarded-For",  # first IP in the list
    "X-Real-IP",  # nginx
    "X-Client-IP",
)

# Headers set by CDNs that already resolved the visitor's country
COUNTRY_HEADERS: tuple[str, ...] = ("CF-IPCountry", "X-Country-Code")

# Placeholder codes CDNs send when the country is not known
_UNKNOWN_COUNTRY_CODES = frozenset({"XX", "T1", ""})


def get_client_ip(request: Request) -> str:
    """Extract the real client IP from a FastAPI ``Request``.

    Returns the first non-empty proxy header value, the direct connection
    address, or ``""`` if none can be found.
    """
    for header in CLIENT_IP_HEADERS:
        ip_value: str | None = request.headers.get(header)
        if ip_value:
            client_ip: str = ip_value.split(",")[0].strip()
            if client_ip:
                return client_ip

    return request.client.host if request.client else ""


def get_edge_country(request: Request) -> Optional[str]:
    """Return the ISO country code supplied by the CDN edge, if any."""
    for header in COUNTRY_HEADERS:
        value = request.headers.get(header)
        if value is None:
            continue
        code = value.strip().upper()
        if code not in _UNKNOWN_COUNTRY_CODES:
            return code
    return None
