"""Destination fetcher used by the Fetching step.

A single GET with a bounded timeout. Redirects are followed (a short link
pointing at a redirecting page is still healthy) and the body is read up to
``max_content_bytes`` so a huge download cannot stall the worker.
"""

from __future__ import annotations

import time

import httpx

from errors import TransientFetchError
from infrastructure.http_client import HttpClient
from schemas.models.job import FetchResult
from shared.logging import get_logger

log = get_logger(__name__)

USER_AGENT = "linkroute-evaluator/1.0 (+destination health check)"


class DestinationFetcher:
    def __init__(self, http_client: HttpClient, max_content_bytes: int) -> None:
        self._http = http_client
        self.max_content_bytes = max_content_bytes

    async def fetch(self, url: str) -> FetchResult:
        """Fetch *url* once. Raises TransientFetchError on any failure."""
        started = time.perf_counter()
        try:
            async with self._http.stream(
                "GET", url, headers={"User-Agent": USER_AGENT}
            ) as response:
                body = bytearray()
                async for chunk in response.aiter_bytes():
                    body.extend(chunk)
                    if len(body) >= self.max_content_bytes:
                        del body[self.max_content_bytes :]
                        break
                latency_ms = int((time.perf_counter() - started) * 1000)
                status = response.status_code
                content_type = response.headers.get("content-type")
                encoding = response.encoding or "utf-8"
        except httpx.TimeoutException as e:
            raise TransientFetchError(url, f"timeout: {type(e).__name__}") from e
        except httpx.HTTPError as e:
            raise TransientFetchError(url, f"{type(e).__name__}: {e}") from e

        if not 200 <= status < 300:
            raise TransientFetchError(url, f"http {status}", status_code=status)

        text = bytes(body).decode(encoding, errors="replace")
        log.debug(
            "destination_fetched",
            url=url,
            status=status,
            latency_ms=latency_ms,
            content_length=len(body),
        )
        return FetchResult(
            http_status=status,
            latency_ms=latency_ms,
            content_length=len(body),
            content_type=content_type,
            text=text,
        )
