"""HTTP inference service implementation of ContentScorer.

POSTs the page text as JSON and expects ``{"score": <0-100>}`` back.
Every failure mode (not configured, transport error, bad status, malformed
body) becomes ScoringError so the Scoring step can fall back to a neutral
score.
"""

from __future__ import annotations

from errors import ScoringError
from infrastructure.http_client import HttpClient
from shared.logging import get_logger

log = get_logger(__name__)

# Inference payloads are truncated; the head of a page carries the signal
MAX_CONTENT_CHARS = 20_000


class HttpInferenceScorer:
    def __init__(self, url: str, api_key: str, http_client: HttpClient) -> None:
        self._url = url
        self._api_key = api_key
        self._http = http_client

    async def score_content(self, content: str) -> int:
        if not self._url:
            raise ScoringError("inference service not configured")

        headers = {}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        try:
            response = await self._http.post(
                self._url,
                json={"content": content[:MAX_CONTENT_CHARS]},
                headers=headers,
            )
        except Exception as e:
            log.warning(
                "inference_request_failed", error=str(e), error_type=type(e).__name__
            )
            raise ScoringError(f"inference request failed: {e}") from e

        if response.status_code != 200:
            log.warning(
                "inference_api_error",
                status_code=response.status_code,
                response_text=response.text[:200],
            )
            raise ScoringError(f"inference returned {response.status_code}")

        try:
            score = float(response.json()["score"])
        except (ValueError, KeyError, TypeError) as e:
            raise ScoringError("inference response missing numeric score") from e
        return max(0, min(100, round(score)))
