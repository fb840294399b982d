"""ContentScorer protocol: scoring depends on this, not on the HTTP service."""

from typing import Protocol


class ContentScorer(Protocol):
    async def score_content(self, content: str) -> int:
        """Return a 0–100 content-quality score; raise ScoringError on failure."""
        ...
