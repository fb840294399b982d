"""
Content quality scoring for the Scoring step.

The score (0–100) blends cheap heuristics computed from the fetch with the
inference collaborator's opinion of the page text:

- latency      up to 30 points
- text length  up to 30 points
- error markers 40 points, minus 20 per marker found ("page not found",
  "domain is for sale", ...)

When an inference scorer is configured the final score is the mean of the
heuristic and inference scores. If the inference call fails the result is
a neutral score with verdict ``degraded``; scoring itself never fails.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from errors import ScoringError
from infrastructure.inference.protocol import ContentScorer
from schemas.models.evaluation import Verdict
from schemas.models.job import FetchResult
from shared.logging import get_logger

log = get_logger(__name__)

NEUTRAL_SCORE = 50

ERROR_MARKERS: tuple[str, ...] = (
    "404 not found",
    "page not found",
    "page you requested could not be found",
    "this domain is for sale",
    "domain may be for sale",
    "account has been suspended",
    "account suspended",
    "site can't be reached",
    "bad gateway",
    "service unavailable",
    "website is under construction",
    "default web page",
    "index of /",
    "parked free",
)


@dataclass
class ScoreResult:
    score: int
    verdict: Verdict
    heuristic_score: int
    inference_score: Optional[int] = None
    inference_failed: bool = False
    markers: list[str] = field(default_factory=list)


def latency_points(latency_ms: int) -> int:
    if latency_ms <= 500:
        return 30
    if latency_ms <= 1500:
        return 20
    if latency_ms <= 4000:
        return 10
    return 0


def length_points(text_length: int) -> int:
    if text_length >= 2000:
        return 30
    if text_length >= 500:
        return 20
    if text_length >= 100:
        return 10
    return 0


def find_error_markers(text: str) -> list[str]:
    lowered = text.lower()
    return [marker for marker in ERROR_MARKERS if marker in lowered]


def heuristic_score(latency_ms: int, text: str) -> tuple[int, list[str]]:
    markers = find_error_markers(text)
    marker_points = max(0, 40 - 20 * len(markers))
    score = latency_points(latency_ms) + length_points(len(text.strip())) + marker_points
    return min(100, score), markers


class ContentScoringService:
    def __init__(
        self, scorer: Optional[ContentScorer], healthy_threshold: int = 60
    ) -> None:
        self._scorer = scorer
        self.healthy_threshold = healthy_threshold

    def _verdict_for(self, score: int) -> Verdict:
        return Verdict.HEALTHY if score >= self.healthy_threshold else Verdict.DEGRADED

    async def score(
        self, fetch: FetchResult, rendered_text: Optional[str] = None
    ) -> ScoreResult:
        # Rendered text reflects what a visitor sees; fall back to the raw body
        content = rendered_text if rendered_text else fetch.text
        heuristic, markers = heuristic_score(fetch.latency_ms, content)

        if self._scorer is None:
            return ScoreResult(
                score=heuristic,
                verdict=self._verdict_for(heuristic),
                heuristic_score=heuristic,
                markers=markers,
            )

        try:
            inference = await self._scorer.score_content(content)
        except ScoringError as e:
            log.warning("inference_scoring_unavailable", error=str(e))
            return ScoreResult(
                score=NEUTRAL_SCORE,
                verdict=Verdict.DEGRADED,
                heuristic_score=heuristic,
                inference_failed=True,
                markers=markers,
            )

        combined = round((heuristic + inference) / 2)
        return ScoreResult(
            score=combined,
            verdict=self._verdict_for(combined),
            heuristic_score=heuristic,
            inference_score=inference,
            markers=markers,
        )
