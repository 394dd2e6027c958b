"""Heuristic content quality scoring."""

import logging
import re
from typing import Optional

from pydantic import BaseModel

from clara_ingest.core.config import QualityConfig

logger = logging.getLogger(__name__)

HEADING_PATTERN = re.compile(r"^#{1,6}\s", re.MULTILINE)


class QualityAssessment(BaseModel):
    """Score plus accept/reject decision."""

    score: int
    threshold: int
    accepted: bool
    heading_count: int
    keyword_count: int
    reason: Optional[str] = None


class QualityScorer:
    """Scores content 0-100 on length, structure and domain keyword density.

    Only the direction of each heuristic matters: more length, more
    headings and more domain keywords never lower the score.
    """

    def __init__(self, config: Optional[QualityConfig] = None):
        self.config = config or QualityConfig()
        self._keyword_patterns = [re.compile(re.escape(kw.lower())) for kw in self.config.keywords]

    def count_keywords(self, text: str) -> int:
        lower = text.lower()
        return sum(len(pattern.findall(lower)) for pattern in self._keyword_patterns)

    @staticmethod
    def count_headings(text: str) -> int:
        return len(HEADING_PATTERN.findall(text))

    def score(self, text: str, heading_count: Optional[int] = None) -> int:
        """Score ``text``; ``heading_count`` overrides Markdown heading detection."""
        cfg = self.config
        length = len(text)
        headings = self.count_headings(text) if heading_count is None else heading_count
        keywords = self.count_keywords(text)

        score = 0

        # Length scoring
        for min_length, points in cfg.length_bands:
            if length > min_length:
                score += points
                break

        # Structure scoring
        if headings > 0:
            score += cfg.heading_points
        if headings > cfg.many_headings_count:
            score += cfg.many_headings_bonus

        # Domain relevance
        for min_count, points in cfg.keyword_bands:
            if keywords > min_count:
                score += points
                break
        else:
            score += cfg.no_keyword_points

        # Quality penalties
        if length < cfg.short_content_length:
            score -= cfg.short_content_penalty
        if keywords == 0:
            score -= cfg.no_keyword_penalty

        return max(0, min(100, score))

    def assess(self, text: str, heading_count: Optional[int] = None) -> QualityAssessment:
        score = self.score(text, heading_count)
        threshold = self.config.min_quality_threshold
        accepted = score >= threshold
        return QualityAssessment(
            score=score,
            threshold=threshold,
            accepted=accepted,
            heading_count=self.count_headings(text) if heading_count is None else heading_count,
            keyword_count=self.count_keywords(text),
            reason=None if accepted else f"Quality score {score} below threshold {threshold}",
        )
