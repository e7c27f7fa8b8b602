"""Multi-factor memory scoring: recency decay, importance, relevance."""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone

from ..types import MemoryRecord, RetrievalWeights, ScoreBreakdown, ScoredMemory
from .math_utils import clamp, cosine_similarity

logger = logging.getLogger(__name__)

# Per hour. 1h ~ 0.975, 24h ~ 0.549, 7d ~ 0.015.
RECENCY_DECAY_RATE = 0.025


def recency_score(
    last_accessed: datetime,
    now: datetime | None = None,
    decay_rate: float = RECENCY_DECAY_RATE,
) -> float:
    """exp(-decay_rate * hours since last access). Future timestamps score 1.0."""
    now = now or datetime.now(timezone.utc)
    hours = max(0.0, (now - last_accessed).total_seconds() / 3600)
    return math.exp(-decay_rate * hours)


def score_memory(
    record: MemoryRecord,
    query_embedding: list[float],
    weights: RetrievalWeights,
    now: datetime | None = None,
    decay_rate: float = RECENCY_DECAY_RATE,
) -> ScoredMemory:
    """Weighted average of recency, importance and relevance.

    Relevance is cosine similarity clamped to [0, 1] so the final score
    stays in [0, 1]. A zero weight sum scores 0.0.
    """
    recency = recency_score(record.last_accessed, now, decay_rate)
    importance = clamp(record.importance)
    relevance = clamp(cosine_similarity(query_embedding, record.embedding))
    breakdown = ScoreBreakdown(recency=recency, importance=importance, relevance=relevance)

    total = weights.total
    if total == 0:
        return ScoredMemory(memory=record, score=0.0, breakdown=breakdown)

    score = (
        weights.recency * recency
        + weights.importance * importance
        + weights.relevance * relevance
    ) / total
    return ScoredMemory(memory=record, score=score, breakdown=breakdown)
