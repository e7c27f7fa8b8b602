"""Tests for memory scoring and vector math."""

import math
from datetime import timedelta

import pytest

from agent_context.core.math_utils import clamp, cosine_similarity
from agent_context.core.scoring import RECENCY_DECAY_RATE, recency_score, score_memory
from agent_context.types import MemoryRecord, RetrievalWeights


class TestCosineSimilarity:
    def test_identical(self):
        assert cosine_similarity([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]) == pytest.approx(1.0)

    def test_orthogonal(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == 0.0

    def test_opposite(self):
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)

    def test_degenerate_inputs(self):
        assert cosine_similarity([], []) == 0.0
        assert cosine_similarity([1.0], [1.0, 0.0]) == 0.0
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0
        assert cosine_similarity([float("nan"), 1.0], [1.0, 1.0]) == 0.0
        assert cosine_similarity([float("inf"), 1.0], [1.0, 1.0]) == 0.0

    def test_clamp(self):
        assert clamp(-0.5) == 0.0
        assert clamp(1.5) == 1.0
        assert clamp(0.25) == 0.25


class TestRecency:
    def test_fresh_is_one(self, ts):
        assert recency_score(ts, ts) == pytest.approx(1.0)

    def test_decay_after_a_day(self, ts):
        score = recency_score(ts, ts + timedelta(hours=24))
        assert score == pytest.approx(math.exp(-RECENCY_DECAY_RATE * 24))
        assert 0.54 < score < 0.56

    def test_future_access_clamped(self, ts):
        assert recency_score(ts + timedelta(hours=5), ts) == pytest.approx(1.0)

    def test_custom_rate(self, ts):
        assert recency_score(ts, ts + timedelta(hours=10), decay_rate=0.0) == 1.0


class TestScoreMemory:
    def _record(self, ts, importance=0.5, embedding=None):
        return MemoryRecord(
            content="x",
            importance=importance,
            last_accessed=ts,
            created_at=ts,
            embedding=embedding if embedding is not None else [1.0, 0.0],
        )

    def test_weighted_average(self, ts):
        record = self._record(ts, importance=0.5)
        result = score_memory(record, [1.0, 0.0], RetrievalWeights(1.0, 1.0, 1.0), now=ts)
        assert result.breakdown.recency == pytest.approx(1.0)
        assert result.breakdown.importance == 0.5
        assert result.breakdown.relevance == pytest.approx(1.0)
        assert result.score == pytest.approx(2.5 / 3)

    def test_uneven_weights(self, ts):
        record = self._record(ts, importance=0.0, embedding=[0.0, 1.0])
        result = score_memory(record, [1.0, 0.0], RetrievalWeights(1.0, 1.5, 2.0), now=ts)
        # Only recency contributes.
        assert result.score == pytest.approx(1.0 / 4.5)

    def test_negative_similarity_clamped(self, ts):
        record = self._record(ts, embedding=[-1.0, 0.0])
        result = score_memory(record, [1.0, 0.0], RetrievalWeights(0.0, 0.0, 1.0), now=ts)
        assert result.breakdown.relevance == 0.0
        assert result.score == 0.0

    def test_zero_weights_score_zero(self, ts):
        record = self._record(ts)
        result = score_memory(record, [1.0, 0.0], RetrievalWeights(0.0, 0.0, 0.0), now=ts)
        assert result.score == 0.0

    def test_negative_weight_rejected(self):
        with pytest.raises(ValueError):
            RetrievalWeights(recency=-1.0)

    def test_score_in_unit_interval(self, ts):
        record = self._record(ts - timedelta(days=30), importance=1.0, embedding=[0.3, 0.7])
        result = score_memory(record, [0.9, 0.1], RetrievalWeights(1.0, 1.5, 2.0), now=ts)
        assert 0.0 <= result.score <= 1.0
