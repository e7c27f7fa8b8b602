"""MemoryStore: scored retrieval over long-term memories, plus the event buffer."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable

from ..storage.helpers import dedupe
from ..types import (
    BufferEntry,
    EmbeddingProvider,
    MemoryConfig,
    MemoryRecord,
    MemorySource,
    MemoryStatus,
    MemoryType,
    RetrievalQuery,
    ScoredMemory,
)
from .math_utils import clamp
from .scoring import score_memory
from .store import MemoryStorage

logger = logging.getLogger(__name__)


class MemoryStore:
    """Stores memory records and ranks them against a query.

    Ranking combines recency of access, stored importance and semantic
    relevance (cosine similarity of embeddings). Retrieval touches
    ``last_accessed``/``access_count`` of every record it returns, which
    feeds back into future recency scores.
    """

    def __init__(
        self,
        storage: MemoryStorage,
        embedder: EmbeddingProvider | None = None,
        config: MemoryConfig | None = None,
    ) -> None:
        self._storage = storage
        self._embedder = embedder
        self.config = config or MemoryConfig()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def store(
        self,
        type: MemoryType,
        content: str,
        importance: float | None = None,
        embedding: list[float] | None = None,
        source: MemorySource | None = None,
        related_profile_ids: Iterable[str] = (),
        related_branch_ids: Iterable[str] = (),
        tags: Iterable[str] = (),
        expires_at: datetime | None = None,
    ) -> MemoryRecord:
        if importance is None:
            importance = self.config.default_importance
        if embedding is None:
            embedding = self._embed_document(content)

        now = datetime.now(timezone.utc)
        record = MemoryRecord(
            type=MemoryType(type),
            content=content,
            importance=clamp(importance),
            last_accessed=now,
            source=source or MemorySource(),
            related_profile_ids=dedupe(related_profile_ids),
            related_branch_ids=dedupe(related_branch_ids),
            tags=dedupe(tags),
            embedding=list(embedding),
            created_at=now,
            expires_at=expires_at,
        )
        self._storage.insert_memory(record)
        logger.debug(
            "Stored %s memory %s (importance=%.2f, dim=%d)",
            record.type.value, record.id, record.importance, len(record.embedding),
        )
        return record

    def store_many(self, records: Iterable[dict]) -> list[MemoryRecord]:
        """Store each keyword-argument dict in turn."""
        return [self.store(**fields) for fields in records]

    def _embed_document(self, text: str) -> list[float]:
        if self._embedder is None:
            return []
        try:
            return list(self._embedder.embed_documents([text])[0])
        except Exception as e:
            logger.warning("Embedding failed, storing memory without embedding: %s", e)
            return []

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_by_id(self, memory_id: str) -> MemoryRecord | None:
        return self._storage.get_memory(memory_id)

    def get_recent(self, limit: int = 20, type: MemoryType | None = None) -> list[MemoryRecord]:
        return self._storage.list_recent_memories(limit=limit, type=type)

    def get_by_profile(
        self, profile_id: str, type: MemoryType | None = None, limit: int = 20,
    ) -> list[MemoryRecord]:
        return self._storage.list_memories_for_profile(profile_id, type=type, limit=limit)

    def count(self, status: MemoryStatus | None = None) -> int:
        return self._storage.count_memories(status)

    def retrieve(self, query: RetrievalQuery, now: datetime | None = None) -> list[ScoredMemory]:
        """Rank memories against ``query`` and record access on the results.

        Returns [] when no query embedding can be obtained. Storage errors
        propagate to the caller.
        """
        now = now or datetime.now(timezone.utc)

        query_embedding = query.query_embedding
        if query_embedding is None:
            query_embedding = self._embed_query(query.query_text)
            if query_embedding is None:
                return []
        if not query_embedding:
            logger.debug("Empty query embedding, skipping retrieval")
            return []

        candidates = self._storage.query_memory_candidates(
            limit=max(1, query.limit * self.config.candidate_multiplier),
            now=now,
            type=query.type,
            time_range=query.time_range,
            min_importance=query.min_importance,
        )

        wanted_profiles = set(query.profile_ids)
        wanted_tags = set(query.tags)
        scored: list[ScoredMemory] = []
        for record in candidates:
            if wanted_profiles and not wanted_profiles.intersection(record.related_profile_ids):
                continue
            if wanted_tags and not wanted_tags.intersection(record.tags):
                continue
            result = score_memory(
                record, query_embedding, query.weights, now=now,
                decay_rate=self.config.recency_decay_rate,
            )
            if query.min_score is not None and result.score < query.min_score:
                continue
            scored.append(result)

        scored.sort(key=lambda s: (s.score, s.memory.created_at), reverse=True)
        results = scored[:query.limit]

        if results:
            self._storage.record_memory_access([s.memory.id for s in results], now)
            for s in results:
                s.memory.last_accessed = now
                s.memory.access_count += 1

        logger.debug(
            "Retrieved %d/%d memories (candidates=%d)",
            len(results), len(scored), len(candidates),
        )
        return results

    def _embed_query(self, text: str) -> list[float] | None:
        if self._embedder is None:
            logger.debug("No embedding provider, retrieval disabled")
            return None
        try:
            return list(self._embedder.embed_query(text))
        except Exception as e:
            logger.warning("Query embedding failed, returning no memories: %s", e)
            return None

    # ------------------------------------------------------------------
    # Lifecycle (soft transitions only)
    # ------------------------------------------------------------------

    def record_access(self, memory_id: str, now: datetime | None = None) -> None:
        self._storage.record_memory_access([memory_id], now or datetime.now(timezone.utc))

    def archive(self, memory_id: str) -> bool:
        return self._storage.set_memory_status(memory_id, MemoryStatus.ARCHIVED)

    def fade(self, memory_id: str) -> bool:
        return self._storage.set_memory_status(memory_id, MemoryStatus.FADED)

    def update_importance(self, memory_id: str, importance: float) -> bool:
        return self._storage.set_memory_importance(memory_id, clamp(importance))

    def fade_expired(self, now: datetime | None = None) -> int:
        count = self._storage.fade_expired_memories(now or datetime.now(timezone.utc))
        if count:
            logger.info("Faded %d expired memories", count)
        return count

    # ------------------------------------------------------------------
    # Buffer
    # ------------------------------------------------------------------

    def append_to_buffer(
        self,
        event_type: str,
        content: str,
        branch_id: str | None = None,
        metadata: dict | None = None,
        timestamp: datetime | None = None,
    ) -> BufferEntry:
        entry = BufferEntry(
            event_type=event_type,
            content=content,
            branch_id=branch_id,
            metadata=metadata,
            timestamp=timestamp or datetime.now(timezone.utc),
        )
        self._storage.append_buffer(entry)
        return entry

    def get_buffer_since(self, since: datetime) -> list[BufferEntry]:
        return self._storage.get_buffer_since(since)

    def clear_buffer(self, up_to: datetime) -> int:
        count = self._storage.clear_buffer(up_to)
        logger.debug("Cleared %d buffer entries up to %s", count, up_to.isoformat())
        return count
