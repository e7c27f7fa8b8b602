"""Shared fixtures for agent-context tests."""

from __future__ import annotations

import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from agent_context.core.assembler import ContextAssembler
from agent_context.core.branch_manager import BranchManager
from agent_context.core.embeddings import CallableEmbeddings
from agent_context.core.memory_store import MemoryStore
from agent_context.core.profiles import ProfileManager
from agent_context.core.switchboard import Switchboard
from agent_context.storage.sqlite import SQLiteStore
from agent_context.types import (
    AssemblerConfig,
    InboundEvent,
    MessageContent,
    Sender,
)

# One axis per keyword; texts sharing keywords get similar vectors.
KEYWORDS = ["coffee", "python", "travel", "music", "garden"]


def keyword_vector(text: str) -> list[float]:
    lowered = text.lower()
    return [float(lowered.count(k)) for k in KEYWORDS]


class FakeEmbeddings(CallableEmbeddings):
    """Deterministic keyword-count embeddings (no model download)."""

    def __init__(self):
        self.calls: list[list[str]] = []

        def embed(texts: list[str]) -> list[list[float]]:
            self.calls.append(list(texts))
            return [keyword_vector(t) for t in texts]

        super().__init__(embed)


class FailingEmbeddings:
    def embed_query(self, text: str) -> list[float]:
        raise RuntimeError("embedding service down")

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        raise RuntimeError("embedding service down")


class MockLLMProvider:
    """Mock LLM provider returning canned responses in order (last one repeats)."""

    def __init__(self, response: str | list[str] | None = None, error: Exception | None = None):
        self.calls: list[dict] = []
        if response is None:
            response = "Test summary"
        self.responses = [response] if isinstance(response, str) else list(response)
        self.error = error

    def complete(self, system: str, user: str, max_tokens: int) -> str:
        self.calls.append({"system": system, "user": user, "max_tokens": max_tokens})
        if self.error is not None:
            raise self.error
        idx = min(len(self.calls) - 1, len(self.responses) - 1)
        return self.responses[idx]


def make_event(
    text: str = "hello",
    platform_id: str = "u1",
    display_name: str = "Alice",
    channel_id: str = "chan-1",
    conversation_id: str = "conv-1",
    channel_type: str = "telegram",
    timestamp: datetime | None = None,
    profile_id: str | None = None,
) -> InboundEvent:
    return InboundEvent(
        channel_id=channel_id,
        conversation_id=conversation_id,
        sender=Sender(platform_id=platform_id, display_name=display_name, profile_id=profile_id),
        channel_type=channel_type,
        content=MessageContent(text=text),
        timestamp=timestamp or datetime.now(timezone.utc),
    )


@pytest.fixture
def ts() -> datetime:
    return datetime(2026, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def later(ts) -> datetime:
    return ts + timedelta(hours=1)


@pytest.fixture
def tmp_store_dir():
    with tempfile.TemporaryDirectory() as d:
        yield Path(d)


@pytest.fixture
def tmp_sqlite_db(tmp_store_dir):
    return tmp_store_dir / "test_brain.db"


@pytest.fixture
def store(tmp_sqlite_db):
    s = SQLiteStore(db_path=tmp_sqlite_db)
    yield s
    s.close()


@pytest.fixture
def embedder() -> FakeEmbeddings:
    return FakeEmbeddings()


@pytest.fixture
def memory_store(store, embedder) -> MemoryStore:
    return MemoryStore(store, embedder)


@pytest.fixture
def profiles(store) -> ProfileManager:
    return ProfileManager(store)


@pytest.fixture
def branches(store, profiles) -> BranchManager:
    return BranchManager(store, profiles)


@pytest.fixture
def switchboard(store) -> Switchboard:
    return Switchboard(store, store, store)


@pytest.fixture
def assembler(memory_store, branches, switchboard) -> ContextAssembler:
    return ContextAssembler(memory_store, branches, AssemblerConfig(), switchboard=switchboard)
