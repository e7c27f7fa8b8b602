"""All dataclasses, Protocols, enums and exceptions for agent-context."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Protocol, runtime_checkable


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# Sender id used for messages the agent itself wrote.
AGENT_SENDER_ID = "agent"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class AgentContextError(Exception):
    """Base class for errors raised by agent-context."""


class StorageError(AgentContextError):
    """A read or write against the persistent store failed."""


class BranchNotFoundError(AgentContextError):
    def __init__(self, branch_id: str):
        super().__init__(f"Branch not found: {branch_id}")
        self.branch_id = branch_id


class InvalidTransitionError(AgentContextError):
    def __init__(self, branch_id: str, current: str, target: str):
        super().__init__(f"Branch {branch_id}: cannot go from {current} to {target}")
        self.branch_id = branch_id
        self.current = current
        self.target = target


class ConfigError(AgentContextError):
    pass


class LLMProviderError(AgentContextError):
    def __init__(self, message: str, provider: str, status_code: int | None = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class EmbeddingProviderError(LLMProviderError):
    pass


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

@runtime_checkable
class LLMProvider(Protocol):
    def complete(self, system: str, user: str, max_tokens: int) -> str: ...


@runtime_checkable
class EmbeddingProvider(Protocol):
    def embed_query(self, text: str) -> list[float]: ...

    def embed_documents(self, texts: list[str]) -> list[list[float]]: ...


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------

class MemoryType(str, Enum):
    EPISODIC = "episodic"      # something that happened
    SEMANTIC = "semantic"      # a fact
    PROCEDURAL = "procedural"  # how to do something


class MemoryStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    FADED = "faded"


@dataclass
class MemorySource:
    """Where a memory came from."""
    kind: str = "conversation"  # "conversation", "reflection", "tool", "import"
    branch_id: str | None = None
    profile_id: str | None = None
    message_id: str | None = None
    detail: str = ""


@dataclass
class MemoryRecord:
    content: str
    type: MemoryType = MemoryType.EPISODIC
    id: str = field(default_factory=_new_id)
    importance: float = 0.5
    last_accessed: datetime = field(default_factory=_now)
    access_count: int = 0
    source: MemorySource = field(default_factory=MemorySource)
    related_profile_ids: list[str] = field(default_factory=list)
    related_branch_ids: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    embedding: list[float] = field(default_factory=list)
    created_at: datetime = field(default_factory=_now)
    expires_at: datetime | None = None
    status: MemoryStatus = MemoryStatus.ACTIVE


@dataclass
class RetrievalWeights:
    recency: float = 1.0
    importance: float = 1.0
    relevance: float = 1.0

    def __post_init__(self) -> None:
        if min(self.recency, self.importance, self.relevance) < 0:
            raise ValueError(f"Retrieval weights must be non-negative: {self}")

    @property
    def total(self) -> float:
        return self.recency + self.importance + self.relevance


@dataclass
class TimeRange:
    start: datetime | None = None
    end: datetime | None = None


@dataclass
class RetrievalQuery:
    query_text: str = ""
    query_embedding: list[float] | None = None
    type: MemoryType | None = None
    profile_ids: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    time_range: TimeRange | None = None
    min_importance: float | None = None
    weights: RetrievalWeights = field(default_factory=RetrievalWeights)
    limit: int = 5
    min_score: float | None = None


@dataclass
class ScoreBreakdown:
    recency: float
    importance: float
    relevance: float


@dataclass
class ScoredMemory:
    """Ephemeral retrieval result. Never persisted."""
    memory: MemoryRecord
    score: float
    breakdown: ScoreBreakdown


@dataclass
class BufferEntry:
    """Raw turn event waiting for consolidation into a MemoryRecord."""
    event_type: str
    content: str
    id: str = field(default_factory=_new_id)
    branch_id: str | None = None
    metadata: dict | None = None
    timestamp: datetime = field(default_factory=_now)


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------

class ProfileRole(str, Enum):
    OWNER = "owner"
    TRUSTED = "trusted"
    KNOWN = "known"
    STRANGER = "stranger"
    BLOCKED = "blocked"


@dataclass
class ProfileFact:
    content: str
    category: str = "general"
    confidence: float = 0.5
    id: str = field(default_factory=_new_id)
    learned_at: datetime = field(default_factory=_now)


@dataclass
class Profile:
    display_name: str
    id: str = field(default_factory=_new_id)
    role: ProfileRole = ProfileRole.STRANGER
    first_seen: datetime = field(default_factory=_now)
    last_seen: datetime = field(default_factory=_now)
    total_interactions: int = 0
    facts: list[ProfileFact] = field(default_factory=list)
    communication_style: str = ""


@dataclass
class PlatformIdentity:
    platform: str
    channel_id: str
    platform_user_id: str
    platform_username: str = ""
    linked_at: datetime = field(default_factory=_now)
    linked_by: str = "auto"


@dataclass
class ProfileResolution:
    profile: Profile
    is_new: bool = False


# ---------------------------------------------------------------------------
# Branches & Messages
# ---------------------------------------------------------------------------

class BranchStatus(str, Enum):
    ACTIVE = "active"
    DORMANT = "dormant"
    CLOSED = "closed"  # terminal


@dataclass
class BranchParticipant:
    profile_id: str
    role: str = "primary"
    joined_at: datetime = field(default_factory=_now)


@dataclass
class BranchMood:
    tone: str = "neutral"
    confidence: float = 0.5
    updated_at: datetime = field(default_factory=_now)


@dataclass
class PendingAction:
    description: str
    created_at: datetime = field(default_factory=_now)
    due_at: datetime | None = None


@dataclass
class Branch:
    channel_id: str
    conversation_id: str
    channel_type: str = "unknown"
    id: str = field(default_factory=_new_id)
    participants: list[BranchParticipant] = field(default_factory=list)
    status: BranchStatus = BranchStatus.ACTIVE
    mood: BranchMood = field(default_factory=BranchMood)
    current_topic: str | None = None
    summary: str | None = None
    summary_up_to_message_id: str | None = None
    pending_actions: list[PendingAction] = field(default_factory=list)
    created_at: datetime = field(default_factory=_now)
    last_activity_at: datetime = field(default_factory=_now)
    last_agent_response_at: datetime | None = None


@dataclass
class MessageContent:
    text: str = ""
    attachments: list[dict] = field(default_factory=list)


@dataclass
class StoredMessage:
    """Append-only. Never mutated after creation."""
    branch_id: str
    sender_profile_id: str
    content: MessageContent = field(default_factory=MessageContent)
    id: str = field(default_factory=_new_id)
    timestamp: datetime = field(default_factory=_now)
    metadata: dict | None = None


@dataclass
class BranchResolution:
    branch: Branch
    profile: Profile | None = None
    first_contact: bool = False  # the sender identity is new, not the branch
    created: bool = False


# ---------------------------------------------------------------------------
# Inbound event (canonical shape produced by channel adapters)
# ---------------------------------------------------------------------------

@dataclass
class Sender:
    platform_id: str
    display_name: str = ""
    profile_id: str | None = None


@dataclass
class InboundEvent:
    channel_id: str
    conversation_id: str
    sender: Sender
    channel_type: str = "unknown"
    content: MessageContent = field(default_factory=MessageContent)
    timestamp: datetime = field(default_factory=_now)


# ---------------------------------------------------------------------------
# Switchboard
# ---------------------------------------------------------------------------

class NoteStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"


@dataclass
class CrossBranchNote:
    from_branch_id: str
    content: str
    to_branch_id: str | None = None
    to_profile_id: str | None = None
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)
    status: NoteStatus = NoteStatus.PENDING
    delivered_at: datetime | None = None


@dataclass
class SwitchboardParticipant:
    profile_id: str
    display_name: str = "Unknown"
    role: str = "stranger"


@dataclass
class SwitchboardEntry:
    branch_id: str
    channel_type: str
    participants: list[SwitchboardParticipant] = field(default_factory=list)
    current_topic: str = ""
    mood: str = "neutral"
    last_activity_at: datetime = field(default_factory=_now)
    pending_actions: list[str] = field(default_factory=list)


@dataclass
class SwitchboardState:
    timestamp: datetime = field(default_factory=_now)
    active_branches: list[SwitchboardEntry] = field(default_factory=list)
    pending_notes: list[CrossBranchNote] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------

@dataclass
class ContextReport:
    total_tokens: int = 0
    budget_tokens: int = 0
    identity_tokens: int = 0
    instructions_tokens: int = 0
    profile_tokens: int = 0
    switchboard_tokens: int = 0
    memory_tokens: int = 0
    conversation_tokens: int = 0
    separator_tokens: int = 0  # "\n\n" joins between rendered sections
    memories_included: int = 0
    switchboard_included: bool = False
    summary_used: bool = False
    messages_included: int = 0
    messages_dropped: int = 0
    over_budget: bool = False  # fixed tiers alone exceeded the budget


@dataclass
class AssembledContext:
    text: str = ""
    sections: dict[str, str] = field(default_factory=dict)
    report: ContextReport = field(default_factory=ContextReport)
    memories: list[ScoredMemory] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class StorageConfig:
    sqlite_path: str = ".agentcontext/brain.db"


@dataclass
class EmbeddingConfig:
    provider: str = "sentence-transformers"  # "sentence-transformers", "openai", "none"
    model: str = "all-MiniLM-L6-v2"
    base_url: str = "http://127.0.0.1:11434/v1"
    api_key_env: str = "OPENAI_API_KEY"


@dataclass
class MemoryConfig:
    recency_decay_rate: float = 0.025  # per hour
    candidate_multiplier: int = 5
    default_importance: float = 0.5


@dataclass
class BranchConfig:
    inactive_threshold_hours: float = 4.0
    note_max_age_hours: float = 24.0


@dataclass
class AssemblerConfig:
    max_context_tokens: int = 8000
    reserved_for_response: int = 2000
    switchboard_budget: int = 500
    min_conversation_budget: int = 2000
    memory_max_tokens: int = 1000
    memory_budget_fraction: float = 0.15
    memory_limit: int = 5
    memory_min_score: float = 0.3
    memory_weights: RetrievalWeights = field(
        default_factory=lambda: RetrievalWeights(recency=1.0, importance=1.5, relevance=2.0)
    )
    memory_query_max_chars: int = 500
    memory_query_messages: int = 3
    history_fetch_limit: int = 100
    identity_files: list[dict] = field(default_factory=list)
    identity_text: str = ""

    @property
    def budget_tokens(self) -> int:
        return self.max_context_tokens - self.reserved_for_response


@dataclass
class SummarizationConfig:
    provider: str = ""  # empty: summarization disabled
    model: str = ""
    max_tokens: int = 800
    temperature: float = 0.3
    keep_recent_messages: int = 10
    trigger_ratio: float = 0.8
    max_transcript_chars: int = 24_000


@dataclass
class AgentConfig:
    name: str = "Agent"
    first_contact_instruction: str = (
        "This is someone you have never met before. Introduce yourself warmly, "
        "ask for their name if they have not given it, and be welcoming "
        "without being overbearing."
    )
    switchboard_triggers: list[str] = field(default_factory=lambda: [
        "who else", "other conversation", "talking to",
    ])


@dataclass
class AgentContextConfig:
    version: str = "1"
    token_counter: str = "estimate"
    storage: StorageConfig = field(default_factory=StorageConfig)
    embeddings: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    branches: BranchConfig = field(default_factory=BranchConfig)
    assembler: AssemblerConfig = field(default_factory=AssemblerConfig)
    summarization: SummarizationConfig = field(default_factory=SummarizationConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    providers: dict[str, dict] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Turn pipeline
# ---------------------------------------------------------------------------

class TurnStage(str, Enum):
    RESOLVE = "resolve"
    STORE_MESSAGE = "store_message"
    BUILD_CONTEXT = "build_context"
    RESPOND = "respond"
    DISPATCH = "dispatch"
    DONE = "done"
    FAILED = "failed"


@dataclass
class TurnResult:
    event: InboundEvent
    stages: list[TurnStage] = field(default_factory=list)
    branch: Branch | None = None
    profile: Profile | None = None
    first_contact: bool = False
    incoming: StoredMessage | None = None
    context: AssembledContext | None = None
    response: str | None = None
    outgoing: StoredMessage | None = None
    delivered_notes: list[CrossBranchNote] = field(default_factory=list)
    skipped_reason: str = ""
    error: Exception | None = None

    @property
    def stage(self) -> TurnStage | None:
        return self.stages[-1] if self.stages else None
