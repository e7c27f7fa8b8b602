"""Abstract storage interfaces for memories, branches, profiles and notes."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from ..types import (
    Branch,
    BranchParticipant,
    BranchStatus,
    BufferEntry,
    CrossBranchNote,
    MemoryRecord,
    MemoryStatus,
    MemoryType,
    PlatformIdentity,
    Profile,
    ProfileFact,
    StoredMessage,
    TimeRange,
)


class MemoryStorage(ABC):
    """Persistence for memory records and the raw-event buffer."""

    @abstractmethod
    def insert_memory(self, record: MemoryRecord) -> None:
        """Insert a new record. Raises ValueError on an embedding dimension mismatch."""

    @abstractmethod
    def get_memory(self, memory_id: str) -> MemoryRecord | None:
        ...

    @abstractmethod
    def query_memory_candidates(
        self,
        limit: int,
        now: datetime,
        type: MemoryType | None = None,
        time_range: TimeRange | None = None,
        min_importance: float | None = None,
    ) -> list[MemoryRecord]:
        """Active, non-expired records ordered by importance desc, at most ``limit``."""

    @abstractmethod
    def list_recent_memories(self, limit: int = 20, type: MemoryType | None = None) -> list[MemoryRecord]:
        """Active records, newest first."""

    @abstractmethod
    def list_memories_for_profile(
        self, profile_id: str, type: MemoryType | None = None, limit: int = 20,
    ) -> list[MemoryRecord]:
        ...

    @abstractmethod
    def record_memory_access(self, memory_ids: list[str], accessed_at: datetime) -> None:
        """Set last_accessed and increment access_count for each id, in one transaction."""

    @abstractmethod
    def set_memory_status(self, memory_id: str, status: MemoryStatus) -> bool:
        ...

    @abstractmethod
    def set_memory_importance(self, memory_id: str, importance: float) -> bool:
        ...

    @abstractmethod
    def fade_expired_memories(self, now: datetime) -> int:
        """Mark active records with expires_at <= now as faded. Returns count."""

    @abstractmethod
    def embedding_dimension(self) -> int | None:
        """Dimension fixed by the first non-empty embedding, or None."""

    @abstractmethod
    def count_memories(self, status: MemoryStatus | None = None) -> int:
        ...

    @abstractmethod
    def append_buffer(self, entry: BufferEntry) -> None:
        ...

    @abstractmethod
    def get_buffer_since(self, since: datetime) -> list[BufferEntry]:
        """Entries with timestamp >= since, in timestamp then insertion order."""

    @abstractmethod
    def clear_buffer(self, up_to: datetime) -> int:
        """Delete entries with timestamp <= up_to. Returns count deleted."""


class BranchStorage(ABC):
    """Persistence for branches, their participants and stored messages."""

    @abstractmethod
    def create_or_get_branch(self, branch: Branch) -> tuple[Branch, bool]:
        """Insert unless (channel_id, conversation_id) exists. Returns (row, created)."""

    @abstractmethod
    def get_branch(self, branch_id: str) -> Branch | None:
        ...

    @abstractmethod
    def find_branch(self, channel_id: str, conversation_id: str) -> Branch | None:
        ...

    @abstractmethod
    def update_branch_fields(self, branch_id: str, **fields) -> bool:
        """Update the named mutable columns. Returns False if the branch is unknown."""

    @abstractmethod
    def set_branch_status(
        self,
        branch_id: str,
        status: BranchStatus,
        allowed_from: tuple[BranchStatus, ...],
        touched_at: datetime | None = None,
    ) -> bool:
        """Compare-and-set on status. Returns False when the current status is not allowed."""

    @abstractmethod
    def add_participant(self, branch_id: str, participant: BranchParticipant) -> bool:
        """Idempotent. Returns True when the participant was newly added."""

    @abstractmethod
    def list_branches(self, status: BranchStatus | None = None) -> list[Branch]:
        ...

    @abstractmethod
    def list_branches_for_profile(self, profile_id: str) -> list[Branch]:
        ...

    @abstractmethod
    def demote_inactive_branches(self, cutoff: datetime) -> list[str]:
        """Active branches last active before cutoff become dormant. Returns their ids."""

    @abstractmethod
    def insert_message(self, message: StoredMessage) -> None:
        ...

    @abstractmethod
    def get_recent_messages(self, branch_id: str, limit: int = 50) -> list[StoredMessage]:
        """Newest ``limit`` messages, returned oldest first."""

    @abstractmethod
    def get_messages_after(self, branch_id: str, message_id: str | None) -> list[StoredMessage]:
        """Messages strictly after ``message_id`` (all when None or unknown), oldest first."""

    @abstractmethod
    def count_messages(self, branch_id: str) -> int:
        ...


class ProfileStorage(ABC):
    """Persistence for profiles, platform identities and profile facts."""

    @abstractmethod
    def create_profile_with_identity(self, profile: Profile, identity: PlatformIdentity) -> tuple[Profile, bool]:
        """Create ``profile`` linked to ``identity`` unless the identity is already linked.

        Returns (profile owning the identity, created).
        """

    @abstractmethod
    def get_profile(self, profile_id: str) -> Profile | None:
        ...

    @abstractmethod
    def find_profile_by_identity(self, platform: str, channel_id: str, platform_user_id: str) -> Profile | None:
        ...

    @abstractmethod
    def link_identity(self, profile_id: str, identity: PlatformIdentity) -> bool:
        ...

    @abstractmethod
    def touch_profile(self, profile_id: str, seen_at: datetime) -> None:
        """Update last_seen and increment total_interactions."""

    @abstractmethod
    def update_profile_fields(self, profile_id: str, **fields) -> bool:
        ...

    @abstractmethod
    def add_profile_fact(self, profile_id: str, fact: ProfileFact) -> None:
        ...

    @abstractmethod
    def list_profiles(self) -> list[Profile]:
        ...


class NoteStorage(ABC):
    """Durable cross-branch note mailbox."""

    @abstractmethod
    def insert_note(self, note: CrossBranchNote) -> None:
        ...

    @abstractmethod
    def get_note(self, note_id: str) -> CrossBranchNote | None:
        ...

    @abstractmethod
    def list_pending_notes(
        self, branch_id: str | None = None, profile_id: str | None = None,
    ) -> list[CrossBranchNote]:
        """Pending notes, oldest first. With targets, only notes addressed to
        that branch, that profile, or to nobody in particular."""

    @abstractmethod
    def mark_note_delivered(self, note_id: str, delivered_at: datetime) -> bool:
        ...

    @abstractmethod
    def delete_delivered_notes(self, before: datetime) -> int:
        ...
