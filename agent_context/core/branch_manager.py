"""BranchManager: conversation branch lifecycle and message history."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from ..types import (
    AGENT_SENDER_ID,
    Branch,
    BranchConfig,
    BranchMood,
    BranchNotFoundError,
    BranchParticipant,
    BranchResolution,
    BranchStatus,
    InboundEvent,
    InvalidTransitionError,
    MessageContent,
    PendingAction,
    ProfileResolution,
    Sender,
    StoredMessage,
)
from .profiles import ProfileManager
from .store import BranchStorage

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class BranchManager:
    """Owns branches, their participants and the append-only message log.

    A branch is keyed by ``(channel_id, conversation_id)``. Status moves
    active -> dormant (inactivity) -> active (new message), and either
    live status may be closed for good.
    """

    def __init__(
        self,
        storage: BranchStorage,
        profiles: ProfileManager | None = None,
        config: BranchConfig | None = None,
    ) -> None:
        self._storage = storage
        self._profiles = profiles
        self.config = config or BranchConfig()

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve_event(self, event: InboundEvent) -> BranchResolution:
        """Resolve the sender's profile, then find or create the branch."""
        resolution = None
        if self._profiles is not None:
            resolution = self._profiles.resolve_from_event(event)
        return self.get_or_create_branch(
            event.channel_id,
            event.conversation_id,
            event.sender,
            channel_type=event.channel_type,
            now=event.timestamp,
            resolution=resolution,
        )

    def get_or_create_branch(
        self,
        channel_id: str,
        conversation_id: str,
        sender: Sender,
        channel_type: str = "unknown",
        now: datetime | None = None,
        resolution: ProfileResolution | None = None,
    ) -> BranchResolution:
        now = now or _now()
        if resolution is not None:
            participant_id = resolution.profile.id
        else:
            participant_id = sender.profile_id or sender.platform_id

        branch = self._storage.find_branch(channel_id, conversation_id)
        created = False
        if branch is None:
            candidate = Branch(
                channel_type=channel_type,
                channel_id=channel_id,
                conversation_id=conversation_id,
                participants=[BranchParticipant(profile_id=participant_id, role="primary", joined_at=now)],
                status=BranchStatus.ACTIVE,
                mood=BranchMood(tone="neutral", confidence=0.5, updated_at=now),
                created_at=now,
                last_activity_at=now,
            )
            branch, created = self._storage.create_or_get_branch(candidate)
            if created:
                logger.info(
                    "Created branch %s for %s/%s (%s)",
                    branch.id, channel_type, channel_id, conversation_id,
                )

        if not created:
            if branch.status == BranchStatus.DORMANT:
                if self._storage.set_branch_status(
                    branch.id, BranchStatus.ACTIVE, (BranchStatus.DORMANT,), touched_at=now,
                ):
                    logger.info("Reactivated branch %s", branch.id)
                else:
                    self._storage.update_branch_fields(branch.id, last_activity_at=now)
            else:
                self._storage.update_branch_fields(branch.id, last_activity_at=now)
            self._storage.add_participant(
                branch.id, BranchParticipant(profile_id=participant_id, role="participant", joined_at=now),
            )
            branch = self.require_branch(branch.id)

        return BranchResolution(
            branch=branch,
            profile=resolution.profile if resolution else None,
            first_contact=bool(resolution and resolution.is_new),
            created=created,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_branch(self, branch_id: str) -> Branch | None:
        return self._storage.get_branch(branch_id)

    def require_branch(self, branch_id: str) -> Branch:
        """The branch, or BranchNotFoundError."""
        branch = self._storage.get_branch(branch_id)
        if branch is None:
            raise BranchNotFoundError(branch_id)
        return branch

    def get_active_branches(self) -> list[Branch]:
        return self._storage.list_branches(BranchStatus.ACTIVE)

    def list_branches(self, status: BranchStatus | None = None) -> list[Branch]:
        return self._storage.list_branches(status)

    def get_branches_for_profile(self, profile_id: str) -> list[Branch]:
        return self._storage.list_branches_for_profile(profile_id)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def add_message(
        self,
        branch_id: str,
        sender_profile_id: str,
        content: MessageContent | str,
        timestamp: datetime | None = None,
        metadata: dict | None = None,
    ) -> StoredMessage:
        self.require_branch(branch_id)
        if isinstance(content, str):
            content = MessageContent(text=content)
        message = StoredMessage(
            branch_id=branch_id,
            sender_profile_id=sender_profile_id,
            content=content,
            timestamp=timestamp or _now(),
            metadata=metadata,
        )
        self._storage.insert_message(message)
        self._storage.update_branch_fields(branch_id, last_activity_at=message.timestamp)
        return message

    def add_agent_message(self, branch_id: str, text: str, metadata: dict | None = None) -> StoredMessage:
        return self.add_message(branch_id, AGENT_SENDER_ID, MessageContent(text=text), metadata=metadata)

    def get_recent_messages(self, branch_id: str, limit: int = 50) -> list[StoredMessage]:
        """The newest ``limit`` messages, oldest first."""
        return self._storage.get_recent_messages(branch_id, limit)

    def get_messages_after(self, branch_id: str, message_id: str | None) -> list[StoredMessage]:
        return self._storage.get_messages_after(branch_id, message_id)

    def get_branch_with_messages(
        self, branch_id: str, limit: int = 50,
    ) -> tuple[Branch, list[StoredMessage]] | None:
        branch = self._storage.get_branch(branch_id)
        if branch is None:
            return None
        return branch, self._storage.get_recent_messages(branch_id, limit)

    def message_count(self, branch_id: str) -> int:
        return self._storage.count_messages(branch_id)

    # ------------------------------------------------------------------
    # Branch state
    # ------------------------------------------------------------------

    def _update(self, branch_id: str, **fields) -> None:
        if not self._storage.update_branch_fields(branch_id, **fields):
            raise BranchNotFoundError(branch_id)

    def update_mood(self, branch_id: str, tone: str, confidence: float = 0.5) -> None:
        self._update(branch_id, mood=BranchMood(tone=tone, confidence=confidence, updated_at=_now()))

    def update_topic(self, branch_id: str, topic: str | None) -> None:
        self._update(branch_id, current_topic=topic)

    def save_summary(self, branch_id: str, summary: str, up_to_message_id: str | None) -> None:
        self._update(branch_id, summary=summary, summary_up_to_message_id=up_to_message_id)
        logger.debug("Saved summary for branch %s up to %s", branch_id, up_to_message_id)

    def record_agent_response(self, branch_id: str, at: datetime | None = None) -> None:
        at = at or _now()
        self._update(branch_id, last_agent_response_at=at, last_activity_at=at)

    def add_pending_action(self, branch_id: str, description: str, due_at: datetime | None = None) -> None:
        branch = self.require_branch(branch_id)
        actions = branch.pending_actions + [PendingAction(description=description, due_at=due_at)]
        self._update(branch_id, pending_actions=actions)

    def clear_pending_actions(self, branch_id: str) -> None:
        self._update(branch_id, pending_actions=[])

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(
        self,
        branch_id: str,
        target: BranchStatus,
        allowed_from: tuple[BranchStatus, ...],
        touched_at: datetime | None = None,
    ) -> None:
        if self._storage.set_branch_status(branch_id, target, allowed_from, touched_at=touched_at):
            logger.info("Branch %s -> %s", branch_id, target.value)
            return
        branch = self.require_branch(branch_id)
        raise InvalidTransitionError(branch_id, branch.status.value, target.value)

    def mark_dormant(self, branch_id: str) -> None:
        self._transition(branch_id, BranchStatus.DORMANT, (BranchStatus.ACTIVE,))

    def reactivate(self, branch_id: str) -> None:
        self._transition(branch_id, BranchStatus.ACTIVE, (BranchStatus.DORMANT,), touched_at=_now())

    def close(self, branch_id: str) -> None:
        self._transition(branch_id, BranchStatus.CLOSED, (BranchStatus.ACTIVE, BranchStatus.DORMANT))

    def sweep_inactive_branches(
        self,
        threshold: timedelta | None = None,
        now: datetime | None = None,
    ) -> int:
        """Demote active branches idle longer than ``threshold``. Returns count."""
        if threshold is None:
            threshold = timedelta(hours=self.config.inactive_threshold_hours)
        cutoff = (now or _now()) - threshold
        demoted = self._storage.demote_inactive_branches(cutoff)
        for branch_id in demoted:
            logger.info("Branch %s -> dormant (inactive)", branch_id)
        return len(demoted)
