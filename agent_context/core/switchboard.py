"""Switchboard: cross-branch awareness and the durable note mailbox."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from ..types import (
    Branch,
    BranchStatus,
    CrossBranchNote,
    SwitchboardEntry,
    SwitchboardParticipant,
    SwitchboardState,
)
from .store import BranchStorage, NoteStorage, ProfileStorage

logger = logging.getLogger(__name__)


def time_ago(ts: datetime, now: datetime | None = None) -> str:
    seconds = int(((now or datetime.now(timezone.utc)) - ts).total_seconds())
    if seconds < 60:
        return "just now"
    if seconds < 3600:
        return f"{seconds // 60} min ago"
    if seconds < 86400:
        return f"{seconds // 3600} hours ago"
    return f"{seconds // 86400} days ago"


def _short(branch_id: str) -> str:
    return branch_id[:8]


class Switchboard:
    """Snapshot of every active conversation, rendered for the agent's context."""

    def __init__(
        self,
        branch_storage: BranchStorage,
        note_storage: NoteStorage,
        profile_storage: ProfileStorage | None = None,
    ) -> None:
        self._branches = branch_storage
        self._notes = note_storage
        self._profiles = profile_storage

    def get_state(self, now: datetime | None = None) -> SwitchboardState:
        return SwitchboardState(
            timestamp=now or datetime.now(timezone.utc),
            active_branches=[
                self._to_entry(b) for b in self._branches.list_branches(BranchStatus.ACTIVE)
            ],
            pending_notes=self._notes.list_pending_notes(),
        )

    def _to_entry(self, branch: Branch) -> SwitchboardEntry:
        participants = []
        for p in branch.participants:
            profile = self._profiles.get_profile(p.profile_id) if self._profiles else None
            participants.append(SwitchboardParticipant(
                profile_id=p.profile_id,
                display_name=profile.display_name if profile else "Unknown",
                role=profile.role.value if profile else "stranger",
            ))
        return SwitchboardEntry(
            branch_id=branch.id,
            channel_type=branch.channel_type,
            participants=participants,
            current_topic=branch.current_topic or "",
            mood=branch.mood.tone or "neutral",
            last_activity_at=branch.last_activity_at,
            pending_actions=[a.description for a in branch.pending_actions],
        )

    def render_text(self, exclude_branch_id: str | None = None, now: datetime | None = None) -> str:
        """Plain-text listing of active branches and pending notes."""
        state = self.get_state(now)
        now = state.timestamp
        entries = [e for e in state.active_branches if e.branch_id != exclude_branch_id]

        lines = ["=== ACTIVE CONVERSATIONS ==="]
        if not entries:
            lines.append("No active conversations.")
        for entry in entries:
            who = ", ".join(f"{p.display_name} ({p.role})" for p in entry.participants) or "nobody"
            line = (
                f"[Branch {_short(entry.branch_id)}] {entry.channel_type} with {who}"
                f" | {entry.current_topic or 'idle'}"
                f" | {time_ago(entry.last_activity_at, now)}"
                f" | {entry.mood}"
            )
            if entry.pending_actions:
                line += f" | pending: {'; '.join(entry.pending_actions)}"
            lines.append(line)

        if state.pending_notes:
            lines.append("")
            lines.append("=== PENDING NOTES ===")
            for note in state.pending_notes:
                if note.to_branch_id:
                    target = f"Branch {_short(note.to_branch_id)}"
                else:
                    target = note.to_profile_id or "all"
                lines.append(f'- "{note.content}" [from Branch {_short(note.from_branch_id)} -> {target}]')

        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Mailbox
    # ------------------------------------------------------------------

    def add_note(
        self,
        from_branch_id: str,
        content: str,
        to_branch_id: str | None = None,
        to_profile_id: str | None = None,
    ) -> CrossBranchNote:
        note = CrossBranchNote(
            from_branch_id=from_branch_id,
            content=content,
            to_branch_id=to_branch_id,
            to_profile_id=to_profile_id,
        )
        self._notes.insert_note(note)
        logger.info("Added note %s from branch %s", note.id, from_branch_id)
        return note

    def pending_notes_for(
        self, branch_id: str | None = None, profile_id: str | None = None,
    ) -> list[CrossBranchNote]:
        return self._notes.list_pending_notes(branch_id=branch_id, profile_id=profile_id)

    def mark_delivered(self, note_id: str) -> bool:
        return self._notes.mark_note_delivered(note_id, datetime.now(timezone.utc))

    def deliver_pending_notes(self, branch_id: str, profile_id: str | None = None) -> list[CrossBranchNote]:
        """Mark every note addressed to this branch or profile delivered and return them."""
        return self.mark_notes_delivered(self.pending_notes_for(branch_id=branch_id, profile_id=profile_id))

    def mark_notes_delivered(self, notes: list[CrossBranchNote]) -> list[CrossBranchNote]:
        """Mark ``notes`` delivered; returns those this call moved out of pending."""
        delivered = [note for note in notes if self.mark_delivered(note.id)]
        if delivered:
            logger.debug("Delivered %d notes", len(delivered))
        return delivered

    def cleanup_old_notes(self, max_age: timedelta = timedelta(hours=24), now: datetime | None = None) -> int:
        """Delete delivered notes older than ``max_age``. Pending notes are kept."""
        cutoff = (now or datetime.now(timezone.utc)) - max_age
        return self._notes.delete_delivered_notes(cutoff)
