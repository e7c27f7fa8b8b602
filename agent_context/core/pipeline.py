"""TurnPipeline: one inbound message through resolve, context, respond, dispatch."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterable, Iterator, Sequence

from ..types import (
    AssembledContext,
    InboundEvent,
    TurnResult,
    TurnStage,
)
from .assembler import ContextAssembler, format_profile
from .branch_manager import BranchManager
from .memory_store import MemoryStore
from .profiles import ProfileManager
from .summarizer import BranchSummarizer
from .switchboard import Switchboard

logger = logging.getLogger(__name__)

Responder = Callable[[AssembledContext, InboundEvent], "str | None"]

DEFAULT_SWITCHBOARD_TRIGGERS = ("who else", "other conversation", "talking to")


class _LockEntry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class BranchLocks:
    """Registry of per-conversation locks so one branch runs one turn at a time.

    Entries are reference counted; ``evict`` only drops locks no turn is
    holding or waiting on.
    """

    def __init__(self) -> None:
        self._locks: dict[tuple[str, str], _LockEntry] = {}
        self._guard = threading.Lock()

    def _entry(self, key: tuple[str, str]) -> _LockEntry:
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _LockEntry()
        return entry

    def get(self, channel_id: str, conversation_id: str) -> threading.Lock:
        with self._guard:
            return self._entry((channel_id, conversation_id)).lock

    @contextmanager
    def hold(self, channel_id: str, conversation_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._entry((channel_id, conversation_id))
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1

    def evict(self, keys: Iterable[tuple[str, str]]) -> int:
        """Drop idle locks for ``keys``. Returns how many were removed."""
        removed = 0
        with self._guard:
            for key in keys:
                entry = self._locks.get(key)
                if entry is not None and entry.users == 0:
                    del self._locks[key]
                    removed += 1
        return removed

    def __len__(self) -> int:
        return len(self._locks)


class TurnPipeline:
    """Runs turns as an explicit stage sequence.

    Stages: RESOLVE -> STORE_MESSAGE -> BUILD_CONTEXT -> RESPOND -> DISPATCH
    -> DONE, each appended to ``TurnResult.stages`` as it starts. Any error
    appends FAILED and propagates. Turns on the same (channel, conversation)
    are serialized; different conversations run concurrently.
    """

    def __init__(
        self,
        branches: BranchManager,
        memory: MemoryStore,
        assembler: ContextAssembler,
        identity_text: str = "",
        first_contact_instruction: str = "",
        summarizer: BranchSummarizer | None = None,
        switchboard: Switchboard | None = None,
        profiles: ProfileManager | None = None,
        switchboard_triggers: Sequence[str] = DEFAULT_SWITCHBOARD_TRIGGERS,
    ) -> None:
        self.branches = branches
        self.memory = memory
        self.assembler = assembler
        self.identity_text = identity_text
        self.first_contact_instruction = first_contact_instruction
        self.summarizer = summarizer
        self.switchboard = switchboard
        self.profiles = profiles
        self.switchboard_triggers = tuple(t.lower() for t in switchboard_triggers)
        self.locks = BranchLocks()

    def wants_switchboard(self, text: str) -> bool:
        lowered = (text or "").lower()
        return any(trigger in lowered for trigger in self.switchboard_triggers)

    def run_turn(self, event: InboundEvent, responder: Responder, mood_text: str = "") -> TurnResult:
        result = TurnResult(event=event)
        with self.locks.hold(event.channel_id, event.conversation_id):
            try:
                self._run(result, responder, mood_text)
            except Exception as e:
                result.error = e
                result.stages.append(TurnStage.FAILED)
                logger.error(
                    "Turn failed at %s for %s/%s: %s",
                    result.stages[-2].value if len(result.stages) > 1 else "start",
                    event.channel_id, event.conversation_id, e,
                )
                raise
        return result

    def _run(self, result: TurnResult, responder: Responder, mood_text: str) -> None:
        event = result.event

        result.stages.append(TurnStage.RESOLVE)
        resolution = self.branches.resolve_event(event)
        branch = resolution.branch
        result.branch = branch
        result.profile = resolution.profile
        result.first_contact = resolution.first_contact
        sender_id = resolution.profile.id if resolution.profile else (
            event.sender.profile_id or event.sender.platform_id
        )

        result.stages.append(TurnStage.STORE_MESSAGE)
        result.incoming = self.branches.add_message(
            branch.id,
            sender_id,
            event.content,
            timestamp=event.timestamp,
            metadata={"platform": event.channel_type},
        )
        self.memory.append_to_buffer(
            "message.incoming",
            event.content.text,
            branch_id=branch.id,
            metadata={"profile_id": sender_id},
            timestamp=event.timestamp,
        )

        if self.profiles is not None and self.profiles.is_blocked(sender_id):
            result.skipped_reason = "blocked"
            logger.info("Ignoring message from blocked profile %s", sender_id)
            result.stages.append(TurnStage.DONE)
            return

        result.stages.append(TurnStage.BUILD_CONTEXT)
        if self.summarizer is not None:
            self.summarizer.summarize_if_needed(branch.id, self.assembler.config.budget_tokens)
            branch = self.branches.require_branch(branch.id)

        instructions: list[str] = []
        if resolution.first_contact and self.first_contact_instruction:
            logger.info("First contact with profile %s, adding introduction instruction", sender_id)
            instructions.append(self.first_contact_instruction)
        # Notes stay pending until the responder has seen them.
        pending_notes = []
        if self.switchboard is not None:
            pending_notes = self.switchboard.pending_notes_for(branch.id, sender_id)
            for note in pending_notes:
                instructions.append(f"Note from another conversation: {note.content}")

        result.context = self.assembler.assemble(
            branch,
            self.identity_text,
            profile_text=format_profile(resolution.profile),
            current_message=result.incoming,
            instructions=instructions,
            include_switchboard=self.wants_switchboard(event.content.text),
            mood_text=mood_text,
        )

        result.stages.append(TurnStage.RESPOND)
        response = responder(result.context, event)
        result.response = response or None

        result.stages.append(TurnStage.DISPATCH)
        if pending_notes:
            result.delivered_notes = self.switchboard.mark_notes_delivered(pending_notes)
        if result.response:
            result.outgoing = self.branches.add_agent_message(branch.id, result.response)
            self.branches.record_agent_response(branch.id, result.outgoing.timestamp)
            self.memory.append_to_buffer(
                "message.outgoing",
                result.response,
                branch_id=branch.id,
                timestamp=result.outgoing.timestamp,
            )
        else:
            logger.debug("Responder stayed silent on branch %s", branch.id)

        result.branch = self.branches.require_branch(branch.id)
        result.stages.append(TurnStage.DONE)
