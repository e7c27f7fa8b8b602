"""AgentContextEngine: builds every component once and wires them together."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path

from .config import load_config
from .core.assembler import ContextAssembler, format_profile, load_identity
from .core.branch_manager import BranchManager
from .core.embeddings import build_embedding_provider
from .core.memory_store import MemoryStore
from .core.pipeline import Responder, TurnPipeline
from .core.profiles import ProfileManager
from .core.summarizer import BranchSummarizer
from .core.switchboard import Switchboard
from .providers import build_llm_provider
from .storage.sqlite import SQLiteStore
from .token_counter import create_token_counter
from .types import (
    AgentContextConfig,
    AssembledContext,
    BranchStatus,
    EmbeddingProvider,
    InboundEvent,
    LLMProvider,
    MemoryStatus,
    MessageContent,
    StoredMessage,
    TurnResult,
)

logger = logging.getLogger(__name__)

_DEFAULT = object()  # sentinel: build from config


class AgentContextEngine:
    """Composition root for the memory and context subsystem.

    Usage:
        engine = AgentContextEngine(config_path="./agent-context.yaml")
        result = engine.handle_turn(event, responder)

    ``responder(context, event)`` calls the reasoning model and returns the
    reply text, or None to stay silent.
    """

    def __init__(
        self,
        config_path: str | Path | None = None,
        config: AgentContextConfig | None = None,
        embedder: EmbeddingProvider | None | object = _DEFAULT,
        llm: LLMProvider | None | object = _DEFAULT,
        base_path: Path | None = None,
    ) -> None:
        self.config = config or load_config(config_path)
        self._token_counter = create_token_counter(self.config.token_counter)
        self._base_path = base_path

        self._init_store()
        self._init_embedder(embedder)
        self._init_managers()
        self._init_summarizer(llm)
        self._init_assembler()
        self._init_pipeline()

    def _init_store(self) -> None:
        self.store = SQLiteStore(self.config.storage.sqlite_path)
        logger.debug("Opened store at %s", self.config.storage.sqlite_path)

    def _init_embedder(self, embedder) -> None:
        if embedder is _DEFAULT:
            embedder = build_embedding_provider(self.config.embeddings)
        self.embedder: EmbeddingProvider | None = embedder

    def _init_managers(self) -> None:
        self.memory = MemoryStore(self.store, self.embedder, self.config.memory)
        self.profiles = ProfileManager(self.store)
        self.branches = BranchManager(self.store, self.profiles, self.config.branches)
        self.switchboard = Switchboard(self.store, self.store, self.store)

    def _init_summarizer(self, llm) -> None:
        if llm is _DEFAULT:
            llm = None
            name = self.config.summarization.provider
            if name:
                llm = build_llm_provider(
                    name,
                    self.config.providers.get(name, {}),
                    model=self.config.summarization.model,
                    temperature=self.config.summarization.temperature,
                )
                if llm is None:
                    logger.warning("Summarization provider '%s' unavailable, summaries disabled", name)
        self.llm: LLMProvider | None = llm
        self.summarizer: BranchSummarizer | None = None
        if llm is not None:
            self.summarizer = BranchSummarizer(
                llm,
                self.branches,
                self.config.summarization,
                token_counter=self._token_counter,
                agent_name=self.config.agent.name,
            )

    def _init_assembler(self) -> None:
        self.assembler = ContextAssembler(
            self.memory,
            self.branches,
            self.config.assembler,
            token_counter=self._token_counter,
            switchboard=self.switchboard,
            agent_name=self.config.agent.name,
        )
        asm = self.config.assembler
        parts = [p for p in (asm.identity_text, load_identity(asm.identity_files, self._base_path)) if p]
        self.identity_text = "\n\n".join(parts)

    def _init_pipeline(self) -> None:
        self.pipeline = TurnPipeline(
            self.branches,
            self.memory,
            self.assembler,
            identity_text=self.identity_text,
            first_contact_instruction=self.config.agent.first_contact_instruction,
            summarizer=self.summarizer,
            switchboard=self.switchboard,
            profiles=self.profiles,
            switchboard_triggers=self.config.agent.switchboard_triggers,
        )

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def handle_turn(self, event: InboundEvent, responder: Responder, mood_text: str = "") -> TurnResult:
        """Run one inbound message through the turn pipeline."""
        return self.pipeline.run_turn(event, responder, mood_text=mood_text)

    def assemble_for(
        self,
        branch_id: str,
        current_text: str | None = None,
        include_switchboard: bool = False,
    ) -> AssembledContext:
        """Assemble context for an existing branch without storing anything."""
        branch = self.branches.require_branch(branch_id)
        profile = None
        for participant in branch.participants:
            profile = self.profiles.get_by_id(participant.profile_id)
            if profile is not None:
                break
        current = None
        if current_text:
            current = StoredMessage(
                branch_id=branch.id,
                sender_profile_id=profile.id if profile else "",
                content=MessageContent(text=current_text),
            )
        return self.assembler.assemble(
            branch,
            self.identity_text,
            profile_text=format_profile(profile),
            current_message=current,
            include_switchboard=include_switchboard,
        )

    def sweep(self, threshold: timedelta | None = None, now: datetime | None = None) -> dict[str, int]:
        """Periodic maintenance: demote idle branches, fade expired memories,
        drop old delivered notes and release turn locks of idle branches."""
        now = now or datetime.now(timezone.utc)
        demoted = self.branches.sweep_inactive_branches(threshold, now=now)
        faded = self.memory.fade_expired(now)
        removed = self.switchboard.cleanup_old_notes(
            timedelta(hours=self.config.branches.note_max_age_hours), now=now,
        )
        idle = self.branches.list_branches(BranchStatus.DORMANT) + self.branches.list_branches(BranchStatus.CLOSED)
        evicted = self.pipeline.locks.evict((b.channel_id, b.conversation_id) for b in idle)
        logger.info(
            "Sweep: %d branches dormant, %d memories faded, %d notes removed, %d locks evicted",
            demoted, faded, removed, evicted,
        )
        return {
            "branches_demoted": demoted,
            "memories_faded": faded,
            "notes_removed": removed,
            "locks_evicted": evicted,
        }

    def status(self) -> dict[str, int]:
        return {
            "branches_active": len(self.branches.list_branches(BranchStatus.ACTIVE)),
            "branches_dormant": len(self.branches.list_branches(BranchStatus.DORMANT)),
            "branches_closed": len(self.branches.list_branches(BranchStatus.CLOSED)),
            "memories_active": self.memory.count(MemoryStatus.ACTIVE),
            "memories_total": self.memory.count(),
            "buffer_entries": self.store.count_buffer(),
            "profiles": len(self.profiles.list_profiles()),
            "pending_notes": len(self.switchboard.pending_notes_for()),
        }

    def close(self) -> None:
        self.store.close()
