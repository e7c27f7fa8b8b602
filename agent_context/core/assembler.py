"""ContextAssembler: fit identity, profile, memories and history into a token budget."""

from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Callable, Sequence

from ..token_counter import estimate_tokens
from ..types import (
    AGENT_SENDER_ID,
    AssembledContext,
    AssemblerConfig,
    Branch,
    ContextReport,
    Profile,
    RetrievalQuery,
    ScoredMemory,
    StoredMessage,
)
from .branch_manager import BranchManager
from .memory_store import MemoryStore
from .switchboard import Switchboard

logger = logging.getLogger(__name__)

ROLE_DESCRIPTIONS = {
    "owner": "Your owner. Full trust and access. You care deeply about them.",
    "trusted": "A trusted friend. Be warm and open.",
    "known": "Someone you know. Be friendly but maintain appropriate boundaries.",
    "stranger": "Someone new. Be polite but cautious until you know them better.",
    "blocked": "Someone you've chosen to avoid.",
}

HISTORY_HEADER = "## Conversation History"
SECTION_SEPARATOR = "\n\n"


def format_profile(profile: Profile | None, min_fact_confidence: float = 0.6, max_facts: int = 5) -> str:
    """Render the conversation partner section for the prompt."""
    if profile is None:
        return ""

    role = profile.role.value
    lines = ["## Current Conversation Partner"]
    lines.append(f"You're talking to **{profile.display_name}** (ID: {profile.id}).")
    lines.append(f"Role: {ROLE_DESCRIPTIONS.get(role, role)}")

    key_facts = sorted(
        (f for f in profile.facts if f.confidence >= min_fact_confidence),
        key=lambda f: f.confidence,
        reverse=True,
    )[:max_facts]
    if key_facts:
        lines.append("")
        lines.append("What you know about them:")
        for fact in key_facts:
            lines.append(f"- {fact.content}")

    if profile.communication_style:
        lines.append("")
        lines.append(f"Their style: {profile.communication_style}")

    return "\n".join(lines)


def load_identity(identity_files: Sequence[dict], base_path: Path | None = None) -> str:
    """Load and concatenate identity files, highest priority first."""
    if not identity_files:
        return ""

    parts: list[str] = []
    sorted_files = sorted(identity_files, key=lambda f: f.get("priority", 5), reverse=True)
    for file_conf in sorted_files:
        file_path = Path(file_conf["path"])
        if base_path:
            file_path = base_path / file_path
        if file_path.is_file():
            parts.append(file_path.read_text())
        else:
            logger.warning("Identity file not found: %s", file_path)

    return "\n\n---\n\n".join(parts)


class ContextAssembler:
    """Assemble the agent's context within a fixed token budget.

    Tiers are admitted in priority order against one shared pool of
    ``max_context_tokens - reserved_for_response`` tokens:

    1. identity (and current mood), 2. priority instructions, 3. partner
       profile: always included
    4. switchboard: only when asked for and cheap enough to leave the
       conversation its minimum
    5. memories: only if the whole section fits a fraction of what is left
    6. conversation history: full, else summary plus newest messages,
       else newest messages alone

    The rendered order is identity, instructions, profile, memories,
    switchboard, conversation.
    Each separator between sections is charged against the same pool.
    """

    def __init__(
        self,
        memory_store: MemoryStore,
        branches: BranchManager,
        config: AssemblerConfig | None = None,
        token_counter: Callable[[str], int] | None = None,
        switchboard: Switchboard | None = None,
        agent_name: str = "Agent",
    ) -> None:
        self.memory_store = memory_store
        self.branches = branches
        self.config = config or AssemblerConfig()
        self.token_counter = token_counter or estimate_tokens
        self.switchboard = switchboard
        self.agent_name = agent_name

    def assemble(
        self,
        branch: Branch,
        identity_text: str,
        profile_text: str = "",
        current_message: StoredMessage | None = None,
        instructions: Sequence[str] = (),
        include_switchboard: bool = False,
        mood_text: str = "",
    ) -> AssembledContext:
        budget = self.config.budget_tokens
        report = ContextReport(budget_tokens=budget)
        sections: dict[str, str] = {}
        separator_cost = self.token_counter(SECTION_SEPARATOR)

        # Tiers 1-3: always included.
        identity = identity_text
        if mood_text:
            identity = f"{identity}\n\n## Current State\n{mood_text}" if identity else f"## Current State\n{mood_text}"
        if identity:
            sections["identity"] = identity
            report.identity_tokens = self.token_counter(identity)

        instruction_items = [i for i in instructions if i]
        if instruction_items:
            block = "## Priority Instructions\n\n" + "\n\n".join(instruction_items)
            sections["instructions"] = block
            report.instructions_tokens = self.token_counter(block)

        if profile_text:
            sections["profile"] = profile_text
            report.profile_tokens = self.token_counter(profile_text)

        fixed = (
            report.identity_tokens + report.instructions_tokens + report.profile_tokens
            + separator_cost * max(0, len(sections) - 1)
        )
        admitted = len(sections)
        remaining = budget - fixed

        memories: list[ScoredMemory] = []
        if remaining < 0:
            report.over_budget = True
            logger.warning(
                "Fixed context (%d tokens) exceeds budget %d for branch %s",
                fixed, budget, branch.id,
            )
        else:
            # Tier 4: switchboard
            switchboard_text = ""
            if include_switchboard and self.switchboard is not None:
                switchboard_text = self._render_switchboard(branch)
                cost = self.token_counter(switchboard_text) if switchboard_text else 0
                join = separator_cost if admitted else 0
                if (
                    switchboard_text
                    and cost <= self.config.switchboard_budget
                    and remaining - cost - join >= self.config.min_conversation_budget
                ):
                    report.switchboard_tokens = cost
                    report.switchboard_included = True
                    remaining -= cost + join
                    admitted += 1
                else:
                    logger.debug(
                        "Switchboard omitted (%d tokens, %d remaining)", cost, remaining,
                    )
                    switchboard_text = ""

            # Tier 5: memories
            memory_budget = min(
                self.config.memory_max_tokens,
                math.floor(remaining * self.config.memory_budget_fraction),
            )
            retrieved = self._retrieve_memories(branch, current_message)
            memory_text = self._format_memories(retrieved)
            if memory_text:
                cost = self.token_counter(memory_text)
                join = separator_cost if admitted else 0
                if cost <= memory_budget and cost + join <= remaining:
                    sections["memories"] = memory_text
                    report.memory_tokens = cost
                    report.memories_included = len(retrieved)
                    memories = retrieved
                    remaining -= cost + join
                    admitted += 1
                else:
                    logger.debug(
                        "Memories dropped (%d tokens > memory budget %d)", cost, memory_budget,
                    )

            if switchboard_text:
                sections["switchboard"] = switchboard_text

            # Tier 6: conversation
            join = separator_cost if admitted else 0
            conversation, used, total, summary_used = self._build_conversation(branch, remaining - join)
            if conversation:
                sections["conversation"] = conversation
                report.conversation_tokens = self.token_counter(conversation)
            report.messages_included = used
            report.messages_dropped = total - used
            report.summary_used = summary_used

        report.separator_tokens = separator_cost * max(0, len(sections) - 1)
        report.total_tokens = (
            report.identity_tokens
            + report.instructions_tokens
            + report.profile_tokens
            + report.switchboard_tokens
            + report.memory_tokens
            + report.conversation_tokens
            + report.separator_tokens
        )
        logger.debug(
            "Assembled context for branch %s: %d/%d tokens (memories=%d, switchboard=%s, summary=%s)",
            branch.id, report.total_tokens, budget, report.memories_included,
            report.switchboard_included, report.summary_used,
        )

        return AssembledContext(
            text=SECTION_SEPARATOR.join(sections.values()),
            sections=sections,
            report=report,
            memories=memories,
        )

    # ------------------------------------------------------------------
    # Switchboard & memories
    # ------------------------------------------------------------------

    def _render_switchboard(self, branch: Branch) -> str:
        try:
            return self.switchboard.render_text(exclude_branch_id=branch.id)
        except Exception as e:
            logger.warning("Switchboard rendering failed, omitting: %s", e)
            return ""

    def build_memory_query(self, branch: Branch, current_message: StoredMessage | None = None) -> str:
        parts: list[str] = []
        if current_message is not None and current_message.content.text:
            parts.append(current_message.content.text)
        recent = self.branches.get_recent_messages(branch.id, max(5, self.config.memory_query_messages))
        for msg in recent[-self.config.memory_query_messages:]:
            if msg.content.text:
                parts.append(msg.content.text)
        if branch.current_topic:
            parts.append(branch.current_topic)
        return " ".join(parts)[:self.config.memory_query_max_chars]

    def _retrieve_memories(self, branch: Branch, current_message: StoredMessage | None) -> list[ScoredMemory]:
        query_text = self.build_memory_query(branch, current_message)
        if not query_text:
            return []
        try:
            return self.memory_store.retrieve(RetrievalQuery(
                query_text=query_text,
                weights=self.config.memory_weights,
                limit=self.config.memory_limit,
                min_score=self.config.memory_min_score,
            ))
        except Exception as e:
            logger.warning("Memory retrieval failed for branch %s: %s", branch.id, e)
            return []

    def _format_memories(self, memories: list[ScoredMemory]) -> str:
        if not memories:
            return ""
        lines = ["## Relevant Memories"]
        for scored in memories:
            lines.append(f"- [{scored.memory.type.value.capitalize()}] {scored.memory.content}")
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Conversation
    # ------------------------------------------------------------------

    def _format_message(self, msg: StoredMessage) -> str:
        sender = self.agent_name if msg.sender_profile_id == AGENT_SENDER_ID else "Human"
        return f"**{sender}:** {msg.content.text or '[no text]'}"

    def _render(self, header: str, lines: list[str]) -> str:
        return "\n".join([header, *lines])

    def _fit_newest(self, header: str, lines: list[str], budget: int) -> list[str]:
        """Newest whole lines whose rendering with ``header`` fits ``budget``."""
        used = self.token_counter(header)
        kept: list[str] = []
        for line in reversed(lines):
            cost = self.token_counter("\n" + line)
            if used + cost > budget:
                break
            kept.append(line)
            used += cost
        kept.reverse()
        # Guard for counters that are not additive across joins.
        while kept and self.token_counter(self._render(header, kept)) > budget:
            kept.pop(0)
        return kept

    def _build_conversation(self, branch: Branch, budget: int) -> tuple[str, int, int, bool]:
        """Return (text, messages included, messages considered, summary used)."""
        messages = self.branches.get_recent_messages(branch.id, self.config.history_fetch_limit)
        if not messages:
            return "", 0, 0, False

        lines = [self._format_message(m) for m in messages]
        full = self._render(HISTORY_HEADER + "\n", lines)
        if self.token_counter(full) <= budget:
            return full, len(lines), len(lines), False

        if branch.summary:
            header = (
                f"{HISTORY_HEADER}\n\n**Earlier in this conversation:**\n{branch.summary}"
                "\n\n**Recent messages:**"
            )
            if self.token_counter(header) <= budget:
                kept = self._fit_newest(header, lines, budget)
                return self._render(header, kept), len(kept), len(lines), True
            logger.debug("Summary for branch %s alone exceeds %d tokens", branch.id, budget)

        header = HISTORY_HEADER + "\n"
        if self.token_counter(header) > budget:
            return "", 0, len(lines), False
        kept = self._fit_newest(header, lines, budget)
        if not kept:
            return "", 0, len(lines), False
        return self._render(header, kept), len(kept), len(lines), False
