"""Tests for ContextAssembler tiered budgeting."""

from datetime import timedelta
from unittest.mock import patch

import pytest

from agent_context.core.assembler import (
    HISTORY_HEADER,
    ContextAssembler,
    format_profile,
    load_identity,
)
from agent_context.token_counter import estimate_tokens
from agent_context.types import (
    AGENT_SENDER_ID,
    AssemblerConfig,
    MemoryType,
    MessageContent,
    Profile,
    ProfileFact,
    ProfileRole,
    StorageError,
    StoredMessage,
)
from tests.conftest import make_event

IDENTITY = "# Identity\nYou are Nova, a friendly assistant."


@pytest.fixture
def branch(branches, ts):
    return branches.resolve_event(make_event(timestamp=ts)).branch


def _fill(branches, branch, ts, count, width=30):
    for i in range(count):
        branches.add_message(branch.id, "p1", f"message {i:02d} " + "x" * width, timestamp=ts + timedelta(seconds=i))


def _small(memory_store, branches, switchboard=None, **overrides) -> ContextAssembler:
    config = AssemblerConfig(**{"reserved_for_response": 0, "min_conversation_budget": 0, **overrides})
    return ContextAssembler(memory_store, branches, config, switchboard=switchboard)


class TestBasicAssembly:
    def test_full_history_fits(self, assembler, branches, branch, ts):
        branches.add_message(branch.id, "p1", "Hi Nova!", timestamp=ts)
        branches.add_message(branch.id, AGENT_SENDER_ID, "Hello!", timestamp=ts + timedelta(seconds=1))
        result = assembler.assemble(branch, IDENTITY, profile_text="## Partner\nAlice")

        assert list(result.sections) == ["identity", "profile", "conversation"]
        assert result.sections["conversation"] == f"{HISTORY_HEADER}\n\n**Human:** Hi Nova!\n**Agent:** Hello!"
        assert result.text == "\n\n".join(result.sections.values())
        report = result.report
        assert report.budget_tokens == 6000
        assert report.messages_included == 2
        assert report.messages_dropped == 0
        assert not report.summary_used
        assert not report.over_budget
        assert report.identity_tokens == estimate_tokens(IDENTITY)
        assert report.separator_tokens == 2 * estimate_tokens("\n\n")
        assert report.total_tokens == (
            report.identity_tokens + report.profile_tokens + report.conversation_tokens
            + report.separator_tokens
        )

    def test_agent_name_used(self, memory_store, branches, branch, ts):
        branches.add_agent_message(branch.id, "Hello!")
        assembler = ContextAssembler(memory_store, branches, agent_name="Nova")
        assert "**Nova:** Hello!" in assembler.assemble(branch, IDENTITY).text

    def test_empty_branch(self, assembler, branch):
        result = assembler.assemble(branch, IDENTITY)
        assert list(result.sections) == ["identity"]
        assert result.report.messages_included == 0

    def test_mood_appended_to_identity(self, assembler, branch):
        result = assembler.assemble(branch, IDENTITY, mood_text="Feeling curious.")
        assert result.sections["identity"] == f"{IDENTITY}\n\n## Current State\nFeeling curious."

    def test_instructions_block(self, assembler, branch):
        result = assembler.assemble(branch, IDENTITY, instructions=["Introduce yourself.", ""])
        assert result.sections["instructions"] == "## Priority Instructions\n\nIntroduce yourself."

    def test_render_order(self, assembler, memory_store, branches, branch, ts):
        memory_store.store(MemoryType.SEMANTIC, "Alice loves coffee", importance=0.8)
        branches.resolve_event(make_event(conversation_id="other", platform_id="u2", display_name="Bob", timestamp=ts))
        current = branches.add_message(branch.id, "p1", "Any coffee ideas?", timestamp=ts)

        result = assembler.assemble(
            branch, IDENTITY,
            profile_text="## Partner\nAlice",
            current_message=current,
            instructions=["Be brief."],
            include_switchboard=True,
        )
        assert list(result.sections) == [
            "identity", "instructions", "profile", "memories", "switchboard", "conversation",
        ]
        positions = [result.text.index(s) for s in result.sections.values()]
        assert positions == sorted(positions)
        assert result.sections["memories"] == "## Relevant Memories\n- [Semantic] Alice loves coffee"
        assert result.report.memories_included == 1
        assert result.memories[0].memory.content == "Alice loves coffee"
        assert result.report.switchboard_included
        assert "Bob (stranger)" in result.sections["switchboard"]


class TestBudget:
    def test_fixed_tiers_over_budget(self, assembler, branches, branch, ts):
        _fill(branches, branch, ts, 3)
        identity = "x" * 24_100
        result = assembler.assemble(branch, identity, profile_text="## Partner")
        assert result.report.over_budget
        assert list(result.sections) == ["identity", "profile"]
        assert result.report.total_tokens == (
            estimate_tokens(identity) + estimate_tokens("## Partner") + estimate_tokens("\n\n")
        )

    def test_switchboard_not_requested(self, assembler, branches, branch, ts):
        branches.resolve_event(make_event(conversation_id="other", timestamp=ts))
        result = assembler.assemble(branch, IDENTITY)
        assert "switchboard" not in result.sections
        assert not result.report.switchboard_included

    def test_switchboard_omitted_when_conversation_would_starve(
        self, memory_store, branches, switchboard, branch, ts,
    ):
        branches.resolve_event(make_event(conversation_id="other", timestamp=ts))
        assembler = _small(
            memory_store, branches, switchboard,
            max_context_tokens=2500, min_conversation_budget=2000,
        )
        result = assembler.assemble(branch, "i" * 2400, include_switchboard=True)
        assert not result.report.switchboard_included
        assert "switchboard" not in result.sections

    def test_switchboard_over_its_cap(self, memory_store, branches, switchboard, branch, ts):
        branches.resolve_event(make_event(conversation_id="other", timestamp=ts))
        assembler = _small(memory_store, branches, switchboard, switchboard_budget=5)
        result = assembler.assemble(branch, IDENTITY, include_switchboard=True)
        assert not result.report.switchboard_included

    def test_memories_dropped_whole_when_too_big(self, memory_store, branches, branch, ts):
        memory_store.store(MemoryType.SEMANTIC, "coffee " * 50, importance=1.0)
        current = branches.add_message(branch.id, "p1", "coffee?", timestamp=ts)
        assembler = _small(memory_store, branches, memory_max_tokens=20)
        result = assembler.assemble(branch, IDENTITY, current_message=current)
        assert "memories" not in result.sections
        assert result.report.memories_included == 0
        assert result.memories == []

    def test_memory_retrieval_failure_is_not_fatal(self, assembler, branch, ts):
        current = StoredMessage(branch_id=branch.id, sender_profile_id="p1",
                                content=MessageContent(text="coffee"), timestamp=ts)
        with patch.object(assembler.memory_store, "retrieve", side_effect=StorageError("locked")):
            result = assembler.assemble(branch, IDENTITY, current_message=current)
        assert "memories" not in result.sections


class TestConversationTruncation:
    def test_summary_plus_newest(self, memory_store, branches, branch, ts):
        _fill(branches, branch, ts, 20)
        branches.save_summary(branch.id, "They met and talked.", None)
        branch = branches.get_branch(branch.id)
        assembler = _small(memory_store, branches, max_context_tokens=200)

        result = assembler.assemble(branch, "")
        report = result.report
        conversation = result.sections["conversation"]
        assert report.summary_used
        assert 0 < report.messages_included < 20
        assert report.messages_dropped == 20 - report.messages_included
        assert "**Earlier in this conversation:**\nThey met and talked." in conversation
        assert conversation.endswith("message 19 " + "x" * 30)
        assert "message 00" not in conversation
        assert report.total_tokens <= 200

    def test_newest_only_without_summary(self, memory_store, branches, branch, ts):
        _fill(branches, branch, ts, 20)
        assembler = _small(memory_store, branches, max_context_tokens=200)
        result = assembler.assemble(branch, "")
        conversation = result.sections["conversation"]
        assert conversation.startswith(HISTORY_HEADER + "\n")
        assert conversation.endswith("message 19 " + "x" * 30)
        assert not result.report.summary_used
        assert 0 < result.report.messages_included < 20
        assert result.report.conversation_tokens <= 200

    def test_oversized_summary_skipped(self, memory_store, branches, branch, ts):
        _fill(branches, branch, ts, 20)
        branches.save_summary(branch.id, "s" * 1000, None)
        branch = branches.get_branch(branch.id)
        assembler = _small(memory_store, branches, max_context_tokens=200)
        result = assembler.assemble(branch, "")
        assert not result.report.summary_used
        assert "s" * 100 not in result.text
        assert result.report.messages_included > 0

    def test_no_room_for_conversation(self, memory_store, branches, branch, ts):
        _fill(branches, branch, ts, 3)
        assembler = _small(memory_store, branches, max_context_tokens=10)
        result = assembler.assemble(branch, "x" * 40)
        assert "conversation" not in result.sections
        assert result.report.messages_dropped == 3
        assert not result.report.over_budget

    def test_total_never_exceeds_budget(self, memory_store, branches, switchboard, branch, ts):
        _fill(branches, branch, ts, 60, width=80)
        branches.resolve_event(make_event(conversation_id="other", timestamp=ts))
        memory_store.store(MemoryType.SEMANTIC, "message about coffee", importance=0.9)
        assembler = _small(memory_store, branches, switchboard, max_context_tokens=900)
        result = assembler.assemble(branch, IDENTITY, profile_text="## Partner\nAlice", include_switchboard=True)
        assert result.report.total_tokens <= 900
        assert estimate_tokens(result.text) <= 900

    def test_rendered_text_fits_with_separators(self, memory_store, branches, branch, ts):
        _fill(branches, branch, ts, 60, width=80)
        assembler = _small(memory_store, branches, max_context_tokens=300)
        result = assembler.assemble(branch, IDENTITY, profile_text="## Partner\nAlice")
        report = result.report
        assert list(result.sections) == ["identity", "profile", "conversation"]
        assert report.separator_tokens == 2 * estimate_tokens("\n\n")
        assert estimate_tokens(result.text) <= report.total_tokens <= 300


class TestMemoryQuery:
    def test_combines_current_recent_and_topic(self, assembler, branches, branch, ts):
        _fill(branches, branch, ts, 5, width=0)
        branches.update_topic(branch.id, "coffee")
        branch = branches.get_branch(branch.id)
        current = StoredMessage(branch_id=branch.id, sender_profile_id="p1",
                                content=MessageContent(text="now"), timestamp=ts)
        query = assembler.build_memory_query(branch, current)
        assert query == "now message 02  message 03  message 04  coffee"

    def test_more_query_messages_than_default_fetch(self, memory_store, branches, branch, ts):
        _fill(branches, branch, ts, 10, width=0)
        assembler = _small(memory_store, branches, memory_query_messages=8)
        query = assembler.build_memory_query(branch)
        assert query.startswith("message 02 ")
        assert "message 09" in query
        assert "message 01" not in query

    def test_capped(self, assembler, branches, branch, ts):
        current = StoredMessage(branch_id=branch.id, sender_profile_id="p1",
                                content=MessageContent(text="z" * 900), timestamp=ts)
        assert len(assembler.build_memory_query(branch, current)) == 500


class TestFormatProfile:
    def test_none(self):
        assert format_profile(None) == ""

    def test_facts_filtered_and_sorted(self):
        profile = Profile(
            display_name="Alice",
            role=ProfileRole.TRUSTED,
            facts=[
                ProfileFact(content="low confidence", confidence=0.2),
                ProfileFact(content="likes tea", confidence=0.7),
                ProfileFact(content="has a cat", confidence=0.95),
            ],
            communication_style="terse",
        )
        text = format_profile(profile)
        assert text.startswith("## Current Conversation Partner\nYou're talking to **Alice**")
        assert "Role: A trusted friend." in text
        assert text.index("has a cat") < text.index("likes tea")
        assert "low confidence" not in text
        assert text.endswith("Their style: terse")


class TestLoadIdentity:
    def test_priority_order(self, tmp_path):
        (tmp_path / "soul.md").write_text("SOUL")
        (tmp_path / "rules.md").write_text("RULES")
        text = load_identity(
            [{"path": "rules.md", "priority": 3}, {"path": "soul.md", "priority": 9}],
            base_path=tmp_path,
        )
        assert text == "SOUL\n\n---\n\nRULES"

    def test_missing_file_skipped(self, tmp_path):
        (tmp_path / "soul.md").write_text("SOUL")
        assert load_identity([{"path": "soul.md"}, {"path": "nope.md"}], base_path=tmp_path) == "SOUL"

    def test_empty(self):
        assert load_identity([]) == ""
