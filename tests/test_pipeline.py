"""Tests for TurnPipeline: the staged per-message flow."""

import threading
import time
from datetime import timedelta

import pytest

from agent_context.core.pipeline import BranchLocks, TurnPipeline
from agent_context.core.summarizer import BranchSummarizer
from agent_context.types import (
    AGENT_SENDER_ID,
    ProfileRole,
    StorageError,
    SummarizationConfig,
    TurnStage,
)
from tests.conftest import MockLLMProvider, make_event

HAPPY_PATH = [
    TurnStage.RESOLVE,
    TurnStage.STORE_MESSAGE,
    TurnStage.BUILD_CONTEXT,
    TurnStage.RESPOND,
    TurnStage.DISPATCH,
    TurnStage.DONE,
]


@pytest.fixture
def pipeline(branches, memory_store, assembler, switchboard, profiles) -> TurnPipeline:
    return TurnPipeline(
        branches,
        memory_store,
        assembler,
        identity_text="# Identity\nYou are Nova.",
        first_contact_instruction="Introduce yourself.",
        switchboard=switchboard,
        profiles=profiles,
    )


class Recorder:
    def __init__(self, reply: str | None = "Hi Alice!"):
        self.reply = reply
        self.contexts = []

    def __call__(self, context, event):
        self.contexts.append(context)
        return self.reply


class TestRunTurn:
    def test_happy_path(self, pipeline, branches, memory_store, ts):
        responder = Recorder()
        result = pipeline.run_turn(make_event("Hello there", timestamp=ts), responder)

        assert result.stages == HAPPY_PATH
        assert result.stage == TurnStage.DONE
        assert result.first_contact
        assert result.response == "Hi Alice!"
        assert result.incoming.content.text == "Hello there"
        assert result.incoming.metadata == {"platform": "telegram"}
        assert result.outgoing.sender_profile_id == AGENT_SENDER_ID

        messages = branches.get_recent_messages(result.branch.id)
        assert [m.content.text for m in messages] == ["Hello there", "Hi Alice!"]
        assert result.branch.last_agent_response_at == result.outgoing.timestamp

        buffer = memory_store.get_buffer_since(ts - timedelta(seconds=1))
        assert [(e.event_type, e.content) for e in buffer] == [
            ("message.incoming", "Hello there"),
            ("message.outgoing", "Hi Alice!"),
        ]
        assert buffer[0].metadata == {"profile_id": result.profile.id}

    def test_context_contents(self, pipeline, ts):
        responder = Recorder()
        pipeline.run_turn(make_event("Hello there", timestamp=ts), responder)
        context = responder.contexts[0]
        assert context.sections["identity"] == "# Identity\nYou are Nova."
        assert "Introduce yourself." in context.sections["instructions"]
        assert "**Alice**" in context.sections["profile"]
        assert "**Human:** Hello there" in context.sections["conversation"]

    def test_first_contact_only_once(self, pipeline, ts):
        pipeline.run_turn(make_event("one", timestamp=ts), Recorder())
        responder = Recorder()
        result = pipeline.run_turn(make_event("two", timestamp=ts + timedelta(minutes=1)), responder)
        assert not result.first_contact
        assert "instructions" not in responder.contexts[0].sections

    def test_silence(self, pipeline, branches, ts):
        result = pipeline.run_turn(make_event("hmm", timestamp=ts), Recorder(reply=""))
        assert result.stages == HAPPY_PATH
        assert result.response is None
        assert result.outgoing is None
        assert branches.message_count(result.branch.id) == 1
        assert result.branch.last_agent_response_at is None

    def test_blocked_sender_skipped(self, pipeline, profiles, branches, ts):
        first = pipeline.run_turn(make_event("hi", timestamp=ts), Recorder())
        profiles.set_role(first.profile.id, ProfileRole.BLOCKED)

        responder = Recorder()
        result = pipeline.run_turn(make_event("let me in", timestamp=ts + timedelta(minutes=1)), responder)
        assert result.skipped_reason == "blocked"
        assert result.stages == [TurnStage.RESOLVE, TurnStage.STORE_MESSAGE, TurnStage.DONE]
        assert responder.contexts == []
        # The inbound message is still recorded.
        assert branches.message_count(first.branch.id) == 3

    def test_switchboard_on_trigger(self, pipeline, ts):
        pipeline.run_turn(make_event("hey", conversation_id="other", platform_id="u2",
                                     display_name="Bob", timestamp=ts), Recorder())
        responder = Recorder()
        pipeline.run_turn(make_event("Who else are you talking to?", timestamp=ts), responder)
        assert "Bob (stranger)" in responder.contexts[0].sections["switchboard"]

    def test_no_switchboard_without_trigger(self, pipeline, ts):
        pipeline.run_turn(make_event("hey", conversation_id="other", timestamp=ts), Recorder())
        responder = Recorder()
        pipeline.run_turn(make_event("What's the weather?", timestamp=ts), responder)
        assert "switchboard" not in responder.contexts[0].sections

    def test_notes_delivered_as_instructions(self, pipeline, switchboard, ts):
        other = pipeline.run_turn(make_event("hey", conversation_id="other", timestamp=ts), Recorder())
        first = pipeline.run_turn(make_event("one", timestamp=ts), Recorder())
        switchboard.add_note(other.branch.id, "Bob says happy birthday", to_branch_id=first.branch.id)

        responder = Recorder()
        result = pipeline.run_turn(make_event("two", timestamp=ts + timedelta(minutes=1)), responder)
        assert [n.content for n in result.delivered_notes] == ["Bob says happy birthday"]
        assert "Note from another conversation: Bob says happy birthday" in (
            responder.contexts[0].sections["instructions"]
        )
        assert switchboard.pending_notes_for(first.branch.id) == []

    def test_summarizer_runs_before_context(self, branches, memory_store, assembler, ts):
        llm = MockLLMProvider("Earlier they discussed gardens.")
        summarizer = BranchSummarizer(llm, branches, SummarizationConfig(keep_recent_messages=2))
        pipeline = TurnPipeline(branches, memory_store, assembler, summarizer=summarizer)
        # Budget tiny enough that any backlog triggers summarization.
        assembler.config.max_context_tokens = assembler.config.reserved_for_response + 10

        for i in range(4):
            pipeline.run_turn(make_event(f"message {i}", timestamp=ts + timedelta(seconds=i)), Recorder(None))
        assert llm.calls
        branch = branches.list_branches()[0]
        assert branch.summary == "Earlier they discussed gardens."

    def test_wants_switchboard(self, pipeline):
        assert pipeline.wants_switchboard("WHO ELSE is here?")
        assert not pipeline.wants_switchboard("hello")
        assert not pipeline.wants_switchboard("")


class TestFailures:
    def test_responder_error_marks_failed(self, pipeline, ts):
        def boom(context, event):
            raise RuntimeError("model offline")

        with pytest.raises(RuntimeError, match="model offline"):
            pipeline.run_turn(make_event("hi", timestamp=ts), boom)

    def test_failed_stage_recorded(self, pipeline, branches, ts, monkeypatch):
        def fail(*args, **kwargs):
            raise StorageError("disk full")

        monkeypatch.setattr(branches, "add_message", fail)
        captured = {}
        original = pipeline._run

        def run(result, responder, mood_text):
            captured["result"] = result
            return original(result, responder, mood_text)

        monkeypatch.setattr(pipeline, "_run", run)
        with pytest.raises(StorageError):
            pipeline.run_turn(make_event("hi", timestamp=ts), Recorder())
        result = captured["result"]
        assert result.stages == [TurnStage.RESOLVE, TurnStage.STORE_MESSAGE, TurnStage.FAILED]
        assert isinstance(result.error, StorageError)

    def test_failed_turn_leaves_notes_pending(self, pipeline, switchboard, ts):
        other = pipeline.run_turn(make_event("hey", conversation_id="other", timestamp=ts), Recorder())
        first = pipeline.run_turn(make_event("one", timestamp=ts), Recorder())
        note = switchboard.add_note(other.branch.id, "Bob says hi", to_branch_id=first.branch.id)

        def boom(context, event):
            assert "Note from another conversation: Bob says hi" in context.sections["instructions"]
            raise RuntimeError("model offline")

        with pytest.raises(RuntimeError):
            pipeline.run_turn(make_event("two", timestamp=ts + timedelta(minutes=1)), boom)
        assert [n.id for n in switchboard.pending_notes_for(first.branch.id)] == [note.id]

        responder = Recorder()
        result = pipeline.run_turn(make_event("three", timestamp=ts + timedelta(minutes=2)), responder)
        assert [n.id for n in result.delivered_notes] == [note.id]
        assert "Bob says hi" in responder.contexts[0].sections["instructions"]
        assert switchboard.pending_notes_for(first.branch.id) == []

    def test_lock_released_after_failure(self, pipeline, ts):
        def boom(context, event):
            raise RuntimeError("x")

        with pytest.raises(RuntimeError):
            pipeline.run_turn(make_event("hi", timestamp=ts), boom)
        result = pipeline.run_turn(make_event("again", timestamp=ts), Recorder())
        assert result.stage == TurnStage.DONE


class TestBranchLocks:
    def test_same_key_same_lock(self):
        locks = BranchLocks()
        assert locks.get("c", "1") is locks.get("c", "1")
        assert locks.get("c", "1") is not locks.get("c", "2")
        assert len(locks) == 2

    def test_evict_idle(self):
        locks = BranchLocks()
        locks.get("c", "1")
        locks.get("c", "2")
        assert locks.evict([("c", "1"), ("c", "9")]) == 1
        assert len(locks) == 1

    def test_evict_skips_held_lock(self):
        locks = BranchLocks()
        with locks.hold("c", "1"):
            assert locks.evict([("c", "1")]) == 0
            assert len(locks) == 1
        assert locks.evict([("c", "1")]) == 1
        assert len(locks) == 0

    def test_same_branch_turns_serialized(self, pipeline, ts):
        active = 0
        peak = 0
        guard = threading.Lock()

        def slow(context, event):
            nonlocal active, peak
            with guard:
                active += 1
                peak = max(peak, active)
            time.sleep(0.05)
            with guard:
                active -= 1
            return None

        threads = [
            threading.Thread(target=pipeline.run_turn, args=(make_event(f"m{i}", timestamp=ts), slow))
            for i in range(3)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert peak == 1
