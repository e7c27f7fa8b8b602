"""BranchSummarizer: rolling LLM summaries and topic extraction for branches."""

from __future__ import annotations

import json
import logging
import re
from typing import Callable

from ..token_counter import estimate_tokens
from ..types import AGENT_SENDER_ID, LLMProvider, StoredMessage, SummarizationConfig
from .branch_manager import BranchManager

logger = logging.getLogger(__name__)

SUMMARY_SYSTEM_PROMPT = "Create a concise but complete conversation summary."

SUMMARY_PROMPT = """\
Summarize this conversation, preserving:
- Key topics discussed
- Important decisions or commitments made
- Names, dates, numbers and other specific details
- The current state of the conversation
- Any pending questions or tasks
{existing}
Conversation:
{transcript}

Write a concise summary of {target_tokens} tokens or fewer (2-4 paragraphs max).
Respond with the summary text only."""

EXISTING_SUMMARY_BLOCK = """
The conversation so far has already been summarized. Fold the new messages
into this existing summary rather than repeating it:

Existing summary:
{summary}
"""

TOPIC_SYSTEM_PROMPT = "Extract the main topic in 2-5 words."

TOPIC_PROMPT = """\
What is the current topic of this conversation? One short phrase only.

{transcript}"""

DEFAULT_TOPIC = "General conversation"


class BranchSummarizer:
    """Keeps ``Branch.summary`` current so older history can be compressed.

    The most recent ``keep_recent_messages`` are never summarized; they are
    what the assembler shows verbatim. Summaries fold forward: each run
    covers only messages after ``summary_up_to_message_id``.
    """

    def __init__(
        self,
        llm_provider: LLMProvider,
        branches: BranchManager,
        config: SummarizationConfig | None = None,
        token_counter: Callable[[str], int] | None = None,
        agent_name: str = "Agent",
    ) -> None:
        self.llm = llm_provider
        self.branches = branches
        self.config = config or SummarizationConfig()
        self.token_counter = token_counter or estimate_tokens
        self.agent_name = agent_name

    def _format_transcript(self, messages: list[StoredMessage]) -> str:
        lines = []
        for m in messages:
            sender = self.agent_name if m.sender_profile_id == AGENT_SENDER_ID else "User"
            lines.append(f"{sender}: {m.content.text or '[no text]'}")
        return "\n".join(lines)

    def _summarizable(self, branch_id: str, summary_up_to: str | None) -> list[StoredMessage]:
        unsummarized = self.branches.get_messages_after(branch_id, summary_up_to)
        keep = self.config.keep_recent_messages
        if len(unsummarized) <= keep:
            return []
        return unsummarized[:len(unsummarized) - keep] if keep else unsummarized

    def _chunks(self, messages: list[StoredMessage]) -> list[list[StoredMessage]]:
        """Split messages so each chunk's transcript stays under the char cap."""
        limit = self.config.max_transcript_chars
        chunks: list[list[StoredMessage]] = []
        current: list[StoredMessage] = []
        size = 0
        for m in messages:
            line_len = len(m.content.text or "") + 16
            if current and size + line_len > limit:
                chunks.append(current)
                current, size = [], 0
            current.append(m)
            size += line_len
        if current:
            chunks.append(current)
        return chunks

    def summarize_branch(self, branch_id: str) -> str | None:
        """Fold older unsummarized messages into the branch summary.

        Returns the summary now stored (possibly unchanged). On LLM failure
        the previous summary is kept.
        """
        branch = self.branches.require_branch(branch_id)
        summary = branch.summary
        up_to = branch.summary_up_to_message_id

        to_summarize = self._summarizable(branch_id, up_to)
        if not to_summarize:
            return summary

        for chunk in self._chunks(to_summarize):
            existing = EXISTING_SUMMARY_BLOCK.format(summary=summary) if summary else ""
            prompt = SUMMARY_PROMPT.format(
                existing=existing,
                transcript=self._format_transcript(chunk),
                target_tokens=self.config.max_tokens,
            )
            try:
                response = self.llm.complete(SUMMARY_SYSTEM_PROMPT, prompt, self.config.max_tokens)
            except Exception as e:
                logger.warning("Summarization failed for branch %s: %s", branch_id, e)
                break
            text = self._parse_response(response)
            if not text:
                logger.warning("Empty summary for branch %s, keeping previous", branch_id)
                break
            summary = text
            up_to = chunk[-1].id
            self.branches.save_summary(branch_id, summary, up_to)

        if up_to != branch.summary_up_to_message_id:
            logger.info(
                "Summarized branch %s (%d tokens) through message %s",
                branch_id, self.token_counter(summary or ""), up_to,
            )
        return summary

    def summarize_if_needed(self, branch_id: str, budget_tokens: int) -> str | None:
        """Summarize only when the unsummarized transcript nears ``budget_tokens``."""
        branch = self.branches.require_branch(branch_id)
        pending = self.branches.get_messages_after(branch_id, branch.summary_up_to_message_id)
        tokens = self.token_counter(self._format_transcript(pending))
        threshold = self.config.trigger_ratio * budget_tokens
        if tokens <= threshold:
            logger.debug(
                "Branch %s: %d unsummarized tokens under threshold %.0f",
                branch_id, tokens, threshold,
            )
            return branch.summary
        return self.summarize_branch(branch_id)

    def extract_topic(self, branch_id: str) -> str:
        messages = self.branches.get_recent_messages(branch_id, 5)
        if not messages:
            return DEFAULT_TOPIC
        transcript = " ".join(m.content.text for m in messages if m.content.text)
        topic = DEFAULT_TOPIC
        try:
            response = self.llm.complete(TOPIC_SYSTEM_PROMPT, TOPIC_PROMPT.format(transcript=transcript), 50)
            parsed = self._parse_response(response).splitlines()
            if parsed and parsed[0].strip():
                topic = parsed[0].strip().strip("\"'.").strip()[:80] or DEFAULT_TOPIC
        except Exception as e:
            logger.warning("Topic extraction failed for branch %s: %s", branch_id, e)
        self.branches.update_topic(branch_id, topic)
        return topic

    def _parse_response(self, response: str) -> str:
        """Strip fences and thinking blocks. Accepts {"summary": ...} JSON too."""
        text = (response or "").strip()

        # Strip markdown fences if present
        if text.startswith("```"):
            lines = text.split("\n")
            lines = lines[1:]
            if lines and lines[-1].strip() == "```":
                lines = lines[:-1]
            text = "\n".join(lines).strip()

        # Strip thinking tags
        if "<think>" in text:
            text = re.sub(r"<think>.*?</think>", "", text, flags=re.DOTALL).strip()

        if text.startswith("{"):
            try:
                data = json.loads(text)
            except json.JSONDecodeError:
                return text
            if isinstance(data, dict):
                for key in ("summary", "topic"):
                    if isinstance(data.get(key), str):
                        return data[key].strip()
        return text
