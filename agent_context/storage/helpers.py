"""Shared helpers for storage backends."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from ..types import (
    BranchMood,
    MemorySource,
    MessageContent,
    PendingAction,
)

logger = logging.getLogger(__name__)


def dt_to_str(dt: datetime) -> str:
    """UTC ISO-8601 with fixed precision so stored values sort lexically."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def str_to_dt(s: str) -> datetime:
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def opt_dt_to_str(dt: datetime | None) -> str | None:
    return dt_to_str(dt) if dt is not None else None


def opt_str_to_dt(s: str | None) -> datetime | None:
    if not s:
        return None
    try:
        return str_to_dt(s)
    except ValueError:
        logger.warning("Ignoring malformed timestamp %r", s)
        return None


def loads_json(raw: str | None, expected: type, column: str):
    """Decode a JSON column, failing closed to an empty ``expected()``."""
    if raw is None or raw == "":
        return expected()
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning("Malformed JSON in column %s, using empty %s", column, expected.__name__)
        return expected()
    if not isinstance(value, expected):
        logger.warning(
            "Unexpected JSON shape in column %s: %s, using empty %s",
            column, type(value).__name__, expected.__name__,
        )
        return expected()
    return value


def dedupe(items) -> list[str]:
    """Order-preserving de-duplication (set semantics for id/tag lists)."""
    seen: set[str] = set()
    out: list[str] = []
    for item in items or ():
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out


def str_list(raw: str | None, column: str) -> list[str]:
    return dedupe(str(v) for v in loads_json(raw, list, column))


def float_list(raw: str | None, column: str) -> list[float]:
    values = loads_json(raw, list, column)
    try:
        return [float(v) for v in values]
    except (TypeError, ValueError):
        logger.warning("Non-numeric values in column %s, using empty embedding", column)
        return []


# ---------------------------------------------------------------------------
# Structured fields
# ---------------------------------------------------------------------------

def source_to_json(source: MemorySource) -> str:
    return json.dumps({
        "kind": source.kind,
        "branch_id": source.branch_id,
        "profile_id": source.profile_id,
        "message_id": source.message_id,
        "detail": source.detail,
    })


def source_from_json(raw: str | None) -> MemorySource:
    data = loads_json(raw, dict, "memories.source")
    return MemorySource(
        kind=str(data.get("kind", "conversation")),
        branch_id=data.get("branch_id"),
        profile_id=data.get("profile_id"),
        message_id=data.get("message_id"),
        detail=str(data.get("detail", "")),
    )


def mood_to_json(mood: BranchMood) -> str:
    return json.dumps({
        "tone": mood.tone,
        "confidence": mood.confidence,
        "updated_at": dt_to_str(mood.updated_at),
    })


def mood_from_json(raw: str | None) -> BranchMood:
    data = loads_json(raw, dict, "branches.mood")
    mood = BranchMood()
    if "tone" in data:
        mood.tone = str(data["tone"])
    try:
        mood.confidence = float(data.get("confidence", mood.confidence))
    except (TypeError, ValueError):
        logger.warning("Malformed mood confidence %r", data.get("confidence"))
    updated = opt_str_to_dt(data.get("updated_at"))
    if updated is not None:
        mood.updated_at = updated
    return mood


def actions_to_json(actions: list[PendingAction]) -> str:
    return json.dumps([
        {
            "description": a.description,
            "created_at": dt_to_str(a.created_at),
            "due_at": opt_dt_to_str(a.due_at),
        }
        for a in actions
    ])


def actions_from_json(raw: str | None) -> list[PendingAction]:
    actions = []
    for item in loads_json(raw, list, "branches.pending_actions"):
        if not isinstance(item, dict) or "description" not in item:
            logger.warning("Skipping malformed pending action %r", item)
            continue
        action = PendingAction(description=str(item["description"]))
        created = opt_str_to_dt(item.get("created_at"))
        if created is not None:
            action.created_at = created
        action.due_at = opt_str_to_dt(item.get("due_at"))
        actions.append(action)
    return actions


def content_to_json(content: MessageContent) -> str:
    return json.dumps({"text": content.text, "attachments": content.attachments}, default=str)


def content_from_json(raw: str | None) -> MessageContent:
    data = loads_json(raw, dict, "stored_messages.content")
    attachments = data.get("attachments", [])
    if not isinstance(attachments, list):
        attachments = []
    return MessageContent(
        text=str(data.get("text", "")),
        attachments=[a for a in attachments if isinstance(a, dict)],
    )


def metadata_to_json(metadata: dict | None) -> str | None:
    return json.dumps(metadata, default=str) if metadata is not None else None


def metadata_from_json(raw: str | None, column: str) -> dict | None:
    if raw is None:
        return None
    return loads_json(raw, dict, column)
