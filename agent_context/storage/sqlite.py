"""SQLiteStore: primary storage backend using stdlib sqlite3."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Iterator

from ..core.store import BranchStorage, MemoryStorage, NoteStorage, ProfileStorage
from ..types import (
    Branch,
    BranchParticipant,
    BranchStatus,
    BufferEntry,
    CrossBranchNote,
    MemoryRecord,
    MemoryStatus,
    MemoryType,
    NoteStatus,
    PlatformIdentity,
    Profile,
    ProfileFact,
    ProfileRole,
    StorageError,
    StoredMessage,
    TimeRange,
)
from .helpers import (
    actions_from_json,
    actions_to_json,
    content_from_json,
    content_to_json,
    dedupe,
    dt_to_str,
    float_list,
    metadata_from_json,
    metadata_to_json,
    mood_from_json,
    mood_to_json,
    opt_dt_to_str,
    opt_str_to_dt,
    source_from_json,
    source_to_json,
    str_list,
    str_to_dt,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS memories (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    content TEXT NOT NULL,
    importance REAL NOT NULL DEFAULT 0.5,
    last_accessed TEXT NOT NULL,
    access_count INTEGER NOT NULL DEFAULT 0,
    source TEXT NOT NULL DEFAULT '{}',
    related_profile_ids TEXT NOT NULL DEFAULT '[]',
    related_branch_ids TEXT NOT NULL DEFAULT '[]',
    tags TEXT NOT NULL DEFAULT '[]',
    embedding TEXT NOT NULL DEFAULT '[]',
    embedding_dim INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    expires_at TEXT,
    status TEXT NOT NULL DEFAULT 'active'
);

CREATE TABLE IF NOT EXISTS memory_buffer (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    branch_id TEXT,
    event_type TEXT NOT NULL,
    content TEXT NOT NULL,
    metadata TEXT,
    timestamp TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS branches (
    id TEXT PRIMARY KEY,
    channel_type TEXT NOT NULL,
    channel_id TEXT NOT NULL,
    conversation_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    mood TEXT NOT NULL DEFAULT '{}',
    current_topic TEXT,
    summary TEXT,
    summary_up_to_message_id TEXT,
    pending_actions TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    last_activity_at TEXT NOT NULL,
    last_agent_response_at TEXT,
    UNIQUE (channel_id, conversation_id)
);

CREATE TABLE IF NOT EXISTS branch_participants (
    branch_id TEXT NOT NULL,
    profile_id TEXT NOT NULL,
    role TEXT NOT NULL DEFAULT 'primary',
    joined_at TEXT NOT NULL,
    PRIMARY KEY (branch_id, profile_id),
    FOREIGN KEY (branch_id) REFERENCES branches(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS stored_messages (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    branch_id TEXT NOT NULL,
    sender_profile_id TEXT NOT NULL,
    content TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    metadata TEXT,
    FOREIGN KEY (branch_id) REFERENCES branches(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS profiles (
    id TEXT PRIMARY KEY,
    display_name TEXT NOT NULL,
    role TEXT NOT NULL DEFAULT 'stranger',
    first_seen TEXT NOT NULL,
    last_seen TEXT NOT NULL,
    total_interactions INTEGER NOT NULL DEFAULT 0,
    communication_style TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS platform_identities (
    platform TEXT NOT NULL,
    channel_id TEXT NOT NULL,
    platform_user_id TEXT NOT NULL,
    profile_id TEXT NOT NULL,
    platform_username TEXT NOT NULL DEFAULT '',
    linked_at TEXT NOT NULL,
    linked_by TEXT NOT NULL DEFAULT 'auto',
    PRIMARY KEY (platform, channel_id, platform_user_id),
    FOREIGN KEY (profile_id) REFERENCES profiles(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS profile_facts (
    id TEXT PRIMARY KEY,
    profile_id TEXT NOT NULL,
    content TEXT NOT NULL,
    category TEXT NOT NULL DEFAULT 'general',
    confidence REAL NOT NULL DEFAULT 0.5,
    learned_at TEXT NOT NULL,
    FOREIGN KEY (profile_id) REFERENCES profiles(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS cross_branch_notes (
    id TEXT PRIMARY KEY,
    from_branch_id TEXT NOT NULL,
    to_branch_id TEXT,
    to_profile_id TEXT,
    content TEXT NOT NULL,
    created_at TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    delivered_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_memories_status_importance ON memories(status, importance);
CREATE INDEX IF NOT EXISTS idx_memories_created_at ON memories(created_at);
CREATE INDEX IF NOT EXISTS idx_memory_buffer_timestamp ON memory_buffer(timestamp);
CREATE INDEX IF NOT EXISTS idx_branches_status ON branches(status);
CREATE INDEX IF NOT EXISTS idx_branch_participants_profile ON branch_participants(profile_id);
CREATE INDEX IF NOT EXISTS idx_stored_messages_branch ON stored_messages(branch_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_profile_facts_profile ON profile_facts(profile_id);
CREATE INDEX IF NOT EXISTS idx_notes_status ON cross_branch_notes(status);
"""

# Mutable branch columns and their encoders.
_BRANCH_FIELDS = {
    "channel_type": str,
    "status": lambda v: BranchStatus(v).value,
    "mood": mood_to_json,
    "current_topic": lambda v: v,
    "summary": lambda v: v,
    "summary_up_to_message_id": lambda v: v,
    "pending_actions": actions_to_json,
    "last_activity_at": dt_to_str,
    "last_agent_response_at": opt_dt_to_str,
}

_PROFILE_FIELDS = {
    "display_name": str,
    "role": lambda v: ProfileRole(v).value,
    "communication_style": str,
    "last_seen": dt_to_str,
}


def _enum(cls: type[Enum], value, default, column: str):
    try:
        return cls(value)
    except ValueError:
        logger.warning("Unknown %s value %r in column %s, using %s", cls.__name__, value, column, default.value)
        return default


def _row_to_memory(row: sqlite3.Row) -> MemoryRecord:
    return MemoryRecord(
        id=row["id"],
        type=_enum(MemoryType, row["type"], MemoryType.EPISODIC, "memories.type"),
        content=row["content"],
        importance=row["importance"],
        last_accessed=str_to_dt(row["last_accessed"]),
        access_count=row["access_count"],
        source=source_from_json(row["source"]),
        related_profile_ids=str_list(row["related_profile_ids"], "memories.related_profile_ids"),
        related_branch_ids=str_list(row["related_branch_ids"], "memories.related_branch_ids"),
        tags=str_list(row["tags"], "memories.tags"),
        embedding=float_list(row["embedding"], "memories.embedding"),
        created_at=str_to_dt(row["created_at"]),
        expires_at=opt_str_to_dt(row["expires_at"]),
        status=_enum(MemoryStatus, row["status"], MemoryStatus.ACTIVE, "memories.status"),
    )


def _row_to_buffer(row: sqlite3.Row) -> BufferEntry:
    return BufferEntry(
        id=row["id"],
        branch_id=row["branch_id"],
        event_type=row["event_type"],
        content=row["content"],
        metadata=metadata_from_json(row["metadata"], "memory_buffer.metadata"),
        timestamp=str_to_dt(row["timestamp"]),
    )


def _row_to_message(row: sqlite3.Row) -> StoredMessage:
    return StoredMessage(
        id=row["id"],
        branch_id=row["branch_id"],
        sender_profile_id=row["sender_profile_id"],
        content=content_from_json(row["content"]),
        timestamp=str_to_dt(row["timestamp"]),
        metadata=metadata_from_json(row["metadata"], "stored_messages.metadata"),
    )


def _row_to_note(row: sqlite3.Row) -> CrossBranchNote:
    return CrossBranchNote(
        id=row["id"],
        from_branch_id=row["from_branch_id"],
        to_branch_id=row["to_branch_id"],
        to_profile_id=row["to_profile_id"],
        content=row["content"],
        created_at=str_to_dt(row["created_at"]),
        status=_enum(NoteStatus, row["status"], NoteStatus.PENDING, "cross_branch_notes.status"),
        delivered_at=opt_str_to_dt(row["delivered_at"]),
    )


class SQLiteStore(MemoryStorage, BranchStorage, ProfileStorage, NoteStorage):
    """SQLite-backed storage for every persistent record.

    One connection per store, shared across threads and guarded by a
    re-entrant lock. Each write is a single transaction; sqlite3 errors
    surface as StorageError.
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        if str(db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._ensure_schema()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
        return self._conn

    def _ensure_schema(self) -> None:
        with self._lock:
            try:
                conn = self._get_conn()
                conn.executescript(SCHEMA_SQL)
                version = conn.execute("PRAGMA user_version").fetchone()[0]
                if version < SCHEMA_VERSION:
                    conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
                conn.commit()
            except sqlite3.Error as e:
                raise StorageError(f"Cannot initialize database {self.db_path}: {e}") from e

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        """One write transaction; rolls back and raises StorageError on failure."""
        with self._lock:
            conn = self._get_conn()
            try:
                yield conn
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StorageError(str(e)) from e
            except BaseException:
                conn.rollback()
                raise

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._get_conn()
            except sqlite3.Error as e:
                raise StorageError(str(e)) from e

    @property
    def schema_version(self) -> int:
        with self._read() as conn:
            return conn.execute("PRAGMA user_version").fetchone()[0]

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------

    def insert_memory(self, record: MemoryRecord) -> None:
        with self._tx() as conn:
            dim = len(record.embedding)
            if dim:
                existing = self.embedding_dimension()
                if existing is not None and existing != dim:
                    raise ValueError(
                        f"Embedding dimension {dim} does not match store dimension {existing}"
                    )
            conn.execute(
                """INSERT INTO memories
                (id, type, content, importance, last_accessed, access_count, source,
                 related_profile_ids, related_branch_ids, tags, embedding, embedding_dim,
                 created_at, expires_at, status)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    record.id,
                    record.type.value,
                    record.content,
                    record.importance,
                    dt_to_str(record.last_accessed),
                    record.access_count,
                    source_to_json(record.source),
                    json.dumps(dedupe(record.related_profile_ids)),
                    json.dumps(dedupe(record.related_branch_ids)),
                    json.dumps(dedupe(record.tags)),
                    json.dumps(record.embedding),
                    dim,
                    dt_to_str(record.created_at),
                    opt_dt_to_str(record.expires_at),
                    record.status.value,
                ),
            )

    def get_memory(self, memory_id: str) -> MemoryRecord | None:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM memories WHERE id = ?", (memory_id,)).fetchone()
        return _row_to_memory(row) if row else None

    def query_memory_candidates(
        self,
        limit: int,
        now: datetime,
        type: MemoryType | None = None,
        time_range: TimeRange | None = None,
        min_importance: float | None = None,
    ) -> list[MemoryRecord]:
        clauses = ["status = ?", "(expires_at IS NULL OR expires_at > ?)"]
        params: list = [MemoryStatus.ACTIVE.value, dt_to_str(now)]
        if type is not None:
            clauses.append("type = ?")
            params.append(MemoryType(type).value)
        if time_range is not None:
            if time_range.start is not None:
                clauses.append("created_at >= ?")
                params.append(dt_to_str(time_range.start))
            if time_range.end is not None:
                clauses.append("created_at <= ?")
                params.append(dt_to_str(time_range.end))
        if min_importance is not None:
            clauses.append("importance >= ?")
            params.append(min_importance)
        params.append(limit)

        with self._read() as conn:
            rows = conn.execute(
                f"""SELECT * FROM memories WHERE {' AND '.join(clauses)}
                ORDER BY importance DESC, created_at DESC LIMIT ?""",
                params,
            ).fetchall()
        return [_row_to_memory(r) for r in rows]

    def list_recent_memories(self, limit: int = 20, type: MemoryType | None = None) -> list[MemoryRecord]:
        query = "SELECT * FROM memories WHERE status = ?"
        params: list = [MemoryStatus.ACTIVE.value]
        if type is not None:
            query += " AND type = ?"
            params.append(MemoryType(type).value)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with self._read() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_memory(r) for r in rows]

    def list_memories_for_profile(
        self, profile_id: str, type: MemoryType | None = None, limit: int = 20,
    ) -> list[MemoryRecord]:
        # related_profile_ids is a JSON list; filter after decoding so a
        # malformed row simply never matches.
        query = "SELECT * FROM memories WHERE status = ? AND related_profile_ids LIKE ?"
        params: list = [MemoryStatus.ACTIVE.value, f"%{json.dumps(profile_id)}%"]
        if type is not None:
            query += " AND type = ?"
            params.append(MemoryType(type).value)
        query += " ORDER BY created_at DESC"
        results: list[MemoryRecord] = []
        with self._read() as conn:
            for row in conn.execute(query, params):
                record = _row_to_memory(row)
                if profile_id in record.related_profile_ids:
                    results.append(record)
                    if len(results) >= limit:
                        break
        return results

    def record_memory_access(self, memory_ids: list[str], accessed_at: datetime) -> None:
        if not memory_ids:
            return
        ts = dt_to_str(accessed_at)
        with self._tx() as conn:
            conn.executemany(
                "UPDATE memories SET last_accessed = ?, access_count = access_count + 1 WHERE id = ?",
                [(ts, mid) for mid in memory_ids],
            )

    def set_memory_status(self, memory_id: str, status: MemoryStatus) -> bool:
        with self._tx() as conn:
            cursor = conn.execute(
                "UPDATE memories SET status = ? WHERE id = ?",
                (MemoryStatus(status).value, memory_id),
            )
        return cursor.rowcount > 0

    def set_memory_importance(self, memory_id: str, importance: float) -> bool:
        with self._tx() as conn:
            cursor = conn.execute(
                "UPDATE memories SET importance = ? WHERE id = ?",
                (importance, memory_id),
            )
        return cursor.rowcount > 0

    def fade_expired_memories(self, now: datetime) -> int:
        with self._tx() as conn:
            cursor = conn.execute(
                """UPDATE memories SET status = ?
                WHERE status = ? AND expires_at IS NOT NULL AND expires_at <= ?""",
                (MemoryStatus.FADED.value, MemoryStatus.ACTIVE.value, dt_to_str(now)),
            )
        return cursor.rowcount

    def embedding_dimension(self) -> int | None:
        with self._read() as conn:
            row = conn.execute(
                "SELECT embedding_dim FROM memories WHERE embedding_dim > 0 ORDER BY created_at LIMIT 1"
            ).fetchone()
        return row["embedding_dim"] if row else None

    def count_memories(self, status: MemoryStatus | None = None) -> int:
        with self._read() as conn:
            if status is None:
                return conn.execute("SELECT COUNT(*) FROM memories").fetchone()[0]
            return conn.execute(
                "SELECT COUNT(*) FROM memories WHERE status = ?", (MemoryStatus(status).value,),
            ).fetchone()[0]

    # ------------------------------------------------------------------
    # Buffer
    # ------------------------------------------------------------------

    def append_buffer(self, entry: BufferEntry) -> None:
        with self._tx() as conn:
            conn.execute(
                """INSERT INTO memory_buffer (id, branch_id, event_type, content, metadata, timestamp)
                VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    entry.id,
                    entry.branch_id,
                    entry.event_type,
                    entry.content,
                    metadata_to_json(entry.metadata),
                    dt_to_str(entry.timestamp),
                ),
            )

    def get_buffer_since(self, since: datetime) -> list[BufferEntry]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM memory_buffer WHERE timestamp >= ? ORDER BY timestamp, seq",
                (dt_to_str(since),),
            ).fetchall()
        return [_row_to_buffer(r) for r in rows]

    def clear_buffer(self, up_to: datetime) -> int:
        with self._tx() as conn:
            cursor = conn.execute(
                "DELETE FROM memory_buffer WHERE timestamp <= ?", (dt_to_str(up_to),),
            )
        return cursor.rowcount

    def count_buffer(self) -> int:
        with self._read() as conn:
            return conn.execute("SELECT COUNT(*) FROM memory_buffer").fetchone()[0]

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    def _participants(self, conn: sqlite3.Connection, branch_id: str) -> list[BranchParticipant]:
        rows = conn.execute(
            """SELECT profile_id, role, joined_at FROM branch_participants
            WHERE branch_id = ? ORDER BY joined_at, rowid""",
            (branch_id,),
        ).fetchall()
        return [
            BranchParticipant(profile_id=r["profile_id"], role=r["role"], joined_at=str_to_dt(r["joined_at"]))
            for r in rows
        ]

    def _row_to_branch(self, conn: sqlite3.Connection, row: sqlite3.Row) -> Branch:
        return Branch(
            id=row["id"],
            channel_type=row["channel_type"],
            channel_id=row["channel_id"],
            conversation_id=row["conversation_id"],
            participants=self._participants(conn, row["id"]),
            status=_enum(BranchStatus, row["status"], BranchStatus.ACTIVE, "branches.status"),
            mood=mood_from_json(row["mood"]),
            current_topic=row["current_topic"],
            summary=row["summary"],
            summary_up_to_message_id=row["summary_up_to_message_id"],
            pending_actions=actions_from_json(row["pending_actions"]),
            created_at=str_to_dt(row["created_at"]),
            last_activity_at=str_to_dt(row["last_activity_at"]),
            last_agent_response_at=opt_str_to_dt(row["last_agent_response_at"]),
        )

    def create_or_get_branch(self, branch: Branch) -> tuple[Branch, bool]:
        with self._tx() as conn:
            cursor = conn.execute(
                """INSERT INTO branches
                (id, channel_type, channel_id, conversation_id, status, mood, current_topic,
                 summary, summary_up_to_message_id, pending_actions, created_at,
                 last_activity_at, last_agent_response_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(channel_id, conversation_id) DO NOTHING""",
                (
                    branch.id,
                    branch.channel_type,
                    branch.channel_id,
                    branch.conversation_id,
                    branch.status.value,
                    mood_to_json(branch.mood),
                    branch.current_topic,
                    branch.summary,
                    branch.summary_up_to_message_id,
                    actions_to_json(branch.pending_actions),
                    dt_to_str(branch.created_at),
                    dt_to_str(branch.last_activity_at),
                    opt_dt_to_str(branch.last_agent_response_at),
                ),
            )
            created = cursor.rowcount == 1
            if created:
                conn.executemany(
                    """INSERT OR IGNORE INTO branch_participants (branch_id, profile_id, role, joined_at)
                    VALUES (?, ?, ?, ?)""",
                    [(branch.id, p.profile_id, p.role, dt_to_str(p.joined_at)) for p in branch.participants],
                )
            row = conn.execute(
                "SELECT * FROM branches WHERE channel_id = ? AND conversation_id = ?",
                (branch.channel_id, branch.conversation_id),
            ).fetchone()
            return self._row_to_branch(conn, row), created

    def get_branch(self, branch_id: str) -> Branch | None:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM branches WHERE id = ?", (branch_id,)).fetchone()
            return self._row_to_branch(conn, row) if row else None

    def find_branch(self, channel_id: str, conversation_id: str) -> Branch | None:
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM branches WHERE channel_id = ? AND conversation_id = ?",
                (channel_id, conversation_id),
            ).fetchone()
            return self._row_to_branch(conn, row) if row else None

    def update_branch_fields(self, branch_id: str, **fields) -> bool:
        unknown = set(fields) - set(_BRANCH_FIELDS)
        if unknown:
            raise ValueError(f"Not updatable branch fields: {sorted(unknown)}")
        if not fields:
            return self.get_branch(branch_id) is not None
        assignments = ", ".join(f"{name} = ?" for name in fields)
        params = [_BRANCH_FIELDS[name](value) for name, value in fields.items()]
        params.append(branch_id)
        with self._tx() as conn:
            cursor = conn.execute(f"UPDATE branches SET {assignments} WHERE id = ?", params)
        return cursor.rowcount > 0

    def set_branch_status(
        self,
        branch_id: str,
        status: BranchStatus,
        allowed_from: tuple[BranchStatus, ...],
        touched_at: datetime | None = None,
    ) -> bool:
        placeholders = ",".join("?" * len(allowed_from))
        sets = "status = ?"
        params: list = [BranchStatus(status).value]
        if touched_at is not None:
            sets += ", last_activity_at = ?"
            params.append(dt_to_str(touched_at))
        params.append(branch_id)
        params.extend(BranchStatus(s).value for s in allowed_from)
        with self._tx() as conn:
            cursor = conn.execute(
                f"UPDATE branches SET {sets} WHERE id = ? AND status IN ({placeholders})",
                params,
            )
        return cursor.rowcount > 0

    def add_participant(self, branch_id: str, participant: BranchParticipant) -> bool:
        with self._tx() as conn:
            cursor = conn.execute(
                """INSERT OR IGNORE INTO branch_participants (branch_id, profile_id, role, joined_at)
                VALUES (?, ?, ?, ?)""",
                (branch_id, participant.profile_id, participant.role, dt_to_str(participant.joined_at)),
            )
        return cursor.rowcount > 0

    def list_branches(self, status: BranchStatus | None = None) -> list[Branch]:
        with self._read() as conn:
            if status is None:
                rows = conn.execute("SELECT * FROM branches ORDER BY last_activity_at DESC").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM branches WHERE status = ? ORDER BY last_activity_at DESC",
                    (BranchStatus(status).value,),
                ).fetchall()
            return [self._row_to_branch(conn, r) for r in rows]

    def list_branches_for_profile(self, profile_id: str) -> list[Branch]:
        with self._read() as conn:
            rows = conn.execute(
                """SELECT b.* FROM branches b
                JOIN branch_participants p ON p.branch_id = b.id
                WHERE p.profile_id = ?
                ORDER BY b.last_activity_at DESC""",
                (profile_id,),
            ).fetchall()
            return [self._row_to_branch(conn, r) for r in rows]

    def demote_inactive_branches(self, cutoff: datetime) -> list[str]:
        with self._tx() as conn:
            rows = conn.execute(
                "SELECT id FROM branches WHERE status = ? AND last_activity_at < ?",
                (BranchStatus.ACTIVE.value, dt_to_str(cutoff)),
            ).fetchall()
            ids = [r["id"] for r in rows]
            conn.executemany(
                "UPDATE branches SET status = ? WHERE id = ? AND status = ?",
                [(BranchStatus.DORMANT.value, bid, BranchStatus.ACTIVE.value) for bid in ids],
            )
        return ids

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def insert_message(self, message: StoredMessage) -> None:
        with self._tx() as conn:
            conn.execute(
                """INSERT INTO stored_messages (id, branch_id, sender_profile_id, content, timestamp, metadata)
                VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    message.id,
                    message.branch_id,
                    message.sender_profile_id,
                    content_to_json(message.content),
                    dt_to_str(message.timestamp),
                    metadata_to_json(message.metadata),
                ),
            )

    def get_recent_messages(self, branch_id: str, limit: int = 50) -> list[StoredMessage]:
        with self._read() as conn:
            rows = conn.execute(
                """SELECT * FROM stored_messages WHERE branch_id = ?
                ORDER BY timestamp DESC, seq DESC LIMIT ?""",
                (branch_id, limit),
            ).fetchall()
        return [_row_to_message(r) for r in reversed(rows)]

    def get_messages_after(self, branch_id: str, message_id: str | None) -> list[StoredMessage]:
        with self._read() as conn:
            anchor = None
            if message_id is not None:
                anchor = conn.execute(
                    "SELECT timestamp, seq FROM stored_messages WHERE id = ? AND branch_id = ?",
                    (message_id, branch_id),
                ).fetchone()
            if anchor is None:
                rows = conn.execute(
                    "SELECT * FROM stored_messages WHERE branch_id = ? ORDER BY timestamp, seq",
                    (branch_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    """SELECT * FROM stored_messages
                    WHERE branch_id = ? AND (timestamp > ? OR (timestamp = ? AND seq > ?))
                    ORDER BY timestamp, seq""",
                    (branch_id, anchor["timestamp"], anchor["timestamp"], anchor["seq"]),
                ).fetchall()
        return [_row_to_message(r) for r in rows]

    def count_messages(self, branch_id: str) -> int:
        with self._read() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM stored_messages WHERE branch_id = ?", (branch_id,),
            ).fetchone()[0]

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def _facts(self, conn: sqlite3.Connection, profile_id: str) -> list[ProfileFact]:
        rows = conn.execute(
            "SELECT * FROM profile_facts WHERE profile_id = ? ORDER BY learned_at",
            (profile_id,),
        ).fetchall()
        return [
            ProfileFact(
                id=r["id"],
                content=r["content"],
                category=r["category"],
                confidence=r["confidence"],
                learned_at=str_to_dt(r["learned_at"]),
            )
            for r in rows
        ]

    def _row_to_profile(self, conn: sqlite3.Connection, row: sqlite3.Row) -> Profile:
        return Profile(
            id=row["id"],
            display_name=row["display_name"],
            role=_enum(ProfileRole, row["role"], ProfileRole.STRANGER, "profiles.role"),
            first_seen=str_to_dt(row["first_seen"]),
            last_seen=str_to_dt(row["last_seen"]),
            total_interactions=row["total_interactions"],
            facts=self._facts(conn, row["id"]),
            communication_style=row["communication_style"],
        )

    def _insert_identity(self, conn: sqlite3.Connection, profile_id: str, identity: PlatformIdentity) -> bool:
        cursor = conn.execute(
            """INSERT OR IGNORE INTO platform_identities
            (platform, channel_id, platform_user_id, profile_id, platform_username, linked_at, linked_by)
            VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                identity.platform,
                identity.channel_id,
                identity.platform_user_id,
                profile_id,
                identity.platform_username,
                dt_to_str(identity.linked_at),
                identity.linked_by,
            ),
        )
        return cursor.rowcount > 0

    def create_profile_with_identity(self, profile: Profile, identity: PlatformIdentity) -> tuple[Profile, bool]:
        with self._tx() as conn:
            existing = conn.execute(
                """SELECT p.* FROM profiles p JOIN platform_identities i ON i.profile_id = p.id
                WHERE i.platform = ? AND i.channel_id = ? AND i.platform_user_id = ?""",
                (identity.platform, identity.channel_id, identity.platform_user_id),
            ).fetchone()
            if existing is not None:
                return self._row_to_profile(conn, existing), False
            conn.execute(
                """INSERT INTO profiles
                (id, display_name, role, first_seen, last_seen, total_interactions, communication_style)
                VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    profile.id,
                    profile.display_name,
                    profile.role.value,
                    dt_to_str(profile.first_seen),
                    dt_to_str(profile.last_seen),
                    profile.total_interactions,
                    profile.communication_style,
                ),
            )
            self._insert_identity(conn, profile.id, identity)
            for fact in profile.facts:
                self._insert_fact(conn, profile.id, fact)
            row = conn.execute("SELECT * FROM profiles WHERE id = ?", (profile.id,)).fetchone()
            return self._row_to_profile(conn, row), True

    def get_profile(self, profile_id: str) -> Profile | None:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM profiles WHERE id = ?", (profile_id,)).fetchone()
            return self._row_to_profile(conn, row) if row else None

    def find_profile_by_identity(self, platform: str, channel_id: str, platform_user_id: str) -> Profile | None:
        with self._read() as conn:
            row = conn.execute(
                """SELECT p.* FROM profiles p JOIN platform_identities i ON i.profile_id = p.id
                WHERE i.platform = ? AND i.channel_id = ? AND i.platform_user_id = ?""",
                (platform, channel_id, platform_user_id),
            ).fetchone()
            return self._row_to_profile(conn, row) if row else None

    def link_identity(self, profile_id: str, identity: PlatformIdentity) -> bool:
        with self._tx() as conn:
            return self._insert_identity(conn, profile_id, identity)

    def touch_profile(self, profile_id: str, seen_at: datetime) -> None:
        with self._tx() as conn:
            conn.execute(
                """UPDATE profiles SET last_seen = ?, total_interactions = total_interactions + 1
                WHERE id = ?""",
                (dt_to_str(seen_at), profile_id),
            )

    def update_profile_fields(self, profile_id: str, **fields) -> bool:
        unknown = set(fields) - set(_PROFILE_FIELDS)
        if unknown:
            raise ValueError(f"Not updatable profile fields: {sorted(unknown)}")
        if not fields:
            return self.get_profile(profile_id) is not None
        assignments = ", ".join(f"{name} = ?" for name in fields)
        params = [_PROFILE_FIELDS[name](value) for name, value in fields.items()]
        params.append(profile_id)
        with self._tx() as conn:
            cursor = conn.execute(f"UPDATE profiles SET {assignments} WHERE id = ?", params)
        return cursor.rowcount > 0

    def _insert_fact(self, conn: sqlite3.Connection, profile_id: str, fact: ProfileFact) -> None:
        conn.execute(
            """INSERT INTO profile_facts (id, profile_id, content, category, confidence, learned_at)
            VALUES (?, ?, ?, ?, ?, ?)""",
            (fact.id, profile_id, fact.content, fact.category, fact.confidence, dt_to_str(fact.learned_at)),
        )

    def add_profile_fact(self, profile_id: str, fact: ProfileFact) -> None:
        with self._tx() as conn:
            self._insert_fact(conn, profile_id, fact)

    def list_profiles(self) -> list[Profile]:
        with self._read() as conn:
            rows = conn.execute("SELECT * FROM profiles ORDER BY last_seen DESC").fetchall()
            return [self._row_to_profile(conn, r) for r in rows]

    # ------------------------------------------------------------------
    # Cross-branch notes
    # ------------------------------------------------------------------

    def insert_note(self, note: CrossBranchNote) -> None:
        with self._tx() as conn:
            conn.execute(
                """INSERT INTO cross_branch_notes
                (id, from_branch_id, to_branch_id, to_profile_id, content, created_at, status, delivered_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    note.id,
                    note.from_branch_id,
                    note.to_branch_id,
                    note.to_profile_id,
                    note.content,
                    dt_to_str(note.created_at),
                    note.status.value,
                    opt_dt_to_str(note.delivered_at),
                ),
            )

    def get_note(self, note_id: str) -> CrossBranchNote | None:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM cross_branch_notes WHERE id = ?", (note_id,)).fetchone()
        return _row_to_note(row) if row else None

    def list_pending_notes(
        self, branch_id: str | None = None, profile_id: str | None = None,
    ) -> list[CrossBranchNote]:
        query = "SELECT * FROM cross_branch_notes WHERE status = ?"
        params: list = [NoteStatus.PENDING.value]
        if branch_id is not None or profile_id is not None:
            # Broadcasts go to every branch except the one that wrote them.
            if branch_id is not None:
                targets = ["(to_branch_id IS NULL AND to_profile_id IS NULL AND from_branch_id != ?)",
                           "to_branch_id = ?"]
                params.extend([branch_id, branch_id])
            else:
                targets = ["(to_branch_id IS NULL AND to_profile_id IS NULL)"]
            if profile_id is not None:
                targets.append("to_profile_id = ?")
                params.append(profile_id)
            query += f" AND ({' OR '.join(targets)})"
        query += " ORDER BY created_at"
        with self._read() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_note(r) for r in rows]

    def mark_note_delivered(self, note_id: str, delivered_at: datetime) -> bool:
        with self._tx() as conn:
            cursor = conn.execute(
                "UPDATE cross_branch_notes SET status = ?, delivered_at = ? WHERE id = ? AND status = ?",
                (NoteStatus.DELIVERED.value, dt_to_str(delivered_at), note_id, NoteStatus.PENDING.value),
            )
        return cursor.rowcount > 0

    def delete_delivered_notes(self, before: datetime) -> int:
        with self._tx() as conn:
            cursor = conn.execute(
                "DELETE FROM cross_branch_notes WHERE status = ? AND created_at < ?",
                (NoteStatus.DELIVERED.value, dt_to_str(before)),
            )
        return cursor.rowcount

    def close(self) -> None:
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None
