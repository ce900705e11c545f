"""Database table definitions and dataclass types for session state."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS active_sessions (
    user_id TEXT PRIMARY KEY,
    local_id TEXT NOT NULL,
    metadata_json TEXT NOT NULL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS archived_sessions (
    user_id TEXT NOT NULL,
    local_id TEXT NOT NULL,
    created_at REAL NOT NULL,
    ended_at REAL NOT NULL,
    metadata_json TEXT NOT NULL,
    PRIMARY KEY (user_id, local_id)
);

CREATE INDEX IF NOT EXISTS idx_archived_created
    ON archived_sessions(user_id, created_at);

CREATE TABLE IF NOT EXISTS conversation_entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    local_id TEXT NOT NULL,
    timestamp REAL NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    metadata_json TEXT,
    blocks_json TEXT
);

CREATE INDEX IF NOT EXISTS idx_conversation_session
    ON conversation_entries(user_id, local_id, id);

CREATE TABLE IF NOT EXISTS cumulative_summaries (
    user_id TEXT PRIMARY KEY,
    text TEXT NOT NULL,
    session_count INTEGER NOT NULL,
    updated_at REAL NOT NULL
);
"""


@dataclass
class CarryoverEntry:
    timestamp: float
    role: str
    content: str


@dataclass
class SessionMetadata:
    """Metadata for one session. ``ended_at`` is set only once archived."""

    local_id: str
    created_at: float
    updated_at: float
    external_session_id: str | None = None
    ended_at: float | None = None
    message_count: int = 0
    total_turns: int = 0
    total_cost_usd: float = 0.0
    context_tokens: int = 0
    context_window_tokens: int = 0
    summary: str | None = None
    carryover: list[CarryoverEntry] | None = None

    @property
    def context_ratio(self) -> float:
        """Last observed context usage as a fraction of the window."""
        if self.context_window_tokens <= 0:
            return 0.0
        return self.context_tokens / self.context_window_tokens

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "SessionMetadata":
        data = json.loads(raw)
        carryover = data.pop("carryover", None)
        meta = cls(**data)
        if carryover is not None:
            meta.carryover = [CarryoverEntry(**c) for c in carryover]
        return meta


@dataclass
class ConversationEntry:
    """One row of a session's append-only conversation log."""

    timestamp: float
    role: str
    content: str
    metadata: dict[str, Any] | None = None
    # Full interaction blocks (thinking, tool_use, tool_result) when known
    blocks: list[dict[str, Any]] | None = field(default=None, repr=False)


@dataclass
class CumulativeSummary:
    text: str
    session_count: int
    updated_at: float
