"""Carryover: in-flight turns transplanted into a freshly rotated session.

Background prep summarizes the log as it stood when prep started. Turns
that completed after that point are not covered by the summary, so they are
copied verbatim into the new session and surfaced once in its context.
"""

from __future__ import annotations

from convkeeper.store.models import CarryoverEntry, ConversationEntry

# Each logical message occupies a user row followed by an assistant row.
ROWS_PER_MESSAGE = 2

_CARRYOVER_ROLES = ("user", "assistant")


def extract_carryover(
    entries: list[ConversationEntry], trigger_message_count: int,
) -> list[CarryoverEntry]:
    """Return the turns logged at or after the prep trigger point."""
    start = max(trigger_message_count, 0) * ROWS_PER_MESSAGE
    return [
        CarryoverEntry(timestamp=e.timestamp, role=e.role, content=e.content)
        for e in entries[start:]
        if e.role in _CARRYOVER_ROLES
    ]


def format_carryover(carryover: list[CarryoverEntry]) -> str:
    """Render carryover as labelled lines for the next agent call."""
    lines: list[str] = []
    for entry in carryover:
        label = "User" if entry.role == "user" else "Assistant"
        lines.append(f"**{label}**: {entry.content}")
    return "\n".join(lines)
