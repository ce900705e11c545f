"""Render session state as text for the agent's context and for operators."""

from __future__ import annotations

from convkeeper.store.db import SessionStore
from convkeeper.store.models import SessionMetadata

from .carryover import format_carryover
from .consolidate import format_time


def _context_usage(session: SessionMetadata) -> str:
    if session.context_window_tokens <= 0:
        return ""
    return f" ({session.context_ratio:.1%} of {session.context_window_tokens:,})"


async def render_session_history(store: SessionStore, user_id: str, max_recent: int) -> str:
    """Build the session-history block injected into the next agent call.

    Sections: current session, carryover from the previous session (present
    only until the first query on the new session completes), the most
    recent archived sessions, and long-term memory.
    """
    archived = await store.list_archived(user_id)
    current = await store.read_active(user_id)
    cumulative = await store.read_cumulative_summary(user_id)

    if not archived and current is None and cumulative is None:
        return ""

    lines: list[str] = []

    if current is not None:
        lines.append("### Current Session")
        lines.append(f"- ID: {current.local_id}")
        lines.append(f"- Started: {format_time(current.created_at)}")
        lines.append(
            f"- Messages: {current.message_count}, "
            f"Context: {current.context_tokens:,} tokens{_context_usage(current)}"
        )
        lines.append("")

        if current.carryover:
            lines.append("### Carried Over from Previous Session")
            lines.append(
                "The following recent conversations from the end of the previous "
                "session are provided for context continuity:"
            )
            lines.append("")
            lines.append(format_carryover(current.carryover))
            lines.append("")

    if archived:
        recent = archived[:max_recent]
        lines.append(f"### Previous Sessions ({len(recent)} recent of {len(archived)} total)")
        for s in recent:
            lines.append(
                f"- **{s.local_id}** ({format_time(s.created_at)} → "
                f"{format_time(s.ended_at)}, {s.message_count} msgs)"
            )
            if s.summary:
                lines.append(f"  Summary: {s.summary}")

    if cumulative is not None and cumulative.text:
        lines.append("")
        lines.append(
            f"### Long-term Memory (condensed from {cumulative.session_count} older sessions)"
        )
        lines.append(cumulative.text)

    older = len(archived) - min(len(archived), max_recent)
    if older > 0:
        lines.append("")
        lines.append(
            f"> **Note**: {older} older session(s) are condensed in Long-term Memory above."
        )

    return "\n".join(lines).strip()


def describe_session(session: SessionMetadata) -> dict:
    """Operator view of a session (active or archived)."""
    return {
        "local_id": session.local_id,
        "external_session_id": session.external_session_id,
        "created_at": session.created_at,
        "updated_at": session.updated_at,
        "ended_at": session.ended_at,
        "message_count": session.message_count,
        "total_turns": session.total_turns,
        "total_cost_usd": round(session.total_cost_usd, 6),
        "context_tokens": session.context_tokens,
        "context_window_tokens": session.context_window_tokens,
        "context_ratio": round(session.context_ratio, 4),
        "summary": session.summary,
        "carryover_entries": len(session.carryover or []),
    }


def format_session_info(session: SessionMetadata | None) -> str:
    """Plain-text ``session info`` listing."""
    if session is None:
        return "No active session."
    window = (
        f"  Context window: {session.context_window_tokens:,} tokens"
        if session.context_window_tokens > 0
        else "  Context window: unknown (will be detected on next query)"
    )
    return "\n".join([
        "Current session info:",
        f"  Local ID: {session.local_id}",
        f"  External session ID: {session.external_session_id or 'none'}",
        f"  Created: {format_time(session.created_at)}",
        f"  Last active: {format_time(session.updated_at)}",
        f"  Messages: {session.message_count}",
        f"  Total turns: {session.total_turns}",
        f"  Context tokens: {session.context_tokens:,}{_context_usage(session)}",
        window,
        f"  Total cost: ${session.total_cost_usd:.4f}",
    ])


def format_session_list(current: SessionMetadata | None, archived: list[SessionMetadata]) -> str:
    """Plain-text ``session list`` listing."""
    lines: list[str] = []
    if current is not None:
        lines.append("Active session:")
        lines.append(f"  ID: {current.local_id}")
        lines.append(f"  Started: {format_time(current.created_at)}")
        lines.append(f"  Messages: {current.message_count}, Context: {current.context_tokens:,} tokens")
        lines.append(f"  Cost: ${current.total_cost_usd:.4f}")
        lines.append("")
    if archived:
        lines.append(f"Archived sessions ({len(archived)}):")
        for s in archived:
            lines.append(f"  - {s.local_id}")
            lines.append(f"    Time: {format_time(s.created_at)} → {format_time(s.ended_at)}")
            lines.append(f"    Messages: {s.message_count}, Cost: ${s.total_cost_usd:.4f}")
            if s.summary:
                lines.append(f"    Summary: {s.summary}")
    else:
        lines.append("No archived sessions.")
    return "\n".join(lines)
