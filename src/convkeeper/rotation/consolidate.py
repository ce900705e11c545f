"""Fold sessions that aged out of the recency window into the cumulative summary."""

from __future__ import annotations

import time
from datetime import datetime

import structlog

from convkeeper.errors import SummarizationError
from convkeeper.store.db import SessionStore
from convkeeper.store.models import CumulativeSummary, SessionMetadata

from .summarizer import Summarizer, is_fallback_summary

log = structlog.get_logger()


def format_time(ts: float | None) -> str:
    """Short local time for session ranges, e.g. ``03-14 09:30``."""
    if ts is None:
        return "?"
    return datetime.fromtimestamp(ts).strftime("%m-%d %H:%M")


def _summary_line(session: SessionMetadata) -> str:
    return f"[{format_time(session.created_at)} → {format_time(session.ended_at)}] {session.summary}"


async def consolidate_old_sessions(
    store: SessionStore,
    summarizer: Summarizer,
    user_id: str,
    max_recent: int,
) -> bool:
    """Merge not-yet-folded old sessions into the cumulative summary.

    Archived sessions beyond the ``max_recent`` newest are "old". The
    cumulative summary's ``session_count`` records how many old sessions it
    already covers; only the surplus is merged. Returns True when the
    cumulative summary was written.

    A condenser failure leaves the stored summary unchanged so the same
    sessions are retried on the next rotation.
    """
    archived = await store.list_archived(user_id)
    if len(archived) <= max_recent:
        return False

    old_sessions = archived[max_recent:]
    existing = await store.read_cumulative_summary(user_id)
    covered = existing.session_count if existing else 0
    if len(old_sessions) <= covered:
        return False

    # Newest-first, so the not-yet-folded sessions are at the front.
    to_merge = old_sessions[: len(old_sessions) - covered]
    new_summaries = [
        _summary_line(s)
        for s in to_merge
        if s.summary and not is_fallback_summary(s.summary)
    ]
    existing_text = existing.text if existing else ""

    if not new_summaries:
        # Nothing usable to fold in; only advance the high-water mark.
        text = existing_text
    else:
        try:
            text = await summarizer.condense(existing_text or None, new_summaries)
        except SummarizationError as exc:
            log.error("consolidation_condense_failed", user_id=user_id, error=str(exc))
            return False
        except Exception:
            log.exception("consolidation_condense_failed", user_id=user_id)
            return False

    await store.write_cumulative_summary(
        user_id,
        CumulativeSummary(text=text, session_count=len(old_sessions), updated_at=time.time()),
    )
    log.info(
        "sessions_consolidated",
        user_id=user_id,
        total_old_sessions=len(old_sessions),
        newly_merged=len(to_merge),
        summary_length=len(text),
    )
    return True
