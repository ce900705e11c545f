"""Rotation engine: decides when a user's session is archived and replaced.

Three triggers, checked opportunistically before every dispatch:

1. timeout: no activity for ``rotation_timeout_hours`` → synchronous rotation.
2. soft ratio: context usage ≥ ``rotation_context_ratio`` → summary prep
   starts in the background while the old session keeps serving queries;
   once ready, the next dispatch switches instantly.
3. force ratio: usage ≥ ``rotation_force_ratio`` → dispatch blocks on the
   in-flight prep (or rotates synchronously if none exists) before switching.

A manual rotation cancels any prep and rotates immediately.
"""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from convkeeper.config import AppConfig
from convkeeper.errors import SummarizationError
from convkeeper.state.registry import UserRegistry, UserState
from convkeeper.store.db import SessionStore
from convkeeper.store.models import ConversationEntry, SessionMetadata

from .carryover import extract_carryover
from .consolidate import consolidate_old_sessions
from .state_machine import BackgroundRotation, SessionPhase, derive_phase
from .summarizer import Summarizer, fallback_summary

log = structlog.get_logger()

_SECONDS_PER_HOUR = 3600.0


class RotationReason(str, enum.Enum):
    TIMEOUT = "timeout"
    MAX_CONTEXT = "max_context"
    MANUAL = "manual"


@dataclass
class EnsureResult:
    session: SessionMetadata
    rotated: bool = False
    reason: RotationReason | None = None


@dataclass
class QueryResult:
    """Usage reported by the agent runtime for one completed query."""

    cost_usd: float = 0.0
    turns: int = 0
    duration_ms: int = 0
    context_tokens: int = 0
    context_window_tokens: int = 0
    external_session_id: str | None = None
    blocks: list[dict[str, Any]] = field(default_factory=list)


class RotationEngine:
    """Session lifecycle policy on top of a ``SessionStore``."""

    def __init__(
        self,
        store: SessionStore,
        summarizer: Summarizer,
        config: AppConfig,
        registry: UserRegistry | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.summarizer = summarizer
        self.config = config
        self.registry = (
            registry if registry is not None
            else UserRegistry(config.user_state_ttl_seconds)
        )
        self._clock = clock

    def background(self, user_id: str) -> BackgroundRotation | None:
        state = self.registry.get(user_id)
        return state.background if state else None

    async def phase(self, user_id: str) -> SessionPhase:
        session = await self.store.read_active(user_id)
        return derive_phase(session, self.background(user_id))

    async def ensure_active_session(self, user_id: str) -> EnsureResult:
        """Return the session the next query should use, rotating if due."""
        state = self.registry.get_or_create(user_id)
        async with state.rotation_lock:
            session = await self.store.read_active(user_id)
            if session is None:
                session = await self.store.create_active(user_id)
                return EnsureResult(session)

            # Never queried: nothing to summarize or rotate.
            if not session.external_session_id:
                return EnsureResult(session)

            idle_hours = (self._clock() - session.updated_at) / _SECONDS_PER_HOUR
            if idle_hours >= self.config.rotation_timeout_hours:
                bg = state.background
                if bg is not None:
                    await bg.wait()
                    bg.discard("timeout_rotation")
                    state.background = None
                new_session = await self._rotate(state, RotationReason.TIMEOUT)
                return EnsureResult(new_session, rotated=True, reason=RotationReason.TIMEOUT)

            if session.context_window_tokens <= 0:
                return EnsureResult(session)

            ratio = session.context_ratio
            force_ratio = self.config.rotation_force_ratio
            bg = state.background

            if bg is not None and bg.ready:
                return await self._instant_switch(state, bg, session)

            if bg is not None and bg.preparing:
                if ratio < force_ratio:
                    return EnsureResult(session)
                log.info(
                    "force_rotation_awaiting_prep",
                    user_id=user_id,
                    context_ratio=f"{ratio:.3f}",
                    force_ratio=force_ratio,
                )
                await bg.wait()
                if not bg.ready:
                    # Prep was discarded while we waited.
                    state.background = None
                    current = await self.store.read_active(user_id) or session
                    return EnsureResult(current)
                return await self._instant_switch(state, bg, session)

            if ratio >= force_ratio:
                log.warning(
                    "force_rotation_without_prep",
                    user_id=user_id,
                    context_ratio=f"{ratio:.3f}",
                    force_ratio=force_ratio,
                )
                new_session = await self._rotate(state, RotationReason.MAX_CONTEXT)
                return EnsureResult(new_session, rotated=True, reason=RotationReason.MAX_CONTEXT)

            if ratio >= self.config.rotation_context_ratio:
                self._start_background_prep(state, session)

            return EnsureResult(session)

    async def rotate_session(
        self,
        user_id: str,
        reason: RotationReason = RotationReason.MANUAL,
        expected_local_id: str | None = None,
    ) -> SessionMetadata | None:
        """Rotate synchronously, bypassing thresholds. Cancels pending prep.

        With ``expected_local_id`` set, nothing happens (and None is returned)
        unless that session is still the active one once the lock is held.
        """
        state = self.registry.get_or_create(user_id)
        async with state.rotation_lock:
            if expected_local_id is not None:
                active = await self.store.read_active(user_id)
                if active is None or active.local_id != expected_local_id:
                    log.info(
                        "rotation_skipped_session_changed",
                        user_id=user_id,
                        expected_local_id=expected_local_id,
                        active_local_id=active.local_id if active else None,
                    )
                    return None
            bg = state.background
            if bg is not None:
                bg.discard(f"{reason.value}_rotation")
                state.background = None
            return await self._rotate(state, reason)

    async def record_query_result(
        self,
        user_id: str,
        local_id: str,
        user_message: str,
        assistant_response: str,
        result: QueryResult,
    ) -> SessionMetadata | None:
        """Log a completed exchange and update the session's counters.

        ``local_id`` is the session the query started on. If it was
        archived meanwhile, the exchange is dropped rather than written
        into a closed session. Returns the updated active session, or None.
        """
        state = self.registry.get_or_create(user_id)
        async with state.rotation_lock:
            session = await self.store.read_active(user_id)
            if session is None or session.local_id != local_id:
                log.warning(
                    "query_result_for_inactive_session",
                    user_id=user_id,
                    local_id=local_id,
                    active_local_id=session.local_id if session else None,
                )
                return None
            return await self._apply_query_result(
                user_id, session, user_message, assistant_response, result,
            )

    async def _apply_query_result(
        self,
        user_id: str,
        session: SessionMetadata,
        user_message: str,
        assistant_response: str,
        result: QueryResult,
    ) -> SessionMetadata:
        local_id = session.local_id
        now = self._clock()
        assistant_entry = ConversationEntry(
            timestamp=now,
            role="assistant",
            content=assistant_response,
            metadata={
                "cost_usd": result.cost_usd,
                "turns": result.turns,
                "duration_ms": result.duration_ms,
            },
            blocks=result.blocks or None,
        )
        await self.store.append_conversation(
            user_id,
            local_id,
            [ConversationEntry(timestamp=now, role="user", content=user_message), assistant_entry],
        )

        session.message_count += 1
        session.total_turns += result.turns
        session.total_cost_usd += result.cost_usd
        if result.context_tokens:
            session.context_tokens = result.context_tokens
        if result.context_window_tokens:
            session.context_window_tokens = result.context_window_tokens
        if result.external_session_id:
            session.external_session_id = result.external_session_id
        # Carryover is shown only on the first query of a new session.
        session.carryover = None
        session.updated_at = now
        await self.store.write_active(user_id, session)
        return session

    async def set_external_session_id(
        self, user_id: str, local_id: str, external_session_id: str | None,
    ) -> None:
        """Attach (or drop) the runtime's resumable session id."""
        state = self.registry.get_or_create(user_id)
        async with state.rotation_lock:
            session = await self.store.read_active(user_id)
            if session is None or session.local_id != local_id:
                return
            if session.external_session_id == external_session_id:
                return
            session.external_session_id = external_session_id
            session.updated_at = self._clock()
            await self.store.write_active(user_id, session)

    async def shutdown(self) -> None:
        """Cancel every in-flight prep task."""
        tasks = []
        for state in self.registry.all_users().values():
            bg = state.background
            if bg is None:
                continue
            bg.discard("shutdown")
            state.background = None
            if bg.task is not None:
                tasks.append(bg.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _rotate(self, state: UserState, reason: RotationReason) -> SessionMetadata:
        """Archive the active session (summarizing it) and start a new one.

        Caller holds the user's rotation lock.
        """
        user_id = state.user_id
        current = await self.store.read_active(user_id)

        if current is not None and current.external_session_id:
            log.info(
                "rotating_session",
                user_id=user_id,
                reason=reason.value,
                local_id=current.local_id,
                message_count=current.message_count,
                total_turns=current.total_turns,
                context_tokens=current.context_tokens,
                context_window_tokens=current.context_window_tokens,
                context_usage=f"{current.context_ratio:.1%}",
                cost_usd=current.total_cost_usd,
            )
            summary: str | None = None
            if self.config.summary_enabled:
                entries = await self.store.read_conversation(user_id, current.local_id)
                summary = await self._summarize(current, entries)
            await self._archive(user_id, current, summary)

        await self._consolidate(user_id)

        await self.store.clear_active(user_id)
        new_session = await self.store.create_active(user_id)
        log.info(
            "session_rotated",
            user_id=user_id,
            reason=reason.value,
            new_local_id=new_session.local_id,
        )
        return new_session

    def _start_background_prep(self, state: UserState, session: SessionMetadata) -> None:
        user_id = state.user_id
        log.info(
            "background_prep_started",
            user_id=user_id,
            local_id=session.local_id,
            message_count=session.message_count,
            context_usage=f"{session.context_ratio:.1%}",
        )
        bg = BackgroundRotation(
            user_id=user_id,
            old_local_id=session.local_id,
            trigger_message_count=session.message_count,
        )
        bg.task = asyncio.create_task(
            self._prepare(bg, session), name=f"rotation-prep-{user_id}",
        )
        state.background = bg

    async def _prepare(self, bg: BackgroundRotation, session: SessionMetadata) -> None:
        """Background task: summarize the snapshot and pre-consolidate."""
        user_id = bg.user_id
        try:
            if self.config.summary_enabled:
                entries = await self.store.read_conversation(user_id, bg.old_local_id)
                bg.summary = await self._summarize(session, entries)
            await self._consolidate(user_id)
        except Exception:
            # Store failures here must not wedge the user in PREPARING;
            # the switch re-reads everything it needs.
            log.exception("background_prep_failed", user_id=user_id, local_id=bg.old_local_id)
            if self.config.summary_enabled and bg.summary is None:
                bg.summary = fallback_summary(session)

        if bg.preparing:
            bg.mark_ready()
            log.info("background_prep_ready", user_id=user_id, local_id=bg.old_local_id)

    async def _instant_switch(
        self, state: UserState, bg: BackgroundRotation, snapshot: SessionMetadata,
    ) -> EnsureResult:
        """Archive with the precomputed summary and start the new session."""
        user_id = state.user_id
        current = await self.store.read_active(user_id)

        if current is None or current.local_id != bg.old_local_id:
            log.warning(
                "stale_background_prep_discarded",
                user_id=user_id,
                expected=bg.old_local_id,
                actual=current.local_id if current else None,
            )
            bg.discard("stale_local_id")
            state.background = None
            if current is None:
                current = await self.store.create_active(user_id)
            return EnsureResult(current)

        entries = await self.store.read_conversation(user_id, current.local_id)
        carryover = extract_carryover(entries, bg.trigger_message_count)

        await self._archive(user_id, current, bg.summary)
        await self.store.clear_active(user_id)
        new_session = await self.store.create_active(user_id)
        if carryover:
            new_session = dataclasses.replace(new_session, carryover=carryover)
            await self.store.write_active(user_id, new_session)

        bg.consume()
        state.background = None
        log.info(
            "instant_switch_completed",
            user_id=user_id,
            old_local_id=bg.old_local_id,
            new_local_id=new_session.local_id,
            carryover_entries=len(carryover),
        )
        return EnsureResult(new_session, rotated=True, reason=RotationReason.MAX_CONTEXT)

    async def _archive(
        self, user_id: str, session: SessionMetadata, summary: str | None,
    ) -> None:
        archived = dataclasses.replace(session, ended_at=self._clock(), summary=summary)
        await self.store.archive(user_id, archived)
        log.info(
            "session_archived",
            user_id=user_id,
            local_id=session.local_id,
            summary=(summary or "")[:100],
        )

    async def _summarize(
        self, session: SessionMetadata, entries: list[ConversationEntry],
    ) -> str:
        try:
            return await self.summarizer.summarize(entries)
        except SummarizationError as exc:
            log.error("summary_failed", local_id=session.local_id, error=str(exc))
        except Exception:
            log.exception("summary_failed", local_id=session.local_id)
        return fallback_summary(session)

    async def _consolidate(self, user_id: str) -> None:
        await consolidate_old_sessions(
            self.store, self.summarizer, user_id, self.config.max_recent_sessions,
        )
