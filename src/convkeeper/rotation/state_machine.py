"""Background rotation prep state machine and derived session phases.

PREPARING ──[summary + consolidation done]──→ READY ──[instant switch]──→ CONSUMED
    │                                           │
    └──[manual/timeout rotation, shutdown]──────┴──[stale local_id]──→ DISCARDED

The per-user lifecycle phase is never stored; it is derived from the active
session and the in-memory prep record:

NO_SESSION → ACTIVE_FRESH → ACTIVE_NORMAL → PREP_IN_BACKGROUND → PREP_READY
                                  ↑                                   │
                                  └────────────[rotation]─────────────┘
"""

from __future__ import annotations

import asyncio
import enum

import structlog

from convkeeper.store.models import SessionMetadata

log = structlog.get_logger()


class PrepState(enum.Enum):
    PREPARING = "PREPARING"
    READY = "READY"
    CONSUMED = "CONSUMED"
    DISCARDED = "DISCARDED"


class SessionPhase(enum.Enum):
    NO_SESSION = "NO_SESSION"
    ACTIVE_FRESH = "ACTIVE_FRESH"
    ACTIVE_NORMAL = "ACTIVE_NORMAL"
    PREP_IN_BACKGROUND = "PREP_IN_BACKGROUND"
    PREP_READY = "PREP_READY"


VALID_TRANSITIONS: set[tuple[PrepState, PrepState]] = {
    (PrepState.PREPARING, PrepState.READY),
    (PrepState.PREPARING, PrepState.DISCARDED),
    (PrepState.READY, PrepState.CONSUMED),
    (PrepState.READY, PrepState.DISCARDED),
}


class InvalidTransition(Exception):
    """Raised when an invalid prep state transition is attempted."""

    def __init__(self, from_state: PrepState, to_state: PrepState) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} → {to_state.value}")


def validate_transition(from_state: PrepState, to_state: PrepState) -> None:
    """Validate a prep state transition, raising InvalidTransition if not allowed."""
    if (from_state, to_state) not in VALID_TRANSITIONS:
        raise InvalidTransition(from_state, to_state)


def transition(
    current: PrepState,
    target: PrepState,
    user_id: str,
    trigger: str = "",
) -> PrepState:
    """Execute a validated prep state transition, logging the change."""
    validate_transition(current, target)
    log.info(
        "prep_transition",
        user_id=user_id,
        from_state=current.value,
        to_state=target.value,
        trigger=trigger,
    )
    return target


class BackgroundRotation:
    """In-memory record of a rotation being prepared off the hot path.

    At most one exists per user. ``trigger_message_count`` is the session's
    message count when prep started; log rows from ``2 * trigger_message_count``
    onward happened while the summary was being generated and become
    carryover on the switch.
    """

    def __init__(self, user_id: str, old_local_id: str, trigger_message_count: int) -> None:
        self.user_id = user_id
        self.old_local_id = old_local_id
        self.trigger_message_count = trigger_message_count
        self.state = PrepState.PREPARING
        self.summary: str | None = None
        self.task: asyncio.Task[None] | None = None

    @property
    def ready(self) -> bool:
        return self.state == PrepState.READY

    @property
    def preparing(self) -> bool:
        return self.state == PrepState.PREPARING

    def mark_ready(self) -> None:
        self.state = transition(self.state, PrepState.READY, self.user_id, "prep_complete")

    def consume(self) -> None:
        self.state = transition(self.state, PrepState.CONSUMED, self.user_id, "instant_switch")

    def discard(self, reason: str) -> None:
        """Drop this prep, cancelling the task if it is still running."""
        if self.state in (PrepState.CONSUMED, PrepState.DISCARDED):
            return
        self.state = transition(self.state, PrepState.DISCARDED, self.user_id, reason)
        if self.task is not None and not self.task.done():
            self.task.cancel()

    async def wait(self) -> None:
        """Block until the prep task has finished (ready or cancelled)."""
        if self.task is None or self.task.done():
            return
        try:
            await asyncio.shield(self.task)
        except asyncio.CancelledError:
            if not self.task.cancelled():
                raise


def derive_phase(
    session: SessionMetadata | None, background: BackgroundRotation | None,
) -> SessionPhase:
    """Compute a user's lifecycle phase from persisted and transient state."""
    if session is None:
        return SessionPhase.NO_SESSION
    if not session.external_session_id:
        return SessionPhase.ACTIVE_FRESH
    if background is not None and background.old_local_id == session.local_id:
        if background.ready:
            return SessionPhase.PREP_READY
        if background.preparing:
            return SessionPhase.PREP_IN_BACKGROUND
    return SessionPhase.ACTIVE_NORMAL
