"""User registry: user id → per-user in-memory state.

Everything the process keeps in memory about a user lives on one
``UserState``: the rotation lock and pending background prep used by the
rotation engine, and the FIFO, processing flag, pause deadline and cancel
handle used by the message queue. Nothing here is persisted.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from convkeeper.agent.dispatch import CancelToken
    from convkeeper.queue.messages import QueuedMessage
    from convkeeper.rotation.state_machine import BackgroundRotation

log = structlog.get_logger()


@dataclass
class UserState:
    user_id: str

    # Rotation engine
    rotation_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    background: "BackgroundRotation | None" = None

    # Message queue
    queue: "deque[QueuedMessage]" = field(default_factory=deque)
    processing: bool = False
    drain_task: "asyncio.Task[None] | None" = None
    paused_until: float | None = None
    resume_handle: asyncio.TimerHandle | None = None
    current_cancel: "CancelToken | None" = None

    @property
    def paused(self) -> bool:
        return self.paused_until is not None

    @property
    def idle(self) -> bool:
        """True when nothing is queued, running, paused or being prepared."""
        return (
            not self.queue
            and not self.processing
            and not self.paused
            and self.background is None
            and not self.rotation_lock.locked()
        )


class UserRegistry:
    """Single owner of all per-user in-memory state."""

    def __init__(self, ttl_seconds: int = 7200) -> None:
        self._users: dict[str, UserState] = {}
        self._last_seen: dict[str, float] = {}
        self._ttl = ttl_seconds

    def get_or_create(self, user_id: str) -> UserState:
        self._last_seen[user_id] = time.time()
        state = self._users.get(user_id)
        if state is None:
            state = UserState(user_id=user_id)
            self._users[user_id] = state
            log.debug("user_registered", user_id=user_id)
        return state

    def get(self, user_id: str) -> UserState | None:
        return self._users.get(user_id)

    def expire_idle(self) -> list[str]:
        """Forget idle users not seen within the TTL. Returns expired ids."""
        now = time.time()
        expired = [
            user_id for user_id, ts in self._last_seen.items()
            if now - ts > self._ttl and self._users[user_id].idle
        ]
        for user_id in expired:
            self._users.pop(user_id, None)
            self._last_seen.pop(user_id, None)
            log.info("user_state_expired", user_id=user_id)
        return expired

    def all_users(self) -> dict[str, UserState]:
        return dict(self._users)

    def __len__(self) -> int:
        return len(self._users)
