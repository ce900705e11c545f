"""Agent dispatch: runs one prompt against the agent runtime for a user.

The runtime itself is external; this module owns what happens around it:
the pre-dispatch rotation check, resume/retry handling, recording usage,
and turning runtime exceptions into a tagged ``DispatchResult``.
"""

from __future__ import annotations

import asyncio
import enum
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog

from convkeeper.errors import (
    AgentCrashedError,
    AgentInterruptedError,
    RateLimitError,
)
from convkeeper.rotation.engine import QueryResult, RotationEngine
from convkeeper.rotation.history import render_session_history

log = structlog.get_logger()


class CancelToken:
    """Cooperative cancellation handle for one in-flight agent run."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class AgentEvent:
    """A streamed runtime event. ``kind`` is ``text`` or ``result``."""

    kind: str
    text: str = ""
    external_session_id: str | None = None


@dataclass
class AgentRequest:
    user_id: str
    prompt: str
    system_context: str
    resume: str | None = None
    send_file: Callable[..., Awaitable[None]] | None = None


@dataclass
class AgentRunResult:
    text: str
    cost_usd: float = 0.0
    turns: int = 0
    duration_ms: int = 0
    context_tokens: int = 0
    context_window_tokens: int = 0
    external_session_id: str | None = None
    blocks: list[dict[str, Any]] = field(default_factory=list)


EventCallback = Callable[[AgentEvent], Awaitable[None]]


class AgentRuntime(Protocol):
    """The process that actually answers prompts.

    May raise ``AgentInterruptedError`` (after ``cancel`` fired),
    ``RateLimitError`` or ``AgentCrashedError``.
    """

    async def run(
        self, request: AgentRequest, on_event: EventCallback, cancel: CancelToken,
    ) -> AgentRunResult: ...


class DispatchOutcome(enum.Enum):
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"


@dataclass
class DispatchResult:
    outcome: DispatchOutcome
    text: str = ""
    reset_at: float | None = None
    error: BaseException | None = None
    rotated: bool = False


async def _ignore_event(event: AgentEvent) -> None:
    return None


class AgentDispatcher:
    """``dispatch_to_agent`` on top of a rotation engine and a runtime."""

    def __init__(self, engine: RotationEngine, runtime: AgentRuntime) -> None:
        self.engine = engine
        self.runtime = runtime

    async def dispatch(
        self,
        user_id: str,
        prompt: str,
        on_event: EventCallback | None = None,
        cancel: CancelToken | None = None,
        send_file: Callable[..., Awaitable[None]] | None = None,
    ) -> DispatchResult:
        on_event = on_event or _ignore_event
        cancel = cancel or CancelToken()
        try:
            return await self._dispatch(user_id, prompt, on_event, cancel, send_file)
        except AgentInterruptedError:
            log.info("agent_interrupted", user_id=user_id)
            return DispatchResult(DispatchOutcome.INTERRUPTED)
        except RateLimitError as exc:
            log.warning("agent_rate_limited", user_id=user_id, reset_at=exc.reset_at)
            return DispatchResult(DispatchOutcome.RATE_LIMITED, reset_at=exc.reset_at)
        except Exception as exc:
            if cancel.cancelled:
                log.info("agent_interrupted", user_id=user_id, error=str(exc))
                return DispatchResult(DispatchOutcome.INTERRUPTED)
            log.exception("agent_dispatch_failed", user_id=user_id)
            return DispatchResult(DispatchOutcome.FAILED, error=exc)

    async def _dispatch(
        self,
        user_id: str,
        prompt: str,
        on_event: EventCallback,
        cancel: CancelToken,
        send_file: Callable[..., Awaitable[None]] | None,
    ) -> DispatchResult:
        ensured = await self.engine.ensure_active_session(user_id)
        # The force-threshold wait can be long; honour an interrupt that landed during it.
        if cancel.cancelled:
            raise AgentInterruptedError()
        session = ensured.session
        if ensured.rotated:
            log.info(
                "session_rotated_before_query",
                user_id=user_id,
                reason=ensured.reason.value if ensured.reason else None,
                new_local_id=session.local_id,
            )
        local_id = session.local_id
        resume = None if ensured.rotated else session.external_session_id

        system_context = await render_session_history(
            self.engine.store, user_id, self.engine.config.max_recent_sessions,
        )

        async def forward(event: AgentEvent) -> None:
            if event.external_session_id:
                await self.engine.set_external_session_id(
                    user_id, local_id, event.external_session_id,
                )
            await on_event(event)

        request = AgentRequest(
            user_id=user_id,
            prompt=prompt,
            system_context=system_context,
            resume=resume,
            send_file=send_file,
        )
        log.info(
            "agent_query_started",
            user_id=user_id,
            local_id=local_id,
            resume=bool(resume),
            prompt_length=len(prompt),
        )

        try:
            run = await self.runtime.run(request, forward, cancel)
        except AgentCrashedError as exc:
            if not resume or cancel.cancelled:
                raise
            log.warning(
                "agent_crashed_retrying_without_resume",
                user_id=user_id,
                external_session_id=resume,
                error=str(exc),
            )
            await self.engine.set_external_session_id(user_id, local_id, None)
            request.resume = None
            run = await self.runtime.run(request, forward, cancel)

        await self.engine.record_query_result(
            user_id,
            local_id,
            prompt,
            run.text or "[No text response]",
            QueryResult(
                cost_usd=run.cost_usd,
                turns=run.turns,
                duration_ms=run.duration_ms,
                context_tokens=run.context_tokens,
                context_window_tokens=run.context_window_tokens,
                external_session_id=run.external_session_id,
                blocks=run.blocks,
            ),
        )
        log.info(
            "agent_query_completed",
            user_id=user_id,
            local_id=local_id,
            cost_usd=run.cost_usd,
            turns=run.turns,
            duration_ms=run.duration_ms,
            context_tokens=run.context_tokens,
        )
        return DispatchResult(DispatchOutcome.COMPLETED, text=run.text, rotated=ensured.rotated)
