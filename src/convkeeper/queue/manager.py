"""Per-user message queue: serializes all agent work for a user.

At most one drain task runs per user. Messages enqueued while it runs are
appended and picked up by the same loop. A rate-limited message goes back to
the front of the queue and the user is paused until the limit resets; one
timer resumes the drain at that deadline.
"""

from __future__ import annotations

import asyncio
import inspect
import math
import time
from collections.abc import Callable
from datetime import datetime

import structlog

from convkeeper.agent.dispatch import (
    AgentDispatcher,
    AgentEvent,
    CancelToken,
    DispatchOutcome,
    DispatchResult,
)
from convkeeper.config import AppConfig
from convkeeper.state.registry import UserRegistry, UserState

from .messages import QueuedMessage, digest_text

log = structlog.get_logger()

FAILURE_REPLY = "An error occurred while processing your message. Please try again."
RESUMED_REPLY = "Rate limit has been lifted. Resuming your message..."


def format_reset_time(reset_at: float) -> str:
    return datetime.fromtimestamp(reset_at).strftime("%H:%M")


class MessageQueue:
    """FIFO per user, one in-flight unit of work per user."""

    def __init__(
        self,
        dispatcher: AgentDispatcher,
        config: AppConfig,
        registry: UserRegistry | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.dispatcher = dispatcher
        self.config = config
        # Shared with the rotation engine so each user has one state object.
        self.registry = registry if registry is not None else dispatcher.engine.registry
        self._clock = clock
        self._background: set[asyncio.Task[None]] = set()

    def enqueue(self, message: QueuedMessage) -> None:
        """Append a message; start draining unless already busy or paused."""
        state = self.registry.get_or_create(message.user_id)
        state.queue.append(message)
        log.debug(
            "message_enqueued",
            user_id=message.user_id,
            platform=message.platform,
            queue_length=len(state.queue),
            paused=state.paused,
        )
        self._start_drain(state)

    async def interrupt(self, user_id: str) -> bool:
        """Cancel the in-flight unit of work only. Queued items are kept."""
        state = self.registry.get(user_id)
        if state is None or state.current_cancel is None:
            return False
        log.info("interrupting_current_message", user_id=user_id)
        state.current_cancel.cancel()
        return True

    def queue_length(self, user_id: str) -> int:
        state = self.registry.get(user_id)
        return len(state.queue) if state else 0

    def is_processing(self, user_id: str) -> bool:
        state = self.registry.get(user_id)
        return bool(state and state.processing)

    def is_paused(self, user_id: str) -> bool:
        state = self.registry.get(user_id)
        return bool(state and state.paused)

    async def shutdown(self) -> None:
        """Cancel resume timers, in-flight work and drain tasks."""
        tasks: list[asyncio.Task[None]] = []
        for state in self.registry.all_users().values():
            if state.resume_handle is not None:
                state.resume_handle.cancel()
                state.resume_handle = None
            if state.current_cancel is not None:
                state.current_cancel.cancel()
            if state.drain_task is not None and not state.drain_task.done():
                state.drain_task.cancel()
                tasks.append(state.drain_task)
        for task in self._background:
            task.cancel()
        tasks.extend(self._background)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _start_drain(self, state: UserState) -> None:
        if state.processing or state.paused or not state.queue:
            return
        state.processing = True
        state.drain_task = asyncio.create_task(
            self._drain(state), name=f"queue-{state.user_id}",
        )

    async def _drain(self, state: UserState) -> None:
        try:
            while state.queue and not state.paused:
                message = state.queue.popleft()
                result = await self._process(state, message)
                if result.outcome is DispatchOutcome.RATE_LIMITED:
                    state.queue.appendleft(message)
                    await self._pause(state, message, result.reset_at)
        except Exception:
            log.exception("queue_drain_failed", user_id=state.user_id)
        finally:
            state.processing = False
            state.drain_task = None
            self.registry.expire_idle()

    async def _process(self, state: UserState, message: QueuedMessage) -> DispatchResult:
        """Run one unit of work. Never raises."""
        cancel = CancelToken()
        state.current_cancel = cancel
        typing = asyncio.create_task(self._keep_typing(message))
        streamed = False

        async def on_event(event: AgentEvent) -> None:
            nonlocal streamed
            if (
                self.config.push_intermediate_messages
                and event.kind == "text"
                and event.text.strip()
            ):
                streamed = True
                self._spawn(self._send_reply(message, event.text))

        log.info(
            "processing_message",
            user_id=message.user_id,
            platform=message.platform,
            text=digest_text(message.text, self.config.reply_log_max_length),
        )
        try:
            result = await self.dispatcher.dispatch(
                message.user_id, message.text, on_event, cancel, message.send_file,
            )
        except Exception as exc:
            log.exception("message_processing_failed", user_id=message.user_id)
            result = DispatchResult(DispatchOutcome.FAILED, error=exc)
        finally:
            typing.cancel()
            await asyncio.gather(typing, return_exceptions=True)
            state.current_cancel = None

        if result.outcome is DispatchOutcome.COMPLETED:
            if not streamed and result.text:
                await self._send_reply(message, result.text)
        elif result.outcome is DispatchOutcome.INTERRUPTED:
            log.info("message_interrupted", user_id=message.user_id)
        elif result.outcome is DispatchOutcome.FAILED:
            log.error(
                "message_failed",
                user_id=message.user_id,
                error=str(result.error) if result.error else None,
            )
            await self._safe_reply(message, FAILURE_REPLY)
        return result

    async def _pause(
        self, state: UserState, message: QueuedMessage, reset_at: float | None,
    ) -> None:
        now = self._clock()
        default_wait = self.config.rate_limit_default_wait_seconds
        resume_at = reset_at if reset_at is not None else now + default_wait
        state.paused_until = resume_at

        if state.resume_handle is not None:
            state.resume_handle.cancel()
        delay = max(resume_at - now, self.config.rate_limit_min_wait_seconds)
        loop = asyncio.get_running_loop()
        state.resume_handle = loop.call_later(delay, self._resume, state.user_id, message)
        log.info(
            "queue_paused",
            user_id=state.user_id,
            resume_at=resume_at,
            delay_seconds=round(delay, 3),
            queue_length=len(state.queue),
        )

        if reset_at is not None:
            notice = (
                f"Rate limit reached. Expected to recover at {format_reset_time(reset_at)}. "
                "Your message has been saved and will be processed automatically."
            )
        else:
            minutes = math.ceil(default_wait / 60)
            notice = (
                f"Rate limit reached. Will retry automatically in {minutes} minutes. "
                "Your message has been saved."
            )
        await self._safe_reply(message, notice)

    def _resume(self, user_id: str, message: QueuedMessage) -> None:
        state = self.registry.get(user_id)
        if state is None:
            return
        state.resume_handle = None
        state.paused_until = None
        log.info("queue_resumed", user_id=user_id, queue_length=len(state.queue))
        self._spawn(self._safe_reply(message, RESUMED_REPLY))
        self._start_drain(state)

    async def _keep_typing(self, message: QueuedMessage) -> None:
        while True:
            try:
                shown = message.show_typing()
                if inspect.isawaitable(shown):
                    await shown
            except Exception:
                log.warning("typing_indicator_failed", user_id=message.user_id, exc_info=True)
            await asyncio.sleep(self.config.typing_refresh_seconds)

    async def _send_reply(self, message: QueuedMessage, text: str) -> None:
        log.info(
            "bot_reply",
            user_id=message.user_id,
            reply=digest_text(text, self.config.reply_log_max_length),
        )
        await self._safe_reply(message, text)

    async def _safe_reply(self, message: QueuedMessage, text: str) -> None:
        try:
            await message.reply(text)
        except Exception:
            log.exception("reply_failed", user_id=message.user_id)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
