"""Tests for the per-user message queue."""

import asyncio
import time

import pytest

from conftest import ScriptedRuntime, complete_query, wait_for
from convkeeper.agent.dispatch import AgentDispatcher
from convkeeper.errors import RateLimitError
from convkeeper.queue.manager import FAILURE_REPLY, RESUMED_REPLY, MessageQueue
from convkeeper.queue.messages import QueuedMessage, digest_text


class Chat:
    """Collects replies sent back to one user."""

    def __init__(self):
        self.replies = []
        self.typing = 0
        self.fail_replies = False

    async def reply(self, text):
        if self.fail_replies:
            raise ConnectionError("chat platform unreachable")
        self.replies.append(text)

    def show_typing(self):
        self.typing += 1

    def message(self, text, user_id="u1"):
        return QueuedMessage(
            user_id=user_id, text=text, reply=self.reply,
            show_typing=self.show_typing, platform="test",
        )


@pytest.fixture
def runtime():
    return ScriptedRuntime()


@pytest.fixture
async def queue(engine, runtime, config):
    queue = MessageQueue(AgentDispatcher(engine, runtime), config)
    yield queue
    await queue.shutdown()


@pytest.fixture
def chat():
    return Chat()


async def drained(queue, user_id="u1", timeout=2.0):
    await wait_for(
        lambda: not queue.is_processing(user_id)
        and not queue.is_paused(user_id)
        and queue.queue_length(user_id) == 0,
        timeout,
    )


class TestOrdering:
    async def test_processes_in_arrival_order(self, queue, runtime, chat):
        for text in ("a", "b", "c"):
            queue.enqueue(chat.message(text))

        await drained(queue)

        assert runtime.prompts == ["a", "b", "c"]
        assert chat.replies == ["reply to a", "reply to b", "reply to c"]

    async def test_single_unit_of_work_in_flight(self, queue, runtime, chat):
        release = asyncio.Event()
        runtime.script["a"] = [release]
        queue.enqueue(chat.message("a"))
        await wait_for(lambda: runtime.prompts == ["a"])

        queue.enqueue(chat.message("b"))
        await asyncio.sleep(0.02)

        assert queue.is_processing("u1")
        assert queue.queue_length("u1") == 1
        assert runtime.prompts == ["a"]
        release.set()
        await drained(queue)
        assert runtime.prompts == ["a", "b"]

    async def test_users_are_independent(self, queue, runtime, chat):
        release = asyncio.Event()
        runtime.script["slow"] = [release]
        queue.enqueue(chat.message("slow", user_id="alice"))
        queue.enqueue(chat.message("fast", user_id="bob"))

        await drained(queue, "bob")

        assert "fast" in runtime.prompts
        assert queue.is_processing("alice")
        release.set()
        await drained(queue, "alice")


class TestInterrupt:
    async def test_interrupt_cancels_only_current(self, queue, runtime, chat):
        runtime.script["long task"] = ["block"]
        queue.enqueue(chat.message("long task"))
        queue.enqueue(chat.message("next"))
        await wait_for(lambda: "long task" in runtime.prompts)

        assert await queue.interrupt("u1") is True
        await drained(queue)

        assert runtime.prompts == ["long task", "next"]
        assert chat.replies == ["reply to next"]

    async def test_interrupt_when_idle(self, queue):
        assert await queue.interrupt("nobody") is False

    async def test_interrupt_during_forced_switch_skips_agent(
        self, queue, engine, runtime, summarizer, chat,
    ):
        gate = asyncio.Event()
        summarizer.gates.append(gate)
        await complete_query(engine, "u1", context_tokens=int(200_000 * 0.82))
        await engine.ensure_active_session("u1")
        await wait_for(lambda: not summarizer.gates)
        await complete_query(engine, "u1", prompt="q2", context_tokens=int(200_000 * 0.95))

        queue.enqueue(chat.message("stop me"))
        await wait_for(lambda: queue.registry.get("u1").current_cancel is not None)
        assert await queue.interrupt("u1") is True
        gate.set()
        await drained(queue)

        assert runtime.prompts == []
        assert chat.replies == []

    async def test_interrupt_leaves_background_prep_running(
        self, queue, engine, runtime, summarizer, chat,
    ):
        gate = asyncio.Event()
        summarizer.gates.append(gate)
        await complete_query(engine, "u1", context_tokens=int(200_000 * 0.82))
        await engine.ensure_active_session("u1")
        runtime.script["long task"] = ["block"]
        queue.enqueue(chat.message("long task"))
        await wait_for(lambda: "long task" in runtime.prompts)

        assert await queue.interrupt("u1") is True
        await drained(queue)

        bg = engine.background("u1")
        assert bg.preparing
        gate.set()
        await bg.wait()
        assert bg.ready


class TestRateLimit:
    async def test_replays_limited_message_first(self, queue, runtime, chat):
        runtime.script["a"] = [RateLimitError(reset_at=time.time() + 0.05)]
        queue.enqueue(chat.message("a"))
        queue.enqueue(chat.message("b"))
        await wait_for(lambda: queue.is_paused("u1"))

        assert queue.queue_length("u1") == 2
        queue.enqueue(chat.message("c"))
        assert queue.queue_length("u1") == 3
        assert runtime.prompts == ["a"]

        await drained(queue)

        assert runtime.prompts == ["a", "a", "b", "c"]
        assert chat.replies[0].startswith("Rate limit reached. Expected to recover at ")
        assert RESUMED_REPLY in chat.replies
        assert chat.replies.index(RESUMED_REPLY) < chat.replies.index("reply to a")
        assert [r for r in chat.replies if r.startswith("reply to")] == [
            "reply to a", "reply to b", "reply to c",
        ]

    async def test_unknown_reset_uses_default_wait(self, queue, runtime, chat):
        runtime.script["a"] = [RateLimitError()]
        queue.enqueue(chat.message("a"))
        await wait_for(lambda: chat.replies)

        assert chat.replies[0] == (
            "Rate limit reached. Will retry automatically in 1 minutes. "
            "Your message has been saved."
        )
        await drained(queue)
        assert runtime.prompts == ["a", "a"]

    async def test_shutdown_cancels_resume_timer(self, queue, runtime, chat):
        runtime.script["a"] = [RateLimitError(reset_at=time.time() + 60)]
        queue.enqueue(chat.message("a"))
        await wait_for(lambda: queue.is_paused("u1"))

        await queue.shutdown()

        state = queue.registry.get("u1")
        assert state.resume_handle is None
        assert queue.queue_length("u1") == 1


class TestFailures:
    async def test_failure_sends_apology_and_continues(self, queue, runtime, chat):
        runtime.script["bad"] = [RuntimeError("boom")]
        queue.enqueue(chat.message("bad"))
        queue.enqueue(chat.message("good"))

        await drained(queue)

        assert chat.replies == [FAILURE_REPLY, "reply to good"]

    async def test_reply_failure_does_not_stop_queue(self, queue, runtime, chat):
        chat.fail_replies = True
        queue.enqueue(chat.message("a"))
        queue.enqueue(chat.message("b"))

        await drained(queue)

        assert runtime.prompts == ["a", "b"]


class TestReplies:
    async def test_final_text_sent_once_when_streaming(self, queue, chat):
        queue.enqueue(chat.message("a"))
        await drained(queue)
        assert chat.replies == ["reply to a"]

    async def test_final_text_sent_when_nothing_streamed(self, queue, runtime, chat):
        runtime.emit_text = False
        queue.enqueue(chat.message("a"))
        await drained(queue)
        assert chat.replies == ["reply to a"]

    async def test_intermediate_push_disabled(self, engine, runtime, config, chat):
        config = config.model_copy(update={"push_intermediate_messages": False})
        queue = MessageQueue(AgentDispatcher(engine, runtime), config)
        queue.enqueue(chat.message("a"))
        await drained(queue)
        await queue.shutdown()
        assert chat.replies == ["reply to a"]

    async def test_typing_shown_while_processing(self, queue, runtime, chat):
        release = asyncio.Event()
        runtime.script["a"] = [release]
        queue.enqueue(chat.message("a"))
        await wait_for(lambda: chat.typing >= 2)
        release.set()
        await drained(queue)

    async def test_slow_streamed_reply_does_not_block_queue(self, queue, runtime, chat):
        platform_up = asyncio.Event()
        delivered = []

        async def slow_reply(text):
            await platform_up.wait()
            delivered.append(text)

        for text in ("a", "b"):
            message = chat.message(text)
            message.reply = slow_reply
            queue.enqueue(message)

        await drained(queue)

        assert runtime.prompts == ["a", "b"]
        assert delivered == []
        platform_up.set()
        await wait_for(lambda: len(delivered) == 2)
        assert sorted(delivered) == ["reply to a", "reply to b"]

    async def test_shutdown_cancels_hanging_reply(self, queue, chat):
        async def hanging_reply(text):
            await asyncio.Event().wait()

        message = chat.message("a")
        message.reply = hanging_reply
        queue.enqueue(message)
        await drained(queue)

        await asyncio.wait_for(queue.shutdown(), 1.0)


class TestUserStateExpiry:
    async def test_idle_users_expire_when_drain_finishes(self, queue, chat):
        queue.registry.get_or_create("ghost")
        queue.registry._last_seen["ghost"] = time.time() - 10_000

        queue.enqueue(chat.message("a"))
        await drained(queue)

        await wait_for(lambda: queue.registry.get("ghost") is None)
        assert queue.registry.get("u1") is not None

    async def test_paused_user_kept(self, queue, runtime, chat):
        runtime.script["a"] = [RateLimitError(reset_at=time.time() + 60)]
        queue.enqueue(chat.message("a"))
        await wait_for(lambda: queue.is_paused("u1"))
        queue.registry._last_seen["u1"] = time.time() - 10_000

        queue.enqueue(chat.message("other", user_id="u2"))
        await drained(queue, "u2")

        assert queue.registry.get("u1") is not None
        assert queue.queue_length("u1") == 1


class TestDigestText:
    def test_short_text_unchanged(self):
        assert digest_text("hello", 10) == "hello"

    def test_long_text_digested(self):
        assert digest_text("abcdefghijkl", 4) == "ab...kl (length: 12)"
