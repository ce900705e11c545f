"""Shared fixtures: a real SQLite store plus in-memory summarizer and runtime fakes."""

import asyncio
import time

import pytest

from convkeeper.agent.dispatch import AgentEvent, AgentRunResult
from convkeeper.config import AppConfig
from convkeeper.errors import SummarizationError
from convkeeper.rotation.engine import QueryResult, RotationEngine
from convkeeper.store.db import SessionStore


class FakeSummarizer:
    """Records calls. Each entry in ``gates`` blocks one summarize() call."""

    def __init__(self, summary="Summary of the session.", condensed="Condensed memory."):
        self.summary = summary
        self.condensed = condensed
        self.summarize_calls = []
        self.condense_calls = []
        self.gates: list[asyncio.Event] = []
        self.fail_summarize = False
        self.fail_condense = False

    async def summarize(self, entries):
        self.summarize_calls.append(list(entries))
        if self.gates:
            gate = self.gates.pop(0)
            await gate.wait()
        if self.fail_summarize:
            raise SummarizationError("summarizer unavailable")
        return self.summary

    async def condense(self, existing, new_summaries):
        self.condense_calls.append((existing, list(new_summaries)))
        if self.fail_condense:
            raise SummarizationError("condenser unavailable")
        return self.condensed


class ScriptedRuntime:
    """Agent runtime fake. ``script[prompt]`` lists per-call actions.

    An action is an exception instance (raised), an ``asyncio.Event``
    (awaited before answering) or the string ``"block"`` (waits for the
    cancel token, then raises AgentInterruptedError).
    """

    def __init__(self, context_tokens=1_000, context_window_tokens=200_000):
        self.calls = []
        self.script = {}
        self.context_tokens = context_tokens
        self.context_window_tokens = context_window_tokens
        self.emit_text = True

    async def run(self, request, on_event, cancel):
        from convkeeper.errors import AgentInterruptedError

        self.calls.append((request.prompt, request.resume, request.system_context))
        actions = self.script.get(request.prompt)
        action = actions.pop(0) if actions else None
        if isinstance(action, BaseException):
            raise action
        if isinstance(action, asyncio.Event):
            await action.wait()
        if action == "block":
            await cancel.wait()
            raise AgentInterruptedError()

        text = f"reply to {request.prompt}"
        if self.emit_text:
            await on_event(AgentEvent("text", text, external_session_id="ext-1"))
        return AgentRunResult(
            text=text,
            cost_usd=0.01,
            turns=1,
            duration_ms=5,
            context_tokens=self.context_tokens,
            context_window_tokens=self.context_window_tokens,
            external_session_id="ext-1",
        )

    @property
    def prompts(self):
        return [c[0] for c in self.calls]


class FakeClock:
    def __init__(self, start=None):
        self.now = start if start is not None else time.time()

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def config(tmp_path):
    return AppConfig(
        db_path=str(tmp_path / "sessions.sqlite"),
        log_dir=str(tmp_path / "logs"),
        rate_limit_default_wait_seconds=0.05,
        rate_limit_min_wait_seconds=0.01,
        typing_refresh_seconds=0.01,
    )


@pytest.fixture
async def store(config):
    store = SessionStore(config.db_path)
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
def summarizer():
    return FakeSummarizer()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def engine(store, summarizer, config, clock):
    engine = RotationEngine(store, summarizer, config, clock=clock)
    yield engine
    await engine.shutdown()


async def complete_query(
    engine,
    user_id,
    prompt="hello",
    context_tokens=1_000,
    context_window_tokens=200_000,
    cost_usd=0.01,
    turns=2,
):
    """Ensure a session, then record one completed exchange on it."""
    ensured = await engine.ensure_active_session(user_id)
    await engine.record_query_result(
        user_id,
        ensured.session.local_id,
        prompt,
        f"answer to {prompt}",
        QueryResult(
            cost_usd=cost_usd,
            turns=turns,
            duration_ms=10,
            context_tokens=context_tokens,
            context_window_tokens=context_window_tokens,
            external_session_id="ext-1",
        ),
    )
    return ensured


async def wait_for(predicate, timeout=2.0):
    """Poll until ``predicate()`` is true; the store runs on a worker thread."""
    async def poll():
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout)
