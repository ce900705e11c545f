"""aiohttp admin application: session inspection and manual rotation."""

from __future__ import annotations

import asyncio

import httpx
import structlog
from aiohttp import web

from .config import AppConfig
from .rotation.engine import RotationEngine, RotationReason
from .rotation.history import describe_session, render_session_history
from .rotation.state_machine import derive_phase
from .rotation.summarizer import AnthropicSummarizer, Summarizer
from .state.registry import UserRegistry
from .store.db import SessionStore

log = structlog.get_logger()


def build_summarizer(config: AppConfig, http_client: httpx.AsyncClient) -> AnthropicSummarizer:
    return AnthropicSummarizer(
        http_client,
        model=config.summary_model,
        api_key=config.api_key,
        auth_token=config.auth_token,
        max_chars=config.summary_max_chars,
        timeout=config.summary_timeout_seconds,
    )


async def create_app(
    config: AppConfig | None = None,
    http_client: httpx.AsyncClient | None = None,
    summarizer: Summarizer | None = None,
) -> web.Application:
    """Create and configure the aiohttp application.

    Args:
        config: Application configuration. Defaults to AppConfig().
        http_client: Optional pre-configured httpx client for the summarizer
            (for testing).
        summarizer: Optional summarizer; overrides the HTTP summarizer.
    """
    if config is None:
        config = AppConfig()

    app = web.Application()
    app["config"] = config

    if http_client is None:
        http_client = httpx.AsyncClient(base_url=config.summary_api_url)
    app["http_client"] = http_client

    store = SessionStore(config.db_path)
    app["store"] = store
    app["registry"] = UserRegistry(config.user_state_ttl_seconds)
    app["engine"] = RotationEngine(
        store,
        summarizer if summarizer is not None else build_summarizer(config, http_client),
        config,
        registry=app["registry"],
    )

    app.router.add_get("/health", handle_health)
    app.router.add_get("/users/{user_id}/session", handle_session)
    app.router.add_get("/users/{user_id}/sessions", handle_sessions)
    app.router.add_get("/users/{user_id}/history", handle_history)
    app.router.add_post("/users/{user_id}/rotate", handle_rotate)

    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)

    return app


async def on_startup(app: web.Application) -> None:
    """Initialize resources on startup."""
    store: SessionStore = app["store"]
    await store.connect()
    log.info("server_started", config=app["config"].model_dump(exclude={"api_key", "auth_token"}))


async def on_cleanup(app: web.Application) -> None:
    """Clean up resources on shutdown."""
    engine: RotationEngine = app["engine"]
    await engine.shutdown()
    await app["http_client"].aclose()
    store: SessionStore = app["store"]
    await store.close()
    log.info("server_stopped")


async def handle_health(request: web.Request) -> web.Response:
    """GET /health: health check endpoint."""
    registry: UserRegistry = request.app["registry"]
    return web.json_response({"status": "ok", "users": len(registry)})


async def handle_session(request: web.Request) -> web.Response:
    """GET /users/{user_id}/session: active session info."""
    user_id = request.match_info["user_id"]
    engine: RotationEngine = request.app["engine"]
    session = await engine.store.read_active(user_id)
    if session is None:
        return web.json_response({"error": "no active session"}, status=404)
    result = describe_session(session)
    result["phase"] = derive_phase(session, engine.background(user_id)).value
    return web.json_response(result)


async def handle_sessions(request: web.Request) -> web.Response:
    """GET /users/{user_id}/sessions: active plus archived sessions."""
    user_id = request.match_info["user_id"]
    store: SessionStore = request.app["store"]
    current = await store.read_active(user_id)
    archived = await store.list_archived(user_id)
    cumulative = await store.read_cumulative_summary(user_id)
    return web.json_response({
        "active": describe_session(current) if current else None,
        "archived": [describe_session(s) for s in archived],
        "cumulative_summary": {
            "text": cumulative.text,
            "session_count": cumulative.session_count,
            "updated_at": cumulative.updated_at,
        } if cumulative else None,
    })


async def handle_history(request: web.Request) -> web.Response:
    """GET /users/{user_id}/history: the context block the agent would see."""
    user_id = request.match_info["user_id"]
    store: SessionStore = request.app["store"]
    config: AppConfig = request.app["config"]
    text = await render_session_history(store, user_id, config.max_recent_sessions)
    return web.json_response({"user_id": user_id, "history": text})


async def handle_rotate(request: web.Request) -> web.Response:
    """POST /users/{user_id}/rotate: archive the active session now."""
    user_id = request.match_info["user_id"]
    engine: RotationEngine = request.app["engine"]
    current = await engine.store.read_active(user_id)
    if current is None or not current.external_session_id:
        return web.json_response({
            "status": "nothing_to_rotate",
            "local_id": current.local_id if current else None,
        })
    new_session = await engine.rotate_session(
        user_id, RotationReason.MANUAL, expected_local_id=current.local_id,
    )
    if new_session is None:
        # The session was switched between the read above and the lock.
        active = await engine.store.read_active(user_id)
        return web.json_response({
            "status": "nothing_to_rotate",
            "local_id": active.local_id if active else None,
        })
    log.info("manual_rotation", user_id=user_id, old_local_id=current.local_id)
    return web.json_response({
        "status": "rotated",
        "old_local_id": current.local_id,
        "new_local_id": new_session.local_id,
    })


def run_server(config: AppConfig | None = None) -> None:
    """Run the admin server (blocking)."""
    if config is None:
        config = AppConfig()

    async def _run() -> None:
        app = await create_app(config)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, host=config.host, port=config.port)
        await site.start()
        log.info("server_listening", host=config.host, port=config.port)
        try:
            await asyncio.Event().wait()
        finally:
            await runner.cleanup()

    asyncio.run(_run())
