"""Tether entry point.

Initializes all components and starts the server:
  Settings -> Database -> ModelClient -> Tools -> Registry/Broadcaster -> AgentLoop -> App -> Uvicorn

Uses Starlette lifespan so components live on the same event loop as
uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from tether.api.anthropic import AnthropicModelClient, AnthropicVerifier
from tether.api.builtin_tools import register_builtin_tools
from tether.api.tools import ToolDispatcher
from tether.background import BackgroundWorker
from tether.config import Settings
from tether.runtime.approvals import ApprovalManager
from tether.runtime.broadcaster import ProgressBroadcaster
from tether.runtime.context import TokenBudgetShrinker
from tether.runtime.control import AgentControl
from tether.runtime.loop import AgentLoop
from tether.runtime.processes import ProcessTracker
from tether.runtime.sessions import SessionRegistry
from tether.storage.conversations import SqlConversationStore
from tether.storage.database import Database

logger = logging.getLogger(__name__)


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order.

    1. Database + conversation store (skipped when persistence is off)
    2. Model client and verifier
    3. Tool dispatcher with the built-in tools
    4. Registry, broadcaster, approvals, process tracker
    5. AgentLoop and AgentControl
    """
    database = None
    store = None
    background = None
    if settings.persistence_enabled:
        database = Database(settings)
        await database.connect()
        store = SqlConversationStore(database)
        background = BackgroundWorker()
        await background.start()

    model = AnthropicModelClient(settings)
    await model.start()
    verifier = AnthropicVerifier(model, settings) if settings.verification_enabled else None

    processes = ProcessTracker(kill_grace=settings.process_kill_grace)
    dispatcher = ToolDispatcher()
    register_builtin_tools(dispatcher, settings, processes)

    registry = SessionRegistry(processes)
    broadcaster = ProgressBroadcaster(registry, window_ms=settings.progress_throttle_ms)
    await broadcaster.start()
    approvals = ApprovalManager()

    loop = AgentLoop(
        model,
        dispatcher,
        registry=registry,
        broadcaster=broadcaster,
        settings=settings,
        shrinker=TokenBudgetShrinker(max_tokens=settings.context_max_tokens),
        verifier=verifier,
        store=store,
        background=background,
        approvals=approvals,
    )
    control = AgentControl(registry, broadcaster, approvals, processes)

    return {
        "database": database,
        "store": store,
        "background": background,
        "model": model,
        "processes": processes,
        "dispatcher": dispatcher,
        "registry": registry,
        "broadcaster": broadcaster,
        "approvals": approvals,
        "loop": loop,
        "control": control,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Tether...")

    control = components.get("control")
    if control:
        await control.stop_all()

    broadcaster = components.get("broadcaster")
    if broadcaster:
        await broadcaster.stop()

    background = components.get("background")
    if background:
        await background.stop()

    model = components.get("model")
    if model:
        await model.close()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("Tether shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app; components are created by the lifespan."""
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))
        app.state.components = components
        logger.info(
            "Tether started: model=%s max_iterations=%d workspace=%s",
            settings.model,
            settings.max_iterations,
            settings.workspace_dir,
        )
        yield
        await shutdown_components(components)

    from tether.api.rest import create_app

    return create_app(
        loop=_lazy_component(components, "loop"),
        control=_lazy_component(components, "control"),
        registry=_lazy_component(components, "registry"),
        broadcaster=_lazy_component(components, "broadcaster"),
        approvals=_lazy_component(components, "approvals"),
        dispatcher=_lazy_component(components, "dispatcher"),
        settings=settings,
        store=_lazy_component(components, "store") if settings.persistence_enabled else None,
        database=_lazy_component(components, "database") if settings.persistence_enabled else None,
        lifespan=lifespan,
    )


class _LazyProxy:
    """Proxy that defers attribute access to a dict-backed component.

    Lets create_app() receive component references before the lifespan
    has initialized them.
    """

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self):
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not yet initialized, lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)

    def __contains__(self, item):
        return item in self._resolve()

    def __len__(self):
        return len(self._resolve())


def _lazy_component(components: dict, key: str) -> _LazyProxy:
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point: parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting Tether")
    logger.info("Model: %s", settings.model)
    logger.info("Persistence: %s", "enabled" if settings.persistence_enabled else "disabled")

    if not settings.anthropic_api_key and not settings.anthropic_auth_token:
        logger.warning("Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- /runs will fail")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
