"""
callrelay.main
==============
Entrypoint that stitches everything together:

• config / CORS
• shared objects on `app.state`  (state store, engine registry, broadcast
  dispatcher, takeover state machine, context assembler, coordinator)
• route registration (v1 router)

Configuration Loading Order:
    1. .env.local / .env (local development overrides)
    2. Environment variables (container/cloud deployments)
"""

from __future__ import annotations

import logging
import os
import sys
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from utils.ml_logging import get_logger
from utils.telemetry_config import setup_azure_monitor

from apps.callrelay.backend.api.v1.router import v1_router
from apps.callrelay.backend.config import Settings
from apps.callrelay.backend.src.services import (
    DirectoryLeadResolver,
    LoggingChannelGateway,
    SessionArchive,
)
from callrelay.broadcast.dispatcher import BroadcastDispatcher
from callrelay.clock import Clock, SystemClock
from callrelay.collaborators import ChannelGateway, HistorySource, LeadResolver, PersistenceService
from callrelay.context.assembler import ContextAssembler
from callrelay.control.takeover import TakeoverStateMachine
from callrelay.coordinator import SessionCoordinator
from callrelay.engine.registry import ActiveSessionRegistry
from callrelay.engine.transport import EngineConnector, WebSocketEngineConnector
from callrelay.redis.manager import RedisManager
from callrelay.state.backends import InMemoryStateBackend, RedisStateBackend, StateBackend
from callrelay.state.store import ConversationStateStore

# Setup monitoring (configures loggers and Azure Monitor export)
setup_azure_monitor(logger_name="")

logger = get_logger("main")

StepCallable = Callable[[], Awaitable[None]]
LifecycleStep = tuple[str, StepCallable, StepCallable | None]


def _build_lifespan(
    settings: Settings,
    *,
    backend: StateBackend | None,
    connector: EngineConnector | None,
    resolver: LeadResolver | None,
    gateway: ChannelGateway | None,
    history: HistorySource | None,
    persistence: PersistenceService | None,
    clock: Clock | None,
):
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """
        Manage application lifecycle: build the coordinator graph on startup and
        close every engine connection and dashboard subscriber on shutdown.
        """
        tracer = trace.get_tracer(__name__)
        app_clock = clock or SystemClock()

        startup_steps: list[LifecycleStep] = []
        executed_steps: list[LifecycleStep] = []

        def add_step(name: str, start: StepCallable, shutdown: StepCallable | None = None) -> None:
            startup_steps.append((name, start, shutdown))

        async def run_steps(steps: list[LifecycleStep]) -> None:
            for name, start_fn, shutdown_fn in steps:
                with tracer.start_as_current_span(f"startup.{name}") as step_span:
                    step_start = time.perf_counter()
                    try:
                        await start_fn()
                    except Exception as exc:
                        step_span.record_exception(exc)
                        step_span.set_status(Status(StatusCode.ERROR, str(exc)))
                        logger.error("startup stage failed", extra={"stage": name, "error": str(exc)})
                        raise
                    duration = round(time.perf_counter() - step_start, 2)
                    step_span.set_attribute("duration_sec", duration)
                    logger.debug(
                        "startup stage completed", extra={"stage": name, "duration_sec": duration}
                    )
                    executed_steps.append((name, start_fn, shutdown_fn))

        async def run_shutdown(steps: list[LifecycleStep]) -> None:
            for name, _, shutdown_fn in reversed(steps):
                if shutdown_fn is None:
                    continue
                with tracer.start_as_current_span(f"shutdown.{name}") as step_span:
                    try:
                        await shutdown_fn()
                    except Exception as exc:
                        step_span.record_exception(exc)
                        step_span.set_status(Status(StatusCode.ERROR, str(exc)))
                        logger.error(
                            "shutdown stage failed", extra={"stage": name, "error": str(exc)}
                        )

        async def start_state_store() -> None:
            state_backend = backend
            if state_backend is None and settings.state_backend == "memory":
                logger.warning("Using in-memory state backend; state is not shared across workers")
                state_backend = InMemoryStateBackend(app_clock)
            elif state_backend is None:
                app.state.redis = RedisManager(
                    host=settings.redis_host,
                    access_key=settings.redis_access_key,
                    port=settings.redis_port,
                    ssl=settings.redis_ssl,
                )
                await app.state.redis.initialize()
                state_backend = RedisStateBackend(app.state.redis)
            app.state.store = ConversationStateStore(
                state_backend,
                clock=app_clock,
                session_ttl_seconds=settings.session_ttl_seconds,
                org_index_ttl_seconds=settings.org_index_ttl_seconds,
            )
            app.state.archive = SessionArchive(
                state_backend, ttl_seconds=settings.archive_ttl_seconds
            )

        async def start_collaborators() -> None:
            lead_resolver = resolver
            if lead_resolver is None:
                if settings.lead_directory_file:
                    lead_resolver = DirectoryLeadResolver.from_json_file(
                        settings.lead_directory_file,
                        default_organization_id=settings.default_organization_id,
                    )
                else:
                    lead_resolver = DirectoryLeadResolver(
                        default_organization_id=settings.default_organization_id
                    )
            if isinstance(lead_resolver, DirectoryLeadResolver):
                for lead in lead_resolver.directory.values():
                    profile = {"name": lead.display_name, **lead.attributes}
                    await app.state.archive.save_profile(lead.lead_id, profile)
            app.state.resolver = lead_resolver
            app.state.gateway = gateway or LoggingChannelGateway()
            app.state.history = history or app.state.archive
            app.state.persistence = persistence or app.state.archive

        async def start_coordinator() -> None:
            engine_connector = connector or WebSocketEngineConnector(
                settings.engine_ws_url, api_key=settings.engine_api_key
            )
            app.state.registry = ActiveSessionRegistry()
            app.state.dispatcher = BroadcastDispatcher(
                send_timeout_seconds=settings.broadcast_send_timeout_seconds,
                max_subscribers=settings.max_dashboard_subscribers,
            )
            app.state.takeover = TakeoverStateMachine(
                app.state.store, app.state.dispatcher, app.state.registry, clock=app_clock
            )
            app.state.assembler = ContextAssembler(
                app.state.store,
                app.state.history,
                clock=app_clock,
                ttl_seconds=settings.context_cache_ttl_seconds,
                read_timeout_seconds=settings.context_read_timeout_seconds,
            )
            app.state.coordinator = SessionCoordinator(
                store=app.state.store,
                registry=app.state.registry,
                dispatcher=app.state.dispatcher,
                takeover=app.state.takeover,
                assembler=app.state.assembler,
                resolver=app.state.resolver,
                connector=engine_connector,
                gateway=app.state.gateway,
                persistence=app.state.persistence,
                policy=settings.reconnect_policy,
                clock=app_clock,
            )

        async def stop_coordinator() -> None:
            await app.state.coordinator.shutdown()

        add_step("state", start_state_store)
        add_step("collaborators", start_collaborators)
        add_step("coordinator", start_coordinator, stop_coordinator)

        with tracer.start_as_current_span("startup.lifespan") as startup_span:
            startup_span.set_attributes(
                {"service.name": "callrelay-api", "service.version": "0.1.0"}
            )
            startup_begin = time.perf_counter()
            await run_steps(startup_steps)
            startup_duration = round(time.perf_counter() - startup_begin, 2)
            startup_span.set_attribute("startup.duration_sec", startup_duration)
            logger.info(
                "Startup complete (%ss, env=%s, state=%s)",
                startup_duration,
                settings.environment,
                settings.state_backend,
            )

        # ---- Run app ----
        yield

        with tracer.start_as_current_span("shutdown.lifespan"):
            logger.info("shutdown…")
            await run_shutdown(executed_steps)

    return lifespan


# --------------------------------------------------------------------------- #
#  App factory
# --------------------------------------------------------------------------- #
def create_app(
    *,
    settings: Settings | None = None,
    backend: StateBackend | None = None,
    connector: EngineConnector | None = None,
    resolver: LeadResolver | None = None,
    gateway: ChannelGateway | None = None,
    history: HistorySource | None = None,
    persistence: PersistenceService | None = None,
    clock: Clock | None = None,
) -> FastAPI:
    """Create the FastAPI app; keyword arguments replace the default collaborators."""
    settings = settings or Settings.from_env()
    if settings.debug_mode:
        logging.getLogger("callrelay").setLevel(logging.DEBUG)

    app = FastAPI(
        title="Conversation Session Coordinator API",
        description="Engine sessions, human takeover and live dashboards for voice/SMS conversations",
        version="0.1.0",
        lifespan=_build_lifespan(
            settings,
            backend=backend,
            connector=connector,
            resolver=resolver,
            gateway=gateway,
            history=history,
            persistence=persistence,
            clock=clock,
        ),
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        max_age=86400,
    )
    app.include_router(v1_router)

    @app.get("/api/info", tags=["System"])
    async def get_system_info():
        """Get system environment information."""
        return {
            "environment": settings.environment,
            "debug_mode": settings.debug_mode,
            "state_backend": settings.state_backend,
        }

    return app


app = create_app()


# --------------------------------------------------------------------------- #
#  Main entry point
# --------------------------------------------------------------------------- #
def main():
    """Entry point for the callrelay-server script."""
    port = int(os.environ.get("PORT", 8080))
    print(f"Starting callrelay API on port {port}", file=sys.stderr, flush=True)
    uvicorn.run(
        app,
        host="0.0.0.0",  # nosec: B104
        port=port,
        reload=False,
    )


if __name__ == "__main__":
    main()
