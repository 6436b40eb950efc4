from contextlib import asynccontextmanager

from fastapi import FastAPI

from helpdesk.api.routes import ping, tickets
from helpdesk.core.clock import SystemClock
from helpdesk.core.config import get_settings
from helpdesk.core.logging import configure_logging, init_tracer, shutdown_tracer
from helpdesk.security.roles import AgentRoleRepository, CachedRoleResolver
from helpdesk.services.postgres import PostgresPool
from helpdesk.sla.service import SLAService
from helpdesk.tickets.commands import LifecycleController
from helpdesk.tickets.repository import TicketRepository
from helpdesk.tickets.service import TicketLifecycleService


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - executed by framework
    settings = get_settings()
    logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)
    app.state.logger = logger
    app.state.tracer_provider = tracer_provider

    postgres = PostgresPool.from_settings(settings)
    app.state.postgres = postgres
    try:
        pool = await postgres.get_pool()
        repository = TicketRepository(pool, isolation=settings.transaction_isolation)
        await repository.ensure_schema()

        clock = SystemClock()
        app.state.role_resolver = CachedRoleResolver(
            AgentRoleRepository(pool),
            ttl_seconds=settings.role_cache_ttl_seconds,
            clock=clock,
        )
        app.state.lifecycle = LifecycleController(
            TicketLifecycleService(repository, clock=clock),
            SLAService(repository, clock=clock),
        )
        yield
    finally:
        await postgres.close()
        shutdown_tracer(tracer_provider)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(ping.router)
    app.include_router(tickets.router)
    return app


app = create_app()
