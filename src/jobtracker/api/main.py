"""FastAPI application factory for the local sync control API."""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from jobtracker.api.routes import sync as sync_routes
from jobtracker.config import __version__, get_settings
from jobtracker.context import SyncContext, build_context


def create_app(context: Optional[SyncContext] = None) -> FastAPI:
    """Build and return the FastAPI app.

    Args:
        context: Sync engine handle. When omitted one is built from the
            environment and the engine is initialized on startup.
    """
    owns_context = context is None
    if context is None:
        context = build_context(get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if owns_context:
            await context.service.initialize()
        yield
        if owns_context:
            await context.service.perform_shutdown_sync()
            await context.aclose()

    app = FastAPI(
        title="JobTracker Sync API",
        description="Local control surface for the offline-first sync engine",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.context = context

    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])

    return app
