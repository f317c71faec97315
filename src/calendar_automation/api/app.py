"""Management API: FastAPI application factory.

Hosts usually mount :data:`calendar_automation.api.routers.automation.router`
into their own app; ``create_app`` builds a standalone one for local runs and
tests.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI

from calendar_automation import __version__
from calendar_automation.api.middleware import register_error_handlers
from calendar_automation.api.routers.automation import (
    _get_current_user_id,
    _get_engine,
)
from calendar_automation.api.routers.automation import router as automation_router
from calendar_automation.engine import AutomationEngine

logger = logging.getLogger(__name__)


def create_app(
    engine: AutomationEngine | None = None,
    current_user: Callable[..., str] | None = None,
    *,
    manage_engine: bool = False,
) -> FastAPI:
    """Create the FastAPI application.

    Parameters
    ----------
    engine:
        Engine served by the routes.  When omitted the ``_get_engine``
        dependency must be overridden by the caller.
    current_user:
        Dependency resolving the authenticated user id.
    manage_engine:
        Start the engine on startup and stop it on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_engine and engine is not None:
            await engine.start()
        try:
            yield
        finally:
            if manage_engine and engine is not None:
                await engine.stop()

    app = FastAPI(
        title="Calendar Automation API",
        version=__version__,
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False

    register_error_handlers(app)
    app.include_router(automation_router)

    if engine is not None:
        app.dependency_overrides[_get_engine] = lambda: engine
    if current_user is not None:
        app.dependency_overrides[_get_current_user_id] = current_user

    logger.debug("Automation API created (engine=%s)", "set" if engine is not None else "unset")
    return app
