"""FastAPI application factory for ScanEye."""
from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import FastAPI

from scaneye import __version__
from scaneye.api.routes_config import router as config_router
from scaneye.api.routes_scan import router as scan_router
from scaneye.api.routes_system import router as system_router
from scaneye.api.ws import router as ws_router
from scaneye.config import Settings


def create_app(
    settings: Settings,
    scheduler: Any = None,
    event_bus: Any = None,
    subnet_detector: Any = None,
    scan_executor: Any = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Process settings.
        scheduler: The running Scheduler.
        event_bus: EventBus shared with the scheduler.
        subnet_detector: Used by ``/api/network-info`` and ad-hoc scans.
        scan_executor: Used by ad-hoc ``GET /api/scan`` requests.

    Returns:
        Configured FastAPI application instance.
    """
    start_time = time.time()

    def _attach(app: FastAPI) -> None:
        app.state.start_time = start_time
        app.state.settings = settings
        app.state.scheduler = scheduler
        app.state.event_bus = event_bus
        app.state.subnet_detector = subnet_detector
        app.state.scan_executor = scan_executor

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        _attach(app)
        yield

    app = FastAPI(title="ScanEye", version=__version__, lifespan=lifespan)

    # Also set outside lifespan so the app works without a startup event
    _attach(app)

    app.include_router(system_router)
    app.include_router(config_router)
    app.include_router(scan_router)
    app.include_router(ws_router)

    return app
