"""ScanEye -- entry point.

Usage::

    python -m scaneye [--config PATH] [--port PORT] [--host HOST]

Startup sequence:
    1. Parse CLI arguments
    2. Load settings from YAML (or defaults) and the environment
    3. Open SQLite database and run migrations
    4. Initialise the internal event bus
    5. Initialise the scheduler with its executors
    6. Create the FastAPI application
    7. Start the scheduler (initial scan and speed test, then timers)
    8. Start the uvicorn server
    9. On shutdown signal: stop the scheduler, close database
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any

import uvicorn

from scaneye.app import create_app  # noqa: F401 -- patched in tests
from scaneye.config import Settings

logger = logging.getLogger("scaneye")


# ---------------------------------------------------------------------------
# Integration seams -- thin wrappers around real subsystem constructors.
# These are module-level names so tests can patch them individually.
# ---------------------------------------------------------------------------


def load_config(config_path: str | None) -> Settings:
    """Load settings from a YAML file, falling back to built-in defaults."""
    from scaneye.config import load_settings

    path = Path(config_path) if config_path else None
    return load_settings(config_path=path)


async def open_db(db_path: Path) -> Any:
    """Open the SQLite database."""
    import aiosqlite

    db_path.parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(str(db_path))
    db.row_factory = aiosqlite.Row
    return db


async def run_migrations(db: Any) -> None:
    """Apply pending database migrations."""
    from scaneye.db.migrations import apply_migrations

    await apply_migrations(db)


def create_event_bus(settings: Settings) -> Any:
    """Create the in-process event bus."""
    from scaneye.events.bus import EventBus

    return EventBus(queue_size=settings.events.subscriber_queue_size)


def create_scheduler(settings: Settings, db: Any, event_bus: Any) -> tuple[Any, Any, Any]:
    """Create the scheduler and the collaborators the API also needs.

    Returns ``(scheduler, subnet_detector, scan_executor)``.
    """
    from scaneye.db.config_store import ConfigStore
    from scaneye.network.detect import SubnetDetector
    from scaneye.scanner.nmap_executor import NmapScanExecutor
    from scaneye.scheduler import Scheduler
    from scaneye.throughput.executor import SpeedtestCliExecutor

    detector = SubnetDetector()
    scan_executor = NmapScanExecutor(
        arguments=settings.scanner.nmap_arguments,
        timeout_seconds=settings.scanner.timeout_seconds,
    )
    speed_test_executor = SpeedtestCliExecutor(
        secure=settings.speedtest.secure,
        timeout_seconds=settings.speedtest.timeout_seconds,
    )
    scheduler = Scheduler(
        config_store=ConfigStore(db),
        event_bus=event_bus,
        scan_executor=scan_executor,
        speed_test_executor=speed_test_executor,
        subnet_detector=detector,
    )
    return scheduler, detector, scan_executor


# ---------------------------------------------------------------------------
# CLI argument parsing
# ---------------------------------------------------------------------------


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Parameters
    ----------
    argv:
        Argument list.  Defaults to ``sys.argv[1:]`` when ``None``.
    """
    parser = argparse.ArgumentParser(
        prog="scaneye",
        description="ScanEye LAN device discovery and speed monitor",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to YAML configuration file",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port for the API server (default: server.port from config, 5050)",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Interface to bind (default: server.host from config)",
    )
    return parser.parse_args(argv)


# ---------------------------------------------------------------------------
# Main run coroutine
# ---------------------------------------------------------------------------


async def run_server(
    config_path: str | None = None,
    port: int | None = None,
    host: str | None = None,
    settings: Settings | None = None,
) -> None:
    """Start ScanEye and run until cancelled.

    This is the top-level coroutine that wires all subsystems together.
    It is designed to be called from ``main()`` or directly in tests.
    """
    # 1. Load settings; CLI flags win over file and environment
    if settings is None:
        settings = load_config(config_path)
    if port is not None:
        settings.server.port = port
    if host is not None:
        settings.server.host = host

    # 2. Open database
    db = await open_db(settings.storage.db_path)

    # 3. Run migrations
    await run_migrations(db)

    # 4. Init event bus
    event_bus = create_event_bus(settings)

    # 5. Init scheduler
    scheduler, detector, scan_executor = create_scheduler(settings, db, event_bus)

    # 6. Create FastAPI app
    app = create_app(
        settings=settings,
        scheduler=scheduler,
        event_bus=event_bus,
        subnet_detector=detector,
        scan_executor=scan_executor,
    )

    # 7. Start scheduling
    await scheduler.start()

    # 8. Configure and start uvicorn
    uvicorn_config = uvicorn.Config(
        app=app,
        host=settings.server.host,
        port=settings.server.port,
        log_level=settings.logging.level.lower(),
    )
    server = uvicorn.Server(uvicorn_config)
    logger.info("ScanEye listening on %s:%d", settings.server.host, settings.server.port)

    try:
        await server.serve()
    except asyncio.CancelledError:
        logger.info("Shutdown signal received -- stopping ScanEye")
    finally:
        logger.info("Stopping scheduler...")
        await scheduler.stop()

        logger.info("Closing database...")
        await db.close()

        logger.info("Shutdown complete")


# ---------------------------------------------------------------------------
# Script entry point
# ---------------------------------------------------------------------------


def main() -> None:
    """Parse CLI args and run the server."""
    args = parse_args()
    settings = load_config(args.config)

    logging.basicConfig(
        level=getattr(logging, settings.logging.level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        asyncio.run(
            run_server(
                config_path=args.config,
                port=args.port,
                host=args.host,
                settings=settings,
            )
        )
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
