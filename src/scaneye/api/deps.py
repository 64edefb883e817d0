"""FastAPI dependency injection providers.

Every long-lived object is created once at startup and hung on
``app.state`` by :func:`scaneye.app.create_app`. Tests either build the app
with fakes or override these providers through ``dependency_overrides``.
"""
from __future__ import annotations

from fastapi.requests import HTTPConnection

from scaneye.config import Settings
from scaneye.events.bus import EventBus
from scaneye.network.detect import SubnetDetector
from scaneye.scanner.nmap_executor import ScanExecutor
from scaneye.scheduler import Scheduler


def _state(conn: HTTPConnection, name: str):
    value = getattr(conn.app.state, name, None)
    if value is None:
        raise RuntimeError(f"app.state.{name} is not configured")
    return value


async def get_settings(conn: HTTPConnection) -> Settings:
    """Return the process settings."""
    return _state(conn, "settings")


async def get_scheduler(conn: HTTPConnection) -> Scheduler:
    """Return the Scheduler that owns timers, results and config updates."""
    return _state(conn, "scheduler")


async def get_event_bus(conn: HTTPConnection) -> EventBus:
    """Return the EventBus instance shared with the scheduler."""
    return _state(conn, "event_bus")


async def get_subnet_detector(conn: HTTPConnection) -> SubnetDetector:
    return _state(conn, "subnet_detector")


async def get_scan_executor(conn: HTTPConnection) -> ScanExecutor:
    """Return the scan executor used for ad-hoc scans outside the schedule."""
    return _state(conn, "scan_executor")
