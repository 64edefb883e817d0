# tests/integration/conftest.py
import asyncio
from unittest.mock import AsyncMock, MagicMock

import aiosqlite
import pytest
import pytest_asyncio

from scaneye.config import Settings
from scaneye.db.config_store import ConfigStore
from scaneye.db.migrations import apply_migrations
from scaneye.events.bus import EventBus
from scaneye.models import Device, NetworkInterface, RuntimeConfig, SpeedTestResult
from scaneye.scheduler import Scheduler


# ---------------------------------------------------------------------------
# Fakes for the external collaborators
# ---------------------------------------------------------------------------


class FakeScanExecutor:
    """Records requested subnets. Set ``gate`` to hold scans until it is set."""

    def __init__(self, devices=None):
        self.devices = list(devices or [])
        self.error = None
        self.gate = None
        self.calls = []

    async def scan(self, subnet):
        self.calls.append(subnet)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return list(self.devices)


class FakeSpeedTestExecutor:
    def __init__(self, result=None):
        self.result = result or make_speed_result()
        self.error = None
        self.gate = None
        self.calls = 0

    async def measure(self):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.result


class FakeSubnetDetector:
    def __init__(self, subnet="192.168.1.0/24"):
        self.subnet = subnet

    def network_info(self):
        if not self.subnet:
            return []
        return [
            NetworkInterface(
                name="eth0",
                address=self.subnet.split("/")[0].rsplit(".", 1)[0] + ".10",
                netmask="255.255.255.0",
                subnet=self.subnet,
            )
        ]

    def default_subnet(self):
        return self.subnet


class FakeClock:
    """Controllable replacement for ``asyncio.sleep`` in scheduler timers.

    Each call parks until ``fire(seconds)`` releases it. ``pending()`` lists
    the durations currently being slept.
    """

    def __init__(self):
        self.sleeps = []
        self._waiters = []

    async def sleep(self, seconds):
        fut = asyncio.get_running_loop().create_future()
        self.sleeps.append(seconds)
        self._waiters.append((seconds, fut))
        try:
            await fut
        finally:
            self._waiters = [(s, f) for s, f in self._waiters if f is not fut]

    def pending(self):
        return sorted(s for s, f in self._waiters if not f.done())

    def fire(self, seconds):
        for s, fut in list(self._waiters):
            if s == seconds and not fut.done():
                fut.set_result(None)


def make_devices():
    return [
        Device(ip="192.168.1.1", hostname="router.lan", mac="AA:BB:CC:00:00:01", vendor="Netgear"),
        Device(ip="192.168.1.20", hostname=None, mac=None, vendor=None),
    ]


def make_speed_result(download=94.5, upload=12.35, ping=13):
    return SpeedTestResult(
        download_mbps=download,
        upload_mbps=upload,
        ping_ms=ping,
        timestamp="2026-02-22T10:00:00+00:00",
        isp="ExampleNet",
        server="Acme, Berlin",
    )


async def wait_until(predicate, timeout=2.0):
    """Poll *predicate* until it is true; fail the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


async def next_event(subscription, timeout=2.0):
    return await asyncio.wait_for(subscription.get(), timeout)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def db():
    """Create an in-memory SQLite database with full schema."""
    conn = await aiosqlite.connect(":memory:")
    conn.row_factory = aiosqlite.Row
    await apply_migrations(conn)
    yield conn
    await conn.close()


@pytest.fixture
def config_store(db):
    return ConfigStore(db)


@pytest.fixture
def event_bus():
    return EventBus(queue_size=100)


@pytest.fixture
def scan_executor():
    return FakeScanExecutor(devices=make_devices())


@pytest.fixture
def speed_test_executor():
    return FakeSpeedTestExecutor()


@pytest.fixture
def subnet_detector():
    return FakeSubnetDetector()


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def scheduler(config_store, event_bus, scan_executor, speed_test_executor, subnet_detector, clock):
    sched = Scheduler(
        config_store=config_store,
        event_bus=event_bus,
        scan_executor=scan_executor,
        speed_test_executor=speed_test_executor,
        subnet_detector=subnet_detector,
        stop_timeout=1.0,
        sleep=clock.sleep,
    )
    yield sched
    await sched.stop()


@pytest.fixture
def settings():
    """Settings for HTTP tests. Keepalive is effectively off."""
    return Settings(events={"subscriber_queue_size": 10, "ping_interval_seconds": 3600})


@pytest.fixture
def mock_scheduler():
    """A Scheduler stand-in for route tests; configure return values per test."""
    sched = MagicMock(spec=Scheduler)
    sched.is_running = True
    sched.scan_in_progress = False
    sched.speed_test_in_progress = False
    sched.get_config = AsyncMock(return_value=RuntimeConfig())
    sched.get_latest_results = MagicMock(return_value=make_devices())
    sched.update_config = AsyncMock(return_value=RuntimeConfig())
    sched.trigger_scan_now = MagicMock(return_value=True)
    sched.trigger_speed_test_now = AsyncMock(return_value=make_speed_result())
    return sched


@pytest.fixture
def app(settings, mock_scheduler, event_bus, subnet_detector, scan_executor):
    """Create a FastAPI app wired to fakes."""
    from scaneye.app import create_app

    return create_app(
        settings,
        scheduler=mock_scheduler,
        event_bus=event_bus,
        subnet_detector=subnet_detector,
        scan_executor=scan_executor,
    )


@pytest.fixture
def client(app):
    """Create a TestClient for the FastAPI app."""
    from fastapi.testclient import TestClient
    return TestClient(app)
