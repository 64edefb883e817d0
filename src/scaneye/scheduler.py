"""Scan and speed-test scheduler.

The scheduler owns the two recurring timers (device scan, speed test), the
single-flight guards that stop runs of the same kind from overlapping, and
the in-memory cache of the latest scan result. Timer ticks and manual
triggers go through the same code paths.

Each timer is an asyncio task that sleeps for its interval and then spawns
the run as a separate task, so a slow run never delays the next tick. A
tick that lands while the previous run of its kind is still going is
dropped by the guard.

Per scan the event order is ``scan:started`` -> ``scan:complete`` ->
``devices:updated`` (the last only on success), and ``last_scan_time`` is
persisted before ``scan:complete`` is published.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Coroutine

from scaneye.db.config_store import ConfigStore
from scaneye.errors import ScanEyeError, ValidationError
from scaneye.events.bus import EventBus
from scaneye.events.types import EventType
from scaneye.models import (
    INTERVAL_FIELDS,
    Device,
    RuntimeConfig,
    SpeedTestResult,
    normalize_config_keys,
)
from scaneye.network.detect import SubnetDetector, validate_cidr
from scaneye.scanner.nmap_executor import ScanExecutor
from scaneye.throughput.executor import SpeedTestExecutor

logger = logging.getLogger(__name__)

NO_SUBNET_ERROR = "No subnet configured"

# Fields a caller may change through update_config(); the rest are written
# by the scheduler itself.
EDITABLE_FIELDS = INTERVAL_FIELDS | {"manual_subnet"}

Sleeper = Callable[[float], Awaitable[Any]]


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _wire_fields(config: RuntimeConfig, fields: set[str]) -> dict[str, Any]:
    """camelCase view of *fields* as they now stand in *config*."""
    wire = config.wire()
    aliases = [RuntimeConfig.model_fields[name].alias or name for name in sorted(fields)]
    return {alias: wire[alias] for alias in aliases}


def _validate_intervals(fields: dict[str, Any]) -> None:
    for name in INTERVAL_FIELDS & set(fields):
        value = fields[name]
        if isinstance(value, bool) or not isinstance(value, (int, str)):
            raise ValidationError(f"{name} must be a positive integer")
        try:
            number = int(value)
        except ValueError as exc:
            raise ValidationError(f"{name} must be a positive integer") from exc
        if number < 1:
            raise ValidationError(f"{name} must be a positive integer")
        fields[name] = number


class Scheduler:
    """Drives periodic scans and speed tests and fans out their results.

    Parameters
    ----------
    config_store:
        Persistent runtime config (intervals, manual subnet, last results).
    event_bus:
        Broadcast channel for state-change events.
    scan_executor:
        Discovers hosts on a subnet.
    speed_test_executor:
        Measures internet throughput.
    subnet_detector:
        Supplies the subnet when no manual subnet is configured.
    stop_timeout:
        Seconds ``stop()`` waits for in-flight runs before cancelling them.
    sleep:
        Timer sleep function. Tests substitute a controllable clock.
    """

    def __init__(
        self,
        config_store: ConfigStore,
        event_bus: EventBus,
        scan_executor: ScanExecutor,
        speed_test_executor: SpeedTestExecutor,
        subnet_detector: SubnetDetector,
        stop_timeout: float = 10.0,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._store = config_store
        self._bus = event_bus
        self._scan_executor = scan_executor
        self._speed_test_executor = speed_test_executor
        self._detector = subnet_detector
        self._stop_timeout = stop_timeout
        self._sleep = sleep

        self._latest_results: list[Device] = []
        self._scan_running = False
        self._speed_test_task: asyncio.Task[SpeedTestResult] | None = None

        self._timer_lock = asyncio.Lock()
        self._scan_timer: asyncio.Task[None] | None = None
        self._speed_test_timer: asyncio.Task[None] | None = None
        self._scan_interval: int | None = None
        self._speed_test_interval: int | None = None
        self._runs: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        """Whether the recurring timers are armed."""
        return self._scan_timer is not None and not self._scan_timer.done()

    @property
    def scan_in_progress(self) -> bool:
        return self._scan_running

    @property
    def speed_test_in_progress(self) -> bool:
        return self._speed_test_task is not None and not self._speed_test_task.done()

    @property
    def scan_interval_seconds(self) -> int | None:
        """Cadence of the armed scan timer, or None when not armed."""
        return self._scan_interval

    @property
    def speed_test_interval_minutes(self) -> int | None:
        """Cadence of the armed speed-test timer, or None when not armed."""
        return self._speed_test_interval

    def get_latest_results(self) -> list[Device]:
        """Return the most recent successful scan result. Never triggers a scan."""
        return list(self._latest_results)

    async def get_config(self) -> RuntimeConfig:
        return await self._store.get()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Run one scan and one speed test right away, then arm both timers.

        Safe to call again: existing timers are replaced, never duplicated.
        """
        logger.info("Running initial scan and speed test")
        self.trigger_scan_now()
        self._start_speed_test()
        await self.reconfigure()

    async def reconfigure(self) -> None:
        """Re-arm both timers from the persisted intervals.

        Old timers are cancelled and new ones created with no suspension
        point in between, so there is never a moment with zero or two timers
        of a kind. Runs already in flight are not affected.
        """
        async with self._timer_lock:
            config = await self._store.get()
            scan_interval = config.effective_scan_interval
            speed_test_interval = config.effective_speed_test_interval

            old = [t for t in (self._scan_timer, self._speed_test_timer) if t is not None]
            for timer in old:
                timer.cancel()
            self._scan_timer = asyncio.create_task(
                self._timer_loop("scan", scan_interval, self._on_scan_tick),
                name="scaneye-scan-timer",
            )
            self._speed_test_timer = asyncio.create_task(
                self._timer_loop("speed test", speed_test_interval * 60, self._on_speed_test_tick),
                name="scaneye-speed-test-timer",
            )
            self._scan_interval = scan_interval
            self._speed_test_interval = speed_test_interval

        if old:
            await asyncio.gather(*old, return_exceptions=True)
        logger.info(
            "Scheduler armed: scan every %ds, speed test every %dm",
            scan_interval,
            speed_test_interval,
        )

    async def stop(self) -> None:
        """Cancel the timers and wait for in-flight runs to finish."""
        async with self._timer_lock:
            timers = [t for t in (self._scan_timer, self._speed_test_timer) if t is not None]
            for timer in timers:
                timer.cancel()
            self._scan_timer = None
            self._speed_test_timer = None
            self._scan_interval = None
            self._speed_test_interval = None

        if timers:
            await asyncio.gather(*timers, return_exceptions=True)

        pending: set[asyncio.Task[Any]] = set(self._runs)
        if self.speed_test_in_progress:
            pending.add(self._speed_test_task)
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=self._stop_timeout)
            for task in still_running:
                task.cancel()
            if still_running:
                logger.warning("Cancelled %d runs still in flight at shutdown", len(still_running))
                await asyncio.gather(*still_running, return_exceptions=True)

        # A scan task cancelled before its first step never reaches its finally.
        self._scan_running = False
        logger.info("Scheduler stopped")

    async def _timer_loop(self, name: str, interval: float, on_tick: Callable[[], None]) -> None:
        while True:
            await self._sleep(interval)
            try:
                on_tick()
            except Exception:
                logger.exception("%s timer tick failed", name.capitalize())

    def _on_scan_tick(self) -> None:
        if not self.trigger_scan_now():
            logger.info("Scheduled scan skipped: previous scan still running")

    def _on_speed_test_tick(self) -> None:
        if self.speed_test_in_progress:
            logger.info("Scheduled speed test skipped: previous test still running")
            return
        self._start_speed_test()

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._runs.add(task)
        task.add_done_callback(self._runs.discard)
        return task

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------

    def _try_begin_scan(self) -> bool:
        if self._scan_running:
            return False
        self._scan_running = True
        return True

    async def run_scan(self) -> bool:
        """Run one scan to completion.

        Returns False without doing anything when a scan is already running;
        that scan's ``scan:complete`` answers the request.
        """
        if not self._try_begin_scan():
            logger.info("Scan already in progress, request dropped")
            return False
        await self._scan_once()
        return True

    def trigger_scan_now(self) -> bool:
        """Start a scan in the background. Returns whether a new scan started."""
        if not self._try_begin_scan():
            logger.info("Scan already in progress, request dropped")
            return False
        self._spawn(self._scan_once(), name="scaneye-scan")
        return True

    async def _scan_once(self) -> None:
        """Body of a scan. The caller must hold the single-flight flag."""
        start = time.monotonic()
        subnet: str | None = None
        completed = False
        try:
            await self._bus.publish(EventType.SCAN_STARTED, {})

            config = await self._store.get()
            subnet = config.manual_subnet.strip() or self._detector.default_subnet()
            if not subnet:
                logger.warning("No subnet detected and no manual subnet configured, skipping scan")
                completed = True
                await self._bus.publish(
                    EventType.SCAN_COMPLETE,
                    {"deviceCount": 0, "error": NO_SUBNET_ERROR},
                )
                return

            logger.info("Scanning subnet %s", subnet)
            try:
                devices = list(await self._scan_executor.scan(subnet))
            except ScanEyeError as exc:
                logger.warning("Scan of %s failed: %s", subnet, exc)
                completed = True
                await self._publish_scan_failure(subnet, str(exc))
                return

            self._latest_results = devices
            try:
                await self._store.update({"last_scan_time": _utcnow_iso()})
            except ScanEyeError:
                logger.warning("Failed to persist last scan time", exc_info=True)

            logger.info(
                "Scan complete: %d devices on %s in %dms",
                len(devices),
                subnet,
                int((time.monotonic() - start) * 1000),
            )
            completed = True
            await self._bus.publish(
                EventType.SCAN_COMPLETE,
                {"deviceCount": len(devices), "subnet": subnet},
            )
            await self._bus.publish(
                EventType.DEVICES_UPDATED,
                {"devices": [device.wire() for device in devices]},
            )
        except Exception as exc:
            logger.exception("Scan run failed")
            if not completed:
                await self._publish_scan_failure(subnet, str(exc) or type(exc).__name__)
        finally:
            self._scan_running = False

    async def _publish_scan_failure(self, subnet: str | None, error: str) -> None:
        payload: dict[str, Any] = {"deviceCount": 0, "error": error}
        if subnet:
            payload["subnet"] = subnet
        await self._bus.publish(EventType.SCAN_COMPLETE, payload)

    # ------------------------------------------------------------------
    # Speed tests
    # ------------------------------------------------------------------

    def _start_speed_test(self) -> asyncio.Task[SpeedTestResult]:
        """Start a measurement, or return the one already in flight."""
        if self.speed_test_in_progress:
            return self._speed_test_task
        task = asyncio.create_task(self._measure_and_persist(), name="scaneye-speed-test")
        task.add_done_callback(self._on_speed_test_done)
        self._speed_test_task = task
        return task

    async def _measure_and_persist(self) -> SpeedTestResult:
        result = await self._speed_test_executor.measure()
        await self._store.update(
            {
                "network_speed_down_mbps": result.download_mbps,
                "network_speed_up_mbps": result.upload_mbps,
                "ping_ms": result.ping_ms,
                "last_speed_test_time": result.timestamp,
                "isp": result.isp,
                "speed_test_server": result.server,
            }
        )
        return result

    def _on_speed_test_done(self, task: asyncio.Task[SpeedTestResult]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        if isinstance(exc, ScanEyeError):
            logger.warning("Speed test failed, keeping previous measurement: %s", exc)
        else:
            logger.error("Speed test crashed", exc_info=exc)

    async def run_speed_test(self) -> SpeedTestResult | None:
        """Run (or join) a measurement. Failures are logged and return None."""
        try:
            return await asyncio.shield(self._start_speed_test())
        except ScanEyeError:
            return None

    async def trigger_speed_test_now(self) -> SpeedTestResult:
        """Run (or join) a measurement and return it.

        Raises ``ExecutorError`` or ``PersistenceError`` on failure; the
        previously stored measurement is left untouched.
        """
        return await asyncio.shield(self._start_speed_test())

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    async def update_intervals(self, partial: dict[str, Any]) -> RuntimeConfig:
        """Persist new intervals, re-arm the timers, publish ``config:updated``."""
        fields = normalize_config_keys(partial)
        extra = set(fields) - INTERVAL_FIELDS
        if extra:
            raise ValidationError(f"Not an interval field: {', '.join(sorted(extra))}")
        _validate_intervals(fields)

        config = await self._store.update(fields)
        await self.reconfigure()
        await self._bus.publish(EventType.CONFIG_UPDATED, _wire_fields(config, set(fields)))
        return config

    async def update_config(self, partial: dict[str, Any]) -> RuntimeConfig:
        """Apply a user configuration change.

        Interval changes re-arm the timers. Setting ``manual_subnet`` (empty
        string clears it) starts a scan right away.
        """
        fields = normalize_config_keys(partial)
        unknown = set(fields) - set(RuntimeConfig.model_fields)
        if unknown:
            raise ValidationError(f"Unknown config field(s): {', '.join(sorted(unknown))}")
        read_only = set(fields) - EDITABLE_FIELDS
        if read_only:
            raise ValidationError(f"Read-only config field(s): {', '.join(sorted(read_only))}")

        if "manual_subnet" in fields:
            subnet = fields["manual_subnet"]
            if subnet is None:
                subnet = ""
            if not isinstance(subnet, str):
                raise ValidationError("manual_subnet must be a string")
            subnet = subnet.strip()
            if subnet:
                validate_cidr(subnet)
            fields["manual_subnet"] = subnet
        _validate_intervals(fields)

        intervals = {k: v for k, v in fields.items() if k in INTERVAL_FIELDS}
        others = {k: v for k, v in fields.items() if k not in INTERVAL_FIELDS}

        config: RuntimeConfig | None = None
        if intervals:
            config = await self.update_intervals(intervals)
        if others:
            config = await self._store.update(others)
            await self._bus.publish(EventType.CONFIG_UPDATED, _wire_fields(config, set(others)))
        if "manual_subnet" in others:
            logger.info("Manual subnet set to %r, scanning now", others["manual_subnet"] or "auto")
            self.trigger_scan_now()

        if config is None:
            config = await self._store.get()
        return config
