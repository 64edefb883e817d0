"""Integration tests for the Scheduler: scans, speed tests, timers, config updates."""
import asyncio

import pytest

from scaneye.errors import ExecutorError, ValidationError
from scaneye.events.types import EventType
from scaneye.scheduler import NO_SUBNET_ERROR

from tests.integration.conftest import make_speed_result, next_event, wait_until

MARKER = "test:marker"


async def _events_until_marker(bus, sub):
    """Publish a marker and return every event kind queued before it."""
    await bus.publish(MARKER, {})
    kinds = []
    while True:
        event = await next_event(sub)
        if event.kind == MARKER:
            return kinds
        kinds.append(event.kind)


class TestSubnetSelection:

    @pytest.mark.asyncio
    async def test_manual_subnet_takes_precedence(self, scheduler, config_store, scan_executor):
        await config_store.update({"manual_subnet": "10.0.0.0/24"})

        assert await scheduler.run_scan() is True

        assert scan_executor.calls == ["10.0.0.0/24"]

    @pytest.mark.asyncio
    async def test_auto_detected_subnet_used_without_manual(self, scheduler, scan_executor):
        await scheduler.run_scan()

        assert scan_executor.calls == ["192.168.1.0/24"]

    @pytest.mark.asyncio
    async def test_blank_manual_subnet_falls_back_to_detection(
        self, scheduler, config_store, scan_executor
    ):
        await config_store.update({"manual_subnet": "   "})

        await scheduler.run_scan()

        assert scan_executor.calls == ["192.168.1.0/24"]


class TestScanEvents:

    @pytest.mark.asyncio
    async def test_successful_scan_event_order(self, scheduler, event_bus):
        sub = event_bus.subscribe()

        await scheduler.run_scan()

        started = await next_event(sub)
        complete = await next_event(sub)
        updated = await next_event(sub)
        assert started.kind == EventType.SCAN_STARTED
        assert complete.kind == EventType.SCAN_COMPLETE
        assert complete.payload == {"deviceCount": 2, "subnet": "192.168.1.0/24"}
        assert updated.kind == EventType.DEVICES_UPDATED
        assert [d["ip"] for d in updated.payload["devices"]] == ["192.168.1.1", "192.168.1.20"]
        assert updated.payload["devices"][0]["hostname"] == "router.lan"

    @pytest.mark.asyncio
    async def test_successful_scan_updates_cache_and_last_scan_time(self, scheduler, config_store):
        assert scheduler.get_latest_results() == []

        await scheduler.run_scan()

        assert [d.ip for d in scheduler.get_latest_results()] == ["192.168.1.1", "192.168.1.20"]
        config = await config_store.get()
        assert config.last_scan_time is not None

    @pytest.mark.asyncio
    async def test_no_subnet_completes_with_error(self, scheduler, event_bus, subnet_detector, scan_executor):
        subnet_detector.subnet = None
        sub = event_bus.subscribe()

        assert await scheduler.run_scan() is True

        started = await next_event(sub)
        complete = await next_event(sub)
        assert started.kind == EventType.SCAN_STARTED
        assert complete.kind == EventType.SCAN_COMPLETE
        assert complete.payload == {"deviceCount": 0, "error": NO_SUBNET_ERROR}
        assert await _events_until_marker(event_bus, sub) == []
        assert scan_executor.calls == []
        assert scheduler.scan_in_progress is False

    @pytest.mark.asyncio
    async def test_failed_scan_keeps_previous_results(self, scheduler, event_bus, scan_executor, config_store):
        await scheduler.run_scan()
        first_scan_time = (await config_store.get()).last_scan_time
        previous = scheduler.get_latest_results()

        scan_executor.error = ExecutorError("nmap exploded")
        sub = event_bus.subscribe()
        await scheduler.run_scan()

        assert (await next_event(sub)).kind == EventType.SCAN_STARTED
        complete = await next_event(sub)
        assert complete.payload == {
            "deviceCount": 0,
            "error": "nmap exploded",
            "subnet": "192.168.1.0/24",
        }
        assert await _events_until_marker(event_bus, sub) == []
        assert scheduler.get_latest_results() == previous
        assert (await config_store.get()).last_scan_time == first_scan_time

    @pytest.mark.asyncio
    async def test_unexpected_executor_crash_still_completes(self, scheduler, event_bus, scan_executor):
        scan_executor.error = RuntimeError("boom")
        sub = event_bus.subscribe()

        await scheduler.run_scan()

        assert (await next_event(sub)).kind == EventType.SCAN_STARTED
        complete = await next_event(sub)
        assert complete.kind == EventType.SCAN_COMPLETE
        assert complete.payload["error"] == "boom"
        assert scheduler.scan_in_progress is False


class TestScanSingleFlight:

    @pytest.mark.asyncio
    async def test_second_request_dropped_while_scanning(self, scheduler, event_bus, scan_executor):
        scan_executor.gate = asyncio.Event()
        sub = event_bus.subscribe()

        assert scheduler.trigger_scan_now() is True
        await wait_until(lambda: len(scan_executor.calls) == 1)

        assert scheduler.scan_in_progress is True
        assert await scheduler.run_scan() is False
        assert scheduler.trigger_scan_now() is False

        scan_executor.gate.set()
        await wait_until(lambda: not scheduler.scan_in_progress)

        kinds = await _events_until_marker(event_bus, sub)
        assert kinds == [
            EventType.SCAN_STARTED,
            EventType.SCAN_COMPLETE,
            EventType.DEVICES_UPDATED,
        ]
        assert len(scan_executor.calls) == 1

    @pytest.mark.asyncio
    async def test_new_scan_allowed_after_previous_finishes(self, scheduler, scan_executor):
        assert await scheduler.run_scan() is True
        assert await scheduler.run_scan() is True
        assert len(scan_executor.calls) == 2

    @pytest.mark.asyncio
    async def test_flag_released_after_failure(self, scheduler, scan_executor):
        scan_executor.error = ExecutorError("down")
        await scheduler.run_scan()

        scan_executor.error = None
        assert await scheduler.run_scan() is True
        assert len(scheduler.get_latest_results()) == 2


class TestTimers:

    @pytest.mark.asyncio
    async def test_cold_start_runs_once_and_arms_timers(
        self, scheduler, clock, scan_executor, speed_test_executor
    ):
        await scheduler.start()

        await wait_until(lambda: len(scan_executor.calls) == 1 and speed_test_executor.calls == 1)
        await wait_until(lambda: clock.pending() == [60, 3600])
        assert scheduler.is_running is True
        assert scheduler.scan_interval_seconds == 60
        assert scheduler.speed_test_interval_minutes == 60

    @pytest.mark.asyncio
    async def test_scan_timer_tick_starts_scan(self, scheduler, clock, scan_executor):
        await scheduler.start()
        await wait_until(lambda: clock.pending() == [60, 3600] and not scheduler.scan_in_progress)

        clock.fire(60)

        await wait_until(lambda: len(scan_executor.calls) == 2)
        await wait_until(lambda: clock.pending() == [60, 3600])

    @pytest.mark.asyncio
    async def test_speed_test_timer_tick_starts_measurement(self, scheduler, clock, speed_test_executor):
        await scheduler.start()
        await wait_until(
            lambda: clock.pending() == [60, 3600] and not scheduler.speed_test_in_progress
        )

        clock.fire(3600)

        await wait_until(lambda: speed_test_executor.calls == 2)

    @pytest.mark.asyncio
    async def test_tick_skipped_while_scan_running(self, scheduler, clock, scan_executor):
        scan_executor.gate = asyncio.Event()
        await scheduler.start()
        await wait_until(lambda: clock.pending() == [60, 3600])
        assert scheduler.scan_in_progress is True

        clock.fire(60)
        await wait_until(lambda: clock.sleeps.count(60) == 2)

        assert len(scan_executor.calls) == 1
        scan_executor.gate.set()
        await wait_until(lambda: not scheduler.scan_in_progress)

    @pytest.mark.asyncio
    async def test_start_twice_keeps_one_timer_of_each_kind(self, scheduler, clock):
        await scheduler.start()
        await wait_until(lambda: clock.pending() == [60, 3600])

        await scheduler.start()

        await wait_until(lambda: clock.pending() == [60, 3600])

    @pytest.mark.asyncio
    async def test_stop_cancels_timers(self, scheduler, clock):
        await scheduler.start()
        await wait_until(lambda: clock.pending() == [60, 3600])

        await scheduler.stop()

        assert scheduler.is_running is False
        assert scheduler.scan_interval_seconds is None
        assert clock.pending() == []

    @pytest.mark.asyncio
    async def test_stored_zero_interval_uses_default(self, scheduler, config_store, db, clock):
        await config_store.get()
        await db.execute(
            "UPDATE runtime_config SET value = '0' WHERE key = 'scan_interval_seconds'"
        )
        await db.commit()

        await scheduler.reconfigure()

        await wait_until(lambda: clock.pending() == [60, 3600])


class TestIntervalUpdates:

    @pytest.mark.asyncio
    async def test_interval_change_rearms_without_extra_runs(
        self, scheduler, clock, scan_executor, speed_test_executor, event_bus
    ):
        await scheduler.start()
        await wait_until(lambda: clock.pending() == [60, 3600] and not scheduler.scan_in_progress)
        await wait_until(lambda: not scheduler.speed_test_in_progress)
        sub = event_bus.subscribe()

        config = await scheduler.update_config({"scanIntervalSeconds": 10})

        assert config.scan_interval_seconds == 10
        assert scheduler.scan_interval_seconds == 10
        await wait_until(lambda: clock.pending() == [10, 3600])
        event = await next_event(sub)
        assert event.kind == EventType.CONFIG_UPDATED
        assert event.payload == {"scanIntervalSeconds": 10}
        assert len(scan_executor.calls) == 1
        assert speed_test_executor.calls == 1

    @pytest.mark.asyncio
    async def test_speed_test_interval_in_minutes(self, scheduler, clock):
        await scheduler.update_intervals({"speed_test_interval_minutes": 5})

        await wait_until(lambda: clock.pending() == [60, 300])
        assert scheduler.speed_test_interval_minutes == 5

    @pytest.mark.asyncio
    async def test_numeric_string_interval_accepted(self, scheduler, config_store):
        await scheduler.update_config({"scanIntervalSeconds": "45"})

        assert (await config_store.get()).scan_interval_seconds == 45

    @pytest.mark.parametrize("value", [0, -5, "abc", True, 1.5, None])
    @pytest.mark.asyncio
    async def test_invalid_interval_rejected(self, scheduler, config_store, value):
        with pytest.raises(ValidationError):
            await scheduler.update_config({"scanIntervalSeconds": value})

        assert (await config_store.get()).scan_interval_seconds == 60

    @pytest.mark.asyncio
    async def test_update_intervals_rejects_other_fields(self, scheduler):
        with pytest.raises(ValidationError):
            await scheduler.update_intervals({"manualSubnet": "10.0.0.0/24"})


class TestConfigUpdates:

    @pytest.mark.asyncio
    async def test_unknown_field_rejected(self, scheduler):
        with pytest.raises(ValidationError, match="Unknown"):
            await scheduler.update_config({"bogus": 1})

    @pytest.mark.asyncio
    async def test_read_only_field_rejected(self, scheduler):
        with pytest.raises(ValidationError, match="Read-only"):
            await scheduler.update_config({"lastScanTime": "2026-01-01T00:00:00Z"})

    @pytest.mark.asyncio
    async def test_manual_subnet_triggers_scan(self, scheduler, scan_executor, event_bus):
        sub = event_bus.subscribe()

        config = await scheduler.update_config({"manualSubnet": " 10.1.0.0/16 "})

        assert config.manual_subnet == "10.1.0.0/16"
        event = await next_event(sub)
        assert event.kind == EventType.CONFIG_UPDATED
        assert event.payload == {"manualSubnet": "10.1.0.0/16"}
        await wait_until(lambda: scan_executor.calls == ["10.1.0.0/16"])

    @pytest.mark.asyncio
    async def test_clearing_manual_subnet_scans_detected(self, scheduler, config_store, scan_executor):
        await config_store.update({"manual_subnet": "10.1.0.0/16"})

        config = await scheduler.update_config({"manualSubnet": None})

        assert config.manual_subnet == ""
        await wait_until(lambda: scan_executor.calls == ["192.168.1.0/24"])

    @pytest.mark.asyncio
    async def test_invalid_manual_subnet_rejected(self, scheduler, config_store, scan_executor):
        with pytest.raises(ValidationError, match="CIDR"):
            await scheduler.update_config({"manualSubnet": "192.168.1.0"})

        assert (await config_store.get()).manual_subnet == ""
        assert scan_executor.calls == []

    @pytest.mark.asyncio
    async def test_interval_only_update_does_not_scan(self, scheduler, scan_executor):
        await scheduler.update_config({"scanIntervalSeconds": 30})
        await asyncio.sleep(0.05)

        assert scan_executor.calls == []

    @pytest.mark.asyncio
    async def test_empty_update_returns_current_config(self, scheduler):
        config = await scheduler.update_config({})

        assert config.scan_interval_seconds == 60


class TestSpeedTests:

    @pytest.mark.asyncio
    async def test_result_persisted(self, scheduler, config_store):
        result = await scheduler.trigger_speed_test_now()

        config = await config_store.get()
        assert config.network_speed_down_mbps == result.download_mbps == 94.5
        assert config.network_speed_up_mbps == 12.35
        assert config.ping_ms == 13
        assert config.last_speed_test_time == result.timestamp
        assert config.isp == "ExampleNet"
        assert config.speed_test_server == "Acme, Berlin"

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_measurement(self, scheduler, speed_test_executor):
        speed_test_executor.gate = asyncio.Event()

        first = asyncio.create_task(scheduler.trigger_speed_test_now())
        second = asyncio.create_task(scheduler.run_speed_test())
        await wait_until(lambda: speed_test_executor.calls == 1)
        assert scheduler.speed_test_in_progress is True

        speed_test_executor.gate.set()
        a, b = await asyncio.gather(first, second)

        assert a is b
        assert speed_test_executor.calls == 1
        assert scheduler.speed_test_in_progress is False

    @pytest.mark.asyncio
    async def test_failure_keeps_previous_values(self, scheduler, config_store, speed_test_executor):
        await scheduler.trigger_speed_test_now()
        speed_test_executor.error = ExecutorError("no route to speedtest.net")
        speed_test_executor.result = make_speed_result(download=1.0)

        assert await scheduler.run_speed_test() is None
        with pytest.raises(ExecutorError):
            await scheduler.trigger_speed_test_now()

        config = await config_store.get()
        assert config.network_speed_down_mbps == 94.5

    @pytest.mark.asyncio
    async def test_new_measurement_after_previous_finished(self, scheduler, speed_test_executor):
        await scheduler.trigger_speed_test_now()
        await scheduler.trigger_speed_test_now()

        assert speed_test_executor.calls == 2
