"""Pydantic domain models for ScanEye.

Python attributes are snake_case; the JSON wire form (HTTP bodies, event
payloads) uses camelCase aliases. ``model_dump(by_alias=True)`` or
``wire()`` produces the wire form, and input is accepted in either style.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def wire(self) -> dict:
        """Return the JSON-serializable camelCase representation."""
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Scan results
# ---------------------------------------------------------------------------

class Device(_WireModel):
    """A host found by the scanning tool. Unique by ``ip`` within a result set."""

    ip: str
    hostname: str | None = None
    mac: str | None = None
    vendor: str | None = None


class NetworkInterface(_WireModel):
    name: str
    address: str
    netmask: str
    subnet: str


# ---------------------------------------------------------------------------
# Speed test
# ---------------------------------------------------------------------------

class SpeedTestResult(_WireModel):
    download_mbps: float
    upload_mbps: float
    ping_ms: float
    timestamp: str
    isp: str | None = None
    server: str | None = None


# ---------------------------------------------------------------------------
# Persisted runtime configuration
# ---------------------------------------------------------------------------

DEFAULT_SCAN_INTERVAL_SECONDS = 60
DEFAULT_SPEED_TEST_INTERVAL_MINUTES = 60

INTERVAL_FIELDS = frozenset({"scan_interval_seconds", "speed_test_interval_minutes"})


class RuntimeConfig(_WireModel):
    """The single persisted configuration record.

    Mutated by the scheduler after each successful run and by explicit
    configuration updates. Never deleted.
    """

    scan_interval_seconds: int = DEFAULT_SCAN_INTERVAL_SECONDS
    speed_test_interval_minutes: int = DEFAULT_SPEED_TEST_INTERVAL_MINUTES
    manual_subnet: str = ""
    last_scan_time: str | None = None
    network_speed_down_mbps: float | None = None
    network_speed_up_mbps: float | None = None
    ping_ms: float | None = None
    last_speed_test_time: str | None = None
    isp: str | None = None
    speed_test_server: str | None = None

    @property
    def effective_scan_interval(self) -> int:
        """Scan interval in seconds, falling back to the default when unusable."""
        if self.scan_interval_seconds > 0:
            return self.scan_interval_seconds
        return DEFAULT_SCAN_INTERVAL_SECONDS

    @property
    def effective_speed_test_interval(self) -> int:
        """Speed-test interval in minutes, falling back to the default when unusable."""
        if self.speed_test_interval_minutes > 0:
            return self.speed_test_interval_minutes
        return DEFAULT_SPEED_TEST_INTERVAL_MINUTES


def config_field_name(key: str) -> str:
    """Return the RuntimeConfig field name for *key* (field name or camelCase alias).

    Unrecognized keys are returned unchanged so the caller can reject them.
    """
    for name, field in RuntimeConfig.model_fields.items():
        if key == name or key == field.alias:
            return name
    return key


def normalize_config_keys(partial: dict) -> dict:
    """Map camelCase keys onto RuntimeConfig field names."""
    return {config_field_name(key): value for key, value in partial.items()}
