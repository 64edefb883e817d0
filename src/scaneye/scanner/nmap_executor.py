"""Host discovery through nmap.

The scheduler only depends on the ``ScanExecutor`` protocol: given a subnet
in CIDR notation, return the hosts that answered. ``NmapScanExecutor`` runs
an nmap ping scan (``-sn``, no port probing) through python-nmap in a worker
thread so the event loop stays free while the scan is in flight.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import time
from typing import Any, Callable, Protocol

import nmap

from scaneye.errors import ExecutorError
from scaneye.models import Device
from scaneye.network.detect import validate_cidr

logger = logging.getLogger(__name__)

DEFAULT_NMAP_ARGUMENTS = "-sn -T4 --min-parallelism 50"


class ScanExecutor(Protocol):
    """Anything that can turn a subnet into a device list."""

    async def scan(self, subnet: str) -> list[Device]:
        """Discover hosts on *subnet*.

        Raises ``ValidationError`` for a malformed CIDR (before scanning) and
        ``ExecutorError`` when the scan itself fails.
        """
        ...


def _ip_sort_key(device: Device) -> tuple[int, Any]:
    try:
        return (0, ipaddress.ip_address(device.ip))
    except ValueError:
        return (1, device.ip)


def _parse_hosts(scanner: Any) -> list[Device]:
    """Convert a finished python-nmap scanner into unique, IP-sorted devices."""
    devices: dict[str, Device] = {}
    for host in scanner.all_hosts():
        info = scanner[host]
        if info.state() != "up" or host in devices:
            continue
        addresses = info.get("addresses", {})
        mac = addresses.get("mac") or None
        vendor = info.get("vendor", {}).get(mac) if mac else None
        devices[host] = Device(
            ip=host,
            hostname=info.hostname() or None,
            mac=mac,
            vendor=vendor or None,
        )
    return sorted(devices.values(), key=_ip_sort_key)


class NmapScanExecutor:
    """Ping-scan a subnet with nmap.

    Parameters
    ----------
    arguments:
        nmap command-line arguments. Defaults to a fast ping sweep.
    timeout_seconds:
        Kill nmap after this many seconds (0 disables the limit).
    scanner_factory:
        Builds the python-nmap scanner. Tests substitute a fake.
    """

    def __init__(
        self,
        arguments: str = DEFAULT_NMAP_ARGUMENTS,
        timeout_seconds: int = 300,
        scanner_factory: Callable[[], Any] | None = None,
    ) -> None:
        self._arguments = arguments
        self._timeout = timeout_seconds
        self._scanner_factory = scanner_factory or nmap.PortScanner

    async def scan(self, subnet: str) -> list[Device]:
        validate_cidr(subnet)
        start = time.monotonic()
        logger.info("nmap scan of %s starting (%s)", subnet, self._arguments)
        devices = await asyncio.to_thread(self._scan_blocking, subnet)
        logger.info(
            "nmap scan of %s found %d hosts in %dms",
            subnet,
            len(devices),
            int((time.monotonic() - start) * 1000),
        )
        return devices

    def _scan_blocking(self, subnet: str) -> list[Device]:
        """Run nmap and parse its output. Runs in a worker thread."""
        try:
            scanner = self._scanner_factory()
            scanner.scan(hosts=subnet, arguments=self._arguments, timeout=self._timeout)
        except nmap.PortScannerTimeout as exc:
            raise ExecutorError(f"nmap scan of {subnet} timed out after {self._timeout}s") from exc
        except nmap.PortScannerError as exc:
            raise ExecutorError(f"nmap scan of {subnet} failed: {exc}") from exc
        except OSError as exc:
            raise ExecutorError(f"Could not run nmap: {exc}") from exc
        return _parse_hosts(scanner)
