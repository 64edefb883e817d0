"""Subnet validation and default-subnet auto-detection.

Auto-detection walks the OS network interfaces (via psutil) and picks the
first interface that is up and carries a non-loopback, non-link-local IPv4
address. The subnet is derived from that address and its netmask.
"""

from __future__ import annotations

import ipaddress
import logging
import socket

import psutil

from scaneye.errors import ValidationError
from scaneye.models import NetworkInterface

logger = logging.getLogger(__name__)


def validate_cidr(subnet: str) -> ipaddress.IPv4Network:
    """Validate an IPv4 CIDR such as ``192.168.1.0/24``.

    Host bits are allowed (``192.168.1.17/24`` is accepted). Raises
    :class:`ValidationError` with a descriptive message otherwise.
    """
    if not isinstance(subnet, str) or "/" not in subnet:
        raise ValidationError(
            "Invalid subnet format. Expected CIDR notation (e.g., 192.168.1.0/24)."
        )
    try:
        return ipaddress.IPv4Network(subnet.strip(), strict=False)
    except ValueError as exc:
        raise ValidationError(
            f"Invalid subnet format {subnet!r}: {exc}. "
            "Expected CIDR notation (e.g., 192.168.1.0/24)."
        ) from exc


def _calculate_subnet(address: str, netmask: str) -> str:
    """Return the network in CIDR notation for an address and dotted netmask."""
    return str(ipaddress.IPv4Network(f"{address}/{netmask}", strict=False))


class SubnetDetector:
    """Finds the subnet to scan when no manual subnet is configured."""

    def network_info(self) -> list[NetworkInterface]:
        """List every usable IPv4 interface with its subnet."""
        try:
            addrs = psutil.net_if_addrs()
            stats = psutil.net_if_stats()
        except (OSError, psutil.Error):
            logger.warning("Failed to enumerate network interfaces", exc_info=True)
            return []

        interfaces: list[NetworkInterface] = []
        for name, entries in addrs.items():
            stat = stats.get(name)
            if stat is not None and not stat.isup:
                continue
            for entry in entries:
                if entry.family != socket.AF_INET or not entry.netmask:
                    continue
                ip = ipaddress.IPv4Address(entry.address)
                if ip.is_loopback or ip.is_link_local:
                    continue
                interfaces.append(
                    NetworkInterface(
                        name=name,
                        address=entry.address,
                        netmask=entry.netmask,
                        subnet=_calculate_subnet(entry.address, entry.netmask),
                    )
                )
        return interfaces

    def default_subnet(self) -> str | None:
        """Return the first usable interface's subnet, or None if there is none."""
        interfaces = self.network_info()
        if not interfaces:
            logger.warning("No usable IPv4 interface found for subnet auto-detection")
            return None
        chosen = interfaces[0]
        logger.debug("Auto-detected subnet %s on %s (%s)", chosen.subnet, chosen.name, chosen.address)
        return chosen.subnet
