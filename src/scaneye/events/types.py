"""Event type constants for the ScanEye event bus.

These strings are the ``event`` field of every message pushed to
observers, so they are part of the wire contract with the web UI.
"""

from __future__ import annotations


class EventType:
    """Namespace for event type string constants."""

    # Scan lifecycle
    SCAN_STARTED = "scan:started"
    SCAN_COMPLETE = "scan:complete"

    # Result set
    DEVICES_UPDATED = "devices:updated"

    # Configuration
    CONFIG_UPDATED = "config:updated"

    ALL = (SCAN_STARTED, SCAN_COMPLETE, DEVICES_UPDATED, CONFIG_UPDATED)
