"""Exception taxonomy shared by the scheduler, executors and config store."""

from __future__ import annotations


class ScanEyeError(Exception):
    """Base class for all ScanEye errors."""


class ValidationError(ScanEyeError, ValueError):
    """Bad caller input: malformed subnet, unknown config key, wrong type.

    Surfaced to the caller immediately; nothing is attempted.
    """


class ExecutorError(ScanEyeError):
    """The external scan or speed-test mechanism failed."""


class PersistenceError(ScanEyeError):
    """Reading or writing the runtime config record failed."""
