"""Durable runtime configuration record backed by SQLite.

Each ``RuntimeConfig`` field is one row in ``runtime_config`` with a JSON
value. Reads merge stored rows over model defaults; writes merge a partial
update over the current record and rewrite only the fields it names, in a
single transaction.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any

import aiosqlite
import pydantic

from scaneye.db.migrations import apply_migrations
from scaneye.errors import PersistenceError, ValidationError
from scaneye.models import RuntimeConfig, config_field_name, normalize_config_keys

logger = logging.getLogger(__name__)

_UPSERT_SQL = (
    "INSERT INTO runtime_config (key, value, updated_at) VALUES (?, ?, ?) "
    "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at"
)


def _describe(exc: pydantic.ValidationError) -> str:
    """Render a pydantic error as a short single-line message."""
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg', 'invalid value')}" if loc else err.get("msg", ""))
    return "; ".join(parts) or "invalid configuration"


def _resolve(stored: dict[str, Any]) -> RuntimeConfig:
    """Build a RuntimeConfig from stored values, falling back to defaults.

    Unknown keys are ignored. Stored values that fail validation are dropped
    one field at a time so a single corrupt row never hides the rest.
    """
    known = {k: v for k, v in stored.items() if k in RuntimeConfig.model_fields}
    while True:
        try:
            return RuntimeConfig.model_validate(known)
        except pydantic.ValidationError as exc:
            bad = {config_field_name(str(err["loc"][0])) for err in exc.errors() if err.get("loc")}
            bad &= set(known)
            if not bad:
                logger.warning("Stored runtime config is unusable, using defaults")
                return RuntimeConfig()
            logger.warning("Ignoring invalid stored config fields: %s", ", ".join(sorted(bad)))
            known = {k: v for k, v in known.items() if k not in bad}


class ConfigStore:
    """Persisted key/value settings with defaults and serialized merges.

    Parameters
    ----------
    db:
        An open ``aiosqlite.Connection``. The schema is applied on first use
        if it is not there yet.
    """

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db
        self._lock = asyncio.Lock()
        self._ready = False

    async def _ensure_ready(self) -> None:
        if not self._ready:
            await apply_migrations(self._db)
            self._ready = True

    async def _read_rows(self) -> dict[str, Any]:
        cursor = await self._db.execute("SELECT key, value FROM runtime_config")
        rows = await cursor.fetchall()
        stored: dict[str, Any] = {}
        for key, raw in rows:
            try:
                stored[key] = json.loads(raw)
            except (json.JSONDecodeError, TypeError):
                logger.warning("Ignoring undecodable config value for %r", key)
        return stored

    async def _write(self, values: dict[str, Any]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        rows = [(key, json.dumps(value), now) for key, value in values.items()]
        try:
            await self._db.executemany(_UPSERT_SQL, rows)
            await self._db.commit()
        except aiosqlite.Error as exc:
            try:
                await self._db.rollback()
            except aiosqlite.Error:
                logger.warning("Rollback after failed config write also failed", exc_info=True)
            raise PersistenceError(f"Failed to write runtime config: {exc}") from exc

    async def get(self) -> RuntimeConfig:
        """Return the persisted config merged over defaults.

        An empty store is initialized with the defaults first. Read failures
        are logged and resolve to the defaults.
        """
        async with self._lock:
            try:
                await self._ensure_ready()
                stored = await self._read_rows()
            except aiosqlite.Error:
                logger.warning("Failed to read runtime config, using defaults", exc_info=True)
                return RuntimeConfig()

            if not stored:
                defaults = RuntimeConfig()
                try:
                    await self._write(defaults.model_dump())
                    logger.info("Initialized runtime config with defaults")
                except PersistenceError:
                    logger.warning("Failed to initialize runtime config", exc_info=True)
                return defaults

            return _resolve(stored)

    async def update(self, partial: dict[str, Any]) -> RuntimeConfig:
        """Merge *partial* over the persisted config and write it.

        Keys may be field names or camelCase aliases. Only the fields named
        in *partial* are rewritten; ``update({})`` writes nothing.

        Raises
        ------
        ValidationError
            Unknown keys or values that do not fit the field types.
        PersistenceError
            The read-modify-write failed; prior persisted state is intact.
        """
        fields = normalize_config_keys(partial)
        unknown = set(fields) - set(RuntimeConfig.model_fields)
        if unknown:
            raise ValidationError(f"Unknown config field(s): {', '.join(sorted(unknown))}")

        async with self._lock:
            try:
                await self._ensure_ready()
                stored = await self._read_rows()
            except aiosqlite.Error as exc:
                raise PersistenceError(f"Failed to read runtime config: {exc}") from exc

            current = _resolve(stored)
            try:
                merged = RuntimeConfig.model_validate({**current.model_dump(), **fields})
            except pydantic.ValidationError as exc:
                raise ValidationError(_describe(exc)) from exc

            if not fields:
                return merged

            # A first write on an empty store persists the full record.
            to_write = merged.model_dump() if not stored else merged.model_dump(include=set(fields))
            await self._write(to_write)
            logger.debug("Runtime config updated: %s", ", ".join(sorted(fields)))
            return merged
