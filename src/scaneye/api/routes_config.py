"""Config routes: read and update the runtime configuration."""
from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, status

from scaneye.api.deps import get_scheduler
from scaneye.errors import PersistenceError, ValidationError
from scaneye.scheduler import Scheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/config", tags=["config"])


@router.get("")
async def get_config(scheduler: Scheduler = Depends(get_scheduler)) -> dict:
    """Return the runtime configuration (camelCase keys)."""
    config = await scheduler.get_config()
    return config.wire()


@router.post("")
async def update_config(
    body: dict[str, Any] = Body(...),
    scheduler: Scheduler = Depends(get_scheduler),
) -> dict:
    """Partial update of the runtime configuration (merge semantics).

    Accepts ``scanIntervalSeconds``, ``speedTestIntervalMinutes`` and
    ``manualSubnet``. Interval changes re-arm the timers; setting the
    manual subnet starts a scan immediately.
    """
    try:
        config = await scheduler.update_config(body)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except PersistenceError as exc:
        logger.error("Config update failed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update config",
        ) from exc
    return {"success": True, "config": config.wire()}
