"""Scan routes: latest results, manual triggers, ad-hoc scans, speed test."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel

from scaneye.api.deps import get_scan_executor, get_scheduler, get_subnet_detector
from scaneye.errors import ExecutorError, PersistenceError, ValidationError
from scaneye.network.detect import SubnetDetector
from scaneye.scanner.nmap_executor import ScanExecutor
from scaneye.scheduler import Scheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["scan"])


# ---------- Response models ----------


class TriggerResponse(BaseModel):
    success: bool
    started: bool
    message: str


class SpeedTestResponse(BaseModel):
    speed: float
    upload: float
    ping: float
    timestamp: str
    isp: Optional[str] = None
    server: Optional[str] = None


# ---------- Routes ----------


@router.get("/results")
async def get_results(
    response: Response,
    scheduler: Scheduler = Depends(get_scheduler),
) -> dict:
    """Return the latest scan result from memory. Never starts a scan."""
    response.headers["Cache-Control"] = "no-store"
    return {"devices": [device.wire() for device in scheduler.get_latest_results()]}


@router.post("/scan/trigger", response_model=TriggerResponse)
async def trigger_scan(scheduler: Scheduler = Depends(get_scheduler)):
    """Start a scheduled-path scan in the background.

    If a scan is already running the request is absorbed by it; watch the
    event stream for its ``scan:complete``.
    """
    started = scheduler.trigger_scan_now()
    message = "Scan triggered" if started else "Scan already in progress"
    return TriggerResponse(success=True, started=started, message=message)


@router.get("/scan")
async def adhoc_scan(
    subnet: Optional[str] = Query(default=None),
    executor: ScanExecutor = Depends(get_scan_executor),
    detector: SubnetDetector = Depends(get_subnet_detector),
) -> dict:
    """Scan a subnet right now and return the hosts.

    Runs outside the schedule: the cached results are not touched and no
    events are published.
    """
    target = subnet or detector.default_subnet()
    if not target:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No subnet detected. Please configure a manual subnet.",
        )
    try:
        devices = await executor.scan(target)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except ExecutorError as exc:
        logger.warning("Ad-hoc scan of %s failed: %s", target, exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Scan failed") from exc
    return {"devices": [device.wire() for device in devices], "subnet": target}


@router.get("/speed-test", response_model=SpeedTestResponse)
async def run_speed_test(scheduler: Scheduler = Depends(get_scheduler)):
    """Measure throughput now (or join the running measurement) and return it."""
    try:
        result = await scheduler.trigger_speed_test_now()
    except ExecutorError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Speed test failed") from exc
    except PersistenceError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Speed test result could not be saved",
        ) from exc
    return SpeedTestResponse(
        speed=result.download_mbps,
        upload=result.upload_mbps,
        ping=result.ping_ms,
        timestamp=result.timestamp,
        isp=result.isp,
        server=result.server,
    )
