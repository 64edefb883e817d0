"""System routes: health and network interface info."""
from __future__ import annotations

import time

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from scaneye import __version__
from scaneye.api.deps import get_scheduler, get_subnet_detector
from scaneye.network.detect import SubnetDetector
from scaneye.scheduler import Scheduler

router = APIRouter(prefix="/api", tags=["system"])


class HealthResponse(BaseModel):
    version: str
    uptime_seconds: float
    scheduler_running: bool
    scan_in_progress: bool
    speed_test_in_progress: bool


@router.get("/health", response_model=HealthResponse)
async def health(request: Request, scheduler: Scheduler = Depends(get_scheduler)):
    start_time = getattr(request.app.state, "start_time", time.time())
    return HealthResponse(
        version=__version__,
        uptime_seconds=round(time.time() - start_time, 2),
        scheduler_running=scheduler.is_running,
        scan_in_progress=scheduler.scan_in_progress,
        speed_test_in_progress=scheduler.speed_test_in_progress,
    )


@router.get("/network-info")
async def network_info(detector: SubnetDetector = Depends(get_subnet_detector)) -> dict:
    """List usable IPv4 interfaces and the subnet auto-detection would pick."""
    networks = detector.network_info()
    return {
        "networks": [iface.wire() for iface in networks],
        "defaultSubnet": networks[0].subnet if networks else None,
    }
