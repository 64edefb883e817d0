"""Internet throughput measurement.

``SpeedtestCliExecutor`` drives the speedtest.net service through the
speedtest-cli library. The library is blocking, so the whole measurement
(server selection, download, upload) runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

import speedtest

from scaneye.errors import ExecutorError
from scaneye.models import SpeedTestResult

logger = logging.getLogger(__name__)

_BITS_PER_MEGABIT = 1_000_000


class SpeedTestExecutor(Protocol):
    async def measure(self) -> SpeedTestResult:
        """Measure throughput and latency. Raises ``ExecutorError`` on failure."""
        ...


class SpeedtestCliExecutor:
    """Measure download/upload/ping against the nearest speedtest.net server.

    Parameters
    ----------
    secure:
        Use HTTPS when talking to speedtest.net.
    timeout_seconds:
        Per-request socket timeout handed to speedtest-cli.
    client_factory:
        Builds the ``speedtest.Speedtest`` client. Tests substitute a fake.
    """

    def __init__(
        self,
        secure: bool = True,
        timeout_seconds: int = 60,
        client_factory: Callable[..., Any] | None = None,
    ) -> None:
        self._secure = secure
        self._timeout = timeout_seconds
        self._client_factory = client_factory or speedtest.Speedtest

    async def measure(self) -> SpeedTestResult:
        logger.info("Speed test starting")
        result = await asyncio.to_thread(self._measure_blocking)
        logger.info(
            "Speed test complete: %.2f Mbps down / %.2f Mbps up, %.0f ms",
            result.download_mbps,
            result.upload_mbps,
            result.ping_ms,
        )
        return result

    def _measure_blocking(self) -> SpeedTestResult:
        try:
            client = self._client_factory(secure=self._secure, timeout=self._timeout)
            server = client.get_best_server()
            download = client.download()
            upload = client.upload()
            ping = client.results.ping
            isp = (client.results.client or {}).get("isp")
        except speedtest.SpeedtestException as exc:
            raise ExecutorError(f"Speed test failed: {exc}") from exc
        except OSError as exc:
            raise ExecutorError(f"Speed test failed: {exc}") from exc

        server = server or {}
        server_name = ", ".join(
            part for part in (server.get("sponsor"), server.get("name")) if part
        )
        return SpeedTestResult(
            download_mbps=round(download / _BITS_PER_MEGABIT, 2),
            upload_mbps=round(upload / _BITS_PER_MEGABIT, 2),
            ping_ms=round(ping),
            timestamp=datetime.now(timezone.utc).isoformat(),
            isp=isp or None,
            server=server_name or None,
        )
