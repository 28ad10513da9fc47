"""APScheduler-based runner for the copy-trading engine."""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Optional

from aiohttp import web
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from copytrader.config import HEALTH_CHECK_PORT, POLL_INTERVAL_MS
from copytrader.jobs.copy_cycle import CopyTradeEngine, build_engine

logger = logging.getLogger(__name__)


class CopyTraderScheduler:
    """Runs the copy cycle on an interval and serves /health."""

    def __init__(self, engine: Optional[CopyTradeEngine] = None) -> None:
        self._scheduler = AsyncIOScheduler()
        self._engine = engine
        self._shutdown_event = asyncio.Event()
        self._health_runner: web.AppRunner | None = None
        self._cycle_running = False

    async def start(self) -> None:
        """Build the engine, register the job, and block until shutdown."""
        if self._engine is None:
            self._engine = await build_engine()
        await self._engine.start()

        # First cycle seeds the seen-event set
        await self._job_copy_cycle()

        self._scheduler.add_job(
            self._job_copy_cycle,
            "interval",
            seconds=POLL_INTERVAL_MS / 1000,
            id="copy_cycle",
            name="Tracked wallet copy cycle",
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info(
            "scheduler_started",
            extra={"poll_interval_ms": POLL_INTERVAL_MS, "jobs": len(self._scheduler.get_jobs())},
        )

        await self._start_health_server()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._request_shutdown)

        await self._shutdown_event.wait()
        await self.shutdown()

    def _request_shutdown(self) -> None:
        logger.info("shutdown_requested")
        self._shutdown_event.set()

    async def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        if self._engine is not None:
            await self._engine.stop()
        if self._health_runner is not None:
            await self._health_runner.cleanup()
        logger.info("scheduler_stopped")

    # ------------------------------------------------------------------
    # Job wrappers
    # ------------------------------------------------------------------

    async def _job_copy_cycle(self) -> None:
        if self._cycle_running:
            logger.info("copy_cycle_overlap_skipped")
            return
        self._cycle_running = True
        try:
            await self._engine.run_cycle()
        except Exception:
            logger.error("copy_cycle_error", exc_info=True)
        finally:
            self._cycle_running = False

    # ------------------------------------------------------------------
    # Health check
    # ------------------------------------------------------------------

    async def _start_health_server(self) -> None:
        app = web.Application()
        app.router.add_get("/health", self._health_handler)

        self._health_runner = web.AppRunner(app)
        await self._health_runner.setup()
        site = web.TCPSite(self._health_runner, "0.0.0.0", HEALTH_CHECK_PORT)
        await site.start()
        logger.info("health_server_started", extra={"port": HEALTH_CHECK_PORT})

    async def _health_handler(self, request: web.Request) -> web.Response:
        try:
            engine_status = self._engine.status() if self._engine else {}
        except Exception:
            engine_status = {"error": "not_initialized"}
        return web.json_response({
            "status": "ok",
            "scheduler_running": self._scheduler.running,
            "engine": engine_status,
        })
