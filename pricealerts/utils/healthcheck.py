# -*- coding: utf-8 -*-
"""
Simple HTTP healthcheck endpoint for monitoring.
Returns service status, uptime and the last sweep report.
"""
import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
from aiohttp import web
from loguru import logger


def _format_ago(seconds: float) -> str:
    if seconds < 60:
        return f"{int(seconds)}s ago"
    if seconds < 3600:
        return f"{int(seconds / 60)}m ago"
    return f"{int(seconds / 3600)}h ago"


class HealthcheckServer:
    """Simple HTTP server for healthcheck endpoint."""

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 8080,
        stats_provider: Optional[Callable[[], Dict[str, Any]]] = None,
        stale_after_seconds: Optional[float] = None,
    ):
        """
        Args:
            stats_provider: Returns scheduler stats (SweepScheduler.get_stats)
            stale_after_seconds: /health reports 503 when the last sweep finished longer ago
        """
        self.host = host
        self.port = port
        self.stats_provider = stats_provider
        self.stale_after_seconds = stale_after_seconds
        self.app = web.Application()
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None

        self.start_time = datetime.now(timezone.utc)

        self.app.router.add_get('/health', self.health_handler)
        self.app.router.add_get('/status', self.status_handler)

    def _stats(self) -> Dict[str, Any]:
        return self.stats_provider() if self.stats_provider else {}

    def _last_sweep_age(self, stats: Dict[str, Any], now: datetime) -> Optional[float]:
        last = stats.get("last_sweep") or {}
        finished = last.get("finished_at")
        if not finished:
            return None
        return (now - datetime.fromisoformat(finished)).total_seconds()

    async def health_handler(self, request: web.Request) -> web.Response:
        """
        200 while sweeps keep completing; 503 once the last one is stale.
        Before the first sweep completes the service counts as healthy.
        """
        now = datetime.now(timezone.utc)
        age = self._last_sweep_age(self._stats(), now)

        if self.stale_after_seconds is not None and age is not None and age > self.stale_after_seconds:
            return web.json_response(
                {"status": "stale", "last_sweep_seconds_ago": int(age), "timestamp": now.isoformat()},
                status=503,
            )
        return web.json_response({
            "status": "ok",
            "timestamp": now.isoformat()
        })

    async def status_handler(self, request: web.Request) -> web.Response:
        """
        Detailed status endpoint with sweep counters.
        """
        now = datetime.now(timezone.utc)
        uptime_seconds = (now - self.start_time).total_seconds()

        days = int(uptime_seconds // 86400)
        hours = int((uptime_seconds % 86400) // 3600)
        minutes = int((uptime_seconds % 3600) // 60)

        stats = self._stats()
        age = self._last_sweep_age(stats, now)

        return web.json_response({
            "status": "running",
            "uptime": f"{days}d {hours}h {minutes}m",
            "uptime_seconds": int(uptime_seconds),
            "start_time": self.start_time.isoformat(),
            "last_sweep_ago": _format_ago(age) if age is not None else None,
            "scheduler": stats,
            "timestamp": now.isoformat()
        })

    async def start(self):
        """Start the healthcheck server."""
        try:
            self.runner = web.AppRunner(self.app)
            await self.runner.setup()
            self.site = web.TCPSite(self.runner, self.host, self.port)
            await self.site.start()
            logger.info(f"Healthcheck server started on http://{self.host}:{self.port}")
        except OSError as e:
            logger.error(f"Failed to start healthcheck server: {e}")

    async def stop(self):
        """Stop the healthcheck server."""
        if self.site:
            await self.site.stop()
        if self.runner:
            await self.runner.cleanup()
        logger.info("Healthcheck server stopped")

    async def run(self):
        """Run healthcheck server (keeps running until cancelled)."""
        await self.start()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            await self.stop()
            raise


_healthcheck_instance: Optional[HealthcheckServer] = None


def get_healthcheck(stats_provider: Optional[Callable[[], Dict[str, Any]]] = None) -> HealthcheckServer:
    """Get global healthcheck server instance (singleton)."""
    global _healthcheck_instance
    if _healthcheck_instance is None:
        from pricealerts.config import get_healthcheck_config, get_scheduler_config

        cfg = get_healthcheck_config()
        _healthcheck_instance = HealthcheckServer(
            host=cfg['host'],
            port=cfg['port'],
            stats_provider=stats_provider,
            # Three missed sweeps
            stale_after_seconds=get_scheduler_config()['interval_seconds'] * 3,
        )
    return _healthcheck_instance
