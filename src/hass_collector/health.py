"""HTTP health, readiness and liveness endpoints for the collector."""

import functools
import json
import logging
from typing import Optional

from aiohttp import web


logger = logging.getLogger(__name__)

# Stats carry datetimes
_dumps = functools.partial(json.dumps, default=str)


def build_app(service) -> web.Application:
    """
    Build the health endpoint application for a collector service.

    ``/health`` returns the aggregated component report (200 only when healthy).
    ``/ready`` answers from ``service.readiness()``: metadata loaded, refresher alive and
    dispatch queue still accepting events. ``/live`` answers as long as the loop runs.
    """

    async def health(request: web.Request) -> web.Response:
        try:
            report = await service.health_check()
        except Exception as e:
            logger.error(f"Health check failed: {e}", exc_info=True)
            return web.json_response({"status": "unhealthy", "error": str(e)}, status=503)

        return web.json_response(report, status=200 if report["status"] == "healthy" else 503, dumps=_dumps)

    async def ready(request: web.Request) -> web.Response:
        readiness = service.readiness()
        return web.json_response(readiness, status=200 if readiness["ready"] else 503, dumps=_dumps)

    async def live(request: web.Request) -> web.Response:
        return web.json_response({"alive": True})

    app = web.Application()
    app.router.add_get('/health', health)
    app.router.add_get('/ready', ready)
    app.router.add_get('/live', live)
    return app


class HealthCheckServer:
    """Serves the health endpoints next to the collector."""

    def __init__(self, service, host: str = "0.0.0.0", port: int = 8080):
        self.service = service
        self.host = host
        self.port = port
        self.runner: Optional[web.AppRunner] = None

    async def start(self):
        self.runner = web.AppRunner(build_app(self.service))
        await self.runner.setup()
        await web.TCPSite(self.runner, self.host, self.port).start()
        logger.info(f"Health check server started on http://{self.host}:{self.port}")

    async def stop(self):
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
            logger.info("Health check server stopped")
