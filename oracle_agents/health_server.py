"""Operator HTTP endpoint: /health, /status and /oracles."""

import json
import logging
from datetime import datetime
from typing import Optional

from aiohttp import web

logger = logging.getLogger(__name__)


def _json_default(obj):
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, bytes):
        return "0x" + obj.hex()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _dumps(obj):
    return json.dumps(obj, default=_json_default)


def setup_routes(app: web.Application, orchestrator) -> None:
    """Register the operator routes on *app*."""
    app["orchestrator"] = orchestrator
    app.router.add_get("/health", _health)
    app.router.add_get("/status", _status)
    app.router.add_get("/oracles", _oracles)


async def _health(request: web.Request) -> web.Response:
    report = request.app["orchestrator"].health_check()
    code = 503 if report["status"] == "unhealthy" else 200
    return web.json_response(report, status=code, dumps=_dumps)


async def _status(request: web.Request) -> web.Response:
    return web.json_response(request.app["orchestrator"].get_status(), dumps=_dumps)


async def _oracles(request: web.Request) -> web.Response:
    return web.json_response({"oracles": request.app["orchestrator"].oracle_status()}, dumps=_dumps)


class HealthServer:
    """aiohttp server exposing the orchestrator's aggregated view."""

    def __init__(self, orchestrator, host: str = "0.0.0.0", port: int = 8000):
        self.host = host
        self.port = port
        self.app = web.Application()
        setup_routes(self.app, orchestrator)
        self._runner: Optional[web.AppRunner] = None

    async def start(self):
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"✅ Health endpoint on http://{self.host}:{self.port}/health")

    async def stop(self):
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
