# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
ServiceBase — shared aiohttp plumbing for the now-playing service.

Subclass contract:

    class MyService(ServiceBase):
        name = "Now Playing"
        port = 8780

        async def handle_status(self) -> dict: ...

Optional overrides:
    on_start()        — called once the listener is bound (client session ready)
    on_stop()         — called first during shutdown
    add_routes(app)   — register extra aiohttp routes
    on_ws_connect(ws) — greet a new push subscriber with the current state

Built-in:
    GET /status  — handle_status() as JSON
    GET /ws      — push-only WebSocket; broadcast(type, data) fans out
    CORS headers on every response (the panel UI is served from another port)
"""

import asyncio
import logging
import signal

import aiohttp
from aiohttp import web

log = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


@web.middleware
async def cors_middleware(request, handler):
    if request.method == "OPTIONS":
        return web.Response(headers=CORS_HEADERS)
    response = await handler(request)
    if not response.prepared:  # /ws has already sent its handshake
        response.headers.update(CORS_HEADERS)
    return response


class ServiceBase:
    name: str = ""
    port: int = 0
    host: str = "0.0.0.0"

    def __init__(self):
        self._http_session: aiohttp.ClientSession | None = None
        self._runner: web.AppRunner | None = None
        self._subscribers: set[web.WebSocketResponse] = set()

    # ── Lifecycle ──

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[cors_middleware])
        app.router.add_get("/status", self._status_route)
        app.router.add_get("/ws", self._ws_route)
        self.add_routes(app)
        return app

    async def start(self):
        """Open the outbound session, bind the listener, then on_start()."""
        self._http_session = aiohttp.ClientSession()
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        await web.TCPSite(self._runner, self.host, self.port).start()
        log.info("%s listening on %s:%d (HTTP + /ws)", self.name, self.host, self.port)
        await self.on_start()

    async def stop(self):
        await self.on_stop()

        subscribers, self._subscribers = self._subscribers, set()
        for ws in subscribers:
            await ws.close(code=aiohttp.WSCloseCode.GOING_AWAY, message=b"shutdown")

        if self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        log.info("%s stopped", self.name)

    async def run(self):
        """Start, block until SIGTERM/SIGINT, stop."""
        await self.start()
        shutdown = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, shutdown.set)
        try:
            await shutdown.wait()
        finally:
            await self.stop()

    # ── Responses ──

    @staticmethod
    def json_response(data, status=200):
        return web.json_response(data, status=status)

    async def _status_route(self, request):
        return self.json_response(await self.handle_status())

    # ── Push ──

    async def broadcast(self, event_type, data):
        """Send {"type", "data"} to every open subscriber; drop the dead ones."""
        live = [ws for ws in self._subscribers if not ws.closed]
        self._subscribers = set(live)
        if not live:
            return
        message = {"type": event_type, "data": data}
        results = await asyncio.gather(
            *(ws.send_json(message) for ws in live), return_exceptions=True)
        for ws, outcome in zip(live, results):
            if isinstance(outcome, Exception):
                log.debug("Dropping push subscriber: %s", outcome)
                self._subscribers.discard(ws)

    async def _ws_route(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=30)
        await ws.prepare(request)
        self._subscribers.add(ws)
        log.info("Push subscriber joined (%d open)", len(self._subscribers))
        try:
            await self.on_ws_connect(ws)
            async for _ in ws:
                pass  # inbound messages are not part of the protocol
        finally:
            self._subscribers.discard(ws)
            log.info("Push subscriber left (%d open)", len(self._subscribers))
        return ws

    # ── Hooks ──

    async def on_start(self):
        pass

    async def on_stop(self):
        pass

    async def on_ws_connect(self, ws: web.WebSocketResponse):
        pass

    async def handle_status(self) -> dict:
        return {"name": self.name}

    def add_routes(self, app: web.Application):
        pass
