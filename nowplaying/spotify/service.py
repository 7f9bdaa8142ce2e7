#!/usr/bin/env python3
# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
BeoSound 5c Now Playing service (beo-nowplaying)

Shows what the listener is playing on Spotify (or last played) and lets the
UI toggle playback of that track — on the local Spotify Connect device when
it is live, otherwise as a 30-second preview through mpv.

  GET  /status        — presentation state (track, loading, error, toggle)
  GET  /ws            — push of the same state on every change
  GET  /now-playing   — resolve the track right now
  GET  /access-token  — a fresh bearer token for a browser-side player
  POST /toggle        — play/pause the displayed track
  POST /visibility    — {"visible": bool} from the hosting page
  GET  /login         — one-time OAuth setup: redirect to Spotify
  GET  /callback      — OAuth code exchange, shows the refresh token response

Port: 8780
"""

import asyncio
import logging
import secrets

from aiohttp import web

from nowplaying.lib.config import cfg, load_credentials
from nowplaying.lib.errors import ConfigurationError, TokenExchangeError
from nowplaying.lib.service_base import ServiceBase

from .api import SpotifyAPI
from .auth import CredentialBroker
from .device import SETTLE_WINDOW, DeviceLifecycle, SdkLoader
from .librespot import DEFAULT_URL as LIBRESPOT_URL, LibrespotSdk
from .oauth import DEFAULT_SCOPES, build_auth_url, exchange_code
from .playback import FIRST_SETTLE, RETRY_SETTLE, PlaybackController
from .poller import POLL_INTERVAL, PresentationPoller
from .resolver import TrackResolver

log = logging.getLogger('beo-nowplaying')

DEFAULT_PORT = 8780
DEFAULT_REDIRECT_URI = "http://127.0.0.1:8780/callback"


class NowPlayingService(ServiceBase):
    """Now-playing display + play/pause toggle."""

    name = "Now Playing"

    def __init__(self, credentials=None):
        super().__init__()
        self.port = int(cfg("service", "port", default=DEFAULT_PORT))
        self.credentials = credentials if credentials is not None else load_credentials()
        self.broker = None
        self.api = None
        self.resolver = None
        self.controller = None
        self.poller = None
        self.device = None
        self._device_task = None
        self._push_tasks: set[asyncio.Task] = set()
        self._toggling = False
        self._oauth_state = None

    # ── Wiring ──

    def build_components(self, session):
        """Construct the engine around one client session."""
        self.broker = CredentialBroker(self.credentials, session)
        self.api = SpotifyAPI(session)
        self.resolver = TrackResolver(self.broker, self.api)
        self.controller = PlaybackController(
            self.api, self.broker,
            first_settle=float(cfg("playback", "first_settle", default=FIRST_SETTLE)),
            retry_settle=float(cfg("playback", "retry_settle", default=RETRY_SETTLE)))
        self.poller = PresentationPoller(
            self.resolver,
            interval=float(cfg("poller", "interval", default=POLL_INTERVAL)),
            on_update=self._on_poll_update)

        if cfg("device", "enabled", default=True):
            sdk = LibrespotSdk(session, cfg("device", "librespot_url", default=LIBRESPOT_URL))
            self.device = DeviceLifecycle(
                sdk, self.broker.token_provider,
                name=cfg("device", "name", default="BeoSound Now Playing"),
                volume=float(cfg("device", "volume", default=0.5)),
                settle_window=float(cfg("device", "settle_window", default=SETTLE_WINDOW)))
            self.device.add_change_listener(self._on_device_change)
        else:
            log.info("Connect device disabled — preview playback only")

    async def on_start(self):
        self.build_components(self._http_session)

        if self.broker.is_configured:
            log.info("Spotify credentials loaded (client_id: %s...)",
                     self.credentials.client_id[:8])
        else:
            log.error("Spotify credentials missing (%s) — visit /login after setting "
                      "SPOTIFY_CLIENT_ID and SPOTIFY_CLIENT_SECRET",
                      ", ".join(self.credentials.missing()))

        if self.device is not None and self.broker.is_configured:
            self._device_task = asyncio.create_task(self._mount_device())

        await self.poller.start()
        log.info("Now playing service ready")

    async def on_stop(self):
        if self.poller:
            await self.poller.stop()
        if self.controller:
            await self.controller.teardown()
        if self._device_task:
            self._device_task.cancel()
            try:
                await self._device_task
            except asyncio.CancelledError:
                pass
            self._device_task = None
        for task in list(self._push_tasks):
            task.cancel()
        if self._push_tasks:
            await asyncio.gather(*self._push_tasks, return_exceptions=True)
        if self.device:
            await self.device.teardown()
            SdkLoader.shared().teardown()

    async def _mount_device(self):
        connected = await self.device.mount()
        if not connected:
            log.warning("Connect device not available — preview fallback only")
            return
        # device_ready flips after the settle window; tell the UI when it does
        if await self.device.wait_until_ready(timeout=60):
            await self._broadcast_state()

    # ── Presentation ──

    def presentation(self) -> dict:
        track = self.poller.visible_track
        controller = self.controller
        if self.device is not None:
            device = self.device.snapshot()
        else:
            device = {"state": "disabled", "device_id": None, "ready": False}
        return {
            "track": track.to_dict() if track else None,
            "loading": self.poller.loading,
            "error": self.poller.error,
            "is_playing": controller.is_playing,
            "is_playing_locally": controller.is_playing_locally(),
            "can_toggle": not self._toggling and controller.can_toggle(track, self.device),
            "toggling": self._toggling,
            "device": device,
            "transport": controller.transport.to_dict(controller.clock()),
        }

    async def _broadcast_state(self):
        await self.broadcast("now_playing", self.presentation())

    async def _on_poll_update(self, poller):
        self.controller.sync_track(poller.snapshot)
        await self._broadcast_state()

    def _on_device_change(self, old, new):
        task = asyncio.get_running_loop().create_task(self._broadcast_state())
        self._push_tasks.add(task)
        task.add_done_callback(self._push_done)

    def _push_done(self, task):
        self._push_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.warning("State push failed: %s", task.exception())

    # ── ServiceBase hooks ──

    def add_routes(self, app):
        app.router.add_get('/now-playing', self._handle_now_playing)
        app.router.add_get('/access-token', self._handle_access_token)
        app.router.add_post('/toggle', self._handle_toggle)
        app.router.add_post('/visibility', self._handle_visibility)
        app.router.add_get('/login', self._handle_login)
        app.router.add_get('/callback', self._handle_callback)

    async def handle_status(self) -> dict:
        return self.presentation()

    async def on_ws_connect(self, ws):
        await ws.send_json({"type": "now_playing", "data": self.presentation()})

    # ── Routes ──

    async def _handle_now_playing(self, request):
        try:
            result = await self.resolver.resolve()
        except ConfigurationError as e:
            return self.json_response({'error': 'token_error', 'message': str(e)}, status=500)
        if not result.ok:
            return self.json_response({'error': 'No track data available'}, status=404)
        return self.json_response(result.value.to_dict())

    async def _handle_access_token(self, request):
        result = await self.broker.exchange()
        if result.ok:
            return self.json_response({'access_token': result.value.value})
        if result.is_kind(ConfigurationError):
            return self.json_response({
                'error': 'token_error',
                'message': 'Missing required Spotify credentials',
            }, status=500)
        return self.json_response({
            'error': 'token_error',
            'message': 'Failed to refresh token',
            'details': result.error.body,
        }, status=500)

    async def _handle_toggle(self, request):
        if self._toggling:
            return self.json_response(
                {'status': 'error', 'message': 'Toggle already in progress'}, status=409)
        self._toggling = True
        try:
            acted = await self.controller.toggle(self.poller.visible_track, self.device)
        finally:
            self._toggling = False
        state = self.presentation()
        await self.broadcast("now_playing", state)
        return self.json_response({'status': 'ok', 'acted': acted, **state})

    async def _handle_visibility(self, request):
        try:
            data = await request.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            return self.json_response(
                {'status': 'error', 'message': 'Expected a JSON object'}, status=400)
        if 'visible' in data:
            visible = bool(data['visible'])
        else:
            visible = not bool(data.get('hidden', False))
        await self.poller.set_visible(visible)
        return self.json_response({'status': 'ok', 'visible': self.poller.visible,
                                   'polling': self.poller.polling})

    async def _handle_login(self, request):
        if not self.credentials.client_id or not self.credentials.client_secret:
            return self.json_response({
                'error': 'config_error',
                'message': 'SPOTIFY_CLIENT_ID and SPOTIFY_CLIENT_SECRET must be set',
            }, status=500)
        self._oauth_state = secrets.token_urlsafe(16)
        url = build_auth_url(
            self.credentials.client_id,
            cfg("oauth", "redirect_uri", default=DEFAULT_REDIRECT_URI),
            cfg("oauth", "scopes", default=DEFAULT_SCOPES),
            state=self._oauth_state)
        log.info("OAuth: redirecting to Spotify")
        raise web.HTTPFound(url)

    async def _handle_callback(self, request):
        error = request.query.get('error')
        if error:
            return self.json_response({'error': f'Spotify authorization failed: {error}'}, status=400)

        code = request.query.get('code')
        if not code:
            return self.json_response({'error': 'No code found'}, status=400)

        state = request.query.get('state')
        if not self._oauth_state or state != self._oauth_state:
            return self.json_response({'error': 'State mismatch — start again at /login'}, status=400)
        self._oauth_state = None

        try:
            data = await exchange_code(
                self._http_session, code, self.credentials,
                cfg("oauth", "redirect_uri", default=DEFAULT_REDIRECT_URI))
        except TokenExchangeError as e:
            log.error("OAuth callback failed (HTTP %s)", e.status)
            return self.json_response({'error': 'token_error', 'details': e.body}, status=500)

        if data.get('refresh_token'):
            log.info("OAuth: refresh token received — store it as SPOTIFY_REFRESH_TOKEN")
        return self.json_response(data)


def main():
    logging.basicConfig(level=logging.INFO, format='[%(levelname)s] %(message)s')
    service = NowPlayingService()
    asyncio.run(service.run())


if __name__ == '__main__':
    main()
