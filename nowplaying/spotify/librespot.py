# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
go-librespot adapter for the device lifecycle.

go-librespot runs as a local Spotify Connect endpoint and exposes an HTTP API
(default http://localhost:3678):

  GET  /status         — device_id, paused/stopped flags, current track
  POST /player/pause   — pause
  POST /player/resume  — resume
  GET  /events         — WebSocket push of playback events

Mapping onto the SDK surface:
  inject()   — wait until the daemon answers /status, then fire on_ready
  connect()  — mint a token, open /events, emit "ready" with the device_id
  events     — every playback event re-reads /status → "player_state_changed"
  WS closed  — emit "not_ready"
"""

import asyncio
import logging

import aiohttp

from .device import DevicePlayer, PlaybackSdk

log = logging.getLogger(__name__)

DEFAULT_URL = "http://localhost:3678"
PROBE_ATTEMPTS = 5
TIMEOUT = aiohttp.ClientTimeout(total=5)

# Events after which the transport state is worth re-reading
_STATE_EVENTS = {"playing", "paused", "not_playing", "stopped", "seek", "metadata", "will_play"}


def _to_state(status: dict) -> dict | None:
    """Flatten a go-librespot /status body into the SDK state shape."""
    if not isinstance(status, dict):
        return None
    track = status.get("track") or {}
    if not track:
        return None
    return {
        "track_uri": track.get("uri"),
        "paused": bool(status.get("paused") or status.get("stopped")),
        "position": int(track.get("position") or 0),
        "duration": int(track.get("duration") or 0),
    }


class LibrespotPlayer(DevicePlayer):

    def __init__(self, sdk, name, token_provider, volume=0.5):
        super().__init__(name, token_provider, volume)
        self.sdk = sdk
        self.device_id = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._events_task: asyncio.Task | None = None
        self._closing = False

    @property
    def session(self):
        return self.sdk.session

    async def _get_status(self):
        try:
            async with self.session.get(f"{self.sdk.base_url}/status", timeout=TIMEOUT) as resp:
                if resp.status == 200:
                    return await resp.json()
                if resp.status == 204:
                    return {}
                log.debug("librespot /status -> %d", resp.status)
                return None
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.debug("librespot /status failed: %s", e)
            return None

    async def _post(self, endpoint) -> bool:
        try:
            async with self.session.post(
                f"{self.sdk.base_url}/player/{endpoint}", json={}, timeout=TIMEOUT
            ) as resp:
                return resp.status in (200, 204)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.warning("librespot %s failed: %s", endpoint, e)
            return False

    async def connect(self) -> bool:
        self._closing = False
        token = await self.token_provider()
        if not token:
            log.warning("No access token for device handshake")
            return False

        try:
            self._ws = await self.session.ws_connect(
                f"{self.sdk.base_url}/events",
                headers={"Authorization": f"Bearer {token}"},
                heartbeat=30,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.warning("librespot events connection failed: %s", e)
            return False

        self._events_task = asyncio.create_task(self._read_events())

        status = await self._get_status()
        device_id = (status or {}).get("device_id")
        if not device_id:
            log.warning("librespot did not report a device_id")
            return True  # ready may still follow from an "active" event
        self.device_id = device_id
        self._emit("ready", {"device_id": device_id})
        return True

    async def _read_events(self):
        """Background task — turns /events messages into SDK events."""
        try:
            async for msg in self._ws:
                if msg.type != aiohttp.WSMsgType.TEXT:
                    continue
                try:
                    event = msg.json()
                except ValueError:
                    continue
                await self._handle_event(event.get("type"))
        except asyncio.CancelledError:
            return
        except Exception as e:
            log.debug("librespot event reader ended: %s", e)

        if not self._closing:
            log.warning("librespot events closed — device not ready")
            self._emit("not_ready", {"device_id": self.device_id})

    async def _handle_event(self, kind):
        if kind == "active" and self.device_id is None:
            status = await self._get_status()
            device_id = (status or {}).get("device_id")
            if device_id:
                self.device_id = device_id
                self._emit("ready", {"device_id": device_id})
        elif kind in _STATE_EVENTS:
            state = _to_state(await self._get_status())
            if state:
                self._emit("player_state_changed", state)

    async def disconnect(self):
        self._closing = True
        if self._events_task:
            self._events_task.cancel()
            try:
                await self._events_task
            except asyncio.CancelledError:
                pass
            self._events_task = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None

    async def pause(self):
        if not await self._post("pause"):
            raise RuntimeError("librespot pause rejected")

    async def resume(self):
        if not await self._post("resume"):
            raise RuntimeError("librespot resume rejected")

    async def get_current_state(self):
        return _to_state(await self._get_status())


class LibrespotSdk(PlaybackSdk):

    def __init__(self, session: aiohttp.ClientSession, base_url=DEFAULT_URL,
                 attempts=PROBE_ATTEMPTS):
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.attempts = attempts

    async def inject(self, on_ready):
        """Probe the daemon with back-off; fire on_ready once it answers."""
        for attempt in range(self.attempts):
            try:
                async with self.session.get(f"{self.base_url}/status", timeout=TIMEOUT) as resp:
                    if resp.status in (200, 204):
                        log.info("go-librespot reachable at %s", self.base_url)
                        on_ready()
                        return
                    reason = f"HTTP {resp.status}"
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                reason = str(e) or type(e).__name__
            if attempt < self.attempts - 1:
                delay = 2 * (attempt + 1)
                log.warning("go-librespot unreachable (attempt %d/%d, retry in %ds): %s",
                            attempt + 1, self.attempts, delay, reason)
                await asyncio.sleep(delay)
        raise ConnectionError(f"go-librespot not reachable at {self.base_url}")

    def create_player(self, name, token_provider, volume=0.5):
        return LibrespotPlayer(self, name, token_provider, volume)
