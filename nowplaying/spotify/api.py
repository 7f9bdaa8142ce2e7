# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Thin wrapper around the Spotify Web API calls this service makes.

Every method takes the bearer token explicitly — the caller mints one per
operation via the credential broker.  Nothing here raises on HTTP or network
failure; the raw status (or None) is returned and the caller decides.
"""

import asyncio
import logging

import aiohttp

log = logging.getLogger(__name__)

SPOTIFY_API = "https://api.spotify.com/v1"
TIMEOUT = aiohttp.ClientTimeout(total=10)


class SpotifyAPI:

    def __init__(self, session: aiohttp.ClientSession, base_url=SPOTIFY_API):
        self.session = session
        self.base_url = base_url

    @staticmethod
    def _headers(token):
        return {"Authorization": f"Bearer {token}"}

    async def get(self, token, path, params=None):
        """GET *path*.  Returns (status, json-or-None); status is None on network error."""
        url = f"{self.base_url}{path}"
        try:
            async with self.session.get(
                url, headers=self._headers(token), params=params, timeout=TIMEOUT
            ) as resp:
                if resp.status == 204:
                    return resp.status, None
                if resp.status != 200:
                    body = await resp.text()
                    log.warning("Spotify GET %s -> %d: %s", path, resp.status, body[:200])
                    return resp.status, None
                return resp.status, await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            log.warning("Spotify GET %s failed: %s", path, e)
            return None, None

    async def put(self, token, path, json_data=None):
        """PUT *path* with a JSON body.  Returns (status, json-or-None)."""
        url = f"{self.base_url}{path}"
        headers = self._headers(token)
        headers["Content-Type"] = "application/json"
        try:
            async with self.session.put(
                url, headers=headers, json=json_data, timeout=TIMEOUT
            ) as resp:
                if resp.status in (200, 204):
                    return resp.status, None
                body = await resp.text()
                log.debug("Spotify PUT %s -> %d: %s", path, resp.status, body[:200])
                return resp.status, body
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.warning("Spotify PUT %s failed: %s", path, e)
            return None, None

    # ── Reads ──

    async def currently_playing(self, token):
        return await self.get(token, "/me/player/currently-playing")

    async def recently_played(self, token, limit=1):
        return await self.get(token, "/me/player/recently-played", params={"limit": limit})

    # ── Playback commands ──

    async def transfer_playback(self, token, device_id, play=False) -> bool:
        """Move playback ownership to *device_id*.

        204 = transferred.  404 (no active device) is also accepted: it is what
        Spotify answers when this device is the first one the account uses.
        """
        status, _ = await self.put(token, "/me/player", {
            "device_ids": [device_id],
            "play": play,
        })
        return status in (204, 404)

    async def start_playback(self, token, uris, device_id=None) -> bool:
        """Play *uris*.  Only 204 counts as started."""
        path = "/me/player/play"
        if device_id:
            path += f"?device_id={device_id}"
        status, body = await self.put(token, path, {"uris": list(uris)})
        if status == 204:
            return True
        if body and "NO_ACTIVE_DEVICE" in body:
            log.info("Play rejected: device not registered yet")
        return False
