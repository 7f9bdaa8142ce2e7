# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Track resolver — "what is this listener playing, or what did they last play?"

Asks Spotify for the currently playing item first and falls back to the most
recently played track, so there is always something to show as long as the
listener has ever played anything.  Remote payloads are validated and
flattened into a TrackSnapshot here; nothing past this module sees raw JSON.
"""

import logging
from dataclasses import dataclass

from nowplaying.lib.errors import ConfigurationError, ResolutionEmpty
from nowplaying.lib.result import Err, Ok

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrackSnapshot:
    title: str
    artist: str
    album: str
    artwork_url: str
    external_url: str
    playback_uri: str
    preview_url: str | None
    is_playing: bool

    @property
    def label(self):
        return "Now Playing" if self.is_playing else "Last Played"

    @classmethod
    def from_payload(cls, track, is_playing):
        """Normalize a Spotify track object.  Returns None if it is unusable."""
        if not isinstance(track, dict):
            return None
        name = track.get("name")
        uri = track.get("uri")
        if not name or not uri:
            return None

        artists = ", ".join(
            a["name"] for a in track.get("artists") or []
            if isinstance(a, dict) and a.get("name"))
        album = track.get("album")
        if not isinstance(album, dict):
            album = {}
        images = album.get("images") or []
        artwork = ""
        if images and isinstance(images[0], dict):
            artwork = images[0].get("url") or ""
        external = (track.get("external_urls") or {}).get("spotify", "")

        return cls(
            title=name,
            artist=artists,
            album=album.get("name", ""),
            artwork_url=artwork,
            external_url=external or "",
            playback_uri=uri,
            preview_url=track.get("preview_url") or None,
            is_playing=bool(is_playing),
        )

    def to_dict(self):
        """Wire shape served to the UI."""
        return {
            "title": self.title,
            "artist": self.artist,
            "album": self.album,
            "albumImageUrl": self.artwork_url,
            "songUrl": self.external_url,
            "uri": self.playback_uri,
            "previewUrl": self.preview_url,
            "isPlaying": self.is_playing,
            "label": self.label,
        }


class TrackResolver:

    def __init__(self, broker, api):
        self.broker = broker
        self.api = api

    async def resolve(self):
        """Ok(TrackSnapshot) or Err(ResolutionEmpty).

        Raises ConfigurationError — there is no recovering from missing
        credentials, so it is not folded into an empty result.
        """
        result = await self.broker.exchange()
        if not result.ok:
            if result.is_kind(ConfigurationError):
                raise result.error
            log.info("Cannot resolve track: %s", result.error)
            return Err(ResolutionEmpty("Failed to get access token"))
        token = result.value.value

        snapshot = await self._currently_playing(token)
        if snapshot is None:
            snapshot = await self._recently_played(token)
        if snapshot is None:
            return Err(ResolutionEmpty())
        return Ok(snapshot)

    async def _currently_playing(self, token):
        status, data = await self.api.currently_playing(token)
        if status != 200 or not isinstance(data, dict):
            return None
        snapshot = TrackSnapshot.from_payload(data.get("item"), data.get("is_playing", True))
        if snapshot is None:
            log.debug("Currently playing item missing or not a track")
        return snapshot

    async def _recently_played(self, token):
        status, data = await self.api.recently_played(token, limit=1)
        if status != 200 or not isinstance(data, dict):
            return None
        items = data.get("items") or []
        if not items or not isinstance(items[0], dict):
            return None
        return TrackSnapshot.from_payload(items[0].get("track"), False)
