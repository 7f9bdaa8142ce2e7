# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Playback controller — play/pause the displayed track.

Decision order for toggle():
  1. A live, settled Connect device: pause, resume the same paused track,
     or run the start protocol (transfer → settle → play, retried once).
  2. The track's preview clip, played locally via mpv.
  3. Nothing — the toggle is disabled (see can_toggle()).

Only one path produces audio at a time.  Failures on the device path fall
through to the preview path silently; nothing here raises to the caller.
"""

import asyncio
import logging
import time
from dataclasses import dataclass

from nowplaying.lib.errors import PlaybackProtocolFailure
from nowplaying.lib.result import Err, Ok

from .preview import PreviewPlayer

log = logging.getLogger(__name__)

# Spotify's device registry needs time after transfer before play sticks.
FIRST_SETTLE = 1.2
RETRY_SETTLE = 2.0

DEVICE = "device"
PREVIEW = "preview"


def format_time(ms):
    """Milliseconds → 'm:ss'."""
    if not ms or ms != ms:  # None, 0 or NaN
        return "0:00"
    total = int(ms // 1000)
    return f"{total // 60}:{total % 60:02d}"


@dataclass
class TransportState:
    position_ms: int = 0
    duration_ms: int = 0
    paused: bool = True
    source: str | None = None   # which clock is authoritative: "device" | "preview"
    updated_at: float = 0.0

    def estimated_position_ms(self, now) -> int:
        """Position advanced by wall time since the last report, clamped to duration."""
        if self.paused or not self.duration_ms:
            return self.position_ms
        elapsed = max(0.0, now - self.updated_at)
        return min(self.position_ms + int(elapsed * 1000), self.duration_ms)

    def to_dict(self, now) -> dict:
        position = self.estimated_position_ms(now)
        return {
            "source": self.source,
            "paused": self.paused,
            "position_ms": position,
            "duration_ms": self.duration_ms,
            "position": format_time(position),
            "duration": format_time(self.duration_ms),
            "progress": round(min(100.0, position / self.duration_ms * 100), 1)
            if self.duration_ms else 0,
        }


class PlaybackController:

    def __init__(self, api, broker, *, preview_factory=PreviewPlayer,
                 first_settle=FIRST_SETTLE, retry_settle=RETRY_SETTLE,
                 sleep=asyncio.sleep, clock=time.monotonic):
        self.api = api
        self.broker = broker
        self.preview_factory = preview_factory
        self.first_settle = first_settle
        self.retry_settle = retry_settle
        self.sleep = sleep
        self.clock = clock

        self.is_playing = False
        self.active: str | None = None
        self.transport = TransportState()
        self.preview: PreviewPlayer | None = None
        self._device = None

    # ── Availability ──

    @staticmethod
    def can_use_device(track, device) -> bool:
        return bool(
            track is not None and track.playback_uri
            and device is not None and device.device_ready
            and device.player is not None and device.device_id)

    def can_toggle(self, track, device=None) -> bool:
        if track is None:
            return False
        return self.can_use_device(track, device) or bool(track.preview_url)

    def is_playing_locally(self) -> bool:
        if not self.is_playing:
            return False
        if self.active == DEVICE:
            return self.transport.duration_ms > 0
        if self.active == PREVIEW:
            return self.preview is not None and not self.preview.paused
        return False

    def sync_track(self, track):
        """Adopt a freshly resolved snapshot's play state.

        Skipped while the preview clip is audibly playing — the listener's
        account knows nothing about it.
        """
        if track is None:
            return
        if self.active == PREVIEW and self.preview is not None and not self.preview.paused:
            return
        self.is_playing = track.is_playing

    # ── Toggle ──

    async def toggle(self, track, device=None) -> bool:
        """Play or pause *track*.  Returns True if some path acted."""
        if track is None:
            return False

        if self.is_playing and self.active == PREVIEW:
            return await self._toggle_preview(track)

        if self.can_use_device(track, device):
            if await self._toggle_device(track, device):
                return True
            log.info("Device path failed — trying preview")

        if track.preview_url:
            return await self._toggle_preview(track)

        log.debug("No playback path for %s", track.title)
        return False

    async def _toggle_device(self, track, device) -> bool:
        player = device.player
        try:
            if self.is_playing:
                await player.pause()
                self.is_playing = False
                self.transport.paused = True
                return True

            try:
                state = await player.get_current_state()
            except Exception as e:
                log.debug("Could not read device state: %s", e)
                state = None
            if state and state.get("track_uri") == track.playback_uri and state.get("paused"):
                await self._silence_preview()
                await player.resume()
                self._activate(DEVICE, device)
                self.is_playing = True
                self.transport.paused = False
                self.transport.updated_at = self.clock()
                log.info("Resumed %s on device", track.title)
                return True

            await self._silence_preview()
            result = await self.start_protocol(device.device_id, track.playback_uri)
            if not result.ok:
                log.info("%s", result.error)
                return False
            self._activate(DEVICE, device)
            self.is_playing = True
            log.info("Started %s on device (attempt %d)", track.title, result.value)
            return True
        except Exception as e:
            log.warning("Device playback failed: %s", e)
            return False

    async def start_protocol(self, device_id, uri):
        """Transfer → settle → play, with one longer retry.

        Returns Ok(attempt_number) or Err(PlaybackProtocolFailure / token error).
        """
        result = await self.broker.exchange()
        if not result.ok:
            return Err(result.error)
        token = result.value.value

        for attempt, settle in enumerate((self.first_settle, self.retry_settle), start=1):
            if not await self.api.transfer_playback(token, device_id):
                log.info("Transfer to %s... not acknowledged (attempt %d)", device_id[:8], attempt)
            await self.sleep(settle)
            if await self.api.start_playback(token, [uri]):
                return Ok(attempt)
            log.info("Play not accepted after %.1fs settle (attempt %d)", settle, attempt)

        return Err(PlaybackProtocolFailure(f"Could not start {uri} on {device_id[:8]}..."))

    async def _toggle_preview(self, track) -> bool:
        try:
            if self.preview is None:
                self.preview = self.preview_factory(track.preview_url)
                self.preview.on_ended = self._on_preview_ended
                self.preview.on_time_update = self._on_preview_time

            if self.is_playing:
                await self.preview.pause()
                self.is_playing = False
                self.transport.paused = True
                return True

            await self._silence_device()
            await self.preview.set_source(track.preview_url)
            await self.preview.play()
            self._activate(PREVIEW)
            self.is_playing = True
            self.transport.paused = False
            self.transport.updated_at = self.clock()
            log.info("Playing preview of %s", track.title)
            return True
        except Exception as e:
            log.warning("Preview playback failed: %s", e)
            return False

    # ── Path bookkeeping ──

    def _activate(self, path, device=None):
        if device is not None and device is not self._device:
            if self._device is not None:
                self._device.remove_state_listener(self._on_device_state)
            device.add_state_listener(self._on_device_state)
            self._device = device
        if path != self.active:
            self.active = path
            self.transport = TransportState(source=path, paused=False, updated_at=self.clock())

    async def _silence_preview(self):
        if self.preview is not None and not self.preview.paused:
            await self.preview.pause()

    async def _silence_device(self):
        if self.active != DEVICE or self._device is None or self._device.player is None:
            return
        try:
            await self._device.player.pause()
        except Exception as e:
            log.debug("Could not pause device before preview: %s", e)

    def _on_device_state(self, state):
        if self.active == PREVIEW:
            return
        self.active = DEVICE
        self.is_playing = not state.get("paused", True)
        self.transport = TransportState(
            position_ms=int(state.get("position") or 0),
            duration_ms=int(state.get("duration") or 0),
            paused=bool(state.get("paused", True)),
            source=DEVICE,
            updated_at=self.clock(),
        )

    def _on_preview_time(self, position_ms, duration_ms):
        if self.active != PREVIEW:
            return
        self.transport.position_ms = position_ms
        self.transport.duration_ms = duration_ms
        self.transport.updated_at = self.clock()

    def _on_preview_ended(self):
        if self.active == PREVIEW:
            self.is_playing = False
            self.transport.paused = True

    # ── Teardown ──

    async def teardown(self):
        """Stop and release the preview element; detach from the device."""
        if self.preview is not None:
            try:
                await self.preview.release()
            except Exception as e:
                log.debug("Preview release: %s", e)
            self.preview = None
        if self._device is not None:
            self._device.remove_state_listener(self._on_device_state)
            self._device = None
        self.active = None
        self.is_playing = False
