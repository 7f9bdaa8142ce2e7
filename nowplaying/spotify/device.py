# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Device lifecycle — loads the playback SDK once and keeps a Spotify Connect
device session registered for this service.

State machine:

    UNLOADED → SDK_LOADING → SDK_READY → CONNECTING → LIVE ⇄ NOT_READY
                                                       └──────┴→ DISCONNECTED

SDK contract (subclass PlaybackSdk / DevicePlayer):

    class MySdk(PlaybackSdk):
        async def inject(self, on_ready): ...      # load once, call on_ready()
        def create_player(self, name, token_provider, volume): ...

    class MyPlayer(DevicePlayer):
        async def connect(self) -> bool: ...
        async def disconnect(self): ...
        async def pause(self): ...
        async def resume(self): ...
        async def get_current_state(self) -> dict | None: ...

Players emit "ready" {device_id}, "not_ready" {device_id} and
"player_state_changed" {position, duration, paused, track_uri} through
_emit().

Spotify's device registry lags the SDK's local "ready" callback, so the
session only counts as usable (device_ready) once LIVE has held for a settle
window.
"""

import asyncio
import enum
import logging
import time

from nowplaying.lib.errors import DeviceUnavailable

log = logging.getLogger(__name__)

SETTLE_WINDOW = 1.5   # seconds LIVE must hold before playback is attempted
SDK_LOAD_TIMEOUT = 15


class DeviceState(enum.Enum):
    UNLOADED = "unloaded"
    SDK_LOADING = "sdk_loading"
    SDK_READY = "sdk_ready"
    CONNECTING = "connecting"
    LIVE = "live"
    NOT_READY = "not_ready"
    DISCONNECTED = "disconnected"


_TRANSITIONS = {
    DeviceState.UNLOADED: {DeviceState.SDK_LOADING, DeviceState.DISCONNECTED},
    DeviceState.SDK_LOADING: {DeviceState.SDK_READY, DeviceState.DISCONNECTED},
    DeviceState.SDK_READY: {DeviceState.CONNECTING, DeviceState.DISCONNECTED},
    DeviceState.CONNECTING: {DeviceState.LIVE, DeviceState.NOT_READY, DeviceState.DISCONNECTED},
    DeviceState.LIVE: {DeviceState.NOT_READY, DeviceState.DISCONNECTED},
    DeviceState.NOT_READY: {DeviceState.LIVE, DeviceState.DISCONNECTED},
    DeviceState.DISCONNECTED: set(),
}


# ── SDK surface ──

class DevicePlayer:
    """One device session.  Subclasses implement the transport."""

    def __init__(self, name, token_provider, volume=0.5):
        self.name = name
        self.token_provider = token_provider
        self.volume = volume
        self._listeners: dict[str, list] = {}

    def add_listener(self, event, callback):
        self._listeners.setdefault(event, []).append(callback)

    def remove_listener(self, event, callback):
        callbacks = self._listeners.get(event, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def _emit(self, event, payload):
        for callback in list(self._listeners.get(event, [])):
            try:
                callback(payload)
            except Exception:
                log.exception("Error in %s listener", event)

    async def connect(self) -> bool:
        raise NotImplementedError

    async def disconnect(self):
        raise NotImplementedError

    async def pause(self):
        raise NotImplementedError

    async def resume(self):
        raise NotImplementedError

    async def get_current_state(self) -> dict | None:
        """Return {"track_uri", "paused", "position", "duration"} or None."""
        raise NotImplementedError


class PlaybackSdk:
    """Vendor SDK entry point."""

    async def inject(self, on_ready):
        """Load the SDK.  Must call on_ready() once it is usable."""
        raise NotImplementedError

    def create_player(self, name, token_provider, volume=0.5) -> DevicePlayer:
        raise NotImplementedError


class SdkLoader:
    """Process-wide, init-once SDK loader.

    However many device lifecycles mount, the SDK is injected exactly once;
    concurrent mounts wait on the same load.
    """

    _shared = None

    def __init__(self, timeout=SDK_LOAD_TIMEOUT):
        self.timeout = timeout
        self.sdk: PlaybackSdk | None = None
        self.inject_count = 0
        self._lock = asyncio.Lock()
        self._ready: asyncio.Event | None = None

    @classmethod
    def shared(cls):
        if cls._shared is None:
            cls._shared = cls()
        return cls._shared

    @classmethod
    def reset_shared(cls):
        if cls._shared is not None:
            cls._shared.teardown()
        cls._shared = None

    @property
    def loaded(self):
        return self._ready is not None and self._ready.is_set()

    async def ensure_loaded(self, sdk: PlaybackSdk) -> PlaybackSdk:
        """Inject *sdk* unless an SDK is already loaded; wait for its ready callback.

        Raises DeviceUnavailable if loading fails or times out.
        """
        async with self._lock:
            if self._ready is None:
                self._ready = asyncio.Event()
                self.sdk = sdk
                self.inject_count += 1
                log.info("Injecting playback SDK (%s)", type(sdk).__name__)
                try:
                    await self.sdk.inject(self._ready.set)
                except Exception as e:
                    self._ready = None
                    self.sdk = None
                    raise DeviceUnavailable(f"SDK load failed: {e}") from e
            ready = self._ready
            loaded = self.sdk

        try:
            await asyncio.wait_for(ready.wait(), self.timeout)
        except asyncio.TimeoutError:
            raise DeviceUnavailable("SDK ready callback never fired") from None
        return loaded

    def teardown(self):
        """Forget the loaded SDK so the next mount injects again."""
        self.sdk = None
        self._ready = None


# ── Lifecycle ──

class DeviceLifecycle:
    """Owns one device session from SDK load to disconnect."""

    def __init__(self, sdk: PlaybackSdk, token_provider, *, name="BeoSound Now Playing",
                 volume=0.5, settle_window=SETTLE_WINDOW, loader: SdkLoader | None = None,
                 clock=time.monotonic):
        self.sdk = sdk
        self.token_provider = token_provider
        self.name = name
        self.volume = volume
        self.settle_window = settle_window
        self.loader = loader or SdkLoader.shared()
        self.clock = clock

        self.state = DeviceState.UNLOADED
        self.player: DevicePlayer | None = None
        self.device_id: str | None = None
        self._live_since: float | None = None
        self._state_listeners = []
        self._change_listeners = []

    # ── Derived signals ──

    @property
    def device_ready(self) -> bool:
        """True once LIVE has held for the settle window."""
        if self.state != DeviceState.LIVE or self._live_since is None or not self.device_id:
            return False
        return self.clock() - self._live_since >= self.settle_window

    @property
    def settles_in(self) -> float | None:
        """Seconds until device_ready flips true, or None if not LIVE."""
        if self.state != DeviceState.LIVE or self._live_since is None:
            return None
        return max(0.0, self.settle_window - (self.clock() - self._live_since))

    def snapshot(self) -> dict:
        return {
            "state": self.state.value,
            "device_id": self.device_id,
            "ready": self.device_ready,
        }

    # ── Listeners ──

    def add_state_listener(self, callback):
        """Subscribe to player_state_changed payloads from the live device."""
        self._state_listeners.append(callback)

    def remove_state_listener(self, callback):
        if callback in self._state_listeners:
            self._state_listeners.remove(callback)

    def add_change_listener(self, callback):
        """Subscribe to lifecycle transitions: callback(old_state, new_state)."""
        self._change_listeners.append(callback)

    # ── Transitions ──

    def _transition(self, new_state) -> bool:
        old = self.state
        if new_state not in _TRANSITIONS[old]:
            log.warning("Ignoring device transition %s -> %s", old.value, new_state.value)
            return False
        self.state = new_state
        log.info("Device %s -> %s", old.value, new_state.value)
        for callback in list(self._change_listeners):
            try:
                callback(old, new_state)
            except Exception:
                log.exception("Error in device change listener")
        return True

    async def mount(self) -> bool:
        """Load the SDK, construct the device and connect it.

        Returns True once connect() was accepted; LIVE follows when the SDK
        reports "ready".  Failures leave the lifecycle not ready and are
        logged, never raised.
        """
        if self.state != DeviceState.UNLOADED:
            return self.state in (DeviceState.CONNECTING, DeviceState.LIVE, DeviceState.NOT_READY)

        self._transition(DeviceState.SDK_LOADING)
        try:
            sdk = await self.loader.ensure_loaded(self.sdk)
        except DeviceUnavailable as e:
            log.warning("Playback device unavailable: %s", e)
            return False
        if self.state != DeviceState.SDK_LOADING:
            return False  # torn down while loading
        self._transition(DeviceState.SDK_READY)

        try:
            player = sdk.create_player(self.name, self.token_provider, self.volume)
        except Exception as e:
            log.warning("Playback device unavailable: could not create player: %s", e)
            return False
        player.add_listener("ready", self._on_ready)
        player.add_listener("not_ready", self._on_not_ready)
        player.add_listener("player_state_changed", self._on_player_state)
        self.player = player
        self._transition(DeviceState.CONNECTING)

        try:
            connected = await player.connect()
        except Exception as e:
            log.warning("Device connect failed: %s", e)
            connected = False
        if not connected:
            log.warning("Failed to connect to Spotify player")
        return bool(connected)

    def _on_ready(self, payload):
        device_id = (payload or {}).get("device_id")
        if not device_id:
            log.warning("Device ready event without device_id")
            return
        if self.state == DeviceState.LIVE and device_id == self.device_id:
            return
        if self._transition(DeviceState.LIVE):
            self.device_id = device_id
            self._live_since = self.clock()
            log.info("Device live (id: %s...), settling for %.1fs",
                     device_id[:8], self.settle_window)

    def _on_not_ready(self, payload):
        if self._transition(DeviceState.NOT_READY):
            self.device_id = None
            self._live_since = None

    def _on_player_state(self, payload):
        if not payload:
            return
        for callback in list(self._state_listeners):
            try:
                callback(payload)
            except Exception:
                log.exception("Error in player state listener")

    async def wait_until_ready(self, timeout=None, poll=0.1) -> bool:
        """Wait for device_ready.  Returns False on timeout or disconnect."""
        deadline = None if timeout is None else self.clock() + timeout
        while not self.device_ready:
            if self.state == DeviceState.DISCONNECTED:
                return False
            if deadline is not None and self.clock() >= deadline:
                return False
            await asyncio.sleep(poll)
        return True

    async def teardown(self):
        """Disconnect the session.  Best effort: disconnect errors are swallowed."""
        player = self.player
        self.player = None
        if player is not None:
            player.remove_listener("ready", self._on_ready)
            player.remove_listener("not_ready", self._on_not_ready)
            player.remove_listener("player_state_changed", self._on_player_state)
            try:
                await player.disconnect()
            except Exception as e:
                log.debug("Ignoring disconnect error: %s", e)
        self._transition(DeviceState.DISCONNECTED)
        self.device_id = None
        self._live_since = None
