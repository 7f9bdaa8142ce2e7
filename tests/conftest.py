"""Shared fakes for the now-playing tests."""

import asyncio
import json

import pytest

from nowplaying.lib.config import CredentialPair
from nowplaying.lib.errors import TokenExchangeError
from nowplaying.lib.result import Err, Ok
from nowplaying.spotify.auth import BearerToken
from nowplaying.spotify.device import DevicePlayer, PlaybackSdk, SdkLoader
from nowplaying.spotify.resolver import TrackSnapshot


# ── HTTP ──

class FakeResponse:
    """Stands in for an aiohttp response inside `async with session.get(...)`."""

    def __init__(self, status=200, payload=None, text=None):
        self.status = status
        self._payload = payload
        self._text = text

    async def json(self):
        return self._payload

    async def text(self):
        if self._text is not None:
            return self._text
        return json.dumps(self._payload) if self._payload is not None else ""

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """Routes requests by method + URL suffix to queued FakeResponses.

    The last queued response for a route repeats once the queue runs dry.
    Queue an exception instance to have the request raise it.
    """

    def __init__(self):
        self.calls = []
        self._routes = {}

    def add(self, method, path, *responses):
        self._routes.setdefault((method, path), []).extend(responses)
        return self

    def calls_to(self, method, path):
        return [c for c in self.calls
                if c[0] == method and c[1].split("?")[0].endswith(path)]

    def _request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        bare = url.split("?")[0]
        matches = [key for key in self._routes if key[0] == method and bare.endswith(key[1])]
        if not matches:
            raise AssertionError(f"unexpected request {method} {url}")
        queue = self._routes[max(matches, key=lambda k: len(k[1]))]
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        return response

    def get(self, url, **kwargs):
        return self._request("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self._request("POST", url, **kwargs)

    def put(self, url, **kwargs):
        return self._request("PUT", url, **kwargs)


# ── Tokens ──

class FakeBroker:
    """CredentialBroker double: hands out "tok" (or a queued Err) and counts exchanges."""

    def __init__(self, result=None):
        self.result = result or Ok(BearerToken("tok", 3600))
        self.exchanges = 0

    @property
    def is_configured(self):
        return self.result.ok

    async def exchange(self):
        self.exchanges += 1
        return self.result

    async def token_provider(self):
        result = await self.exchange()
        return result.value.value if result.ok else None


# ── Time ──

class FakeClock:

    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class RecordingSleep:
    """asyncio.sleep double that records the requested delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


# ── Device SDK ──

class FakePlayer(DevicePlayer):

    def __init__(self, sdk, name, token_provider, volume=0.5):
        super().__init__(name, token_provider, volume)
        self.sdk = sdk
        self.calls = []
        self.state = None
        self.fail_disconnect = False

    async def connect(self):
        self.calls.append("connect")
        if self.sdk.device_id:
            self._emit("ready", {"device_id": self.sdk.device_id})
        return self.sdk.connect_result

    async def disconnect(self):
        self.calls.append("disconnect")
        if self.fail_disconnect:
            raise RuntimeError("already gone")

    async def pause(self):
        self.calls.append("pause")

    async def resume(self):
        self.calls.append("resume")

    async def get_current_state(self):
        return self.state


class FakeSdk(PlaybackSdk):

    def __init__(self, device_id="dev-0123456789", connect_result=True, fail=False):
        self.device_id = device_id
        self.connect_result = connect_result
        self.fail = fail
        self.inject_count = 0
        self.players = []

    async def inject(self, on_ready):
        self.inject_count += 1
        await asyncio.sleep(0)
        if self.fail:
            raise ConnectionError("script blocked")
        on_ready()

    def create_player(self, name, token_provider, volume=0.5):
        player = FakePlayer(self, name, token_provider, volume)
        self.players.append(player)
        return player


class FakeDevice:
    """Minimal settled device lifecycle for controller tests."""

    def __init__(self, ready=True, device_id="dev-0123456789"):
        self.device_ready = ready
        self.device_id = device_id
        self.player = FakePlayer(FakeSdk(device_id=None), "test", None)
        self.state_listeners = []

    def add_state_listener(self, callback):
        self.state_listeners.append(callback)

    def remove_state_listener(self, callback):
        if callback in self.state_listeners:
            self.state_listeners.remove(callback)


# ── Preview ──

class FakePreview:

    instances = []

    def __init__(self, src=None):
        self.src = src
        self.paused = True
        self.calls = []
        self.on_ended = None
        self.on_time_update = None
        FakePreview.instances.append(self)

    async def set_source(self, src):
        self.calls.append(("set_source", src))
        self.src = src

    async def play(self):
        self.calls.append(("play",))
        self.paused = False

    async def pause(self):
        self.calls.append(("pause",))
        self.paused = True

    async def release(self):
        self.calls.append(("release",))
        self.paused = True
        self.src = None


# ── Fixtures ──

@pytest.fixture(autouse=True)
def fresh_sdk_loader():
    """Each test starts with no SDK loaded."""
    SdkLoader.reset_shared()
    FakePreview.instances = []
    yield
    SdkLoader.reset_shared()


@pytest.fixture
def credentials() -> CredentialPair:
    return CredentialPair(client_id="client-abcdef123", client_secret="s3cret",
                          refresh_token="refresh-xyz")


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def make_track(**overrides) -> TrackSnapshot:
    fields = dict(
        title="Teardrop",
        artist="Massive Attack",
        album="Mezzanine",
        artwork_url="https://i.scdn.co/image/abc",
        external_url="https://open.spotify.com/track/67Hna13dNDkZvBpTXRIaOJ",
        playback_uri="spotify:track:67Hna13dNDkZvBpTXRIaOJ",
        preview_url=None,
        is_playing=False,
    )
    fields.update(overrides)
    return TrackSnapshot(**fields)


def token_error(status=400, body='{"error": "invalid_grant"}'):
    return Err(TokenExchangeError(status, body))
