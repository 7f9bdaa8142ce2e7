"""Tests for the playback controller: device start protocol and preview fallback."""

import asyncio

import pytest

from conftest import FakeBroker, FakeDevice, FakePreview, FakeResponse, RecordingSleep, make_track
from nowplaying.lib.errors import PlaybackProtocolFailure
from nowplaying.spotify.api import SpotifyAPI
from nowplaying.spotify.playback import (
    DEVICE,
    PREVIEW,
    PlaybackController,
    TransportState,
    format_time,
)

PREVIEW_URL = "https://p.scdn.co/mp3-preview/abc"


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def controller(session, broker, sleep, clock) -> PlaybackController:
    return PlaybackController(SpotifyAPI(session), broker, preview_factory=FakePreview,
                              sleep=sleep, clock=clock)


class TestStartProtocol:
    """Transfer → settle → play, retried once."""

    def test_transfer_404_then_play_204(self, session, controller, sleep) -> None:
        """One cycle: a 404 transfer is fine, a 204 play starts."""
        session.add("PUT", "/me/player", FakeResponse(404, text="no active device"))
        session.add("PUT", "/me/player/play", FakeResponse(204))
        device = FakeDevice()

        acted = asyncio.run(controller.toggle(make_track(), device))

        assert acted is True
        assert controller.is_playing is True
        assert controller.active == DEVICE
        assert sleep.delays == [1.2]
        assert len(session.calls_to("PUT", "/me/player")) == 1
        transfer = session.calls_to("PUT", "/me/player")[0][2]["json"]
        assert transfer == {"device_ids": ["dev-0123456789"], "play": False}
        play = session.calls_to("PUT", "/me/player/play")[0][2]["json"]
        assert play == {"uris": ["spotify:track:67Hna13dNDkZvBpTXRIaOJ"]}

    def test_retry_uses_longer_settle(self, session, controller, sleep) -> None:
        session.add("PUT", "/me/player", FakeResponse(204))
        session.add("PUT", "/me/player/play",
                    FakeResponse(404, text='{"error": {"reason": "NO_ACTIVE_DEVICE"}}'),
                    FakeResponse(204))

        result = asyncio.run(controller.start_protocol("dev-0123456789", "spotify:track:x"))

        assert result.ok and result.value == 2
        assert sleep.delays == [1.2, 2.0]
        assert len(session.calls_to("PUT", "/me/player")) == 2

    def test_one_token_per_protocol(self, session, controller, broker) -> None:
        session.add("PUT", "/me/player", FakeResponse(204))
        session.add("PUT", "/me/player/play", FakeResponse(502, text="x"), FakeResponse(204))
        asyncio.run(controller.start_protocol("dev-0123456789", "spotify:track:x"))
        assert broker.exchanges == 1

    def test_two_failures_give_protocol_failure(self, session, controller, sleep) -> None:
        session.add("PUT", "/me/player", FakeResponse(204))
        session.add("PUT", "/me/player/play", FakeResponse(502, text="bad gateway"))

        result = asyncio.run(controller.start_protocol("dev-0123456789", "spotify:track:x"))

        assert not result.ok
        assert result.is_kind(PlaybackProtocolFailure)
        assert sleep.delays == [1.2, 2.0]
        assert len(session.calls_to("PUT", "/me/player/play")) == 2

    def test_failure_without_preview_changes_nothing(self, session, controller) -> None:
        session.add("PUT", "/me/player", FakeResponse(204))
        session.add("PUT", "/me/player/play", FakeResponse(502, text="bad gateway"))

        acted = asyncio.run(controller.toggle(make_track(), FakeDevice()))

        assert acted is False
        assert controller.is_playing is False
        assert controller.active is None

    def test_failure_falls_back_to_preview(self, session, controller) -> None:
        session.add("PUT", "/me/player", FakeResponse(204))
        session.add("PUT", "/me/player/play", FakeResponse(502, text="bad gateway"))

        acted = asyncio.run(controller.toggle(make_track(preview_url=PREVIEW_URL), FakeDevice()))

        assert acted is True
        assert controller.active == PREVIEW
        assert FakePreview.instances[0].calls == [("set_source", PREVIEW_URL), ("play",)]


class TestDeviceToggle:
    """Pause / resume on a live device."""

    def test_pause_when_playing(self, session, controller) -> None:
        device = FakeDevice()
        controller.is_playing = True

        acted = asyncio.run(controller.toggle(make_track(), device))

        assert acted is True
        assert controller.is_playing is False
        assert device.player.calls == ["pause"]
        assert session.calls == []

    def test_resume_same_paused_track(self, session, controller, broker) -> None:
        """Paused on the same URI → resume, no transfer, no token."""
        device = FakeDevice()
        track = make_track()
        device.player.state = {"track_uri": track.playback_uri, "paused": True,
                               "position": 30000, "duration": 200000}

        acted = asyncio.run(controller.toggle(track, device))

        assert acted is True
        assert controller.is_playing is True
        assert device.player.calls == ["resume"]
        assert broker.exchanges == 0
        assert session.calls == []

    def test_different_track_runs_protocol(self, session, controller) -> None:
        device = FakeDevice()
        device.player.state = {"track_uri": "spotify:track:other", "paused": True,
                               "position": 0, "duration": 1000}
        session.add("PUT", "/me/player", FakeResponse(204))
        session.add("PUT", "/me/player/play", FakeResponse(204))

        assert asyncio.run(controller.toggle(make_track(), device)) is True
        assert device.player.calls == []
        assert len(session.calls_to("PUT", "/me/player/play")) == 1

    def test_unsettled_device_is_skipped(self, session, controller) -> None:
        device = FakeDevice(ready=False)
        assert controller.can_toggle(make_track(), device) is False
        assert asyncio.run(controller.toggle(make_track(), device)) is False
        assert session.calls == []

    def test_device_state_drives_transport(self, session, controller, clock) -> None:
        session.add("PUT", "/me/player", FakeResponse(204))
        session.add("PUT", "/me/player/play", FakeResponse(204))
        device = FakeDevice()
        asyncio.run(controller.toggle(make_track(), device))

        device.state_listeners[0]({"track_uri": "x", "paused": False,
                                   "position": 10000, "duration": 60000})
        clock.advance(5)
        transport = controller.transport.to_dict(clock())

        assert transport["source"] == DEVICE
        assert transport["position_ms"] == 15000
        assert transport["position"] == "0:15"
        assert controller.is_playing_locally() is True


class TestPreviewToggle:
    """Preview path when no device is usable."""

    def test_play_then_pause(self, controller) -> None:
        track = make_track(preview_url=PREVIEW_URL)
        assert controller.can_toggle(track) is True

        asyncio.run(controller.toggle(track))
        assert controller.is_playing is True
        assert controller.is_playing_locally() is True

        asyncio.run(controller.toggle(track))
        assert controller.is_playing is False
        assert FakePreview.instances[0].calls[-1] == ("pause",)
        assert len(FakePreview.instances) == 1

    def test_no_path_is_disabled(self, controller) -> None:
        track = make_track()
        assert controller.can_toggle(track) is False
        assert asyncio.run(controller.toggle(track)) is False
        assert FakePreview.instances == []

    def test_nothing_to_toggle_without_track(self, controller) -> None:
        assert controller.can_toggle(None) is False
        assert asyncio.run(controller.toggle(None)) is False

    def test_preview_end_clears_playing(self, controller) -> None:
        asyncio.run(controller.toggle(make_track(preview_url=PREVIEW_URL)))
        preview = FakePreview.instances[0]
        preview.paused = True
        preview.on_ended()
        assert controller.is_playing is False

    def test_device_start_silences_preview(self, session, controller) -> None:
        """Only one path plays: starting on the device pauses the preview."""
        track = make_track(preview_url=PREVIEW_URL)
        asyncio.run(controller.toggle(track))
        asyncio.run(controller.toggle(track))  # pause preview

        session.add("PUT", "/me/player", FakeResponse(204))
        session.add("PUT", "/me/player/play", FakeResponse(204))
        asyncio.run(controller.toggle(track, FakeDevice()))

        assert controller.active == DEVICE
        assert FakePreview.instances[0].paused is True

    def test_sync_track_ignored_while_preview_plays(self, controller) -> None:
        track = make_track(preview_url=PREVIEW_URL)
        asyncio.run(controller.toggle(track))
        controller.sync_track(make_track(is_playing=False))
        assert controller.is_playing is True

    def test_teardown_releases_preview(self, controller) -> None:
        asyncio.run(controller.toggle(make_track(preview_url=PREVIEW_URL)))
        preview = FakePreview.instances[0]
        asyncio.run(controller.teardown())

        assert preview.calls[-1] == ("release",)
        assert controller.preview is None
        assert controller.is_playing is False


class TestTransport:
    """Tests for time formatting and progress extrapolation."""

    @pytest.mark.parametrize("ms, expected", [
        (None, "0:00"),
        (0, "0:00"),
        (float("nan"), "0:00"),
        (61000, "1:01"),
        (59999, "0:59"),
        (3599000, "59:59"),
    ])
    def test_format_time(self, ms, expected) -> None:
        assert format_time(ms) == expected

    def test_paused_position_does_not_move(self) -> None:
        state = TransportState(position_ms=5000, duration_ms=30000, paused=True, updated_at=0)
        assert state.estimated_position_ms(100) == 5000

    def test_position_clamped_to_duration(self) -> None:
        state = TransportState(position_ms=25000, duration_ms=30000, paused=False, updated_at=0)
        assert state.estimated_position_ms(60) == 30000
        assert state.to_dict(60)["progress"] == 100.0
