# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Failure kinds shared by the now-playing components.

Only ConfigurationError is ever raised across a component boundary; the
others travel inside an Err (see result.py) and are absorbed by whoever has
a fallback.
"""


class NowPlayingError(Exception):
    """Base class for all now-playing failure kinds."""


class ConfigurationError(NowPlayingError):
    """Spotify credentials are missing.  Fatal for anything needing a token."""

    def __init__(self, missing):
        self.missing = list(missing)
        super().__init__(f"Missing Spotify credentials: {', '.join(self.missing)}")


class TokenExchangeError(NowPlayingError):
    """The token issuer rejected the refresh (or could not be reached)."""

    def __init__(self, status: int | None, body: str = ""):
        self.status = status
        self.body = body
        super().__init__(f"Token exchange failed (HTTP {status}): {body[:200]}")


class ResolutionEmpty(NowPlayingError):
    """Neither a current nor a recent track exists.  Not an error for the UI."""

    def __init__(self, message="No track data available"):
        super().__init__(message)


class DeviceUnavailable(NowPlayingError):
    """The playback device SDK is absent, failed to load, or has not settled."""


class PlaybackProtocolFailure(NowPlayingError):
    """Transfer/play did not succeed within the bounded retry."""
