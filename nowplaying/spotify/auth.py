# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Spotify credential broker — the ONE place that mints bearer tokens.

Unlike a long-running token cache, the broker performs a fresh refresh-token
exchange on every call.  Tokens are handed out and forgotten; callers ask
again for the next operation instead of holding on to a token that may have
expired in the meantime.
"""

import logging
from dataclasses import dataclass

from nowplaying.lib.config import CredentialPair
from nowplaying.lib.errors import ConfigurationError, TokenExchangeError
from nowplaying.lib.result import Err, Ok

from .oauth import refresh_access_token

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class BearerToken:
    value: str
    expires_in: int | None = None

    def __str__(self):
        return self.value

    def __repr__(self):
        return f"BearerToken(expires_in={self.expires_in})"


class CredentialBroker:
    """Turns the stored refresh credential into short-lived bearer tokens."""

    def __init__(self, credentials: CredentialPair, session):
        self.credentials = credentials
        self.session = session

    @property
    def is_configured(self):
        return not self.credentials.missing()

    async def exchange(self):
        """Perform one token exchange.

        Returns Ok(BearerToken), Err(ConfigurationError) when a credential is
        missing (no network call made), or Err(TokenExchangeError).  Never
        retries — retry policy belongs to the caller.
        """
        missing = self.credentials.missing()
        if missing:
            return Err(ConfigurationError(missing))

        try:
            data = await refresh_access_token(self.session, self.credentials)
        except TokenExchangeError as e:
            log.warning("Token exchange failed (HTTP %s)", e.status)
            return Err(e)

        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            return Err(TokenExchangeError(200, "response carried no access_token"))

        log.debug("Access token issued (expires in %ss)", data.get("expires_in"))
        return Ok(BearerToken(token, data.get("expires_in")))

    async def token_provider(self):
        """Fresh token string for the device SDK, or None if none could be minted."""
        result = await self.exchange()
        if result.ok:
            return result.value.value
        log.warning("Device token request failed: %s", result.error)
        return None
