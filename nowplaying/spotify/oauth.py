# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Token issuer calls for Spotify OAuth (client-secret flow).

Both grants authenticate the app with HTTP Basic client_id:client_secret:

    refresh_access_token(session, creds)          — grant_type=refresh_token
    exchange_code(session, code, creds, redirect) — grant_type=authorization_code

The refresh call is what the broker runs on every token request; the code
exchange only runs once, from the /callback setup route, to obtain the
refresh token in the first place.

Usage:
    from nowplaying.spotify.oauth import build_auth_url, exchange_code

    url = build_auth_url(client_id, redirect_uri, scopes)
    # ... user completes auth flow ...
    tokens = await exchange_code(session, code, creds, redirect_uri)
    tokens = await refresh_access_token(session, creds)
"""

import asyncio
import urllib.parse

import aiohttp

from nowplaying.lib.errors import TokenExchangeError

TOKEN_URL = "https://accounts.spotify.com/api/token"
AUTHORIZE_URL = "https://accounts.spotify.com/authorize"
DEFAULT_SCOPES = ('user-read-currently-playing user-read-recently-played '
                  'user-read-playback-state user-modify-playback-state streaming')
TIMEOUT = aiohttp.ClientTimeout(total=10)


def build_auth_url(client_id, redirect_uri, scopes=DEFAULT_SCOPES, state=None):
    """Build the Spotify authorization URL for the code flow."""
    params = {
        "client_id": client_id,
        "response_type": "code",
        "redirect_uri": redirect_uri,
        "scope": scopes,
    }
    if state:
        params["state"] = state
    return f"{AUTHORIZE_URL}?{urllib.parse.urlencode(params)}"


async def _post_token(session: aiohttp.ClientSession, creds, form: dict) -> dict:
    """POST a form to the token endpoint, return the JSON body.

    Raises TokenExchangeError on any non-2xx answer or transport failure,
    carrying the issuer's body for diagnostics.
    """
    try:
        async with session.post(
            TOKEN_URL,
            data=form,
            auth=aiohttp.BasicAuth(creds.client_id, creds.client_secret),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=TIMEOUT,
        ) as resp:
            if resp.status < 200 or resp.status >= 300:
                body = await resp.text()
                raise TokenExchangeError(resp.status, body)
            return await resp.json()
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise TokenExchangeError(None, str(e) or type(e).__name__) from e


async def refresh_access_token(session, creds) -> dict:
    """Exchange the refresh token for a fresh access token.

    Returns dict with 'access_token', 'expires_in', etc.
    """
    return await _post_token(session, creds, {
        "grant_type": "refresh_token",
        "refresh_token": creds.refresh_token,
    })


async def exchange_code(session, code, creds, redirect_uri) -> dict:
    """Exchange an authorization code for access + refresh tokens."""
    return await _post_token(session, creds, {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri,
    })
