# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Shared configuration loader for the now-playing service.

Loads a single JSON config file per device.  Search order:
  1. /etc/beo-nowplaying/config.json   (deployed)
  2. config.json                        (CWD — handy for local dev)
  3. ../../config/default.json          (repo fallback)

Secrets (SPOTIFY_CLIENT_ID, SPOTIFY_CLIENT_SECRET, SPOTIFY_REFRESH_TOKEN)
stay in environment variables, loaded by systemd EnvironmentFile.

Usage:
    from nowplaying.lib.config import cfg, load_credentials

    port      = cfg("service", "port", default=8780)
    interval  = cfg("poller", "interval", default=30)
    creds     = load_credentials()
"""

import json
import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_config: dict | None = None

_SEARCH_PATHS = [
    "/etc/beo-nowplaying/config.json",
    "config.json",
    os.path.join(os.path.dirname(__file__), "..", "..", "config", "default.json"),
]

CREDENTIAL_ENV = {
    "client_id": "SPOTIFY_CLIENT_ID",
    "client_secret": "SPOTIFY_CLIENT_SECRET",
    "refresh_token": "SPOTIFY_REFRESH_TOKEN",
}


@dataclass(frozen=True)
class CredentialPair:
    """The long-lived Spotify app credentials plus the listener's refresh token."""

    client_id: str = ""
    client_secret: str = ""
    refresh_token: str = ""

    def missing(self) -> list[str]:
        return [name for name in CREDENTIAL_ENV if not getattr(self, name)]

    def __repr__(self):
        # never echo secrets into logs or tracebacks
        return f"CredentialPair(client_id={self.client_id[:8]!r}..., missing={self.missing()})"


def _clean(value: str | None) -> str:
    """Trim whitespace and one pair of surrounding quotes (env files often quote values)."""
    if not value:
        return ""
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        value = value[1:-1]
    return value.strip()


def load_credentials(environ=None) -> CredentialPair:
    """Build the credential pair from the environment.  Missing values become ''."""
    environ = os.environ if environ is None else environ
    pair = CredentialPair(**{
        field: _clean(environ.get(var)) for field, var in CREDENTIAL_ENV.items()
    })
    missing = pair.missing()
    if missing:
        logger.warning("Spotify credentials incomplete (missing: %s)", ", ".join(missing))
    return pair


def _validate(config: dict, path: str) -> None:
    """Warn about missing or suspicious config values."""
    poller = config.get("poller") or {}
    interval = poller.get("interval", 30)
    if not isinstance(interval, (int, float)) or interval <= 0:
        logger.warning("Config %s: poller.interval must be a positive number (got %r)", path, interval)
    device = config.get("device") or {}
    settle = device.get("settle_window", 1.5)
    if not isinstance(settle, (int, float)) or settle < 0:
        logger.warning("Config %s: device.settle_window must be >= 0 (got %r)", path, settle)
    if device.get("enabled", True) and not device.get("librespot_url"):
        logger.info("Config %s: no device.librespot_url — using default", path)
    playback = config.get("playback") or {}
    for key in ("first_settle", "retry_settle"):
        val = playback.get(key)
        if val is not None and (not isinstance(val, (int, float)) or val < 0):
            logger.warning("Config %s: playback.%s must be >= 0 (got %r)", path, key, val)


def load_config() -> dict:
    """Load config from the first JSON file found. Cached after first call."""
    global _config
    if _config is not None:
        return _config

    for path in _SEARCH_PATHS:
        try:
            with open(path) as f:
                _config = json.load(f)
                logger.info("Config loaded from %s", path)
                _validate(_config, path)
                return _config
        except FileNotFoundError:
            continue
        except json.JSONDecodeError as e:
            logger.error("Invalid JSON in %s: %s", path, e)
            continue

    logger.warning("No config.json found — using empty config")
    _config = {}
    return _config


def cfg(section: str, key: str | None = None, *, default=None):
    """Read a config value.

    cfg("service")                     → config["service"]
    cfg("poller", "interval")          → config["poller"]["interval"]
    cfg("device", "name", default="x") → config["device"]["name"] or "x"
    """
    config = load_config()
    val = config.get(section)
    if key is None:
        return val if val is not None else default
    if isinstance(val, dict):
        return val.get(key, default)
    return default


def reload_config():
    """Force re-read from disk (for testing or hot-reload)."""
    global _config
    _config = None
    return load_config()
