"""
Now Playing — shows what the listener is playing on Spotify and lets the
panel toggle playback of it.

Packages:
  lib/      — config, errors, result types, aiohttp service plumbing
  spotify/  — Web API client, track resolver, Connect device lifecycle,
              playback controller, preview fallback, the HTTP service
"""
