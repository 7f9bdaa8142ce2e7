"""
Spotify — now-playing resolution and playback control.

  oauth.py      — token issuer calls (refresh + authorization code)
  auth.py       — credential broker, one fresh token per operation
  api.py        — Web API reads and playback commands
  resolver.py   — currently playing → recently played → TrackSnapshot
  poller.py     — visibility-aware refresh of the displayed snapshot
  device.py     — SDK loader + Connect device state machine
  librespot.py  — go-librespot implementation of the device SDK
  preview.py    — 30-second preview clips via mpv
  playback.py   — toggle(): device path first, preview fallback
  service.py    — the beo-nowplaying HTTP/WebSocket service
"""
