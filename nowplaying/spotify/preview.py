# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Preview fallback — plays a track's 30-second preview clip locally via mpv.

Used when no Spotify Connect device is live.  The playback controller owns a
single PreviewPlayer.  mpv is started idle on the first play() and kept
around; later clips are swapped in with `loadfile`.  mpv's own clock
(time-pos, duration, pause) is mirrored through on_time_update, and the clip
reaching EOF (or mpv going away) fires on_ended.
"""

import asyncio
import json
import logging
import os
import subprocess

log = logging.getLogger(__name__)

IPC_SOCKET = '/tmp/beo-nowplaying-preview.sock'
CONNECT_TIMEOUT = 5.0

# observe_property ids
_OBSERVED = {1: 'time-pos', 2: 'duration', 3: 'pause'}


class PreviewPlayer:
    """One mpv instance, driven over its JSON IPC socket."""

    def __init__(self, src=None, ipc_socket=IPC_SOCKET):
        self.src = src
        self.paused = True
        self.position_ms = 0
        self.duration_ms = 0
        self.on_time_update = None   # (position_ms, duration_ms)
        self.on_ended = None
        self._socket_path = ipc_socket
        self._proc: subprocess.Popen | None = None
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._events: asyncio.Task | None = None
        self._loaded = False   # mpv holds self.src; cleared at EOF (--idle unloads it)

    @property
    def alive(self):
        return self._proc is not None and self._proc.poll() is None and self._writer is not None

    # ── mpv process ──

    async def _spawn(self):
        if os.path.exists(self._socket_path):
            os.unlink(self._socket_path)
        self._proc = subprocess.Popen(
            ['mpv', '--no-video', '--no-terminal', '--idle=yes', '--keep-open=no',
             f'--input-ipc-server={self._socket_path}'],
            stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        await self._attach()
        for prop_id, name in _OBSERVED.items():
            await self._command('observe_property', prop_id, name)
        self._events = asyncio.create_task(self._pump_events())
        log.info("mpv started for previews (pid %d)", self._proc.pid)

    async def _attach(self):
        """Connect to the IPC socket once mpv has created it."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + CONNECT_TIMEOUT
        while loop.time() < deadline:
            if self._proc.poll() is not None:
                raise RuntimeError(f"mpv exited with {self._proc.returncode}")
            try:
                self._reader, self._writer = await asyncio.open_unix_connection(self._socket_path)
                return
            except (FileNotFoundError, ConnectionRefusedError):
                await asyncio.sleep(0.1)
        raise RuntimeError(f"mpv IPC socket {self._socket_path} never came up")

    async def _command(self, *args):
        if self._writer is None:
            return
        try:
            self._writer.write(json.dumps({'command': list(args)}).encode() + b'\n')
            await self._writer.drain()
        except (ConnectionError, OSError) as e:
            log.warning("mpv IPC write failed: %s", e)

    async def _detach(self):
        writer, self._reader, self._writer = self._writer, None, None
        if writer is not None:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def _pump_events(self):
        """Read mpv events until the socket closes."""
        try:
            async for line in self._reader:
                try:
                    self._on_message(json.loads(line))
                except json.JSONDecodeError:
                    log.debug("mpv sent non-JSON line: %r", line[:80])
        except asyncio.CancelledError:
            raise
        except (ConnectionError, OSError) as e:
            log.debug("mpv IPC closed: %s", e)
        self._proc = None
        self._loaded = False
        await self._detach()
        self._ended()

    def _on_message(self, msg):
        event = msg.get('event')
        if event == 'end-file':
            if msg.get('reason') == 'eof':
                self._loaded = False
                self._ended()
            return
        if event != 'property-change':
            return
        name, value = msg.get('name'), msg.get('data')
        if name == 'pause':
            if isinstance(value, bool):
                self.paused = value
            return
        if not isinstance(value, (int, float)):
            return
        if name == 'time-pos':
            self.position_ms = int(value * 1000)
        elif name == 'duration':
            self.duration_ms = int(value * 1000)
        if self.on_time_update:
            self.on_time_update(self.position_ms, self.duration_ms)

    def _ended(self):
        if self.paused:
            return
        self.paused = True
        log.info("Preview clip finished")
        if self.on_ended:
            self.on_ended()

    # ── Controls ──

    async def set_source(self, src):
        """Switch clips.  The new clip starts paused until play()."""
        if src == self.src:
            return
        self.src = src
        self.position_ms = self.duration_ms = 0
        self.paused = True
        self._loaded = False
        if self.alive:
            await self._command('set_property', 'pause', True)
            await self._command('loadfile', src, 'replace')
            self._loaded = True

    async def play(self):
        """Start or continue the clip.  A finished clip restarts from the top."""
        if not self.src:
            raise RuntimeError("No preview source")
        if not self.alive:
            await self.stop()
            await self._spawn()
        if not self._loaded:
            self.position_ms = 0
            await self._command('loadfile', self.src, 'replace')
            self._loaded = True
        await self._command('set_property', 'pause', False)
        self.paused = False

    async def pause(self):
        self.paused = True
        if self.alive:
            await self._command('set_property', 'pause', True)

    async def stop(self):
        """Terminate mpv and drop the IPC connection."""
        self.paused = True
        self._loaded = False
        task, self._events = self._events, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._detach()
        proc, self._proc = self._proc, None
        if proc is not None and proc.poll() is None:
            proc.terminate()
            try:
                await asyncio.get_running_loop().run_in_executor(None, proc.wait, 2)
            except subprocess.TimeoutExpired:
                proc.kill()

    async def release(self):
        """Teardown: stop mpv and forget the clip."""
        await self.stop()
        self.src = None
