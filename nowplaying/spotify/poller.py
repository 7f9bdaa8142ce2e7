# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Presentation poller — keeps the displayed now-playing snapshot fresh.

Resolves once on start, then every POLL_INTERVAL seconds while the viewing
surface is visible.  Going hidden cancels the interval outright (no
catch-up); coming back resolves immediately and restarts it.
"""

import asyncio
import logging

from nowplaying.lib.errors import ConfigurationError

log = logging.getLogger(__name__)

POLL_INTERVAL = 30  # seconds between resolutions while visible


class PresentationPoller:

    def __init__(self, resolver, interval=POLL_INTERVAL, on_update=None):
        self.resolver = resolver
        self.interval = interval
        self.on_update = on_update

        self.snapshot = None
        self.loading = True
        self.error = False
        self.visible = True
        self.stopped = False
        self._poll_task: asyncio.Task | None = None

    @property
    def polling(self):
        return self._poll_task is not None and not self._poll_task.done()

    @property
    def visible_track(self):
        """What the presentation should render: nothing on error or empty."""
        if self.error:
            return None
        return self.snapshot

    async def start(self):
        """Mount: resolve now, then poll while visible."""
        self.stopped = False
        await self.refresh()
        if self.visible:
            self._start_polling()

    async def stop(self):
        self.stopped = True
        await self._stop_polling()

    async def set_visible(self, visible: bool):
        """Visibility change from the hosting surface."""
        if visible == self.visible:
            return
        self.visible = visible
        if not visible:
            log.info("Surface hidden — polling paused")
            await self._stop_polling()
            return
        if self.stopped:
            return
        log.info("Surface visible — refreshing")
        await self.refresh()
        self._start_polling()

    async def refresh(self):
        """Run the resolver once and publish the outcome."""
        try:
            result = await self.resolver.resolve()
        except ConfigurationError as e:
            if not self.error:
                log.error("%s — now-playing disabled", e)
            self.error = True
            self.stopped = True
            self._cancel_poll_task()
        except Exception:
            # keep the previous snapshot to avoid flicker
            log.exception("Track resolution failed")
            self.error = True
        else:
            self.error = False
            self.snapshot = result.value if result.ok else None
            if not result.ok:
                log.debug("Nothing to display: %s", result.error)
        finally:
            self.loading = False

        if self.on_update:
            try:
                await self.on_update(self)
            except Exception:
                log.exception("Error in now-playing update callback")
        return self.snapshot

    # ── Interval ──

    def _start_polling(self):
        if self.stopped:
            return
        self._cancel_poll_task()
        self._poll_task = asyncio.create_task(self._poll_loop())

    def _cancel_poll_task(self):
        if self._poll_task and self._poll_task is not asyncio.current_task():
            self._poll_task.cancel()
        self._poll_task = None

    async def _stop_polling(self):
        task = self._poll_task
        self._cancel_poll_task()
        if task and task is not asyncio.current_task():
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _poll_loop(self):
        try:
            while self.visible and not self.stopped:
                await asyncio.sleep(self.interval)
                await self.refresh()
        except asyncio.CancelledError:
            return
