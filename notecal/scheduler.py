from __future__ import annotations

import asyncio
import logging
from typing import Optional

from notecal.config_manager import ConfigManager
from notecal.timeline_service import TimelineService

logger = logging.getLogger(__name__)


class FeedRefreshScheduler:
    """Keeps the event cache warm by re-fetching visible feeds on an interval."""

    def __init__(self, timeline_service: TimelineService, config_manager: ConfigManager) -> None:
        self.timeline_service = timeline_service
        self.config_manager = config_manager
        self._task: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()
        self._manual_trigger_event = asyncio.Event()
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._manual_trigger_event.clear()
        self._task = asyncio.get_running_loop().create_task(self._loop(), name="notecal-feed-refresh")

    async def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout=5)
            except asyncio.TimeoutError:
                self._task.cancel()
            self._task = None

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    async def _run(self, trigger: str) -> None:
        try:
            count = await self.timeline_service.refresh(clear=trigger == "manual")
            logger.info("Feed refresh (%s) cached %d events", trigger, count)
        except Exception:
            logger.exception("Feed refresh (%s) failed", trigger)
        self.runs += 1

    async def _loop(self) -> None:
        # Warm the cache at startup so the first timeline request is served from memory.
        await self._run("startup")

        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(30, int(config.refresh.interval_seconds))
            try:
                await asyncio.wait_for(self._manual_trigger_event.wait(), timeout=interval_seconds)
                manual = True
            except asyncio.TimeoutError:
                manual = False
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            await self._run("manual" if manual else "scheduled")
