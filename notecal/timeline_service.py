from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Iterable, Sequence

from notecal.config_manager import ConfigManager
from notecal.event_cache import EventCache
from notecal.feed_client import normalize_feed_url
from notecal.models import (
    AppConfig,
    FeedConfig,
    LocalEntry,
    RemoteEvent,
    parse_filter_terms,
    reconciliation_window,
)
from notecal.reconciler import Reconciler, TimelineResult

logger = logging.getLogger(__name__)


def _feed_urls(feeds: Iterable[FeedConfig | str]) -> list[str]:
    urls: list[str] = []
    seen: set[str] = set()
    for feed in feeds:
        raw = feed.url if isinstance(feed, FeedConfig) else feed
        url = normalize_feed_url(raw)
        if not url or url in seen:
            continue
        seen.add(url)
        urls.append(url)
    return urls


class TimelineService:
    def __init__(self, config_manager: ConfigManager, cache: EventCache) -> None:
        self.config_manager = config_manager
        self.cache = cache

    def window(self, config: AppConfig, anchor: datetime | None = None) -> tuple[datetime, datetime]:
        return reconciliation_window(
            anchor or datetime.now(timezone.utc),
            config.timeline.days_before,
            config.timeline.days_after,
        )

    async def fetch_remote_events(
        self,
        feeds: Sequence[FeedConfig | str],
        range_start: datetime | None,
        range_end: datetime | None,
        include_cancelled: bool = False,
        force_refresh: bool = False,
    ) -> list[RemoteEvent]:
        urls = _feed_urls(feeds)
        if not urls:
            return []
        results = await asyncio.gather(
            *(
                self.cache.fetch(url, range_start, range_end, include_cancelled, force_refresh)
                for url in urls
            ),
            return_exceptions=True,
        )
        visible = set(urls)
        events: list[RemoteEvent] = []
        for url, result in zip(urls, results):
            if isinstance(result, BaseException):
                logger.error("Feed %s contributed no events: %s: %s", url, type(result).__name__, result)
                continue
            events.extend(event for event in result if not event.source_url or event.source_url in visible)
        return events

    async def build_timeline(
        self,
        local_entries: Sequence[LocalEntry],
        *,
        anchor: datetime | None = None,
        range_start: datetime | None = None,
        range_end: datetime | None = None,
        extra_filter_terms: Iterable[str] = (),
    ) -> TimelineResult:
        config = self.config_manager.load()
        default_start, default_end = self.window(config, anchor)
        range_start = range_start or default_start
        range_end = range_end or default_end
        remote_events = await self.fetch_remote_events(
            config.visible_feeds(),
            range_start,
            range_end,
            include_cancelled=config.timeline.include_cancelled,
        )
        filter_terms = list(config.timeline.filter_terms) + parse_filter_terms(list(extra_filter_terms))
        reconciler = Reconciler.from_config(config)
        result = await reconciler.reconcile_async(local_entries, remote_events, filter_terms)
        logger.info(
            "Timeline built: %d local, %d remote, %d entries",
            len(local_entries),
            len(remote_events),
            len(result.entries),
        )
        return result

    async def refresh(self, anchor: datetime | None = None, clear: bool = True) -> int:
        """Fetch every visible feed again, optionally dropping the whole cache first."""
        config = self.config_manager.load()
        if clear:
            self.cache.clear_cache()
        range_start, range_end = self.window(config, anchor)
        events = await self.fetch_remote_events(
            config.visible_feeds(),
            range_start,
            range_end,
            include_cancelled=config.timeline.include_cancelled,
            force_refresh=True,
        )
        return len(events)
