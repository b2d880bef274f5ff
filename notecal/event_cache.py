from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable

from notecal.feed_client import FeedResponse, fetch_feed, normalize_feed_url
from notecal.feed_parser import parse_feed
from notecal.models import CacheConfig, CacheEntry, RemoteEvent, date_to_datetime

logger = logging.getLogger(__name__)

Transport = Callable[[str, float], Awaitable[FeedResponse]]
Parser = Callable[[str, "datetime | None", "datetime | None", bool], list[RemoteEvent]]
Clock = Callable[[], float]

DEFAULT_TTL_SECONDS = 5 * 60
DEFAULT_MAX_ENTRIES = 200
DEFAULT_FETCH_TIMEOUT_SECONDS = 15.0


def cache_key(url: str, range_start: datetime | None, range_end: datetime | None, include_cancelled: bool) -> str:
    return f"{url}::{_utc_day(range_start)}::{_utc_day(range_end)}::{str(bool(include_cancelled)).lower()}"


def _utc_day(value: datetime | None) -> str:
    if value is None:
        return "none"
    return date_to_datetime(value).astimezone(timezone.utc).date().isoformat()


class EventCache:
    """In-memory cache of parsed feed events.

    Entries are keyed by normalized feed URL, the UTC calendar days of the
    requested range and the cancelled-inclusion flag. Concurrent requests for
    the same key share one underlying fetch.
    """

    def __init__(
        self,
        *,
        transport: Transport = fetch_feed,
        parser: Parser = parse_feed,
        clock: Clock = time.time,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        fetch_timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive.")
        if max_entries <= 0:
            raise ValueError("max_entries must be positive.")
        if fetch_timeout_seconds <= 0:
            raise ValueError("fetch_timeout_seconds must be positive.")
        self._transport = transport
        self._parser = parser
        self._clock = clock
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.fetch_timeout_seconds = fetch_timeout_seconds
        self._entries: dict[str, CacheEntry] = {}
        self._in_flight: dict[str, asyncio.Task[list[RemoteEvent]]] = {}
        # Bumped by clear_cache; fetches started under an older generation do not store.
        self._generation = 0

    @classmethod
    def from_config(cls, config: CacheConfig, **kwargs) -> "EventCache":
        return cls(
            ttl_seconds=config.ttl_seconds,
            max_entries=config.max_entries,
            fetch_timeout_seconds=config.fetch_timeout_seconds,
            **kwargs,
        )

    def __len__(self) -> int:
        return len(self._entries)

    def cached_keys(self) -> list[str]:
        return list(self._entries)

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    async def fetch(
        self,
        url: str,
        range_start: datetime | None = None,
        range_end: datetime | None = None,
        include_cancelled: bool = False,
        force_refresh: bool = False,
    ) -> list[RemoteEvent]:
        normalized_url = normalize_feed_url(url)
        if not normalized_url:
            return []

        key = cache_key(normalized_url, range_start, range_end, include_cancelled)
        now = self._clock()
        self._prune(now)

        cached = self._entries.get(key)
        if not force_refresh and cached is not None and now < cached.expires_at:
            return list(cached.events)

        # Registration happens before the first await so same-tick callers coalesce.
        pending = self._in_flight.get(key)
        if pending is None:
            pending = asyncio.ensure_future(
                self._load(key, normalized_url, range_start, range_end, include_cancelled, self._generation)
            )
            self._in_flight[key] = pending
        return list(await asyncio.shield(pending))

    def clear_cache(self) -> None:
        self._generation += 1
        self._entries.clear()
        self._in_flight.clear()

    async def _load(
        self,
        key: str,
        url: str,
        range_start: datetime | None,
        range_end: datetime | None,
        include_cancelled: bool,
        generation: int,
    ) -> list[RemoteEvent]:
        current = asyncio.current_task()
        try:
            return await self._fetch_and_store(key, url, range_start, range_end, include_cancelled, generation)
        finally:
            if self._in_flight.get(key) is current:
                del self._in_flight[key]

    async def _fetch_and_store(
        self,
        key: str,
        url: str,
        range_start: datetime | None,
        range_end: datetime | None,
        include_cancelled: bool,
        generation: int,
    ) -> list[RemoteEvent]:
        try:
            response = await asyncio.wait_for(
                self._transport(url, self.fetch_timeout_seconds),
                timeout=self.fetch_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error("Fetch timed out after %ss: %s", self.fetch_timeout_seconds, url)
            return []
        except Exception as exc:
            logger.error("Error fetching calendar %s: %s: %s", url, type(exc).__name__, exc)
            return []

        if not response.ok:
            logger.error("Failed to fetch calendar %s: HTTP %s", url, response.status)
            return []

        try:
            parsed = self._parser(response.text, range_start, range_end, include_cancelled)
        except Exception:
            logger.exception("Error parsing calendar %s", url)
            return []

        events = tuple(event.with_source(url) for event in parsed)
        if generation != self._generation:
            logger.debug("Discarding fetch started before the cache was cleared: %s", key)
            return list(events)
        # Re-insert so a refreshed key moves to the young end of the FIFO.
        self._entries.pop(key, None)
        self._entries[key] = CacheEntry(events=events, expires_at=self._clock() + self.ttl_seconds)
        self._prune(self._clock())
        logger.debug("Cached %d events for %s", len(events), key)
        return list(events)

    def _prune(self, now: float) -> None:
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
        while len(self._entries) > self.max_entries:
            oldest_key = next(iter(self._entries))
            del self._entries[oldest_key]
