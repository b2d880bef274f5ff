from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Sequence

from notecal.identity import (
    IdentityResolver,
    local_uid,
    placeholder_event,
    recurrence_start,
    remote_uid,
    uid_start_key,
    within_drift,
)
from notecal.models import (
    DEFAULT_CANCELLED_STATUSES,
    AppConfig,
    LocalEntry,
    MatchingConfig,
    RemoteEvent,
    UnifiedEntry,
    parse_filter_terms,
    truncate_to_minute,
)

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 200


@dataclass
class TimelineResult:
    entries: list[UnifiedEntry]
    suppressed_event_ids: set[str] = field(default_factory=set)
    suppressed_uid_starts: dict[str, list[datetime]] = field(default_factory=dict)
    # remote event id -> path of the local note that represents it
    matches: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "entries": [entry.to_dict() for entry in self.entries],
            "suppressed_event_ids": sorted(self.suppressed_event_ids),
            "suppressed_uid_starts": {
                uid: [value.isoformat() for value in values]
                for uid, values in sorted(self.suppressed_uid_starts.items())
            },
            "matches": dict(self.matches),
        }


def dedupe_entries(entries: Iterable[UnifiedEntry]) -> list[UnifiedEntry]:
    unique: dict[tuple[str, str, int, int], UnifiedEntry] = {}
    for entry in entries:
        unique.setdefault(entry.dedupe_key, entry)
    return list(unique.values())


class _ReconcilePass:
    def __init__(
        self,
        *,
        resolver: IdentityResolver,
        cancelled_statuses: list[str],
        remote_events: Sequence[RemoteEvent],
        filter_terms: list[str],
    ) -> None:
        self.resolver = resolver
        self.cancelled_statuses = cancelled_statuses
        self.remote_events = remote_events
        self.filter_terms = filter_terms
        self.handled: set[str] = set()
        self.suppressed_ids: set[str] = set()
        self.suppressed_uid_starts: dict[str, list[datetime]] = {}
        self.matches: dict[str, str] = {}
        self.emitted: list[UnifiedEntry] = []

    def _hidden(self, entry: LocalEntry) -> bool:
        return entry.archived or entry.is_cancelled(self.cancelled_statuses)

    def record_suppressions(self, entries: Iterable[LocalEntry]) -> None:
        for entry in entries:
            if entry.identity is None or not self._hidden(entry):
                continue
            event_id = entry.identity.event_id
            if event_id:
                self.suppressed_ids.add(event_id)
            key = uid_start_key(local_uid(entry), entry.start or recurrence_start(event_id))
            if key is None:
                continue
            uid, minute = key
            starts = self.suppressed_uid_starts.setdefault(uid, [])
            if minute not in starts:
                starts.append(minute)

    def add_local(self, entry: LocalEntry) -> None:
        if entry.start is None:
            return
        match = self.resolver.resolve(entry, self.remote_events, self.handled)
        matched = match.event if match else None
        if matched is not None:
            self.handled.add(matched.id)
            self.matches[matched.id] = entry.path
            if self._hidden(entry):
                # Only this occurrence; the rest of the series stays visible.
                self.suppressed_ids.add(matched.id)
        self.emitted.append(UnifiedEntry.for_local(entry, matched or placeholder_event(entry)))

    def _suppressed_by_uid_start(self, event: RemoteEvent) -> bool:
        uid = remote_uid(event)
        starts = self.suppressed_uid_starts.get(uid) if uid else None
        if not starts:
            return False
        event_minute = truncate_to_minute(event.start)
        return any(within_drift(start, event_minute, self.resolver.settings) for start in starts)

    def _filtered(self, event: RemoteEvent) -> bool:
        title = (event.title or "").lower()
        return any(term in title for term in self.filter_terms)

    def add_remote_only(self) -> None:
        for event in self.remote_events:
            if event.id in self.handled:
                continue
            if event.id in self.suppressed_ids or self._suppressed_by_uid_start(event):
                logger.debug("Suppressed remote event %s", event.id)
                continue
            if self._filtered(event):
                continue
            self.emitted.append(UnifiedEntry.for_remote(event))

    def finish(self) -> TimelineResult:
        return TimelineResult(
            entries=dedupe_entries(self.emitted),
            suppressed_event_ids=set(self.suppressed_ids),
            suppressed_uid_starts={uid: list(starts) for uid, starts in self.suppressed_uid_starts.items()},
            matches=dict(self.matches),
        )


class Reconciler:
    """Merges local notes and remote feed occurrences into one de-duplicated timeline.

    Inputs are never mutated. A local note that matches a remote occurrence
    replaces it in the output; archived or cancelled notes additionally hide
    the occurrence they stand for (by id, and by uid plus start time within
    the drift tolerance) without hiding the rest of a recurring series.
    """

    def __init__(
        self,
        matching: MatchingConfig | None = None,
        cancelled_statuses: list[str] | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        resolver: IdentityResolver | None = None,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive.")
        self.resolver = resolver or IdentityResolver(matching)
        self.cancelled_statuses = list(cancelled_statuses or DEFAULT_CANCELLED_STATUSES)
        self.chunk_size = chunk_size

    @classmethod
    def from_config(cls, config: AppConfig) -> "Reconciler":
        return cls(
            matching=config.matching,
            cancelled_statuses=config.timeline.cancelled_statuses,
            chunk_size=config.timeline.chunk_size,
        )

    def _start(
        self,
        local_entries: Sequence[LocalEntry],
        remote_events: Iterable[RemoteEvent],
        filter_terms: Iterable[str] | str | None,
    ) -> _ReconcilePass:
        state = _ReconcilePass(
            resolver=self.resolver,
            cancelled_statuses=self.cancelled_statuses,
            remote_events=tuple(remote_events),
            filter_terms=parse_filter_terms(filter_terms if isinstance(filter_terms, str) else list(filter_terms or [])),
        )
        state.record_suppressions(local_entries)
        return state

    def reconcile(
        self,
        local_entries: Sequence[LocalEntry],
        remote_events: Iterable[RemoteEvent],
        filter_terms: Iterable[str] | str | None = None,
    ) -> TimelineResult:
        state = self._start(local_entries, remote_events, filter_terms)
        for entry in local_entries:
            state.add_local(entry)
        state.add_remote_only()
        return state.finish()

    async def reconcile_async(
        self,
        local_entries: Sequence[LocalEntry],
        remote_events: Iterable[RemoteEvent],
        filter_terms: Iterable[str] | str | None = None,
    ) -> TimelineResult:
        state = self._start(local_entries, remote_events, filter_terms)
        for index, entry in enumerate(local_entries, start=1):
            state.add_local(entry)
            if index % self.chunk_size == 0:
                await asyncio.sleep(0)
        state.add_remote_only()
        return state.finish()


def reconcile(
    local_entries: Sequence[LocalEntry],
    remote_events: Iterable[RemoteEvent],
    filter_terms: Iterable[str] | str | None = None,
    matching: MatchingConfig | None = None,
) -> list[UnifiedEntry]:
    return Reconciler(matching=matching).reconcile(local_entries, remote_events, filter_terms).entries
