from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AbstractSet, Callable, Iterable, Optional, Sequence

from notecal.models import (
    LocalEntry,
    MatchingConfig,
    RemoteEvent,
    date_to_datetime,
    from_epoch_ms,
    normalize_identity,
    truncate_to_minute,
)

logger = logging.getLogger(__name__)

# Recurring occurrence ids look like "<uid>-<epochMs>" or "<uid>-dup-<epochMs>".
COMPOSITE_ID_PATTERN = re.compile(r"^(.*?)(?:-dup)?-(\d{10,})$")


@dataclass(frozen=True)
class EventIdParts:
    base_uid: str
    suffix_ms: int | None


def decompose_event_id(event_id: str | None) -> EventIdParts:
    text = str(event_id or "").strip()
    match = COMPOSITE_ID_PATTERN.match(text)
    if not match or not match.group(1):
        return EventIdParts(base_uid=text, suffix_ms=None)
    return EventIdParts(base_uid=match.group(1), suffix_ms=int(match.group(2)))


def extract_uid(event_id: str | None) -> str:
    return decompose_event_id(event_id).base_uid


def recurrence_start(event_id: str | None) -> datetime | None:
    suffix = decompose_event_id(event_id).suffix_ms
    if suffix is None:
        return None
    try:
        return from_epoch_ms(suffix)
    except (OverflowError, OSError, ValueError):
        return None


def remote_uid(event: RemoteEvent) -> str:
    return normalize_identity(event.uid or extract_uid(event.id))


def local_uid(entry: LocalEntry) -> str:
    if entry.identity is None:
        return ""
    return normalize_identity(entry.identity.uid or extract_uid(entry.identity.event_id))


def same_utc_minute(left: datetime, right: datetime) -> bool:
    """Day-of-month, hour and minute agree in UTC (feeds that round differently)."""
    return (left.day, left.hour, left.minute) == (right.day, right.hour, right.minute)


def _utc(value: datetime) -> datetime:
    return date_to_datetime(value).astimezone(timezone.utc)


def within_drift(left: datetime, right: datetime, settings: MatchingConfig) -> bool:
    left_utc = _utc(left)
    right_utc = _utc(right)
    if abs(left_utc - right_utc) <= settings.fuzzy_tolerance:
        return True
    return settings.same_minute_fallback and same_utc_minute(left_utc, right_utc)


def likely_same_slot(left: datetime | None, right: datetime | None, settings: MatchingConfig) -> bool:
    left_minute = truncate_to_minute(left)
    right_minute = truncate_to_minute(right)
    if left_minute is None or right_minute is None:
        return False
    return within_drift(left_minute, right_minute, settings)


Matcher = Callable[[LocalEntry, Sequence[RemoteEvent], AbstractSet[str], MatchingConfig], Optional[RemoteEvent]]


def _unclaimed(candidates: Iterable[RemoteEvent], claimed: AbstractSet[str]) -> Iterable[RemoteEvent]:
    return (event for event in candidates if event.id not in claimed)


def match_exact_id(
    entry: LocalEntry,
    candidates: Sequence[RemoteEvent],
    claimed: AbstractSet[str],
    settings: MatchingConfig,
) -> RemoteEvent | None:
    event_id = entry.identity.event_id if entry.identity else ""
    if not event_id:
        return None
    for event in _unclaimed(candidates, claimed):
        if event.id == event_id:
            return event
    return None


def match_recurrence_instance(
    entry: LocalEntry,
    candidates: Sequence[RemoteEvent],
    claimed: AbstractSet[str],
    settings: MatchingConfig,
) -> RemoteEvent | None:
    event_id = entry.identity.event_id if entry.identity else ""
    if not event_id:
        return None
    note_parts = decompose_event_id(event_id)
    note_uid = normalize_identity(note_parts.base_uid)
    for event in _unclaimed(candidates, claimed):
        if remote_uid(event) != note_uid:
            continue
        event_parts = decompose_event_id(event.id)
        if note_parts.suffix_ms is None and event_parts.suffix_ms is None:
            return event
        if note_parts.suffix_ms is None or event_parts.suffix_ms is None:
            continue
        try:
            note_time = from_epoch_ms(note_parts.suffix_ms)
            event_time = from_epoch_ms(event_parts.suffix_ms)
        except (OverflowError, OSError, ValueError):
            continue
        if within_drift(note_time, event_time, settings):
            return event
    return None


def match_uid_and_time(
    entry: LocalEntry,
    candidates: Sequence[RemoteEvent],
    claimed: AbstractSet[str],
    settings: MatchingConfig,
) -> RemoteEvent | None:
    uid = local_uid(entry)
    if not uid or entry.start is None:
        return None
    for event in _unclaimed(candidates, claimed):
        if remote_uid(event) != uid:
            continue
        if likely_same_slot(entry.start, event.start, settings):
            return event
    return None


def match_title_and_time(
    entry: LocalEntry,
    candidates: Sequence[RemoteEvent],
    claimed: AbstractSet[str],
    settings: MatchingConfig,
) -> RemoteEvent | None:
    title = (entry.title or "").strip().lower()
    if not title or entry.start is None:
        return None
    for event in _unclaimed(candidates, claimed):
        if (event.title or "").strip().lower() != title:
            continue
        if abs(entry.start - event.start) < settings.title_tolerance:
            return event
    return None


DEFAULT_MATCHERS: tuple[tuple[str, Matcher], ...] = (
    ("exact_id", match_exact_id),
    ("recurrence_instance", match_recurrence_instance),
    ("uid_time", match_uid_and_time),
    ("title_time", match_title_and_time),
)


@dataclass(frozen=True)
class IdentityMatch:
    event: RemoteEvent
    layer: str


class IdentityResolver:
    """Finds the remote occurrence a local note stands for, trying each matcher in order."""

    def __init__(
        self,
        settings: MatchingConfig | None = None,
        matchers: Sequence[tuple[str, Matcher]] = DEFAULT_MATCHERS,
    ) -> None:
        self.settings = settings or MatchingConfig()
        self.matchers = tuple(matchers)

    def resolve(
        self,
        entry: LocalEntry,
        candidates: Sequence[RemoteEvent],
        claimed: AbstractSet[str] = frozenset(),
    ) -> IdentityMatch | None:
        for layer, matcher in self.matchers:
            event = matcher(entry, candidates, claimed, self.settings)
            if event is not None:
                logger.debug("Matched %s to %s via %s", entry.path, event.id, layer)
                return IdentityMatch(event=event, layer=layer)
        return None


def placeholder_event(entry: LocalEntry) -> RemoteEvent | None:
    """Remote-shaped stand-in for a linked note whose occurrence is not in any feed."""
    if entry.identity is None or not entry.identity.event_id or entry.start is None:
        return None
    event_id = entry.identity.event_id
    return RemoteEvent(
        id=event_id,
        uid=entry.identity.uid or extract_uid(event_id),
        start=entry.start,
        end=entry.end or entry.start,
        title=entry.title,
    )


def uid_start_key(uid: str, start: datetime | None) -> tuple[str, datetime] | None:
    minute = truncate_to_minute(start)
    if not uid or minute is None:
        return None
    return uid, minute
