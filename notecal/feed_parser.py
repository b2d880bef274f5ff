from __future__ import annotations

import logging
import re
from datetime import date, datetime, time, timedelta, timezone
from itertools import islice
from typing import Any, Iterable

from dateutil.rrule import rruleset, rrulestr
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from notecal.models import RemoteEvent, date_to_datetime, epoch_ms

logger = logging.getLogger(__name__)

CANCELLED_STATUSES = {"CANCELLED", "CANCELED"}
# Upper bound for open-ended series when the caller gives no range.
MAX_UNBOUNDED_OCCURRENCES = 500
# UNTIL without a trailing Z is a DATE or a floating time.
UNTIL_PATTERN = re.compile(r"UNTIL=(\d{8})(?:T(\d{6}))?(Z?)", re.IGNORECASE)


def _coerce_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, (datetime, date)):
        return date_to_datetime(value)
    return None


def _decoded(vevent: ICEvent, name: str) -> Any:
    if vevent.get(name) is None:
        return None
    return vevent.decoded(name)


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _property_datetimes(vevent: ICEvent, name: str) -> list[datetime]:
    values: list[datetime] = []
    for prop in _as_list(vevent.get(name)):
        for item in getattr(prop, "dts", []):
            coerced = _coerce_datetime(item.dt)
            if coerced is not None:
                values.append(coerced)
    return values


def _text(vevent: ICEvent, name: str) -> str:
    value = vevent.get(name)
    if value is None:
        return ""
    return str(value).strip()


def _strip_mailto(value: str) -> str:
    if value.lower().startswith("mailto:"):
        return value[len("mailto:") :]
    return value


def _is_recurring_master(vevent: ICEvent) -> bool:
    if vevent.get("RECURRENCE-ID") is not None:
        return False
    return vevent.get("RRULE") is not None or vevent.get("RDATE") is not None


def _is_cancelled(vevent: ICEvent) -> bool:
    return _text(vevent, "STATUS").upper() in CANCELLED_STATUSES


def _event_bounds(vevent: ICEvent) -> tuple[datetime, datetime, bool] | None:
    start_raw = _decoded(vevent, "DTSTART")
    start = _coerce_datetime(start_raw)
    if start is None:
        return None
    all_day = isinstance(start_raw, date) and not isinstance(start_raw, datetime)
    end = _coerce_datetime(_decoded(vevent, "DTEND"))
    if end is None:
        duration = _decoded(vevent, "DURATION")
        if isinstance(duration, timedelta):
            end = start + duration
        else:
            end = start + (timedelta(days=1) if all_day else timedelta(hours=1))
    return start, end, all_day


def _overlaps(start: datetime, end: datetime, range_start: datetime | None, range_end: datetime | None) -> bool:
    if range_start is not None and end <= range_start and start < range_start:
        return False
    if range_end is not None and start > range_end:
        return False
    return True


def _build_event(
    vevent: ICEvent,
    *,
    event_id: str,
    uid: str,
    start: datetime,
    end: datetime,
    all_day: bool,
) -> RemoteEvent:
    attendees = tuple(
        _strip_mailto(str(attendee).strip()) for attendee in _as_list(vevent.get("ATTENDEE")) if str(attendee).strip()
    )
    return RemoteEvent(
        id=event_id,
        uid=uid,
        start=start,
        end=end,
        title=_text(vevent, "SUMMARY"),
        description=_text(vevent, "DESCRIPTION"),
        location=_text(vevent, "LOCATION"),
        organizer=_strip_mailto(_text(vevent, "ORGANIZER")),
        attendees=attendees,
        url=_text(vevent, "URL"),
        all_day=all_day,
        cancelled=_is_cancelled(vevent),
    )


def _localize(value: datetime, tzinfo: Any) -> datetime:
    if hasattr(tzinfo, "localize"):
        return tzinfo.localize(value)
    return value.replace(tzinfo=tzinfo)


def _utc_until(rule_text: str, start: datetime) -> str:
    """Rewrite a DATE or floating UNTIL as UTC, read in the DTSTART zone.

    dateutil refuses a non-UTC UNTIL once DTSTART carries a timezone. A DATE
    UNTIL covers that whole day.
    """

    def _rewrite(match: re.Match[str]) -> str:
        if match.group(3):
            return match.group(0)
        day = datetime.strptime(match.group(1), "%Y%m%d")
        if match.group(2):
            local = datetime.strptime(match.group(1) + match.group(2), "%Y%m%d%H%M%S")
        else:
            local = datetime.combine(day.date(), time(23, 59, 59))
        until = _localize(local, start.tzinfo or timezone.utc).astimezone(timezone.utc)
        return "UNTIL=" + until.strftime("%Y%m%dT%H%M%SZ")

    return UNTIL_PATTERN.sub(_rewrite, rule_text)


def _expand_occurrences(
    vevent: ICEvent,
    start: datetime,
    duration: timedelta,
    range_start: datetime | None,
    range_end: datetime | None,
) -> list[datetime]:
    rule_set = rruleset()
    has_rule = False
    for rule in _as_list(vevent.get("RRULE")):
        rule_text = _utc_until(rule.to_ical().decode("utf-8"), start)
        try:
            rule_set.rrule(rrulestr(rule_text, dtstart=start))
            has_rule = True
        except ValueError as exc:
            logger.warning("Skipping unsupported RRULE %r: %s", rule_text, exc)
    if not has_rule:
        # RDATE-only series and unparseable rules still include DTSTART.
        rule_set.rdate(start)
    for rdate in _property_datetimes(vevent, "RDATE"):
        rule_set.rdate(rdate)
    for exdate in _property_datetimes(vevent, "EXDATE"):
        rule_set.exdate(exdate)

    if range_start is not None and range_end is not None:
        return list(rule_set.between(range_start - duration, range_end, inc=True))
    occurrences: Iterable[datetime] = rule_set
    if range_start is not None:
        occurrences = (occ for occ in rule_set if occ + duration > range_start)
    elif range_end is not None:
        occurrences = (occ for occ in rule_set if occ <= range_end)
    return list(islice(occurrences, MAX_UNBOUNDED_OCCURRENCES))


def parse_feed(
    raw_text: str,
    range_start: datetime | None = None,
    range_end: datetime | None = None,
    include_cancelled: bool = False,
) -> list[RemoteEvent]:
    """Turn raw iCal text into occurrences bounded to ``[range_start, range_end]``.

    Recurring series are expanded into one event per occurrence with id
    ``"<uid>-<epochMs>"``. Non-recurring events keep ``uid`` as their id unless
    the same uid appears more than once in the feed, in which case each copy
    gets ``"<uid>-dup-<epochMs>"`` so the id stays stable across fetches.
    """
    range_start = date_to_datetime(range_start) if range_start is not None else None
    range_end = date_to_datetime(range_end) if range_end is not None else None
    calendar_obj = ICalendar.from_ical(raw_text)
    vevents = list(calendar_obj.walk("VEVENT"))

    overridden: dict[str, set[int]] = {}
    singular_counts: dict[str, int] = {}
    for vevent in vevents:
        uid = _text(vevent, "UID")
        recurrence_id = _coerce_datetime(_decoded(vevent, "RECURRENCE-ID"))
        if recurrence_id is not None:
            overridden.setdefault(uid, set()).add(epoch_ms(recurrence_id))
        elif not _is_recurring_master(vevent):
            singular_counts[uid] = singular_counts.get(uid, 0) + 1

    events: list[RemoteEvent] = []
    for vevent in vevents:
        if _is_cancelled(vevent) and not include_cancelled:
            continue
        bounds = _event_bounds(vevent)
        if bounds is None:
            logger.debug("Skipping VEVENT without DTSTART: %s", _text(vevent, "UID"))
            continue
        start, end, all_day = bounds
        uid = _text(vevent, "UID") or str(epoch_ms(start))

        if _is_recurring_master(vevent):
            duration = end - start
            skipped = overridden.get(uid, set())
            for occurrence in _expand_occurrences(vevent, start, duration, range_start, range_end):
                occurrence_ms = epoch_ms(occurrence)
                if occurrence_ms in skipped:
                    continue
                occurrence_end = occurrence + duration
                if not _overlaps(occurrence, occurrence_end, range_start, range_end):
                    continue
                events.append(
                    _build_event(
                        vevent,
                        event_id=f"{uid}-{occurrence_ms}",
                        uid=uid,
                        start=occurrence,
                        end=occurrence_end,
                        all_day=all_day,
                    )
                )
            continue

        if not _overlaps(start, end, range_start, range_end):
            continue
        recurrence_id = _coerce_datetime(_decoded(vevent, "RECURRENCE-ID"))
        if recurrence_id is not None:
            event_id = f"{uid}-{epoch_ms(recurrence_id)}"
        elif singular_counts.get(uid, 0) > 1:
            event_id = f"{uid}-dup-{epoch_ms(start)}"
        else:
            event_id = uid
        events.append(_build_event(vevent, event_id=event_id, uid=uid, start=start, end=end, all_day=all_day))

    events.sort(key=lambda item: (item.start, item.id))
    return events
