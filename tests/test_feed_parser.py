import unittest
from datetime import datetime, timedelta, timezone

from notecal.feed_parser import parse_feed
from notecal.models import epoch_ms


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


TEAM_FEED = "\r\n".join(
    [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//Notecal Tests//EN",
        "BEGIN:VEVENT",
        "UID:standup@example.com",
        "DTSTART:20260302T090000Z",
        "DTEND:20260302T091500Z",
        "RRULE:FREQ=DAILY;COUNT=5",
        "EXDATE:20260304T090000Z",
        "SUMMARY:Standup",
        "END:VEVENT",
        "BEGIN:VEVENT",
        "UID:standup@example.com",
        "RECURRENCE-ID:20260305T090000Z",
        "DTSTART:20260305T100000Z",
        "DTEND:20260305T101500Z",
        "SUMMARY:Standup (moved)",
        "END:VEVENT",
        "BEGIN:VEVENT",
        "UID:review@example.com",
        "DTSTART:20260303T140000Z",
        "DTEND:20260303T150000Z",
        "SUMMARY:Review",
        "LOCATION:Room 4",
        "URL:https://meet.example.com/review",
        "ORGANIZER:mailto:boss@example.com",
        "ATTENDEE:mailto:a@example.com",
        "ATTENDEE:mailto:b@example.com",
        "END:VEVENT",
        "BEGIN:VEVENT",
        "UID:dropped@example.com",
        "DTSTART:20260303T160000Z",
        "DTEND:20260303T170000Z",
        "STATUS:CANCELLED",
        "SUMMARY:Dropped",
        "END:VEVENT",
        "BEGIN:VEVENT",
        "UID:offsite@example.com",
        "DTSTART;VALUE=DATE:20260306",
        "SUMMARY:Offsite",
        "END:VEVENT",
        "BEGIN:VEVENT",
        "UID:later@example.com",
        "DTSTART:20260420T090000Z",
        "DURATION:PT30M",
        "SUMMARY:Later",
        "END:VEVENT",
        "END:VCALENDAR",
        "",
    ]
)

DUPLICATE_FEED = "\r\n".join(
    [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//Notecal Tests//EN",
        "BEGIN:VEVENT",
        "UID:copy@example.com",
        "DTSTART:20260302T090000Z",
        "DTEND:20260302T100000Z",
        "SUMMARY:Copy A",
        "END:VEVENT",
        "BEGIN:VEVENT",
        "UID:copy@example.com",
        "DTSTART:20260303T090000Z",
        "SUMMARY:Copy B",
        "END:VEVENT",
        "END:VCALENDAR",
        "",
    ]
)


def _calendar(*lines: str) -> str:
    return "\r\n".join(
        ["BEGIN:VCALENDAR", "VERSION:2.0", "PRODID:-//Notecal Tests//EN", *lines, "END:VCALENDAR", ""]
    )


class ParseFeedTests(unittest.TestCase):
    def setUp(self) -> None:
        self.range_start = _utc(2026, 3, 1)
        self.range_end = _utc(2026, 3, 10)

    def test_recurring_series_expanded_with_exdate_and_override(self) -> None:
        events = parse_feed(TEAM_FEED, self.range_start, self.range_end)
        standups = [event for event in events if event.uid == "standup@example.com"]
        self.assertEqual(
            [event.id for event in standups],
            [
                f"standup@example.com-{epoch_ms(_utc(2026, 3, 2, 9))}",
                f"standup@example.com-{epoch_ms(_utc(2026, 3, 3, 9))}",
                f"standup@example.com-{epoch_ms(_utc(2026, 3, 5, 9))}",
                f"standup@example.com-{epoch_ms(_utc(2026, 3, 6, 9))}",
            ],
        )
        moved = standups[2]
        self.assertEqual(moved.title, "Standup (moved)")
        self.assertEqual(moved.start, _utc(2026, 3, 5, 10))
        self.assertEqual(standups[0].end - standups[0].start, timedelta(minutes=15))

    def test_singular_event_fields(self) -> None:
        events = parse_feed(TEAM_FEED, self.range_start, self.range_end)
        review = next(event for event in events if event.uid == "review@example.com")
        self.assertEqual(review.id, "review@example.com")
        self.assertEqual(review.location, "Room 4")
        self.assertEqual(review.url, "https://meet.example.com/review")
        self.assertEqual(review.organizer, "boss@example.com")
        self.assertEqual(review.attendees, ("a@example.com", "b@example.com"))
        self.assertFalse(review.all_day)
        self.assertFalse(review.cancelled)

    def test_cancelled_events_skipped_unless_requested(self) -> None:
        events = parse_feed(TEAM_FEED, self.range_start, self.range_end)
        self.assertNotIn("dropped@example.com", {event.uid for event in events})

        with_cancelled = parse_feed(TEAM_FEED, self.range_start, self.range_end, include_cancelled=True)
        dropped = next(event for event in with_cancelled if event.uid == "dropped@example.com")
        self.assertTrue(dropped.cancelled)

    def test_all_day_event_defaults_to_one_day(self) -> None:
        events = parse_feed(TEAM_FEED, self.range_start, self.range_end)
        offsite = next(event for event in events if event.uid == "offsite@example.com")
        self.assertTrue(offsite.all_day)
        self.assertEqual(offsite.start, _utc(2026, 3, 6))
        self.assertEqual(offsite.end, _utc(2026, 3, 7))

    def test_range_bounds_results(self) -> None:
        events = parse_feed(TEAM_FEED, _utc(2026, 3, 3), _utc(2026, 3, 3, 23, 59))
        self.assertEqual(
            [event.title for event in events],
            ["Standup", "Review"],
        )
        in_window = parse_feed(TEAM_FEED, self.range_start, self.range_end)
        self.assertNotIn("later@example.com", {event.uid for event in in_window})

    def test_unbounded_parse_includes_everything(self) -> None:
        events = parse_feed(TEAM_FEED)
        later = next(event for event in events if event.uid == "later@example.com")
        self.assertEqual(later.end - later.start, timedelta(minutes=30))
        self.assertEqual(events, sorted(events, key=lambda item: (item.start, item.id)))

    def test_duplicate_singular_uids_get_dup_ids(self) -> None:
        events = parse_feed(DUPLICATE_FEED, self.range_start, self.range_end)
        self.assertEqual(
            [event.id for event in events],
            [
                f"copy@example.com-dup-{epoch_ms(_utc(2026, 3, 2, 9))}",
                f"copy@example.com-dup-{epoch_ms(_utc(2026, 3, 3, 9))}",
            ],
        )
        self.assertEqual(events[1].end, _utc(2026, 3, 3, 10))

    def test_all_day_series_with_date_until(self) -> None:
        text = _calendar(
            "BEGIN:VEVENT",
            "UID:gym@example.com",
            "DTSTART;VALUE=DATE:20260302",
            "RRULE:FREQ=WEEKLY;UNTIL=20260330",
            "SUMMARY:Gym",
            "END:VEVENT",
        )
        events = parse_feed(text, self.range_start, _utc(2026, 4, 30))
        self.assertEqual(
            [event.start for event in events],
            [_utc(2026, 3, day) for day in (2, 9, 16, 23, 30)],
        )
        self.assertTrue(all(event.all_day for event in events))

    def test_floating_series_with_floating_until(self) -> None:
        text = _calendar(
            "BEGIN:VEVENT",
            "UID:sync@example.com",
            "DTSTART:20260302T090000",
            "DTEND:20260302T093000",
            "RRULE:FREQ=WEEKLY;UNTIL=20260330T090000",
            "SUMMARY:Sync",
            "END:VEVENT",
        )
        events = parse_feed(text)
        self.assertEqual(
            [event.id for event in events],
            [f"sync@example.com-{epoch_ms(_utc(2026, 3, day, 9))}" for day in (2, 9, 16, 23, 30)],
        )


if __name__ == "__main__":
    unittest.main()
