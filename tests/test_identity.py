import unittest
from datetime import datetime, timedelta, timezone

from notecal.identity import (
    EventIdParts,
    IdentityResolver,
    decompose_event_id,
    extract_uid,
    likely_same_slot,
    match_title_and_time,
    placeholder_event,
    recurrence_start,
)
from notecal.models import LocalEntry, LocalIdentity, MatchingConfig, RemoteEvent, epoch_ms

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
START_MS = epoch_ms(START)


def _remote(event_id: str, uid: str, start: datetime, title: str = "Standup") -> RemoteEvent:
    return RemoteEvent(id=event_id, uid=uid, start=start, end=start + timedelta(minutes=15), title=title)


def _note(
    path: str = "Meetings/standup.md",
    start: datetime | None = START,
    event_id: str | None = None,
    uid: str | None = None,
    title: str = "",
) -> LocalEntry:
    return LocalEntry(path=path, start=start, title=title, identity=LocalIdentity.from_values(event_id, uid))


class EventIdTests(unittest.TestCase):
    def test_decompose_composite_ids(self) -> None:
        self.assertEqual(
            decompose_event_id(f"series@example.com-{START_MS}"),
            EventIdParts(base_uid="series@example.com", suffix_ms=START_MS),
        )
        self.assertEqual(
            decompose_event_id(f"copy@example.com-dup-{START_MS}"),
            EventIdParts(base_uid="copy@example.com", suffix_ms=START_MS),
        )
        self.assertEqual(recurrence_start(f"series-{START_MS}"), START)

    def test_short_numeric_tails_are_not_suffixes(self) -> None:
        self.assertEqual(decompose_event_id("meeting-2026"), EventIdParts(base_uid="meeting-2026", suffix_ms=None))
        self.assertEqual(extract_uid("plain-uid"), "plain-uid")
        self.assertIsNone(recurrence_start("plain-uid"))
        self.assertEqual(decompose_event_id(None), EventIdParts(base_uid="", suffix_ms=None))


class DriftTests(unittest.TestCase):
    def test_tolerance_boundary(self) -> None:
        settings = MatchingConfig(same_minute_fallback=False)
        self.assertTrue(likely_same_slot(START, START + timedelta(minutes=64), settings))
        self.assertTrue(likely_same_slot(START, START + timedelta(minutes=65), settings))
        self.assertFalse(likely_same_slot(START, START + timedelta(minutes=66), settings))

    def test_seconds_are_truncated_before_comparing(self) -> None:
        settings = MatchingConfig(fuzzy_tolerance_minutes=0, same_minute_fallback=False)
        self.assertTrue(likely_same_slot(START, START + timedelta(seconds=59), settings))

    def test_same_minute_fallback(self) -> None:
        next_month = datetime(2026, 4, 2, 9, 0, tzinfo=timezone.utc)
        self.assertTrue(likely_same_slot(START, next_month, MatchingConfig()))
        self.assertFalse(likely_same_slot(START, next_month, MatchingConfig(same_minute_fallback=False)))

    def test_missing_times_never_match(self) -> None:
        self.assertFalse(likely_same_slot(None, START, MatchingConfig()))


class IdentityResolverTests(unittest.TestCase):
    def setUp(self) -> None:
        self.resolver = IdentityResolver()
        self.series = [
            _remote(f"series@example.com-{START_MS + day * 86_400_000}", "series@example.com", START + timedelta(days=day))
            for day in range(3)
        ]

    def test_exact_id_layer(self) -> None:
        note = _note(event_id=self.series[1].id)
        match = self.resolver.resolve(note, self.series)
        self.assertEqual(match.event, self.series[1])
        self.assertEqual(match.layer, "exact_id")

    def test_recurrence_instance_layer_tolerates_drift(self) -> None:
        shifted_ms = START_MS + 86_400_000 + 30 * 60_000
        note = _note(event_id=f"Series@Example.com-{shifted_ms}")
        match = self.resolver.resolve(note, self.series)
        self.assertEqual(match.event, self.series[1])
        self.assertEqual(match.layer, "recurrence_instance")

    def test_recurrence_instance_accepts_64_minute_suffix(self) -> None:
        near_ms = START_MS + 86_400_000 + 64 * 60_000
        settings = MatchingConfig(same_minute_fallback=False)
        note = _note(start=None, event_id=f"series@example.com-{near_ms}")
        match = IdentityResolver(settings).resolve(note, self.series)
        self.assertEqual(match.event, self.series[1])
        self.assertEqual(match.layer, "recurrence_instance")

    def test_recurrence_instance_rejects_distant_suffix(self) -> None:
        distant_ms = START_MS + 86_400_000 + 66 * 60_000
        settings = MatchingConfig(same_minute_fallback=False)
        note = _note(start=None, event_id=f"series@example.com-{distant_ms}")
        self.assertIsNone(IdentityResolver(settings).resolve(note, self.series))

    def test_uid_and_time_layer(self) -> None:
        note = _note(start=START + timedelta(days=2, minutes=20), uid="SERIES@example.com")
        match = self.resolver.resolve(note, self.series)
        self.assertEqual(match.event, self.series[2])
        self.assertEqual(match.layer, "uid_time")

    def test_title_layer_requires_close_start(self) -> None:
        meeting = _remote("one-off", "one-off", START, title="Budget Review")
        close = _note(start=START + timedelta(seconds=45), title="  budget review ")
        far = _note(start=START + timedelta(seconds=120), title="Budget Review")
        self.assertEqual(self.resolver.resolve(close, [meeting]).layer, "title_time")
        self.assertIsNone(self.resolver.resolve(far, [meeting]))
        self.assertIsNone(match_title_and_time(_note(title=""), [meeting], frozenset(), MatchingConfig()))

    def test_claimed_events_are_skipped(self) -> None:
        note = _note(event_id=self.series[0].id)
        self.assertIsNone(self.resolver.resolve(note, self.series[:1], claimed={self.series[0].id}))

    def test_earlier_layer_wins(self) -> None:
        decoy = _remote("decoy", "decoy", START, title="Standup")
        note = _note(event_id=self.series[0].id, title="Standup")
        match = self.resolver.resolve(note, [decoy, *self.series])
        self.assertEqual(match.event, self.series[0])
        self.assertEqual(match.layer, "exact_id")

    def test_custom_matchers(self) -> None:
        def match_first(entry, candidates, claimed, settings):
            return candidates[0] if candidates else None

        resolver = IdentityResolver(matchers=[("first", match_first)])
        match = resolver.resolve(_note(), self.series)
        self.assertEqual(match.layer, "first")
        self.assertEqual(match.event, self.series[0])


class PlaceholderTests(unittest.TestCase):
    def test_placeholder_uses_linked_id_and_local_times(self) -> None:
        note = LocalEntry(
            path="Meetings/gone.md",
            start=START,
            end=START + timedelta(minutes=30),
            title="Gone",
            identity=LocalIdentity.from_values(f"gone@example.com-{START_MS}"),
        )
        event = placeholder_event(note)
        self.assertEqual(event.id, f"gone@example.com-{START_MS}")
        self.assertEqual(event.uid, "gone@example.com")
        self.assertEqual(event.end, START + timedelta(minutes=30))

    def test_no_placeholder_without_event_id(self) -> None:
        self.assertIsNone(placeholder_event(_note(uid="only-uid")))
        self.assertIsNone(placeholder_event(_note()))


if __name__ == "__main__":
    unittest.main()
