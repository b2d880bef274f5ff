from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any


DEFAULT_CANCELLED_STATUSES = ["wont-do", "wont do"]
KIND_LOCAL = "local"
KIND_REMOTE = "remote"


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | date | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    if isinstance(value, date):
        return date_to_datetime(value)
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    if re.fullmatch(r"\d{4}-\d{2}-\d{2}\s+\d{2}:\d{2}(:\d{2})?", text):
        text = re.sub(r"\s+", "T", text)
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def date_to_datetime(value: datetime | date | None, is_end: bool = False) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    if is_end:
        return datetime.combine(value, time.max, tzinfo=timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def epoch_ms(value: datetime) -> int:
    return int(_ensure_tz(value).timestamp() * 1000)


def from_epoch_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def truncate_to_minute(value: datetime | None) -> datetime | None:
    """Drop seconds and microseconds, keeping the UTC minute the event starts in."""
    if value is None:
        return None
    return _ensure_tz(value).replace(second=0, microsecond=0)


def normalize_identity(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip().lower()


def is_archived_path(path: str, archive_folder: str) -> bool:
    folder = str(archive_folder or "").strip().strip("/")
    if not folder:
        return False
    normalized = str(path or "").strip().lstrip("/")
    return normalized.startswith(f"{folder}/")


def parse_filter_terms(raw: str | list[str] | None) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        segments = re.split(r"[\n,]", raw)
    else:
        segments = [str(x) for x in raw]
    return [segment.strip().lower() for segment in segments if segment.strip()]


@dataclass(frozen=True)
class RemoteEvent:
    id: str
    uid: str
    start: datetime
    end: datetime
    title: str = ""
    description: str = ""
    location: str = ""
    organizer: str = ""
    attendees: tuple[str, ...] = ()
    url: str = ""
    all_day: bool = False
    source_url: str = ""
    cancelled: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "start", date_to_datetime(self.start))
        object.__setattr__(self, "end", date_to_datetime(self.end))

    def with_source(self, source_url: str) -> "RemoteEvent":
        return RemoteEvent(
            id=self.id,
            uid=self.uid,
            start=self.start,
            end=self.end,
            title=self.title,
            description=self.description,
            location=self.location,
            organizer=self.organizer,
            attendees=self.attendees,
            url=self.url,
            all_day=self.all_day,
            source_url=source_url,
            cancelled=self.cancelled,
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["attendees"] = list(self.attendees)
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        return payload


@dataclass(frozen=True)
class LocalIdentity:
    """Identity fields copied from a note, normalized once on construction."""

    event_id: str = ""
    uid: str = ""

    @classmethod
    def from_values(cls, event_id: Any = None, uid: Any = None) -> "LocalIdentity | None":
        event_id_text = str(event_id).strip() if event_id is not None else ""
        uid_text = normalize_identity(uid)
        if not event_id_text and not uid_text:
            return None
        return cls(event_id=event_id_text, uid=uid_text)


@dataclass(frozen=True)
class LocalEntry:
    path: str
    start: datetime | None
    end: datetime | None = None
    title: str = ""
    identity: LocalIdentity | None = None
    status: str = ""
    archived: bool = False

    def __post_init__(self) -> None:
        # Naive times are read as UTC so every comparison downstream is aware.
        object.__setattr__(self, "start", date_to_datetime(self.start))
        object.__setattr__(self, "end", date_to_datetime(self.end))

    def is_cancelled(self, cancelled_statuses: list[str] | None = None) -> bool:
        status = normalize_identity(self.status)
        if not status:
            return False
        statuses = [normalize_identity(x) for x in (cancelled_statuses or DEFAULT_CANCELLED_STATUSES)]
        return status in statuses

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "start": serialize_datetime(self.start),
            "end": serialize_datetime(self.end),
            "title": self.title,
            "event_id": self.identity.event_id if self.identity else "",
            "uid": self.identity.uid if self.identity else "",
            "status": self.status,
            "archived": self.archived,
        }


@dataclass(frozen=True)
class CacheEntry:
    events: tuple[RemoteEvent, ...]
    expires_at: float


@dataclass(frozen=True)
class UnifiedEntry:
    kind: str
    start: datetime
    end: datetime | None
    title: str
    local: LocalEntry | None = None
    remote: RemoteEvent | None = None

    @classmethod
    def for_local(cls, entry: LocalEntry, matched: RemoteEvent | None = None) -> "UnifiedEntry":
        if entry.start is None:
            raise ValueError(f"Local entry without start time: {entry.path}")
        title = entry.title or (matched.title if matched else "") or _basename(entry.path)
        return cls(kind=KIND_LOCAL, start=entry.start, end=entry.end, title=title, local=entry, remote=matched)

    @classmethod
    def for_remote(cls, event: RemoteEvent) -> "UnifiedEntry":
        return cls(kind=KIND_REMOTE, start=event.start, end=event.end, title=event.title, remote=event)

    @property
    def identity_source(self) -> str:
        if self.kind == KIND_LOCAL and self.local is not None:
            return self.local.path
        if self.remote is not None:
            return self.remote.id
        return self.title or "unknown"

    @property
    def dedupe_key(self) -> tuple[str, str, int, int]:
        start_ms = epoch_ms(self.start)
        end_ms = epoch_ms(self.end) if self.end is not None else -1
        return (self.kind, self.identity_source, start_ms, end_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "title": self.title,
            "start": serialize_datetime(self.start),
            "end": serialize_datetime(self.end),
            "local": self.local.to_dict() if self.local else None,
            "remote": self.remote.to_dict() if self.remote else None,
        }


def _basename(path: str) -> str:
    name = str(path or "").rstrip("/").rsplit("/", 1)[-1]
    if name.endswith(".md"):
        name = name[: -len(".md")]
    return name


@dataclass
class FeedConfig:
    url: str
    id: str = ""
    enabled: bool = True
    visible: bool = True
    color: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "FeedConfig":
        data = data or {}
        url = str(data.get("url", "") or "").strip()
        return cls(
            url=url,
            id=str(data.get("id", "") or "").strip() or url,
            enabled=bool(data.get("enabled", True)),
            visible=bool(data.get("visible", True)),
            color=str(data.get("color", "") or "").strip(),
        )


@dataclass
class CacheConfig:
    ttl_seconds: int = 300
    max_entries: int = 200
    fetch_timeout_seconds: float = 15

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CacheConfig":
        data = data or {}
        return cls(
            ttl_seconds=max(1, int(data.get("ttl_seconds", 300))),
            max_entries=max(1, int(data.get("max_entries", 200))),
            fetch_timeout_seconds=max(1.0, float(data.get("fetch_timeout_seconds", 15))),
        )


@dataclass
class MatchingConfig:
    fuzzy_tolerance_minutes: int = 65
    title_tolerance_seconds: int = 60
    same_minute_fallback: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "MatchingConfig":
        data = data or {}
        return cls(
            fuzzy_tolerance_minutes=max(0, int(data.get("fuzzy_tolerance_minutes", 65))),
            title_tolerance_seconds=max(0, int(data.get("title_tolerance_seconds", 60))),
            same_minute_fallback=bool(data.get("same_minute_fallback", True)),
        )

    @property
    def fuzzy_tolerance(self) -> timedelta:
        return timedelta(minutes=self.fuzzy_tolerance_minutes)

    @property
    def title_tolerance(self) -> timedelta:
        return timedelta(seconds=self.title_tolerance_seconds)


@dataclass
class TimelineConfig:
    days_before: int = 30
    days_after: int = 60
    filter_terms: list[str] = field(default_factory=list)
    cancelled_statuses: list[str] = field(default_factory=lambda: list(DEFAULT_CANCELLED_STATUSES))
    archive_folder: str = ""
    include_cancelled: bool = False
    chunk_size: int = 200

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "TimelineConfig":
        data = data or {}
        statuses = [normalize_identity(x) for x in data.get("cancelled_statuses", []) or [] if normalize_identity(x)]
        return cls(
            days_before=max(0, int(data.get("days_before", 30))),
            days_after=max(1, int(data.get("days_after", 60))),
            filter_terms=parse_filter_terms(data.get("filter_terms")),
            cancelled_statuses=statuses or list(DEFAULT_CANCELLED_STATUSES),
            archive_folder=str(data.get("archive_folder", "") or "").strip().strip("/"),
            include_cancelled=bool(data.get("include_cancelled", False)),
            chunk_size=max(1, int(data.get("chunk_size", 200))),
        )


@dataclass
class RefreshConfig:
    interval_seconds: int = 900

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RefreshConfig":
        data = data or {}
        return cls(interval_seconds=max(30, int(data.get("interval_seconds", 900))))


@dataclass
class LoggingConfig:
    enabled: bool = False
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        return cls(
            enabled=bool(data.get("enabled", False)),
            level=str(data.get("level", "INFO")).strip().upper() or "INFO",
        )


@dataclass
class AppConfig:
    feeds: list[FeedConfig] = field(default_factory=list)
    cache: CacheConfig = field(default_factory=CacheConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    timeline: TimelineConfig = field(default_factory=TimelineConfig)
    refresh: RefreshConfig = field(default_factory=RefreshConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        raw_feeds = data.get("feeds", [])
        feeds: list[FeedConfig] = []
        if isinstance(raw_feeds, list):
            for item in raw_feeds:
                if isinstance(item, str):
                    item = {"url": item}
                if not isinstance(item, dict):
                    continue
                feed = FeedConfig.from_dict(item)
                if feed.url:
                    feeds.append(feed)
        return cls(
            feeds=feeds,
            cache=CacheConfig.from_dict(data.get("cache")),
            matching=MatchingConfig.from_dict(data.get("matching")),
            timeline=TimelineConfig.from_dict(data.get("timeline")),
            refresh=RefreshConfig.from_dict(data.get("refresh")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def visible_feeds(self) -> list[FeedConfig]:
        return [feed for feed in self.feeds if feed.enabled and feed.visible]


def default_app_config() -> AppConfig:
    return AppConfig()


def reconciliation_window(anchor: datetime, days_before: int = 30, days_after: int = 60) -> tuple[datetime, datetime]:
    anchor_utc = _ensure_tz(anchor)
    start = anchor_utc - timedelta(days=max(0, days_before))
    end = anchor_utc + timedelta(days=max(1, days_after))
    return start, end
