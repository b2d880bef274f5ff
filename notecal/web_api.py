from __future__ import annotations

import os
from datetime import datetime
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from notecal.config_manager import ConfigManager
from notecal.event_cache import EventCache
from notecal.feed_client import normalize_feed_url
from notecal.log_setup import setup_logging
from notecal.models import (
    AppConfig,
    FeedConfig,
    LocalEntry,
    LocalIdentity,
    is_archived_path,
    parse_iso_datetime,
)
from notecal.scheduler import FeedRefreshScheduler
from notecal.timeline_service import TimelineService


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class FeedRequest(BaseModel):
    url: str = Field(min_length=1)
    id: str = ""
    enabled: bool = True
    visible: bool = True
    color: str = ""


class LocalEntryPayload(BaseModel):
    path: str = Field(min_length=1)
    start: str | None = None
    end: str | None = None
    title: str = ""
    event_id: str | None = None
    uid: str | None = None
    status: str = ""
    archived: bool | None = None


class TimelineRequest(BaseModel):
    entries: list[LocalEntryPayload] = Field(default_factory=list)
    start: str | None = None
    end: str | None = None
    filter_terms: list[str] = Field(default_factory=list)


class AppContext:
    def __init__(self, config_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        config = self.config_manager.load()
        self.cache = EventCache.from_config(config.cache)
        self.timeline_service = TimelineService(self.config_manager, self.cache)
        self.scheduler = FeedRefreshScheduler(self.timeline_service, self.config_manager)

    def apply_cache_settings(self, config: AppConfig) -> None:
        self.cache.ttl_seconds = config.cache.ttl_seconds
        self.cache.max_entries = config.cache.max_entries
        self.cache.fetch_timeout_seconds = config.cache.fetch_timeout_seconds


def _parse_datetime(value: str | None, field_name: str) -> datetime | None:
    try:
        return parse_iso_datetime(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid datetime for {field_name}: {value!r}") from exc


def _local_entry_from_payload(payload: LocalEntryPayload, archive_folder: str) -> LocalEntry:
    archived = payload.archived
    if archived is None:
        archived = is_archived_path(payload.path, archive_folder)
    return LocalEntry(
        path=payload.path.strip(),
        start=_parse_datetime(payload.start, f"{payload.path}.start"),
        end=_parse_datetime(payload.end, f"{payload.path}.end"),
        title=payload.title.strip(),
        identity=LocalIdentity.from_values(payload.event_id, payload.uid),
        status=payload.status.strip(),
        archived=bool(archived),
    )


def _feed_to_dict(feed: FeedConfig) -> dict[str, Any]:
    return {
        "id": feed.id,
        "url": feed.url,
        "normalized_url": normalize_feed_url(feed.url),
        "enabled": feed.enabled,
        "visible": feed.visible,
        "color": feed.color,
    }


def create_app() -> FastAPI:
    config_path = os.getenv("NOTECAL_CONFIG_PATH", "config.yaml")
    context = AppContext(config_path=config_path)
    setup_logging(context.config_manager.load().logging)

    app = FastAPI(title="Notecal Timeline", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    async def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.load().to_dict()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        config = app.state.context.config_manager.update(request.payload)
        app.state.context.apply_cache_settings(config)
        setup_logging(config.logging)
        return config.to_dict()

    @app.get("/api/feeds")
    def list_feeds() -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        return {"feeds": [_feed_to_dict(feed) for feed in config.feeds]}

    @app.post("/api/feeds")
    def upsert_feed(request: FeedRequest) -> dict[str, Any]:
        if not normalize_feed_url(request.url):
            raise HTTPException(status_code=400, detail="Feed URL is empty.")
        feed = FeedConfig.from_dict(request.model_dump())
        config = app.state.context.config_manager.upsert_feed(feed)
        return {"feeds": [_feed_to_dict(item) for item in config.feeds]}

    @app.delete("/api/feeds")
    def delete_feed(url: str) -> dict[str, Any]:
        if not app.state.context.config_manager.remove_feed(url):
            raise HTTPException(status_code=404, detail=f"Feed not found: {url}")
        return {"removed": normalize_feed_url(url)}

    @app.get("/api/feeds/events")
    async def feed_events(
        url: str,
        start: str | None = None,
        end: str | None = None,
        include_cancelled: bool = False,
    ) -> dict[str, Any]:
        events = await app.state.context.cache.fetch(
            url,
            _parse_datetime(start, "start"),
            _parse_datetime(end, "end"),
            include_cancelled,
        )
        return {"url": normalize_feed_url(url), "events": [event.to_dict() for event in events]}

    @app.post("/api/timeline")
    async def timeline(request: TimelineRequest) -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        entries = [_local_entry_from_payload(item, config.timeline.archive_folder) for item in request.entries]
        result = await app.state.context.timeline_service.build_timeline(
            entries,
            range_start=_parse_datetime(request.start, "start"),
            range_end=_parse_datetime(request.end, "end"),
            extra_filter_terms=request.filter_terms,
        )
        return result.to_dict()

    @app.post("/api/refresh")
    async def refresh() -> dict[str, Any]:
        count = await app.state.context.timeline_service.refresh()
        return {"status": "refreshed", "events": count}

    return app
