from __future__ import annotations

import asyncio
from dataclasses import dataclass

import requests


ACCEPT_HEADER = "text/calendar, text/plain;q=0.9, */*;q=0.8"
WEBCAL_PREFIX = "webcal://"


@dataclass(frozen=True)
class FeedResponse:
    status: int
    text: str

    @property
    def ok(self) -> bool:
        return self.status == 200


def normalize_feed_url(url: str | None) -> str:
    if not url:
        return ""
    trimmed = str(url).strip()
    if not trimmed:
        return ""
    if trimmed.lower().startswith(WEBCAL_PREFIX):
        return "https://" + trimmed[len(WEBCAL_PREFIX) :]
    return trimmed


def _get(url: str, timeout: float) -> FeedResponse:
    response = requests.get(url, headers={"Accept": ACCEPT_HEADER}, timeout=timeout)
    return FeedResponse(status=response.status_code, text=response.text)


async def fetch_feed(url: str, timeout: float = 15) -> FeedResponse:
    """Fetch raw feed text without blocking the event loop.

    The blocking ``requests`` call runs in a worker thread; its own socket
    timeout is set to the same value so a stuck connection is eventually
    released even after the caller has given up waiting.
    """
    return await asyncio.to_thread(_get, url, timeout)
