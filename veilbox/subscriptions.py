"""Subscription feed fetching and decoding."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol, runtime_checkable

import aiohttp

from . import __version__
from .models import SubscriptionUsage

LOG = logging.getLogger(__name__)

MAX_DECODE_ATTEMPTS = 2
USERINFO_HEADER = "subscription-userinfo"

_BLOB_CHARSET = re.compile(r"^[A-Za-z0-9+/=_\-\s]+$")
_USAGE_KEYS = ("upload", "download", "total", "expire")
_URLSAFE = str.maketrans("-_", "+/")


class DecodeFailure(RuntimeError):
    """Raised when a subscription body cannot be fetched or yields nothing usable."""


@dataclass(frozen=True, slots=True)
class FetchResult:
    """Raw subscription response handed to the decoder."""

    body: str
    user_info: str | None = None


@runtime_checkable
class SubscriptionFetcher(Protocol):
    """Single HTTP-level fetch of a subscription URL."""

    async def fetch(self, url: str) -> FetchResult: ...


class AiohttpSubscriptionFetcher:
    """Fetches subscription feeds over HTTP via aiohttp."""

    def __init__(self, *, timeout: float = 15.0, user_agent: str | None = None) -> None:
        self._timeout = timeout
        self._user_agent = user_agent or f"VeilBox/{__version__}"

    async def fetch(self, url: str) -> FetchResult:
        headers = {"User-Agent": self._user_agent, "Accept": "*/*"}
        timeout = aiohttp.ClientTimeout(total=self._timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url, headers=headers) as response:
                    if response.status >= 400:
                        raise DecodeFailure(f"Subscription responded with HTTP {response.status}")
                    body = await response.text(errors="replace")
                    user_info = response.headers.get(USERINFO_HEADER)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise DecodeFailure(f"Failed to fetch subscription: {exc or type(exc).__name__}") from exc
        return FetchResult(body=body, user_info=user_info)


def decode_subscription(body: str) -> list[str]:
    """Turn a subscription body into candidate URI lines.

    Bodies are either plain text or wrapped in (at most two) layers of
    base64. Decoding stops at the first layer that fails, so a garbled body
    is returned line by line rather than discarded.
    """

    content = (body or "").strip()
    attempts = 0
    while attempts < MAX_DECODE_ATTEMPTS and "://" not in content and _BLOB_CHARSET.match(content):
        attempts += 1
        decoded = _b64decode(content)
        if decoded is None:
            break
        content = decoded.strip()
    return [line.strip() for line in content.splitlines() if line.strip()]


def _b64decode(content: str) -> str | None:
    compact = "".join(content.split()).rstrip("=")
    if len(compact) % 4 == 1:
        return None
    padded = compact + "=" * (-len(compact) % 4)
    for candidate in (padded, padded.translate(_URLSAFE)):
        try:
            raw = base64.b64decode(candidate, validate=True)
        except (binascii.Error, ValueError):
            continue
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            return None
        if any(not ch.isprintable() and ch not in "\r\n\t" for ch in text):
            return None
        return text
    return None


def parse_usage(header: str | None) -> SubscriptionUsage | None:
    """Parse a ``subscription-userinfo`` style header.

    ``upload=1; download=2; total=3; expire=1700000000``. Unknown keys and
    non-numeric values are ignored; ``None`` when nothing was recognised.
    """

    if not header:
        return None
    values: dict[str, int] = {}
    for chunk in header.split(";"):
        key, sep, raw = chunk.partition("=")
        key = key.strip().lower()
        if not sep or key not in _USAGE_KEYS:
            continue
        try:
            values[key] = max(0, int(float(raw.strip())))
        except (ValueError, OverflowError):
            continue
    if not values:
        return None
    return SubscriptionUsage(
        upload=values.get("upload", 0),
        download=values.get("download", 0),
        total=values.get("total"),
        expire=_from_epoch(values.get("expire")),
    )


def _from_epoch(seconds: int | None) -> datetime | None:
    if not seconds:
        return None
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


__all__ = [
    "AiohttpSubscriptionFetcher",
    "DecodeFailure",
    "FetchResult",
    "SubscriptionFetcher",
    "decode_subscription",
    "parse_usage",
]
