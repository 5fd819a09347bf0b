"""Best-effort enrichment collaborators: geo-IP country, latency and public address."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable
from urllib.parse import quote

import aiohttp

from .models import UNRESOLVED_COUNTRY

LOG = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PublicAddress:
    """Externally observed address of this machine."""

    ip: str = "-"
    location: str = "-"


@runtime_checkable
class CountryResolver(Protocol):
    async def resolve(self, host: str) -> str: ...


@runtime_checkable
class LatencyProbe(Protocol):
    async def probe(self, target: str) -> int | None: ...


@runtime_checkable
class AddressLookup(Protocol):
    async def lookup(self) -> PublicAddress: ...


class _JsonClient:
    def __init__(self, timeout: float) -> None:
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def _get_json(self, url: str) -> dict[str, Any] | None:
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.get(url, headers={"Accept": "application/json"}) as response:
                    if response.status != 200:
                        return None
                    data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            LOG.debug("Lookup failed", extra={"url": url, "error": str(exc)})
            return None
        return data if isinstance(data, dict) else None


class IpApiCountryResolver(_JsonClient):
    """Resolves a host to a country name through an ipapi-style JSON endpoint.

    Successful answers are cached per lower-cased host; failures return the
    unresolved sentinel and are retried on the next call.
    """

    def __init__(self, url_template: str = "https://ipapi.co/{host}/json/", *, timeout: float = 5.0) -> None:
        super().__init__(timeout)
        self._url_template = url_template
        self._cache: dict[str, str] = {}

    async def resolve(self, host: str) -> str:
        key = (host or "").strip().lower()
        if not key:
            return UNRESOLVED_COUNTRY
        if key in self._cache:
            return self._cache[key]
        data = await self._get_json(self._url_template.format(host=quote(key, safe="")))
        if not data:
            return UNRESOLVED_COUNTRY
        value = data.get("country_name") or data.get("country") or data.get("country_code")
        if not isinstance(value, str) or not value:
            return UNRESOLVED_COUNTRY
        self._cache[key] = value
        return value


class HttpLatencyProbe:
    """Times a single HTTPS request to the target; any response counts."""

    def __init__(self, *, timeout: float = 5.0) -> None:
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def probe(self, target: str) -> int | None:
        if not target:
            return None
        started = time.perf_counter()
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.get(f"https://{target}", allow_redirects=False) as response:
                    await response.release()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            LOG.debug("Latency probe failed", extra={"target": target, "error": str(exc)})
        return int((time.perf_counter() - started) * 1000)


class IpApiAddressLookup(_JsonClient):
    """Looks up this machine's public IP and country."""

    def __init__(self, url: str = "https://ipapi.co/json/", *, timeout: float = 5.0) -> None:
        super().__init__(timeout)
        self._url = url

    async def lookup(self) -> PublicAddress:
        data = await self._get_json(self._url)
        if not data:
            return PublicAddress()
        return PublicAddress(
            ip=str(data.get("ip") or "-"),
            location=str(data.get("country_name") or data.get("country") or "-"),
        )


__all__ = [
    "AddressLookup",
    "CountryResolver",
    "HttpLatencyProbe",
    "IpApiAddressLookup",
    "IpApiCountryResolver",
    "LatencyProbe",
    "PublicAddress",
]
