"""Throughput telemetry: sample buffer, payload coalescing and the traffic stream."""

from __future__ import annotations

import asyncio
import json
import logging
import math
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Mapping

import aiohttp

from .models import ThroughputSample

LOG = logging.getLogger(__name__)

MAX_SAMPLES = 180

# ``down``/``up`` is what the engine emits today; the rest are tolerated aliases.
DOWN_KEYS = ("down", "downstream", "downBytesPerSec", "down_bytes", "down_bps", "downrate")
UP_KEYS = ("up", "upstream", "upBytesPerSec", "up_bytes", "up_bps", "uprate")

SampleSink = Callable[[Mapping[str, Any]], None]


class ThroughputBuffer:
    """Bounded, time-ordered throughput history; oldest samples are evicted."""

    def __init__(self, capacity: int = MAX_SAMPLES) -> None:
        self._samples: deque[ThroughputSample] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._samples)

    def __iter__(self) -> Iterator[ThroughputSample]:
        return iter(self._samples)

    @property
    def capacity(self) -> int:
        return self._samples.maxlen or 0

    @property
    def latest(self) -> ThroughputSample | None:
        return self._samples[-1] if self._samples else None

    def append(self, sample: ThroughputSample) -> None:
        self._samples.append(sample)

    def record(self, down: float, up: float, *, timestamp: datetime | None = None) -> ThroughputSample:
        sample = ThroughputSample(
            timestamp=timestamp or datetime.now(tz=timezone.utc),
            down=down,
            up=up,
        )
        self.append(sample)
        return sample

    def snapshot(self) -> tuple[ThroughputSample, ...]:
        return tuple(self._samples)

    def clear(self) -> None:
        self._samples.clear()


def coalesce_rates(payload: Any) -> tuple[float, float]:
    """Reduce a throughput payload to ``(down, up)`` bytes per second.

    The first alias present wins; anything non-numeric counts as zero and
    negative rates are clamped.
    """

    if not isinstance(payload, Mapping):
        return 0.0, 0.0
    return _rate(payload, DOWN_KEYS), _rate(payload, UP_KEYS)


def _rate(payload: Mapping[str, Any], keys: tuple[str, ...]) -> float:
    for key in keys:
        value = payload.get(key)
        if value is None:
            continue
        try:
            number = float(value)
        except (TypeError, ValueError):
            return 0.0
        if math.isnan(number) or math.isinf(number):
            return 0.0
        return max(0.0, number)
    return 0.0


def format_rate(value: float) -> str:
    """Human readable rate (``1.5 MB/s``)."""

    if not math.isfinite(value) or value <= 0:
        return "0 B/s"
    units = ("B/s", "KB/s", "MB/s", "GB/s", "TB/s")
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    precision = 0 if value >= 100 else 1 if value >= 10 else 2
    return f"{value:.{precision}f} {units[index]}"


class TrafficCollector:
    """Streams ``{"up": .., "down": ..}`` lines from the engine's observatory.

    Each decoded object is forwarded to ``sink``. Connection failures back
    off exponentially (1s up to 30s) until :meth:`stop` is called.
    """

    def __init__(
        self,
        url: str,
        sink: SampleSink,
        *,
        token: str | None = None,
        timeout: float = 15.0,
        max_backoff: float = 30.0,
    ) -> None:
        self._url = url
        self._sink = sink
        self._token = token
        self._timeout = timeout
        self._max_backoff = max_backoff
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        delay = 1.0
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=self._timeout)
        while True:
            try:
                async with aiohttp.ClientSession(timeout=timeout) as session:
                    async with session.get(self._url, headers=headers) as response:
                        response.raise_for_status()
                        delay = 1.0
                        async for raw in response.content:
                            self._forward(raw)
            except asyncio.CancelledError:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                LOG.debug("Traffic stream interrupted", extra={"url": self._url, "error": str(exc)})
            await asyncio.sleep(delay)
            delay = min(delay * 2, self._max_backoff)

    def _forward(self, raw: bytes) -> None:
        line = raw.strip()
        if not line:
            return
        try:
            payload = json.loads(line)
        except ValueError:
            LOG.debug("Ignoring malformed traffic sample")
            return
        if isinstance(payload, Mapping):
            self._sink(payload)


__all__ = [
    "DOWN_KEYS",
    "MAX_SAMPLES",
    "ThroughputBuffer",
    "TrafficCollector",
    "UP_KEYS",
    "coalesce_rates",
    "format_rate",
]
