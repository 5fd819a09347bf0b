"""Connection session state machine wired to the external tunnel engine."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping

from .engine import ConnectRequest, EngineFailure, TunnelEngine
from .enrichment import AddressLookup, LatencyProbe, PublicAddress
from .models import Profile, ThroughputSample
from .tasks import KeyedTasks
from .telemetry import ThroughputBuffer, TrafficCollector, coalesce_rates

LOG = logging.getLogger(__name__)

SessionListener = Callable[["SessionState"], None]
Notifier = Callable[[str, str], None]
CollectorFactory = Callable[..., TrafficCollector]

READY_MESSAGE = "Choose a profile and connect to enable secure browsing."
LATENCY_KEY = "session:latency"
ADDRESS_KEY = "session:public-address"


class SessionStatus(str, Enum):
    """Lifecycle of the tunnel session."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class SessionState:
    """Current session snapshot, ephemeral and never persisted."""

    status: SessionStatus = SessionStatus.IDLE
    profile_id: str | None = None
    profile_label: str | None = None
    connected_at: datetime | None = None
    latency_ms: int | None = None
    message: str = READY_MESSAGE
    public_address: PublicAddress = PublicAddress()
    elapsed: str = "00:00:00"

    @property
    def connected(self) -> bool:
        return self.status is SessionStatus.CONNECTED

    @property
    def active(self) -> bool:
        """Connected or on the way there."""

        return self.status in (SessionStatus.CONNECTING, SessionStatus.CONNECTED)

    @property
    def can_connect(self) -> bool:
        return self.status in (SessionStatus.IDLE, SessionStatus.ERROR)


def format_duration(seconds: float) -> str:
    if seconds <= 0:
        return "00:00:00"
    total = int(seconds)
    return f"{total // 3600:02d}:{(total % 3600) // 60:02d}:{total % 60:02d}"


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class SessionManager:
    """Drives connect/disconnect against the engine and system proxy.

    A failed connect never leaves the system proxy enabled: if enabling the
    proxy fails after the engine connected, the engine is told to disconnect
    and the proxy is disabled again before the session lands in ``ERROR``.
    Disconnect always attempts both teardown steps and always returns to
    ``IDLE``; failures are reported through the message and notifier.
    """

    def __init__(
        self,
        engine: TunnelEngine,
        *,
        latency_probe: LatencyProbe | None = None,
        address_lookup: AddressLookup | None = None,
        notifier: Notifier | None = None,
        collector_factory: CollectorFactory | None = TrafficCollector,
        clock: Callable[[], datetime] = _utcnow,
        tick_interval: float = 1.0,
        address_refresh_delay: float = 1.0,
    ) -> None:
        self._engine = engine
        self._latency_probe = latency_probe
        self._address_lookup = address_lookup
        self._notifier = notifier
        self._collector_factory = collector_factory
        self._clock = clock
        self._tick_interval = tick_interval
        self._address_refresh_delay = address_refresh_delay
        self._state = SessionState()
        self._listeners: set[SessionListener] = set()
        self._tasks = KeyedTasks()
        self._throughput = ThroughputBuffer()
        self._ticker: asyncio.Task[None] | None = None
        self._collector: TrafficCollector | None = None
        self._generation = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def throughput(self) -> ThroughputBuffer:
        return self._throughput

    @property
    def tasks(self) -> KeyedTasks:
        return self._tasks

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Subscribe to session updates; returns an unsubscribe handle."""

        self._listeners.add(listener)
        listener(self._state)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    async def connect(self, profile: Profile | None, request: ConnectRequest | None = None) -> SessionState:
        """Open a tunnel for ``profile``; ignored unless idle or errored."""

        if not self._state.can_connect:
            LOG.debug("Ignoring connect while session is busy", extra={"status": self._state.status.value})
            return self._state
        if profile is None:
            self._transition(status=SessionStatus.IDLE, message="Select a profile to connect.")
            return self._state

        request = request or ConnectRequest(uri=profile.uri)
        self._generation += 1
        generation = self._generation
        self._transition(
            status=SessionStatus.CONNECTING,
            profile_id=profile.id,
            profile_label=profile.label,
            latency_ms=None,
            message=f"Connecting to {profile.label}...",
        )

        try:
            await self._invoke("connect", lambda: self._engine.connect(request))
        except EngineFailure as exc:
            if generation == self._generation:
                self._fail_connect(str(exc))
            return self._state
        if generation != self._generation:
            return self._state

        try:
            await self._invoke("enable_system_proxy", self._engine.enable_system_proxy)
        except EngineFailure as exc:
            await self._compensate_failed_connect()
            if generation == self._generation:
                self._fail_connect(str(exc))
            return self._state
        if generation != self._generation:
            return self._state

        self._transition(
            status=SessionStatus.CONNECTED,
            connected_at=self._clock(),
            elapsed="00:00:00",
            message=f"Connected to {profile.label}.",
        )
        self._notify_user(f"Connected to {profile.label}", "information")
        self.measure_latency(profile.info.probe_target)
        self.refresh_public_address(delay=self._address_refresh_delay)
        if request.metrics is not None:
            self._start_collector(request.metrics.traffic_url, request.metrics.token)
        return self._state

    async def disconnect(self) -> SessionState:
        """Stop the engine and disable the system proxy, best effort."""

        self._generation += 1
        errors: list[str] = []
        try:
            await self._invoke("disconnect", self._engine.disconnect)
        except EngineFailure as exc:
            errors.append(f"Disconnect failed: {exc}")
        try:
            await self._invoke("disable_system_proxy", self._engine.disable_system_proxy)
        except EngineFailure as exc:
            errors.append(f"Disable proxy failed: {exc}")

        for error in errors:
            self._notify_user(error, "error")
        self._transition(
            status=SessionStatus.IDLE,
            profile_id=None,
            profile_label=None,
            connected_at=None,
            latency_ms=None,
            elapsed="00:00:00",
            message=errors[-1] if errors else "Disconnected. Ready to connect.",
        )
        if not errors:
            self._notify_user("Disconnected", "information")
        self.refresh_public_address()
        return self._state

    def apply_remote_state(self, value: str, *, profile: Profile | None = None) -> None:
        """Mirror a state change made outside the app (e.g. from the tray)."""

        if value == "connected":
            if self._state.connected:
                return
            self._generation += 1
            self._transition(
                status=SessionStatus.CONNECTED,
                profile_id=profile.id if profile else self._state.profile_id,
                profile_label=profile.label if profile else self._state.profile_label,
                connected_at=self._clock(),
                elapsed="00:00:00",
                message="Connection restored from tray.",
            )
            self._notify_user("Connection is active", "information")
        elif value == "disconnected":
            was_active = self._state.active
            if was_active:
                self._generation += 1
            self._transition(
                status=SessionStatus.IDLE,
                profile_id=None,
                profile_label=None,
                connected_at=None,
                latency_ms=None,
                elapsed="00:00:00",
                message="Disconnected.",
            )
            if was_active:
                self._notify_user("Connection stopped", "information")
        else:
            LOG.debug("Ignoring unknown remote state", extra={"value": value})

    def ingest_throughput(self, payload: Mapping[str, Any] | Any) -> ThroughputSample | None:
        """Record a telemetry sample; dropped unless connected."""

        if not self._state.connected:
            return None
        down, up = coalesce_rates(payload)
        return self._throughput.record(down, up, timestamp=self._clock())

    def measure_latency(self, target: str | None) -> None:
        """Schedule a latency probe; clears the reading when not connected."""

        if not self._state.connected or not target or self._latency_probe is None:
            self._tasks.cancel(LATENCY_KEY)
            if self._state.latency_ms is not None and not self._state.connected:
                self._transition(latency_ms=None)
            return
        probe = self._latency_probe
        self._tasks.submit(LATENCY_KEY, lambda: probe.probe(target), on_result=self._apply_latency)

    def refresh_public_address(self, *, delay: float = 0.0) -> None:
        if self._address_lookup is None:
            return
        self._tasks.submit(ADDRESS_KEY, self._address_lookup.lookup, on_result=self._apply_address, delay=delay)

    async def shutdown(self) -> None:
        self._stop_ticker()
        self._stop_collector()
        self._tasks.cancel_all()

    def _apply_latency(self, latency: int | None) -> None:
        if self._state.connected:
            self._transition(latency_ms=latency)

    def _apply_address(self, address: PublicAddress) -> None:
        self._transition(public_address=address)

    async def _invoke(self, step: str, call: Callable[[], Awaitable[None]]) -> None:
        try:
            await call()
        except EngineFailure:
            raise
        except Exception as exc:
            LOG.exception("Engine call failed", extra={"step": step})
            raise EngineFailure(f"{step} failed: {exc}") from exc

    async def _compensate_failed_connect(self) -> None:
        for step, call in (
            ("disconnect", self._engine.disconnect),
            ("disable_system_proxy", self._engine.disable_system_proxy),
        ):
            try:
                await self._invoke(step, call)
            except EngineFailure as exc:
                LOG.warning("Cleanup after failed connect did not complete", extra={"step": step, "error": str(exc)})

    def _fail_connect(self, message: str) -> None:
        self._transition(
            status=SessionStatus.ERROR,
            connected_at=None,
            latency_ms=None,
            elapsed="00:00:00",
            message=message,
        )
        self._notify_user(f"Connect failed: {message}", "error")

    def _transition(self, **changes: Any) -> None:
        previous = self._state
        self._state = replace(previous, **changes)
        if previous.connected and not self._state.connected:
            self._leave_connected()
        elif self._state.connected and not previous.connected:
            self._start_ticker()
        self._emit()

    def _leave_connected(self) -> None:
        self._stop_ticker()
        self._stop_collector()
        self._tasks.cancel(LATENCY_KEY)
        self._throughput.clear()

    def _start_ticker(self) -> None:
        self._stop_ticker()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._ticker = loop.create_task(self._tick())

    def _stop_ticker(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None

    async def _tick(self) -> None:
        while self._state.connected:
            await asyncio.sleep(self._tick_interval)
            started = self._state.connected_at
            if not self._state.connected or started is None:
                return
            self._state = replace(self._state, elapsed=format_duration((self._clock() - started).total_seconds()))
            self._emit()

    def _start_collector(self, url: str, token: str | None) -> None:
        if self._collector_factory is None:
            return
        self._stop_collector()
        self._collector = self._collector_factory(url, self.ingest_throughput, token=token)
        self._collector.start()

    def _stop_collector(self) -> None:
        if self._collector is not None:
            self._collector.stop()
            self._collector = None

    def _notify_user(self, message: str, severity: str) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier(message, severity)
        except Exception:
            LOG.exception("Failed to deliver notification", extra={"notice": message})

    def _emit(self) -> None:
        for listener in tuple(self._listeners):
            try:
                listener(self._state)
            except Exception:
                LOG.exception("Session listener failed")


__all__ = [
    "READY_MESSAGE",
    "SessionListener",
    "SessionManager",
    "SessionState",
    "SessionStatus",
    "format_duration",
]
