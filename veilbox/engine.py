"""Tunnel engine boundary: connect requests, the engine protocol and a demo engine."""

from __future__ import annotations

import re
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Protocol, runtime_checkable

from .config import DNS_STRATEGIES, DnsConfig, MetricsConfig, RegionConfig
from .models import SplitTunnelForm

DEFAULT_MODE = "proxy"
DEFAULT_DNS_STRATEGY = "prefer_ipv4"
DEFAULT_OBSERVATORY_LISTEN = "127.0.0.1:9090"

_LIST_SEPARATORS = re.compile(r"[\n,;]")

EngineListener = Callable[[str, Any], None]


class EngineFailure(RuntimeError):
    """Raised when the tunnel engine rejects a connect/disconnect/proxy call."""


@dataclass(frozen=True, slots=True)
class SplitTunnelSettings:
    """Domain/IP/process rule lists for each outbound."""

    bypass_domains: tuple[str, ...] = ()
    bypass_ips: tuple[str, ...] = ()
    bypass_processes: tuple[str, ...] = ()
    proxy_domains: tuple[str, ...] = ()
    proxy_ips: tuple[str, ...] = ()
    proxy_processes: tuple[str, ...] = ()
    block_domains: tuple[str, ...] = ()
    block_ips: tuple[str, ...] = ()
    block_processes: tuple[str, ...] = ()

    def to_payload(self) -> dict[str, list[str]]:
        payload = {
            "bypassDomains": self.bypass_domains,
            "bypassIPs": self.bypass_ips,
            "bypassProcesses": self.bypass_processes,
            "proxyDomains": self.proxy_domains,
            "proxyIPs": self.proxy_ips,
            "proxyProcesses": self.proxy_processes,
            "blockDomains": self.block_domains,
            "blockIPs": self.block_ips,
            "blockProcesses": self.block_processes,
        }
        return {key: list(values) for key, values in payload.items() if values}


@dataclass(frozen=True, slots=True)
class DNSUpstream:
    tag: str
    type: str
    address: str
    detour: str | None = None
    strategy: str | None = None

    def to_payload(self) -> dict[str, str]:
        payload = {"tag": self.tag, "type": self.type, "address": self.address}
        if self.detour:
            payload["detour"] = self.detour
        if self.strategy:
            payload["strategy"] = self.strategy
        return payload


@dataclass(frozen=True, slots=True)
class DNSSettings:
    strategy: str = DEFAULT_DNS_STRATEGY
    servers: tuple[DNSUpstream, ...] = ()

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"strategy": self.strategy}
        if self.servers:
            payload["servers"] = [server.to_payload() for server in self.servers]
        return payload


@dataclass(frozen=True, slots=True)
class RegionRoutingSettings:
    proxy_countries: tuple[str, ...] = ()
    direct_countries: tuple[str, ...] = ()
    block_countries: tuple[str, ...] = ()

    def to_payload(self) -> dict[str, list[str]]:
        return {
            "proxyCountries": list(self.proxy_countries),
            "directCountries": list(self.direct_countries),
            "blockCountries": list(self.block_countries),
        }


@dataclass(frozen=True, slots=True)
class MetricsSettings:
    listen: str = DEFAULT_OBSERVATORY_LISTEN
    token: str | None = None

    @property
    def traffic_url(self) -> str:
        base = self.listen if "://" in self.listen else f"http://{self.listen}"
        return base.rstrip("/") + "/traffic"

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"enableObservatory": True, "observatoryListen": self.listen}
        if self.token:
            payload["observatoryToken"] = self.token
        return payload


@dataclass(frozen=True, slots=True)
class ConnectRequest:
    """Everything the engine needs to open a tunnel for one profile."""

    uri: str
    mode: str = DEFAULT_MODE
    split_tunnel: SplitTunnelSettings | None = None
    dns: DNSSettings | None = None
    region_routing: RegionRoutingSettings | None = None
    metrics: MetricsSettings | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"VLESSURI": self.uri, "Mode": self.mode}
        if self.split_tunnel is not None:
            payload["SplitTunnel"] = self.split_tunnel.to_payload()
        if self.dns is not None:
            payload["DNS"] = self.dns.to_payload()
        if self.region_routing is not None:
            payload["RegionRouting"] = self.region_routing.to_payload()
        if self.metrics is not None:
            payload["Metrics"] = self.metrics.to_payload()
        return payload


def split_list(raw: str) -> tuple[str, ...]:
    """Split free-text input on newlines, commas and semicolons."""

    return tuple(entry.strip() for entry in _LIST_SEPARATORS.split(raw or "") if entry.strip())


def build_split_tunnel(form: SplitTunnelForm, *, enabled: bool) -> SplitTunnelSettings | None:
    if not enabled:
        return None
    settings = SplitTunnelSettings(
        bypass_domains=split_list(form.bypass_domains),
        bypass_ips=split_list(form.bypass_ips),
        bypass_processes=split_list(form.bypass_apps),
        proxy_domains=split_list(form.proxy_domains),
        proxy_ips=split_list(form.proxy_ips),
        proxy_processes=split_list(form.proxy_apps),
        block_domains=split_list(form.block_domains),
        block_ips=split_list(form.block_ips),
        block_processes=split_list(form.block_apps),
    )
    return settings if settings.to_payload() else None


def derive_dns_tag(address: str) -> str:
    clean = re.sub(r"^(https?|tls|tcp|udp)://", "", address.strip(), flags=re.IGNORECASE)
    slash = clean.find("/")
    if slash > 0:
        clean = clean[:slash]
    return clean or "dns"


def infer_dns_type(address: str) -> str:
    if address == "local":
        return "local"
    for prefix in ("https", "tls", "tcp", "udp"):
        if address.startswith(f"{prefix}://"):
            return prefix
    return "udp"


def build_dns_settings(config: DnsConfig) -> DNSSettings | None:
    servers: list[DNSUpstream] = []
    for row in config.servers:
        address = row.address.strip()
        if not address:
            continue
        servers.append(
            DNSUpstream(
                tag=row.tag.strip() or derive_dns_tag(address),
                type=row.type.strip().lower() or infer_dns_type(address),
                address=address,
                detour=row.detour.strip() or None,
                strategy=_strategy(row.strategy),
            )
        )
    strategy = _strategy(config.strategy)
    if not servers and not strategy:
        return None
    return DNSSettings(strategy=strategy or DEFAULT_DNS_STRATEGY, servers=tuple(servers))


def _strategy(value: str) -> str | None:
    value = value.strip().lower()
    return value if value in DNS_STRATEGIES else None


def build_region_routing(config: RegionConfig) -> RegionRoutingSettings | None:
    def _codes(values: Iterable[str]) -> tuple[str, ...]:
        return tuple(value.strip().upper() for value in values if value.strip())

    proxy = _codes(config.proxy_countries)
    direct = _codes(config.direct_countries)
    block = _codes(config.block_countries)
    if not (proxy or direct or block):
        return None
    return RegionRoutingSettings(proxy_countries=proxy, direct_countries=direct, block_countries=block)


def build_metrics(config: MetricsConfig) -> MetricsSettings | None:
    if not config.enable_observatory:
        return None
    return MetricsSettings(
        listen=config.observatory_listen.strip() or DEFAULT_OBSERVATORY_LISTEN,
        token=config.observatory_token.strip() or None,
    )


@runtime_checkable
class TunnelEngine(Protocol):
    """Capabilities consumed from the external tunnel engine."""

    async def connect(self, request: ConnectRequest) -> None: ...

    async def disconnect(self) -> None: ...

    async def enable_system_proxy(self) -> None: ...

    async def disable_system_proxy(self) -> None: ...

    async def tail_logs(self, max_lines: int) -> list[str]: ...

    def subscribe(self, listener: EngineListener) -> Callable[[], None]: ...


@dataclass(slots=True)
class DemoTunnelEngine:
    """In-memory engine that records calls and can be told to fail.

    Used when no real core is wired in and as the engine double in tests.
    """

    fail_on: set[str] = field(default_factory=set)
    log_capacity: int = 2000
    calls: list[str] = field(default_factory=list)
    requests: list[ConnectRequest] = field(default_factory=list)
    connected: bool = False
    proxy_enabled: bool = False
    _logs: deque[str] = field(init=False, repr=False)
    _listeners: set[EngineListener] = field(default_factory=set, init=False, repr=False)

    def __post_init__(self) -> None:
        self._logs = deque(maxlen=self.log_capacity if self.log_capacity > 0 else 500)

    async def connect(self, request: ConnectRequest) -> None:
        self._step("connect")
        self.requests.append(request)
        self.connected = True
        self.log(f"core started in {request.mode} mode")

    async def disconnect(self) -> None:
        self._step("disconnect")
        self.connected = False
        self.log("core stopped")

    async def enable_system_proxy(self) -> None:
        self._step("enable_system_proxy")
        self.proxy_enabled = True

    async def disable_system_proxy(self) -> None:
        self._step("disable_system_proxy")
        self.proxy_enabled = False

    async def tail_logs(self, max_lines: int) -> list[str]:
        lines = list(self._logs)
        if max_lines <= 0 or max_lines >= len(lines):
            return lines
        return lines[-max_lines:]

    def subscribe(self, listener: EngineListener) -> Callable[[], None]:
        self._listeners.add(listener)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    def emit(self, event: str, payload: Any = None) -> None:
        """Push an out-of-band event to listeners (tray actions, telemetry)."""

        for listener in tuple(self._listeners):
            listener(event, payload)

    def log(self, line: str) -> None:
        stamp = datetime.now(tz=timezone.utc).strftime("%H:%M:%S")
        self._logs.append(f"{stamp} {line}")

    def _step(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail_on:
            raise EngineFailure(f"{name} failed")


__all__ = [
    "ConnectRequest",
    "DNSSettings",
    "DNSUpstream",
    "DNS_STRATEGIES",
    "DemoTunnelEngine",
    "EngineFailure",
    "EngineListener",
    "MetricsSettings",
    "RegionRoutingSettings",
    "SplitTunnelSettings",
    "TunnelEngine",
    "build_dns_settings",
    "build_metrics",
    "build_region_routing",
    "build_split_tunnel",
    "derive_dns_tag",
    "infer_dns_type",
    "split_list",
]
