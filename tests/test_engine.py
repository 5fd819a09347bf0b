"""Tests for connect request builders and the demo engine."""

from __future__ import annotations

import pytest

from veilbox.config import DnsConfig, DnsServerConfig, MetricsConfig, RegionConfig
from veilbox.engine import (
    ConnectRequest,
    DemoTunnelEngine,
    EngineFailure,
    build_dns_settings,
    build_metrics,
    build_region_routing,
    build_split_tunnel,
    derive_dns_tag,
    infer_dns_type,
    split_list,
)
from veilbox.models import SplitTunnelForm


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def test_split_list_accepts_mixed_separators() -> None:
    assert split_list("a.com, b.com;c.com\n\n  d.com ") == ("a.com", "b.com", "c.com", "d.com")
    assert split_list("") == ()


def test_build_split_tunnel_drops_empty_lists() -> None:
    form = SplitTunnelForm(bypass_domains="lan.local\nrouter.home", block_apps="spy.exe")

    settings = build_split_tunnel(form, enabled=True)

    assert settings is not None
    assert settings.to_payload() == {
        "bypassDomains": ["lan.local", "router.home"],
        "blockProcesses": ["spy.exe"],
    }


def test_build_split_tunnel_returns_none_when_disabled_or_empty() -> None:
    form = SplitTunnelForm(bypass_domains="lan.local")

    assert build_split_tunnel(form, enabled=False) is None
    assert build_split_tunnel(SplitTunnelForm(proxy_ips=" ,; "), enabled=True) is None


@pytest.mark.parametrize(
    ("address", "expected_type", "expected_tag"),
    [
        ("https://dns.google/dns-query", "https", "dns.google"),
        ("tls://1.1.1.1", "tls", "1.1.1.1"),
        ("8.8.8.8", "udp", "8.8.8.8"),
        ("local", "local", "local"),
    ],
)
def test_dns_type_and_tag_inference(address: str, expected_type: str, expected_tag: str) -> None:
    assert infer_dns_type(address) == expected_type
    assert derive_dns_tag(address) == expected_tag


def test_build_dns_settings_fills_defaults() -> None:
    config = DnsConfig(
        strategy="",
        servers=[
            DnsServerConfig(address="https://dns.google/dns-query", detour="proxy"),
            DnsServerConfig(address="   "),
            DnsServerConfig(tag="custom", type="TCP", address="9.9.9.9", strategy="ipv4_only"),
        ],
    )

    settings = build_dns_settings(config)

    assert settings is not None
    assert settings.to_payload() == {
        "strategy": "prefer_ipv4",
        "servers": [
            {"tag": "dns.google", "type": "https", "address": "https://dns.google/dns-query", "detour": "proxy"},
            {"tag": "custom", "type": "tcp", "address": "9.9.9.9", "strategy": "ipv4_only"},
        ],
    }


def test_build_dns_settings_none_without_input() -> None:
    assert build_dns_settings(DnsConfig(strategy="", servers=[])) is None


def test_build_dns_settings_ignores_unknown_strategies() -> None:
    config = DnsConfig(
        strategy="fastest",
        servers=[
            DnsServerConfig(address="8.8.8.8", strategy="IPV6_ONLY"),
            DnsServerConfig(address="1.1.1.1", strategy="x"),
        ],
    )

    settings = build_dns_settings(config)

    assert settings is not None
    assert settings.strategy == "prefer_ipv4"
    assert [server.strategy for server in settings.servers] == ["ipv6_only", None]
    assert build_dns_settings(DnsConfig(strategy="fastest", servers=[])) is None


def test_build_region_routing_upper_cases_codes() -> None:
    settings = build_region_routing(RegionConfig(proxy_countries=["us", " de "], block_countries=[""]))

    assert settings is not None
    assert settings.proxy_countries == ("US", "DE")
    assert settings.block_countries == ()
    assert build_region_routing(RegionConfig()) is None


def test_build_metrics_only_when_enabled() -> None:
    assert build_metrics(MetricsConfig()) is None

    settings = build_metrics(MetricsConfig(enable_observatory=True, observatory_listen="", observatory_token="t0k"))

    assert settings is not None
    assert settings.listen == "127.0.0.1:9090"
    assert settings.traffic_url == "http://127.0.0.1:9090/traffic"
    assert settings.to_payload() == {
        "enableObservatory": True,
        "observatoryListen": "127.0.0.1:9090",
        "observatoryToken": "t0k",
    }


def test_connect_request_payload_omits_unset_sections() -> None:
    request = ConnectRequest(uri="vless://u@host:443", mode="tun")

    assert request.to_payload() == {"VLESSURI": "vless://u@host:443", "Mode": "tun"}


@pytest.mark.anyio
async def test_demo_engine_records_calls_and_fails_on_request() -> None:
    engine = DemoTunnelEngine(fail_on={"enable_system_proxy"})
    request = ConnectRequest(uri="vless://u@host:443")

    await engine.connect(request)
    with pytest.raises(EngineFailure):
        await engine.enable_system_proxy()
    await engine.disconnect()

    assert engine.calls == ["connect", "enable_system_proxy", "disconnect"]
    assert engine.requests == [request]
    assert engine.connected is False
    assert engine.proxy_enabled is False


@pytest.mark.anyio
async def test_demo_engine_tails_bounded_log() -> None:
    engine = DemoTunnelEngine(log_capacity=3)
    for index in range(5):
        engine.log(f"line {index}")

    lines = await engine.tail_logs(2)

    assert len(await engine.tail_logs(100)) == 3
    assert [line.split(" ", 1)[1] for line in lines] == ["line 3", "line 4"]


def test_demo_engine_pushes_events_to_subscribers() -> None:
    engine = DemoTunnelEngine()
    seen: list[tuple[str, object]] = []

    unsubscribe = engine.subscribe(lambda event, payload: seen.append((event, payload)))
    engine.emit("tray:state", "connected")
    unsubscribe()
    engine.emit("tray:state", "disconnected")

    assert seen == [("tray:state", "connected")]
