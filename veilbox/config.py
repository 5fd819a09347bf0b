"""App configuration loading helpers."""

from __future__ import annotations

from pathlib import Path

import tomllib

from pydantic import BaseModel, Field

CONFIG_DIR = Path.home() / ".config" / "veilbox"
CONFIG_FILE = CONFIG_DIR / "config.toml"
STATE_FILE = CONFIG_DIR / "state.json"

_MODES = ("proxy", "tun")
DNS_STRATEGIES = ("prefer_ipv4", "prefer_ipv6", "ipv4_only", "ipv6_only")


class DnsServerConfig(BaseModel):
    """One upstream DNS server row."""

    tag: str = ""
    type: str = ""
    address: str = ""
    detour: str = ""
    strategy: str = ""


class DnsConfig(BaseModel):
    """DNS overlay passed to the engine on connect."""

    strategy: str = "prefer_ipv4"
    servers: list[DnsServerConfig] = Field(default_factory=list)


class RegionConfig(BaseModel):
    """Per-country routing lists (ISO 3166 alpha-2 codes)."""

    proxy_countries: list[str] = Field(default_factory=list)
    direct_countries: list[str] = Field(default_factory=list)
    block_countries: list[str] = Field(default_factory=list)


class MetricsConfig(BaseModel):
    """Observatory exposure used for live throughput."""

    enable_observatory: bool = False
    observatory_listen: str = "127.0.0.1:9090"
    observatory_token: str = ""


class AppConfig(BaseModel):
    """Shape of the application configuration file."""

    theme: str = "dark"
    mode: str = "proxy"
    log_poll_interval: float = 0.7
    log_tail_lines: int = 200
    subscription_timeout: float = 15.0
    state_file: Path = STATE_FILE
    country_lookup_url: str = "https://ipapi.co/{host}/json/"
    public_ip_url: str = "https://ipapi.co/json/"
    dns: DnsConfig = Field(default_factory=DnsConfig)
    region: RegionConfig = Field(default_factory=RegionConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)

    def with_mode(self, mode: str) -> AppConfig:
        """Return a copy with the engine mode updated."""

        if mode not in _MODES:
            raise ValueError(f"Unsupported mode '{mode}'.")
        return self.model_copy(update={"mode": mode})

    def with_metrics(self, **updates: object) -> AppConfig:
        """Return a copy with metrics settings changed."""

        metrics = self.metrics.model_copy(update=updates)
        return self.model_copy(update={"metrics": metrics})

    def with_region(self, **updates: object) -> AppConfig:
        region = self.region.model_copy(update=updates)
        return self.model_copy(update={"region": region})


def load_config() -> AppConfig:
    """Load configuration from disk; fall back to defaults if missing."""

    try:
        data = _read_config_file()
    except FileNotFoundError:
        return AppConfig()
    except (tomllib.TOMLDecodeError, OSError):
        return AppConfig()
    return AppConfig(**data)


def save_config(config: AppConfig) -> None:
    """Persist configuration to disk."""

    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    lines: list[str] = [
        f'theme = "{config.theme}"',
        f'mode = "{config.mode}"',
        f"log_poll_interval = {config.log_poll_interval}",
        f"log_tail_lines = {config.log_tail_lines}",
        f"subscription_timeout = {config.subscription_timeout}",
        f'state_file = "{_escape(str(config.state_file))}"',
        f'country_lookup_url = "{_escape(config.country_lookup_url)}"',
        f'public_ip_url = "{_escape(config.public_ip_url)}"',
        "",
        "[dns]",
        f'strategy = "{config.dns.strategy}"',
    ]
    for server in config.dns.servers:
        lines.append("")
        lines.append("[[dns.servers]]")
        for key in ("tag", "type", "address", "detour", "strategy"):
            value = getattr(server, key)
            if value:
                lines.append(f'{key} = "{_escape(value)}"')
    lines.append("")
    lines.append("[region]")
    for key in ("proxy_countries", "direct_countries", "block_countries"):
        codes = ", ".join(f'"{_escape(code)}"' for code in getattr(config.region, key))
        lines.append(f"{key} = [{codes}]")
    lines.append("")
    lines.append("[metrics]")
    lines.append(f"enable_observatory = {str(config.metrics.enable_observatory).lower()}")
    lines.append(f'observatory_listen = "{_escape(config.metrics.observatory_listen)}"')
    if config.metrics.observatory_token:
        lines.append(f'observatory_token = "{_escape(config.metrics.observatory_token)}"')
    CONFIG_FILE.write_text("\n".join(lines) + "\n")


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _read_config_file() -> dict[str, object]:
    with CONFIG_FILE.open("rb") as handle:
        raw = tomllib.load(handle)
    data: dict[str, object] = {}
    if not isinstance(raw, dict):
        return data
    for key in ("theme", "country_lookup_url", "public_ip_url"):
        value = raw.get(key)
        if isinstance(value, str):
            data[key] = value
    mode = raw.get("mode")
    if isinstance(mode, str) and mode.lower() in _MODES:
        data["mode"] = mode.lower()
    for key in ("log_poll_interval", "subscription_timeout"):
        value = raw.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
            data[key] = float(value)
    tail = raw.get("log_tail_lines")
    if isinstance(tail, int) and not isinstance(tail, bool) and tail > 0:
        data["log_tail_lines"] = tail
    state_file = raw.get("state_file")
    if isinstance(state_file, str) and state_file:
        data["state_file"] = Path(state_file).expanduser()
    dns = raw.get("dns")
    if isinstance(dns, dict):
        parsed_dns: dict[str, object] = {}
        strategy = dns.get("strategy")
        if isinstance(strategy, str) and strategy.lower() in DNS_STRATEGIES:
            parsed_dns["strategy"] = strategy.lower()
        servers = dns.get("servers")
        if isinstance(servers, list):
            rows: list[DnsServerConfig] = []
            for server in servers:
                if not isinstance(server, dict):
                    continue
                fields = {
                    key: value
                    for key, value in server.items()
                    if key in DnsServerConfig.model_fields and isinstance(value, str)
                }
                if fields.get("strategy", "").lower() not in DNS_STRATEGIES:
                    fields.pop("strategy", None)
                rows.append(DnsServerConfig(**fields))
            parsed_dns["servers"] = rows
        data["dns"] = DnsConfig(**parsed_dns)
    region = raw.get("region")
    if isinstance(region, dict):
        lists: dict[str, list[str]] = {}
        for key in RegionConfig.model_fields:
            values = region.get(key)
            if isinstance(values, list):
                lists[key] = [str(value) for value in values if isinstance(value, str)]
        data["region"] = RegionConfig(**lists)
    metrics = raw.get("metrics")
    if isinstance(metrics, dict):
        state: dict[str, object] = {}
        enabled = metrics.get("enable_observatory")
        if isinstance(enabled, bool):
            state["enable_observatory"] = enabled
        for key in ("observatory_listen", "observatory_token"):
            value = metrics.get(key)
            if isinstance(value, str):
                state[key] = value
        data["metrics"] = MetricsConfig(**state)
    return data


__all__ = [
    "AppConfig",
    "CONFIG_FILE",
    "DNS_STRATEGIES",
    "DnsConfig",
    "DnsServerConfig",
    "MetricsConfig",
    "RegionConfig",
    "STATE_FILE",
    "load_config",
    "save_config",
]
