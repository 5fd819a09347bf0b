"""Shared dataclasses used across the profile, subscription and session modules."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime

UNRESOLVED_COUNTRY = "-"


def new_id() -> str:
    """Mint an opaque, stable identifier for profiles and subscriptions."""

    return uuid.uuid4().hex


@dataclass(frozen=True, slots=True)
class ProfileDescriptor:
    """Structured view of a connection URI, produced by the URI parser."""

    node_name: str
    host: str
    port: int
    transport: str
    flow: str
    security: str
    fingerprint: str
    sni: str
    short_id: str
    country: str = UNRESOLVED_COUNTRY

    @property
    def country_resolved(self) -> bool:
        return bool(self.country) and self.country != UNRESOLVED_COUNTRY

    @property
    def probe_target(self) -> str:
        """Host used for latency probes (SNI first, then the server host)."""

        return self.sni or self.host

    def with_country(self, country: str) -> ProfileDescriptor:
        return replace(self, country=country or UNRESOLVED_COUNTRY)


@dataclass(frozen=True, slots=True)
class ManualOrigin:
    """Profile entered by the user."""


@dataclass(frozen=True, slots=True)
class SubscriptionOrigin:
    """Profile owned by a subscription feed."""

    subscription_id: str


Origin = ManualOrigin | SubscriptionOrigin


@dataclass(frozen=True, slots=True)
class Profile:
    """Persisted, user-selectable connection target."""

    id: str
    label: str
    uri: str
    info: ProfileDescriptor
    origin: Origin = field(default_factory=ManualOrigin)

    @property
    def subscription_id(self) -> str | None:
        match self.origin:
            case SubscriptionOrigin(subscription_id=subscription_id):
                return subscription_id
            case ManualOrigin():
                return None

    def owned_by(self, subscription_id: str) -> bool:
        return self.subscription_id == subscription_id

    def with_country(self, country: str) -> Profile:
        return replace(self, info=self.info.with_country(country))


@dataclass(frozen=True, slots=True)
class SubscriptionUsage:
    """Traffic quota reported by a subscription provider."""

    upload: int = 0
    download: int = 0
    total: int | None = None
    expire: datetime | None = None


@dataclass(frozen=True, slots=True)
class Subscription:
    """Remote feed of connection URIs owning a dynamic set of profiles."""

    id: str
    label: str
    url: str
    created_at: datetime
    last_updated_at: datetime | None = None
    last_error: str | None = None
    profile_ids: tuple[str, ...] = ()
    usage: SubscriptionUsage | None = None


@dataclass(frozen=True, slots=True)
class SplitTunnelForm:
    """Free-text split tunnel rules as the user typed them."""

    bypass_domains: str = ""
    bypass_ips: str = ""
    bypass_apps: str = ""
    proxy_domains: str = ""
    proxy_ips: str = ""
    proxy_apps: str = ""
    block_domains: str = ""
    block_ips: str = ""
    block_apps: str = ""


@dataclass(frozen=True, slots=True)
class ThroughputSample:
    """One timestamped throughput measurement (bytes per second)."""

    timestamp: datetime
    down: float
    up: float


__all__ = [
    "ManualOrigin",
    "Origin",
    "Profile",
    "ProfileDescriptor",
    "SplitTunnelForm",
    "Subscription",
    "SubscriptionOrigin",
    "SubscriptionUsage",
    "ThroughputSample",
    "UNRESOLVED_COUNTRY",
    "new_id",
]
