"""Tests for the orchestration state object."""

from __future__ import annotations

import asyncio
import random
from datetime import datetime, timedelta, timezone
from itertools import count
from typing import Callable

import pytest

from veilbox.config import AppConfig, MetricsConfig, RegionConfig
from veilbox.engine import DemoTunnelEngine
from veilbox.models import ManualOrigin, SplitTunnelForm, SubscriptionOrigin
from veilbox.orchestrator import Orchestrator, OrchestratorState
from veilbox.session import SessionManager, SessionStatus
from veilbox.store import MemoryStore, StoreGateway
from veilbox.subscriptions import DecodeFailure, FetchResult

NOW = datetime(2024, 5, 1, tzinfo=timezone.utc)
FEED_URL = "https://feed.example.com/sub"
OTHER_URL = "https://other.example.com/sub"


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class _FetcherStub:
    def __init__(self, bodies: dict[str, str] | None = None) -> None:
        self.bodies = dict(bodies or {})
        self.user_info: str | None = None
        self.calls: list[str] = []
        self.gate: asyncio.Event | None = None
        self.on_fetch: Callable[[], None] | None = None

    async def fetch(self, url: str) -> FetchResult:
        self.calls.append(url)
        if self.on_fetch is not None:
            self.on_fetch()
        if self.gate is not None:
            await self.gate.wait()
        body = self.bodies.get(url)
        if body is None:
            raise DecodeFailure("Subscription responded with HTTP 404")
        return FetchResult(body=body, user_info=self.user_info)


class _ObservedEngine(DemoTunnelEngine):
    def __init__(self) -> None:
        super().__init__()
        self.before_disconnect: Callable[[], None] | None = None

    async def disconnect(self) -> None:
        if self.before_disconnect is not None:
            self.before_disconnect()
        await super().disconnect()


class _ResolverStub:
    def __init__(self, country: str = "Finland") -> None:
        self.country = country
        self.hosts: list[str] = []
        self.gate: asyncio.Event | None = None

    async def resolve(self, host: str) -> str:
        self.hosts.append(host)
        if self.gate is not None:
            await self.gate.wait()
        return self.country


def _build(
    fetcher: _FetcherStub | None = None,
    *,
    backend: MemoryStore | None = None,
    engine: DemoTunnelEngine | None = None,
    resolver: _ResolverStub | None = None,
    config: AppConfig | None = None,
    clock: Callable[[], datetime] | None = None,
) -> tuple[Orchestrator, DemoTunnelEngine, MemoryStore, list[tuple[str, str]]]:
    backend = backend if backend is not None else MemoryStore()
    engine = engine or DemoTunnelEngine()
    notices: list[tuple[str, str]] = []
    counter = count(1)

    def _notify(message: str, severity: str) -> None:
        notices.append((message, severity))

    session = SessionManager(engine, notifier=_notify, collector_factory=None)
    orchestrator = Orchestrator(
        StoreGateway(backend),
        engine,
        session,
        fetcher=fetcher or _FetcherStub(),
        config=config,
        country_resolver=resolver,
        notifier=_notify,
        clock=clock or (lambda: NOW),
        id_factory=lambda: f"id-{next(counter)}",
    )
    return orchestrator, engine, backend, notices


def _assert_invariants(state: OrchestratorState) -> None:
    ids = [profile.id for profile in state.profiles]
    assert len(ids) == len(set(ids))
    assert state.selected_profile_id is None or state.selected_profile_id in ids
    claimed: list[str] = []
    for subscription in state.subscriptions:
        owned = [p.id for p in state.profiles if p.subscription_id == subscription.id]
        assert sorted(subscription.profile_ids) == sorted(owned)
        claimed.extend(subscription.profile_ids)
    assert len(claimed) == len(set(claimed))


def test_save_profile_adds_and_selects_manual_profile() -> None:
    orchestrator, _, backend, notices = _build()

    profile = orchestrator.save_profile("vless://u@host1:443#Manual", label="  ")

    state = orchestrator.state
    assert state.profiles == (profile,)
    assert profile.label == "Manual"
    assert profile.origin == ManualOrigin()
    assert state.selected_profile_id == profile.id
    assert notices[-1] == ("Profile added", "information")
    assert StoreGateway(backend).load().profiles == (profile,)


def test_save_profile_rejects_invalid_uri() -> None:
    orchestrator, *_ = _build()

    with pytest.raises(ValueError):
        orchestrator.save_profile("vmess://u@host1:443")

    assert orchestrator.state.profiles == ()


def test_save_profile_edits_in_place() -> None:
    orchestrator, *_ = _build()
    first = orchestrator.save_profile("vless://u@host1:443#One")
    second = orchestrator.save_profile("vless://u@host2:443#Two")

    edited = orchestrator.save_profile("vless://u@host3:443#Three", label="Renamed", profile_id=first.id)

    assert [p.id for p in orchestrator.state.profiles] == [first.id, second.id]
    assert edited.label == "Renamed"
    assert edited.info.host == "host3"
    assert orchestrator.state.selected_profile_id == first.id


@pytest.mark.anyio
async def test_delete_selected_profile_falls_back_to_first() -> None:
    orchestrator, *_ = _build()
    first = orchestrator.save_profile("vless://u@host1:443#One")
    second = orchestrator.save_profile("vless://u@host2:443#Two")

    await orchestrator.delete_profile(second.id)

    assert orchestrator.state.selected_profile_id == first.id
    await orchestrator.delete_profile(first.id)
    assert orchestrator.state.selected_profile_id is None
    _assert_invariants(orchestrator.state)


@pytest.mark.anyio
async def test_delete_connected_profile_disconnects_first() -> None:
    orchestrator, engine, *_ = _build()
    profile = orchestrator.save_profile("vless://u@host1:443#One")
    await orchestrator.connect()
    assert orchestrator.session.state.status is SessionStatus.CONNECTED

    await orchestrator.delete_profile(profile.id)

    assert engine.calls[-2:] == ["disconnect", "disable_system_proxy"]
    assert orchestrator.session.state.status is SessionStatus.IDLE
    assert orchestrator.state.profiles == ()
    await orchestrator.shutdown()


@pytest.mark.anyio
async def test_add_subscription_imports_and_selects_first() -> None:
    fetcher = _FetcherStub({FEED_URL: "vless://a@host1:443#NodeA\nvless://a@host1:443#NodeA\nnot-a-uri"})
    fetcher.user_info = "upload=1; download=2; total=10"
    orchestrator, *_ = _build(fetcher)

    subscription = await orchestrator.add_subscription(FEED_URL)

    state = orchestrator.state
    assert subscription is not None
    assert subscription.label == "feed.example.com"
    assert len(subscription.profile_ids) == 1
    assert subscription.usage is not None and subscription.usage.total == 10
    assert subscription.last_error is None
    assert state.selected_profile_id == subscription.profile_ids[0]
    assert state.profiles[0].origin == SubscriptionOrigin(subscription.id)
    _assert_invariants(state)


@pytest.mark.anyio
async def test_add_subscription_rejects_non_http_urls() -> None:
    orchestrator, *_ = _build()

    with pytest.raises(ValueError):
        await orchestrator.add_subscription("ftp://feed.example.com")


@pytest.mark.anyio
async def test_refresh_failure_marks_subscription_and_keeps_profiles() -> None:
    fetcher = _FetcherStub({FEED_URL: "vless://a@host1:443#NodeA"})
    orchestrator, _, _, notices = _build(fetcher)
    subscription = await orchestrator.add_subscription(FEED_URL)
    assert subscription is not None
    profiles_before = orchestrator.state.profiles

    fetcher.bodies[FEED_URL] = "garbage only"
    failed = await orchestrator.refresh_subscription(subscription.id)

    assert failed is not None
    assert failed.last_error and "no importable entries" in failed.last_error
    assert failed.last_updated_at == NOW
    assert orchestrator.state.profiles == profiles_before
    assert notices[-1][1] == "error"

    del fetcher.bodies[FEED_URL]
    failed = await orchestrator.refresh_subscription(subscription.id)

    assert failed is not None and "HTTP 404" in (failed.last_error or "")
    _assert_invariants(orchestrator.state)


@pytest.mark.anyio
async def test_refresh_records_fetch_start_time() -> None:
    moments = [NOW]
    fetcher = _FetcherStub({FEED_URL: "vless://a@host1:443#NodeA"})
    fetcher.on_fetch = lambda: moments.append(moments[-1] + timedelta(seconds=30))
    orchestrator, *_ = _build(fetcher, clock=lambda: moments[-1])

    subscription = await orchestrator.add_subscription(FEED_URL)

    assert subscription is not None
    assert subscription.created_at == NOW
    assert subscription.last_updated_at == NOW

    started = moments[-1]
    fetcher.bodies[FEED_URL] = "garbage only"
    failed = await orchestrator.refresh_subscription(subscription.id)

    assert failed is not None
    assert failed.last_updated_at == started

    started = moments[-1]
    del fetcher.bodies[FEED_URL]
    failed = await orchestrator.refresh_subscription(subscription.id)

    assert failed is not None
    assert failed.last_updated_at == started


@pytest.mark.anyio
async def test_refresh_is_idempotent_and_remaps_selection() -> None:
    fetcher = _FetcherStub({FEED_URL: "vless://a@host1:443#NodeA\nvless://b@host2:443#NodeB"})
    orchestrator, *_ = _build(fetcher)
    subscription = await orchestrator.add_subscription(FEED_URL)
    assert subscription is not None
    ids = subscription.profile_ids

    again = await orchestrator.refresh_subscription(subscription.id)

    assert again is not None and again.profile_ids == ids
    orchestrator.select_profile(ids[0])
    fetcher.bodies[FEED_URL] = "vless://c@host3:443#NodeC\nvless://b@host2:443#NodeB"
    changed = await orchestrator.refresh_subscription(subscription.id)

    assert changed is not None
    assert changed.profile_ids[1] == ids[1]
    assert orchestrator.state.selected_profile_id == changed.profile_ids[0]
    _assert_invariants(orchestrator.state)


@pytest.mark.anyio
async def test_concurrent_refreshes_of_one_subscription_coalesce() -> None:
    fetcher = _FetcherStub({FEED_URL: "vless://a@host1:443#NodeA"})
    orchestrator, *_ = _build(fetcher)
    subscription = await orchestrator.add_subscription(FEED_URL)
    assert subscription is not None
    fetcher.calls.clear()
    fetcher.gate = asyncio.Event()

    first = asyncio.create_task(orchestrator.refresh_subscription(subscription.id))
    second = asyncio.create_task(orchestrator.refresh_subscription(subscription.id))
    await asyncio.sleep(0)
    assert subscription.id in orchestrator.state.refreshing
    fetcher.gate.set()
    results = await asyncio.gather(first, second)

    assert fetcher.calls == [FEED_URL]
    assert results[0] == results[1]
    assert orchestrator.state.refreshing == frozenset()


@pytest.mark.anyio
async def test_concurrent_refreshes_of_different_subscriptions_keep_both() -> None:
    fetcher = _FetcherStub(
        {
            FEED_URL: "vless://a@host1:443#NodeA",
            OTHER_URL: "vless://b@host2:443#NodeB",
        }
    )
    orchestrator, *_ = _build(fetcher)
    first = await orchestrator.add_subscription(FEED_URL)
    second = await orchestrator.add_subscription(OTHER_URL)
    assert first is not None and second is not None
    fetcher.bodies[FEED_URL] = "vless://a@host1:443#NodeA\nvless://c@host3:443#NodeC"
    fetcher.bodies[OTHER_URL] = "vless://b@host2:443#NodeB\nvless://d@host4:443#NodeD"

    await orchestrator.refresh_all()

    labels = sorted(profile.label for profile in orchestrator.state.profiles)
    assert labels == ["NodeA", "NodeB", "NodeC", "NodeD"]
    _assert_invariants(orchestrator.state)


@pytest.mark.anyio
async def test_delete_subscription_with_connected_profile_disconnects_first() -> None:
    fetcher = _FetcherStub({FEED_URL: "vless://a@host1:443#NodeA"})
    engine = _ObservedEngine()
    orchestrator, *_ = _build(fetcher, engine=engine)
    manual = orchestrator.save_profile("vless://m@manual:443#Manual")
    subscription = await orchestrator.add_subscription(FEED_URL)
    assert subscription is not None
    orchestrator.select_profile(subscription.profile_ids[0])
    await orchestrator.connect()
    observed: list[tuple[SessionStatus, tuple[str, ...]]] = []
    engine.before_disconnect = lambda: observed.append(
        (orchestrator.session.state.status, tuple(p.id for p in orchestrator.state.profiles))
    )

    await orchestrator.delete_subscription(subscription.id)

    assert observed == [(SessionStatus.CONNECTED, (manual.id, subscription.profile_ids[0]))]
    assert orchestrator.session.state.status is SessionStatus.IDLE
    assert orchestrator.state.profiles == (manual,)
    assert orchestrator.state.subscriptions == ()
    assert orchestrator.state.selected_profile_id == manual.id
    await orchestrator.shutdown()


@pytest.mark.anyio
async def test_refresh_finishing_after_delete_is_discarded() -> None:
    fetcher = _FetcherStub({FEED_URL: "vless://a@host1:443#NodeA"})
    orchestrator, *_ = _build(fetcher)
    subscription = await orchestrator.add_subscription(FEED_URL)
    assert subscription is not None
    fetcher.gate = asyncio.Event()

    pending = asyncio.create_task(orchestrator.refresh_subscription(subscription.id))
    await asyncio.sleep(0)
    await orchestrator.delete_subscription(subscription.id)
    fetcher.gate.set()

    assert await pending is None
    assert orchestrator.state.profiles == ()
    assert orchestrator.state.subscriptions == ()


@pytest.mark.anyio
async def test_subscription_profiles_cannot_be_edited_or_deleted_directly() -> None:
    fetcher = _FetcherStub({FEED_URL: "vless://a@host1:443#NodeA"})
    orchestrator, *_ = _build(fetcher)
    subscription = await orchestrator.add_subscription(FEED_URL)
    assert subscription is not None
    owned_id = subscription.profile_ids[0]

    with pytest.raises(ValueError):
        await orchestrator.delete_profile(owned_id)
    with pytest.raises(ValueError):
        orchestrator.save_profile("vless://x@host9:443#X", profile_id=owned_id)


MUTATION_STEPS = (
    "add-manual",
    "add-feed",
    "select-owned",
    "connect",
    "replace-feed",
    "break-feed",
    "delete-manual",
    "delete-feed",
)


async def _apply_step(orchestrator: Orchestrator, fetcher: _FetcherStub, step: str) -> None:
    state = orchestrator.state
    subscription = state.subscriptions[0] if state.subscriptions else None
    manual = next((p for p in state.profiles if isinstance(p.origin, ManualOrigin)), None)
    owned = [p for p in state.profiles if p.subscription_id is not None]
    match step:
        case "add-manual":
            orchestrator.save_profile("vless://m@manual:443#Manual")
        case "add-feed":
            if subscription is None:
                await orchestrator.add_subscription(FEED_URL)
        case "select-owned":
            if owned:
                orchestrator.select_profile(owned[-1].id)
        case "connect":
            if state.selected_profile_id is not None:
                await orchestrator.connect()
        case "replace-feed":
            fetcher.bodies[FEED_URL] = "vless://z@host9:443#NodeZ"
            if subscription is not None:
                await orchestrator.refresh_subscription(subscription.id)
        case "break-feed":
            fetcher.bodies[FEED_URL] = "bad"
            if subscription is not None:
                await orchestrator.refresh_subscription(subscription.id)
        case "delete-manual":
            if manual is not None:
                await orchestrator.delete_profile(manual.id)
        case "delete-feed":
            if subscription is not None:
                await orchestrator.delete_subscription(subscription.id)


def _orderings() -> list[tuple[str, ...]]:
    orderings = [MUTATION_STEPS, tuple(reversed(MUTATION_STEPS))]
    for seed in range(6):
        orderings.append(tuple(random.Random(seed).sample(MUTATION_STEPS, len(MUTATION_STEPS))))
    return orderings


@pytest.mark.anyio
@pytest.mark.parametrize("steps", _orderings(), ids=lambda steps: ",".join(steps))
async def test_mutation_orderings_keep_invariants(steps: tuple[str, ...]) -> None:
    fetcher = _FetcherStub({FEED_URL: "vless://a@host1:443#NodeA\nvless://b@host2:443#NodeB"})
    orchestrator, *_ = _build(fetcher)

    for step in steps * 2:
        await _apply_step(orchestrator, fetcher, step)
        state = orchestrator.state
        _assert_invariants(state)
        session = orchestrator.session.state
        if session.active:
            assert session.profile_id in {profile.id for profile in state.profiles}


@pytest.mark.anyio
async def test_connect_builds_request_from_settings() -> None:
    config = AppConfig(
        mode="tun",
        region=RegionConfig(block_countries=["ir"]),
        metrics=MetricsConfig(enable_observatory=True),
    )
    orchestrator, engine, *_ = _build(config=config)
    orchestrator.save_profile("vless://u@host1:443#One")
    orchestrator.set_split_form(bypass_domains="lan.local")

    await orchestrator.connect()

    payload = engine.requests[-1].to_payload()
    assert payload["Mode"] == "tun"
    assert payload["SplitTunnel"] == {"bypassDomains": ["lan.local"]}
    assert payload["RegionRouting"]["blockCountries"] == ["IR"]
    assert payload["Metrics"]["observatoryListen"] == "127.0.0.1:9090"
    assert payload["DNS"] == {"strategy": "prefer_ipv4"}

    await orchestrator.disconnect()
    orchestrator.set_split_enabled(False)
    await orchestrator.connect()

    assert "SplitTunnel" not in engine.requests[-1].to_payload()
    await orchestrator.shutdown()


@pytest.mark.anyio
async def test_connect_without_selection_stays_idle() -> None:
    orchestrator, engine, *_ = _build()

    state = await orchestrator.connect()

    assert state.status is SessionStatus.IDLE
    assert state.message == "Select a profile to connect."
    assert engine.calls == []


def test_split_settings_are_persisted() -> None:
    orchestrator, _, backend, _ = _build()

    orchestrator.set_split_enabled(False)
    orchestrator.set_split_form(SplitTunnelForm(block_ips="10.0.0.0/8"))

    restored = StoreGateway(backend).load()
    assert restored.split_enabled is False
    assert restored.split_form.block_ips == "10.0.0.0/8"


@pytest.mark.anyio
async def test_engine_events_are_dispatched() -> None:
    orchestrator, engine, _, notices = _build()
    orchestrator.save_profile("vless://u@host1:443#One")

    engine.emit("tray:notification", "Hello")
    engine.emit("tray:error", "Broken")
    engine.emit("tray:state", "connected")
    engine.emit("core:throughput", {"down_bps": 10, "up_bps": 4})
    engine.emit("tray:requestProfile")
    engine.emit("core:unknown", {"x": 1})

    assert ("Hello", "information") in notices
    assert ("Broken", "error") in notices
    assert orchestrator.session.state.status is SessionStatus.CONNECTED
    sample = orchestrator.session.throughput.latest
    assert sample is not None and (sample.down, sample.up) == (10.0, 4.0)
    assert orchestrator.state.draft is not None
    assert notices[-1] == ("Choose a profile to connect", "information")
    await orchestrator.shutdown()


@pytest.mark.anyio
async def test_country_enrichment_applies_to_existing_profiles_only() -> None:
    resolver = _ResolverStub("Finland")
    resolver.gate = asyncio.Event()
    orchestrator, *_ = _build(resolver=resolver)
    kept = orchestrator.save_profile("vless://u@host1:443#One")
    dropped = orchestrator.save_profile("vless://u@host2:443#Two")
    await asyncio.sleep(0)

    await orchestrator.delete_profile(dropped.id)
    resolver.gate.set()
    await orchestrator.tasks.drain()

    assert resolver.hosts == ["host1", "host2"]
    assert [p.info.country for p in orchestrator.state.profiles] == ["Finland"]
    assert orchestrator.state.profiles[0].id == kept.id


@pytest.mark.anyio
async def test_draft_preview_is_discarded_after_close() -> None:
    resolver = _ResolverStub("Germany")
    resolver.gate = asyncio.Event()
    orchestrator, *_ = _build(resolver=resolver)

    orchestrator.open_editor()
    draft = orchestrator.update_draft(uri="vless://u@host1:443#Draft", label="Mine")
    assert draft is not None and draft.preview is not None and draft.error is None
    orchestrator.close_editor()
    resolver.gate.set()
    await orchestrator.tasks.drain()

    assert orchestrator.state.draft is None

    orchestrator.open_editor()
    orchestrator.update_draft(uri="vless://u@host1:443#Draft", label="Mine")
    await orchestrator.tasks.drain()
    assert orchestrator.state.draft is not None
    assert orchestrator.state.draft.preview is not None
    assert orchestrator.state.draft.preview.country == "Germany"

    profile = orchestrator.save_draft()

    assert profile.label == "Mine"
    assert profile.info.country == "Germany"
    assert orchestrator.state.draft is None


def test_update_draft_reports_parse_errors() -> None:
    orchestrator, *_ = _build()
    orchestrator.open_editor()

    draft = orchestrator.update_draft(uri="http://nope")

    assert draft is not None and draft.preview is None and draft.error
    with pytest.raises(ValueError):
        orchestrator.save_draft()


@pytest.mark.anyio
async def test_log_poller_publishes_engine_lines() -> None:
    engine = DemoTunnelEngine()
    engine.log("core ready")
    orchestrator, *_ = _build(engine=engine, config=AppConfig(log_poll_interval=0.01))

    orchestrator.start()
    await asyncio.sleep(0.03)

    assert orchestrator.state.logs and orchestrator.state.logs[-1].endswith("core ready")
    await orchestrator.shutdown()


@pytest.mark.anyio
async def test_state_is_restored_on_startup() -> None:
    fetcher = _FetcherStub({FEED_URL: "vless://a@host1:443#NodeA"})
    orchestrator, _, backend, _ = _build(fetcher)
    subscription = await orchestrator.add_subscription(FEED_URL)
    assert subscription is not None

    restored, *_ = _build(fetcher, backend=backend)

    assert restored.state.profiles == orchestrator.state.profiles
    assert restored.state.subscriptions == orchestrator.state.subscriptions
    assert restored.state.selected_profile_id == orchestrator.state.selected_profile_id
