"""Orchestration state: profiles, subscriptions, selection and the session."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable
from urllib.parse import urlsplit

from .config import AppConfig
from .engine import (
    ConnectRequest,
    TunnelEngine,
    build_dns_settings,
    build_metrics,
    build_region_routing,
    build_split_tunnel,
)
from .enrichment import CountryResolver
from .models import (
    ManualOrigin,
    Profile,
    ProfileDescriptor,
    SplitTunnelForm,
    Subscription,
    new_id,
)
from .reconcile import ReconciliationFailure, mark_failed, reconcile
from .selection import ReconcileContext, SelectionOutcome, maintain_selection
from .session import Notifier, SessionManager, SessionState
from .store import StoreGateway
from .subscriptions import DecodeFailure, SubscriptionFetcher, decode_subscription, parse_usage
from .tasks import KeyedTasks
from .uri import ParseFailure, parse_vless

LOG = logging.getLogger(__name__)

StateListener = Callable[["OrchestratorState"], None]

DRAFT_KEY = "draft:country"
RECOVER_KEY = "session:recover"


class InvariantViolation(RuntimeError):
    """Raised when the committed collections break a structural invariant."""


@dataclass(frozen=True, slots=True)
class ProfileDraft:
    """Profile being edited; ``profile_id`` is ``None`` for a new profile."""

    profile_id: str | None = None
    uri: str = ""
    label: str = ""
    preview: ProfileDescriptor | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class OrchestratorState:
    """Snapshot handed to listeners after every change."""

    profiles: tuple[Profile, ...]
    subscriptions: tuple[Subscription, ...]
    selected_profile_id: str | None
    split_enabled: bool
    split_form: SplitTunnelForm
    draft: ProfileDraft | None = None
    refreshing: frozenset[str] = frozenset()
    logs: tuple[str, ...] = ()

    @property
    def selected_profile(self) -> Profile | None:
        for profile in self.profiles:
            if profile.id == self.selected_profile_id:
                return profile
        return None


@dataclass(frozen=True, slots=True)
class _Mutation:
    profiles: tuple[Profile, ...]
    subscriptions: tuple[Subscription, ...]
    context: ReconcileContext | None = None
    select_first: bool = False
    removed_ids: frozenset[str] = field(default_factory=frozenset)


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class Orchestrator:
    """Single owner of the profile/subscription collections.

    Every structural change goes through :meth:`_mutate`: the next
    collections are computed from the current snapshot, the selection is
    re-derived, a disconnect is awaited first when the active session would
    lose its profile, and the result is committed and persisted in one
    synchronous step.
    """

    def __init__(
        self,
        gateway: StoreGateway,
        engine: TunnelEngine,
        session: SessionManager,
        *,
        fetcher: SubscriptionFetcher,
        config: AppConfig | None = None,
        country_resolver: CountryResolver | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] = _utcnow,
        id_factory: Callable[[], str] = new_id,
    ) -> None:
        self._gateway = gateway
        self._engine = engine
        self._session = session
        self._fetcher = fetcher
        self._config = config or AppConfig()
        self._country_resolver = country_resolver
        self._notifier = notifier
        self._clock = clock
        self._id_factory = id_factory
        self._listeners: set[StateListener] = set()
        self._tasks = KeyedTasks()
        self._inflight: dict[str, asyncio.Task[Subscription | None]] = {}
        self._poller: asyncio.Task[None] | None = None
        self._logs: tuple[str, ...] = ()
        self._draft: ProfileDraft | None = None

        stored = gateway.load()
        self._profiles = stored.profiles
        self._subscriptions = stored.subscriptions
        self._selected = stored.selected_profile_id
        self._split_enabled = stored.split_enabled
        self._split_form = stored.split_form
        self._engine_unsubscribe = engine.subscribe(self.handle_event)

    @property
    def state(self) -> OrchestratorState:
        return OrchestratorState(
            profiles=self._profiles,
            subscriptions=self._subscriptions,
            selected_profile_id=self._selected,
            split_enabled=self._split_enabled,
            split_form=self._split_form,
            draft=self._draft,
            refreshing=frozenset(key for key, task in self._inflight.items() if not task.done()),
            logs=self._logs,
        )

    @property
    def session(self) -> SessionManager:
        return self._session

    @property
    def config(self) -> AppConfig:
        return self._config

    @property
    def tasks(self) -> KeyedTasks:
        return self._tasks

    @property
    def selected_profile(self) -> Profile | None:
        return self._profile(self._selected) if self._selected else None

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Subscribe to state updates; returns an unsubscribe handle."""

        self._listeners.add(listener)
        listener(self.state)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    def update_config(self, config: AppConfig) -> None:
        """Swap the configuration used for the next connect request."""

        self._config = config

    # Lifecycle -----------------------------------------------------------------

    def start(self) -> None:
        """Start the log poller and resolve any countries still unknown."""

        if self._poller is None or self._poller.done():
            self._poller = asyncio.get_running_loop().create_task(self._poll_logs())
        self._enrich_countries()

    async def shutdown(self) -> None:
        if self._poller is not None:
            self._poller.cancel()
            self._poller = None
        self._tasks.cancel_all()
        self._engine_unsubscribe()
        await self._session.shutdown()

    async def _poll_logs(self) -> None:
        while True:
            try:
                lines = await self._engine.tail_logs(self._config.log_tail_lines)
            except Exception as exc:
                LOG.debug("Log poll failed", extra={"error": str(exc)})
            else:
                snapshot = tuple(lines)
                if snapshot != self._logs:
                    self._logs = snapshot
                    self._emit()
            await asyncio.sleep(self._config.log_poll_interval)

    # Profiles ------------------------------------------------------------------

    def save_profile(
        self,
        uri: str,
        *,
        label: str = "",
        profile_id: str | None = None,
        country: str | None = None,
    ) -> Profile:
        """Add a manual profile or edit an existing one, then select it."""

        uri = uri.strip()
        parsed = parse_vless(uri)
        if isinstance(parsed, ParseFailure):
            raise ValueError("Enter a valid VLESS URI.")
        info = parsed.with_country(country) if country and country != parsed.country else parsed
        name = label.strip() or parsed.node_name

        if profile_id is None:
            profile = Profile(id=self._id_factory(), label=name, uri=uri, info=info)
            profiles = (*self._profiles, profile)
            notice = "Profile added"
        else:
            current = self._profile(profile_id)
            if current is None:
                raise ValueError(f"Profile '{profile_id}' not found.")
            if not isinstance(current.origin, ManualOrigin):
                raise ValueError("Profiles from a subscription are managed by their feed.")
            if current.uri == uri and not info.country_resolved and current.info.country_resolved:
                info = info.with_country(current.info.country)
            profile = replace(current, label=name, uri=uri, info=info)
            profiles = tuple(profile if item.id == profile_id else item for item in self._profiles)
            self._tasks.cancel(f"country:{profile_id}")
            notice = "Profile updated"

        self._profiles = profiles
        self._selected = profile.id
        self._gateway.save(profiles=self._profiles, selected_profile_id=self._selected)
        self._after_commit()
        self._notify(notice)
        self._session.measure_latency(profile.info.probe_target)
        return profile

    async def delete_profile(self, profile_id: str) -> None:
        """Remove a manually entered profile."""

        profile = self._profile(profile_id)
        if profile is None:
            raise ValueError(f"Profile '{profile_id}' not found.")
        if not isinstance(profile.origin, ManualOrigin):
            raise ValueError("Profiles from a subscription are removed with their subscription.")

        def compute() -> _Mutation | None:
            if self._profile(profile_id) is None:
                return None
            return _Mutation(
                profiles=tuple(item for item in self._profiles if item.id != profile_id),
                subscriptions=self._subscriptions,
                removed_ids=frozenset({profile_id}),
            )

        if await self._mutate(compute) is not None:
            if self._draft is not None and self._draft.profile_id == profile_id:
                self.close_editor()
            self._notify("Profile removed")

    def select_profile(self, profile_id: str) -> None:
        profile = self._profile(profile_id)
        if profile is None:
            raise ValueError(f"Profile '{profile_id}' not found.")
        self._selected = profile_id
        self._gateway.save(selected_profile_id=profile_id)
        self._emit()
        self._session.measure_latency(profile.info.probe_target)

    # Profile editor ------------------------------------------------------------

    def open_editor(self, profile_id: str | None = None) -> ProfileDraft:
        self._tasks.cancel(DRAFT_KEY)
        profile = self._profile(profile_id) if profile_id else None
        if profile is None:
            self._draft = ProfileDraft()
        else:
            self._draft = ProfileDraft(profile_id=profile.id, uri=profile.uri, label=profile.label, preview=profile.info)
        self._emit()
        return self._draft

    def update_draft(self, *, uri: str | None = None, label: str | None = None) -> ProfileDraft | None:
        """Re-parse the draft and schedule a country preview for its host."""

        draft = self._draft
        if draft is None:
            return None
        if label is not None:
            draft = replace(draft, label=label)
        if uri is not None and uri.strip() != draft.uri:
            uri = uri.strip()
            self._tasks.cancel(DRAFT_KEY)
            parsed = parse_vless(uri) if uri else None
            if isinstance(parsed, ParseFailure):
                draft = replace(draft, uri=uri, preview=None, error=parsed.reason)
            else:
                draft = replace(draft, uri=uri, preview=parsed, error=None)
                if parsed is not None and self._country_resolver is not None:
                    resolver = self._country_resolver
                    host = parsed.host
                    self._tasks.submit(
                        DRAFT_KEY,
                        lambda: resolver.resolve(host),
                        on_result=partial(self._apply_draft_country, uri),
                    )
        self._draft = draft
        self._emit()
        return draft

    def save_draft(self) -> Profile:
        draft = self._draft
        if draft is None:
            raise ValueError("No profile is being edited.")
        country = draft.preview.country if draft.preview and draft.preview.country_resolved else None
        try:
            profile = self.save_profile(draft.uri, label=draft.label, profile_id=draft.profile_id, country=country)
        except ValueError as exc:
            self._draft = replace(draft, error=str(exc))
            self._emit()
            raise
        self.close_editor()
        return profile

    def close_editor(self) -> None:
        self._tasks.cancel(DRAFT_KEY)
        if self._draft is not None:
            self._draft = None
            self._emit()

    def _apply_draft_country(self, uri: str, country: str) -> None:
        draft = self._draft
        if draft is None or draft.uri != uri or draft.preview is None:
            return
        if country and country != "-":
            self._draft = replace(draft, preview=draft.preview.with_country(country))
            self._emit()

    # Subscriptions -------------------------------------------------------------

    async def add_subscription(self, url: str, *, label: str = "") -> Subscription | None:
        """Register a feed and import it; selects its first profile if none is selected."""

        url = url.strip()
        parts = urlsplit(url)
        if parts.scheme.lower() not in ("http", "https") or not parts.netloc:
            raise ValueError("Enter a valid subscription URL.")
        subscription = Subscription(
            id=self._id_factory(),
            label=label.strip() or parts.hostname or url,
            url=url,
            created_at=self._clock(),
        )
        self._subscriptions = (*self._subscriptions, subscription)
        self._gateway.save(subscriptions=self._subscriptions)
        self._emit()
        self._notify("Subscription added")
        return await self.refresh_subscription(subscription.id, select_first=True)

    async def refresh_subscription(self, subscription_id: str, *, select_first: bool = False) -> Subscription | None:
        """Fetch and reconcile one feed; concurrent requests share one refresh."""

        task = self._inflight.get(subscription_id)
        if task is None or task.done():
            if self._subscription(subscription_id) is None:
                raise ValueError(f"Subscription '{subscription_id}' not found.")
            task = asyncio.get_running_loop().create_task(self._refresh(subscription_id, select_first))
            self._inflight[subscription_id] = task
            task.add_done_callback(partial(self._forget_refresh, subscription_id))
            self._emit()
        return await asyncio.shield(task)

    async def refresh_all(self) -> None:
        ids = [subscription.id for subscription in self._subscriptions]
        if ids:
            await asyncio.gather(*(self.refresh_subscription(item) for item in ids))

    async def delete_subscription(self, subscription_id: str) -> None:
        """Remove a feed and every profile it owns."""

        if self._subscription(subscription_id) is None:
            raise ValueError(f"Subscription '{subscription_id}' not found.")

        def compute() -> _Mutation | None:
            if self._subscription(subscription_id) is None:
                return None
            removed = frozenset(item.id for item in self._profiles if item.owned_by(subscription_id))
            return _Mutation(
                profiles=tuple(item for item in self._profiles if item.id not in removed),
                subscriptions=tuple(item for item in self._subscriptions if item.id != subscription_id),
                removed_ids=removed,
            )

        if await self._mutate(compute) is not None:
            self._notify("Subscription removed")

    async def _refresh(self, subscription_id: str, select_first: bool) -> Subscription | None:
        subscription = self._subscription(subscription_id)
        if subscription is None:
            return None
        started = self._clock()
        try:
            result = await self._fetcher.fetch(subscription.url)
        except DecodeFailure as exc:
            return self._record_failure(subscription_id, str(exc), started)
        except Exception as exc:
            LOG.exception("Subscription fetch failed", extra={"subscription": subscription_id})
            return self._record_failure(subscription_id, str(exc) or exc.__class__.__name__, started)

        uris = decode_subscription(result.body)
        usage = parse_usage(result.user_info)

        def compute() -> _Mutation | None:
            current = self._subscription(subscription_id)
            if current is None:
                return None
            outcome = reconcile(current, uris, self._profiles, fetched_at=started, id_factory=self._id_factory)
            updated = replace(outcome.subscription, usage=usage or current.usage)
            kept = set(outcome.new_profile_ids)
            return _Mutation(
                profiles=outcome.profiles,
                subscriptions=tuple(updated if item.id == subscription_id else item for item in self._subscriptions),
                context=ReconcileContext(
                    subscription_id=subscription_id,
                    new_profile_ids=outcome.new_profile_ids,
                    previous_owner=self._owner_of(self._selected),
                ),
                select_first=select_first,
                removed_ids=frozenset(
                    item.id for item in self._profiles if item.owned_by(subscription_id) and item.id not in kept
                ),
            )

        try:
            mutation = await self._mutate(compute)
        except ReconciliationFailure as exc:
            return self._record_failure(subscription_id, str(exc), started)
        if mutation is None:
            LOG.info("Discarding refresh for removed subscription", extra={"subscription": subscription_id})
            return None
        return self._subscription(subscription_id)

    def _record_failure(self, subscription_id: str, error: str, attempted_at: datetime) -> Subscription | None:
        current = self._subscription(subscription_id)
        if current is None:
            return None
        failed = mark_failed(current, error, attempted_at=attempted_at)
        self._subscriptions = tuple(failed if item.id == subscription_id else item for item in self._subscriptions)
        self._gateway.save(subscriptions=self._subscriptions)
        self._emit()
        LOG.warning("Subscription refresh failed", extra={"subscription": subscription_id, "error": error})
        self._notify(f"Refresh failed for {current.label}: {error}", "error")
        return failed

    def _forget_refresh(self, subscription_id: str, task: asyncio.Task[Any]) -> None:
        if self._inflight.get(subscription_id) is task:
            del self._inflight[subscription_id]
            self._emit()

    # Split tunnel --------------------------------------------------------------

    def set_split_enabled(self, enabled: bool) -> None:
        self._split_enabled = enabled
        self._gateway.save(split_enabled=enabled)
        self._emit()

    def set_split_form(self, form: SplitTunnelForm | None = None, **fields: str) -> SplitTunnelForm:
        """Replace the split tunnel form, or patch individual fields."""

        base = form or self._split_form
        self._split_form = replace(base, **fields) if fields else base
        self._gateway.save(split_form=self._split_form)
        self._emit()
        return self._split_form

    # Session -------------------------------------------------------------------

    def build_request(self, profile: Profile) -> ConnectRequest:
        config = self._config
        return ConnectRequest(
            uri=profile.uri,
            mode=config.mode,
            split_tunnel=build_split_tunnel(self._split_form, enabled=self._split_enabled),
            dns=build_dns_settings(config.dns),
            region_routing=build_region_routing(config.region),
            metrics=build_metrics(config.metrics),
        )

    async def connect(self) -> SessionState:
        """Connect the selected profile."""

        self._guard_invariants()
        profile = self.selected_profile
        request = self.build_request(profile) if profile is not None else None
        return await self._session.connect(profile, request)

    async def disconnect(self) -> SessionState:
        return await self._session.disconnect()

    async def toggle(self) -> SessionState:
        if self._session.state.active:
            return await self.disconnect()
        return await self.connect()

    def handle_event(self, name: str, payload: Any = None) -> None:
        """Dispatch an event pushed by the engine or the tray."""

        match name:
            case "tray:state":
                self._session.apply_remote_state(str(payload), profile=self.selected_profile)
            case "tray:notification":
                if payload is not None:
                    self._notify(str(payload))
            case "tray:error":
                if payload is not None:
                    self._notify(str(payload), "error")
            case "tray:requestProfile":
                self.open_editor()
                self._notify("Choose a profile to connect")
            case "core:throughput":
                self._session.ingest_throughput(payload)
            case _:
                LOG.debug("Ignoring engine event", extra={"event": name})

    # Internals -----------------------------------------------------------------

    async def _mutate(self, compute: Callable[[], _Mutation | None]) -> _Mutation | None:
        mutation = compute()
        if mutation is None:
            return None
        outcome = self._selection_for(mutation)
        if outcome.disconnect:
            await self._session.disconnect()
            mutation = compute()
            if mutation is None:
                return None
            outcome = self._selection_for(mutation)
        self._commit(mutation, outcome.selected_id)
        return mutation

    def _selection_for(self, mutation: _Mutation) -> SelectionOutcome:
        session = self._session.state
        return maintain_selection(
            self._selected,
            mutation.profiles,
            session_active=session.active,
            session_profile_id=session.profile_id,
            reconciled=mutation.context,
            select_first=mutation.select_first,
        )

    def _commit(self, mutation: _Mutation, selected_id: str | None) -> None:
        self._profiles = mutation.profiles
        self._subscriptions = mutation.subscriptions
        self._selected = selected_id
        for profile_id in mutation.removed_ids:
            self._tasks.cancel(f"country:{profile_id}")
        self._gateway.save(
            profiles=self._profiles,
            subscriptions=self._subscriptions,
            selected_profile_id=self._selected,
        )
        self._after_commit()

    def _after_commit(self) -> None:
        self._guard_invariants()
        self._emit()
        self._enrich_countries()

    def _check_invariants(self) -> None:
        ids = [profile.id for profile in self._profiles]
        known = set(ids)
        if len(known) != len(ids):
            raise InvariantViolation("Duplicate profile ids in collection.")
        if self._selected is not None and self._selected not in known:
            raise InvariantViolation(f"Selected profile '{self._selected}' does not exist.")
        claimed: set[str] = set()
        for subscription in self._subscriptions:
            owned = {profile.id for profile in self._profiles if profile.owned_by(subscription.id)}
            if set(subscription.profile_ids) != owned or claimed & owned:
                raise InvariantViolation(f"Subscription '{subscription.id}' ownership is inconsistent.")
            claimed |= owned
        session = self._session.state
        if session.active and session.profile_id is not None and session.profile_id not in known:
            raise InvariantViolation(f"Session profile '{session.profile_id}' does not exist.")

    def _guard_invariants(self) -> None:
        try:
            self._check_invariants()
        except InvariantViolation as exc:
            LOG.error("Invariant violated; resetting selection", extra={"error": str(exc)})
            known = {profile.id for profile in self._profiles}
            if self._selected not in known:
                self._selected = self._profiles[0].id if self._profiles else None
                self._gateway.save(selected_profile_id=self._selected)
            if self._session.state.active:
                self._tasks.submit(RECOVER_KEY, self._session.disconnect)
            self._notify("Connection state was inconsistent and has been reset.", "error")

    def _enrich_countries(self) -> None:
        resolver = self._country_resolver
        if resolver is None:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        for profile in self._profiles:
            key = f"country:{profile.id}"
            if profile.info.country_resolved or self._tasks.pending(key):
                continue
            host = profile.info.host
            self._tasks.submit(
                key,
                partial(resolver.resolve, host),
                on_result=partial(self._apply_country, profile.id, profile.uri),
            )

    def _apply_country(self, profile_id: str, uri: str, country: str) -> None:
        if not country or country == "-":
            return
        current = self._profile(profile_id)
        if current is None or current.uri != uri or current.info.country_resolved:
            return
        self._profiles = tuple(
            item.with_country(country) if item.id == profile_id else item for item in self._profiles
        )
        self._gateway.save(profiles=self._profiles)
        self._emit()

    def _profile(self, profile_id: str | None) -> Profile | None:
        for profile in self._profiles:
            if profile.id == profile_id:
                return profile
        return None

    def _subscription(self, subscription_id: str) -> Subscription | None:
        for subscription in self._subscriptions:
            if subscription.id == subscription_id:
                return subscription
        return None

    def _owner_of(self, profile_id: str | None) -> str | None:
        profile = self._profile(profile_id)
        return profile.subscription_id if profile is not None else None

    def _notify(self, message: str, severity: str = "information") -> None:
        if self._notifier is None:
            return
        try:
            self._notifier(message, severity)
        except Exception:
            LOG.exception("Failed to deliver notification", extra={"notice": message})

    def _emit(self) -> None:
        state = self.state
        for listener in tuple(self._listeners):
            try:
                listener(state)
            except Exception:
                LOG.exception("Orchestrator listener failed")


__all__ = [
    "InvariantViolation",
    "Orchestrator",
    "OrchestratorState",
    "ProfileDraft",
    "StateListener",
]
