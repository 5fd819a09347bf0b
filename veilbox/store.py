"""Persistence of profiles, subscriptions and settings on a key-value store."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Protocol, Sequence, runtime_checkable

from pydantic import BaseModel, Field, StrictInt, StrictStr, ValidationError

from .models import (
    ManualOrigin,
    Origin,
    Profile,
    SplitTunnelForm,
    Subscription,
    SubscriptionOrigin,
    SubscriptionUsage,
    UNRESOLVED_COUNTRY,
)
from .uri import ParseFailure, parse_vless

LOG = logging.getLogger(__name__)

PROFILES_KEY = "veilbox.profiles"
SUBSCRIPTIONS_KEY = "veilbox.subscriptions"
SELECTED_KEY = "veilbox.selectedProfile"
SPLIT_ENABLED_KEY = "veilbox.splitEnabled"
SPLIT_FORM_KEY = "veilbox.splitForm"


class StorageFailure(RuntimeError):
    """Raised by key-value stores when a read or write cannot complete."""


@runtime_checkable
class KeyValueStore(Protocol):
    """String key/value capability backing the gateway."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryStore:
    """Dictionary-backed store for tests and ephemeral sessions."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self.data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)


class JsonFileStore:
    """Keeps every key in a single JSON object file, replaced atomically on write."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._cache: dict[str, str] | None = None

    @property
    def path(self) -> Path:
        return self._path

    def get(self, key: str) -> str | None:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        data = dict(self._load())
        data[key] = value
        self._write(data)

    def delete(self, key: str) -> None:
        data = dict(self._load())
        if data.pop(key, None) is not None:
            self._write(data)

    def _load(self) -> dict[str, str]:
        if self._cache is not None:
            return self._cache
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raw = {}
        except ValueError as exc:
            LOG.warning("Discarding unreadable state file", extra={"path": str(self._path), "error": str(exc)})
            self._set_aside()
            raw = {}
        except OSError as exc:
            raise StorageFailure(f"Failed to read {self._path}: {exc}") from exc
        if not isinstance(raw, dict):
            raw = {}
        self._cache = {str(key): value for key, value in raw.items() if isinstance(value, str)}
        return self._cache

    def _set_aside(self) -> None:
        backup = self._path.with_name(self._path.name + ".bak")
        try:
            os.replace(self._path, backup)
        except OSError as exc:
            LOG.warning("Could not keep a copy of the unreadable state file", extra={"error": str(exc)})

    def _write(self, data: dict[str, str]) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self._path.parent, prefix=".state-", suffix=".json")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(data, handle, indent=2, sort_keys=True)
                os.replace(tmp, self._path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise StorageFailure(f"Failed to write {self._path}: {exc}") from exc
        self._cache = data


class DescriptorRecord(BaseModel):
    node_name: StrictStr
    host: StrictStr
    port: StrictInt
    transport: StrictStr
    flow: StrictStr
    security: StrictStr
    fingerprint: StrictStr
    sni: StrictStr
    short_id: StrictStr
    country: StrictStr


class ProfileRecord(BaseModel):
    """Stored shape of a profile; malformed records fail validation as a whole."""

    id: StrictStr = Field(min_length=1)
    label: StrictStr
    uri: StrictStr = Field(min_length=1)
    info: DescriptorRecord
    origin: Any = None


class UsageRecord(BaseModel):
    upload: StrictInt = 0
    download: StrictInt = 0
    total: StrictInt | None = None
    expire: datetime | None = None


class SubscriptionRecord(BaseModel):
    """Stored shape of a subscription."""

    id: StrictStr = Field(min_length=1)
    label: StrictStr
    url: StrictStr = Field(min_length=1)
    created_at: datetime
    last_updated_at: datetime | None = None
    last_error: StrictStr | None = None
    profile_ids: list[StrictStr] = Field(default_factory=list)
    usage: UsageRecord | None = None


@dataclass(frozen=True, slots=True)
class StoredState:
    """Everything the orchestrator restores on startup."""

    profiles: tuple[Profile, ...] = ()
    subscriptions: tuple[Subscription, ...] = ()
    selected_profile_id: str | None = None
    split_enabled: bool = True
    split_form: SplitTunnelForm = field(default_factory=SplitTunnelForm)


_UNSET: Any = object()


class StoreGateway:
    """Loads sanitised state and persists partial updates on a key-value store.

    Reads never raise: a corrupt or unreadable value yields the default for
    that key, and individual malformed records are dropped. Writes are best
    effort; failures are logged and swallowed since the in-memory model stays
    authoritative.
    """

    def __init__(self, backend: KeyValueStore) -> None:
        self._backend = backend

    def load(self) -> StoredState:
        profiles = _sanitize_profiles(self._read_json(PROFILES_KEY))
        subscriptions = _sanitize_subscriptions(self._read_json(SUBSCRIPTIONS_KEY))
        profiles, subscriptions = _restore_ownership(profiles, subscriptions)
        selected = self._read(SELECTED_KEY) or None
        if selected is not None and selected not in {profile.id for profile in profiles}:
            selected = None
        split_raw = self._read(SPLIT_ENABLED_KEY)
        return StoredState(
            profiles=profiles,
            subscriptions=subscriptions,
            selected_profile_id=selected,
            split_enabled=split_raw != "false" if split_raw is not None else True,
            split_form=_normalize_split_form(self._read_json(SPLIT_FORM_KEY)),
        )

    def save(
        self,
        *,
        profiles: Sequence[Profile] = _UNSET,
        subscriptions: Sequence[Subscription] = _UNSET,
        selected_profile_id: str | None = _UNSET,
        split_enabled: bool = _UNSET,
        split_form: SplitTunnelForm = _UNSET,
    ) -> None:
        """Persist only the fields provided."""

        if profiles is not _UNSET:
            self._write_json(PROFILES_KEY, [_profile_to_record(profile) for profile in profiles])
        if subscriptions is not _UNSET:
            self._write_json(SUBSCRIPTIONS_KEY, [_subscription_to_record(sub) for sub in subscriptions])
        if selected_profile_id is not _UNSET:
            self._write(SELECTED_KEY, selected_profile_id)
        if split_enabled is not _UNSET:
            self._write(SPLIT_ENABLED_KEY, "true" if split_enabled else "false")
        if split_form is not _UNSET:
            self._write_json(SPLIT_FORM_KEY, _split_form_to_record(split_form))

    def _read(self, key: str) -> str | None:
        try:
            return self._backend.get(key)
        except (StorageFailure, OSError) as exc:
            LOG.warning("Failed to read persisted state", extra={"key": key, "error": str(exc)})
            return None

    def _read_json(self, key: str) -> Any:
        raw = self._read(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            LOG.warning("Discarding unreadable persisted value", extra={"key": key})
            return None

    def _write(self, key: str, value: str | None) -> None:
        try:
            if value is None:
                self._backend.delete(key)
            else:
                self._backend.set(key, value)
        except (StorageFailure, OSError) as exc:
            LOG.warning("Failed to persist state", extra={"key": key, "error": str(exc)})

    def _write_json(self, key: str, value: Any) -> None:
        try:
            encoded = json.dumps(value)
        except (TypeError, ValueError) as exc:
            LOG.warning("Failed to encode state", extra={"key": key, "error": str(exc)})
            return
        self._write(key, encoded)


def _sanitize_profiles(raw: Any) -> list[Profile]:
    if not isinstance(raw, list):
        return []
    profiles: list[Profile] = []
    for item in raw:
        try:
            record = ProfileRecord.model_validate(item)
        except ValidationError:
            continue
        descriptor = parse_vless(record.uri)
        if isinstance(descriptor, ParseFailure):
            continue
        if record.info.country not in ("", UNRESOLVED_COUNTRY):
            descriptor = descriptor.with_country(record.info.country)
        profiles.append(
            Profile(
                id=record.id,
                label=record.label or descriptor.node_name,
                uri=record.uri,
                info=descriptor,
                origin=_origin_from_record(record.origin),
            )
        )
    return profiles


def _sanitize_subscriptions(raw: Any) -> list[Subscription]:
    if not isinstance(raw, list):
        return []
    subscriptions: list[Subscription] = []
    for item in raw:
        try:
            record = SubscriptionRecord.model_validate(item)
        except ValidationError:
            continue
        usage = None
        if record.usage is not None:
            usage = SubscriptionUsage(**record.usage.model_dump())
        subscriptions.append(
            Subscription(
                id=record.id,
                label=record.label,
                url=record.url,
                created_at=record.created_at,
                last_updated_at=record.last_updated_at,
                last_error=record.last_error,
                profile_ids=tuple(record.profile_ids),
                usage=usage,
            )
        )
    return subscriptions


def _restore_ownership(
    profiles: Iterable[Profile],
    subscriptions: Iterable[Subscription],
) -> tuple[tuple[Profile, ...], tuple[Subscription, ...]]:
    """Drop records that break id uniqueness or subscription membership."""

    unique_subscriptions: dict[str, Subscription] = {}
    for subscription in subscriptions:
        unique_subscriptions.setdefault(subscription.id, subscription)

    kept: dict[str, Profile] = {}
    for profile in profiles:
        if profile.id in kept:
            continue
        owner = profile.subscription_id
        if owner is not None and owner not in unique_subscriptions:
            continue
        kept[profile.id] = profile

    fixed: list[Subscription] = []
    for subscription in unique_subscriptions.values():
        owned = [pid for pid in dict.fromkeys(subscription.profile_ids) if pid in kept and kept[pid].owned_by(subscription.id)]
        for profile in kept.values():
            if profile.owned_by(subscription.id) and profile.id not in owned:
                owned.append(profile.id)
        if tuple(owned) != subscription.profile_ids:
            subscription = _with_profile_ids(subscription, tuple(owned))
        fixed.append(subscription)
    return tuple(kept.values()), tuple(fixed)


def _with_profile_ids(subscription: Subscription, profile_ids: tuple[str, ...]) -> Subscription:
    return replace(subscription, profile_ids=profile_ids)


def _origin_from_record(raw: Any) -> Origin:
    if isinstance(raw, dict):
        kind = raw.get("kind", raw.get("type"))
        subscription_id = raw.get("subscription_id", raw.get("subscriptionId"))
        if kind == "subscription" and isinstance(subscription_id, str) and subscription_id:
            return SubscriptionOrigin(subscription_id)
    return ManualOrigin()


def _origin_to_record(origin: Origin) -> dict[str, str]:
    match origin:
        case SubscriptionOrigin(subscription_id=subscription_id):
            return {"kind": "subscription", "subscription_id": subscription_id}
        case ManualOrigin():
            return {"kind": "manual"}


def _profile_to_record(profile: Profile) -> dict[str, Any]:
    info = profile.info
    return ProfileRecord(
        id=profile.id,
        label=profile.label,
        uri=profile.uri,
        info=DescriptorRecord(
            node_name=info.node_name,
            host=info.host,
            port=info.port,
            transport=info.transport,
            flow=info.flow,
            security=info.security,
            fingerprint=info.fingerprint,
            sni=info.sni,
            short_id=info.short_id,
            country=info.country,
        ),
        origin=_origin_to_record(profile.origin),
    ).model_dump(mode="json")


def _subscription_to_record(subscription: Subscription) -> dict[str, Any]:
    usage = subscription.usage
    return SubscriptionRecord(
        id=subscription.id,
        label=subscription.label,
        url=subscription.url,
        created_at=subscription.created_at,
        last_updated_at=subscription.last_updated_at,
        last_error=subscription.last_error,
        profile_ids=list(subscription.profile_ids),
        usage=UsageRecord(
            upload=usage.upload,
            download=usage.download,
            total=usage.total,
            expire=usage.expire,
        )
        if usage is not None
        else None,
    ).model_dump(mode="json")


_SPLIT_FIELDS = tuple(SplitTunnelForm.__dataclass_fields__)


def _normalize_split_form(raw: Any) -> SplitTunnelForm:
    if not isinstance(raw, dict):
        return SplitTunnelForm()
    return SplitTunnelForm(**{key: raw[key] for key in _SPLIT_FIELDS if isinstance(raw.get(key), str)})


def _split_form_to_record(form: SplitTunnelForm) -> dict[str, str]:
    return {key: getattr(form, key) for key in _SPLIT_FIELDS}


__all__ = [
    "JsonFileStore",
    "KeyValueStore",
    "MemoryStore",
    "StorageFailure",
    "StoreGateway",
    "StoredState",
]
