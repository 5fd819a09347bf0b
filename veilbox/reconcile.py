"""Merge freshly fetched subscription entries into the profile collection."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Iterable, Sequence

from .models import Profile, Subscription, SubscriptionOrigin, new_id
from .subscriptions import DecodeFailure
from .uri import PLACEHOLDER_NAME, ParseFailure, parse_vless

LOG = logging.getLogger(__name__)


class ReconciliationFailure(DecodeFailure):
    """Raised when a fetched subscription yields no importable entries."""


@dataclass(frozen=True, slots=True)
class ReconcileResult:
    """Next profile collection plus the updated owning subscription."""

    profiles: tuple[Profile, ...]
    subscription: Subscription
    new_profile_ids: tuple[str, ...]


def dedupe(uris: Iterable[str]) -> list[str]:
    """Drop exact duplicates, keeping first-seen order."""

    seen: set[str] = set()
    unique: list[str] = []
    for uri in uris:
        if uri in seen:
            continue
        seen.add(uri)
        unique.append(uri)
    return unique


def reconcile(
    subscription: Subscription,
    fetched_uris: Sequence[str],
    profiles: Sequence[Profile],
    *,
    fetched_at: datetime,
    id_factory: Callable[[], str] = new_id,
) -> ReconcileResult:
    """Rebuild the profiles owned by ``subscription`` from ``fetched_uris``.

    Existing owned profiles keep their id (and any country resolved since the
    last refresh) when their URI is still reported. Profiles that belong to
    other subscriptions or were entered manually are never touched. If no
    entry survives parsing, :class:`ReconciliationFailure` is raised and the
    caller keeps its current collections.
    """

    owned_by_uri: dict[str, Profile] = {}
    for profile in profiles:
        if profile.owned_by(subscription.id):
            owned_by_uri.setdefault(profile.uri, profile)

    origin = SubscriptionOrigin(subscription.id)
    block: list[Profile] = []
    skipped = 0
    for index, uri in enumerate(dedupe(fetched_uris), start=1):
        parsed = parse_vless(uri)
        if isinstance(parsed, ParseFailure):
            skipped += 1
            LOG.warning(
                "Skipping subscription entry",
                extra={"subscription": subscription.id, "reason": parsed.reason},
            )
            continue
        existing = owned_by_uri.get(uri)
        info = parsed
        if existing is not None and not parsed.country_resolved and existing.info.country_resolved:
            info = parsed.with_country(existing.info.country)
        name = parsed.node_name.strip()
        label = name if name and name != PLACEHOLDER_NAME else f"{subscription.label} #{index}"
        block.append(
            Profile(
                id=existing.id if existing is not None else id_factory(),
                label=label,
                uri=uri,
                info=info,
                origin=origin,
            )
        )

    if not block:
        detail = f" ({skipped} invalid)" if skipped else ""
        raise ReconciliationFailure(f"Subscription '{subscription.label}' has no importable entries{detail}.")

    next_profiles: list[Profile] = []
    placed = False
    for profile in profiles:
        if not profile.owned_by(subscription.id):
            next_profiles.append(profile)
        elif not placed:
            next_profiles.extend(block)
            placed = True
    if not placed:
        next_profiles.extend(block)

    new_ids = tuple(profile.id for profile in block)
    updated = replace(
        subscription,
        profile_ids=new_ids,
        last_updated_at=fetched_at,
        last_error=None,
    )
    return ReconcileResult(profiles=tuple(next_profiles), subscription=updated, new_profile_ids=new_ids)


def mark_failed(subscription: Subscription, error: str, *, attempted_at: datetime) -> Subscription:
    """Record a failed refresh without touching the owned profile set."""

    return replace(subscription, last_updated_at=attempted_at, last_error=error)


__all__ = ["ReconcileResult", "ReconciliationFailure", "dedupe", "mark_failed", "reconcile"]
