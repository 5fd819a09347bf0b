"""Keep the selected-profile pointer valid after structural mutations."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from .models import Profile


@dataclass(frozen=True, slots=True)
class ReconcileContext:
    """Describes the subscription refresh that produced the next collection."""

    subscription_id: str
    new_profile_ids: tuple[str, ...]
    previous_owner: str | None = None


@dataclass(frozen=True, slots=True)
class SelectionOutcome:
    """Where the pointer should land and whether the session must stop first."""

    selected_id: str | None
    disconnect: bool = False


def maintain_selection(
    selected_id: str | None,
    profiles: Sequence[Profile],
    *,
    session_active: bool = False,
    session_profile_id: str | None = None,
    reconciled: ReconcileContext | None = None,
    select_first: bool = False,
) -> SelectionOutcome:
    """Compute the selection after ``profiles`` replaced the old collection.

    ``previous_owner`` on the reconcile context is the subscription that
    owned the selected profile before the mutation (``None`` for manual
    profiles or no selection). A dangling pointer falls back to the first
    newly valid id of that same subscription, then to the first remaining
    profile, then to ``None``.
    """

    known = {profile.id for profile in profiles}
    remap = reconciled.new_profile_ids[0] if reconciled and reconciled.new_profile_ids else None

    disconnect = False
    if session_active:
        disconnect = (session_profile_id is not None and session_profile_id not in known) or (
            selected_id is not None and selected_id not in known and session_profile_id in (None, selected_id)
        )

    if selected_id is None:
        if select_first and remap is not None:
            return SelectionOutcome(remap, disconnect)
        return SelectionOutcome(None, disconnect)

    if selected_id in known:
        return SelectionOutcome(selected_id, disconnect)

    if remap is not None and reconciled is not None and reconciled.previous_owner == reconciled.subscription_id:
        return SelectionOutcome(remap, disconnect)
    fallback = profiles[0].id if profiles else None
    return SelectionOutcome(fallback, disconnect)


__all__ = ["ReconcileContext", "SelectionOutcome", "maintain_selection"]
