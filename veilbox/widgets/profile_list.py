"""Sidebar listing profiles grouped by origin, plus the subscription summary."""

from __future__ import annotations

from typing import Callable

from textual import on
from textual.app import ComposeResult
from textual.containers import Container
from textual.widgets import Label, ListItem, ListView, Static

from veilbox.models import Profile, Subscription
from veilbox.orchestrator import Orchestrator, OrchestratorState


class ProfileList(Container):
    """Displays the profile collection and forwards selection to the orchestrator."""

    DEFAULT_CSS = """
    ProfileList {
        width: 36;
        min-width: 24;
        border-right: solid $surface-darken-1;
        padding: 1;
        height: 1fr;
        background: $surface-darken-2;
    }

    ProfileList .sidebar-heading {
        text-style: bold;
        margin-bottom: 1;
    }

    #profile-list {
        height: 1fr;
        border: round $primary 30%;
        margin-bottom: 1;
    }

    #profile-list .active {
        text-style: bold;
    }

    #subscription-summary {
        padding-top: 1;
        border-top: solid $surface-darken-1;
        color: $text-muted;
        min-height: 3;
    }
    """

    def __init__(self, orchestrator: Orchestrator) -> None:
        super().__init__(id="profile-sidebar")
        self._orchestrator = orchestrator
        self._profile_list: ListView | None = None
        self._summary: Static | None = None
        self._rendered: tuple[tuple[str, str], ...] = ()
        self._unsubscribe: Callable[[], None] | None = None

    def compose(self) -> ComposeResult:
        yield Static("Profiles", classes="sidebar-heading")
        self._profile_list = ListView(id="profile-list")
        yield self._profile_list
        self._summary = Static("No subscriptions.", id="subscription-summary")
        yield self._summary

    async def on_mount(self) -> None:
        self._unsubscribe = self._orchestrator.subscribe(self._handle_state)

    def on_unmount(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    @on(ListView.Selected)
    def _handle_profile_selected(self, event: ListView.Selected) -> None:
        item = event.item
        if isinstance(item, _ProfileListItem):
            event.stop()
            if item.profile_id != self._orchestrator.state.selected_profile_id:
                self._orchestrator.select_profile(item.profile_id)

    def _handle_state(self, state: OrchestratorState) -> None:
        self._render_profiles(state)
        self._render_subscriptions(state)

    def _render_profiles(self, state: OrchestratorState) -> None:
        if self._profile_list is None:
            return
        rendered = tuple((profile.id, profile_line(profile)) for profile in state.profiles)
        if rendered != self._rendered:
            self._rendered = rendered
            self._profile_list.clear()
            self._profile_list.extend(_ProfileListItem(profile_id, text) for profile_id, text in rendered)
        for index, (profile_id, _) in enumerate(rendered):
            if profile_id == state.selected_profile_id:
                self._profile_list.index = index
        for child in self._profile_list.children:
            if isinstance(child, _ProfileListItem):
                child.set_class(child.profile_id == state.selected_profile_id, "active")

    def _render_subscriptions(self, state: OrchestratorState) -> None:
        if self._summary is None:
            return
        if not state.subscriptions:
            self._summary.update("No subscriptions.")
            return
        lines = [subscription_line(sub, refreshing=sub.id in state.refreshing) for sub in state.subscriptions]
        self._summary.update("\n".join(lines))


def profile_line(profile: Profile) -> str:
    info = profile.info
    return f"{profile.label}  [{info.country}] {info.host}:{info.port} {info.transport}"


def subscription_line(subscription: Subscription, *, refreshing: bool = False) -> str:
    count = len(subscription.profile_ids)
    if refreshing:
        status = "refreshing..."
    elif subscription.last_error:
        status = f"error: {subscription.last_error.splitlines()[0][:60]}"
    elif subscription.last_updated_at is not None:
        status = f"updated {subscription.last_updated_at.astimezone().strftime('%H:%M:%S')}"
    else:
        status = "never updated"
    return f"{subscription.label}: {count} profiles, {status}"


class _ProfileListItem(ListItem):
    """List item storing a profile id for selection callbacks."""

    def __init__(self, profile_id: str, text: str) -> None:
        super().__init__(Label(text))
        self.profile_id = profile_id


__all__ = ["ProfileList", "profile_line", "subscription_line"]
