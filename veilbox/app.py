"""Textual application entry point for veilbox."""

from __future__ import annotations

import logging
from typing import Callable

from textual import on
from textual.app import App, ComposeResult
from textual.containers import Horizontal, Vertical
from textual.widgets import Footer, Header, Input

from .config import AppConfig, load_config, save_config
from .engine import DemoTunnelEngine, TunnelEngine
from .enrichment import HttpLatencyProbe, IpApiAddressLookup, IpApiCountryResolver
from .models import ManualOrigin
from .orchestrator import Orchestrator, OrchestratorState
from .providers import (
    ProfileManageProvider,
    ProfileSelectProvider,
    SubscriptionManageProvider,
    SubscriptionRefreshProvider,
)
from .session import SessionManager
from .store import JsonFileStore, KeyValueStore, StoreGateway
from .subscriptions import AiohttpSubscriptionFetcher
from .widgets import DraftPanel, LogPanel, ProfileList, StatusBar

LOG = logging.getLogger(__name__)


def _load_app_config() -> AppConfig:
    """Load configuration with a small wrapper for future overrides."""

    return load_config()


class VeilboxApp(App[None]):
    """Terminal shell over the orchestration layer."""

    COMMANDS = App.COMMANDS | {
        ProfileSelectProvider,
        ProfileManageProvider,
        SubscriptionRefreshProvider,
        SubscriptionManageProvider,
    }
    CSS = """
    Screen {
        layout: vertical;
    }
    #content {
        layout: horizontal;
        height: 1fr;
    }
    #main-column {
        layout: vertical;
        padding: 1 2;
        height: 1fr;
    }
    #entry {
        margin-top: 1;
    }
    """

    BINDINGS = [
        ("ctrl+c", "quit", "Quit"),
        ("ctrl+t", "toggle_connection", "Connect/Disconnect"),
        ("ctrl+r", "refresh", "Refresh Subscriptions"),
        ("ctrl+s", "toggle_split", "Split Tunnel"),
        ("ctrl+n", "new_profile", "New Profile"),
        ("escape", "close_editor", "Cancel Edit"),
        ("ctrl+p", "command_palette", "Command Palette"),
    ]

    def __init__(self, *, engine: TunnelEngine | None = None, store: KeyValueStore | None = None) -> None:
        super().__init__()
        self._config = _load_app_config()
        self._pending_notifications: list[tuple[str, str]] = []
        self._engine = engine or DemoTunnelEngine()
        self._session_manager = SessionManager(
            self._engine,
            latency_probe=HttpLatencyProbe(),
            address_lookup=IpApiAddressLookup(self._config.public_ip_url),
            notifier=self._safe_notify,
        )
        self._orchestrator = Orchestrator(
            StoreGateway(store or JsonFileStore(self._config.state_file)),
            self._engine,
            self._session_manager,
            fetcher=AiohttpSubscriptionFetcher(timeout=self._config.subscription_timeout),
            config=self._config,
            country_resolver=IpApiCountryResolver(self._config.country_lookup_url),
            notifier=self._safe_notify,
        )
        self._editor_unsubscribe: Callable[[], None] | None = None
        self._editing = False

    def compose(self) -> ComposeResult:
        """Compose the root layout."""

        yield Header(show_clock=True)
        main_column = Vertical(
            LogPanel(self._orchestrator, max_lines=self._config.log_tail_lines),
            DraftPanel(self._orchestrator),
            Input(placeholder="Paste a vless:// URI or a subscription URL and press Enter", id="entry"),
            id="main-column",
        )
        yield Horizontal(ProfileList(self._orchestrator), main_column, id="content")
        yield StatusBar(self._session_manager)
        yield Footer()

    async def on_mount(self) -> None:
        self._orchestrator.start()
        self._session_manager.refresh_public_address()
        self._editor_unsubscribe = self._orchestrator.subscribe(self._handle_editor_request)
        self._flush_pending_notifications()

    @property
    def orchestrator(self) -> Orchestrator:
        return self._orchestrator

    @property
    def session_manager(self) -> SessionManager:
        """Expose the session manager for tests."""

        return self._session_manager

    async def action_toggle_connection(self) -> None:
        await self._orchestrator.toggle()

    async def action_refresh(self) -> None:
        await self._orchestrator.refresh_all()

    def action_toggle_split(self) -> None:
        enabled = not self._orchestrator.state.split_enabled
        self._orchestrator.set_split_enabled(enabled)
        self._safe_notify(f"Split tunnel {'enabled' if enabled else 'disabled'}.")

    def action_new_profile(self) -> None:
        self.new_profile()

    def action_close_editor(self) -> None:
        if self._orchestrator.state.draft is not None:
            self._orchestrator.close_editor()

    def select_profile(self, profile_id: str) -> None:
        try:
            self._orchestrator.select_profile(profile_id)
        except ValueError as exc:
            self._safe_notify(str(exc), severity="error")

    def new_profile(self) -> None:
        self._orchestrator.open_editor()

    def edit_profile(self, profile_id: str) -> None:
        """Load a manual profile into the entry field for editing."""

        profile = next((item for item in self._orchestrator.state.profiles if item.id == profile_id), None)
        if profile is None:
            self._safe_notify(f"Profile '{profile_id}' not found.", severity="error")
            return
        if not isinstance(profile.origin, ManualOrigin):
            self._safe_notify("Profiles from a subscription are managed by their feed.", severity="error")
            return
        self._orchestrator.open_editor(profile_id)

    async def delete_profile(self, profile_id: str) -> None:
        try:
            await self._orchestrator.delete_profile(profile_id)
        except ValueError as exc:
            self._safe_notify(str(exc), severity="error")

    async def delete_subscription(self, subscription_id: str) -> None:
        try:
            await self._orchestrator.delete_subscription(subscription_id)
        except ValueError as exc:
            self._safe_notify(str(exc), severity="error")

    def switch_mode(self, mode: str) -> None:
        """Change the engine mode used by the next connect and persist it."""

        try:
            self._config = self._config.with_mode(mode)
        except ValueError as exc:
            self._safe_notify(str(exc), severity="error")
            return
        self._orchestrator.update_config(self._config)
        save_config(self._config)
        self._safe_notify(f"Mode set to {mode}.")

    @on(Input.Submitted, "#entry")
    async def _handle_entry(self, event: Input.Submitted) -> None:
        if await self.submit_entry(event.value):
            event.input.value = ""

    async def submit_entry(self, value: str) -> bool:
        """Save the open draft, a profile URI, or a subscription URL."""

        value = value.strip()
        if not value:
            return False
        try:
            if self._orchestrator.state.draft is not None:
                self._orchestrator.update_draft(uri=value)
                self._orchestrator.save_draft()
            elif value.lower().startswith("vless://"):
                self._orchestrator.save_profile(value)
            else:
                await self._orchestrator.add_subscription(value)
        except ValueError as exc:
            self._safe_notify(str(exc), severity="error")
            return False
        return True

    @on(Input.Changed, "#entry")
    def _handle_entry_changed(self, event: Input.Changed) -> None:
        if self._orchestrator.state.draft is not None:
            self._orchestrator.update_draft(uri=event.value)

    def _handle_editor_request(self, state: OrchestratorState) -> None:
        editing = state.draft is not None
        if editing == self._editing:
            return
        self._editing = editing
        try:
            entry = self.query_one("#entry", Input)
        except Exception:
            LOG.debug("Entry field not mounted yet")
            return
        entry.value = state.draft.uri if state.draft is not None else ""
        if editing:
            entry.focus()

    async def _shutdown(self) -> None:
        if self._editor_unsubscribe:
            self._editor_unsubscribe()
            self._editor_unsubscribe = None
        await self._orchestrator.shutdown()
        await super()._shutdown()

    def _safe_notify(self, message: str, severity: str = "information") -> None:
        if self.is_running:
            try:
                self.notify(message, severity=severity)
            except Exception:
                LOG.exception("Failed to display notification", extra={"notice": message})
        else:
            self._pending_notifications.append((message, severity))

    def _flush_pending_notifications(self) -> None:
        if not self._pending_notifications:
            return
        pending = list(self._pending_notifications)
        self._pending_notifications.clear()
        for message, severity in pending:
            try:
                self.notify(message, severity=severity)
            except Exception:
                LOG.exception("Failed to display queued notification", extra={"notice": message})


def main() -> None:
    """Invoke the Textual application."""

    VeilboxApp().run()


if __name__ == "__main__":
    main()
