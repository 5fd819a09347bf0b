"""Status bar widget that mirrors the connection session."""

from __future__ import annotations

from typing import Callable

from textual.widgets import Static

from veilbox.session import SessionManager, SessionState
from veilbox.telemetry import format_rate


class StatusBar(Static):
    """Compact status strip rendered above Textual's footer."""

    DEFAULT_CSS = """
    StatusBar {
        height: 1;
        padding: 0 1;
        background: $surface-darken-3;
        color: $text;
    }
    """

    def __init__(self, session_manager: SessionManager) -> None:
        super().__init__("", id="status-bar")
        self._session_manager = session_manager
        self._unsubscribe: Callable[[], None] | None = None

    async def on_mount(self) -> None:
        self._unsubscribe = self._session_manager.subscribe(self._handle_session_update)

    def on_unmount(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    def _handle_session_update(self, state: SessionState) -> None:
        self.update(render_status(state, self._session_manager))


def render_status(state: SessionState, session_manager: SessionManager) -> str:
    latency = f"{state.latency_ms} ms" if state.latency_ms is not None else "-"
    parts = [
        f"Status: {state.status.value.title()}",
        f"Profile: {state.profile_label or '-'}",
        f"Uptime: {state.elapsed}",
        f"Ping: {latency}",
        f"IP: {state.public_address.ip} ({state.public_address.location})",
    ]
    sample = session_manager.throughput.latest
    if state.connected and sample is not None:
        parts.append(f"Down {format_rate(sample.down)} / Up {format_rate(sample.up)}")
    parts.append(state.message)
    return " | ".join(parts)


__all__ = ["StatusBar", "render_status"]
