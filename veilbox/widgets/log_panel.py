"""Engine log tail."""

from __future__ import annotations

from typing import Callable

from textual.widgets import Static

from veilbox.orchestrator import Orchestrator, OrchestratorState


class LogPanel(Static):
    DEFAULT_CSS = """
    LogPanel {
        height: 1fr;
        padding: 0 1;
        border: round $surface-darken-1;
        color: $text-muted;
    }
    """

    def __init__(self, orchestrator: Orchestrator, *, max_lines: int = 50) -> None:
        super().__init__("No engine output yet.", id="log-panel", markup=False)
        self._orchestrator = orchestrator
        self._max_lines = max_lines
        self._shown: tuple[str, ...] = ()
        self._unsubscribe: Callable[[], None] | None = None

    async def on_mount(self) -> None:
        self._unsubscribe = self._orchestrator.subscribe(self._handle_state)

    def on_unmount(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    def _handle_state(self, state: OrchestratorState) -> None:
        lines = state.logs[-self._max_lines :]
        if lines == self._shown:
            return
        self._shown = lines
        self.update("\n".join(lines) if lines else "No engine output yet.")


__all__ = ["LogPanel"]
