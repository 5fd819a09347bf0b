"""Preview of the profile being edited."""

from __future__ import annotations

from typing import Callable

from textual.widgets import Static

from veilbox.orchestrator import Orchestrator, OrchestratorState, ProfileDraft


def draft_line(draft: ProfileDraft | None) -> str:
    """Summarize the draft for display; empty when no editor is open."""

    if draft is None:
        return ""
    heading = "Editing profile" if draft.profile_id else "New profile"
    if draft.error:
        return f"{heading}: {draft.error}"
    preview = draft.preview
    if preview is None:
        return f"{heading}: paste a vless:// URI, Enter to save, Escape to cancel."
    name = draft.label.strip() or preview.node_name
    return f"{heading}: {name}  [{preview.country}] {preview.host}:{preview.port} {preview.transport}"


class DraftPanel(Static):
    DEFAULT_CSS = """
    DraftPanel {
        height: auto;
        padding: 0 1;
        color: $warning;
    }

    DraftPanel.-hidden {
        display: none;
    }
    """

    def __init__(self, orchestrator: Orchestrator) -> None:
        super().__init__("", id="draft-panel", markup=False, classes="-hidden")
        self._orchestrator = orchestrator
        self._unsubscribe: Callable[[], None] | None = None

    async def on_mount(self) -> None:
        self._unsubscribe = self._orchestrator.subscribe(self._handle_state)

    def on_unmount(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    def _handle_state(self, state: OrchestratorState) -> None:
        self.set_class(state.draft is None, "-hidden")
        self.update(draft_line(state.draft))


__all__ = ["DraftPanel", "draft_line"]
