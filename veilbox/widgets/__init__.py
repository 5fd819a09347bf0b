"""Widget library for the Textual UI."""

from __future__ import annotations

from .draft_panel import DraftPanel
from .log_panel import LogPanel
from .profile_list import ProfileList
from .status_bar import StatusBar

__all__ = ["DraftPanel", "LogPanel", "ProfileList", "StatusBar"]
