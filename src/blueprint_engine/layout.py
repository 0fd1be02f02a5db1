"""Content layout policy for the dashboard shell.

Layout is derived purely from window width and the selected tab; the
project engine keeps no layout state of its own.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


COMPACT_THRESHOLD = 1300


class ShellTab(str, Enum):
    CHAT = "chat"
    TASKS = "tasks"
    PROJECTS = "projects"
    AGENTS = "agents"
    ACTIVITY = "activity"
    USAGE = "usage"
    SKILLS = "skills"
    SETTINGS = "settings"


@dataclass(frozen=True)
class LayoutState:
    is_compact_window: bool
    is_main_sidebar_collapsed: bool


def layout_state(width: float, selected_tab: ShellTab, current_sidebar_collapsed: bool) -> LayoutState:
    """Compact below ``COMPACT_THRESHOLD``; only compact chat may keep the sidebar collapsed."""
    is_compact = width < COMPACT_THRESHOLD
    collapsed = current_sidebar_collapsed if is_compact and selected_tab == ShellTab.CHAT else False
    return LayoutState(is_compact_window=is_compact, is_main_sidebar_collapsed=collapsed)
