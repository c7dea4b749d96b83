"""Tab state shared between the UI and the control surface."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Mapping, Optional

from .runtime import MessageChannel

LOGGER = logging.getLogger(__name__)

TAB_CHANGED = "tab-changed"
SWITCH_TAB = "switch-tab"


@dataclass(frozen=True)
class TabState:
    tab: str
    color_primary: str = ""
    color_primary_container: str = ""


class ControlSurface:
    """Tracks the active UI tab and asks the UI to switch tabs."""

    def __init__(self, channel: MessageChannel) -> None:
        self.channel = channel
        self.tab_state: Optional[TabState] = None
        self._listeners: List[Callable[[TabState], None]] = []
        channel.on(TAB_CHANGED, self._on_tab_changed)

    def on_tab_changed(self, listener: Callable[[TabState], None]) -> None:
        self._listeners.append(listener)

    def switch_tab(self, tab: str) -> None:
        self.channel.send(SWITCH_TAB, {"tab": tab})

    def close(self) -> None:
        self.channel.off(TAB_CHANGED, self._on_tab_changed)

    def _on_tab_changed(self, payload: Optional[Mapping[str, Any]]) -> None:
        if not payload or "tab" not in payload:
            LOGGER.debug("Ignoring malformed %s message: %r", TAB_CHANGED, payload)
            return
        state = TabState(
            tab=str(payload["tab"]),
            color_primary=str(payload.get("colorPrimary") or ""),
            color_primary_container=str(payload.get("colorPrimaryContainer") or ""),
        )
        self.tab_state = state
        for listener in list(self._listeners):
            listener(state)
