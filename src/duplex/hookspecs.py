"""Pluggy hook namespace and runtime hook specifications."""

from __future__ import annotations

import pluggy

from duplex.live.events import OutboundEvent
from duplex.live.model import LiveModel
from duplex.tools.registry import ToolRegistry

DUPLEX_HOOK_NAMESPACE = "duplex"
hookspec = pluggy.HookspecMarker(DUPLEX_HOOK_NAMESPACE)
hookimpl = pluggy.HookimplMarker(DUPLEX_HOOK_NAMESPACE)


class DuplexHookSpecs:
    """Hook contract for runtime extensions."""

    @hookspec
    def register_tools(self, registry: ToolRegistry) -> None:
        """Register tool descriptors onto the shared registry."""

    @hookspec(firstresult=True)
    def provide_model(self, session_id: str) -> LiveModel | None:
        """Provide the live model collaborator for one new session."""

    @hookspec
    def on_event(self, event: OutboundEvent) -> None:
        """Observe one outbound session event."""

    @hookspec
    def on_error(self, stage: str, error: Exception, session_id: str | None) -> None:
        """Observe runtime errors from any stage."""
