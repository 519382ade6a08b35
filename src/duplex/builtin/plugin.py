"""Builtin hook implementations."""

from __future__ import annotations

from duplex.builtin.model import EchoModel
from duplex.builtin.tools import register_builtin_tools
from duplex.hookspecs import hookimpl
from duplex.live.model import LiveModel
from duplex.tools.registry import ToolRegistry


class BuiltinPlugin:
    name = "builtin"

    @hookimpl
    def register_tools(self, registry: ToolRegistry) -> None:
        register_builtin_tools(registry)

    @hookimpl
    def provide_model(self, session_id: str) -> LiveModel:
        _ = session_id
        return EchoModel()


plugin = BuiltinPlugin()
