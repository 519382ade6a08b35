"""Builtin plugin: scripted echo model and demo tools."""

from .model import EchoModel
from .plugin import BuiltinPlugin, plugin

__all__ = ["BuiltinPlugin", "EchoModel", "plugin"]
