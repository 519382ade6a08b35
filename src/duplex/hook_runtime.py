"""Plugin hook dispatch for the live runtime.

A plugin that raises never takes the session down: its failure is routed to
the `on_error` hooks (stage `hook.<name>[<plugin>]`) and the hook carries on
with the next implementation. Failures inside `on_error` itself are only
logged.
"""

from __future__ import annotations

import inspect
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

import pluggy
from loguru import logger

from duplex.live.events import OutboundEvent


@dataclass(frozen=True)
class _HookCall:
    hook: str
    plugin: str
    function: Callable[..., Any]
    kwargs: dict[str, Any]

    @property
    def stage(self) -> str:
        return f"hook.{self.hook}[{self.plugin}]"


class HookRuntime:
    """Calls plugin implementations last-registered first, isolating each one."""

    def __init__(self, plugin_manager: pluggy.PluginManager) -> None:
        self._plugin_manager = plugin_manager

    async def call_many(self, hook_name: str, **kwargs: Any) -> list[Any]:
        """Await every implementation; failed ones contribute no result."""
        results: list[Any] = []
        for call in self._calls(hook_name, kwargs):
            try:
                value = call.function(**call.kwargs)
                if inspect.isawaitable(value):
                    value = await value
            except Exception as error:
                await self.notify_error(stage=call.stage, error=error, session_id=_session_of(kwargs))
                continue
            results.append(value)
        return results

    async def broadcast(self, event: OutboundEvent) -> None:
        """Hand one outbound session event to every `on_event` observer."""
        await self.call_many("on_event", event=event)

    def call_first_sync(self, hook_name: str, **kwargs: Any) -> Any:
        """Return the first non-None answer, e.g. the model for a new session."""
        for call in self._calls(hook_name, kwargs):
            ok, value = self._run_sync(call, session_id=_session_of(kwargs))
            if ok and value is not None:
                logger.debug("hook.answered hook={} plugin={}", hook_name, call.plugin)
                return value
        return None

    def call_many_sync(self, hook_name: str, **kwargs: Any) -> list[Any]:
        """Run setup hooks such as `register_tools` while the runtime is built."""
        results: list[Any] = []
        for call in self._calls(hook_name, kwargs):
            ok, value = self._run_sync(call, session_id=_session_of(kwargs))
            if ok:
                results.append(value)
        return results

    async def notify_error(self, *, stage: str, error: BaseException, session_id: str | None) -> None:
        for call in self._error_calls(stage, error, session_id):
            try:
                value = call.function(**call.kwargs)
                if inspect.isawaitable(value):
                    await value
            except Exception:
                logger.opt(exception=True).warning("hook.on_error.failed stage={} plugin={}", stage, call.plugin)

    def notify_error_sync(self, *, stage: str, error: BaseException, session_id: str | None) -> None:
        for call in self._error_calls(stage, error, session_id):
            try:
                value = call.function(**call.kwargs)
            except Exception:
                logger.opt(exception=True).warning("hook.on_error.failed stage={} plugin={}", stage, call.plugin)
                continue
            if inspect.isawaitable(value):
                # Setup paths have no loop to await on.
                if inspect.iscoroutine(value):
                    value.close()
                logger.warning("hook.on_error.async_skipped stage={} plugin={}", stage, call.plugin)

    def hook_report(self) -> dict[str, list[str]]:
        """Hook name -> plugin names in registration order, for `duplex hooks`."""
        report: dict[str, list[str]] = {}
        for hook_name in sorted(vars(self._plugin_manager.hook)):
            plugins = [impl.plugin_name for impl in reversed(self._hookimpls(hook_name))]
            if plugins:
                report[hook_name] = plugins
        return report

    def _run_sync(self, call: _HookCall, *, session_id: str | None) -> tuple[bool, Any]:
        try:
            value = call.function(**call.kwargs)
        except Exception as error:
            self.notify_error_sync(stage=call.stage, error=error, session_id=session_id)
            return False, None
        if inspect.isawaitable(value):
            if inspect.iscoroutine(value):
                value.close()
            logger.warning("hook.async_skipped hook={} plugin={}", call.hook, call.plugin)
            return False, None
        return True, value

    def _error_calls(self, stage: str, error: BaseException, session_id: str | None) -> Iterator[_HookCall]:
        return self._calls("on_error", {"stage": stage, "error": error, "session_id": session_id})

    def _calls(self, hook_name: str, kwargs: dict[str, Any]) -> Iterator[_HookCall]:
        for impl in self._hookimpls(hook_name):
            yield _HookCall(
                hook=hook_name,
                plugin=impl.plugin_name or "<unknown>",
                function=impl.function,
                kwargs={name: kwargs[name] for name in impl.argnames if name in kwargs},
            )

    def _hookimpls(self, hook_name: str) -> list[Any]:
        if hook_name.startswith("_"):
            return []
        caller = getattr(self._plugin_manager.hook, hook_name, None)
        if caller is None or not hasattr(caller, "get_hookimpls"):
            return []
        # pluggy lists implementations in registration order; later plugins override.
        return list(reversed(caller.get_hookimpls()))


def _session_of(kwargs: dict[str, Any]) -> str | None:
    if kwargs.get("session_id") is not None:
        return str(kwargs["session_id"])
    event = kwargs.get("event")
    return event.session_id if isinstance(event, OutboundEvent) else None
