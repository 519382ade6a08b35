"""Hook-first live runtime: shared pool, registry and session map."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable
from typing import Any

import pluggy
from loguru import logger

from duplex.config import Settings, get_settings
from duplex.errors import ConfigurationError, SessionClosedError
from duplex.hook_runtime import HookRuntime
from duplex.hookspecs import DUPLEX_HOOK_NAMESPACE, DuplexHookSpecs
from duplex.live.events import CloseReason, OutboundEvent
from duplex.live.items import ContentPart, InboundItem
from duplex.live.model import LiveModel
from duplex.live.resumption import ResumptionToken
from duplex.live.session import LiveSession
from duplex.scheduler import ConcurrentDispatcher, ExecutionPool, InvocationExecutor
from duplex.tools.registry import ToolRegistry


class LiveRuntime:
    """Owns every live session of one process.

    All sessions share one ExecutionPool for blocking tools; each session keeps
    its own cooperative context (inbound loop plus turn task).
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        plugins: Iterable[Any] = (),
        load_builtin: bool = True,
    ) -> None:
        self.settings = settings or get_settings()
        self._plugin_manager = pluggy.PluginManager(DUPLEX_HOOK_NAMESPACE)
        self._plugin_manager.add_hookspecs(DuplexHookSpecs)
        self._hook_runtime = HookRuntime(self._plugin_manager)
        self.registry = ToolRegistry()
        self.pool = ExecutionPool(self.settings.pool_capacity)
        self.executor = InvocationExecutor(
            self.registry,
            self.pool,
            yield_budget_seconds=self.settings.yield_budget_seconds,
        )
        self.dispatcher = ConcurrentDispatcher(self.executor, timeout_seconds=self.settings.invocation_timeout_seconds)
        self._sessions: dict[str, LiveSession] = {}
        self._taps: dict[str, asyncio.Task[None]] = {}
        self._closed = False

        if load_builtin:
            from duplex.builtin.plugin import plugin as builtin_plugin

            self._plugin_manager.register(builtin_plugin, name="builtin")
        for index, plugin in enumerate(plugins):
            self._plugin_manager.register(plugin, name=getattr(plugin, "name", None) or f"plugin-{index}")
        self._hook_runtime.call_many_sync("register_tools", registry=self.registry)
        logger.info(
            "runtime.ready tools={} pool_capacity={} plugins={}",
            len(self.registry),
            self.pool.capacity,
            len(self._plugin_manager.get_plugins()),
        )

    @property
    def sessions(self) -> dict[str, LiveSession]:
        return dict(self._sessions)

    def hook_report(self) -> dict[str, list[str]]:
        return self._hook_runtime.hook_report()

    def session(self, session_id: str) -> LiveSession | None:
        return self._sessions.get(session_id)

    def submit(self, session_id: str, item: InboundItem) -> LiveSession:
        """Route one inbound item, opening the session on its first content part."""
        if self._closed:
            raise SessionClosedError("runtime is shut down")
        session = self._sessions.get(session_id)
        if session is None or session.closed:
            if not isinstance(item, ContentPart):
                raise SessionClosedError(f"no live session {session_id}")
            session = self._open(session_id)
        session.submit_inbound(item)
        return session

    def events(
        self,
        session_id: str,
        resume: str | ResumptionToken | None = None,
    ) -> AsyncIterator[OutboundEvent]:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionClosedError(f"no live session {session_id}")
        return session.events(resume)

    async def close(self, session_id: str, reason: CloseReason = CloseReason.CLIENT) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        await session.close(reason)
        tap = self._taps.get(session_id)
        if tap is not None:
            await asyncio.wait({tap}, timeout=self.settings.cancel_ack_timeout_seconds)
        return True

    async def aclose(self) -> None:
        """Close every session and stop the pool. Idempotent."""
        if self._closed:
            return
        self._closed = True
        sessions = list(self._sessions.values())
        await asyncio.gather(*(session.close(CloseReason.SHUTDOWN) for session in sessions))
        taps = [task for task in self._taps.values() if not task.done()]
        if taps:
            await asyncio.wait(taps, timeout=self.settings.cancel_ack_timeout_seconds)
        self.pool.shutdown()
        logger.info("runtime.closed sessions={}", len(sessions))

    async def __aenter__(self) -> LiveRuntime:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _open(self, session_id: str) -> LiveSession:
        model = self._hook_runtime.call_first_sync("provide_model", session_id=session_id)
        if model is None:
            raise ConfigurationError("no plugin provided a live model")

        async def _on_error(stage: str, error: BaseException) -> None:
            await self._hook_runtime.notify_error(stage=f"session.{stage}", error=error, session_id=session_id)

        session = LiveSession(
            session_id,
            model=_as_model(model),
            dispatcher=self.dispatcher,
            settings=self.settings,
            on_error=_on_error,
        )
        self._sessions[session_id] = session
        self._taps[session_id] = asyncio.create_task(self._tap(session), name=f"duplex-tap-{session_id}")
        logger.info("runtime.session.open session={} epoch={}", session_id, session.epoch)
        return session

    async def _tap(self, session: LiveSession) -> None:
        try:
            async for event in session.events(track=False):
                await self._hook_runtime.broadcast(event)
        finally:
            if self._sessions.get(session.id) is session and session.closed:
                logger.debug("runtime.session.released session={}", session.id)


def _as_model(model: Any) -> LiveModel:
    if not callable(getattr(model, "respond", None)):
        raise ConfigurationError(f"provided model {type(model).__name__} has no respond()")
    return model
