"""Bidirectional live session: inbound queue, turn loop and outbound stream."""

from __future__ import annotations

import asyncio
import base64
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeAlias

from loguru import logger

from duplex.config import Settings
from duplex.errors import SchedulerFault, SessionClosedError, ValidationError
from duplex.live.events import CloseReason, EventType, OutboundEvent, TurnCompleteReason
from duplex.live.interruption import InterruptionController
from duplex.live.items import (
    ActivityKind,
    ActivitySignal,
    ContentKind,
    ContentPart,
    ControlKind,
    ControlSignal,
    InboundItem,
)
from duplex.live.model import (
    AudioDelta,
    FunctionResponses,
    HistoryItem,
    LiveModel,
    ModelContent,
    ModelRequest,
    ModelTurnEnd,
    TextDelta,
    ToolCallRequest,
    Transcription,
    UserContent,
)
from duplex.live.resumption import EventLog, ResumptionToken
from duplex.live.turn import SessionState, Turn
from duplex.logging_utils import bind_session
from duplex.scheduler.dispatcher import ConcurrentDispatcher, DispatchItem
from duplex.types import (
    ExecutionMode,
    InvocationOutcome,
    PartialResult,
    ToolCall,
    ToolInvocation,
    TurnBatch,
    new_id,
)

ErrorObserver: TypeAlias = Callable[[str, BaseException], Awaitable[None]]


@dataclass(frozen=True)
class _ModelReply:
    text: str
    calls: tuple[ToolCall, ...]


class LiveSession:
    """One user/agent conversation.

    The session owns a single inbound loop task and at most one turn task.
    Cooperative tools run on the same loop as those tasks; blocking tools go
    through the dispatcher's shared ExecutionPool.
    """

    def __init__(
        self,
        session_id: str,
        *,
        model: LiveModel,
        dispatcher: ConcurrentDispatcher,
        settings: Settings,
        on_error: ErrorObserver | None = None,
    ) -> None:
        self.id = session_id
        self.epoch = new_id()
        self._model = model
        self._dispatcher = dispatcher
        self._settings = settings
        self._on_error = on_error
        self._tools = tuple(dispatcher.executor.registry.schemas())
        self._inbound: asyncio.Queue[InboundItem] = asyncio.Queue()
        self._log = EventLog(settings.replay_buffer_size)
        self._state = SessionState.IDLE
        self._history: list[HistoryItem] = []
        self._pending_parts: list[ContentPart] = []
        self._utterance_ready = False
        self._user_active = False
        self._current_turn: Turn | None = None
        self._preserved: list[InvocationOutcome] = []
        self._delivered_outcomes: set[str] = set()
        self._delivered_count = 0
        self._checkpoint_seq = 0
        self._loop_task: asyncio.Task[None] | None = None
        self._closed = False
        self._last_activity = time.monotonic()
        self._close_reason: CloseReason | None = None
        self.interruptions = InterruptionController(self, ack_timeout=settings.cancel_ack_timeout_seconds)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def current_turn(self) -> Turn | None:
        return self._current_turn

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def close_reason(self) -> CloseReason | None:
        return self._close_reason

    @property
    def history(self) -> tuple[HistoryItem, ...]:
        return tuple(self._history)

    @property
    def preserved_outcomes(self) -> tuple[InvocationOutcome, ...]:
        return tuple(self._preserved)

    @property
    def resumption_state(self) -> str:
        """Opaque token for the last checkpointed delivery position."""
        return ResumptionToken(session_id=self.id, epoch=self.epoch, seq=self._checkpoint_seq).encode()

    def start(self) -> None:
        if self._loop_task is None:
            self._loop_task = asyncio.create_task(self._run_inbound(), name=f"duplex-session-{self.id}")

    def submit_inbound(self, item: InboundItem) -> None:
        """Queue one inbound item. Never blocks."""
        if self._closed:
            raise SessionClosedError(f"session {self.id} is closed")
        self._inbound.put_nowait(item)
        self._last_activity = time.monotonic()
        if self._state is SessionState.IDLE:
            self._set_state(SessionState.AWAITING_MODEL)
        self.start()

    async def interrupt(self, reason: str = "client") -> bool:
        return await self.interruptions.interrupt(reason)

    async def events(
        self,
        resume: str | ResumptionToken | None = None,
        *,
        track: bool = True,
    ) -> AsyncIterator[OutboundEvent]:
        """Stream outbound events until the session closes.

        With `resume`, delivery restarts after the token's checkpoint and tool
        outcomes already delivered are skipped. `track=False` streams do not
        count as deliveries (observers).
        """
        cursor = 0
        resuming = resume is not None
        if resume is not None:
            token = resume if isinstance(resume, ResumptionToken) else ResumptionToken.decode(resume)
            self._check_token(token)
            cursor = token.seq
            logger.info("session.resume session={} seq={}", self.id, cursor)

        while True:
            for event in self._log.since(cursor):
                cursor = event.seq
                if resuming and event.type is EventType.TOOL_OUTCOME and event.invocation_id in self._delivered_outcomes:
                    continue
                if track:
                    self._mark_delivered(event)
                yield event
                if event.terminal:
                    return
            if self._log.closed:
                return
            await self._log.wait_after(cursor)

    async def close(self, reason: CloseReason = CloseReason.CLIENT, *, detail: str | None = None) -> None:
        """Close the session and wait briefly for its tasks to stop. Idempotent."""
        current = asyncio.current_task()
        turn = self._current_turn
        tasks = [task for task in (turn.task if turn else None, self._loop_task) if task is not None]
        tasks = [task for task in tasks if task is not current and not task.done()]
        if not self._shutdown(reason, detail=detail):
            return
        if turn is not None and turn.run is not None:
            await turn.run.wait_acknowledged(self._settings.cancel_ack_timeout_seconds)
        if tasks:
            await asyncio.wait(tasks, timeout=self._settings.cancel_ack_timeout_seconds)

    # inbound

    async def _run_inbound(self) -> None:
        with bind_session(self.id):
            while not self._closed:
                try:
                    item = await self._next_inbound()
                except TimeoutError:
                    logger.info("session.idle_timeout seconds={}", self._settings.session_idle_timeout_seconds)
                    self._shutdown(CloseReason.IDLE_TIMEOUT)
                    return
                await self._handle_inbound(item)

    async def _next_inbound(self) -> InboundItem:
        timeout = self._settings.session_idle_timeout_seconds
        if timeout is None:
            return await self._inbound.get()
        while True:
            remaining = self._last_activity + timeout - time.monotonic()
            if remaining <= 0:
                if self._is_idle():
                    raise TimeoutError
                remaining = timeout
            try:
                async with asyncio.timeout(remaining):
                    return await self._inbound.get()
            except TimeoutError:
                continue

    def _is_idle(self) -> bool:
        return (
            self._current_turn is None
            and not self._pending_parts
            and not self._user_active
            and self._inbound.empty()
        )

    async def _handle_inbound(self, item: InboundItem) -> None:
        if isinstance(item, ControlSignal):
            if item.kind is ControlKind.CLOSE:
                self._shutdown(CloseReason.CLIENT, detail=item.reason)
                return
            if item.kind is ControlKind.END_OF_TURN and self._pending_parts:
                self._utterance_ready = True
        elif isinstance(item, ActivitySignal):
            if item.kind is ActivityKind.START:
                self._user_active = True
                if self._current_turn is not None:
                    await self.interruptions.interrupt("activity_start")
            else:
                self._user_active = False
                if self._pending_parts:
                    self._utterance_ready = True
        elif isinstance(item, ContentPart):
            self._pending_parts.append(item)
            if item.kind is ContentKind.TEXT:
                self._utterance_ready = True
        self._maybe_start_turn()

    def _maybe_start_turn(self) -> None:
        if self._closed or self._current_turn is not None:
            return
        if not self._utterance_ready:
            if not self._pending_parts and not self._user_active:
                self._set_state(SessionState.IDLE)
            return

        if self._preserved:
            self._history.append(FunctionResponses(tuple(self._preserved), interrupted=True))
            self._preserved.clear()
        self._history.append(UserContent(tuple(self._pending_parts)))
        self._pending_parts.clear()
        self._utterance_ready = False

        turn = Turn()
        self._current_turn = turn
        self._set_state(SessionState.AWAITING_MODEL)
        turn.task = asyncio.create_task(self._run_turn(turn), name=f"duplex-turn-{turn.id[:8]}")
        turn.task.add_done_callback(lambda task: self._on_turn_done(turn, task))

    # turn

    async def _run_turn(self, turn: Turn) -> None:
        with bind_session(self.id):
            logger.info("session.turn.start turn={}", turn.id)
            try:
                await self._turn_loop(turn)
            except asyncio.CancelledError:
                if turn.run is not None:
                    await self._drain_cancelled(turn)
                raise
            except SchedulerFault as fault:
                await self._fault(fault)
            except Exception as exc:
                fault = SchedulerFault(f"turn {turn.id} crashed: {exc!s}")
                fault.__cause__ = exc
                await self._fault(fault)

    async def _turn_loop(self, turn: Turn) -> None:
        while True:
            self._turn_state(turn, SessionState.AWAITING_MODEL)
            request = ModelRequest(
                session_id=self.id,
                turn_id=turn.id,
                depth=turn.depth,
                history=tuple(self._history),
                tools=self._tools,
            )
            reply = await self._stream_model(turn, request)
            if turn.interrupted:
                # The model swallowed the cancellation; nothing it produced may run.
                logger.info(
                    "session.turn.abandoned turn={} dropped_calls={}",
                    turn.id,
                    len(reply.calls) if reply is not None else 0,
                )
                return
            if reply is None:
                self._complete_turn(turn, TurnCompleteReason.MODEL_ERROR)
                return
            if not reply.calls:
                self._record(turn, ModelContent(text=reply.text))
                self._turn_state(turn, SessionState.EMITTING_FINAL)
                self._complete_turn(turn, TurnCompleteReason.FINAL)
                return
            if turn.depth >= self._settings.max_tool_depth:
                logger.warning(
                    "session.turn.max_tool_depth turn={} depth={} dropped_calls={}",
                    turn.id,
                    turn.depth,
                    len(reply.calls),
                )
                self._record(turn, ModelContent(text=reply.text))
                self._complete_turn(turn, TurnCompleteReason.MAX_TOOL_DEPTH, dropped_calls=len(reply.calls))
                return

            self._record(turn, ModelContent(text=reply.text, tool_calls=reply.calls))
            turn.depth += 1
            self._turn_state(turn, SessionState.DISPATCHING_TOOLS)
            outcomes = await self._dispatch(turn, reply.calls)
            self._record(turn, FunctionResponses(outcomes))

    async def _stream_model(self, turn: Turn, request: ModelRequest) -> _ModelReply | None:
        text_parts: list[str] = []
        calls: list[ToolCall] = []
        try:
            async for event in self._model.respond(request):
                if isinstance(event, TextDelta):
                    text_parts.append(event.text)
                    self._emit(EventType.TURN_PARTIAL, turn=turn, payload={"text": event.text})
                elif isinstance(event, AudioDelta):
                    self._emit(
                        EventType.TURN_PARTIAL,
                        turn=turn,
                        payload={"audio": base64.b64encode(event.data).decode("ascii"), "mime_type": event.mime_type},
                    )
                elif isinstance(event, Transcription):
                    self._emit(
                        EventType.TRANSCRIPTION,
                        turn=turn,
                        payload={"text": event.text, "source": event.source, "final": event.final},
                    )
                elif isinstance(event, ToolCallRequest):
                    calls.append(event.call)
                elif isinstance(event, ModelTurnEnd):
                    break
        except Exception as exc:
            logger.opt(exception=exc).warning("session.model.error turn={} depth={}", turn.id, turn.depth)
            await self._notify_error("model", exc)
            return None
        return _ModelReply(text="".join(text_parts), calls=tuple(calls))

    async def _dispatch(self, turn: Turn, calls: tuple[ToolCall, ...]) -> tuple[InvocationOutcome, ...]:
        if turn.interrupted or turn is not self._current_turn:
            raise asyncio.CancelledError(f"turn {turn.id} is no longer current")
        if turn.run is not None and not turn.run.completed.is_set():
            raise SchedulerFault(f"turn {turn.id} already has batch {turn.run.batch.id} in flight")
        registry = self._dispatcher.executor.registry
        invocations = []
        for call in calls:
            descriptor = registry.get(call.name)
            mode = descriptor.mode if descriptor is not None else ExecutionMode.COOPERATIVE
            invocations.append(
                ToolInvocation(tool_name=call.name, arguments=dict(call.arguments), mode=mode, call_id=call.call_id)
            )
        batch = TurnBatch.of(invocations)
        for position, invocation in enumerate(invocations):
            self._emit(
                EventType.TOOL_ANNOUNCED,
                turn=turn,
                invocation_id=invocation.id,
                payload={
                    "name": invocation.tool_name,
                    "arguments": invocation.arguments,
                    "mode": str(invocation.mode),
                    "call_id": invocation.call_id,
                    "batch_id": batch.id,
                    "position": position,
                },
            )

        run = self._dispatcher.dispatch(batch)
        turn.run = run
        async for item in run:
            self._forward(turn, item)
        turn.run = None
        outcomes = run.outcomes
        return tuple(outcomes[invocation.id] for invocation in invocations)

    async def _drain_cancelled(self, turn: Turn) -> None:
        run = turn.run
        if run is None:
            return
        await run.wait_acknowledged(self._settings.cancel_ack_timeout_seconds)
        for item in await run.drain():
            self._forward(turn, item)

    def _forward(self, turn: Turn, item: DispatchItem) -> None:
        if isinstance(item, PartialResult):
            self._emit(
                EventType.TOOL_PARTIAL,
                turn=turn,
                invocation_id=item.invocation_id,
                payload={"name": item.tool_name, "seq": item.seq, "value": item.value},
            )
            return
        turn.outcomes.append(item)
        payload: dict[str, Any] = item.to_function_response()
        payload["elapsed_ms"] = item.elapsed_ms
        payload["partial_count"] = item.partial_count
        self._emit(EventType.TOOL_OUTCOME, turn=turn, invocation_id=item.invocation_id, payload=payload)

    def _complete_turn(self, turn: Turn, reason: TurnCompleteReason, **extra: Any) -> None:
        logger.info("session.turn.complete turn={} reason={} depth={}", turn.id, reason, turn.depth)
        self._emit(EventType.TURN_COMPLETE, turn=turn, payload={"reason": str(reason), "depth": turn.depth, **extra})

    def _on_turn_done(self, turn: Turn, task: asyncio.Task[None]) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.opt(exception=task.exception()).error("session.turn.crashed turn={}", turn.id)
        if turn.interrupted or self._current_turn is not turn:
            return
        self._current_turn = None
        self._last_activity = time.monotonic()
        if not self._closed:
            self._maybe_start_turn()

    def _finish_interrupted(self, turn: Turn) -> int:
        """Release an interrupted turn. Returns the number of preserved outcomes."""
        preserved = [outcome for outcome in turn.outcomes if outcome.ok]
        if self._settings.fold_interrupted_results:
            self._preserved.extend(preserved)
        if self._current_turn is turn:
            self._current_turn = None
        self._last_activity = time.monotonic()
        if not self._closed:
            self._set_state(SessionState.AWAITING_MODEL)
            self._maybe_start_turn()
        return len(preserved)

    # outbound

    def _emit(
        self,
        event_type: EventType,
        *,
        turn: Turn | None = None,
        invocation_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> OutboundEvent | None:
        if self._log.closed:
            logger.debug("session.event.dropped type={} reason=closed", event_type)
            return None
        if turn is not None and turn.detached:
            logger.debug("session.event.dropped type={} reason=detached turn={}", event_type, turn.id)
            return None
        event = OutboundEvent(
            seq=self._log.next_seq(),
            session_id=self.id,
            type=event_type,
            turn_id=turn.id if turn is not None else None,
            invocation_id=invocation_id,
            payload=payload or {},
        )
        self._log.append(event)
        return event

    def _mark_delivered(self, event: OutboundEvent) -> None:
        self._delivered_count += 1
        if event.type is EventType.TOOL_OUTCOME and event.invocation_id is not None:
            self._delivered_outcomes.add(event.invocation_id)
            self._checkpoint_seq = event.seq
        elif event.terminal or self._delivered_count % self._settings.checkpoint_interval == 0:
            self._checkpoint_seq = event.seq

    def _check_token(self, token: ResumptionToken) -> None:
        if token.session_id != self.id or token.epoch != self.epoch:
            raise ValidationError(f"resumption token does not belong to session {self.id}")
        if token.seq > self._log.last_seq:
            raise ValidationError(f"resumption token points past the stream end ({token.seq} > {self._log.last_seq})")

    # lifecycle

    def _turn_state(self, turn: Turn, state: SessionState) -> None:
        if turn is self._current_turn and not turn.interrupted:
            self._set_state(state)

    def _record(self, turn: Turn, item: HistoryItem) -> None:
        if turn.detached:
            logger.debug("session.history.dropped turn={} item={}", turn.id, type(item).__name__)
            return
        self._history.append(item)

    def _set_state(self, state: SessionState) -> None:
        if self._state is SessionState.CLOSED or self._state is state:
            return
        logger.debug("session.state session={} from={} to={}", self.id, self._state, state)
        self._state = state

    async def _fault(self, fault: SchedulerFault) -> None:
        logger.opt(exception=fault).error("session.scheduler_fault session={}", self.id)
        await self._notify_error("scheduler", fault)
        self._shutdown(CloseReason.SCHEDULER_FAULT, detail=str(fault))

    async def _notify_error(self, stage: str, error: BaseException) -> None:
        if self._on_error is None:
            return
        try:
            await self._on_error(stage, error)
        except Exception:
            logger.opt(exception=True).warning("session.on_error_failed stage={}", stage)

    def _shutdown(self, reason: CloseReason, *, detail: str | None = None) -> bool:
        if self._closed:
            return False
        self._closed = True
        self._close_reason = reason
        current = asyncio.current_task()
        turn = self._current_turn
        if turn is not None:
            if turn.run is not None:
                turn.run.cancel(str(reason))
            if turn.task is not None and turn.task is not current and not turn.task.done():
                turn.task.cancel(str(reason))
        if self._loop_task is not None and self._loop_task is not current and not self._loop_task.done():
            self._loop_task.cancel()
        self._emit(EventType.SESSION_CLOSED, payload={"reason": str(reason), "detail": detail})
        self._set_state(SessionState.CLOSED)
        logger.info("session.closed session={} reason={}", self.id, reason)
        return True
