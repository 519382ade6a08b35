"""Barge-in handling for live sessions."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from loguru import logger

from duplex.live.events import EventType
from duplex.live.turn import SessionState

if TYPE_CHECKING:
    from duplex.live.session import LiveSession


class InterruptionController:
    """Cancels the in-flight turn when new user activity arrives.

    Interruption never damages session state: outcomes that completed before
    the interruption stay available to the next turn. Exactly one
    `session.interrupted` event is emitted per interrupted turn.
    """

    def __init__(self, session: LiveSession, *, ack_timeout: float) -> None:
        self._session = session
        self._ack_timeout = ack_timeout
        self._active = False
        self.count = 0

    @property
    def interrupting(self) -> bool:
        return self._active

    async def interrupt(self, reason: str = "activity_start") -> bool:
        """Interrupt the current turn. Returns False when there is nothing to interrupt."""
        session = self._session
        turn = session.current_turn
        if self._active or session.closed or turn is None or turn.interrupted or not turn.in_flight:
            return False

        self._active = True
        turn.interrupted = True
        self.count += 1
        try:
            session._set_state(SessionState.INTERRUPTED)
            session._emit(
                EventType.INTERRUPTED,
                turn=turn,
                payload={"reason": reason, "depth": turn.depth, "tools_in_flight": turn.run is not None},
            )
            logger.info("interrupt.start turn={} reason={}", turn.id, reason)

            run = turn.run
            if run is not None:
                run.cancel(reason)
            if turn.task is not None:
                turn.task.cancel(reason)

            acknowledged = True
            if run is not None:
                acknowledged = await run.wait_acknowledged(self._ack_timeout)
            if turn.task is not None:
                done, _ = await asyncio.wait({turn.task}, timeout=self._ack_timeout)
                if not done:
                    acknowledged = False
                    turn.detached = True
                    logger.warning("interrupt.turn_detached turn={}", turn.id)

            preserved = session._finish_interrupted(turn)
            logger.info(
                "interrupt.complete turn={} acknowledged={} preserved={}",
                turn.id,
                acknowledged,
                preserved,
            )
            return True
        finally:
            self._active = False
