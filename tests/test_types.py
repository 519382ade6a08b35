from __future__ import annotations

import pytest

from duplex.errors import SchedulerFault, ToolTimeoutError
from duplex.types import ErrorRecord, ExecutionMode, InvocationState, ToolInvocation, TurnBatch


def _invocation(name: str = "text.upper") -> ToolInvocation:
    return ToolInvocation(tool_name=name, arguments={}, mode=ExecutionMode.COOPERATIVE)


def test_invocation_moves_forward_only() -> None:
    invocation = _invocation()
    invocation.start()
    first = invocation.add_partial("a")
    second = invocation.add_partial("b")
    invocation.complete("ab")

    assert invocation.state is InvocationState.COMPLETED
    assert [first.seq, second.seq] == [1, 2]
    assert invocation.outcome().partial_count == 2
    with pytest.raises(SchedulerFault):
        invocation.fail(ErrorRecord(kind="execution", message="late"))
    with pytest.raises(SchedulerFault):
        invocation.add_partial("c")


def test_cancel_is_noop_once_terminal() -> None:
    invocation = _invocation()
    invocation.start()
    invocation.complete(1)

    assert invocation.cancel("too late") is False
    assert invocation.state is InvocationState.COMPLETED
    assert invocation.error is None


def test_cancel_records_reason() -> None:
    invocation = _invocation()
    assert invocation.cancel("interrupted") is True
    assert invocation.cancel("again") is False

    outcome = invocation.outcome()
    assert outcome.state is InvocationState.CANCELLED
    assert outcome.error is not None
    assert outcome.error.kind == "cancelled"
    assert outcome.error.message == "interrupted"


def test_complete_without_start_is_a_fault() -> None:
    with pytest.raises(SchedulerFault):
        _invocation().complete("x")


def test_outcome_requires_terminal_state() -> None:
    invocation = _invocation()
    invocation.start()
    with pytest.raises(SchedulerFault):
        invocation.outcome()


def test_batch_assigns_ids_and_rejects_duplicates() -> None:
    first, second = _invocation(), _invocation()
    batch = TurnBatch.of([first, second])

    assert first.batch_id == batch.id
    assert batch.position(second.id) == 1
    assert batch.get(first.id) is first
    assert not batch.terminal
    with pytest.raises(SchedulerFault):
        TurnBatch.of([first, first])
    with pytest.raises(ValueError):
        TurnBatch.of([])


def test_function_response_renders_error_payload() -> None:
    invocation = _invocation("clock.wait")
    invocation.start()
    invocation.fail(ErrorRecord.from_exception(ToolTimeoutError("clock.wait exceeded 1s deadline")))

    response = invocation.outcome().to_function_response()
    assert response["status"] == "failed"
    assert response["error"]["kind"] == "timeout"
    assert "result" not in response


def test_error_record_wraps_foreign_exceptions() -> None:
    record = ErrorRecord.from_exception(KeyError("missing"))
    assert record.kind == "execution"
    assert record.cause is not None
    assert record.cause.startswith("KeyError")
