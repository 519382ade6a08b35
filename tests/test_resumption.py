from __future__ import annotations

import pytest
from conftest import is_turn_complete, of_type, read_until
from test_live_session import ScriptedModel, build_session, call

from duplex.errors import ValidationError
from duplex.live import ContentPart, EventLog, EventType, OutboundEvent, ResumptionToken, TextDelta


def _event(seq: int, event_type: EventType = EventType.TURN_PARTIAL) -> OutboundEvent:
    return OutboundEvent(seq=seq, session_id="s1", type=event_type)


def test_token_is_opaque_and_validated() -> None:
    token = ResumptionToken(session_id="s1", epoch="e1", seq=7)
    encoded = token.encode()

    assert ResumptionToken.decode(encoded) == token
    for garbage in ("not-a-token", "", "e30="):
        with pytest.raises(ValidationError, match="malformed"):
            ResumptionToken.decode(garbage)


def test_event_log_enforces_sequence_and_window() -> None:
    log = EventLog(capacity=2)
    for seq in (1, 2, 3):
        log.append(_event(seq))

    assert [event.seq for event in log.since(1)] == [2, 3]
    assert log.first_retained_seq == 2
    with pytest.raises(ValidationError, match="older than the replay buffer"):
        log.since(0)
    with pytest.raises(ValueError):
        log.append(_event(5))

    log.append(_event(4, EventType.SESSION_CLOSED))
    assert log.closed


@pytest.mark.asyncio
async def test_resume_never_replays_delivered_outcomes() -> None:
    model = ScriptedModel([[call("text.upper", text="a"), call("text.upper", text="b")], [TextDelta("done")]])
    session, _ = build_session(model, checkpoint_interval=100)
    session.submit_inbound(ContentPart.text("go"))

    delivered = await read_until(session.events(), is_turn_complete)
    token = ResumptionToken.decode(session.resumption_state)
    last_outcome = of_type(delivered, EventType.TOOL_OUTCOME)[-1]
    assert token.seq == last_outcome.seq

    resumed = await read_until(session.events(resume=session.resumption_state), is_turn_complete)
    assert [event.seq for event in resumed] == [event.seq for event in delivered if event.seq > token.seq]

    rewound = ResumptionToken(session_id=session.id, epoch=session.epoch, seq=0)
    replayed = await read_until(session.events(resume=rewound), is_turn_complete)
    assert of_type(replayed, EventType.TOOL_ANNOUNCED)
    assert not of_type(replayed, EventType.TOOL_OUTCOME)
    await session.close()


@pytest.mark.asyncio
async def test_undelivered_outcomes_are_replayed() -> None:
    model = ScriptedModel([[call("text.upper", text="a")], [TextDelta("done")]])
    session, _ = build_session(model)
    session.submit_inbound(ContentPart.text("go"))

    observed = await read_until(session.events(track=False), is_turn_complete)
    rewound = ResumptionToken(session_id=session.id, epoch=session.epoch, seq=0)
    replayed = await read_until(session.events(resume=rewound), is_turn_complete)

    assert [event.seq for event in replayed] == [event.seq for event in observed]
    assert ResumptionToken.decode(session.resumption_state).seq > 0
    await session.close()


@pytest.mark.asyncio
async def test_foreign_or_stale_tokens_are_rejected() -> None:
    session, _ = build_session(ScriptedModel([[TextDelta("a"), TextDelta("b"), TextDelta("c")]]), replay_buffer_size=2)
    session.submit_inbound(ContentPart.text("hi"))
    await read_until(session.events(track=False), is_turn_complete)

    foreign = ResumptionToken(session_id="other", epoch=session.epoch, seq=0)
    old_epoch = ResumptionToken(session_id=session.id, epoch="previous", seq=0)
    ahead = ResumptionToken(session_id=session.id, epoch=session.epoch, seq=999)
    evicted = ResumptionToken(session_id=session.id, epoch=session.epoch, seq=0)

    for token in (foreign, old_epoch, ahead):
        with pytest.raises(ValidationError):
            await anext(session.events(resume=token))
    with pytest.raises(ValidationError, match="replay buffer"):
        await anext(session.events(resume=evicted.encode()))
    await session.close()
