import asyncio

import pytest

from shot_timer_bridge.client import TimerClient
from shot_timer_bridge.correlator import Correlator
from shot_timer_bridge.errors import MalformedResponse, RequestTimeout
from shot_timer_bridge.session import Session, SessionState

from fake_timer import FakeTimer


def _run(fake: FakeTimer, body):
    async def main():
        await fake.start()
        corr = Correlator()
        corr.start()
        corr.attach(fake)
        client = TimerClient(corr, state_timeout_ms=100)
        try:
            return await body(Session(client))
        finally:
            await corr.stop()

    return asyncio.run(main())


def test_state_follows_successful_reads_only():
    fake = FakeTimer()
    fake.state = 1

    async def body(session):
        assert await session.state.refresh_state() is SessionState.COUNTDOWN
        fake.drop["#G_STATE"] = 1
        with pytest.raises(RequestTimeout):
            await session.state.refresh_state()
        return session.state.state

    assert _run(fake, body) is SessionState.COUNTDOWN


def test_unknown_state_code_is_malformed():
    fake = FakeTimer()
    fake.state = 7

    async def body(session):
        with pytest.raises(MalformedResponse):
            await session.state.refresh_state()
        return session.state.state

    assert _run(fake, body) is SessionState.IDLE


def test_stale_state_reply_not_applied():
    fake = FakeTimer()
    fake.state = 2

    async def body(session):
        token = session.begin()

        def current():
            return session.is_current(token)

        session.invalidate()
        await session.state.refresh_state(current)
        return session.state.state

    assert _run(fake, body) is SessionState.IDLE


def test_begin_clears_drill_data():
    fake = FakeTimer()
    fake.state = 2

    async def body(session):
        await session.state.refresh_state()
        session.advance_count(2)
        session.shots.fill_slot(1, 640)
        session.attempts[2] = 1
        old = session.token
        new = session.begin()
        return session, old, new

    session, old, new = _run(fake, body)
    assert new == old + 1
    assert len(session.shots) == 0
    assert session.attempts == {}
    assert session.state.state is SessionState.IDLE
    assert session.snapshot().token == new


def test_advance_count_uses_current_state():
    fake = FakeTimer()

    async def body(session):
        session.advance_count(1)
        fake.state = 2
        await session.state.refresh_state()
        session.advance_count(2)
        return session.snapshot()

    snap = _run(fake, body)
    assert [r.is_false_start for r in snap.rows] == [True, False]
    assert SessionState.RUNNING.label == "Running"
