import asyncio

import pytest

from shot_timer_bridge.client import TimerClient, describe
from shot_timer_bridge.correlator import Correlator
from shot_timer_bridge.errors import ErrorKind, MalformedResponse, ProtocolError, RequestTimeout

from fake_timer import FakeTimer


def _run(fake: FakeTimer, body):
    async def main():
        corr = Correlator()
        corr.start()
        await fake.start()
        corr.attach(fake)
        client = TimerClient(corr, state_timeout_ms=200, count_timeout_ms=200, time_timeout_ms=200,
                             start_ack_timeout_ms=100)
        try:
            return await body(client)
        finally:
            await corr.stop()

    return asyncio.run(main())


def test_queries_parse_integers():
    fake = FakeTimer()
    fake.state = 2
    fake.shot_times = [1830, 2410]

    async def body(c):
        return await c.get_state(), await c.get_shot_count(), await c.get_shot_time(2)

    assert _run(fake, body) == (2, 2, 2410)


def test_shot_ids_map_to_zero_based_device_ids():
    fake = FakeTimer()
    fake.shot_times = [700]

    async def body(c):
        return await c.get_shot_time(1)

    assert _run(fake, body) == 700
    assert fake.commands == ["#G_STIME=0"]


def test_bare_reply_without_prefix_is_accepted():
    fake = FakeTimer()
    fake.raw_replies["#G_SNUM"] = ["SNUM=4"]

    async def body(c):
        return await c.get_shot_count()

    assert _run(fake, body) == 4


def test_error_reply_raises_protocol_error():
    fake = FakeTimer()
    fake.errors["#G_STIME=0"] = ["0B"]
    fake.shot_times = [700]

    async def body(c):
        with pytest.raises(ProtocolError) as ei:
            await c.get_shot_time(1)
        return ei.value, c.logger.recent(types=["warn"])

    err, warns = _run(fake, body)
    assert err.kind is ErrorKind.DATA_EMPTY
    assert err.retryable
    assert warns[0]["msg"] == "stime_error"
    assert warns[0]["data"]["dev_id"] == 0
    assert "DATA_EMPTY" in describe(err)


def test_non_integer_value_is_malformed():
    fake = FakeTimer()
    fake.raw_replies["#G_STATE"] = ["#G_STATE=??"]

    async def body(c):
        with pytest.raises(MalformedResponse):
            await c.get_state()

    _run(fake, body)


def test_id_below_one_rejected_locally():
    fake = FakeTimer()

    async def body(c):
        with pytest.raises(ProtocolError) as ei:
            await c.get_shot_time(0)
        return ei.value

    assert _run(fake, body).kind is ErrorKind.COMMAND_ERROR
    assert fake.commands == []


def test_unanswered_query_times_out():
    fake = FakeTimer()
    fake.drop["#G_SNUM"] = 1

    async def body(c):
        with pytest.raises(RequestTimeout):
            await c.get_shot_count()

    _run(fake, body)


def test_start_window_and_beep():
    fake = FakeTimer()

    async def body(c):
        await c.set_start_window(3000, 6000)
        return await c.start_beep()

    assert _run(fake, body) is True
    assert (fake.tmin, fake.tmax) == (3000, 6000)
    assert fake.commands == ["#S_TMIN=3000", "#S_TMAX=6000", "#E_STARTT"]
    assert fake.state == 1


def test_unacknowledged_start_is_not_an_error():
    fake = FakeTimer(ack_start=False)

    async def body(c):
        return await c.start_beep()

    assert _run(fake, body) is False


def test_standby_and_ready_zero_the_counter():
    fake = FakeTimer()
    fake.state = 2
    fake.shot_times = [100, 200]

    async def body(c):
        await c.standby()
        await c.ready()
        return await c.get_shot_count()

    assert _run(fake, body) == 0
    assert fake.state == 0
