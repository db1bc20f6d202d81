import asyncio

import pytest

from shot_timer_bridge.errors import ErrorInfo, ErrorKind, MalformedResponse, ProtocolError, RequestTimeout
from shot_timer_bridge.retry import RetryPolicy, default_retryable


def _perr(kind):
    return ProtocolError(ErrorInfo(kind, kind.value, f"{kind.value:02X}"), "#G_STIME=0")


def test_default_retryable():
    assert default_retryable(RequestTimeout("x"))
    assert default_retryable(_perr(ErrorKind.BUSY))
    assert default_retryable(_perr(ErrorKind.DATA_EMPTY))
    assert not default_retryable(_perr(ErrorKind.ID_OUT_OF_RANGE))
    assert not default_retryable(MalformedResponse("x"))


def test_retries_until_success():
    calls = []
    retried = []

    async def fn(attempt):
        calls.append(attempt)
        if attempt < 3:
            raise _perr(ErrorKind.BUSY)
        return 4200

    policy = RetryPolicy(max_attempts=3, pause_ms=1)
    assert asyncio.run(policy.run(fn, lambda n, e: retried.append(n))) == 4200
    assert calls == [1, 2, 3]
    assert retried == [1, 2]


def test_gives_up_after_max_attempts():
    calls = []

    async def fn(attempt):
        calls.append(attempt)
        raise RequestTimeout("no reply")

    with pytest.raises(RequestTimeout):
        asyncio.run(RetryPolicy(max_attempts=2, pause_ms=1).run(fn))
    assert calls == [1, 2]


def test_non_retryable_raises_immediately():
    calls = []

    async def fn(attempt):
        calls.append(attempt)
        raise _perr(ErrorKind.ID_OUT_OF_RANGE)

    with pytest.raises(ProtocolError):
        asyncio.run(RetryPolicy(max_attempts=5, pause_ms=1).run(fn))
    assert calls == [1]
