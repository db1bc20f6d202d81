import asyncio

from shot_timer_bridge.bridge import TimerBridge
from shot_timer_bridge.config import build_config
from shot_timer_bridge.errors import TransportUnavailable
from shot_timer_bridge.poller import PollerPhase

from fake_timer import FakeTimer, wait_for_phase, wait_until

FAST = {
    "tick_ms": 20, "beep_poll_ms": 10, "snum_cooldown_ms": 0, "retry_pause_ms": 1,
    "post_start_delay_ms": 0, "state_timeout_ms": 200, "count_timeout_ms": 200,
    "time_timeout_ms": 200, "start_ack_timeout_ms": 100,
}


def _bridge(fake, **timer):
    cfg = build_config({"timer": {**FAST, **timer}})
    return TimerBridge(cfg, transport=fake)


def test_drill_end_to_end():
    fake = FakeTimer(chunk_size=5, beep_after_s=0.05)

    async def main():
        br = _bridge(fake, mode="random", random_min_ms=1500, random_max_ms=3500)
        await br.start(status_every_s=0.05)
        try:
            assert br.connected
            assert await br.start_drill()
            await wait_for_phase(br.poller, PollerPhase.POLLING)
            for ms in (1620, 1890, 2230):
                fake.add_shot(ms)
            await wait_until(lambda: br.snapshot().shot_count == 3 and not br.snapshot().pending_ids)
            await wait_until(lambda: any(r["msg"] == "alive" for r in br.logger.history))
            await br.stop_drill()
            return br, br.snapshot(), br.status()
        finally:
            await br.stop()

    br, snap, status = asyncio.run(main())
    assert (fake.tmin, fake.tmax) == (1500, 3500)
    assert fake.count("#S_STB") == 1 and fake.count("#S_GRD") == 1
    assert snap.splits == [None, 270, 340]
    assert snap.table() == [("1", "1.62 s", "—"), ("2", "1.89 s", "0.27 s"), ("3", "2.23 s", "0.34 s")]
    assert status["shots"] == 3
    assert status["first_shot"] == "1.62 s"
    assert status["total_time"] == "2.23 s"
    assert status["phase"] == "stopped"
    assert status["error"] == ""
    assert status["skipped_ticks"] == br.poller.skipped_ticks


def test_reset_clears_device_and_shots():
    fake = FakeTimer()

    async def main():
        br = _bridge(fake, reset_on_start=False)
        await br.start(status_every_s=0)
        try:
            await br.start_drill("fixed")
            await wait_for_phase(br.poller, PollerPhase.AWAITING_BEEP)
            fake.add_shot(200)
            await wait_until(lambda: br.snapshot().shot_count == 1)
            await br.reset()
            return br.snapshot()
        finally:
            await br.stop()

    snap = asyncio.run(main())
    assert snap.shot_count == 0
    assert fake.shot_times == []
    assert (fake.tmin, fake.tmax) == (5000, 5000)


def test_link_loss_is_reported():
    fake = FakeTimer()

    async def main():
        br = _bridge(fake)
        await br.start(status_every_s=0)
        try:
            await br.start_drill()
            await wait_for_phase(br.poller, PollerPhase.AWAITING_BEEP)
            fake.disconnect()
            await asyncio.wait_for(br.poller.wait(), 1.0)
            return br.connected, br.last_error, br.status()
        finally:
            await br.stop()

    connected, err, status = asyncio.run(main())
    assert not connected
    assert isinstance(err, TransportUnavailable)
    assert status["error"].startswith("TransportUnavailable")


def test_restart_reuses_the_link_cleanly():
    fake = FakeTimer(chunk_size=3)
    fake.state = 2

    async def main():
        br = _bridge(fake)
        await br.start(status_every_s=0)
        first = await br.client.get_state()
        await br.stop()
        await br.start(status_every_s=0)
        try:
            second = await br.client.get_state()
        finally:
            await br.stop()
        return first, second

    assert asyncio.run(main()) == (2, 2)
    assert len(fake._on_chunk) == 1
    assert len(fake._on_disconnect) == 1
