import asyncio

import pytest

from credvault.service.sweepers import (
    MIN_RETRY_DELAY_SECONDS,
    Sweeper,
    SweeperSet,
    build_sweepers,
)


class CountingPurge:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        outcome = self.outcomes.pop(0) if self.outcomes else 0
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


async def test_run_once_counts_passes_and_failures():
    purge = CountingPurge(4, RuntimeError("db down"), 0)
    sweeper = Sweeper("otp", purge, interval=600)

    assert await sweeper.run_once() == 4
    assert await sweeper.run_once() is None
    assert await sweeper.run_once() == 0
    assert sweeper.passes == 2
    assert sweeper.failures == 1


def test_retry_delay_has_a_floor():
    purge = CountingPurge()
    assert Sweeper("fast", purge, interval=60).retry_delay == MIN_RETRY_DELAY_SECONDS
    assert Sweeper("slow", purge, interval=3600).retry_delay == 600
    assert Sweeper("custom", purge, interval=3600, retry_delay=5).retry_delay == 5


async def test_loop_backs_off_after_failure_and_stops_cleanly():
    delays = []
    reached = asyncio.Event()

    async def fake_sleep(delay):
        delays.append(delay)
        if len(delays) >= 3:
            reached.set()
            await asyncio.Event().wait()

    purge = CountingPurge(RuntimeError("boom"), 2, 0)
    sweeper = Sweeper("refresh_tokens", purge, interval=600, sleep=fake_sleep)

    await sweeper.start()
    assert sweeper.running
    await asyncio.wait_for(reached.wait(), timeout=1)
    await sweeper.stop()

    assert delays == [100, 600, 600]
    assert not sweeper.running
    assert purge.calls == 3


async def test_start_twice_keeps_single_task():
    async def fake_sleep(delay):
        await asyncio.Event().wait()

    sweeper = Sweeper("otp", CountingPurge(), interval=600, sleep=fake_sleep)
    await sweeper.start()
    task = sweeper._task
    await sweeper.start()
    assert sweeper._task is task
    await sweeper.stop()
    assert task.cancelled()


async def test_cancellation_propagates_out_of_run_once():
    async def purge():
        raise asyncio.CancelledError()

    sweeper = Sweeper("otp", purge, interval=600)
    with pytest.raises(asyncio.CancelledError):
        await sweeper.run_once()
    assert sweeper.failures == 0


class _Engine:
    def __init__(self, removed):
        self.removed = removed

    async def cleanup_expired(self):
        return self.removed


async def test_build_sweepers_wires_each_engine():
    sweepers = build_sweepers(
        otp=_Engine(1),
        tokens=_Engine(2),
        email_verification=_Engine(3),
        password_reset=_Engine(4),
    )

    assert isinstance(sweepers, SweeperSet)
    assert sweepers["otp"].interval == 600
    assert sweepers["refresh_tokens"].interval == 3600
    assert sweepers["email_verification"].interval == 6 * 3600
    assert sweepers["password_reset"].interval == 6 * 3600
    assert await sweepers.run_all_once() == {
        "otp": 1,
        "refresh_tokens": 2,
        "email_verification": 3,
        "password_reset": 4,
    }


async def test_sweeper_set_start_and_stop():
    async def fake_sleep(delay):
        await asyncio.Event().wait()

    sweepers = SweeperSet(
        [
            Sweeper("a", CountingPurge(), interval=60, sleep=fake_sleep),
            Sweeper("b", CountingPurge(), interval=60, sleep=fake_sleep),
        ]
    )
    await sweepers.start()
    assert all(s.running for s in sweepers.sweepers.values())
    await sweepers.stop()
    assert not any(s.running for s in sweepers.sweepers.values())
