import asyncio
import random

import pytest

from conftest import FakeClock, FakeSleep
from twitter_sessionlib.BrowserFingerprint import AntiDetectionConfig
from twitter_sessionlib.BrowserFingerprintManager import BrowserFingerprintManager


NO_JITTER_CONFIG = AntiDetectionConfig(enable_jitter=False)


def create_manager(config: AntiDetectionConfig = NO_JITTER_CONFIG):
    clock = FakeClock()
    sleep = FakeSleep(clock)
    manager = BrowserFingerprintManager(config=config, rng=random.Random(99), clock=clock, sleep=sleep)
    return manager, clock, sleep


def test_current_is_stable_within_interval():
    manager, clock, _ = create_manager()
    first = manager.current()
    clock.advance(1000)
    assert manager.current() is first
    clock.advance(200000)
    assert manager.current() is first


def test_current_rotates_after_interval():
    manager, clock, _ = create_manager()
    first = manager.current()
    clock.advance(400000)
    second = manager.current()
    assert second is not first
    assert second.session_id != first.session_id


def test_rotate_resets_request_count():
    manager, _, _ = create_manager()
    manager.required_delay()
    manager.required_delay()
    assert manager.request_count == 2
    first = manager.current()
    assert manager.rotate() is not first
    assert manager.request_count == 0


def test_required_delay_penalty_is_monotonic_and_capped():
    manager, _, _ = create_manager()
    fingerprint = manager.current()
    delays = [manager.required_delay() for _ in range(40)]
    assert delays == sorted(delays)
    for delay in delays:
        assert fingerprint.request_delay <= delay <= fingerprint.request_delay + 1000
    assert delays[-1] == fingerprint.request_delay + 1000
    assert manager.get_request_delay() == fingerprint.request_delay + 1000


def test_required_delay_with_jitter():
    manager, _, _ = create_manager(AntiDetectionConfig())
    fingerprint = manager.current()
    for count in range(1, 30):
        delay = manager.required_delay()
        penalty = min(count * 50, 1000)
        assert fingerprint.request_delay + penalty <= delay <= fingerprint.request_delay + penalty + 500


def test_await_next_slot_waits_for_required_delay():
    manager, _, sleep = create_manager()

    async def main():
        # 最初のリクエストは待たない
        await manager.await_next_slot()
        assert sleep.calls == []
        await manager.await_next_slot()

    asyncio.run(main())
    fingerprint = manager.current()
    assert len(sleep.calls) == 1
    assert sleep.calls[0] * 1000 == pytest.approx(fingerprint.request_delay + 100)
    assert manager.request_count == 2


def test_await_next_slot_does_not_wait_after_long_idle():
    manager, clock, sleep = create_manager()

    async def main():
        await manager.await_next_slot()
        clock.advance(10000)
        await manager.await_next_slot()

    asyncio.run(main())
    assert sleep.calls == []


def test_await_next_slot_concurrent_callers_queue():
    manager, _, sleep = create_manager()

    async def main():
        await asyncio.gather(*(manager.await_next_slot() for _ in range(3)))

    asyncio.run(main())
    assert manager.request_count == 3
    # 2 件目以降はそれぞれ前の予約時刻を基準に待つ
    assert len(sleep.calls) == 2
    assert sleep.calls[1] > sleep.calls[0]


def test_await_next_slot_disabled():
    manager, _, sleep = create_manager(AntiDetectionConfig(enable_request_delay=False))

    async def main():
        for _ in range(5):
            await manager.await_next_slot()

    asyncio.run(main())
    assert sleep.calls == []
    assert manager.request_count == 0


def test_penalty_resets_after_timed_rotation():
    manager, clock, _ = create_manager()
    first = manager.current()
    clock.advance(100000)
    assert manager.current() is first

    for _ in range(10):
        manager.required_delay()
    assert manager.request_count == 10

    # 最初の current() から 400000 ms 後
    clock.advance(300000)
    delay = manager.required_delay()
    second = manager.current()

    assert second is not first
    # ローテーション前のペナルティは持ち越されない
    assert delay == second.request_delay
    assert manager.request_count == 0
