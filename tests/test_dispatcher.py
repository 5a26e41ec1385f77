"""
Unit tests for the keyed work dispatcher.
"""

import asyncio

import pytest

from tasklink.core.dispatcher import KeyedDispatcher


@pytest.fixture
async def dispatcher():
    dispatcher = KeyedDispatcher(worker_count=4)
    await dispatcher.start()
    yield dispatcher
    await dispatcher.stop()


class TestKeyedDispatcher:
    """Tests for ordering and isolation."""

    async def test_same_key_runs_in_submission_order(self, dispatcher):
        order = []

        def job(i):
            async def run():
                await asyncio.sleep(0.01 * (5 - i))
                order.append(i)
                return i

            return run

        futures = [await dispatcher.submit(17, job(i)) for i in range(5)]
        results = await asyncio.gather(*futures)

        assert results == [0, 1, 2, 3, 4]
        assert order == [0, 1, 2, 3, 4]

    async def test_different_keys_run_concurrently(self, dispatcher):
        keys = []
        for key in range(100):
            if dispatcher.slot_for(key) not in {dispatcher.slot_for(k) for k in keys}:
                keys.append(key)
            if len(keys) == 2:
                break

        gate = asyncio.Event()
        started = []

        async def waiter():
            started.append("waiter")
            await gate.wait()
            return "waited"

        async def opener():
            started.append("opener")
            gate.set()
            return "opened"

        first = await dispatcher.submit(keys[0], waiter)
        second = await dispatcher.submit(keys[1], opener)

        assert await asyncio.wait_for(asyncio.gather(first, second), 1) == [
            "waited",
            "opened",
        ]

    async def test_job_exception_reaches_future_and_worker_survives(self, dispatcher):
        async def broken():
            raise ValueError("bad job")

        async def fine():
            return "ok"

        failed = await dispatcher.submit("k", broken)
        with pytest.raises(ValueError, match="bad job"):
            await failed
        assert await (await dispatcher.submit("k", fine)) == "ok"

    def test_slot_is_stable(self):
        dispatcher = KeyedDispatcher(worker_count=8)
        assert dispatcher.slot_for(42) == dispatcher.slot_for("42")
        assert 0 <= dispatcher.slot_for(42) < 8

    async def test_submit_starts_workers(self):
        dispatcher = KeyedDispatcher(worker_count=1)
        try:
            assert not dispatcher.running

            async def job():
                return 1

            assert await (await dispatcher.submit(1, job)) == 1
            assert dispatcher.running
        finally:
            await dispatcher.stop()
