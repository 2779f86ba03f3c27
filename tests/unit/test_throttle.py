"""
Tests for the streaming update throttle.
"""

import asyncio

from chatdesk.throttle import Throttle


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


async def test_first_call_is_immediate():
    delivered = []
    throttle = Throttle(delivered.append, interval=10)

    throttle("a")

    assert delivered == ["a"]
    assert not throttle.pending


async def test_calls_inside_interval_are_coalesced():
    delivered = []
    clock = FakeClock()
    throttle = Throttle(delivered.append, interval=10, clock=clock)

    throttle("a")
    clock.now = 1
    throttle("ab")
    throttle("abc")

    assert delivered == ["a"]
    assert throttle.pending

    throttle.flush()
    assert delivered == ["a", "abc"]
    assert not throttle.pending


async def test_pending_value_is_delivered_after_interval():
    delivered = []
    throttle = Throttle(delivered.append, interval=0.01)

    throttle("a")
    throttle("ab")
    throttle("abc")
    await asyncio.sleep(0.05)

    assert delivered == ["a", "abc"]


async def test_call_after_interval_is_immediate():
    delivered = []
    clock = FakeClock()
    throttle = Throttle(delivered.append, interval=10, clock=clock)

    throttle("a")
    clock.now = 10
    throttle("b")

    assert delivered == ["a", "b"]


async def test_at_most_one_delivery_per_interval():
    delivered = []
    throttle = Throttle(delivered.append, interval=0.05)

    for i in range(20):
        throttle(i)
        await asyncio.sleep(0.001)
    throttle.flush()

    assert delivered[0] == 0
    assert delivered[-1] == 19
    assert len(delivered) < 20


async def test_flush_without_pending_is_noop():
    delivered = []
    throttle = Throttle(delivered.append, interval=10)
    throttle.flush()
    throttle("a")
    throttle.flush()
    assert delivered == ["a"]


async def test_cancel_drops_pending():
    delivered = []
    throttle = Throttle(delivered.append, interval=0.01)

    throttle("a")
    throttle("b")
    throttle.cancel()
    await asyncio.sleep(0.03)

    assert delivered == ["a"]


async def test_multiple_arguments_are_forwarded():
    delivered = []
    throttle = Throttle(lambda text, handle: delivered.append((text, handle)), interval=10)
    throttle("x", "handle")
    assert delivered == [("x", "handle")]
