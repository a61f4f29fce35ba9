# test_engine_pool.py
#
# Run:
#   python -m unittest -v
#
# FakeEngineFactory stands in for latex/dvisvgm: it counts invocations,
# tracks how many jobs run at once and can be held on an asyncio.Event.

import asyncio
import unittest
from typing import Optional

from cancellation import CancelSignal, PreviewCancelled
from engine_pool import RenderingEnginePool
from math_renderer import RenderError, RenderOptions, RenderResult


class FakeEngine:
    def __init__(self, factory: "FakeEngineFactory"):
        self.factory = factory

    async def typeset(self, source: str, options: RenderOptions) -> RenderResult:
        f = self.factory
        f.calls.append((source, options))
        f.running += 1
        f.max_running = max(f.max_running, f.running)
        try:
            if f.gate is not None:
                await f.gate.wait()
            else:
                await asyncio.sleep(f.delay)
            if "CRASH" in source:
                raise OSError("engine process died")
            if "BAD" in source:
                raise RenderError("! Undefined control sequence.")
            return RenderResult(image=f"<svg fill='{options.color}'/>".encode())
        finally:
            f.running -= 1

    def close(self) -> None:
        self.factory.closed += 1


class FakeEngineFactory:
    def __init__(self, delay: float = 0.0, gate: Optional[asyncio.Event] = None):
        self.delay = delay
        self.gate = gate
        self.calls: list[tuple[str, RenderOptions]] = []
        self.created = 0
        self.closed = 0
        self.running = 0
        self.max_running = 0
        self.fail_next = False

    def __call__(self) -> FakeEngine:
        if self.fail_next:
            self.fail_next = False
            raise OSError("cannot start engine")
        self.created += 1
        return FakeEngine(self)

    @property
    def sources(self) -> list[str]:
        return [source for source, _ in self.calls]


async def settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


OPTIONS = RenderOptions(scale=1.0, color="#000000")


class TestRenderingEnginePool(unittest.IsolatedAsyncioTestCase):
    async def test_typeset_returns_engine_result(self):
        factory = FakeEngineFactory()
        pool = RenderingEnginePool(2, factory)
        result = await pool.typeset("x", OPTIONS)
        self.assertEqual(result.image, b"<svg fill='#000000'/>")
        self.assertEqual(factory.created, 1)

    async def test_concurrency_never_exceeds_pool_size(self):
        factory = FakeEngineFactory(delay=0.01)
        pool = RenderingEnginePool(2, factory)

        results = await asyncio.gather(*(pool.typeset(f"job{i}", OPTIONS) for i in range(7)))

        self.assertEqual(len(results), 7)
        self.assertLessEqual(factory.max_running, 2)
        self.assertEqual(factory.created, 2)
        self.assertEqual(sorted(factory.sources), sorted(f"job{i}" for i in range(7)))
        self.assertEqual(pool.active, 0)

    async def test_queue_is_fifo(self):
        gate = asyncio.Event()
        factory = FakeEngineFactory(gate=gate)
        pool = RenderingEnginePool(1, factory)

        tasks = []
        for name in ["a", "b", "c", "d"]:
            tasks.append(asyncio.create_task(pool.typeset(name, OPTIONS)))
            await settle()
        self.assertEqual(pool.queued, 3)

        gate.set()
        await asyncio.gather(*tasks)
        self.assertEqual(factory.sources, ["a", "b", "c", "d"])

    async def test_cancel_before_dispatch_never_invokes_engine(self):
        gate = asyncio.Event()
        factory = FakeEngineFactory(gate=gate)
        pool = RenderingEnginePool(1, factory)

        first = asyncio.create_task(pool.typeset("first", OPTIONS))
        await settle()
        cancel = CancelSignal()
        second = asyncio.create_task(pool.typeset("second", OPTIONS, cancel))
        await settle()
        self.assertEqual(pool.queued, 1)

        cancel.cancel()
        with self.assertRaises(PreviewCancelled):
            await second
        self.assertEqual(pool.queued, 0)

        gate.set()
        await first
        self.assertEqual(factory.sources, ["first"])

    async def test_already_cancelled_signal_is_rejected_up_front(self):
        factory = FakeEngineFactory()
        pool = RenderingEnginePool(1, factory)
        cancel = CancelSignal()
        cancel.cancel()
        with self.assertRaises(PreviewCancelled):
            await pool.typeset("x", OPTIONS, cancel)
        self.assertEqual(factory.calls, [])
        self.assertEqual(factory.created, 0)

    async def test_cancel_after_dispatch_frees_instance_for_next_request(self):
        gate = asyncio.Event()
        factory = FakeEngineFactory(gate=gate)
        pool = RenderingEnginePool(1, factory)

        cancel = CancelSignal()
        first = asyncio.create_task(pool.typeset("first", OPTIONS, cancel))
        await settle()
        second = asyncio.create_task(pool.typeset("second", OPTIONS))
        await settle()

        cancel.cancel()
        with self.assertRaises(PreviewCancelled):
            await first
        await settle()
        # the aborted job released the instance to the queued request
        self.assertEqual(factory.sources, ["first", "second"])

        gate.set()
        result = await second
        self.assertEqual(result.image, b"<svg fill='#000000'/>")
        self.assertEqual(factory.created, 1)

    async def test_render_error_is_isolated_to_its_caller(self):
        factory = FakeEngineFactory(delay=0.01)
        pool = RenderingEnginePool(1, factory)

        bad = asyncio.create_task(pool.typeset("BAD input", OPTIONS))
        good = asyncio.create_task(pool.typeset("fine", OPTIONS))

        with self.assertRaises(RenderError) as ctx:
            await bad
        self.assertIn("Undefined control sequence", ctx.exception.diagnostic)
        self.assertIsNotNone(await good)

        # the instance is still healthy
        self.assertIsNotNone(await pool.typeset("again", OPTIONS))
        self.assertEqual(factory.created, 1)
        self.assertEqual(factory.closed, 0)

    async def test_engine_crash_retires_instance(self):
        factory = FakeEngineFactory()
        pool = RenderingEnginePool(1, factory)

        with self.assertRaises(RenderError):
            await pool.typeset("CRASH", OPTIONS)
        await settle()
        self.assertEqual(factory.closed, 1)

        await pool.typeset("next", OPTIONS)
        self.assertEqual(factory.created, 2)

    async def test_crash_hands_fresh_instance_to_waiter(self):
        gate = asyncio.Event()
        factory = FakeEngineFactory(gate=gate)
        pool = RenderingEnginePool(1, factory)

        crashing = asyncio.create_task(pool.typeset("CRASH", OPTIONS))
        await settle()
        waiting = asyncio.create_task(pool.typeset("after", OPTIONS))
        await settle()

        gate.set()
        with self.assertRaises(RenderError):
            await crashing
        await waiting
        self.assertEqual(factory.created, 2)
        self.assertEqual(factory.sources, ["CRASH", "after"])

    async def test_task_cancelled_while_queued_does_not_strand_instance(self):
        gate = asyncio.Event()
        factory = FakeEngineFactory(gate=gate)
        pool = RenderingEnginePool(1, factory)

        first = asyncio.create_task(pool.typeset("a", OPTIONS))
        await settle()
        queued = asyncio.create_task(pool.typeset("b", OPTIONS))
        await settle()
        self.assertEqual(pool.queued, 1)

        queued.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await queued
        self.assertEqual(pool.queued, 0)

        gate.set()
        await first
        result = await asyncio.wait_for(pool.typeset("c", OPTIONS), 1)
        self.assertIsNotNone(result)
        self.assertEqual(factory.sources, ["a", "c"])
        self.assertEqual(factory.created, 1)

    async def test_task_cancelled_after_dispatch_cancels_job(self):
        gate = asyncio.Event()
        factory = FakeEngineFactory(gate=gate)
        pool = RenderingEnginePool(1, factory)

        running = asyncio.create_task(pool.typeset("a", OPTIONS))
        await settle()
        self.assertEqual(factory.running, 1)

        running.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await running
        await settle()
        self.assertEqual(factory.running, 0)
        self.assertEqual(pool.active, 0)

        gate.set()
        await asyncio.wait_for(pool.typeset("b", OPTIONS), 1)
        self.assertEqual(factory.created, 1)

    async def test_failed_rebuild_moves_on_to_next_waiter(self):
        gate = asyncio.Event()
        factory = FakeEngineFactory(gate=gate)
        pool = RenderingEnginePool(1, factory)

        crashing = asyncio.create_task(pool.typeset("CRASH", OPTIONS))
        await settle()
        w1 = asyncio.create_task(pool.typeset("w1", OPTIONS))
        w2 = asyncio.create_task(pool.typeset("w2", OPTIONS))
        await settle()
        self.assertEqual(pool.queued, 2)

        factory.fail_next = True
        gate.set()
        with self.assertRaises(RenderError):
            await crashing
        with self.assertRaises(RenderError) as ctx:
            await w1
        self.assertIn("no typesetting engine available", ctx.exception.diagnostic)

        result = await asyncio.wait_for(w2, 1)
        self.assertIsNotNone(result)
        self.assertEqual(pool.created, 1)
        self.assertEqual(factory.sources, ["CRASH", "w2"])

    async def test_identical_requests_are_typeset_each_time(self):
        factory = FakeEngineFactory()
        pool = RenderingEnginePool(1, factory)
        await pool.typeset("same", OPTIONS)
        await pool.typeset("same", OPTIONS)
        self.assertEqual(factory.sources, ["same", "same"])

    async def test_close_closes_idle_instances(self):
        factory = FakeEngineFactory()
        pool = RenderingEnginePool(2, factory)
        await asyncio.gather(pool.typeset("a", OPTIONS), pool.typeset("b", OPTIONS))
        pool.close()
        self.assertEqual(factory.closed, 2)

    def test_pool_size_must_be_positive(self):
        with self.assertRaises(ValueError):
            RenderingEnginePool(0, FakeEngineFactory())


if __name__ == "__main__":
    unittest.main(verbosity=2)
