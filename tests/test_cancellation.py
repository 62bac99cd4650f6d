import asyncio
import inspect
import unittest

from minder_resilience.core_logic.cancellation import TransferController
from minder_resilience.utils import TransferCancelled


class TestTransferController(unittest.IsolatedAsyncioTestCase):

    async def test_run_returns_result_when_not_cancelled(self):
        controller = TransferController("t")

        async def work():
            await asyncio.sleep(0)
            return 42

        self.assertEqual(await controller.run(work()), 42)

    async def test_cancel_aborts_inflight_call(self):
        controller = TransferController("t")
        inner_cancelled = asyncio.Event()
        started = asyncio.Event()

        async def slow():
            started.set()
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                inner_cancelled.set()
                raise

        task = asyncio.create_task(controller.run(slow()))
        await started.wait()
        controller.cancel("user abort")

        with self.assertRaises(TransferCancelled) as ctx:
            await task
        self.assertIn("user abort", str(ctx.exception))
        self.assertTrue(inner_cancelled.is_set())

    async def test_cancelled_controller_refuses_new_work(self):
        controller = TransferController()
        controller.cancel()
        coro = asyncio.sleep(0)
        with self.assertRaises(TransferCancelled):
            await controller.run(coro)
        self.assertEqual(inspect.getcoroutinestate(coro), inspect.CORO_CLOSED)
        with self.assertRaises(TransferCancelled):
            await controller.sleep(30)
        with self.assertRaises(TransferCancelled):
            controller.raise_if_cancelled()

    async def test_cancel_is_idempotent_and_keeps_first_reason(self):
        controller = TransferController()
        controller.cancel("first")
        controller.cancel("second")
        self.assertTrue(controller.cancelled)
        self.assertEqual(controller.reason, "first")

    async def test_sleep_ends_early_on_cancel(self):
        controller = TransferController()
        loop = asyncio.get_running_loop()
        loop.call_later(0.01, controller.cancel)
        start = loop.time()
        with self.assertRaises(TransferCancelled):
            await controller.sleep(30)
        self.assertLess(loop.time() - start, 5)

    async def test_outer_task_cancellation_propagates_to_inner(self):
        controller = TransferController()
        inner_cancelled = asyncio.Event()
        started = asyncio.Event()

        async def slow():
            started.set()
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                inner_cancelled.set()
                raise

        task = asyncio.create_task(controller.run(slow()))
        await started.wait()
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        await asyncio.wait_for(inner_cancelled.wait(), timeout=1)
