"""submit -> confirm -> notify/refresh."""

from __future__ import annotations

import asyncio
from unittest import IsolatedAsyncioTestCase

import timeflow.constants as C
from timeflow.errors import SubmissionRejected
from timeflow.lifecycle import TransactionController, render
from timeflow.notify import MemorySink
from timeflow.refresh import RefreshCoordinator
from timeflow.submitter import RequestSubmitter
from timeflow.tracker import ConfirmationTracker

from fake_ledger import FakeLedger

ETH = 10**18


class TestTransactionController(IsolatedAsyncioTestCase):
    def setUp(self):
        self.ledger = FakeLedger()
        self.sink = MemorySink()
        self.coordinator = RefreshCoordinator(settlement_delay=0.01)
        self.tracker = ConfirmationTracker(self.ledger, poll_interval=0.01)
        self.controller = TransactionController(
            RequestSubmitter(self.ledger), self.tracker, self.coordinator, self.sink
        )

    async def asyncTearDown(self):
        self.controller.close()
        self.coordinator.close()

    async def test_confirmed_notifies_and_refreshes(self):
        p = await self.controller.execute("stake", {"amount": ETH}, payload={"amount": ETH})

        self.assertEqual(p.status, C.TxStatus.CONFIRMED)
        self.assertEqual(p.request_id, "req-1")
        self.assertEqual(self.sink.messages(C.Severity.INFO), ["Staking... Please wait for confirmation."])
        self.assertEqual(self.sink.messages(C.Severity.SUCCESS), ["Stake of 1.000 confirmed!"])
        self.assertTrue(self.coordinator.pending)
        self.assertTrue(self.controller.idle)

        await asyncio.sleep(0.05)
        self.assertEqual(self.coordinator.generation, 1)

    async def test_failed_notifies_without_refresh(self):
        self.ledger.outcome = C.Finality.FAILED
        p = await self.controller.execute("claim", payload={})

        self.assertEqual(p.status, C.TxStatus.FAILED)
        self.assertEqual(self.sink.messages(C.Severity.ERROR), ["Transaction failed!"])
        self.assertFalse(self.coordinator.pending)
        self.assertEqual(self.coordinator.generation, 0)

    async def test_rejection_leaves_no_trace(self):
        with self.assertRaises(SubmissionRejected):
            await self.controller.execute("create", {"recipient": "nope", "amount": 1, "duration": 1})
        self.assertEqual(self.ledger.submitted, [])
        self.assertEqual(list(self.sink.history), [])
        self.assertTrue(self.controller.idle)

    async def test_dispatch_failure(self):
        self.ledger.down = True
        p = await self.controller.execute("stake", {"amount": 1}, payload={"amount": 1})
        self.assertEqual(p.status, C.TxStatus.FAILED)
        self.assertIsNone(p.request_id)
        self.assertEqual(self.sink.messages(C.Severity.ERROR), ["Stake failed: ledger unavailable"])
        self.assertTrue(self.controller.idle)

    async def test_same_target_only_once(self):
        self.ledger.outcome = C.Finality.PENDING
        task = asyncio.create_task(
            self.controller.execute("withdraw", {"stream_id": 1}, payload={"stream_id": 1, "amount": 5}, target=1)
        )
        await asyncio.sleep(0.02)
        self.assertTrue(self.controller.busy("withdraw", 1))
        self.assertFalse(self.controller.busy("withdraw", 2))

        with self.assertRaises(SubmissionRejected) as ctx:
            await self.controller.execute("withdraw", {"stream_id": 1}, target=1)
        self.assertEqual(ctx.exception.reason, "already pending")
        self.assertEqual(len(self.ledger.submitted), 1)

        self.tracker.observe("req-1", C.Finality.CONFIRMED, source="ws")
        p = await asyncio.wait_for(task, 1)
        self.assertEqual(p.status, C.TxStatus.CONFIRMED)
        self.assertEqual(self.sink.messages(C.Severity.SUCCESS), ["Withdrew <0.0001 from Stream #1!"])
        self.assertTrue(self.controller.idle)

    async def test_background_start(self):
        task = self.controller.start("cancel", {"stream_id": 3}, payload={"stream_id": 3}, target=3)
        p = await asyncio.wait_for(task, 1)
        self.assertEqual(self.sink.messages(C.Severity.SUCCESS), ["Stream #3 cancelled successfully!"])
        self.assertEqual(p.status, C.TxStatus.CONFIRMED)

    async def test_no_reporting_after_close(self):
        self.ledger.outcome = C.Finality.PENDING
        task = asyncio.create_task(self.controller.execute("stake", {"amount": 1}, payload={"amount": 1}))
        await asyncio.sleep(0.02)

        self.controller.close()
        self.tracker.observe("req-1", C.Finality.CONFIRMED)
        with self.assertRaises(asyncio.CancelledError):
            await asyncio.wait_for(task, 1)

        self.assertEqual(self.sink.messages(C.Severity.SUCCESS), [])
        self.assertTrue(self.controller.idle)
        self.assertFalse(self.coordinator.pending)
        with self.assertRaises(SubmissionRejected):
            await self.controller.execute("claim")

    async def test_close_stops_polling_for_direct_callers(self):
        self.ledger.outcome = C.Finality.PENDING
        task = asyncio.create_task(self.controller.execute("claim"))
        await asyncio.sleep(0.05)
        self.assertGreater(self.ledger.finality_calls, 0)

        self.controller.close()
        await asyncio.wait({task}, timeout=1)
        self.assertTrue(task.cancelled())
        calls = self.ledger.finality_calls
        await asyncio.sleep(0.05)
        self.assertEqual(self.ledger.finality_calls, calls)

    def test_render_falls_back(self):
        self.assertEqual(render("Withdrew {amount} from Stream #{stream_id}!", {}), "Transaction confirmed!")
        self.assertEqual(render("Stake of {amount} confirmed!", {"amount": 0}), "Stake of 0 confirmed!")
