"""End-to-end actions through a session over an in-memory ledger."""

from __future__ import annotations

import asyncio
from unittest import IsolatedAsyncioTestCase

import timeflow.constants as C
from timeflow.errors import RemoteUnavailable, SubmissionRejected
from timeflow.session import _amount

from fake_ledger import CHARITY, OWNER, RECIPIENT, SENDER, STRANGER, FakeLedger, make_session, vault_values


class TestSession(IsolatedAsyncioTestCase):
    def setUp(self):
        self.ledger = FakeLedger(vault_values())
        self.session = make_session(self.ledger)
        self.sink = self.session.sink

    async def asyncTearDown(self):
        await self.session.aclose()

    async def test_vault_load(self):
        await self.session.vault.load()
        self.assertEqual(self.session.vault.claimable_rewards, 5)
        d = self.session.vault.to_dict()
        self.assertEqual(d["stats"], {"total_locked": 1000, "reward_pool": 50, "record_count": 1})
        self.assertEqual(d["position"]["amount"], 100)
        self.assertEqual(d["current_apy_bps"], 1250)

    async def test_withdraw_confirmed(self):
        p = await self.session.withdraw(0)
        self.assertEqual(p.status, C.TxStatus.CONFIRMED)
        self.assertEqual(self.ledger.submitted[0][:2], ("withdrawFromStream", {"args": [0], "value": 0}))
        self.assertIn("Withdrew 0.5000 from Stream #0!", self.sink.messages(C.Severity.SUCCESS))

    async def test_withdraw_by_sender_rejected(self):
        self.session.identity.set_address(SENDER)
        with self.assertRaises(SubmissionRejected):
            await self.session.withdraw(0)
        self.assertEqual(self.ledger.submitted, [])
        self.assertIn(
            "You cannot withdraw from your own stream. Only the recipient can withdraw.",
            self.sink.messages(C.Severity.ERROR),
        )

    async def test_stream_id_out_of_range(self):
        with self.assertRaises(SubmissionRejected) as ctx:
            await self.session.cancel(5)
        self.assertIn("Valid range: 0 to 0", ctx.exception.reason)

    async def test_requires_identity(self):
        session = make_session(self.ledger, address=None)
        with self.assertRaises(SubmissionRejected) as ctx:
            await session.stake("1")
        self.assertEqual(ctx.exception.reason, "Please connect wallet")
        session.close()

    async def test_cancel_sender_only(self):
        with self.assertRaises(SubmissionRejected):
            await self.session.cancel(0)
        self.session.identity.set_address(SENDER)
        p = await self.session.cancel(0)
        self.assertEqual(p.status, C.TxStatus.CONFIRMED)
        self.assertIn("Stream #0 cancelled successfully!", self.sink.messages(C.Severity.SUCCESS))

    async def test_create_announces_new_stream(self):
        self.ledger.values[C.Q.TOTAL_STREAMS] = 2
        p = await self.session.create_stream(STRANGER, "1.5", 3600)

        self.assertEqual(p.status, C.TxStatus.CONFIRMED)
        self.assertEqual(self.ledger.submitted[0][:2], ("createStream", {"args": [STRANGER, 3600], "value": 15 * 10**17}))
        self.assertEqual(self.session.last_created_stream_id, 1)
        self.assertEqual(
            self.sink.messages(C.Severity.SUCCESS), ["Stream created successfully!", "Stream #1 is ready to use!"]
        )

    async def test_bad_amount(self):
        with self.assertRaises(SubmissionRejected):
            await self.session.stake("one")
        self.assertEqual(self.ledger.submitted, [])

    async def test_unstake_limited_to_position(self):
        with self.assertRaises(SubmissionRejected):
            await self.session.unstake(101)
        p = await self.session.unstake(100)
        self.assertEqual(p.status, C.TxStatus.CONFIRMED)
        self.assertEqual(self.ledger.submitted[0][:2], ("unstake", {"args": [100], "value": 0}))

    async def test_read_failure_submits_nothing(self):
        self.ledger.values[(C.Q.STREAM, 0)] = RemoteUnavailable("gone")
        self.assertIsNone(await self.session.withdraw(0))
        self.assertEqual(self.ledger.submitted, [])
        self.assertIn("Ledger unavailable, nothing was submitted", self.sink.messages(C.Severity.ERROR))

    async def test_confirmation_refreshes_vault(self):
        await self.session.vault.load()
        self.ledger.values[C.Q.VAULT_STATS] = {"totalStaked": 2000, "totalRewardsAvailable": 50, "nextStreamId": 1}

        await self.session.stake(1)
        await asyncio.sleep(0.1)
        self.assertEqual(self.session.vault.stats.value.total_locked, 2000)
        self.assertEqual(self.session.coordinator.generation, 1)

    async def test_stream_view(self):
        view = self.session.stream_view(0)
        self.assertIs(self.session.stream_view(0), view)
        await view.load()

        self.assertEqual(view.realtime_claimable, 300)
        self.assertTrue(view.ticker.running)
        d = view.to_dict()
        self.assertEqual(d["record"]["beneficiary"], RECIPIENT)
        self.assertEqual(d["remote_claimable"], 5 * 10**17)
        self.assertEqual(d["projected_claimable"], 300)
        self.assertEqual(d["progress"], 50.0)
        self.assertEqual(d["time_remaining"], 300)

        self.session.close_stream_view(0)
        self.assertFalse(view.ticker.running)

    async def test_negative_stream_view_never_reads(self):
        view = self.session.stream_view(-1)
        self.assertIsNone(await view.load())
        self.assertNotIn((C.Q.STREAM, -1), self.ledger.queries)

    async def test_dispatch(self):
        p = await self.session.dispatch("claim", {})
        self.assertEqual(p.status, C.TxStatus.CONFIRMED)
        with self.assertRaises(SubmissionRejected):
            await self.session.dispatch("stake", {})
        with self.assertRaises(SubmissionRejected):
            await self.session.dispatch("fly", {})

    async def test_close_stops_confirmation_polling(self):
        self.ledger.outcome = C.Finality.PENDING
        task = asyncio.create_task(self.session.stake(1))
        await asyncio.sleep(0.05)

        self.session.close()
        await asyncio.wait({task}, timeout=1)
        self.assertTrue(task.cancelled())
        calls = self.ledger.finality_calls
        await asyncio.sleep(0.1)
        self.assertEqual(self.ledger.finality_calls, calls)

    async def test_ledger_down_is_not_a_rejection(self):
        self.ledger.down = True
        self.assertIsNone(await self.session.withdraw(0))
        self.assertIsNone(await self.session.unstake(1))

        errors = self.sink.messages(C.Severity.ERROR)
        self.assertIn("Ledger unavailable, nothing was submitted", errors)
        self.assertFalse([m for m in errors if m.startswith("Invalid stream ID")])
        self.assertFalse([m for m in errors if "exceeds" in m])
        self.assertEqual(self.ledger.submitted, [])

    async def test_vault_roles_and_fee_info(self):
        await self.session.vault.load()
        d = self.session.vault.to_dict()
        self.assertEqual(d["base_reward_rate"], 500)
        self.assertEqual(d["fee_info"], {"fee_bps": 25, "fees_collected": 7 * 10**15, "extra": ()})
        self.assertTrue(d["vault_active"])
        self.assertIsNone(d["role"])

        self.session.identity.set_address(OWNER.upper().replace("0X", "0x"))
        self.assertEqual(self.session.vault.role, "owner")
        self.session.identity.set_address(CHARITY)
        self.assertEqual(self.session.vault.role, "charity")

    def test_amount_forms(self):
        self.assertEqual(_amount(1), 1)
        self.assertEqual(_amount("1"), 10**18)
        with self.assertRaises(SubmissionRejected):
            _amount(True)
