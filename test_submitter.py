"""Local validation before dispatch, and the snapshot guards."""

from __future__ import annotations

from unittest import IsolatedAsyncioTestCase, TestCase

import timeflow.constants as C
from timeflow.errors import RemoteUnavailable, SubmissionRejected
from timeflow.models import AccrualRecord
from timeflow.submitter import RequestSubmitter, check_cancellable, check_stream_id, check_withdrawable

from fake_ledger import RECIPIENT, SENDER, STRANGER, FakeLedger

ETH = 10**18


def stream(active=True) -> AccrualRecord:
    return AccrualRecord(SENDER, RECIPIENT, 600, 1, 0, 600, 0, active)


class TestPrepare(TestCase):
    def setUp(self):
        self.submitter = RequestSubmitter(FakeLedger())

    def test_create_wire_form(self):
        req = self.submitter.prepare("create", {"recipient": RECIPIENT, "amount": ETH, "duration": 3600})
        self.assertEqual(req.action, "createStream")
        self.assertEqual(req.to_params(), {"args": [RECIPIENT, 3600], "value": ETH})

    def test_stake_unstake_claim_wire_form(self):
        self.assertEqual(self.submitter.prepare("stake", {"amount": 5}).to_params(), {"args": [], "value": 5})
        self.assertEqual(self.submitter.prepare("unstake", {"amount": 5}).to_params(), {"args": [5], "value": 0})
        self.assertEqual(self.submitter.prepare(C.TxKind.CLAIM).action, "claimRewards")

    def test_record_id_zero_allowed(self):
        self.assertEqual(self.submitter.prepare("withdraw", {"stream_id": 0}).args, [0])

    def test_rejections(self):
        cases = [
            ("fly", {}),
            ("stake", {}),
            ("create", {"recipient": RECIPIENT, "amount": ETH}),
            ("create", {"recipient": "0x123", "amount": ETH, "duration": 10}),
            ("create", {"recipient": RECIPIENT, "amount": 0, "duration": 10}),
            ("create", {"recipient": RECIPIENT, "amount": ETH, "duration": -1}),
            ("stake", {"amount": "1"}),
            ("stake", {"amount": True}),
            ("cancel", {"stream_id": -1}),
            ("withdraw", {"stream_id": ""}),
        ]
        for kind, params in cases:
            with self.subTest(kind=kind, params=params):
                with self.assertRaises(SubmissionRejected):
                    self.submitter.prepare(kind, params)

    def test_amount_over_available(self):
        with self.assertRaises(SubmissionRejected) as ctx:
            self.submitter.prepare("unstake", {"amount": 101}, available=100)
        self.assertIn("exceeds", ctx.exception.reason)
        self.submitter.prepare("unstake", {"amount": 100}, available=100)


class TestSubmit(IsolatedAsyncioTestCase):
    async def test_rejected_request_is_never_sent(self):
        ledger = FakeLedger()
        submitter = RequestSubmitter(ledger)
        with self.assertRaises(SubmissionRejected):
            await submitter.submit("stake", {"amount": None})
        self.assertEqual(ledger.submitted, [])
        self.assertEqual(submitter.dispatched, 0)

    async def test_submit_returns_request_id(self):
        ledger = FakeLedger()
        submitter = RequestSubmitter(ledger)
        request_id = await submitter.submit("withdraw", {"stream_id": 2})
        self.assertEqual(request_id, "req-1")
        self.assertEqual(ledger.submitted, [("withdrawFromStream", {"args": [2], "value": 0}, "req-1")])

    async def test_remote_failure_propagates(self):
        ledger = FakeLedger()
        ledger.down = True
        with self.assertRaises(RemoteUnavailable):
            await RequestSubmitter(ledger).submit("claim")


class TestGuards(TestCase):
    def test_stream_id_range(self):
        self.assertEqual(check_stream_id(2, 3), 2)
        with self.assertRaises(SubmissionRejected) as ctx:
            check_stream_id(3, 3)
        self.assertEqual(ctx.exception.reason, "Invalid stream ID. Valid range: 0 to 2 (Total streams: 3)")
        with self.assertRaises(SubmissionRejected):
            check_stream_id(0, None)

    def test_withdraw_recipient_only(self):
        check_withdrawable(stream(), RECIPIENT.upper().replace("0X", "0x"), 10)
        with self.assertRaises(SubmissionRejected) as ctx:
            check_withdrawable(stream(), SENDER, 10)
        self.assertIn("Only the recipient can withdraw", ctx.exception.reason)
        with self.assertRaises(SubmissionRejected):
            check_withdrawable(stream(), STRANGER, 10)

    def test_withdraw_needs_active_and_funds(self):
        with self.assertRaises(SubmissionRejected):
            check_withdrawable(stream(active=False), RECIPIENT, 10)
        with self.assertRaises(SubmissionRejected):
            check_withdrawable(stream(), RECIPIENT, 0)
        with self.assertRaises(SubmissionRejected):
            check_withdrawable(None, RECIPIENT, 10)

    def test_cancel_sender_only(self):
        check_cancellable(stream(), SENDER)
        with self.assertRaises(SubmissionRejected):
            check_cancellable(stream(), RECIPIENT)
        with self.assertRaises(SubmissionRejected):
            check_cancellable(stream(active=False), SENDER)
