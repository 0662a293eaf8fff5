"""submit -> await confirmation -> notify (+ refresh) as one linear coroutine.

Each controller owns its PendingRequests outright; nothing else writes them. A
(kind, target) pair can only be in flight once, different pairs run side by side.
"""
import asyncio
import logging
import time
from typing import Any

import timeflow.constants as C
from timeflow.errors import RemoteUnavailable, SubmissionRejected
from timeflow.models import PendingRequest
from timeflow.notify import NotificationSink
from timeflow.refresh import RefreshCoordinator
from timeflow.submitter import RequestSubmitter
from timeflow.tracker import ConfirmationTracker
from timeflow.units import format_amount

log = logging.getLogger("timeflow.lifecycle")

LOADING = {
    C.TxKind.CREATE:   "Creating stream... Please wait for confirmation.",
    C.TxKind.WITHDRAW: "Withdrawing... Please wait for confirmation.",
    C.TxKind.CANCEL:   "Cancelling stream... Please wait for confirmation.",
    C.TxKind.STAKE:    "Staking... Please wait for confirmation.",
    C.TxKind.UNSTAKE:  "Unstaking... Please wait for confirmation.",
    C.TxKind.CLAIM:    "Claiming rewards... Please wait for confirmation.",
}

SUCCESS = {
    C.TxKind.CREATE:   "Stream created successfully!",
    C.TxKind.WITHDRAW: "Withdrew {amount} from Stream #{stream_id}!",
    C.TxKind.CANCEL:   "Stream #{stream_id} cancelled successfully!",
    C.TxKind.STAKE:    "Stake of {amount} confirmed!",
    C.TxKind.UNSTAKE:  "Unstake of {amount} confirmed!",
    C.TxKind.CLAIM:    "Rewards claimed successfully!",
}

FALLBACK_SUCCESS = "Transaction confirmed!"
FAILURE = "Transaction failed!"


def render(template: str, payload: dict) -> str:
    """Fill a message template from the submission-time payload."""
    values: dict[str, Any] = dict(payload)
    if isinstance(values.get("amount"), int):
        values["amount"] = format_amount(values["amount"])
    try:
        return template.format(**values)
    except (KeyError, IndexError):
        return FALLBACK_SUCCESS


class TransactionController:
    def __init__(
        self,
        submitter: RequestSubmitter,
        tracker: ConfirmationTracker,
        coordinator: RefreshCoordinator,
        sink: NotificationSink,
    ):
        self.submitter = submitter
        self.tracker = tracker
        self.coordinator = coordinator
        self.sink = sink
        self.pending: dict[tuple[C.TxKind, Any], PendingRequest] = {}
        self.closed = False
        self._tasks: set[asyncio.Task] = set()

    @property
    def idle(self) -> bool:
        return not self.pending

    def busy(self, kind: C.TxKind | str, target: Any = None) -> bool:
        return (C.TxKind(kind), target) in self.pending

    async def execute(
        self,
        kind: C.TxKind | str,
        params: dict | None = None,
        *,
        payload: dict | None = None,
        target: Any = None,
        available: int | None = None,
    ) -> PendingRequest:
        """Run one request to a terminal status and return it.

        Raises SubmissionRejected (nothing dispatched, no pending state) for local
        validation failures and for a duplicate of an in-flight (kind, target).
        """
        if self.closed:
            raise SubmissionRejected("controller closed")
        req = self.submitter.prepare(kind, params, available=available)
        key = (req.kind, target)
        if key in self.pending:
            raise SubmissionRejected("already pending")

        p = PendingRequest(kind=req.kind, payload=dict(payload or {}), target=target)
        self.pending[key] = p
        # close() cancels the calling task while it waits here
        task = asyncio.current_task()
        if task is not None:
            self._tasks.add(task)
        try:
            self._notify(C.Severity.INFO, LOADING[p.kind])
            try:
                p.request_id = await self.submitter.dispatch(req)
            except RemoteUnavailable as e:
                log.warning("%s dispatch failed: %s", p.kind, e)
                p.status = C.TxStatus.FAILED
                p.finalized_at = time.time()
                self._notify(C.Severity.ERROR, f"{p.kind.capitalize()} failed: ledger unavailable")
                return p

            p.status = C.TxStatus.AWAITING
            log.debug("%s awaiting confirmation", p)
            outcome = await self.tracker.wait(p.request_id)
            self._finish(p, outcome)
            return p
        finally:
            if self.pending.get(key) is p:
                del self.pending[key]
            if task is not None:
                self._tasks.discard(task)

    def start(self, kind: C.TxKind | str, params: dict | None = None, **kw) -> asyncio.Task:
        """Fire off ``execute`` in the background. Validation errors still raise here."""
        if self.closed:
            raise SubmissionRejected("controller closed")
        req = self.submitter.prepare(kind, params, available=kw.get("available"))
        if (req.kind, kw.get("target")) in self.pending:
            raise SubmissionRejected("already pending")
        task = asyncio.get_running_loop().create_task(self.execute(kind, params, **kw), name=f"tx:{req.kind}")
        self._tasks.add(task)
        task.add_done_callback(self._reap)
        return task

    def _reap(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("transaction task %s failed: %s", task.get_name(), task.exception())

    def _finish(self, p: PendingRequest, outcome: C.Finality) -> None:
        if p.status in C.TERMINAL_STATUS:
            return
        if self.closed:
            log.debug("%s finished after teardown, not reporting", p)
            return
        p.finalized_at = time.time()
        if outcome == C.Finality.CONFIRMED:
            p.status = C.TxStatus.CONFIRMED
            self._notify(C.Severity.SUCCESS, render(SUCCESS[p.kind], p.payload))
            self.coordinator.trigger_refresh()
        else:
            p.status = C.TxStatus.FAILED
            self._notify(C.Severity.ERROR, FAILURE)
        log.info("%s %s (request %s)", p.kind, p.status, p.request_id)

    def _notify(self, severity: C.Severity, message: str) -> None:
        if self.closed:
            return
        try:
            self.sink.notify(severity, message)
        except Exception:
            log.exception("notification sink failed")

    def close(self) -> None:
        self.closed = True
        for task in list(self._tasks):
            task.cancel()
