"""Build and dispatch state-changing requests.

Every check that can be made locally is made in ``prepare()``, before anything
leaves the process. ``submit()`` then sends exactly one request and never retries.
The submitter cannot read the ledger; callers re-check record state against
their latest snapshot with the ``check_*`` guards below.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Any

import timeflow.constants as C
from timeflow.errors import SubmissionRejected
from timeflow.models import AccrualRecord
from timeflow.remote import LedgerService

log = logging.getLogger("timeflow.submitter")

ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")

# kind -> required params, in wire argument order
REQUIRED: dict[C.TxKind, tuple[str, ...]] = {
    C.TxKind.CREATE:   ("recipient", "amount", "duration"),
    C.TxKind.WITHDRAW: ("stream_id",),
    C.TxKind.CANCEL:   ("stream_id",),
    C.TxKind.STAKE:    ("amount",),
    C.TxKind.UNSTAKE:  ("amount",),
    C.TxKind.CLAIM:    (),
}


@dataclass(frozen=True, slots=True)
class Request:
    kind: C.TxKind
    action: str
    args: list = field(default_factory=list)
    value: int = 0

    def to_params(self) -> dict:
        return {"args": list(self.args), "value": self.value}


def is_address(value: Any) -> bool:
    return isinstance(value, str) and bool(ADDRESS_RE.match(value))


def _positive_int(params: dict, name: str) -> int:
    v = params[name]
    if isinstance(v, bool) or not isinstance(v, int):
        raise SubmissionRejected(f"{name} must be an integer, got {type(v).__name__}")
    if v <= 0:
        raise SubmissionRejected(f"{name} must be positive")
    return v


def _record_id(params: dict, name: str = "stream_id") -> int:
    v = params[name]
    if isinstance(v, bool) or not isinstance(v, int) or v < 0:
        raise SubmissionRejected(f"invalid {name}: {v!r}")
    return v


class RequestSubmitter:
    def __init__(self, service: LedgerService):
        self.service = service
        self.dispatched = 0

    def prepare(self, kind: C.TxKind | str, params: dict | None = None, *, available: int | None = None) -> Request:
        """Validate and build the wire request. Raises SubmissionRejected."""
        try:
            kind = C.TxKind(kind)
        except ValueError:
            raise SubmissionRejected(f"unknown request kind {kind!r}") from None
        params = params or {}

        missing = [p for p in REQUIRED[kind] if params.get(p) in (None, "")]
        if missing:
            raise SubmissionRejected(f"missing required field(s): {', '.join(missing)}")

        action = C.ACTIONS[kind]
        match kind:
            case C.TxKind.CREATE:
                if not is_address(params["recipient"]):
                    raise SubmissionRejected("invalid recipient address")
                amount = _positive_int(params, "amount")
                duration = _positive_int(params, "duration")
                _within(amount, available)
                req = Request(kind, action, [params["recipient"], duration], value=amount)
            case C.TxKind.WITHDRAW | C.TxKind.CANCEL:
                req = Request(kind, action, [_record_id(params)])
            case C.TxKind.STAKE:
                amount = _positive_int(params, "amount")
                _within(amount, available)
                req = Request(kind, action, [], value=amount)
            case C.TxKind.UNSTAKE:
                amount = _positive_int(params, "amount")
                _within(amount, available)
                req = Request(kind, action, [amount])
            case C.TxKind.CLAIM:
                req = Request(kind, action)
        return req

    async def submit(self, kind: C.TxKind | str, params: dict | None = None, *, available: int | None = None) -> str:
        """Validate, then send one request. Returns the service's request id.

        SubmissionRejected is raised before anything is sent; RemoteUnavailable
        comes from the dispatch itself.
        """
        req = self.prepare(kind, params, available=available)
        return await self.dispatch(req)

    async def dispatch(self, req: Request) -> str:
        self.dispatched += 1
        log.debug("dispatch %s args=%s value=%s", req.action, req.args, req.value)
        request_id = await self.service.submit(req.action, req.to_params())
        log.info("%s dispatched as %s", req.action, request_id)
        return request_id


def _within(amount: int, available: int | None) -> None:
    if available is not None and amount > available:
        raise SubmissionRejected(f"amount {amount} exceeds available balance {available}")


# Snapshot guards: run against the most recently fetched records before submitting.

def check_stream_id(stream_id: Any, total_streams: int | None) -> int:
    total = total_streams or 0
    if isinstance(stream_id, bool) or not isinstance(stream_id, int) or not 0 <= stream_id < total:
        raise SubmissionRejected(f"Invalid stream ID. Valid range: 0 to {max(0, total - 1)} (Total streams: {total})")
    return stream_id


def _same(a: str | None, b: str | None) -> bool:
    return bool(a) and bool(b) and a.lower() == b.lower()


def check_withdrawable(record: AccrualRecord | None, participant: str | None, claimable: int | None) -> None:
    if record is None:
        raise SubmissionRejected("stream data not loaded")
    if not _same(participant, record.beneficiary):
        if _same(participant, record.origin):
            raise SubmissionRejected("You cannot withdraw from your own stream. Only the recipient can withdraw.")
        raise SubmissionRejected("You are not the recipient of this stream.")
    if not record.is_active:
        raise SubmissionRejected("This stream is no longer active.")
    if not claimable:
        raise SubmissionRejected("No funds available to withdraw from this stream.")


def check_cancellable(record: AccrualRecord | None, participant: str | None) -> None:
    if record is None:
        raise SubmissionRejected("stream data not loaded")
    if not record.is_active:
        raise SubmissionRejected("This stream is already completed or cancelled.")
    if not _same(participant, record.origin):
        raise SubmissionRejected("You can only cancel streams that you created (sender only).")
