"""The session context: one per running client.

Holds the shared pieces (notification sink, refresh signal, identity) and wires
reader, submitter, tracker and controller together. Created at session start and
passed explicitly; it owns no OS resources beyond the service client, so closing
it only cancels timers and tasks.
"""
import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import asdict, is_dataclass
from decimal import Decimal
from typing import Any

import timeflow.constants as C
from timeflow.errors import MalformedSnapshot, RemoteUnavailable, SubmissionRejected
from timeflow.identity import IdentityProvider
from timeflow.lifecycle import TransactionController
from timeflow.models import AccrualRecord, PendingRequest
from timeflow.notify import MemorySink, NotificationSink
from timeflow.projection import ProjectionTicker, claimable_at, proportional_share, stream_progress, time_remaining
from timeflow.reader import LedgerReader, Query, Subscription
from timeflow.refresh import RefreshCoordinator
from timeflow.remote import JsonRpcLedgerService, LedgerService
from timeflow.submitter import REQUIRED, RequestSubmitter, check_cancellable, check_stream_id, check_withdrawable
from timeflow.tracker import ConfirmationTracker
from timeflow.units import parse_amount

log = logging.getLogger("timeflow.session")


class StreamView:
    """Remote snapshot of one stream plus its once-a-second claimable projection."""

    def __init__(self, session: "Session", stream_id: int):
        self.session = session
        self.stream_id = stream_id
        key = stream_id if stream_id >= 0 else None
        self.realtime_claimable = 0
        self.ticker = ProjectionTicker(self._on_tick, interval=session.tick_interval, clock=session.clock)
        self.record_sub = session.reader.subscribe(C.Q.STREAM, key, keyed=True, on_update=self.ticker.update)
        self.claimable_sub = session.reader.subscribe(C.Q.CLAIMABLE, key, keyed=True)

    @property
    def record(self) -> AccrualRecord | None:
        return self.record_sub.value

    @property
    def remote_claimable(self) -> int | None:
        return self.claimable_sub.value

    def _on_tick(self, value: int) -> None:
        self.realtime_claimable = value

    async def load(self) -> AccrualRecord | None:
        await asyncio.gather(self.record_sub.refetch(), self.claimable_sub.refetch())
        return self.record

    def projected(self, instant: float | None = None) -> int:
        return claimable_at(self.record, self.session.clock() if instant is None else instant)

    def to_dict(self) -> dict:
        rec = self.record
        now = self.session.clock()
        data = {
            "stream_id": self.stream_id,
            "record": rec.to_dict() if rec else None,
            "remote_claimable": self.remote_claimable,
            "projected_claimable": self.projected(now),
            "fetched_at": self.record_sub.fetched_at,
        }
        if rec is not None:
            data["progress"] = stream_progress(rec, now)
            data["time_remaining"] = time_remaining(rec, now)
        return data

    def close(self) -> None:
        self.ticker.stop()
        self.record_sub.close()
        self.claimable_sub.close()


class VaultView:
    """Vault-wide quantities plus the connected participant's stake."""

    def __init__(self, session: "Session"):
        r = session.reader
        self.stats = r.subscribe(C.Q.VAULT_STATS)
        self.total_streams = r.subscribe(C.Q.TOTAL_STREAMS)
        self.current_apy = r.subscribe(C.Q.CURRENT_APY)
        self.activity = r.subscribe(C.Q.ACTIVITY_INFO)
        self.balance = r.subscribe(C.Q.BALANCE_INFO)
        self.excess_funds = r.subscribe(C.Q.EXCESS_FUNDS)
        self.streaming_fee = r.subscribe(C.Q.STREAMING_FEE)
        self.base_reward_rate = r.subscribe(C.Q.BASE_REWARD_RATE)
        self.fee_info = r.subscribe(C.Q.FEE_INFO)
        self.vault_active = r.subscribe(C.Q.VAULT_ACTIVE)
        self.owner = r.subscribe(C.Q.OWNER)
        self.charity_address = r.subscribe(C.Q.CHARITY_ADDRESS)
        self.position = r.subscribe(C.Q.USER_STAKE, follow_identity=True)
        self.identity = session.identity

    @property
    def subscriptions(self) -> list[Subscription]:
        return [self.stats, self.total_streams, self.current_apy, self.activity,
                self.balance, self.excess_funds, self.streaming_fee, self.base_reward_rate,
                self.fee_info, self.vault_active, self.owner, self.charity_address, self.position]

    async def load(self) -> None:
        await asyncio.gather(*(s.refetch() for s in self.subscriptions))

    @property
    def claimable_rewards(self) -> int:
        return proportional_share(self.position.value, self.stats.value)

    @property
    def role(self) -> str | None:
        """Vault role (owner or charity) of the connected participant, if any."""
        addr = (self.identity.address or "").lower()
        if not addr:
            return None
        if addr == (self.owner.value or "").lower():
            return "owner"
        if addr == (self.charity_address.value or "").lower():
            return "charity"
        return None

    def to_dict(self) -> dict:
        return {
            "stats": _plain(self.stats.value),
            "total_streams": self.total_streams.value,
            "current_apy_bps": self.current_apy.value,
            "activity": _plain(self.activity.value),
            "balance": _plain(self.balance.value),
            "excess_funds": self.excess_funds.value,
            "streaming_fee_bps": self.streaming_fee.value,
            "base_reward_rate": self.base_reward_rate.value,
            "fee_info": _plain(self.fee_info.value),
            "vault_active": self.vault_active.value,
            "owner": self.owner.value,
            "charity_address": self.charity_address.value,
            "role": self.role,
            "position": _plain(self.position.value),
            "claimable_rewards": self.claimable_rewards,
        }

    def close(self) -> None:
        for s in self.subscriptions:
            s.close()


def _plain(v: Any) -> Any:
    return asdict(v) if is_dataclass(v) else v


class Session:
    def __init__(
        self,
        service: LedgerService,
        *,
        sink: NotificationSink | None = None,
        identity: IdentityProvider | None = None,
        settlement_delay: float = C.SETTLEMENT_DELAY,
        refetch_delay: float = C.REFETCH_DELAY,
        poll_interval: float = C.POLL_INTERVAL,
        tick_interval: float = C.TICK_INTERVAL,
        clock: Callable[[], float] = time.time,
    ):
        self.service = service
        self.sink = sink or MemorySink()
        self.identity = identity or IdentityProvider()
        self.tick_interval = tick_interval
        self.clock = clock

        self.coordinator = RefreshCoordinator(settlement_delay)
        self.reader = LedgerReader(
            service, sink=self.sink, coordinator=self.coordinator, identity=self.identity, refetch_delay=refetch_delay
        )
        self.submitter = RequestSubmitter(service)
        self.tracker = ConfirmationTracker(service, poll_interval=poll_interval)
        self.controller = TransactionController(self.submitter, self.tracker, self.coordinator, self.sink)
        self.vault = VaultView(self)
        self.streams: dict[int, StreamView] = {}
        self.last_created_stream_id: int | None = None

    @classmethod
    def from_config(cls, cfg: dict, *, sink: NotificationSink | None = None, **kw) -> "Session":
        ledger, timing = cfg["ledger"], cfg.get("timing", {})
        if sink is None:
            sink = MemorySink(cfg.get("notifications", {}).get("history", C.NOTIFICATION_HISTORY))
        service = JsonRpcLedgerService(ledger["rpc_url"], timeout=ledger.get("rpc_timeout", C.RPC_TIMEOUT))
        return cls(
            service,
            sink=sink,
            settlement_delay=timing.get("settlement_delay", C.SETTLEMENT_DELAY),
            refetch_delay=timing.get("refetch_delay", C.REFETCH_DELAY),
            poll_interval=timing.get("poll_interval", C.POLL_INTERVAL),
            tick_interval=timing.get("tick_interval", C.TICK_INTERVAL),
            **kw,
        )

    # ------------------------------------------------------------------ views

    def stream_view(self, stream_id: int) -> StreamView:
        view = self.streams.get(stream_id)
        if view is None:
            view = self.streams[stream_id] = StreamView(self, stream_id)
        return view

    def close_stream_view(self, stream_id: int) -> None:
        view = self.streams.pop(stream_id, None)
        if view is not None:
            view.close()

    # ---------------------------------------------------------------- actions

    def _participant(self) -> str:
        if not self.identity.address:
            raise SubmissionRejected("Please connect wallet")
        return self.identity.address

    async def _guarded(self, coro_fn: Callable[[], Any]) -> PendingRequest | None:
        """Run an action; local rejections are reported once and re-raised, remote trouble only reported."""
        try:
            return await coro_fn()
        except SubmissionRejected as e:
            self.sink.notify(C.Severity.ERROR, e.reason)
            raise
        except (RemoteUnavailable, MalformedSnapshot) as e:
            log.warning("action aborted, ledger unavailable: %s", e)
            self.sink.notify(C.Severity.ERROR, "Ledger unavailable, nothing was submitted")
            return None

    async def _total_streams(self) -> int:
        return await _loaded(self.vault.total_streams)

    async def _stream_state(self, stream_id: int) -> tuple[AccrualRecord | None, int | None]:
        view = self.streams.get(stream_id)
        if view is not None and view.record is not None:
            return view.record, view.remote_claimable
        record = await self.reader.fetch(Query(C.Q.STREAM, stream_id))
        claimable = await self.reader.fetch(Query(C.Q.CLAIMABLE, stream_id))
        return record, claimable

    async def create_stream(self, recipient: str, amount: int | str | Decimal, duration: int) -> PendingRequest | None:
        async def run():
            self._participant()
            p = await self.controller.execute(
                C.TxKind.CREATE,
                {"recipient": recipient, "amount": _amount(amount), "duration": duration},
                payload={"recipient": recipient, "duration": duration},
            )
            if p.status == C.TxStatus.CONFIRMED:
                await self._announce_new_stream()
            return p

        return await self._guarded(run)

    async def _announce_new_stream(self) -> None:
        # wait out settlement, then read the new count directly rather than trusting the refresh fan-out
        await asyncio.sleep(self.coordinator.settlement_delay)
        if self.controller.closed:
            return
        total = await self.vault.total_streams.refetch()
        if total:
            self.last_created_stream_id = max(0, total - 1)
            self.sink.notify(C.Severity.SUCCESS, f"Stream #{self.last_created_stream_id} is ready to use!")

    async def withdraw(self, stream_id: int) -> PendingRequest | None:
        async def run():
            participant = self._participant()
            check_stream_id(stream_id, await self._total_streams())
            record, claimable = await self._stream_state(stream_id)
            check_withdrawable(record, participant, claimable)
            return await self.controller.execute(
                C.TxKind.WITHDRAW,
                {"stream_id": stream_id},
                payload={"amount": claimable, "stream_id": stream_id},
                target=stream_id,
            )

        return await self._guarded(run)

    async def cancel(self, stream_id: int) -> PendingRequest | None:
        async def run():
            participant = self._participant()
            check_stream_id(stream_id, await self._total_streams())
            record, _ = await self._stream_state(stream_id)
            check_cancellable(record, participant)
            return await self.controller.execute(
                C.TxKind.CANCEL, {"stream_id": stream_id}, payload={"stream_id": stream_id}, target=stream_id
            )

        return await self._guarded(run)

    async def stake(self, amount: int | str | Decimal) -> PendingRequest | None:
        async def run():
            self._participant()
            value = _amount(amount)
            return await self.controller.execute(C.TxKind.STAKE, {"amount": value}, payload={"amount": value})

        return await self._guarded(run)

    async def unstake(self, amount: int | str | Decimal) -> PendingRequest | None:
        async def run():
            self._participant()
            value = _amount(amount)
            position = await _loaded(self.vault.position)
            staked = position.amount
            return await self.controller.execute(
                C.TxKind.UNSTAKE, {"amount": value}, payload={"amount": value}, available=staked
            )

        return await self._guarded(run)

    async def claim_rewards(self) -> PendingRequest | None:
        async def run():
            self._participant()
            return await self.controller.execute(C.TxKind.CLAIM, payload={})

        return await self._guarded(run)

    async def dispatch(self, kind: C.TxKind | str, params: dict) -> PendingRequest | None:
        """Route a generic (kind, params) action to its guarded method."""
        try:
            kind = C.TxKind(kind)
        except ValueError:
            raise SubmissionRejected(f"unknown request kind {kind!r}") from None
        params = params or {}
        missing = [p for p in REQUIRED[kind] if p not in params]
        if missing:
            reason = f"missing required field(s): {', '.join(missing)}"
            self.sink.notify(C.Severity.ERROR, reason)
            raise SubmissionRejected(reason)

        match kind:
            case C.TxKind.CREATE:
                return await self.create_stream(params["recipient"], params["amount"], params["duration"])
            case C.TxKind.WITHDRAW:
                return await self.withdraw(params["stream_id"])
            case C.TxKind.CANCEL:
                return await self.cancel(params["stream_id"])
            case C.TxKind.STAKE:
                return await self.stake(params["amount"])
            case C.TxKind.UNSTAKE:
                return await self.unstake(params["amount"])
            case C.TxKind.CLAIM:
                return await self.claim_rewards()

    def close(self) -> None:
        self.controller.close()
        for view in list(self.streams.values()):
            view.close()
        self.streams.clear()
        self.vault.close()
        self.reader.close()
        self.coordinator.close()

    async def aclose(self) -> None:
        self.close()
        aclose = getattr(self.service, "aclose", None)
        if aclose is not None:
            await aclose()


def _amount(value: int | str | Decimal) -> int:
    """Ints are already in the smallest unit; strings and Decimals are token amounts."""
    if isinstance(value, bool):
        raise SubmissionRejected("amount must be a number")
    if isinstance(value, int):
        return value
    try:
        return parse_amount(value)
    except ValueError as e:
        raise SubmissionRejected(f"invalid amount: {e}") from None


async def _loaded(sub: Subscription) -> Any:
    """Last snapshot of ``sub``, fetching it if there is none. Raises RemoteUnavailable if it can't be had."""
    if sub.value is not None:
        return sub.value
    value = await sub.refetch()
    if value is None:
        raise RemoteUnavailable(sub.last_error or f"{sub.query} not available")
    return value
