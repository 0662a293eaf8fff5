"""Ledger snapshots and the local pending-request record.

The ledger service is an untyped boundary: records may arrive as mappings keyed by
the vault's field names or as positional tuples, and integers as JSON numbers,
decimal strings or 0x-prefixed hex. Every ``from_result`` either returns a fully
typed snapshot or raises MalformedSnapshot.
"""

import time
from dataclasses import dataclass, field
from typing import Any

import timeflow.constants as C
from timeflow.errors import MalformedSnapshot


def to_uint(value: Any, name: str = "value") -> int:
    """Coerce a wire integer into a non-negative int."""
    if isinstance(value, bool):
        raise MalformedSnapshot(f"{name}: expected integer, got bool")
    if isinstance(value, int):
        n = value
    elif isinstance(value, str):
        s = value.strip()
        try:
            n = int(s, 16) if s.lower().startswith("0x") else int(s)
        except ValueError:
            raise MalformedSnapshot(f"{name}: not an integer: {value!r}") from None
    elif isinstance(value, float) and value.is_integer():
        n = int(value)
    else:
        raise MalformedSnapshot(f"{name}: expected integer, got {type(value).__name__}")
    if n < 0:
        raise MalformedSnapshot(f"{name}: negative value {n}")
    return n


def to_bool(value: Any, name: str = "value") -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    raise MalformedSnapshot(f"{name}: expected boolean, got {value!r}")


def to_address(value: Any, name: str = "address") -> str:
    if not isinstance(value, str) or not value:
        raise MalformedSnapshot(f"{name}: expected address string, got {value!r}")
    return value


def _fields(result: Any, names: tuple[str, ...], label: str) -> list[Any]:
    """Pull ``names`` out of a mapping, or take a positional sequence as-is."""
    if isinstance(result, dict):
        missing = [n for n in names if n not in result]
        if missing:
            raise MalformedSnapshot(f"{label}: missing fields {missing}")
        return [result[n] for n in names]
    if isinstance(result, (list, tuple)):
        if len(result) != len(names):
            raise MalformedSnapshot(f"{label}: expected {len(names)} values, got {len(result)}")
        return list(result)
    raise MalformedSnapshot(f"{label}: unexpected payload type {type(result).__name__}")


@dataclass(frozen=True, slots=True)
class AccrualRecord:
    """A stream: ``rate_per_second`` flows from origin to beneficiary between start and end."""

    origin: str
    beneficiary: str
    total_amount: int
    rate_per_second: int
    start_time: int
    end_time: int
    amount_withdrawn: int
    is_active: bool

    WIRE = ("sender", "recipient", "totalAmount", "flowRate", "startTime", "stopTime", "amountWithdrawn", "isActive")

    @classmethod
    def from_result(cls, result: Any) -> "AccrualRecord":
        sender, recipient, total, rate, start, stop, withdrawn, active = _fields(result, cls.WIRE, "stream")
        rec = cls(
            origin=to_address(sender, "sender"),
            beneficiary=to_address(recipient, "recipient"),
            total_amount=to_uint(total, "totalAmount"),
            rate_per_second=to_uint(rate, "flowRate"),
            start_time=to_uint(start, "startTime"),
            end_time=to_uint(stop, "stopTime"),
            amount_withdrawn=to_uint(withdrawn, "amountWithdrawn"),
            is_active=to_bool(active, "isActive"),
        )
        if rec.end_time < rec.start_time:
            raise MalformedSnapshot(f"stream: stopTime {rec.end_time} before startTime {rec.start_time}")
        if rec.amount_withdrawn > rec.total_amount:
            raise MalformedSnapshot(f"stream: withdrawn {rec.amount_withdrawn} exceeds total {rec.total_amount}")
        return rec

    @property
    def duration(self) -> int:
        return self.end_time - self.start_time

    def to_dict(self) -> dict:
        return {
            "origin": self.origin,
            "beneficiary": self.beneficiary,
            "total_amount": self.total_amount,
            "rate_per_second": self.rate_per_second,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "amount_withdrawn": self.amount_withdrawn,
            "is_active": self.is_active,
        }


@dataclass(frozen=True, slots=True)
class PositionRecord:
    """A participant's stake in the vault."""

    amount: int
    start_time: int
    last_claim_time: int
    accumulated_rewards: int
    is_active: bool

    WIRE = ("amount", "startTime", "lastClaimTime", "accumulatedRewards", "isActive")

    @classmethod
    def from_result(cls, result: Any) -> "PositionRecord":
        amount, start, last_claim, rewards, active = _fields(result, cls.WIRE, "stake")
        rec = cls(
            amount=to_uint(amount, "amount"),
            start_time=to_uint(start, "startTime"),
            last_claim_time=to_uint(last_claim, "lastClaimTime"),
            accumulated_rewards=to_uint(rewards, "accumulatedRewards"),
            is_active=to_bool(active, "isActive"),
        )
        if rec.amount == 0 and rec.is_active:
            raise MalformedSnapshot("stake: active position with zero amount")
        return rec

    def to_dict(self) -> dict:
        return {
            "amount": self.amount,
            "start_time": self.start_time,
            "last_claim_time": self.last_claim_time,
            "accumulated_rewards": self.accumulated_rewards,
            "is_active": self.is_active,
        }


@dataclass(frozen=True, slots=True)
class AggregateSnapshot:
    """Vault-wide counters. Always recomputed remotely, never mutated here."""

    total_locked: int
    reward_pool: int
    record_count: int

    @classmethod
    def from_result(cls, result: Any) -> "AggregateSnapshot":
        total, pool, count = _fields(result, ("totalStaked", "totalRewardsAvailable", "nextStreamId"), "vault stats")
        return cls(
            total_locked=to_uint(total, "totalStaked"),
            reward_pool=to_uint(pool, "totalRewardsAvailable"),
            record_count=to_uint(count, "nextStreamId"),
        )

    def to_dict(self) -> dict:
        return {"total_locked": self.total_locked, "reward_pool": self.reward_pool, "record_count": self.record_count}


@dataclass(frozen=True, slots=True)
class ActivityInfo:
    stream_volume_24h: int
    last_activity_update: int
    activity_scaling_factor: int

    @classmethod
    def from_result(cls, result: Any) -> "ActivityInfo":
        names = ("totalStreamVolume24h", "lastActivityUpdate", "activityScalingFactor")
        volume, last, factor = _fields(result, names, "activity info")
        return cls(
            stream_volume_24h=to_uint(volume, names[0]),
            last_activity_update=to_uint(last, names[1]),
            activity_scaling_factor=to_uint(factor, names[2]),
        )


@dataclass(frozen=True, slots=True)
class FeeInfo:
    """Streaming fee counters. The vault returns them unnamed; only the leading two are read."""

    fee_bps: int
    fees_collected: int
    extra: tuple[int, ...] = ()

    @classmethod
    def from_result(cls, result: Any) -> "FeeInfo":
        if not isinstance(result, (list, tuple)) or len(result) < 2:
            raise MalformedSnapshot(f"fee info: expected at least 2 values, got {result!r}")
        values = [to_uint(v, "fee info") for v in result]
        return cls(values[0], values[1], tuple(values[2:]))


@dataclass(frozen=True, slots=True)
class BalanceInfo:
    contract_balance: int
    total_staked: int
    reward_pool: int
    owner_revenue: int
    charity_funds: int

    @classmethod
    def from_result(cls, result: Any) -> "BalanceInfo":
        names = ("contractBalance", "totalStaked", "rewardPool", "ownerRevenue", "charityFunds")
        return cls(*(to_uint(v, n) for v, n in zip(_fields(result, names, "balance info"), names)))


def _unwrap(result: Any) -> Any:
    if isinstance(result, dict) and "value" in result:
        return result["value"]
    return result


def scalar(result: Any) -> int:
    """Single-integer quantities (stream count, APY, fee bps, claimable balance)."""
    return to_uint(_unwrap(result), "scalar")


def flag(result: Any) -> bool:
    return to_bool(_unwrap(result), "flag")


def address(result: Any) -> str:
    return to_address(_unwrap(result))


PARSERS = {
    C.Q.VAULT_STATS: AggregateSnapshot.from_result,
    C.Q.TOTAL_STREAMS: scalar,
    C.Q.STREAM: AccrualRecord.from_result,
    C.Q.CLAIMABLE: scalar,
    C.Q.USER_STAKE: PositionRecord.from_result,
    C.Q.CURRENT_APY: scalar,
    C.Q.ACTIVITY_INFO: ActivityInfo.from_result,
    C.Q.BALANCE_INFO: BalanceInfo.from_result,
    C.Q.EXCESS_FUNDS: scalar,
    C.Q.STREAMING_FEE: scalar,
    C.Q.BASE_REWARD_RATE: scalar,
    C.Q.FEE_INFO: FeeInfo.from_result,
    C.Q.VAULT_ACTIVE: flag,
    C.Q.OWNER: address,
    C.Q.CHARITY_ADDRESS: address,
}


@dataclass(slots=True)
class PendingRequest:
    kind: C.TxKind
    payload: dict
    target: int | str | None = None
    request_id: str | None = None
    status: C.TxStatus = C.TxStatus.SUBMITTED
    created_at: float = field(default_factory=time.time)
    finalized_at: float | None = None

    def __str__(self):
        return f"{self.kind} -- {self.target} -- {self.status}"

    @property
    def key(self) -> tuple[C.TxKind, int | str | None]:
        return (self.kind, self.target)

    def to_dict(self) -> dict:
        return {
            "kind": str(self.kind),
            "target": self.target,
            "request_id": self.request_id,
            "status": str(self.status),
            "payload": self.payload,
            "created_at": self.created_at,
        }
