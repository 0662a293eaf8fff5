"""In-memory stand-in for the remote ledger service, shared by the test modules."""
from __future__ import annotations

from typing import Any

import timeflow.constants as C
from timeflow.errors import RemoteUnavailable

SENDER = "0x" + "a" * 40
RECIPIENT = "0x" + "b" * 40
STRANGER = "0x" + "c" * 40
OWNER = "0x" + "d" * 40
CHARITY = "0x" + "e" * 40


def stream_result(
    sender: str = SENDER,
    recipient: str = RECIPIENT,
    total: int = 600,
    rate: int = 1,
    start: int = 0,
    stop: int = 600,
    withdrawn: int = 0,
    active: bool = True,
) -> dict:
    return {
        "sender": sender,
        "recipient": recipient,
        "totalAmount": total,
        "flowRate": rate,
        "startTime": start,
        "stopTime": stop,
        "amountWithdrawn": withdrawn,
        "isActive": active,
    }


def stake_result(amount: int = 100, active: bool = True) -> dict:
    return {"amount": amount, "startTime": 1, "lastClaimTime": 1, "accumulatedRewards": 0, "isActive": active}


class FakeLedger:
    """Answers from ``values`` keyed by (name, key) or name alone.

    A value may be an exception (raised), or a zero-argument coroutine function
    (awaited) for tests that need to hold a read open.
    """

    def __init__(self, values: dict | None = None):
        self.values: dict[Any, Any] = dict(values or {})
        self.queries: list[tuple[str, Any]] = []
        self.submitted: list[tuple[str, dict, str]] = []
        self.finality_calls = 0
        self.outcome = C.Finality.CONFIRMED
        self.down = False

    async def query(self, name: str, key: Any = None) -> Any:
        self.queries.append((name, key))
        if self.down:
            raise RemoteUnavailable("ledger down")
        if (name, key) in self.values:
            v = self.values[(name, key)]
        elif name in self.values:
            v = self.values[name]
        else:
            raise RemoteUnavailable(f"no value for {name}({key})")
        if isinstance(v, Exception):
            raise v
        if callable(v):
            v = await v()
        return v

    async def submit(self, action: str, params: dict) -> str:
        if self.down:
            raise RemoteUnavailable("ledger down")
        request_id = f"req-{len(self.submitted) + 1}"
        self.submitted.append((action, params, request_id))
        return request_id

    async def finality(self, request_id: str) -> C.Finality:
        self.finality_calls += 1
        if self.down:
            raise RemoteUnavailable("ledger down")
        return self.outcome


def vault_values() -> dict:
    """A small vault: one 600-second stream from SENDER to RECIPIENT, RECIPIENT staking 100 of 1000."""
    return {
        C.Q.VAULT_STATS: {"totalStaked": 1000, "totalRewardsAvailable": 50, "nextStreamId": 1},
        C.Q.TOTAL_STREAMS: 1,
        C.Q.CURRENT_APY: 1250,
        C.Q.ACTIVITY_INFO: [0, 0, 100],
        C.Q.BALANCE_INFO: [1, 2, 3, 4, 5],
        C.Q.EXCESS_FUNDS: 0,
        C.Q.STREAMING_FEE: 25,
        C.Q.BASE_REWARD_RATE: 500,
        C.Q.FEE_INFO: [25, 7 * 10**15],
        C.Q.VAULT_ACTIVE: True,
        C.Q.OWNER: OWNER,
        C.Q.CHARITY_ADDRESS: CHARITY,
        (C.Q.USER_STAKE, RECIPIENT): stake_result(100),
        (C.Q.STREAM, 0): stream_result(),
        (C.Q.CLAIMABLE, 0): 5 * 10**17,
    }


def make_session(ledger: FakeLedger, address: str | None = RECIPIENT):
    from timeflow.identity import IdentityProvider
    from timeflow.session import Session

    return Session(
        ledger,
        identity=IdentityProvider(address),
        settlement_delay=0.01,
        refetch_delay=0.01,
        poll_interval=0.01,
        tick_interval=0.01,
        clock=lambda: 300,
    )
