from typing import Final
from enum import StrEnum


class TxKind(StrEnum):
    CREATE   = "create"
    WITHDRAW = "withdraw"
    CANCEL   = "cancel"
    STAKE    = "stake"
    UNSTAKE  = "unstake"
    CLAIM    = "claim"


class TxStatus(StrEnum):
    SUBMITTED = "SUBMITTED"
    AWAITING  = "AWAITING_CONFIRMATION"
    CONFIRMED = "CONFIRMED"
    FAILED    = "FAILED"


class TrackState(StrEnum):
    DISPATCHED = "DISPATCHED"
    PENDING    = "PENDING"
    CONFIRMED  = "CONFIRMED"
    FAILED     = "FAILED"


class Finality(StrEnum):
    PENDING   = "pending"
    CONFIRMED = "confirmed"
    FAILED    = "failed"


class Severity(StrEnum):
    INFO    = "info"
    SUCCESS = "success"
    ERROR   = "error"


class Q(StrEnum):
    """Names of the quantities the vault exposes for reading."""
    VAULT_STATS     = "getVaultStats"
    TOTAL_STREAMS   = "getTotalStreams"
    STREAM          = "getStream"
    CLAIMABLE       = "getClaimableBalance"
    USER_STAKE      = "getUserStake"
    CURRENT_APY     = "getCurrentAPY"
    ACTIVITY_INFO   = "getActivityInfo"
    BALANCE_INFO    = "getBalanceInfo"
    EXCESS_FUNDS    = "calculateExcessFunds"
    STREAMING_FEE   = "STREAMING_FEE_BPS"
    BASE_REWARD_RATE = "baseRewardRate"
    FEE_INFO        = "getFeeInfo"
    VAULT_ACTIVE    = "vaultActive"
    OWNER           = "owner"
    CHARITY_ADDRESS = "charityAddress"


# Remote mutation names per kind
ACTIONS: Final = {
    TxKind.CREATE:   "createStream",
    TxKind.WITHDRAW: "withdrawFromStream",
    TxKind.CANCEL:   "cancelStream",
    TxKind.STAKE:    "stake",
    TxKind.UNSTAKE:  "unstake",
    TxKind.CLAIM:    "claimRewards",
}

TERMINAL_STATUS = {TxStatus.CONFIRMED, TxStatus.FAILED}

DECIMALS = 18
SETTLEMENT_DELAY = 1.0  # seconds between a confirmation and the refresh fan-out
REFETCH_DELAY = 0.5
POLL_INTERVAL = 1.0
TICK_INTERVAL = 1.0
RPC_TIMEOUT = 5.0
NOTIFICATION_HISTORY = 200
FINALIZED_HISTORY = 1000  # finalized request ids remembered for de-duplication

__all__ = [
    "ACTIONS",
    "DECIMALS",
    "FINALIZED_HISTORY",
    "NOTIFICATION_HISTORY",
    "POLL_INTERVAL",
    "REFETCH_DELAY",
    "RPC_TIMEOUT",
    "SETTLEMENT_DELAY",
    "TERMINAL_STATUS",
    "TICK_INTERVAL",

    ######
    "Finality",
    "Q",
    "Severity",
    "TrackState",
    "TxKind",
    "TxStatus",
]
