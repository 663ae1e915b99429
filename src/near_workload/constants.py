from typing import Final
from enum import StrEnum


class TxExecutionStatus(StrEnum):
    """Finality a `send_tx` caller waits for, weakest first.

    Ordering follows definition order via `rank`. Comparisons never use the string value.
    """
    NONE                = "NONE"
    INCLUDED            = "INCLUDED"
    EXECUTED_OPTIMISTIC = "EXECUTED_OPTIMISTIC"
    INCLUDED_FINAL      = "INCLUDED_FINAL"
    EXECUTED            = "EXECUTED"
    FINAL               = "FINAL"

    @property
    def rank(self) -> int:
        return type(self)._member_names_.index(self.name)

    def satisfies(self, requested: "TxExecutionStatus") -> bool:
        return self.rank >= TxExecutionStatus(requested).rank

    def __lt__(self, other):
        if not isinstance(other, TxExecutionStatus):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, TxExecutionStatus):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, TxExecutionStatus):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, TxExecutionStatus):
            return NotImplemented
        return self.rank >= other.rank


class ResponseCheckSeverity(StrEnum):
    LOG    = "log"     # warn and keep going
    ASSERT = "assert"  # first violation aborts the run


class SelectionPolicy(StrEnum):
    ROUND_ROBIN = "round_robin"
    RANDOM      = "random"


# Step statuses counted as success. Anything else (Unknown, Failure, NotStarted, Started) is a violation.
SUCCESS_STATUSES: Final = frozenset({"SuccessValue", "SuccessReceiptId"})

KEY_TYPE_ED25519: Final = "ed25519"

RPC_TIMEOUT = 60.0
PROBE_TIMEOUT = 3.0
BLOCK_REFRESH_INTERVAL = 60.0
NONCE_QUERY_INTERVAL = 150e-6  # seconds between access key queries after a run
DEFAULT_CHANNEL_BUFFER_SIZE = 100
DEFAULT_INTERVAL_MICROS = 10_000
DEFAULT_GAS = 30_000_000_000_000
DEFAULT_WAIT_UNTIL = TxExecutionStatus.EXECUTED_OPTIMISTIC
PROGRESS_LOG_EVERY = 1000

__all__ = [
    "BLOCK_REFRESH_INTERVAL",
    "DEFAULT_CHANNEL_BUFFER_SIZE",
    "DEFAULT_GAS",
    "DEFAULT_INTERVAL_MICROS",
    "DEFAULT_WAIT_UNTIL",
    "KEY_TYPE_ED25519",
    "NONCE_QUERY_INTERVAL",
    "PROBE_TIMEOUT",
    "PROGRESS_LOG_EVERY",
    "RPC_TIMEOUT",
    "SUCCESS_STATUSES",

    ######
    "ResponseCheckSeverity",
    "SelectionPolicy",
    "TxExecutionStatus",
]
