from typing import Final
from enum import StrEnum


class ErrorClass(StrEnum):
    SEQUENCE_CONFLICT    = "SEQUENCE_CONFLICT"
    FEE_TOO_LOW          = "FEE_TOO_LOW"
    INSUFFICIENT_FUNDS   = "INSUFFICIENT_FUNDS"
    TIMEOUT              = "TIMEOUT"
    REJECTED_BY_ENDPOINT = "REJECTED_BY_ENDPOINT"
    UNKNOWN              = "UNKNOWN"


class Outcome(StrEnum):
    ACCEPTED  = "ACCEPTED"
    REJECTED  = "REJECTED"
    TIMED_OUT = "TIMED_OUT"


class RunState(StrEnum):
    IDLE     = "IDLE"
    WARMUP   = "WARMUP"
    RUNNING  = "RUNNING"
    DRAINING = "DRAINING"
    COMPLETE = "COMPLETE"


class RunMode(StrEnum):
    SEQUENTIAL     = "sequential"
    CONCURRENT     = "concurrent"
    SUSTAINED      = "sustained"
    BURST          = "burst"
    RATE_DISCOVERY = "rate_discovery"


RETRYABLE: Final = frozenset({ErrorClass.SEQUENCE_CONFLICT, ErrorClass.FEE_TOO_LOW, ErrorClass.TIMEOUT})

# Human readable text attached to every classified result
DESCRIPTIONS: Final = {
    ErrorClass.SEQUENCE_CONFLICT:    "sequence number already used or out of order",
    ErrorClass.FEE_TOO_LOW:          "fee below what the endpoint accepts",
    ErrorClass.INSUFFICIENT_FUNDS:   "account cannot pay for the transaction",
    ErrorClass.TIMEOUT:              "endpoint or confirmation timed out",
    ErrorClass.REJECTED_BY_ENDPOINT: "endpoint rejected the transaction",
    ErrorClass.UNKNOWN:              "unclassified failure",
}

PROBE_TIMEOUT = 5.0
RPC_TIMEOUT = 8.0
SUBMIT_TIMEOUT = 20.0
CONFIRM_TIMEOUT = 60.0
CONFIRM_POLL_INTERVAL = 0.5
DRAIN_TIMEOUT = 30.0
RECONCILE_INTERVAL = 30.0
RETIRE_GRACE = SUBMIT_TIMEOUT + CONFIRM_TIMEOUT  # replaced connections stay open this long
LATENCY_WINDOW = 50  # endpoint moving-average window

# XRPL specifics
HORIZON = 15  # ledgers before LastLedgerSequence passes
ACCOUNT_ZERO: Final = "rrrrrrrrrrrrrrrrrrrrrhoLvTp"

__all__ = [
    "ACCOUNT_ZERO",
    "CONFIRM_POLL_INTERVAL",
    "CONFIRM_TIMEOUT",
    "DESCRIPTIONS",
    "DRAIN_TIMEOUT",
    "HORIZON",
    "LATENCY_WINDOW",
    "PROBE_TIMEOUT",
    "RECONCILE_INTERVAL",
    "RETIRE_GRACE",
    "RETRYABLE",
    "RPC_TIMEOUT",
    "SUBMIT_TIMEOUT",

    ######
    "ErrorClass",
    "Outcome",
    "RunMode",
    "RunState",
]
