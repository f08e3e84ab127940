from typing import Final
from enum import StrEnum


class TxOutcome(StrEnum):
    PENDING   = "PENDING"
    CONFIRMED = "CONFIRMED"
    RETRYABLE = "RETRYABLE"
    FATAL     = "FATAL"
    CANCELLED = "CANCELLED"


class StatusKind(StrEnum):
    PENDING   = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED    = "FAILED"


TERMINAL_OUTCOMES: Final = frozenset({TxOutcome.CONFIRMED, TxOutcome.FATAL, TxOutcome.CANCELLED})

# Engine results that mean the node took the transaction and it may still land.
ACCEPTED_RESULTS: Final = frozenset({"tesSUCCESS", "terQUEUED"})
ALREADY_PROCESSED_RESULTS: Final = frozenset({"tefALREADY"})
NOT_FOUND_ERROR: Final = "txnNotFound"

RPC_TIMEOUT = 5.0
HORIZON = 20  # Ledgers a signed payment stays valid for (LastLedgerSequence offset)
POLL_INTERVAL = 1.0
POLL_ERROR_DELAY = 0.25
MAX_POLL_ERRORS = 3
DROPS_PER_XRP = 1_000_000

# Metric names, prefixed with the recorder namespace on export
TRANSACTIONS_TOTAL = "transactions_total"
ATTEMPTS_TOTAL = "attempts_total"
LATENCY_SECONDS = "transaction_latency_seconds"
WALLET_BALANCE = "wallet_balance_drops"
INFLIGHT_JOBS = "inflight_jobs"

__all__ = [
    "ACCEPTED_RESULTS",
    "ALREADY_PROCESSED_RESULTS",
    "ATTEMPTS_TOTAL",
    "DROPS_PER_XRP",
    "HORIZON",
    "INFLIGHT_JOBS",
    "LATENCY_SECONDS",
    "MAX_POLL_ERRORS",
    "NOT_FOUND_ERROR",
    "POLL_ERROR_DELAY",
    "POLL_INTERVAL",
    "RPC_TIMEOUT",
    "TERMINAL_OUTCOMES",
    "TRANSACTIONS_TOTAL",
    "WALLET_BALANCE",

    ######
    "StatusKind",
    "TxOutcome",
]
