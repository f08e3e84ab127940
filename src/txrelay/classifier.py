"""Map submission and confirmation failures to retry decisions.

Engine result prefixes (https://xrpl.org/docs/references/protocol/transactions/transaction-results):
    tel  local node error, not applied; the node may be busy or the queue full    -> retry
    ter  retry later (e.g. terPRE_SEQ, sequence gap)                              -> retry
    tem  malformed, will never succeed                                            -> fatal
    tef  failed in a way that will never succeed on any ledger                    -> fatal
    tec  applied with a failure code, fee claimed (e.g. tecUNFUNDED_PAYMENT)      -> fatal
tefALREADY means the exact same transaction was already applied, which is a success.
"""
import asyncio
import logging
from enum import StrEnum

import httpx

import txrelay.constants as C
from txrelay.errors import (
    AmbiguousOutcome,
    GatewayError,
    RejectionError,
    RetryBudgetExhausted,
    TransportError,
)

log = logging.getLogger("txrelay.classifier")


class Verdict(StrEnum):
    RETRYABLE = "RETRYABLE"
    FATAL = "FATAL"
    ALREADY_PROCESSED = "ALREADY_PROCESSED"


RETRYABLE_RPC_ERRORS = {"slowDown", "tooBusy", "noNetwork", "noCurrent", "noClosed", "notReady", "notSynced", "lgrNotFound"}
FATAL_RPC_ERRORS = {
    "invalidTransaction",
    "invalidParams",
    "badSyntax",
    "actMalformed",
    "srcActMalformed",
    "actNotFound",
    "srcActNotFound",
    "highFee",
    "noPermission",
    "forbidden",
    "notImpl",
}
ENGINE_RESULT_PREFIXES = ("tes", "tel", "ter", "tem", "tef", "tec")

ALREADY_MARKERS = ("already processed", "already been processed", "alreadyprocessed")
RETRYABLE_MARKERS = (
    "timeout",
    "timed out",
    "connection reset",
    "connection closed",
    "socket closed",
    "rate limit",
    "too many requests",
    "temporarily unavailable",
    "blockhash not found",
)
FATAL_MARKERS = (
    "insufficient funds",
    "invalid signature",
    "bad signature",
    "malformed",
)


def _is_known(code: str | None) -> bool:
    if not code:
        return False
    return (
        code in C.ALREADY_PROCESSED_RESULTS
        or code in RETRYABLE_RPC_ERRORS
        or code in FATAL_RPC_ERRORS
        or code.startswith(("tel", "ter", "tem", "tef", "tec"))
    )


def classify_result(code: str | None) -> Verdict:
    """Classify an engine result / rippled error name on its own."""
    if not code:
        return Verdict.RETRYABLE
    if code in C.ALREADY_PROCESSED_RESULTS:
        return Verdict.ALREADY_PROCESSED
    if code in RETRYABLE_RPC_ERRORS:
        return Verdict.RETRYABLE
    if code in FATAL_RPC_ERRORS:
        return Verdict.FATAL
    if code.startswith(("tel", "ter")):
        return Verdict.RETRYABLE
    if code.startswith(("tem", "tef", "tec")):
        return Verdict.FATAL
    return Verdict.RETRYABLE


def classify(error: BaseException) -> Verdict:
    """Decide whether ``error`` is worth another attempt.

    A ``RejectionError`` is the node refusing the transaction and is FATAL
    unless its code says otherwise (tel/ter, tefALREADY). Other unknown errors
    are RETRYABLE; the engine's retry budget bounds them.
    """
    message = str(error).lower()
    if any(m in message for m in ALREADY_MARKERS):
        return Verdict.ALREADY_PROCESSED

    if isinstance(error, RetryBudgetExhausted):
        return Verdict.FATAL

    if isinstance(error, (TransportError, AmbiguousOutcome, asyncio.TimeoutError, ConnectionError, httpx.TransportError)):
        return Verdict.RETRYABLE

    if isinstance(error, GatewayError) and _is_known(error.code):
        return classify_result(error.code)

    if isinstance(error, RejectionError):
        log.debug("Unrecognized rejection code %s, treating as fatal: %s", error.code, error)
        return Verdict.FATAL

    if any(m in message for m in FATAL_MARKERS):
        return Verdict.FATAL
    if any(m in message for m in RETRYABLE_MARKERS):
        return Verdict.RETRYABLE
    return Verdict.RETRYABLE
