"""Error taxonomy shared by the gateway, classifier and engine."""


class TxRelayError(Exception):
    """Base class for everything txrelay raises on purpose."""


class GatewayError(TxRelayError):
    """A ledger RPC call failed.

    ``code`` carries the rippled error name (``slowDown``, ``txnNotFound``) or
    the engine result (``tefPAST_SEQ``) when the node supplied one.
    """

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.code = code

    def __str__(self):
        if self.code and self.code not in self.message:
            return f"{self.code}: {self.message}"
        return self.message


class TransportError(GatewayError):
    """Connection, timeout or node-busy failure at the RPC layer."""


class RejectionError(GatewayError):
    """The node refused the transaction (bad signature, unfunded, malformed...)."""


class AmbiguousOutcome(TxRelayError):
    """Confirmation was not observed within the confirmation timeout."""


class RetryBudgetExhausted(TxRelayError):
    def __init__(self, attempts: int, last_reason: str | None = None):
        msg = f"retries exhausted after {attempts} attempts"
        if last_reason:
            msg = f"{msg} (last: {last_reason})"
        super().__init__(msg)
        self.attempts = attempts
        self.last_reason = last_reason


class CancellationRequested(TxRelayError):
    """The run was asked to stop before this job reached a terminal state."""
