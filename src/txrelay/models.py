"""Domain data structures for submission jobs and run results."""

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import txrelay.constants as C
from txrelay.constants import StatusKind, TxOutcome


@dataclass(frozen=True)
class BackoffConfig:
    """Delay schedule between retry attempts. All durations in seconds."""

    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 8.0
    jitter: float | None = None  # fraction, e.g. 0.1 => +/-10%

    def __post_init__(self):
        if self.base_delay < 0:
            raise ValueError(f"base_delay must be >= 0, got {self.base_delay}")
        if self.multiplier < 1:
            raise ValueError(f"multiplier must be >= 1, got {self.multiplier}")
        if self.max_delay < self.base_delay:
            raise ValueError(f"max_delay ({self.max_delay}) must be >= base_delay ({self.base_delay})")
        if self.jitter is not None and not 0 <= self.jitter <= 1:
            raise ValueError(f"jitter must be within [0, 1], got {self.jitter}")


@dataclass(frozen=True)
class EngineConfig:
    poll_interval: float = C.POLL_INTERVAL
    poll_error_delay: float = C.POLL_ERROR_DELAY
    max_poll_errors: int = C.MAX_POLL_ERRORS
    backoff: BackoffConfig = field(default_factory=BackoffConfig)


@dataclass(frozen=True, slots=True)
class TxStatus:
    kind: StatusKind
    reason: str | None = None
    ledger_index: int | None = None

    @classmethod
    def pending(cls) -> "TxStatus":
        return cls(StatusKind.PENDING)

    @classmethod
    def confirmed(cls, ledger_index: int | None = None) -> "TxStatus":
        return cls(StatusKind.CONFIRMED, ledger_index=ledger_index)

    @classmethod
    def failed(cls, reason: str, ledger_index: int | None = None) -> "TxStatus":
        return cls(StatusKind.FAILED, reason=reason, ledger_index=ledger_index)


@dataclass(slots=True)
class TransactionAttempt:
    attempt_number: int
    started_at: float = field(default_factory=time.time)
    fingerprint: str | None = None
    outcome: TxOutcome = TxOutcome.PENDING
    reason: str | None = None
    finished_at: float | None = None

    def resolve(self, outcome: TxOutcome, reason: str | None = None) -> None:
        if self.outcome != TxOutcome.PENDING:
            raise ValueError(f"attempt {self.attempt_number} already {self.outcome}, cannot move to {outcome}")
        if outcome == TxOutcome.PENDING:
            raise ValueError("an attempt cannot be resolved back to PENDING")
        self.outcome = outcome
        self.reason = reason
        self.finished_at = time.time()

    def __str__(self):
        return f"#{self.attempt_number} {self.fingerprint or '-'} {self.outcome}"


@dataclass(slots=True)
class TransactionJob:
    payload: str
    max_retries: int = 3
    confirmation_timeout: float = 30.0
    label: str = ""
    # Produces a freshly signed payload for resubmissions. None resubmits the same blob.
    resign: Callable[[], Awaitable[str]] | None = None
    attempts: list[TransactionAttempt] = field(default_factory=list)
    outcome: TxOutcome = TxOutcome.PENDING
    reason: str | None = None
    started_at: float | None = None  # monotonic, first Submitting entry
    finished_at: float | None = None

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.confirmation_timeout <= 0:
            raise ValueError(f"confirmation_timeout must be > 0, got {self.confirmation_timeout}")

    @property
    def is_terminal(self) -> bool:
        return self.outcome in C.TERMINAL_OUTCOMES

    @property
    def latency(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    @property
    def fingerprint(self) -> str | None:
        """Fingerprint of the most recent attempt the node accepted.

        An attempt confirmed because an earlier submission landed carries that
        earlier fingerprint, so a confirmed job reports the hash in the ledger.
        """
        for a in reversed(self.attempts):
            if a.fingerprint:
                return a.fingerprint
        return None

    def new_attempt(self) -> TransactionAttempt:
        if self.is_terminal:
            raise ValueError(f"job {self.label!r} is already {self.outcome}")
        if self.attempts and self.attempts[-1].outcome == TxOutcome.PENDING:
            raise ValueError(f"attempt {self.attempts[-1].attempt_number} of {self.label!r} is still pending")
        if self.started_at is None:
            self.started_at = time.monotonic()
        attempt = TransactionAttempt(attempt_number=len(self.attempts) + 1)
        self.attempts.append(attempt)
        return attempt

    def finish(self, outcome: TxOutcome, reason: str | None = None) -> None:
        if outcome not in C.TERMINAL_OUTCOMES:
            raise ValueError(f"{outcome} is not a terminal outcome")
        if self.is_terminal:
            raise ValueError(f"job {self.label!r} already finished as {self.outcome}")
        self.outcome = outcome
        self.reason = reason
        if self.started_at is not None:
            self.finished_at = time.monotonic()

    def __str__(self):
        return f"{self.label or 'job'} -- attempts={len(self.attempts)} -- {self.outcome}"


@dataclass(frozen=True)
class JobReport:
    label: str
    outcome: TxOutcome
    attempts: int
    reason: str | None
    fingerprint: str | None
    latency: float | None

    @classmethod
    def from_job(cls, job: TransactionJob) -> "JobReport":
        return cls(
            label=job.label,
            outcome=job.outcome,
            attempts=len(job.attempts),
            reason=job.reason,
            fingerprint=job.fingerprint,
            latency=job.latency,
        )


@dataclass(frozen=True)
class RunSummary:
    total: int
    succeeded: int
    failed: int
    cancelled: int
    latencies: tuple[float, ...]
    jobs: tuple[JobReport, ...]
    balance_before: int | None = None
    balance_after: int | None = None

    @classmethod
    def from_jobs(
        cls,
        jobs: list[TransactionJob],
        *,
        balance_before: int | None = None,
        balance_after: int | None = None,
    ) -> "RunSummary":
        open_jobs = [j.label for j in jobs if not j.is_terminal]
        if open_jobs:
            raise ValueError(f"cannot summarize, jobs still open: {open_jobs}")
        return cls(
            total=len(jobs),
            succeeded=sum(1 for j in jobs if j.outcome == TxOutcome.CONFIRMED),
            failed=sum(1 for j in jobs if j.outcome == TxOutcome.FATAL),
            cancelled=sum(1 for j in jobs if j.outcome == TxOutcome.CANCELLED),
            latencies=tuple(j.latency for j in jobs if j.latency is not None),
            jobs=tuple(JobReport.from_job(j) for j in jobs),
            balance_before=balance_before,
            balance_after=balance_after,
        )

    @property
    def success_ratio(self) -> float:
        return self.succeeded / self.total if self.total else 1.0

    def meets(self, threshold: float) -> bool:
        return self.succeeded == self.total or self.success_ratio >= threshold
