"""Drive one transaction from signed payload to a terminal outcome.

    Idle -> Submitting -> Confirming -> CONFIRMED | RETRYABLE | FATAL
    RETRYABLE -> (backoff) -> Submitting, at most max_retries times

Cancellation (the shared ``stop`` event) is checked before every gateway call
and interrupts every wait; a job caught by it ends CANCELLED.
"""
import asyncio
import logging
import random

import txrelay.constants as C
from txrelay import backoff
from txrelay.classifier import Verdict, classify, classify_result
from txrelay.constants import StatusKind, TxOutcome
from txrelay.errors import AmbiguousOutcome, CancellationRequested, RetryBudgetExhausted
from txrelay.gateway import Gateway
from txrelay.metrics import MetricsRecorder, NullRecorder
from txrelay.models import EngineConfig, TransactionAttempt, TransactionJob

log = logging.getLogger("txrelay.engine")


class SubmissionEngine:
    def __init__(
        self,
        gateway: Gateway,
        *,
        metrics: MetricsRecorder | None = None,
        config: EngineConfig | None = None,
        stop: asyncio.Event | None = None,
        rng: random.Random | None = None,
    ):
        self.gateway = gateway
        self.metrics = metrics or NullRecorder()
        self.config = config or EngineConfig()
        self.stop = stop or asyncio.Event()
        self.rng = rng

    def _check_stop(self, reason: str) -> None:
        if self.stop.is_set():
            raise CancellationRequested(reason)

    async def _wait(self, seconds: float, reason: str) -> None:
        """Sleep for ``seconds``, raising CancellationRequested if ``stop`` fires first."""
        self._check_stop(reason)
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self.stop.wait(), timeout=seconds)
        except TimeoutError:
            return
        raise CancellationRequested(reason)

    async def run(self, job: TransactionJob) -> TransactionJob:
        try:
            return await self._run(job)
        except CancellationRequested as e:
            if job.attempts and job.attempts[-1].outcome == TxOutcome.PENDING:
                job.attempts[-1].resolve(TxOutcome.CANCELLED, str(e))
            return self._finish(job, TxOutcome.CANCELLED, str(e))

    async def _run(self, job: TransactionJob) -> TransactionJob:
        payload = job.payload
        while True:
            self._check_stop(f"cancelled before attempt {len(job.attempts) + 1}")

            attempt = job.new_attempt()
            self.metrics.inc_counter(C.ATTEMPTS_TOTAL)
            log.debug("%s attempt %s/%s", job.label, attempt.attempt_number, job.max_retries + 1)

            if attempt.attempt_number > 1 and job.resign is not None:
                try:
                    payload = await job.resign()
                except Exception as e:
                    log.warning("%s could not re-sign, resubmitting previous payload: %s", job.label, e)

            await self._attempt(job, attempt, payload)

            if attempt.outcome == TxOutcome.CONFIRMED:
                return self._finish(job, TxOutcome.CONFIRMED, attempt.reason)
            if attempt.outcome == TxOutcome.FATAL:
                return self._finish(job, TxOutcome.FATAL, attempt.reason)

            # RETRYABLE
            if attempt.attempt_number > job.max_retries:
                exhausted = RetryBudgetExhausted(attempt.attempt_number, attempt.reason)
                return self._finish(job, TxOutcome.FATAL, str(exhausted))

            wait = backoff.delay(attempt.attempt_number, self.config.backoff, self.rng)
            log.info(
                "%s attempt %s retryable (%s), retrying in %.2fs",
                job.label, attempt.attempt_number, attempt.reason, wait,
            )
            await self._wait(wait, f"cancelled during backoff after attempt {attempt.attempt_number}")

    async def _attempt(self, job: TransactionJob, attempt: TransactionAttempt, payload: str) -> None:
        try:
            fingerprint = await self.gateway.submit(payload)
        except Exception as e:
            verdict = classify(e)
            log.debug("%s submit failed (%s): %s", job.label, verdict, e)
            if verdict == Verdict.ALREADY_PROCESSED:
                attempt.resolve(TxOutcome.CONFIRMED, f"already processed: {e}")
            elif verdict == Verdict.FATAL:
                landed = await self._landed_earlier(job, attempt)
                if landed:
                    attempt.fingerprint = landed
                    attempt.resolve(TxOutcome.CONFIRMED, f"earlier attempt {landed} confirmed")
                else:
                    attempt.resolve(TxOutcome.FATAL, str(e))
            else:
                attempt.resolve(TxOutcome.RETRYABLE, str(e))
            return

        attempt.fingerprint = fingerprint
        log.debug("%s accepted as %s", job.label, fingerprint)
        await self._confirm(job, attempt)

    async def _confirm(self, job: TransactionJob, attempt: TransactionAttempt) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + job.confirmation_timeout
        errors = 0
        cfg = self.config
        cancelled =f"cancelled while confirming {attempt.fingerprint}"

        while True:
            self._check_stop(cancelled)

            try:
                status = await self.gateway.get_status(attempt.fingerprint)
            except Exception as e:
                errors += 1
                log.debug("%s status poll error %s/%s: %s", job.label, errors, cfg.max_poll_errors, e)
                if errors > cfg.max_poll_errors:
                    attempt.resolve(TxOutcome.RETRYABLE, f"status polling failed: {e}")
                    return
                delay = cfg.poll_error_delay
            else:
                if status.kind == StatusKind.CONFIRMED:
                    attempt.resolve(TxOutcome.CONFIRMED, f"validated in ledger {status.ledger_index}")
                    return
                if status.kind == StatusKind.FAILED:
                    verdict = classify_result(status.reason)
                    if verdict == Verdict.ALREADY_PROCESSED:
                        attempt.resolve(TxOutcome.CONFIRMED, status.reason)
                    elif verdict == Verdict.FATAL:
                        attempt.resolve(TxOutcome.FATAL, status.reason)
                    else:
                        attempt.resolve(TxOutcome.RETRYABLE, status.reason)
                    return
                delay = cfg.poll_interval

            remaining = deadline - loop.time()
            if remaining <= 0:
                ambiguous = AmbiguousOutcome(f"{attempt.fingerprint} not confirmed within {job.confirmation_timeout}s")
                attempt.resolve(TxOutcome.RETRYABLE, str(ambiguous))
                return
            await self._wait(min(delay, remaining), cancelled)

    async def _landed_earlier(self, job: TransactionJob, current: TransactionAttempt) -> str | None:
        """Fingerprint of an earlier attempt that has since been validated, if any.

        A resubmission can be rejected (e.g. tefPAST_SEQ) because a previous,
        ambiguous attempt landed after all. That is a success, not a failure.
        """
        for a in job.attempts:
            if a is current or not a.fingerprint:
                continue
            try:
                status = await self.gateway.get_status(a.fingerprint)
            except Exception as e:
                log.debug("%s could not re-check %s: %s", job.label, a.fingerprint, e)
                continue
            if status.kind == StatusKind.CONFIRMED:
                return a.fingerprint
        return None

    def _finish(self, job: TransactionJob, outcome: TxOutcome, reason: str | None) -> TransactionJob:
        job.finish(outcome, reason)
        labels = {"outcome": outcome.value.lower()}
        self.metrics.inc_counter(C.TRANSACTIONS_TOTAL, labels)
        if job.latency is not None:
            self.metrics.observe_histogram(C.LATENCY_SECONDS, job.latency, labels)

        if outcome == TxOutcome.CONFIRMED:
            log.info("%s confirmed after %s attempt(s) in %.0fms: %s",
                     job.label, len(job.attempts), (job.latency or 0) * 1000, job.fingerprint)
        elif outcome == TxOutcome.FATAL:
            log.error("%s failed after %s attempt(s): %s", job.label, len(job.attempts), reason)
        else:
            log.warning("%s cancelled: %s", job.label, reason)
        return job
