import asyncio
import logging
import random
from collections.abc import Sequence

import txrelay.constants as C
from txrelay.constants import TxOutcome
from txrelay.engine import SubmissionEngine
from txrelay.gateway import Gateway
from txrelay.metrics import MetricsRecorder, NullRecorder
from txrelay.models import EngineConfig, RunSummary, TransactionJob

log = logging.getLogger("txrelay.batch")


class BatchRunner:
    """Run independent jobs through their own SubmissionEngine and summarize.

    One job's failure never affects another. Setting ``stop`` (or hitting the
    run ``timeout``) stops new gateway calls and marks unfinished jobs CANCELLED.
    """

    def __init__(
        self,
        gateway: Gateway,
        *,
        metrics: MetricsRecorder | None = None,
        config: EngineConfig | None = None,
        address: str | None = None,
        stop: asyncio.Event | None = None,
        submit_interval: float = 0.0,
        rng: random.Random | None = None,
    ):
        self.gateway = gateway
        self.metrics = metrics or NullRecorder()
        self.config = config or EngineConfig()
        self.address = address
        self.stop = stop or asyncio.Event()
        self.submit_interval = submit_interval
        self.rng = rng
        self.inflight = 0

    def cancel(self) -> None:
        self.stop.set()

    def _engine(self) -> SubmissionEngine:
        return SubmissionEngine(
            self.gateway, metrics=self.metrics, config=self.config, stop=self.stop, rng=self.rng
        )

    async def _balance(self, when: str) -> int | None:
        if not self.address:
            return None
        try:
            drops = await self.gateway.get_balance(self.address)
        except Exception as e:
            log.warning("Balance query %s run failed for %s: %s", when, self.address, e)
            return None
        log.info("Wallet balance %s run: %s XRP", when, drops / C.DROPS_PER_XRP)
        self.metrics.set_gauge(C.WALLET_BALANCE, drops, {"address": self.address})
        return drops

    async def _drive(self, job: TransactionJob) -> None:
        if self.stop.is_set():
            self._cancel_job(job, "cancelled before start")
            return
        self.inflight += 1
        self.metrics.set_gauge(C.INFLIGHT_JOBS, self.inflight)
        try:
            await self._engine().run(job)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.exception("%s crashed", job.label)
            if not job.is_terminal:
                reason = f"internal error: {e.__class__.__name__}: {e}"
                if job.attempts and job.attempts[-1].outcome == TxOutcome.PENDING:
                    job.attempts[-1].resolve(TxOutcome.FATAL, reason)
                job.finish(TxOutcome.FATAL, reason)
                self.metrics.inc_counter(C.TRANSACTIONS_TOTAL, {"outcome": "fatal"})
        finally:
            self.inflight -= 1
            self.metrics.set_gauge(C.INFLIGHT_JOBS, self.inflight)

    def _cancel_job(self, job: TransactionJob, reason: str) -> None:
        if job.is_terminal:
            return
        if job.attempts and job.attempts[-1].outcome == TxOutcome.PENDING:
            job.attempts[-1].resolve(TxOutcome.CANCELLED, reason)
        job.finish(TxOutcome.CANCELLED, reason)
        self.metrics.inc_counter(C.TRANSACTIONS_TOTAL, {"outcome": "cancelled"})
        log.debug("%s %s", job.label, reason)

    async def _run_sequential(self, jobs: Sequence[TransactionJob]) -> None:
        for i, job in enumerate(jobs):
            if i and self.submit_interval > 0 and not self.stop.is_set():
                try:
                    await asyncio.wait_for(self.stop.wait(), timeout=self.submit_interval)
                except TimeoutError:
                    pass
            log.info("Sending transaction %s/%s", i + 1, len(jobs))
            await self._drive(job)

    async def _run_concurrent(self, jobs: Sequence[TransactionJob], concurrency: int) -> None:
        sem = asyncio.Semaphore(concurrency)

        async def bounded(job: TransactionJob) -> None:
            async with sem:
                await self._drive(job)

        async with asyncio.TaskGroup() as tg:
            for i, job in enumerate(jobs):
                tg.create_task(bounded(job), name=job.label or f"job-{i + 1}")

    async def run(
        self,
        jobs: Sequence[TransactionJob],
        concurrency: int = 1,
        *,
        timeout: float | None = None,
    ) -> RunSummary:
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        for i, job in enumerate(jobs):
            if job.attempts or job.is_terminal:
                raise ValueError(f"job {job.label or i} has already been run")
            if not job.label:
                job.label = f"job-{i + 1}"

        balance_before = await self._balance("before")

        timer = None
        if timeout:
            timer = asyncio.get_running_loop().call_later(timeout, self._on_timeout, timeout)

        log.info("Running %s transaction(s) with concurrency=%s", len(jobs), concurrency)
        try:
            if concurrency == 1:
                await self._run_sequential(jobs)
            else:
                await self._run_concurrent(jobs, concurrency)
        except asyncio.CancelledError:
            self.stop.set()
            for job in jobs:
                self._cancel_job(job, "run cancelled")
            raise
        finally:
            if timer is not None:
                timer.cancel()

        for job in jobs:
            self._cancel_job(job, "run stopped")

        balance_after = await self._balance("after")
        return RunSummary.from_jobs(list(jobs), balance_before=balance_before, balance_after=balance_after)

    def _on_timeout(self, timeout: float) -> None:
        if not self.stop.is_set():
            log.warning("Run timeout of %ss reached, cancelling remaining jobs", timeout)
            self.stop.set()
