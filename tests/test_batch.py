import asyncio
from unittest import IsolatedAsyncioTestCase, mock

import txrelay.constants as C
from txrelay.batch import BatchRunner
from txrelay.constants import TxOutcome
from txrelay.errors import RejectionError, TransportError
from txrelay.metrics import PrometheusRecorder
from txrelay.models import TxStatus

from tests.fakes import FAST, FakeGateway, make_job


class TestBatchRunner(IsolatedAsyncioTestCase):
    def runner(self, gw, **kw) -> BatchRunner:
        self.recorder = PrometheusRecorder()
        kw.setdefault("config", FAST)
        return BatchRunner(gw, metrics=self.recorder, **kw)

    async def test_fatal_job_does_not_affect_others(self):
        gw = FakeGateway(submits={"tx2": [RejectionError("Insufficient funds", code="tecUNFUNDED_PAYMENT")]})
        jobs = [make_job("tx1"), make_job("tx2"), make_job("tx3")]

        summary = await self.runner(gw).run(jobs)

        self.assertEqual([j.outcome for j in jobs], [TxOutcome.CONFIRMED, TxOutcome.FATAL, TxOutcome.CONFIRMED])
        self.assertEqual((summary.total, summary.succeeded, summary.failed, summary.cancelled), (3, 2, 1, 0))
        self.assertEqual(len(summary.latencies), 3)
        self.assertEqual([r.attempts for r in summary.jobs], [1, 1, 1])

    async def test_isolation_holds_concurrently(self):
        gw = FakeGateway(submits={"tx2": [RejectionError("bad", code="temMALFORMED")]})
        jobs = [make_job(f"tx{i}") for i in range(1, 4)]

        summary = await self.runner(gw).run(jobs, concurrency=3)

        self.assertEqual([j.outcome for j in jobs], [TxOutcome.CONFIRMED, TxOutcome.FATAL, TxOutcome.CONFIRMED])
        self.assertEqual(summary.succeeded, 2)

    async def test_crashing_job_is_fatal_and_isolated(self):
        gw = FakeGateway(statuses={"tx2-1": [TxStatus.failed("tecPATH_DRY")]})
        jobs = [make_job(f"tx{i}") for i in range(1, 4)]

        with mock.patch("txrelay.engine.classify_result", side_effect=RuntimeError("boom")):
            summary = await self.runner(gw).run(jobs)

        self.assertEqual([j.outcome for j in jobs], [TxOutcome.CONFIRMED, TxOutcome.FATAL, TxOutcome.CONFIRMED])
        self.assertEqual(jobs[1].reason, "internal error: RuntimeError: boom")
        self.assertEqual(jobs[1].attempts[0].outcome, TxOutcome.FATAL)
        self.assertEqual(summary.failed, 1)
        self.assertEqual(self.recorder.counter_value(C.TRANSACTIONS_TOTAL, {"outcome": "fatal"}), 1)
        self.assertEqual(self.recorder.gauge_value(C.INFLIGHT_JOBS), 0)

    async def test_sequential_runs_in_order(self):
        gw = FakeGateway()
        jobs = [make_job(f"tx{i}") for i in range(1, 5)]

        await self.runner(gw).run(jobs, concurrency=1)

        self.assertEqual(gw.submit_calls, ["tx1", "tx2", "tx3", "tx4"])
        self.assertEqual([j.label for j in jobs], ["job-1", "job-2", "job-3", "job-4"])

    async def test_cancel_after_first_job(self):
        stop = asyncio.Event()

        class StopAfterFirst(FakeGateway):
            async def get_status(self, fingerprint):
                status = await super().get_status(fingerprint)
                if fingerprint == "tx1-1":
                    stop.set()
                return status

        gw = StopAfterFirst()
        jobs = [make_job("tx1"), make_job("tx2"), make_job("tx3")]

        summary = await self.runner(gw, stop=stop).run(jobs)

        self.assertEqual([j.outcome for j in jobs], [TxOutcome.CONFIRMED, TxOutcome.CANCELLED, TxOutcome.CANCELLED])
        self.assertEqual(gw.submit_calls, ["tx1"])
        self.assertEqual(gw.status_calls, ["tx1-1"])
        self.assertEqual(summary.cancelled, 2)
        self.assertEqual(jobs[1].attempts, [])

    async def test_concurrency_bound(self):
        active = 0
        peak = 0

        class Tracking(FakeGateway):
            async def submit(self, payload):
                nonlocal active, peak
                active += 1
                peak = max(peak, active)
                return await super().submit(payload)

            async def get_status(self, fingerprint):
                nonlocal active
                status = await super().get_status(fingerprint)
                active -= 1
                return status

        gw = Tracking(delay=0.01)
        jobs = [make_job(f"tx{i}") for i in range(1, 6)]

        summary = await self.runner(gw).run(jobs, concurrency=2)

        self.assertEqual(summary.succeeded, 5)
        self.assertEqual(peak, 2)
        self.assertEqual(active, 0)

    async def test_run_timeout_cancels_unfinished_jobs(self):
        gw = FakeGateway(statuses={f"tx{i}-1": [TxStatus.pending()] for i in range(1, 4)})
        jobs = [make_job(f"tx{i}", timeout=30.0) for i in range(1, 4)]

        async with asyncio.timeout(5):
            summary = await self.runner(gw).run(jobs, concurrency=3, timeout=0.05)

        self.assertEqual(summary.cancelled, 3)
        self.assertTrue(all(j.outcome == TxOutcome.CANCELLED for j in jobs))

    async def test_external_cancellation_marks_jobs(self):
        gw = FakeGateway(statuses={"tx1-1": [TxStatus.pending()]})
        jobs = [make_job("tx1", timeout=30.0), make_job("tx2")]
        runner = self.runner(gw)

        task = asyncio.create_task(runner.run(jobs))
        await asyncio.sleep(0.05)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task

        self.assertTrue(runner.stop.is_set())
        self.assertEqual([j.outcome for j in jobs], [TxOutcome.CANCELLED, TxOutcome.CANCELLED])
        self.assertEqual(gw.submit_calls, ["tx1"])

    async def test_balance_before_and_after(self):
        gw = FakeGateway(balance=42_000_000)
        summary = await self.runner(gw, address="rSender").run([make_job()])

        self.assertEqual(gw.balance_calls, ["rSender", "rSender"])
        self.assertEqual((summary.balance_before, summary.balance_after), (42_000_000, 42_000_000))
        self.assertEqual(self.recorder.gauge_value(C.WALLET_BALANCE, {"address": "rSender"}), 42_000_000)

    async def test_balance_errors_are_not_fatal(self):
        gw = FakeGateway(balance=TransportError("noNetwork", code="noNetwork"))
        summary = await self.runner(gw, address="rSender").run([make_job()])

        self.assertIsNone(summary.balance_before)
        self.assertEqual(summary.succeeded, 1)

    async def test_inflight_gauge_returns_to_zero(self):
        gw = FakeGateway()
        await self.runner(gw).run([make_job("a"), make_job("b")], concurrency=2)

        self.assertEqual(self.recorder.gauge_value(C.INFLIGHT_JOBS), 0)

    async def test_rejects_bad_arguments(self):
        runner = self.runner(FakeGateway())
        with self.assertRaises(ValueError):
            await runner.run([make_job()], concurrency=0)

        job = make_job()
        await runner.run([job])
        with self.assertRaises(ValueError):
            await runner.run([job])
