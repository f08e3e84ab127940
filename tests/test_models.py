from unittest import TestCase

from txrelay.constants import TxOutcome
from txrelay.models import RunSummary, TransactionAttempt, TransactionJob


class TestTransactionAttempt(TestCase):
    def test_resolves_once(self):
        a = TransactionAttempt(attempt_number=1)
        a.resolve(TxOutcome.RETRYABLE, "timeout")

        self.assertEqual(a.outcome, TxOutcome.RETRYABLE)
        self.assertIsNotNone(a.finished_at)
        with self.assertRaises(ValueError):
            a.resolve(TxOutcome.CONFIRMED)

    def test_cannot_resolve_to_pending(self):
        with self.assertRaises(ValueError):
            TransactionAttempt(attempt_number=1).resolve(TxOutcome.PENDING)


class TestTransactionJob(TestCase):
    def test_attempts_are_numbered_and_sequential(self):
        job = TransactionJob(payload="AA")
        first = job.new_attempt()
        with self.assertRaises(ValueError):
            job.new_attempt()  # previous attempt still pending
        first.resolve(TxOutcome.RETRYABLE)
        second = job.new_attempt()

        self.assertEqual([a.attempt_number for a in job.attempts], [1, 2])
        self.assertIs(job.attempts[1], second)

    def test_finish_is_terminal(self):
        job = TransactionJob(payload="AA", label="p1")
        job.new_attempt().resolve(TxOutcome.CONFIRMED)
        job.finish(TxOutcome.CONFIRMED)

        self.assertTrue(job.is_terminal)
        self.assertGreaterEqual(job.latency, 0)
        with self.assertRaises(ValueError):
            job.finish(TxOutcome.FATAL)
        with self.assertRaises(ValueError):
            job.new_attempt()

    def test_finish_requires_terminal_outcome(self):
        with self.assertRaises(ValueError):
            TransactionJob(payload="AA").finish(TxOutcome.RETRYABLE)

    def test_fingerprint_is_latest_accepted(self):
        job = TransactionJob(payload="AA")
        a1 = job.new_attempt()
        a1.fingerprint = "F1"
        a1.resolve(TxOutcome.RETRYABLE)
        job.new_attempt().resolve(TxOutcome.RETRYABLE)  # never accepted

        self.assertEqual(job.fingerprint, "F1")

    def test_validation(self):
        with self.assertRaises(ValueError):
            TransactionJob(payload="AA", max_retries=-1)
        with self.assertRaises(ValueError):
            TransactionJob(payload="AA", confirmation_timeout=0)


class TestRunSummary(TestCase):
    def _job(self, outcome, label):
        job = TransactionJob(payload="AA", label=label)
        if outcome != TxOutcome.CANCELLED:
            job.new_attempt().resolve(outcome)
        job.finish(outcome)
        return job

    def test_counts(self):
        jobs = [
            self._job(TxOutcome.CONFIRMED, "a"),
            self._job(TxOutcome.FATAL, "b"),
            self._job(TxOutcome.CONFIRMED, "c"),
            self._job(TxOutcome.CANCELLED, "d"),
        ]
        s = RunSummary.from_jobs(jobs, balance_before=10, balance_after=8)

        self.assertEqual((s.total, s.succeeded, s.failed, s.cancelled), (4, 2, 1, 1))
        self.assertEqual(len(s.latencies), 3)
        self.assertEqual([r.label for r in s.jobs], ["a", "b", "c", "d"])
        self.assertEqual(s.success_ratio, 0.5)
        self.assertTrue(s.meets(0.5))
        self.assertFalse(s.meets(0.75))

    def test_all_confirmed_always_meets(self):
        s = RunSummary.from_jobs([self._job(TxOutcome.CONFIRMED, "a")])
        self.assertTrue(s.meets(1.0))
        self.assertTrue(RunSummary.from_jobs([]).meets(1.0))

    def test_open_jobs_cannot_be_summarized(self):
        with self.assertRaises(ValueError):
            RunSummary.from_jobs([TransactionJob(payload="AA")])
