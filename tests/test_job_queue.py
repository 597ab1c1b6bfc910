import os
import sys
import threading
import unittest
from datetime import datetime, timedelta, timezone

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.stores import MemoryJobStore
from event_bus import JOB_DEAD_LETTER, EventBus
from job_queue import BackoffPolicy, JobQueue, JobQueueError


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 5, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class TestJobQueue(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = _Clock()
        self.store = MemoryJobStore()
        self.bus = EventBus()
        self.queue = JobQueue(self.store, bus=self.bus, backoff=BackoffPolicy(kind="fixed", base_seconds=0), clock=self.clock)

    def test_enqueue_rejects_bad_contract_before_side_effects(self) -> None:
        for kwargs in (
            {"job_type": ""},
            {"job_type": "x", "payload": ["not", "a", "dict"]},
            {"job_type": "x", "payload": {"bad": object()}},
            {"job_type": "x", "max_attempts": 0},
            {"job_type": "x", "priority": "high"},
        ):
            job_type = kwargs.pop("job_type")
            with self.assertRaises(JobQueueError):
                self.queue.enqueue(job_type, **kwargs)
        self.assertEqual(self.store.list(), [])

    def test_idempotency_key_returns_same_job(self) -> None:
        first = self.queue.enqueue("pipeline.run", {"lead_id": "l1"}, idempotency_key="run:l1")
        second = self.queue.enqueue("pipeline.run", {"lead_id": "l1"}, idempotency_key="run:l1")
        self.assertEqual(first["id"], second["id"])
        self.assertEqual(len(self.store.list()), 1)

    def test_idempotency_key_free_again_after_terminal(self) -> None:
        first = self.queue.enqueue("pipeline.run", {}, idempotency_key="k")
        self.queue.claim_next("w1")
        self.queue.complete(first["id"], {"ok": True})
        second = self.queue.enqueue("pipeline.run", {}, idempotency_key="k")
        self.assertNotEqual(first["id"], second["id"])

    def test_dedupe_key_collapses_onto_queued_job(self) -> None:
        a = self.queue.enqueue("notifications.dispatch_pending", {}, dedupe_key="dispatch")
        b = self.queue.enqueue("notifications.dispatch_pending", {}, dedupe_key="dispatch")
        self.assertEqual(a["id"], b["id"])
        self.queue.claim_next("w1")
        c = self.queue.enqueue("notifications.dispatch_pending", {}, dedupe_key="dispatch")
        self.assertNotEqual(a["id"], c["id"])

    def test_claim_order_priority_then_run_after(self) -> None:
        low = self.queue.enqueue("t", {}, priority=0)
        self.clock.advance(seconds=1)
        high = self.queue.enqueue("t", {}, priority=5)
        self.clock.advance(seconds=1)
        mid = self.queue.enqueue("t", {}, priority=1)
        claimed = self.queue.claim_batch("w1", 3)
        self.assertEqual([j["id"] for j in claimed], [high["id"], mid["id"], low["id"]])
        for job in claimed:
            self.assertEqual(job["status"], "running")
            self.assertEqual(job["lock_owner"], "w1")
            self.assertIsNotNone(job["locked_at"])
            self.assertIsNotNone(job["started_at"])

    def test_claim_respects_run_after(self) -> None:
        self.queue.enqueue("t", {}, run_after=self.clock.now + timedelta(minutes=5))
        self.assertIsNone(self.queue.claim_next("w1"))
        self.clock.advance(minutes=6)
        self.assertIsNotNone(self.queue.claim_next("w1"))

    def test_no_double_claim_under_threads(self) -> None:
        for i in range(50):
            self.queue.enqueue("t", {"i": i})
        claimed: list = []
        lock = threading.Lock()

        def worker(name: str) -> None:
            while True:
                job = self.queue.claim_next(name)
                if job is None:
                    return
                with lock:
                    claimed.append(job["id"])

        threads = [threading.Thread(target=worker, args=(f"w{i}",)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(len(claimed), 50)
        self.assertEqual(len(set(claimed)), 50)

    def test_complete_requires_running(self) -> None:
        job = self.queue.enqueue("t", {})
        with self.assertRaises(JobQueueError) as ctx:
            self.queue.complete(job["id"], {})
        self.assertEqual(ctx.exception.code, "JOB_NOT_RUNNING")
        self.queue.claim_next("w1")
        done = self.queue.complete(job["id"], {"n": 1})
        self.assertEqual(done["status"], "succeeded")
        self.assertIsNone(done["locked_at"])
        self.assertIsNone(done["lock_owner"])
        self.assertEqual(done["result"], {"n": 1})

    def test_max_attempts_exhausts_to_failed(self) -> None:
        dead = []
        self.bus.subscribe(JOB_DEAD_LETTER, dead.append)
        job = self.queue.enqueue("t", {}, max_attempts=3)
        for _ in range(2):
            self.assertIsNotNone(self.queue.claim_next("w1"))
            retried = self.queue.fail(job["id"], RuntimeError("boom"))
            self.assertEqual(retried["status"], "queued")
            self.assertIsNone(retried["lock_owner"])
        self.queue.claim_next("w1")
        final = self.queue.fail(job["id"], RuntimeError("boom"))
        self.assertEqual(final["status"], "failed")
        self.assertEqual(final["attempts"], 3)
        self.assertIsNotNone(final["dead_lettered_at"])
        self.assertIsNone(self.queue.claim_next("w1"))
        self.assertEqual(len(dead), 1)
        self.assertEqual(dead[0]["payload"]["job_id"], job["id"])

    def test_non_retryable_fails_at_once(self) -> None:
        job = self.queue.enqueue("t", {}, max_attempts=5)
        self.queue.claim_next("w1")
        failed = self.queue.fail(job["id"], "bad payload", retryable=False)
        self.assertEqual(failed["status"], "failed")
        self.assertEqual(failed["error_message"], "bad payload")

    def test_fail_on_terminal_is_noop(self) -> None:
        job = self.queue.enqueue("t", {})
        self.queue.claim_next("w1")
        self.queue.complete(job["id"], {})
        again = self.queue.fail(job["id"], "late")
        self.assertEqual(again["status"], "succeeded")

    def test_exponential_backoff_delays_retry(self) -> None:
        queue = JobQueue(self.store, backoff=BackoffPolicy(), clock=self.clock)
        job = queue.enqueue("t", {})
        queue.claim_next("w1")
        retried = queue.fail(job["id"], "boom")
        self.assertEqual(retried["run_after"], "2026-01-05T12:01:00Z")
        self.assertIsNone(queue.claim_next("w1"))
        self.clock.advance(seconds=61)
        self.assertIsNotNone(queue.claim_next("w1"))

    def test_backoff_policy_curve(self) -> None:
        policy = BackoffPolicy(kind="exponential", base_seconds=60, max_seconds=3600)
        self.assertEqual([policy.delay_seconds(n) for n in (1, 2, 3, 7, 8)], [60, 120, 240, 3600, 3600])
        self.assertEqual(BackoffPolicy(kind="fixed", base_seconds=30).delay_seconds(9), 30)
        with self.assertRaises(ValueError):
            BackoffPolicy(kind="linear")

    def test_cancel_queued_is_immediate(self) -> None:
        job = self.queue.enqueue("t", {})
        canceled = self.queue.cancel(job["id"])
        self.assertEqual(canceled["status"], "canceled")
        self.assertIsNotNone(canceled["canceled_at"])
        self.assertIsNone(self.queue.claim_next("w1"))

    def test_cancel_running_is_cooperative(self) -> None:
        job = self.queue.enqueue("t", {})
        self.queue.claim_next("w1")
        requested = self.queue.cancel(job["id"])
        self.assertEqual(requested["status"], "running")
        self.assertIsNotNone(requested["cancel_requested_at"])
        self.assertTrue(self.queue.is_cancel_requested(job["id"]))
        done = self.queue.mark_canceled(job["id"])
        self.assertEqual(done["status"], "canceled")
        self.assertIsNone(done["lock_owner"])

    def test_cancel_terminal_is_noop(self) -> None:
        job = self.queue.enqueue("t", {})
        self.queue.claim_next("w1")
        self.queue.complete(job["id"], {})
        self.assertEqual(self.queue.cancel(job["id"])["status"], "succeeded")

    def test_unknown_job_raises(self) -> None:
        with self.assertRaises(JobQueueError) as ctx:
            self.queue.cancel("missing")
        self.assertEqual(ctx.exception.code, "JOB_NOT_FOUND")

    def test_recover_stale_only_touches_old_leases(self) -> None:
        old = self.queue.enqueue("t", {}, priority=1)
        young = self.queue.enqueue("t", {})
        self.queue.claim_next("w1")
        self.clock.advance(minutes=20)
        self.queue.claim_next("w2")
        self.clock.advance(minutes=15)
        recovered = self.queue.recover_stale(30)
        self.assertEqual(recovered, [old["id"]])
        self.assertEqual(self.store.get(old["id"])["status"], "queued")
        self.assertIsNone(self.store.get(old["id"])["lock_owner"])
        self.assertEqual(self.store.get(young["id"])["status"], "running")
        messages = [e["message"] for e in self.queue.get_detail(old["id"])["events"]]
        self.assertIn("recovered stale lease", messages)

    def test_cancel_requested_then_retryable_fail_ends_canceled(self) -> None:
        job = self.queue.enqueue("t", {}, max_attempts=3)
        self.queue.claim_next("w1")
        self.queue.cancel(job["id"])
        result = self.queue.fail(job["id"], "boom")
        self.assertEqual(result["status"], "canceled")
        self.assertIsNotNone(result["canceled_at"])
        self.assertIsNotNone(result["finished_at"])
        self.assertIsNone(result["lock_owner"])
        self.assertIsNone(self.queue.claim_next("w2"))
        messages = [e["message"] for e in self.queue.get_detail(job["id"])["events"]]
        self.assertIn("canceled (requested) instead of retry", messages)
        self.assertFalse(any(m.startswith("retry scheduled") for m in messages))

    def test_recover_stale_cancels_job_with_pending_cancel(self) -> None:
        job = self.queue.enqueue("t", {})
        self.queue.claim_next("w1")
        self.queue.cancel(job["id"])
        self.clock.advance(minutes=60)
        recovered = self.queue.recover_stale(30)
        self.assertEqual(recovered, [job["id"]])
        stored = self.store.get(job["id"])
        self.assertEqual(stored["status"], "canceled")
        self.assertIsNotNone(stored["canceled_at"])
        self.assertIsNone(stored["lock_owner"])
        self.assertIsNone(self.queue.claim_next("w2"))
        self.assertEqual(self.queue.summary()["queued"], 0)
        messages = [e["message"] for e in self.queue.get_detail(job["id"])["events"]]
        self.assertIn("canceled (requested) on stale lease", messages)

    def test_payload_over_size_limit_rejected(self) -> None:
        queue = JobQueue(self.store, clock=self.clock, max_payload_bytes=64)
        with self.assertRaises(JobQueueError) as ctx:
            queue.enqueue("t", {"blob": "x" * 100})
        self.assertEqual(ctx.exception.code, "PAYLOAD_TOO_LARGE")
        self.assertEqual(self.store.list(), [])

    def test_payload_error_names_offending_path(self) -> None:
        with self.assertRaises(JobQueueError) as ctx:
            self.queue.enqueue("t", {"meta": {"score": float("nan")}})
        self.assertEqual(ctx.exception.code, "PAYLOAD_NUMBER_INVALID")
        self.assertIn("$.meta.score", ctx.exception.message)

    def test_timeout_seconds_stored_and_validated(self) -> None:
        job = self.queue.enqueue("t", {}, timeout_seconds=5)
        self.assertEqual(self.store.get(job["id"])["timeout_seconds"], 5)
        self.assertIsNone(self.queue.enqueue("u", {})["timeout_seconds"])
        for bad in (0, -1, True, "10"):
            with self.assertRaises(JobQueueError) as ctx:
                self.queue.enqueue("t", {}, timeout_seconds=bad)
            self.assertEqual(ctx.exception.code, "TIMEOUT_INVALID")

    def test_requeue_failed_job(self) -> None:
        job = self.queue.enqueue("t", {}, max_attempts=1)
        self.queue.claim_next("w1")
        self.queue.fail(job["id"], "boom")
        requeued = self.queue.requeue(job["id"])
        self.assertEqual(requeued["status"], "queued")
        self.assertEqual(requeued["attempts"], 0)
        with self.assertRaises(JobQueueError):
            self.queue.requeue(job["id"])

    def test_every_transition_writes_an_event(self) -> None:
        job = self.queue.enqueue("t", {})
        self.queue.claim_next("w1")
        self.queue.fail(job["id"], "boom")
        self.queue.claim_next("w1")
        self.queue.complete(job["id"], {})
        messages = [e["message"] for e in self.queue.get_detail(job["id"])["events"]]
        self.assertEqual(messages[0], "enqueued")
        self.assertEqual(messages[1], "claimed")
        self.assertTrue(messages[2].startswith("retry scheduled"))
        self.assertEqual(messages[-1], "succeeded")

    def test_summary_counts_every_status(self) -> None:
        self.queue.enqueue("t", {})
        job = self.queue.enqueue("t", {})
        self.queue.cancel(job["id"])
        summary = self.queue.summary()
        self.assertEqual(summary["queued"], 1)
        self.assertEqual(summary["canceled"], 1)
        self.assertEqual(summary["running"], 0)


if __name__ == "__main__":
    unittest.main()
