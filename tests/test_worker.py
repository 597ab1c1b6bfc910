import os
import sys
import threading
import time
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.services import build_services
from app.worker import JobTimedOut, _run_with_timeout, run_job, run_once
from job_queue import BackoffPolicy


class _Steps:
    def __init__(self) -> None:
        self.services = None
        self.fail_on: str | None = None
        self.on_enrich = None

    def _step(self, name: str, lead_id: str, updates: dict | None = None, artifact_type: str | None = None):
        if self.fail_on == name:
            raise RuntimeError(f"{name} failed")
        store = self.services.pipeline_store
        if updates:
            store.update_lead(lead_id, updates)
        if artifact_type:
            return store.add_artifact({"lead_id": lead_id, "type": artifact_type, "title": name})["id"]
        return None

    def runners(self) -> dict:
        def enrich(lead_id: str):
            if self.on_enrich:
                self.on_enrich()
            return self._step("enrich", lead_id, {"status": "ENRICHED"}, "notes")

        return {
            "enrich": enrich,
            "score": lambda lead_id: self._step("score", lead_id, {"status": "SCORED", "scored_at": "2026-01-05T12:00:00Z"}),
            "position": lambda lead_id: self._step("position", lead_id, None, "positioning"),
            "propose": lambda lead_id: self._step("propose", lead_id, None, "proposal"),
        }


class TestWorker(unittest.TestCase):
    def setUp(self) -> None:
        self.steps = _Steps()
        self.services = build_services(step_runners=self.steps.runners(), backoff=BackoffPolicy(kind="fixed", base_seconds=0))
        self.steps.services = self.services
        self.lead = self.services.pipeline_store.create_lead({"title": "Acme"})

    def _claim(self, job_type: str, payload: dict | None = None, **kwargs) -> dict:
        job = self.services.jobs.enqueue(job_type, payload or {}, **kwargs)
        claimed = self.services.jobs.claim_next("w-test")
        self.assertEqual(claimed["id"], job["id"])
        return claimed

    def test_pipeline_job_succeeds(self) -> None:
        job = self._claim("pipeline.run", {"lead_id": self.lead["id"]})
        self.assertEqual(run_job(self.services, job), "succeeded")
        stored = self.services.job_store.get(job["id"])
        self.assertEqual(stored["result"]["steps_run"], ["enrich", "score", "position", "propose"])
        self.assertEqual(len(self.services.pipeline.list_runs(self.lead["id"])), 1)

    def test_failed_step_schedules_retry(self) -> None:
        self.steps.fail_on = "score"
        job = self._claim("pipeline.run", {"lead_id": self.lead["id"]})
        self.assertEqual(run_job(self.services, job), "queued")
        stored = self.services.job_store.get(job["id"])
        self.assertEqual(stored["attempts"], 1)
        self.assertIn("score", stored["error_message"])
        # the failed run raised an in-app notification through the bus
        events = self.services.notifications.list_events()
        self.assertEqual(events[0]["event_key"], "pipeline.run_failed")

    def test_unknown_job_type_is_not_retried(self) -> None:
        job = self._claim("mystery.job", max_attempts=5)
        self.assertEqual(run_job(self.services, job), "failed")
        stored = self.services.job_store.get(job["id"])
        self.assertEqual(stored["error_code"], "NON_RETRYABLE")
        self.assertEqual(stored["attempts"], 1)

    def test_missing_lead_id_is_not_retried(self) -> None:
        job = self._claim("pipeline.run", {})
        self.assertEqual(run_job(self.services, job), "failed")
        self.assertEqual(self.services.job_store.get(job["id"])["error_message"], "Missing lead_id")

    def test_cancel_requested_before_start(self) -> None:
        job = self._claim("pipeline.run", {"lead_id": self.lead["id"]})
        self.services.jobs.cancel(job["id"])
        self.assertEqual(run_job(self.services, job), "canceled")
        self.assertEqual(self.services.pipeline.list_runs(self.lead["id"]), [])

    def test_cancel_between_steps(self) -> None:
        job = self._claim("pipeline.run", {"lead_id": self.lead["id"]})
        self.steps.on_enrich = lambda: self.services.jobs.cancel(job["id"])
        self.assertEqual(run_job(self.services, job), "canceled")
        run = self.services.pipeline.list_runs(self.lead["id"])[0]
        self.assertEqual(run["error"], "canceled")
        self.assertEqual([s["step_name"] for s in run["steps"]], ["enrich"])

    def test_dispatch_job(self) -> None:
        self.services.notifications.notify("lead.stuck", severity="info", source_type="lead", source_id=self.lead["id"])
        job = self._claim("notifications.dispatch_pending", {"limit": 5})
        self.assertEqual(run_job(self.services, job), "succeeded")
        self.assertEqual(self.services.job_store.get(job["id"])["result"], {"sent": 1, "failed": 0, "skipped": 0})
        self.assertEqual(self.services.notifications.list_inbox()["unread"], 1)

    def test_timed_out_job_is_retried_and_its_handler_told_to_stop(self) -> None:
        gate = threading.Event()
        self.steps.on_enrich = lambda: gate.wait(5)
        job = self._claim("pipeline.run", {"lead_id": self.lead["id"]}, timeout_seconds=0.2)
        started = time.monotonic()
        self.assertEqual(run_job(self.services, job), "queued")
        self.assertLess(time.monotonic() - started, 4)
        stored = self.services.job_store.get(job["id"])
        self.assertEqual(stored["error_code"], "TIMEOUT")
        self.assertIn("timed out after 0.2s", stored["error_message"])
        self.assertEqual(stored["attempts"], 1)

        gate.set()
        deadline = time.monotonic() + 5
        while self.services.locks.is_locked(self.lead["id"]) and time.monotonic() < deadline:
            time.sleep(0.02)
        run = self.services.pipeline.list_runs(self.lead["id"])[0]
        self.assertEqual(run["status"], "failed")
        self.assertEqual(run["error"], "canceled")

    def test_run_with_timeout_sets_stop_event(self) -> None:
        seen = []

        def slow(services, job, stop):
            seen.append(stop)
            stop.wait(5)
            return {}

        with self.assertRaises(JobTimedOut):
            _run_with_timeout(slow, self.services, {"id": "j1"}, 0.1)
        self.assertTrue(seen[0].is_set())
        self.assertEqual(_run_with_timeout(lambda s, j, stop: {"ok": True}, self.services, {"id": "j2"}, 1), {"ok": True})

    def test_run_once_counts_outcomes(self) -> None:
        self.services.jobs.enqueue("pipeline.run", {"lead_id": self.lead["id"]})
        self.services.jobs.enqueue("mystery.job", {})
        outcomes = run_once(self.services, "w-test", batch_size=5)
        self.assertEqual(outcomes, {"claimed": 2, "succeeded": 1, "failed": 1})
        self.assertEqual(run_once(self.services, "w-test"), {"claimed": 0})


if __name__ == "__main__":
    unittest.main()
