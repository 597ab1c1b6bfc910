from __future__ import annotations

import os
import queue
import sys
import threading
import time
import uuid
import logging
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


_load_env_file(ROOT / "app" / ".env")

from app.services import Services, build_services
from job_queue import DEFAULT_STALE_MINUTES, JobQueueError

logger = logging.getLogger("client_engine.worker")

JOB_TIMEOUT_SECONDS = float(os.getenv("JOB_TIMEOUT_SECONDS", "120"))


class JobCanceled(Exception):
    pass


class NonRetryableJobError(Exception):
    pass


class JobTimedOut(Exception):
    pass


def _payload(job: dict) -> dict:
    payload = job.get("payload") or {}
    if not isinstance(payload, dict):
        raise NonRetryableJobError("payload must be an object")
    return payload


def _handle_dispatch_pending(services: Services, job: dict, stop: threading.Event) -> dict:
    return services.notifications.dispatch_pending(int(_payload(job).get("limit") or 20))


def _handle_evaluate_escalations(services: Services, job: dict, stop: threading.Event) -> dict:
    return services.notifications.evaluate_escalation_rules(int(_payload(job).get("limit") or 50))


def _handle_pipeline_run(services: Services, job: dict, stop: threading.Event) -> dict:
    payload = _payload(job)
    lead_id = payload.get("lead_id")
    if not lead_id:
        raise NonRetryableJobError("Missing lead_id")
    result = services.pipeline.run_if_eligible(
        lead_id,
        payload.get("trigger") or "job",
        should_stop=lambda: stop.is_set() or services.jobs.is_cancel_requested(job["id"]),
    )
    if result.get("error") == "canceled":
        raise JobCanceled(job["id"])
    if result.get("failed_step"):
        raise RuntimeError(f"pipeline step {result['failed_step']} failed: {result.get('error')}")
    return result


def _handle_pipeline_run_eligible(services: Services, job: dict, stop: threading.Event) -> dict:
    payload = _payload(job)
    result = services.pipeline.run_eligible_batch(int(payload.get("limit") or 20), payload.get("trigger") or "job")
    return {"ran": result["ran"], "skipped": result["skipped"], "errors": result["errors"]}


def _handle_recover_stale(services: Services, job: dict, stop: threading.Event) -> dict:
    minutes = float(_payload(job).get("threshold_minutes") or os.getenv("JOB_STALE_MINUTES", DEFAULT_STALE_MINUTES))
    return {"recovered": services.jobs.recover_stale(minutes)}


def _handle_enqueue_due_schedules(services: Services, job: dict, stop: threading.Event) -> dict:
    return services.schedules.enqueue_due(int(_payload(job).get("limit") or 20))


JOB_HANDLERS = {
    "notifications.dispatch_pending": _handle_dispatch_pending,
    "notifications.evaluate_escalations": _handle_evaluate_escalations,
    "pipeline.run": _handle_pipeline_run,
    "pipeline.run_eligible": _handle_pipeline_run_eligible,
    "jobs.recover_stale": _handle_recover_stale,
    "jobs.enqueue_due_schedules": _handle_enqueue_due_schedules,
}


def _run_with_timeout(handler, services: Services, job: dict, timeout_seconds: float) -> dict:
    """Run ``handler`` on a daemon thread; past the deadline, signal it to stop and raise."""
    stop = threading.Event()
    results: queue.Queue = queue.Queue()

    def _target() -> None:
        try:
            results.put(("ok", handler(services, job, stop)))
        except BaseException as exc:
            results.put(("error", exc))

    thread = threading.Thread(target=_target, daemon=True, name=f"job-{job['id']}")
    thread.start()
    try:
        status, value = results.get(timeout=timeout_seconds)
    except queue.Empty:
        stop.set()
        raise JobTimedOut(f"Job timed out after {timeout_seconds:g}s") from None
    if status == "error":
        raise value
    return value


def run_job(services: Services, job: dict) -> str:
    """Execute one claimed job and record its outcome; returns the resulting status."""
    queue_ = services.jobs
    job_id = job["id"]
    if queue_.is_cancel_requested(job_id):
        queue_.mark_canceled(job_id)
        return "canceled"
    handler = JOB_HANDLERS.get(job.get("job_type"))
    timeout_seconds = float(job.get("timeout_seconds") or JOB_TIMEOUT_SECONDS)
    try:
        if handler is None:
            raise NonRetryableJobError(f"Unknown job type: {job.get('job_type')}")
        result = _run_with_timeout(handler, services, job, timeout_seconds)
    except JobCanceled:
        queue_.mark_canceled(job_id)
        return "canceled"
    except NonRetryableJobError as exc:
        return queue_.fail(job_id, exc, retryable=False, error_code="NON_RETRYABLE")["status"]
    except JobTimedOut as exc:
        logger.warning("job_timed_out job_id=%s job_type=%s timeout_s=%s", job_id, job.get("job_type"), timeout_seconds)
        return queue_.fail(job_id, exc, error_code="TIMEOUT")["status"]
    except Exception as exc:
        logger.exception("job_handler_failed job_id=%s job_type=%s", job_id, job.get("job_type"))
        return queue_.fail(job_id, exc)["status"]
    try:
        return queue_.complete(job_id, result)["status"]
    except JobQueueError as exc:
        # lease was recovered or the job canceled while the handler ran
        logger.warning("job_complete_rejected job_id=%s code=%s", job_id, exc.code)
        return (queue_.store.get(job_id) or {}).get("status", "unknown")


def run_once(services: Services, worker_id: str, batch_size: int = 5) -> dict:
    jobs = services.jobs.claim_batch(worker_id, batch_size)
    outcomes: dict = {"claimed": len(jobs)}
    for job in jobs:
        status = run_job(services, job)
        outcomes[status] = outcomes.get(status, 0) + 1
    return outcomes


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    worker_id = os.getenv("WORKER_ID", str(uuid.uuid4()))
    poll_ms = int(os.getenv("WORKER_POLL_MS", "1000"))
    batch_size = int(os.getenv("WORKER_BATCH", "5"))
    stale_minutes = float(os.getenv("JOB_STALE_MINUTES", str(DEFAULT_STALE_MINUTES)))
    recover_every_s = float(os.getenv("WORKER_RECOVER_EVERY_S", "60"))
    schedules_every_s = float(os.getenv("WORKER_SCHEDULES_EVERY_S", "30"))
    services = build_services(use_db=os.getenv("USE_DB", "").strip() == "1")
    logger.info("worker_started worker_id=%s batch=%s poll_ms=%s", worker_id, batch_size, poll_ms)

    last_recover = 0.0
    last_schedules = 0.0
    while True:
        if time.monotonic() - last_recover >= recover_every_s:
            services.jobs.recover_stale(stale_minutes)
            last_recover = time.monotonic()
        if time.monotonic() - last_schedules >= schedules_every_s:
            services.schedules.enqueue_due()
            last_schedules = time.monotonic()
        outcomes = run_once(services, worker_id, batch_size)
        if not outcomes["claimed"]:
            time.sleep(poll_ms / 1000)


if __name__ == "__main__":
    main()
