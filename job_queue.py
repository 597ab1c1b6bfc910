"""Durable job queue: enqueue, lease-based claim, retry, cancel, stale recovery.

Execution is at-least-once. A worker holds a lease (``lock_owner`` +
``locked_at``) while a job is ``running``; ``recover_stale`` hands leases older
than the threshold back to the queue, so handlers must be idempotent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from client_engine.payloads import DEFAULT_MAX_BYTES, PayloadError, validate_payload
from event_bus import JOB_DEAD_LETTER, EventBus, make_event

logger = logging.getLogger("client_engine.jobs")

JOB_STATUSES = ("queued", "running", "succeeded", "failed", "canceled")
TERMINAL_STATUSES = frozenset({"succeeded", "failed", "canceled"})
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_STALE_MINUTES = 30
_ERROR_MAX_CHARS = 1000


@dataclass
class JobQueueError(Exception):
    code: str
    message: str

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.code}: {self.message}"


@dataclass(frozen=True)
class BackoffPolicy:
    """Delay before a retried job becomes eligible again.

    ``exponential``: base * 2 ** (attempts - 1), capped at ``max_seconds``.
    ``fixed``: always ``base_seconds``.
    """

    kind: str = "exponential"
    base_seconds: int = 60
    max_seconds: int = 3600

    def __post_init__(self) -> None:
        if self.kind not in ("exponential", "fixed"):
            raise ValueError(f"Unknown backoff kind: {self.kind}")
        if self.base_seconds < 0 or self.max_seconds < 0:
            raise ValueError("backoff seconds must be >= 0")

    def delay_seconds(self, attempts: int) -> int:
        if self.kind == "fixed":
            return min(self.base_seconds, self.max_seconds)
        return min(self.base_seconds * (2 ** max(0, attempts - 1)), self.max_seconds)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _truncate(text: str) -> str:
    return text if len(text) <= _ERROR_MAX_CHARS else text[: _ERROR_MAX_CHARS - 3] + "..."


class JobQueue:
    def __init__(
        self,
        store: Any,
        bus: EventBus | None = None,
        backoff: BackoffPolicy | None = None,
        clock: Callable[[], datetime] = _utcnow,
        max_payload_bytes: int | None = DEFAULT_MAX_BYTES,
    ) -> None:
        self.store = store
        self.bus = bus
        self.backoff = backoff or BackoffPolicy()
        self._clock = clock
        self.max_payload_bytes = max_payload_bytes

    def _now(self) -> str:
        return _iso(self._clock())

    def _require(self, job_id: str) -> dict:
        job = self.store.get(job_id)
        if not job:
            raise JobQueueError("JOB_NOT_FOUND", f"Job not found: {job_id}")
        return job

    def enqueue(
        self,
        job_type: str,
        payload: dict | None = None,
        *,
        priority: int = 0,
        idempotency_key: str | None = None,
        dedupe_key: str | None = None,
        run_after: datetime | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        source_type: str | None = None,
        source_id: str | None = None,
        timeout_seconds: float | None = None,
    ) -> dict:
        if not isinstance(job_type, str) or not job_type.strip():
            raise JobQueueError("JOB_TYPE_INVALID", "job_type must be a non-empty string")
        if payload is None:
            payload = {}
        try:
            validate_payload(payload, max_bytes=self.max_payload_bytes)
        except PayloadError as exc:
            raise JobQueueError(exc.code, str(exc)) from exc
        if isinstance(priority, bool) or not isinstance(priority, int):
            raise JobQueueError("PRIORITY_INVALID", "priority must be an integer")
        if isinstance(max_attempts, bool) or not isinstance(max_attempts, int) or max_attempts < 1:
            raise JobQueueError("MAX_ATTEMPTS_INVALID", "max_attempts must be an integer >= 1")
        for name, value in (("idempotency_key", idempotency_key), ("dedupe_key", dedupe_key)):
            if value is not None and (not isinstance(value, str) or not value):
                raise JobQueueError("KEY_INVALID", f"{name} must be a non-empty string")
        if run_after is not None and not isinstance(run_after, datetime):
            raise JobQueueError("RUN_AFTER_INVALID", "run_after must be a datetime")
        if timeout_seconds is not None and (
            isinstance(timeout_seconds, bool) or not isinstance(timeout_seconds, (int, float)) or timeout_seconds <= 0
        ):
            raise JobQueueError("TIMEOUT_INVALID", "timeout_seconds must be a number > 0")

        job, created = self.store.insert(
            {
                "job_type": job_type.strip(),
                "payload": payload,
                "priority": priority,
                "idempotency_key": idempotency_key,
                "dedupe_key": dedupe_key,
                "run_after": _iso(run_after) if run_after else self._now(),
                "max_attempts": max_attempts,
                "source_type": source_type,
                "source_id": source_id,
                "timeout_seconds": timeout_seconds,
            }
        )
        if created:
            self.store.add_event(job["id"], "info", "enqueued", {"job_type": job["job_type"], "priority": priority})
            logger.info("job_enqueued job_id=%s job_type=%s priority=%s", job["id"], job["job_type"], priority)
        else:
            logger.info(
                "job_enqueue_collapsed job_id=%s job_type=%s idempotency_key=%s dedupe_key=%s",
                job["id"],
                job["job_type"],
                idempotency_key,
                dedupe_key,
            )
        return job

    def claim_batch(self, worker_id: str, limit: int = 1) -> list[dict]:
        if not isinstance(worker_id, str) or not worker_id:
            raise JobQueueError("WORKER_ID_INVALID", "worker_id must be a non-empty string")
        jobs = self.store.claim(worker_id, max(1, int(limit)), self._now())
        for job in jobs:
            self.store.add_event(job["id"], "info", "claimed", {"worker_id": worker_id})
            logger.info("job_claimed job_id=%s job_type=%s worker_id=%s", job["id"], job["job_type"], worker_id)
        return jobs

    def claim_next(self, worker_id: str) -> dict | None:
        jobs = self.claim_batch(worker_id, 1)
        return jobs[0] if jobs else None

    def complete(self, job_id: str, result: dict | None = None) -> dict:
        self._require(job_id)
        now = self._now()
        updated = self.store.update(
            job_id,
            {
                "status": "succeeded",
                "result": result or {},
                "finished_at": now,
                "locked_at": None,
                "lock_owner": None,
            },
            expected_status=("running",),
        )
        if not updated:
            raise JobQueueError("JOB_NOT_RUNNING", f"Job {job_id} is not running")
        self.store.add_event(job_id, "info", "succeeded", {"result_keys": sorted((result or {}).keys())})
        logger.info("job_succeeded job_id=%s job_type=%s", job_id, updated["job_type"])
        return updated

    def fail(self, job_id: str, error: str | BaseException, *, retryable: bool = True, error_code: str | None = None) -> dict:
        job = self._require(job_id)
        if job["status"] in TERMINAL_STATUSES:
            return job
        message = _truncate(str(error) or error.__class__.__name__)
        if error_code is None:
            error_code = type(error).__name__ if isinstance(error, BaseException) else "Error"
        attempts = int(job.get("attempts") or 0) + 1
        max_attempts = int(job.get("max_attempts") or DEFAULT_MAX_ATTEMPTS)
        now_dt = self._clock()
        now = _iso(now_dt)
        common = {
            "attempts": attempts,
            "error_message": message,
            "error_code": error_code,
            "locked_at": None,
            "lock_owner": None,
        }

        if retryable and attempts < max_attempts:
            delay = self.backoff.delay_seconds(attempts)
            run_after = _iso(now_dt + timedelta(seconds=delay))
            updated = self.store.update(
                job_id,
                {**common, "status": "queued", "run_after": run_after},
                expected_status=("queued", "running"),
            )
            if not updated:
                return self._require(job_id)
            if updated.get("cancel_requested_at"):
                # claim skips cancel-requested jobs, so a retry would never run
                return self._cancel_requested_queued(job_id, message)
            self.store.add_event(
                job_id,
                "warn",
                f"retry scheduled (attempt {attempts}/{max_attempts})",
                {"error": message, "run_after": run_after},
            )
            logger.warning(
                "job_retry_scheduled job_id=%s attempts=%s max_attempts=%s run_after=%s error=%s",
                job_id,
                attempts,
                max_attempts,
                run_after,
                message,
            )
            return updated

        updated = self.store.update(
            job_id,
            {**common, "status": "failed", "finished_at": now, "dead_lettered_at": now},
            expected_status=("queued", "running"),
        )
        if not updated:
            return self._require(job_id)
        reason = "max attempts" if retryable else "non-retryable"
        self.store.add_event(job_id, "error", f"dead-lettered ({reason})", {"error": message})
        logger.error("job_dead_lettered job_id=%s job_type=%s attempts=%s error=%s", job_id, updated["job_type"], attempts, message)
        if self.bus is not None:
            self.bus.publish(
                make_event(
                    JOB_DEAD_LETTER,
                    {
                        "job_id": job_id,
                        "job_type": updated["job_type"],
                        "attempts": attempts,
                        "error": message,
                    },
                    source="job_queue",
                )
            )
        return updated

    def cancel(self, job_id: str) -> dict:
        job = self._require(job_id)
        now = self._now()
        if job["status"] == "queued":
            updated = self.store.update(
                job_id,
                {"status": "canceled", "canceled_at": now, "finished_at": now, "locked_at": None, "lock_owner": None},
                expected_status=("queued",),
            )
            if updated:
                self.store.add_event(job_id, "info", "canceled")
                logger.info("job_canceled job_id=%s", job_id)
                return updated
            # claimed between read and write; fall through as a running job
            job = self._require(job_id)
        if job["status"] == "running":
            updated = self.store.update(job_id, {"cancel_requested_at": now}, expected_status=("running",))
            if updated:
                self.store.add_event(job_id, "info", "cancel requested", {"lock_owner": updated.get("lock_owner")})
                logger.info("job_cancel_requested job_id=%s lock_owner=%s", job_id, updated.get("lock_owner"))
                return updated
            return self._require(job_id)
        return job

    def is_cancel_requested(self, job_id: str) -> bool:
        job = self.store.get(job_id)
        return bool(job and job.get("cancel_requested_at"))

    def mark_canceled(self, job_id: str) -> dict:
        """Worker side of cooperative cancellation: the lease holder stops the job."""
        self._require(job_id)
        now = self._now()
        updated = self.store.update(
            job_id,
            {"status": "canceled", "canceled_at": now, "finished_at": now, "locked_at": None, "lock_owner": None},
            expected_status=("running",),
        )
        if not updated:
            raise JobQueueError("JOB_NOT_RUNNING", f"Job {job_id} is not running")
        self.store.add_event(job_id, "info", "canceled (requested)")
        logger.info("job_canceled job_id=%s requested=1", job_id)
        return updated

    def _cancel_requested_queued(self, job_id: str, error: str) -> dict:
        now = self._now()
        updated = self.store.update(
            job_id,
            {"status": "canceled", "canceled_at": now, "finished_at": now},
            expected_status=("queued",),
        )
        if not updated:
            return self._require(job_id)
        self.store.add_event(job_id, "info", "canceled (requested) instead of retry", {"error": error})
        logger.info("job_canceled job_id=%s requested=1 retry_dropped=1", job_id)
        return updated

    def recover_stale(self, threshold_minutes: float = DEFAULT_STALE_MINUTES) -> list[str]:
        """Hand expired leases back to the queue; jobs with a pending cancel end as ``canceled``."""
        if not isinstance(threshold_minutes, (int, float)) or threshold_minutes <= 0:
            raise JobQueueError("THRESHOLD_INVALID", "threshold_minutes must be > 0")
        now_dt = self._clock()
        cutoff = _iso(now_dt - timedelta(minutes=threshold_minutes))
        recovered = self.store.requeue_stale(cutoff, _iso(now_dt))
        for job in recovered:
            if job["status"] == "canceled":
                self.store.add_event(job["id"], "info", "canceled (requested) on stale lease", {"threshold_minutes": threshold_minutes})
                logger.info("job_canceled job_id=%s requested=1 stale=1", job["id"])
                continue
            self.store.add_event(job["id"], "warn", "recovered stale lease", {"threshold_minutes": threshold_minutes})
            logger.warning("job_recovered_stale job_id=%s job_type=%s", job["id"], job["job_type"])
        return [job["id"] for job in recovered]

    def requeue(self, job_id: str) -> dict:
        """Operator retry of a terminal failed or canceled job."""
        self._require(job_id)
        updated = self.store.update(
            job_id,
            {
                "status": "queued",
                "run_after": self._now(),
                "attempts": 0,
                "error_message": None,
                "error_code": None,
                "cancel_requested_at": None,
                "canceled_at": None,
                "finished_at": None,
                "dead_lettered_at": None,
            },
            expected_status=("failed", "canceled"),
        )
        if not updated:
            raise JobQueueError("JOB_NOT_RETRYABLE", f"Job {job_id} is not failed or canceled")
        self.store.add_event(job_id, "info", "requeued by operator")
        return updated

    def get_detail(self, job_id: str) -> dict:
        job = self._require(job_id)
        return {"job": job, "events": self.store.list_events(job_id)}

    def list(self, status: str | None = None, job_type: str | None = None, limit: int = 200) -> list[dict]:
        if status is not None and status not in JOB_STATUSES:
            raise JobQueueError("STATUS_INVALID", f"Unknown status: {status}")
        return self.store.list(status=status, job_type=job_type, limit=limit)

    def summary(self) -> dict:
        counts = self.store.count_by_status()
        return {status: int(counts.get(status, 0)) for status in JOB_STATUSES}
