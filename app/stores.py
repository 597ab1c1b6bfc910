"""In-memory stores for single-process runs and tests.

Each store guards its state with one lock, so conditional updates and claims
are atomic against other threads in the same process. Records go in and out
as deep copies.
"""

from __future__ import annotations

import copy
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List

TERMINAL_JOB_STATUSES = {"succeeded", "failed", "canceled"}


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class MemoryJobStore:
    def __init__(self) -> None:
        self._jobs: Dict[str, dict] = {}
        self._events: Dict[str, List[dict]] = {}
        self._lock = threading.Lock()

    def insert(self, job: dict) -> tuple[dict, bool]:
        """Insert unless a live job already holds the idempotency or dedupe key."""
        record = copy.deepcopy(job)
        with self._lock:
            idem = record.get("idempotency_key")
            if idem:
                for existing in self._jobs.values():
                    if existing.get("idempotency_key") == idem and existing.get("status") not in TERMINAL_JOB_STATUSES:
                        return copy.deepcopy(existing), False
            dedupe = record.get("dedupe_key")
            if dedupe:
                for existing in self._jobs.values():
                    if (
                        existing.get("dedupe_key") == dedupe
                        and existing.get("job_type") == record.get("job_type")
                        and existing.get("status") == "queued"
                    ):
                        return copy.deepcopy(existing), False
            now = _now()
            record.setdefault("id", str(uuid.uuid4()))
            record.setdefault("status", "queued")
            record.setdefault("priority", 0)
            record.setdefault("attempts", 0)
            record.setdefault("max_attempts", 3)
            record.setdefault("run_after", now)
            for key in (
                "result",
                "error_message",
                "error_code",
                "locked_at",
                "lock_owner",
                "cancel_requested_at",
                "canceled_at",
                "started_at",
                "finished_at",
                "dead_lettered_at",
                "timeout_seconds",
            ):
                record.setdefault(key, None)
            record.setdefault("created_at", now)
            record.setdefault("updated_at", now)
            self._jobs[record["id"]] = record
            return copy.deepcopy(record), True

    def get(self, job_id: str) -> dict | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    def list(self, status: str | None = None, job_type: str | None = None, limit: int = 200) -> list[dict]:
        with self._lock:
            items = list(self._jobs.values())
            if status:
                items = [j for j in items if j.get("status") == status]
            if job_type:
                items = [j for j in items if j.get("job_type") == job_type]
            items.sort(key=lambda j: j.get("created_at", ""), reverse=True)
            return [copy.deepcopy(j) for j in items[:limit]]

    def update(self, job_id: str, changes: dict, expected_status: Iterable[str] | None = None) -> dict | None:
        """Apply ``changes``; with ``expected_status`` only when the job is in one of those states."""
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return None
            if expected_status is not None and job.get("status") not in set(expected_status):
                return None
            job.update(copy.deepcopy(changes))
            job["updated_at"] = _now()
            return copy.deepcopy(job)

    def claim(self, worker_id: str, limit: int, now: str) -> list[dict]:
        with self._lock:
            ready = [
                job
                for job in self._jobs.values()
                if job.get("status") == "queued"
                and not job.get("cancel_requested_at")
                and (job.get("run_after") or "") <= now
            ]
            # priority desc, then oldest run_after
            ready.sort(key=lambda j: j.get("run_after") or "")
            ready.sort(key=lambda j: -int(j.get("priority") or 0))
            claimed = []
            for job in ready[:limit]:
                job["status"] = "running"
                job["lock_owner"] = worker_id
                job["locked_at"] = now
                job["started_at"] = now
                job["updated_at"] = now
                claimed.append(copy.deepcopy(job))
            return claimed

    def requeue_stale(self, cutoff: str, now: str) -> list[dict]:
        with self._lock:
            recovered = []
            for job in self._jobs.values():
                if job.get("status") != "running":
                    continue
                locked_at = job.get("locked_at")
                if not locked_at or locked_at >= cutoff:
                    continue
                if job.get("cancel_requested_at"):
                    job["status"] = "canceled"
                    job["canceled_at"] = now
                    job["finished_at"] = now
                else:
                    job["status"] = "queued"
                    job["run_after"] = now
                job["locked_at"] = None
                job["lock_owner"] = None
                job["updated_at"] = now
                recovered.append(copy.deepcopy(job))
            return recovered

    def count_by_status(self) -> dict:
        with self._lock:
            counts: Dict[str, int] = {}
            for job in self._jobs.values():
                counts[job["status"]] = counts.get(job["status"], 0) + 1
            return counts

    def list_dead_letters(self, limit: int = 20) -> list[dict]:
        with self._lock:
            items = [j for j in self._jobs.values() if j.get("status") == "failed" and j.get("dead_lettered_at")]
            items.sort(key=lambda j: j.get("dead_lettered_at") or "", reverse=True)
            return [copy.deepcopy(j) for j in items[:limit]]

    def list_running_before(self, cutoff: str, limit: int = 20) -> list[dict]:
        with self._lock:
            items = [
                j
                for j in self._jobs.values()
                if j.get("status") == "running" and (j.get("locked_at") or j.get("started_at") or "") < cutoff
            ]
            items.sort(key=lambda j: j.get("locked_at") or "")
            return [copy.deepcopy(j) for j in items[:limit]]

    def count_dead_letters(self) -> int:
        with self._lock:
            return sum(1 for j in self._jobs.values() if j.get("status") == "failed" and j.get("dead_lettered_at"))

    def list_finished_since(self, since: str, limit: int = 1000) -> list[dict]:
        with self._lock:
            items = [
                j
                for j in self._jobs.values()
                if j.get("status") in TERMINAL_JOB_STATUSES and (j.get("finished_at") or "") >= since
            ]
            items.sort(key=lambda j: j.get("finished_at") or "", reverse=True)
            return [copy.deepcopy(j) for j in items[:limit]]

    def add_event(self, job_id: str, level: str, message: str, data: dict | None = None) -> dict:
        entry = {
            "id": str(uuid.uuid4()),
            "job_id": job_id,
            "ts": _now(),
            "level": level,
            "message": message,
            "data": copy.deepcopy(data) if data else None,
        }
        with self._lock:
            self._events.setdefault(job_id, []).append(entry)
        return copy.deepcopy(entry)

    def list_events(self, job_id: str, limit: int = 200) -> list[dict]:
        with self._lock:
            items = self._events.get(job_id, [])
            return [copy.deepcopy(e) for e in items[:limit]]


class MemoryPipelineStore:
    """Leads, artifacts, pipeline runs and step runs.

    Leads and artifacts belong to the CRUD layer; they live here so the runner
    can be exercised without a database.
    """

    def __init__(self) -> None:
        self._leads: Dict[str, dict] = {}
        self._artifacts: Dict[str, dict] = {}
        self._runs: Dict[str, dict] = {}
        self._step_runs: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def create_lead(self, record: dict) -> dict:
        item = copy.deepcopy(record)
        item.setdefault("id", str(uuid.uuid4()))
        item.setdefault("status", "NEW")
        item.setdefault("scored_at", None)
        item.setdefault("project_id", None)
        item.setdefault("created_at", _now())
        item.setdefault("updated_at", _now())
        with self._lock:
            self._leads[item["id"]] = item
        return copy.deepcopy(item)

    def update_lead(self, lead_id: str, updates: dict) -> dict | None:
        with self._lock:
            item = self._leads.get(lead_id)
            if not item:
                return None
            item.update(copy.deepcopy(updates))
            item["updated_at"] = _now()
            return copy.deepcopy(item)

    def get_lead(self, lead_id: str) -> dict | None:
        with self._lock:
            lead = self._leads.get(lead_id)
            if not lead:
                return None
            out = copy.deepcopy(lead)
            out["artifacts"] = [copy.deepcopy(a) for a in self._artifacts.values() if a.get("lead_id") == lead_id]
            return out

    def list_candidate_leads(self, statuses: Iterable[str], limit: int = 20) -> list[dict]:
        allowed = set(statuses)
        with self._lock:
            items = [
                lead
                for lead in self._leads.values()
                if lead.get("status") in allowed and lead.get("status") != "REJECTED" and not lead.get("project_id")
            ]
            items.sort(key=lambda lead: lead.get("created_at", ""))
            return [copy.deepcopy(lead) for lead in items[:limit]]

    def list_leads_updated_before(self, statuses: Iterable[str], cutoff: str, limit: int = 20) -> list[dict]:
        allowed = set(statuses)
        with self._lock:
            items = [
                lead
                for lead in self._leads.values()
                if lead.get("status") in allowed and not lead.get("project_id") and (lead.get("updated_at") or "") < cutoff
            ]
            items.sort(key=lambda lead: lead.get("updated_at", ""))
            return [copy.deepcopy(lead) for lead in items[:limit]]

    def add_artifact(self, record: dict) -> dict:
        item = copy.deepcopy(record)
        item.setdefault("id", str(uuid.uuid4()))
        item.setdefault("created_at", _now())
        with self._lock:
            self._artifacts[item["id"]] = item
        return copy.deepcopy(item)

    def create_run(self, record: dict) -> dict:
        item = copy.deepcopy(record)
        item.setdefault("id", str(uuid.uuid4()))
        item.setdefault("status", "running")
        item.setdefault("success", None)
        item.setdefault("error", None)
        item.setdefault("steps_run", 0)
        item.setdefault("steps_skipped", 0)
        item.setdefault("started_at", _now())
        item.setdefault("finished_at", None)
        with self._lock:
            self._runs[item["id"]] = item
        return copy.deepcopy(item)

    def finish_run(self, run_id: str, updates: dict) -> dict | None:
        """Finalize a run once; returns None if it was already finalized."""
        with self._lock:
            item = self._runs.get(run_id)
            if not item or item.get("status") != "running":
                return None
            item.update(copy.deepcopy(updates))
            if not item.get("finished_at"):
                item["finished_at"] = _now()
            return copy.deepcopy(item)

    def get_run(self, run_id: str) -> dict | None:
        with self._lock:
            item = self._runs.get(run_id)
            return copy.deepcopy(item) if item else None

    def list_runs(self, lead_id: str | None = None, status: str | None = None, limit: int = 50) -> list[dict]:
        with self._lock:
            items = list(self._runs.values())
            if lead_id:
                items = [r for r in items if r.get("lead_id") == lead_id]
            if status:
                items = [r for r in items if r.get("status") == status]
            items.sort(key=lambda r: r.get("started_at", ""), reverse=True)
            return [copy.deepcopy(r) for r in items[:limit]]

    def create_step_run(self, record: dict) -> dict:
        item = copy.deepcopy(record)
        item.setdefault("id", str(uuid.uuid4()))
        item.setdefault("started_at", _now())
        item.setdefault("finished_at", None)
        item.setdefault("success", None)
        item.setdefault("notes", None)
        item.setdefault("output_artifact_ids", [])
        item.setdefault("tokens_used", None)
        item.setdefault("cost_estimate", None)
        with self._lock:
            seq = sum(1 for s in self._step_runs.values() if s.get("run_id") == item.get("run_id"))
            item["seq"] = seq
            self._step_runs[item["id"]] = item
        return copy.deepcopy(item)

    def finish_step_run(self, step_run_id: str, updates: dict) -> dict | None:
        with self._lock:
            item = self._step_runs.get(step_run_id)
            if not item or item.get("finished_at"):
                return None
            item.update(copy.deepcopy(updates))
            item["finished_at"] = _now()
            return copy.deepcopy(item)

    def list_step_runs(self, run_id: str) -> list[dict]:
        with self._lock:
            items = [s for s in self._step_runs.values() if s.get("run_id") == run_id]
            items.sort(key=lambda s: s.get("seq", 0))
            return [copy.deepcopy(s) for s in items]


class MemoryNotificationStore:
    def __init__(self) -> None:
        self._channels: Dict[str, dict] = {}
        self._events: Dict[str, dict] = {}
        self._deliveries: Dict[str, dict] = {}
        self._inbox: Dict[str, dict] = {}
        self._rules: Dict[str, dict] = {}
        self._lock = threading.Lock()

    # channels

    def upsert_channel(self, record: dict) -> dict:
        with self._lock:
            existing = next((c for c in self._channels.values() if c.get("key") == record.get("key")), None)
            item = copy.deepcopy(existing) if existing else {"id": str(uuid.uuid4()), "created_at": _now()}
            item.update(copy.deepcopy(record))
            item.setdefault("is_enabled", True)
            item.setdefault("severity_min", None)
            item.setdefault("config", {})
            self._channels[item["id"]] = item
            return copy.deepcopy(item)

    def get_channel(self, channel_id: str) -> dict | None:
        with self._lock:
            item = self._channels.get(channel_id)
            return copy.deepcopy(item) if item else None

    def list_channels(self, keys: Iterable[str] | None = None, enabled_only: bool = True) -> list[dict]:
        wanted = set(keys) if keys is not None else None
        with self._lock:
            items = [
                c
                for c in self._channels.values()
                if (wanted is None or c.get("key") in wanted) and (c.get("is_enabled") or not enabled_only)
            ]
            items.sort(key=lambda c: c.get("key", ""))
            return [copy.deepcopy(c) for c in items]

    # events

    def create_event(self, record: dict) -> dict:
        item = copy.deepcopy(record)
        item.setdefault("id", str(uuid.uuid4()))
        item.setdefault("status", "pending")
        item.setdefault("occurred_at", _now())
        item.setdefault("created_at", _now())
        for key in ("queued_at", "sent_at", "failed_at", "error_message"):
            item.setdefault(key, None)
        with self._lock:
            self._events[item["id"]] = item
        return copy.deepcopy(item)

    def get_event(self, event_id: str) -> dict | None:
        with self._lock:
            item = self._events.get(event_id)
            return copy.deepcopy(item) if item else None

    def find_event_by_dedupe_key(self, dedupe_key: str, since: str) -> dict | None:
        with self._lock:
            items = [
                e
                for e in self._events.values()
                if e.get("dedupe_key") == dedupe_key and (e.get("created_at") or "") >= since
            ]
            if not items:
                return None
            items.sort(key=lambda e: e.get("created_at", ""), reverse=True)
            return copy.deepcopy(items[0])

    def update_event(self, event_id: str, updates: dict) -> dict | None:
        with self._lock:
            item = self._events.get(event_id)
            if not item:
                return None
            item.update(copy.deepcopy(updates))
            return copy.deepcopy(item)

    def list_events(self, status: str | None = None, limit: int = 100) -> list[dict]:
        with self._lock:
            items = list(self._events.values())
            if status:
                items = [e for e in items if e.get("status") == status]
            items.sort(key=lambda e: e.get("created_at", ""), reverse=True)
            return [copy.deepcopy(e) for e in items[:limit]]

    # deliveries

    def create_delivery(self, record: dict) -> dict:
        item = copy.deepcopy(record)
        item.setdefault("id", str(uuid.uuid4()))
        item.setdefault("status", "pending")
        item.setdefault("attempt", 0)
        item.setdefault("max_attempts", 3)
        item.setdefault("run_after", _now())
        item.setdefault("created_at", _now())
        for key in ("sent_at", "failed_at", "error_code", "error_message", "provider_message_id"):
            item.setdefault(key, None)
        with self._lock:
            self._deliveries[item["id"]] = item
        return copy.deepcopy(item)

    def get_delivery(self, delivery_id: str) -> dict | None:
        with self._lock:
            item = self._deliveries.get(delivery_id)
            return copy.deepcopy(item) if item else None

    def update_delivery(self, delivery_id: str, updates: dict, expected: dict | None = None) -> dict | None:
        """Apply ``updates`` if every ``expected`` field still matches."""
        with self._lock:
            item = self._deliveries.get(delivery_id)
            if not item:
                return None
            for key, value in (expected or {}).items():
                if item.get(key) != value:
                    return None
            item.update(copy.deepcopy(updates))
            return copy.deepcopy(item)

    def list_deliveries(self, event_id: str) -> list[dict]:
        with self._lock:
            items = [d for d in self._deliveries.values() if d.get("event_id") == event_id]
            items.sort(key=lambda d: d.get("created_at", ""))
            return [copy.deepcopy(d) for d in items]

    def list_due_deliveries(self, now: str, limit: int) -> list[dict]:
        with self._lock:
            items = [
                d
                for d in self._deliveries.values()
                if d.get("status") == "pending" and (d.get("run_after") or "") <= now
            ]
            items.sort(key=lambda d: d.get("run_after") or "")
            return [copy.deepcopy(d) for d in items[:limit]]

    # in-app inbox

    def create_in_app(self, record: dict) -> dict:
        item = copy.deepcopy(record)
        item.setdefault("id", str(uuid.uuid4()))
        item.setdefault("read_at", None)
        item.setdefault("created_at", _now())
        with self._lock:
            self._inbox[item["id"]] = item
        return copy.deepcopy(item)

    def find_in_app_by_event(self, event_id: str) -> dict | None:
        with self._lock:
            for item in self._inbox.values():
                if item.get("event_id") == event_id:
                    return copy.deepcopy(item)
            return None

    def list_in_app(self, unread_only: bool = False, limit: int = 200) -> list[dict]:
        with self._lock:
            items = list(self._inbox.values())
            if unread_only:
                items = [n for n in items if not n.get("read_at")]
            items.sort(key=lambda n: n.get("created_at", ""), reverse=True)
            return [copy.deepcopy(n) for n in items[:limit]]

    def mark_read(self, notification_id: str) -> dict | None:
        with self._lock:
            item = self._inbox.get(notification_id)
            if not item:
                return None
            item["read_at"] = item.get("read_at") or _now()
            return copy.deepcopy(item)

    def mark_all_read(self) -> int:
        count = 0
        with self._lock:
            for item in self._inbox.values():
                if not item.get("read_at"):
                    item["read_at"] = _now()
                    count += 1
        return count

    def unread_count(self) -> int:
        with self._lock:
            return sum(1 for n in self._inbox.values() if not n.get("read_at"))

    def inbox_counts(self) -> dict:
        with self._lock:
            unread = sum(1 for n in self._inbox.values() if not n.get("read_at"))
            return {"read": len(self._inbox) - unread, "unread": unread}

    # metrics

    def list_events_since(self, since: str, limit: int = 5000) -> list[dict]:
        with self._lock:
            items = [e for e in self._events.values() if (e.get("created_at") or "") >= since]
            items.sort(key=lambda e: e.get("created_at", ""), reverse=True)
            return [copy.deepcopy(e) for e in items[:limit]]

    def list_deliveries_since(self, since: str, limit: int = 5000) -> list[dict]:
        """Deliveries created since ``since``, each with its ``channel_type``."""
        with self._lock:
            items = [d for d in self._deliveries.values() if (d.get("created_at") or "") >= since]
            items.sort(key=lambda d: d.get("created_at", ""), reverse=True)
            out = []
            for delivery in items[:limit]:
                item = copy.deepcopy(delivery)
                channel = self._channels.get(delivery.get("channel_id")) or {}
                item["channel_type"] = channel.get("type")
                out.append(item)
            return out

    # escalation rules

    def upsert_rule(self, record: dict) -> dict:
        item = copy.deepcopy(record)
        item.setdefault("is_enabled", True)
        item.setdefault("dedupe_window_minutes", 60)
        item.setdefault("channel_targets", None)
        item.setdefault("conditions", {})
        item.setdefault("severity", None)
        with self._lock:
            self._rules[item["key"]] = item
        return copy.deepcopy(item)

    def list_rules(self, enabled_only: bool = True, limit: int = 50) -> list[dict]:
        with self._lock:
            items = [r for r in self._rules.values() if r.get("is_enabled") or not enabled_only]
            items.sort(key=lambda r: r.get("key", ""))
            return [copy.deepcopy(r) for r in items[:limit]]


class MemoryScheduleStore:
    def __init__(self) -> None:
        self._schedules: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def list_schedules(self) -> list[dict]:
        with self._lock:
            items = sorted(self._schedules.values(), key=lambda s: s.get("key", ""))
            return [copy.deepcopy(s) for s in items]

    def get_schedule(self, schedule_id: str) -> dict | None:
        with self._lock:
            schedule = self._schedules.get(schedule_id)
            return copy.deepcopy(schedule) if schedule else None

    def insert_schedule(self, record: dict) -> dict | None:
        """Insert; None when the key is taken."""
        item = copy.deepcopy(record)
        with self._lock:
            if any(s.get("key") == item.get("key") for s in self._schedules.values()):
                return None
            now = _now()
            item.setdefault("id", str(uuid.uuid4()))
            item.setdefault("last_enqueued_at", None)
            item.setdefault("last_run_job_id", None)
            item.setdefault("created_at", now)
            item.setdefault("updated_at", now)
            self._schedules[item["id"]] = item
            return copy.deepcopy(item)

    def update_schedule(self, schedule_id: str, changes: dict) -> dict | None:
        with self._lock:
            schedule = self._schedules.get(schedule_id)
            if not schedule:
                return None
            schedule.update(copy.deepcopy(changes))
            schedule["updated_at"] = _now()
            return copy.deepcopy(schedule)

    def list_due_schedules(self, now: str, limit: int) -> list[dict]:
        with self._lock:
            items = [
                s
                for s in self._schedules.values()
                if s.get("is_enabled") and s.get("next_run_at") and s["next_run_at"] <= now
            ]
            items.sort(key=lambda s: s["next_run_at"])
            return [copy.deepcopy(s) for s in items[:limit]]

    def advance_schedule(self, schedule_id: str, expected_next_run_at: str, changes: dict) -> dict | None:
        """Apply ``changes`` only while ``next_run_at`` still equals ``expected_next_run_at``."""
        with self._lock:
            schedule = self._schedules.get(schedule_id)
            if not schedule or schedule.get("next_run_at") != expected_next_run_at:
                return None
            schedule.update(copy.deepcopy(changes))
            schedule["updated_at"] = _now()
            return copy.deepcopy(schedule)


def seed_default_channels(store: Any, ops_webhook_url: str | None = None, notify_email: str | None = None) -> list[dict]:
    channels = [
        store.upsert_channel({"key": "in_app", "type": "in_app", "is_enabled": True}),
    ]
    if ops_webhook_url:
        channels.append(
            store.upsert_channel(
                {
                    "key": "webhook_ops",
                    "type": "webhook",
                    "is_enabled": True,
                    "severity_min": "critical",
                    "config": {"url": ops_webhook_url},
                }
            )
        )
    if notify_email:
        channels.append(
            store.upsert_channel(
                {
                    "key": "email_ops",
                    "type": "email",
                    "is_enabled": True,
                    "severity_min": "warning",
                    "config": {"to": [notify_email]},
                }
            )
        )
    return channels
