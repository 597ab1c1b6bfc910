"""Recurring job schedules: cadence validation, next-run computation, due enqueueing.

A schedule fires by enqueueing one job of its ``job_type`` with its payload
template. ``next_run_at`` is advanced with a compare-and-set on its previous
value before the job is enqueued, so two tickers racing over the same due
schedule enqueue at most once. The enqueue also carries a dedupe key bucketed
by the schedule's ``dedupe_window_minutes``, so a fire collapses into a job
from the same window that is still queued.
"""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from client_engine.payloads import PayloadError, validate_payload
from job_queue import DEFAULT_MAX_ATTEMPTS, JobQueue, JobQueueError

logger = logging.getLogger("client_engine.schedules")

CADENCE_TYPES = ("interval", "daily", "weekly", "monthly")
MAX_INTERVAL_MINUTES = 7 * 24 * 60
DEFAULT_PRIORITY = 50
DEFAULT_DEDUPE_WINDOW_MINUTES = 60
ENQUEUE_DUE_MAX = 50

_CADENCE_FIELDS = ("cadence_type", "interval_minutes", "day_of_week", "day_of_month", "hour", "minute", "timezone")
_UPDATABLE = (
    "title",
    "description",
    "job_type",
    "is_enabled",
    "payload_template",
    "dedupe_window_minutes",
    "priority",
    "max_attempts",
    "timeout_seconds",
) + _CADENCE_FIELDS


@dataclass
class ScheduleError(Exception):
    code: str
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.code}: {self.message}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _int_in(schedule: dict, field: str, low: int, high: int, default: int) -> None:
    value = schedule.get(field)
    if value is None:
        value = default
    if not _is_int(value) or not low <= value <= high:
        raise ScheduleError("SCHEDULE_CADENCE_INVALID", f"{field} must be an integer {low}-{high}", field)


def _zone(name: str | None) -> tzinfo:
    if not name or name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ScheduleError("SCHEDULE_TIMEZONE_INVALID", f"Unknown timezone: {name}", "timezone") from exc


def validate_cadence(schedule: dict) -> None:
    cadence = schedule.get("cadence_type")
    if cadence not in CADENCE_TYPES:
        raise ScheduleError("SCHEDULE_CADENCE_INVALID", f"cadence_type must be one of {', '.join(CADENCE_TYPES)}", "cadence_type")
    if cadence == "interval":
        _int_in(schedule, "interval_minutes", 1, MAX_INTERVAL_MINUTES, 0)
        return
    _int_in(schedule, "hour", 0, 23, 0)
    _int_in(schedule, "minute", 0, 59, 0)
    if cadence == "weekly":
        # 0 is Sunday
        _int_in(schedule, "day_of_week", 0, 6, 0)
    if cadence == "monthly":
        _int_in(schedule, "day_of_month", 1, 31, 1)
    _zone(schedule.get("timezone"))


def _at(day: date, schedule: dict, tz: tzinfo) -> datetime:
    return datetime(day.year, day.month, day.day, schedule.get("hour") or 0, schedule.get("minute") or 0, tzinfo=tz)


def _month_day(year: int, month: int, wanted: int) -> date:
    return date(year, month, min(wanted, calendar.monthrange(year, month)[1]))


def compute_next_run_at(schedule: dict, after: datetime) -> datetime:
    """First fire time strictly after ``after``, in UTC.

    Calendar cadences fire at ``hour:minute`` wall-clock time in the schedule's
    timezone. Monthly schedules on a day the month lacks fire on its last day.
    """
    cadence = schedule.get("cadence_type")
    if cadence == "interval":
        return (after + timedelta(minutes=int(schedule["interval_minutes"]))).astimezone(timezone.utc)
    tz = _zone(schedule.get("timezone"))
    local = after.astimezone(tz)
    today = local.date()
    if cadence == "daily":
        candidate = _at(today, schedule, tz)
        if candidate <= local:
            candidate = _at(today + timedelta(days=1), schedule, tz)
    elif cadence == "weekly":
        sunday_based = (today.weekday() + 1) % 7
        ahead = ((schedule.get("day_of_week") or 0) - sunday_based) % 7
        candidate = _at(today + timedelta(days=ahead), schedule, tz)
        if candidate <= local:
            candidate = _at(today + timedelta(days=ahead + 7), schedule, tz)
    elif cadence == "monthly":
        wanted = schedule.get("day_of_month") or 1
        candidate = _at(_month_day(today.year, today.month, wanted), schedule, tz)
        if candidate <= local:
            year, month = (today.year + 1, 1) if today.month == 12 else (today.year, today.month + 1)
            candidate = _at(_month_day(year, month, wanted), schedule, tz)
    else:
        raise ScheduleError("SCHEDULE_CADENCE_INVALID", f"Unknown cadence_type: {cadence}", "cadence_type")
    return candidate.astimezone(timezone.utc)


def _dedupe_key(schedule: dict, now: datetime) -> str:
    window = int(schedule.get("dedupe_window_minutes") or DEFAULT_DEDUPE_WINDOW_MINUTES) * 60
    return f"schedule:{schedule['id']}:{int(now.timestamp()) // window}"


class JobScheduler:
    def __init__(self, store: Any, jobs: JobQueue, clock: Callable[[], datetime] = _utcnow) -> None:
        self.store = store
        self.jobs = jobs
        self._clock = clock

    def _validate(self, record: dict) -> None:
        for field in ("key", "title", "job_type"):
            value = record.get(field)
            if not isinstance(value, str) or not value.strip():
                raise ScheduleError("SCHEDULE_FIELD_REQUIRED", f"{field} must be a non-empty string", field)
        validate_cadence(record)
        if not isinstance(record.get("is_enabled"), bool):
            raise ScheduleError("SCHEDULE_FIELD_INVALID", "is_enabled must be a boolean", "is_enabled")
        try:
            validate_payload(record.get("payload_template") or {}, max_bytes=self.jobs.max_payload_bytes)
        except PayloadError as exc:
            raise ScheduleError(exc.code, str(exc), "payload_template") from exc
        for field, low in (("dedupe_window_minutes", 1), ("max_attempts", 1)):
            if not _is_int(record.get(field)) or record[field] < low:
                raise ScheduleError("SCHEDULE_FIELD_INVALID", f"{field} must be an integer >= {low}", field)
        if not _is_int(record.get("priority")):
            raise ScheduleError("SCHEDULE_FIELD_INVALID", "priority must be an integer", "priority")
        timeout = record.get("timeout_seconds")
        if timeout is not None and (isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0):
            raise ScheduleError("SCHEDULE_FIELD_INVALID", "timeout_seconds must be a number > 0", "timeout_seconds")

    def _next_run(self, record: dict) -> str | None:
        if not record.get("is_enabled"):
            return None
        return _iso(compute_next_run_at(record, self._clock()))

    def list(self) -> list[dict]:
        return self.store.list_schedules()

    def get(self, schedule_id: str) -> dict:
        schedule = self.store.get_schedule(schedule_id)
        if not schedule:
            raise ScheduleError("SCHEDULE_NOT_FOUND", f"Schedule not found: {schedule_id}")
        return schedule

    def create(self, data: dict) -> dict:
        record = {
            "key": data.get("key").strip() if isinstance(data.get("key"), str) else data.get("key"),
            "title": data.get("title").strip() if isinstance(data.get("title"), str) else data.get("title"),
            "description": data.get("description"),
            "job_type": data.get("job_type").strip() if isinstance(data.get("job_type"), str) else data.get("job_type"),
            "is_enabled": data.get("is_enabled", True),
            "payload_template": data.get("payload_template") or {},
            "dedupe_window_minutes": data.get("dedupe_window_minutes", DEFAULT_DEDUPE_WINDOW_MINUTES),
            "priority": data.get("priority", DEFAULT_PRIORITY),
            "max_attempts": data.get("max_attempts", DEFAULT_MAX_ATTEMPTS),
            "timeout_seconds": data.get("timeout_seconds"),
        }
        for field in _CADENCE_FIELDS:
            record[field] = data.get(field)
        self._validate(record)
        record["next_run_at"] = self._next_run(record)
        schedule = self.store.insert_schedule(record)
        if schedule is None:
            raise ScheduleError("SCHEDULE_KEY_EXISTS", f"Schedule key already exists: {record['key']}", "key")
        logger.info(
            "schedule_created schedule_id=%s key=%s cadence=%s next_run_at=%s",
            schedule["id"],
            schedule["key"],
            schedule["cadence_type"],
            schedule["next_run_at"],
        )
        return schedule

    def update(self, schedule_id: str, data: dict) -> dict:
        """Merge ``data`` over the stored schedule and recompute ``next_run_at`` from now."""
        existing = self.get(schedule_id)
        changes = {field: data[field] for field in _UPDATABLE if field in data}
        merged = {**existing, **changes}
        if merged.get("payload_template") is None:
            merged["payload_template"] = {}
        self._validate(merged)
        changes["next_run_at"] = self._next_run(merged)
        schedule = self.store.update_schedule(schedule_id, changes)
        if schedule is None:
            raise ScheduleError("SCHEDULE_NOT_FOUND", f"Schedule not found: {schedule_id}")
        logger.info("schedule_updated schedule_id=%s fields=%s next_run_at=%s", schedule_id, sorted(changes), schedule["next_run_at"])
        return schedule

    def enqueue_due(self, limit: int = 20, now: datetime | None = None) -> dict:
        """Enqueue one job for every enabled schedule whose ``next_run_at`` has passed."""
        now = now or self._clock()
        now_iso = _iso(now)
        due = self.store.list_due_schedules(now_iso, max(1, min(int(limit), ENQUEUE_DUE_MAX)))
        job_ids: list[str] = []
        errors = 0
        for schedule in due:
            try:
                next_run = _iso(compute_next_run_at(schedule, now))
            except ScheduleError:
                logger.exception("schedule_next_run_failed schedule_id=%s", schedule["id"])
                errors += 1
                continue
            claimed = self.store.advance_schedule(
                schedule["id"],
                schedule["next_run_at"],
                {"next_run_at": next_run, "last_enqueued_at": now_iso},
            )
            if claimed is None:
                # another ticker advanced it first
                continue
            try:
                job = self.jobs.enqueue(
                    schedule["job_type"],
                    schedule.get("payload_template") or {},
                    priority=schedule["priority"],
                    dedupe_key=_dedupe_key(schedule, now),
                    max_attempts=schedule["max_attempts"],
                    source_type="schedule",
                    source_id=schedule["id"],
                    timeout_seconds=schedule.get("timeout_seconds"),
                )
            except JobQueueError:
                logger.exception("schedule_enqueue_failed schedule_id=%s job_type=%s", schedule["id"], schedule["job_type"])
                errors += 1
                continue
            if job["id"] != schedule.get("last_run_job_id"):
                job_ids.append(job["id"])
                self.store.update_schedule(schedule["id"], {"last_run_job_id": job["id"]})
        if due:
            logger.info("schedules_enqueued due=%s enqueued=%s errors=%s", len(due), len(job_ids), errors)
        return {"due_schedules": len(due), "jobs_enqueued": len(job_ids), "job_ids": job_ids, "errors": errors}
