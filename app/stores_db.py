"""Postgres-backed stores; same method contracts as app.stores."""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from typing import Any, Iterable

import psycopg2

from advisory_lock import LEAD_NAMESPACE, AdvisoryLockManager
from app.db import borrow_conn, execute, fetch_all, fetch_one, get_conn, return_conn
from rate_limit import RateLimiter, RateLimitResult, _validate

logger = logging.getLogger("client_engine.db")

TERMINAL_JOB_STATUSES = ("succeeded", "failed", "canceled")


def _json_dumps(value: object) -> str:
    return json.dumps(value, default=str)


def _to_iso(value):
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%dT%H:%M:%SZ")
    return value


def _row(row: dict | None) -> dict | None:
    if row is None:
        return None
    return {key: _to_iso(val) for key, val in row.items()}


def _rows(rows: list[dict]) -> list[dict]:
    return [_row(r) for r in rows]


def _set_clause(changes: dict, allowed: Iterable[str], json_fields: Iterable[str] = ()) -> tuple[list[str], list[Any]]:
    json_fields = set(json_fields)
    fields: list[str] = []
    params: list[Any] = []
    for key in allowed:
        if key in changes:
            fields.append(f"{key}=%s::jsonb" if key in json_fields else f"{key}=%s")
            value = changes[key]
            params.append(_json_dumps(value) if key in json_fields and value is not None else value)
    return fields, params


_JOB_FIELDS = (
    "status",
    "priority",
    "result",
    "error_message",
    "error_code",
    "attempts",
    "max_attempts",
    "run_after",
    "locked_at",
    "lock_owner",
    "cancel_requested_at",
    "canceled_at",
    "started_at",
    "finished_at",
    "dead_lettered_at",
)


class DbJobStore:
    def insert(self, job: dict) -> tuple[dict, bool]:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                insert into jobs (
                  job_type, status, priority, payload, idempotency_key, dedupe_key,
                  attempts, max_attempts, run_after, source_type, source_id, timeout_seconds, created_at, updated_at
                ) values (%s,'queued',%s,%s::jsonb,%s,%s,0,%s,coalesce(%s::timestamptz, now()),%s,%s,%s,now(),now())
                on conflict do nothing
                returning *
                """,
                [
                    job.get("job_type"),
                    job.get("priority", 0),
                    _json_dumps(job.get("payload") or {}),
                    job.get("idempotency_key"),
                    job.get("dedupe_key"),
                    job.get("max_attempts", 3),
                    job.get("run_after"),
                    job.get("source_type"),
                    job.get("source_id"),
                    job.get("timeout_seconds"),
                ],
                query_name="jobs.insert",
            )
            if row:
                return _row(row), True
            existing = None
            if job.get("idempotency_key"):
                existing = fetch_one(
                    conn,
                    """
                    select * from jobs
                    where idempotency_key=%s and status in ('queued','running')
                    order by created_at desc limit 1
                    """,
                    [job["idempotency_key"]],
                    query_name="jobs.find_idempotent",
                )
            if existing is None and job.get("dedupe_key"):
                existing = fetch_one(
                    conn,
                    """
                    select * from jobs
                    where job_type=%s and dedupe_key=%s and status='queued'
                    order by created_at desc limit 1
                    """,
                    [job.get("job_type"), job["dedupe_key"]],
                    query_name="jobs.find_dedupe",
                )
            if existing is None:
                # the conflicting job finished in between; the key is free again
                raise RuntimeError("job insert conflicted but no live job holds the key")
            return _row(existing), False

    def get(self, job_id: str) -> dict | None:
        with get_conn() as conn:
            return _row(fetch_one(conn, "select * from jobs where id=%s", [job_id], query_name="jobs.get"))

    def list(self, status: str | None = None, job_type: str | None = None, limit: int = 200) -> list[dict]:
        clauses = ["true"]
        params: list[Any] = []
        if status:
            clauses.append("status=%s")
            params.append(status)
        if job_type:
            clauses.append("job_type=%s")
            params.append(job_type)
        where = " and ".join(clauses)
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                f"""
                select * from jobs where {where}
                order by created_at desc
                limit %s
                """,
                params + [limit],
                query_name="jobs.list",
            )
            return _rows(rows)

    def update(self, job_id: str, changes: dict, expected_status: Iterable[str] | None = None) -> dict | None:
        fields, params = _set_clause(changes, _JOB_FIELDS, json_fields=("result",))
        if not fields:
            return self.get(job_id)
        where = "id=%s"
        params.append(job_id)
        if expected_status is not None:
            where += " and status = any(%s)"
            params.append(list(expected_status))
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"""
                update jobs set {', '.join(fields)}, updated_at=now()
                where {where}
                returning *
                """,
                params,
                query_name="jobs.update",
            )
            return _row(row)

    def claim(self, worker_id: str, limit: int, now: str) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                """
                with candidates as (
                  select id from jobs
                  where status='queued'
                    and cancel_requested_at is null
                    and run_after <= %s::timestamptz
                  order by priority desc, run_after asc
                  for update skip locked
                  limit %s
                )
                update jobs j
                set status='running',
                    lock_owner=%s,
                    locked_at=%s::timestamptz,
                    started_at=%s::timestamptz,
                    updated_at=now()
                from candidates c
                where j.id = c.id
                returning j.*
                """,
                [now, limit, worker_id, now, now],
                query_name="jobs.claim",
            )
            return _rows(rows)

    def requeue_stale(self, cutoff: str, now: str) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                """
                update jobs
                set status = case when cancel_requested_at is null then 'queued' else 'canceled' end,
                    run_after = case when cancel_requested_at is null then %s::timestamptz else run_after end,
                    canceled_at = case when cancel_requested_at is null then canceled_at else %s::timestamptz end,
                    finished_at = case when cancel_requested_at is null then finished_at else %s::timestamptz end,
                    locked_at=null,
                    lock_owner=null,
                    updated_at=now()
                where status='running' and locked_at < %s::timestamptz
                returning *
                """,
                [now, now, now, cutoff],
                query_name="jobs.requeue_stale",
            )
            return _rows(rows)

    def count_by_status(self) -> dict:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                "select status, count(*) as count from jobs group by status",
                query_name="jobs.count_by_status",
            )
            return {r["status"]: int(r["count"]) for r in rows}

    def list_dead_letters(self, limit: int = 20) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                """
                select * from jobs
                where status='failed' and dead_lettered_at is not null
                order by dead_lettered_at desc
                limit %s
                """,
                [limit],
                query_name="jobs.list_dead_letters",
            )
            return _rows(rows)

    def list_running_before(self, cutoff: str, limit: int = 20) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                """
                select * from jobs
                where status='running' and coalesce(locked_at, started_at) < %s::timestamptz
                order by locked_at asc
                limit %s
                """,
                [cutoff, limit],
                query_name="jobs.list_running_before",
            )
            return _rows(rows)

    def count_dead_letters(self) -> int:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select count(*) as count from jobs where status='failed' and dead_lettered_at is not null",
                query_name="jobs.count_dead_letters",
            )
            return int(row["count"]) if row else 0

    def list_finished_since(self, since: str, limit: int = 1000) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                """
                select id, job_type, status, started_at, finished_at, dead_lettered_at from jobs
                where status in ('succeeded','failed','canceled') and finished_at >= %s::timestamptz
                order by finished_at desc
                limit %s
                """,
                [since, limit],
                query_name="jobs.list_finished_since",
            )
            return _rows(rows)

    def add_event(self, job_id: str, level: str, message: str, data: dict | None = None) -> dict:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                insert into job_events (job_id, ts, level, message, data)
                values (%s, now(), %s, %s, %s::jsonb)
                returning *
                """,
                [job_id, level, message, _json_dumps(data) if data else None],
                query_name="job_events.insert",
            )
            return _row(row)

    def list_events(self, job_id: str, limit: int = 200) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                """
                select * from job_events where job_id=%s
                order by ts asc, id asc
                limit %s
                """,
                [job_id, limit],
                query_name="job_events.list",
            )
            return _rows(rows)


class DbPipelineStore:
    def create_lead(self, record: dict) -> dict:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                insert into leads (title, status, scored_at, project_id, created_at, updated_at)
                values (%s, %s, %s, %s, now(), now())
                returning *
                """,
                [record.get("title"), record.get("status", "NEW"), record.get("scored_at"), record.get("project_id")],
                query_name="leads.insert",
            )
            return _row(row)

    def update_lead(self, lead_id: str, updates: dict) -> dict | None:
        fields, params = _set_clause(updates, ("title", "status", "scored_at", "project_id"))
        if not fields:
            return self.get_lead(lead_id)
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"update leads set {', '.join(fields)}, updated_at=now() where id=%s returning *",
                params + [lead_id],
                query_name="leads.update",
            )
            return _row(row)

    def get_lead(self, lead_id: str) -> dict | None:
        with get_conn() as conn:
            lead = fetch_one(conn, "select * from leads where id=%s", [lead_id], query_name="leads.get")
            if not lead:
                return None
            artifacts = fetch_all(
                conn,
                "select * from artifacts where lead_id=%s order by created_at asc",
                [lead_id],
                query_name="artifacts.list_for_lead",
            )
            out = _row(lead)
            out["artifacts"] = _rows(artifacts)
            return out

    def list_candidate_leads(self, statuses: Iterable[str], limit: int = 20) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                """
                select * from leads
                where status = any(%s) and status <> 'REJECTED' and project_id is null
                order by created_at asc
                limit %s
                """,
                [list(statuses), limit],
                query_name="leads.list_candidates",
            )
            return _rows(rows)

    def list_leads_updated_before(self, statuses: Iterable[str], cutoff: str, limit: int = 20) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                """
                select * from leads
                where status = any(%s) and project_id is null and updated_at < %s::timestamptz
                order by updated_at asc
                limit %s
                """,
                [list(statuses), cutoff, limit],
                query_name="leads.list_updated_before",
            )
            return _rows(rows)

    def add_artifact(self, record: dict) -> dict:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                insert into artifacts (lead_id, type, title, content, created_at)
                values (%s, %s, %s, %s, now())
                returning *
                """,
                [record.get("lead_id"), record.get("type"), record.get("title"), record.get("content")],
                query_name="artifacts.insert",
            )
            return _row(row)

    def create_run(self, record: dict) -> dict:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                insert into pipeline_runs (lead_id, trigger, status, steps_run, steps_skipped, started_at)
                values (%s, %s, 'running', 0, 0, now())
                returning *
                """,
                [record.get("lead_id"), record.get("trigger")],
                query_name="pipeline_runs.insert",
            )
            return _row(row)

    def finish_run(self, run_id: str, updates: dict) -> dict | None:
        fields, params = _set_clause(updates, ("status", "success", "error", "steps_run", "steps_skipped"))
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"""
                update pipeline_runs set {', '.join(fields + ['finished_at=now()'])}
                where id=%s and status='running'
                returning *
                """,
                params + [run_id],
                query_name="pipeline_runs.finish",
            )
            return _row(row)

    def get_run(self, run_id: str) -> dict | None:
        with get_conn() as conn:
            return _row(fetch_one(conn, "select * from pipeline_runs where id=%s", [run_id], query_name="pipeline_runs.get"))

    def list_runs(self, lead_id: str | None = None, status: str | None = None, limit: int = 50) -> list[dict]:
        clauses = ["true"]
        params: list[Any] = []
        if lead_id:
            clauses.append("lead_id=%s")
            params.append(lead_id)
        if status:
            clauses.append("status=%s")
            params.append(status)
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                f"""
                select * from pipeline_runs where {' and '.join(clauses)}
                order by started_at desc
                limit %s
                """,
                params + [limit],
                query_name="pipeline_runs.list",
            )
            return _rows(rows)

    def create_step_run(self, record: dict) -> dict:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                insert into pipeline_step_runs (run_id, step_name, seq, started_at, output_artifact_ids)
                select %s, %s, coalesce(max(seq) + 1, 0), now(), '[]'::jsonb
                from pipeline_step_runs where run_id=%s
                returning *
                """,
                [record.get("run_id"), record.get("step_name"), record.get("run_id")],
                query_name="pipeline_step_runs.insert",
            )
            return _row(row)

    def finish_step_run(self, step_run_id: str, updates: dict) -> dict | None:
        fields, params = _set_clause(
            updates,
            ("success", "notes", "output_artifact_ids", "tokens_used", "cost_estimate"),
            json_fields=("output_artifact_ids",),
        )
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"""
                update pipeline_step_runs set {', '.join(fields + ['finished_at=now()'])}
                where id=%s and finished_at is null
                returning *
                """,
                params + [step_run_id],
                query_name="pipeline_step_runs.finish",
            )
            return _row(row)

    def list_step_runs(self, run_id: str) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                "select * from pipeline_step_runs where run_id=%s order by seq asc",
                [run_id],
                query_name="pipeline_step_runs.list",
            )
            return _rows(rows)


_DELIVERY_FIELDS = (
    "status",
    "attempt",
    "max_attempts",
    "run_after",
    "sent_at",
    "failed_at",
    "error_code",
    "error_message",
    "provider_message_id",
)
_EVENT_FIELDS = ("status", "queued_at", "sent_at", "failed_at", "error_message")


class DbNotificationStore:
    def upsert_channel(self, record: dict) -> dict:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                insert into notification_channels (key, type, is_enabled, severity_min, config, created_at)
                values (%s, %s, %s, %s, %s::jsonb, now())
                on conflict (key) do update set
                  type=excluded.type,
                  is_enabled=excluded.is_enabled,
                  severity_min=excluded.severity_min,
                  config=excluded.config
                returning *
                """,
                [
                    record.get("key"),
                    record.get("type"),
                    record.get("is_enabled", True),
                    record.get("severity_min"),
                    _json_dumps(record.get("config") or {}),
                ],
                query_name="notification_channels.upsert",
            )
            return _row(row)

    def get_channel(self, channel_id: str) -> dict | None:
        with get_conn() as conn:
            return _row(
                fetch_one(conn, "select * from notification_channels where id=%s", [channel_id], query_name="notification_channels.get")
            )

    def list_channels(self, keys: Iterable[str] | None = None, enabled_only: bool = True) -> list[dict]:
        clauses = ["true"]
        params: list[Any] = []
        if keys is not None:
            clauses.append("key = any(%s)")
            params.append(list(keys))
        if enabled_only:
            clauses.append("is_enabled")
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                f"select * from notification_channels where {' and '.join(clauses)} order by key asc",
                params,
                query_name="notification_channels.list",
            )
            return _rows(rows)

    def create_event(self, record: dict) -> dict:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                insert into notification_events (
                  event_key, title, message, severity, source_type, source_id, action_url,
                  meta, dedupe_key, created_by_rule, status, occurred_at, created_at
                ) values (%s,%s,%s,%s,%s,%s,%s,%s::jsonb,%s,%s,'pending',
                          coalesce(%s::timestamptz, now()), coalesce(%s::timestamptz, now()))
                returning *
                """,
                [
                    record.get("event_key"),
                    record.get("title"),
                    record.get("message"),
                    record.get("severity", "info"),
                    record.get("source_type"),
                    record.get("source_id"),
                    record.get("action_url"),
                    _json_dumps(record.get("meta") or {}),
                    record.get("dedupe_key"),
                    record.get("created_by_rule"),
                    record.get("occurred_at"),
                    record.get("created_at"),
                ],
                query_name="notification_events.insert",
            )
            return _row(row)

    def get_event(self, event_id: str) -> dict | None:
        with get_conn() as conn:
            return _row(
                fetch_one(conn, "select * from notification_events where id=%s", [event_id], query_name="notification_events.get")
            )

    def find_event_by_dedupe_key(self, dedupe_key: str, since: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                select * from notification_events
                where dedupe_key=%s and created_at >= %s::timestamptz
                order by created_at desc
                limit 1
                """,
                [dedupe_key, since],
                query_name="notification_events.find_dedupe",
            )
            return _row(row)

    def update_event(self, event_id: str, updates: dict) -> dict | None:
        fields, params = _set_clause(updates, _EVENT_FIELDS)
        if not fields:
            return self.get_event(event_id)
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"update notification_events set {', '.join(fields)} where id=%s returning *",
                params + [event_id],
                query_name="notification_events.update",
            )
            return _row(row)

    def list_events(self, status: str | None = None, limit: int = 100) -> list[dict]:
        clauses = ["true"]
        params: list[Any] = []
        if status:
            clauses.append("status=%s")
            params.append(status)
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                f"""
                select * from notification_events where {' and '.join(clauses)}
                order by created_at desc
                limit %s
                """,
                params + [limit],
                query_name="notification_events.list",
            )
            return _rows(rows)

    def create_delivery(self, record: dict) -> dict:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                insert into notification_deliveries (event_id, channel_id, status, attempt, max_attempts, run_after, created_at)
                values (%s, %s, 'pending', 0, %s, coalesce(%s::timestamptz, now()), now())
                on conflict (event_id, channel_id) do nothing
                returning *
                """,
                [record.get("event_id"), record.get("channel_id"), record.get("max_attempts", 3), record.get("run_after")],
                query_name="notification_deliveries.insert",
            )
            return _row(row)

    def get_delivery(self, delivery_id: str) -> dict | None:
        with get_conn() as conn:
            return _row(
                fetch_one(
                    conn, "select * from notification_deliveries where id=%s", [delivery_id], query_name="notification_deliveries.get"
                )
            )

    def update_delivery(self, delivery_id: str, updates: dict, expected: dict | None = None) -> dict | None:
        fields, params = _set_clause(updates, _DELIVERY_FIELDS)
        if not fields:
            return self.get_delivery(delivery_id)
        where = ["id=%s"]
        params.append(delivery_id)
        for key, value in (expected or {}).items():
            if key not in _DELIVERY_FIELDS:
                raise ValueError(f"Unsupported delivery condition: {key}")
            where.append(f"{key}=%s")
            params.append(value)
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"update notification_deliveries set {', '.join(fields)} where {' and '.join(where)} returning *",
                params,
                query_name="notification_deliveries.update",
            )
            return _row(row)

    def list_deliveries(self, event_id: str) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                "select * from notification_deliveries where event_id=%s order by created_at asc",
                [event_id],
                query_name="notification_deliveries.list",
            )
            return _rows(rows)

    def list_due_deliveries(self, now: str, limit: int) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                """
                select * from notification_deliveries
                where status='pending' and run_after <= %s::timestamptz
                order by run_after asc
                limit %s
                """,
                [now, limit],
                query_name="notification_deliveries.list_due",
            )
            return _rows(rows)

    def create_in_app(self, record: dict) -> dict:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                insert into in_app_notifications (event_id, title, body, severity, action_url, created_at)
                values (%s, %s, %s, %s, %s, now())
                returning *
                """,
                [record.get("event_id"), record.get("title"), record.get("body"), record.get("severity"), record.get("action_url")],
                query_name="in_app_notifications.insert",
            )
            return _row(row)

    def find_in_app_by_event(self, event_id: str) -> dict | None:
        with get_conn() as conn:
            return _row(
                fetch_one(
                    conn,
                    "select * from in_app_notifications where event_id=%s limit 1",
                    [event_id],
                    query_name="in_app_notifications.find_by_event",
                )
            )

    def list_in_app(self, unread_only: bool = False, limit: int = 200) -> list[dict]:
        where = "where read_at is null" if unread_only else ""
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                f"select * from in_app_notifications {where} order by created_at desc limit %s",
                [limit],
                query_name="in_app_notifications.list",
            )
            return _rows(rows)

    def mark_read(self, notification_id: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                update in_app_notifications set read_at=coalesce(read_at, now())
                where id=%s
                returning *
                """,
                [notification_id],
                query_name="in_app_notifications.mark_read",
            )
            return _row(row)

    def mark_all_read(self) -> int:
        with get_conn() as conn:
            return execute(
                conn,
                "update in_app_notifications set read_at=now() where read_at is null",
                query_name="in_app_notifications.mark_all",
            )

    def unread_count(self) -> int:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select count(*) as count from in_app_notifications where read_at is null",
                query_name="in_app_notifications.unread_count",
            )
            return int(row["count"]) if row else 0

    def inbox_counts(self) -> dict:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                select count(*) filter (where read_at is not null) as read,
                       count(*) filter (where read_at is null) as unread
                from in_app_notifications
                """,
                query_name="in_app_notifications.counts",
            )
            return {"read": int(row["read"]), "unread": int(row["unread"])} if row else {"read": 0, "unread": 0}

    def list_events_since(self, since: str, limit: int = 5000) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                """
                select id, event_key, severity, source_type, status, created_by_rule, created_at
                from notification_events
                where created_at >= %s::timestamptz
                order by created_at desc
                limit %s
                """,
                [since, limit],
                query_name="notification_events.list_since",
            )
            return _rows(rows)

    def list_deliveries_since(self, since: str, limit: int = 5000) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                """
                select d.id, d.status, d.attempt, d.created_at, d.sent_at, d.failed_at, d.error_code,
                       c.type as channel_type
                from notification_deliveries d
                left join notification_channels c on c.id = d.channel_id
                where d.created_at >= %s::timestamptz
                order by d.created_at desc
                limit %s
                """,
                [since, limit],
                query_name="notification_deliveries.list_since",
            )
            return _rows(rows)

    def upsert_rule(self, record: dict) -> dict:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                insert into escalation_rules (
                  key, source_type, trigger_type, severity, dedupe_window_minutes,
                  channel_targets, conditions, is_enabled
                ) values (%s, %s, %s, %s, %s, %s::jsonb, %s::jsonb, %s)
                on conflict (key) do update set
                  source_type=excluded.source_type,
                  trigger_type=excluded.trigger_type,
                  severity=excluded.severity,
                  dedupe_window_minutes=excluded.dedupe_window_minutes,
                  channel_targets=excluded.channel_targets,
                  conditions=excluded.conditions,
                  is_enabled=excluded.is_enabled
                returning *
                """,
                [
                    record.get("key"),
                    record.get("source_type"),
                    record.get("trigger_type"),
                    record.get("severity"),
                    record.get("dedupe_window_minutes", 60),
                    _json_dumps(record["channel_targets"]) if record.get("channel_targets") is not None else None,
                    _json_dumps(record.get("conditions") or {}),
                    record.get("is_enabled", True),
                ],
                query_name="escalation_rules.upsert",
            )
            return _row(row)

    def list_rules(self, enabled_only: bool = True, limit: int = 50) -> list[dict]:
        where = "where is_enabled" if enabled_only else ""
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                f"select * from escalation_rules {where} order by key asc limit %s",
                [limit],
                query_name="escalation_rules.list",
            )
            return _rows(rows)


_SCHEDULE_FIELDS = (
    "title",
    "description",
    "job_type",
    "is_enabled",
    "cadence_type",
    "interval_minutes",
    "day_of_week",
    "day_of_month",
    "hour",
    "minute",
    "timezone",
    "payload_template",
    "dedupe_window_minutes",
    "priority",
    "max_attempts",
    "timeout_seconds",
    "next_run_at",
    "last_enqueued_at",
    "last_run_job_id",
)


class DbScheduleStore:
    def list_schedules(self) -> list[dict]:
        with get_conn() as conn:
            return _rows(fetch_all(conn, "select * from job_schedules order by key asc", query_name="job_schedules.list"))

    def get_schedule(self, schedule_id: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(conn, "select * from job_schedules where id=%s", [schedule_id], query_name="job_schedules.get")
            return _row(row)

    def insert_schedule(self, record: dict) -> dict | None:
        columns = ("key",) + _SCHEDULE_FIELDS
        values = ", ".join("%s::jsonb" if c == "payload_template" else "%s" for c in columns)
        params = [
            _json_dumps(record.get(c) or {}) if c == "payload_template" else record.get(c)
            for c in columns
        ]
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"""
                insert into job_schedules ({', '.join(columns)}, created_at, updated_at)
                values ({values}, now(), now())
                on conflict (key) do nothing
                returning *
                """,
                params,
                query_name="job_schedules.insert",
            )
            return _row(row)

    def update_schedule(self, schedule_id: str, changes: dict) -> dict | None:
        fields, params = _set_clause(changes, _SCHEDULE_FIELDS, json_fields=("payload_template",))
        if not fields:
            return self.get_schedule(schedule_id)
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"update job_schedules set {', '.join(fields)}, updated_at=now() where id=%s returning *",
                params + [schedule_id],
                query_name="job_schedules.update",
            )
            return _row(row)

    def list_due_schedules(self, now: str, limit: int) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                """
                select * from job_schedules
                where is_enabled and next_run_at <= %s::timestamptz
                order by next_run_at asc
                limit %s
                """,
                [now, limit],
                query_name="job_schedules.list_due",
            )
            return _rows(rows)

    def advance_schedule(self, schedule_id: str, expected_next_run_at: str, changes: dict) -> dict | None:
        fields, params = _set_clause(changes, _SCHEDULE_FIELDS, json_fields=("payload_template",))
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"""
                update job_schedules set {', '.join(fields)}, updated_at=now()
                where id=%s and next_run_at=%s::timestamptz
                returning *
                """,
                params + [schedule_id, expected_next_run_at],
                query_name="job_schedules.advance",
            )
            return _row(row)


class DbAdvisoryLockManager(AdvisoryLockManager):
    """Session-level ``pg_try_advisory_lock`` on a connection held until unlock."""

    def __init__(self, namespace: str = LEAD_NAMESPACE) -> None:
        self.namespace = namespace
        self._held: dict[int, Any] = {}
        self._lock = threading.Lock()

    def try_lock(self, entity_id: str) -> bool:
        key = self.key_for(entity_id)
        conn = borrow_conn()
        try:
            row = fetch_one(conn, "select pg_try_advisory_lock(%s) as locked", [key], query_name="advisory.try_lock")
        except psycopg2.Error:
            return_conn(conn, close=True)
            raise
        if not row or not row["locked"]:
            return_conn(conn)
            logger.info("advisory_lock_busy namespace=%s entity_id=%s", self.namespace, entity_id)
            return False
        with self._lock:
            self._held[key] = conn
        return True

    def unlock(self, entity_id: str) -> None:
        key = self.key_for(entity_id)
        with self._lock:
            conn = self._held.pop(key, None)
        if conn is None:
            logger.warning("advisory_unlock_not_held namespace=%s entity_id=%s", self.namespace, entity_id)
            return
        try:
            fetch_one(conn, "select pg_advisory_unlock(%s) as unlocked", [key], query_name="advisory.unlock")
        except psycopg2.Error:
            # closing the session releases every lock it holds
            logger.exception("advisory_unlock_failed namespace=%s entity_id=%s", self.namespace, entity_id)
            return_conn(conn, close=True)
            return
        return_conn(conn)

    def is_locked(self, entity_id: str) -> bool:
        key = self.key_for(entity_id) & 0xFFFFFFFFFFFFFFFF
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                select exists(
                  select 1 from pg_locks
                  where locktype='advisory' and classid=%s::oid and objid=%s::oid and objsubid=1
                ) as locked
                """,
                [key >> 32, key & 0xFFFFFFFF],
                query_name="advisory.is_locked",
            )
            return bool(row and row["locked"])


class DbRateLimiter(RateLimiter):
    """Fixed-window buckets in ``rate_buckets``, shared by every process."""

    def check(self, key: str, max_requests: int, window_ms: int) -> RateLimitResult:
        _validate(key, max_requests, window_ms)
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                insert into rate_buckets (key, count, reset_at)
                values (%s, 1, now() + %s * interval '1 millisecond')
                on conflict (key) do update set
                  count = case when rate_buckets.reset_at < now() then 1 else rate_buckets.count + 1 end,
                  reset_at = case when rate_buckets.reset_at < now() then excluded.reset_at else rate_buckets.reset_at end
                returning count, extract(epoch from reset_at)::float8 as reset_at
                """,
                [key, window_ms],
                query_name="rate_buckets.hit",
            )
        count = int(row["count"])
        return RateLimitResult(ok=count <= max_requests, remaining=max(0, max_requests - count), reset_at=float(row["reset_at"]))
