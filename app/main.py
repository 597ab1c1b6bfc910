"""FastAPI app: operational surface for jobs, pipeline runs and notifications."""

from __future__ import annotations

import os
import sys
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

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

import time
import logging
import uuid
from functools import partial

import anyio

from app.db import get_db_stats, reset_db_stats
from app.services import build_services
from app.worker import run_once
from escalations import parse_ts
from job_queue import DEFAULT_STALE_MINUTES, JobQueueError
from job_schedules import ScheduleError
from notifications import NotificationError
from ops_metrics import MetricsError

app = FastAPI(title="Client Engine")
logger = logging.getLogger("client_engine")
logging.basicConfig(level=logging.INFO)

USE_DB = os.getenv("USE_DB", "").strip() == "1"
NOTIFY_RATE_LIMIT_MAX = int(os.getenv("NOTIFY_RATE_LIMIT_MAX", "10"))
NOTIFY_RATE_LIMIT_WINDOW_MS = int(os.getenv("NOTIFY_RATE_LIMIT_WINDOW_MS", "60000"))
SUMMARY_CACHE_TTL_MS = int(os.getenv("SUMMARY_CACHE_TTL_MS", "5000"))
METRICS_CACHE_TTL_MS = int(os.getenv("METRICS_CACHE_TTL_MS", "30000"))
JOB_STALE_MINUTES = float(os.getenv("JOB_STALE_MINUTES", str(DEFAULT_STALE_MINUTES)))
REQ_SLOW_MS = float(os.getenv("CE_REQ_SLOW_MS", "250"))
_SUMMARY_KEY = "jobs:summary"

services = build_services(use_db=USE_DB)


@app.middleware("http")
async def timing_middleware(request: Request, call_next):
    reset_db_stats()
    start = time.perf_counter()
    response = await call_next(request)
    total_ms = (time.perf_counter() - start) * 1000
    route = request.scope.get("route")
    route_name = getattr(route, "name", None) or "unknown"
    log = logger.warning if total_ms >= REQ_SLOW_MS else logger.info
    log(
        "%s %s %s route=%s total_ms=%.1f db_q=%s",
        request.method,
        request.url.path,
        response.status_code,
        route_name,
        total_ms,
        get_db_stats().get("queries", 0),
    )
    return response


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error path=%s", request.url.path)
    return _error_response("INTERNAL_ERROR", "Unexpected server error", detail={"error": str(exc)}, status=500)


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    body = {
        "ok": False,
        "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
        "warnings": [],
    }
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _ok_response(payload: dict, warnings: list | None = None, status: int = 200) -> JSONResponse:
    body = {"ok": True, **payload, "errors": [], "warnings": warnings or []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


_JOB_ERROR_STATUS = {"JOB_NOT_FOUND": 404, "JOB_NOT_RUNNING": 409, "JOB_NOT_RETRYABLE": 409}
_NOTIFICATION_ERROR_STATUS = {"DELIVERY_NOT_FOUND": 404, "EVENT_NOT_FOUND": 404, "NOTIFICATION_NOT_FOUND": 404}
_SCHEDULE_ERROR_STATUS = {"SCHEDULE_NOT_FOUND": 404, "SCHEDULE_KEY_EXISTS": 409}


def _job_error(exc: JobQueueError) -> JSONResponse:
    return _error_response(exc.code, exc.message, status=_JOB_ERROR_STATUS.get(exc.code, 400))


def _notification_error(exc: NotificationError) -> JSONResponse:
    return _error_response(exc.code, exc.message, status=_NOTIFICATION_ERROR_STATUS.get(exc.code, 400))


def _schedule_error(exc: ScheduleError) -> JSONResponse:
    return _error_response(exc.code, exc.message, exc.path, status=_SCHEDULE_ERROR_STATUS.get(exc.code, 400))


async def _safe_json(request: Request) -> dict:
    try:
        body = await request.json()
    except Exception:
        return {}
    return body if isinstance(body, dict) else {}


def _actor_key(request: Request) -> str:
    actor = (request.headers.get("x-actor-id") or "").strip()
    if actor:
        return actor
    return request.client.host if request.client else "anonymous"


async def _check_rate_limit(request: Request, scope: str) -> JSONResponse | None:
    key = f"{scope}:{_actor_key(request)}"
    result = await anyio.to_thread.run_sync(
        services.rate_limiter.check, key, NOTIFY_RATE_LIMIT_MAX, NOTIFY_RATE_LIMIT_WINDOW_MS
    )
    if result.ok:
        return None
    retry_after = result.retry_after_seconds()
    logger.info("rate_limited scope=%s key=%s retry_after=%s", scope, key, retry_after)
    response = _error_response("RATE_LIMITED", "Too many requests", detail={"retry_after": retry_after}, status=429)
    response.headers["Retry-After"] = str(retry_after)
    return response


def _int_param(value, default: int, low: int = 1, high: int = 500) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return max(low, min(number, high))


@app.get("/health")
async def health() -> dict:
    return {"ok": True}


# ---- Jobs ----


@app.post("/ops/jobs")
async def enqueue_job(request: Request):
    body = await _safe_json(request)
    run_after = None
    if body.get("run_after") is not None:
        run_after = parse_ts(body.get("run_after"))
        if run_after is None:
            return _error_response("RUN_AFTER_INVALID", "run_after must be an ISO-8601 timestamp", "run_after")
    try:
        job = await anyio.to_thread.run_sync(
            partial(
                services.jobs.enqueue,
                body.get("job_type"),
                body.get("payload") if "payload" in body else {},
                priority=body.get("priority", 0),
                idempotency_key=body.get("idempotency_key"),
                dedupe_key=body.get("dedupe_key"),
                run_after=run_after,
                max_attempts=body.get("max_attempts", 3),
                source_type=body.get("source_type"),
                source_id=body.get("source_id"),
                timeout_seconds=body.get("timeout_seconds"),
            )
        )
    except JobQueueError as exc:
        return _job_error(exc)
    services.cache.invalidate(_SUMMARY_KEY)
    return _ok_response({"job": job})


@app.get("/ops/jobs")
async def list_jobs(status: str | None = None, job_type: str | None = None, limit: int = 200):
    try:
        items = await anyio.to_thread.run_sync(
            partial(services.jobs.list, status=status, job_type=job_type, limit=_int_param(limit, 200))
        )
    except JobQueueError as exc:
        return _job_error(exc)
    return _ok_response({"jobs": items})


@app.get("/ops/jobs/summary")
async def jobs_summary():
    counts = await anyio.to_thread.run_sync(
        services.cache.get_or_compute, _SUMMARY_KEY, SUMMARY_CACHE_TTL_MS, services.jobs.summary
    )
    return _ok_response({"summary": counts})


@app.post("/ops/jobs/recover-stale")
async def recover_stale_jobs(request: Request):
    body = await _safe_json(request)
    threshold = body.get("threshold_minutes", JOB_STALE_MINUTES)
    try:
        recovered = await anyio.to_thread.run_sync(services.jobs.recover_stale, threshold)
    except JobQueueError as exc:
        return _job_error(exc)
    services.cache.invalidate(_SUMMARY_KEY)
    return _ok_response({"recovered": recovered, "count": len(recovered)})


@app.post("/ops/jobs/run-once")
async def run_jobs_once(request: Request):
    body = await _safe_json(request)
    worker_id = body.get("worker_id") or f"api-{uuid.uuid4()}"
    outcomes = await anyio.to_thread.run_sync(run_once, services, worker_id, _int_param(body.get("limit"), 5, high=50))
    services.cache.invalidate(_SUMMARY_KEY)
    return _ok_response({"outcomes": outcomes})


@app.get("/ops/jobs/{job_id}")
async def get_job(job_id: str):
    try:
        detail = await anyio.to_thread.run_sync(services.jobs.get_detail, job_id)
    except JobQueueError as exc:
        return _job_error(exc)
    return _ok_response(detail)


@app.post("/ops/jobs/{job_id}/cancel")
async def cancel_job(job_id: str):
    try:
        job = await anyio.to_thread.run_sync(services.jobs.cancel, job_id)
    except JobQueueError as exc:
        return _job_error(exc)
    services.cache.invalidate(_SUMMARY_KEY)
    return _ok_response({"job": job})


@app.post("/ops/jobs/{job_id}/retry")
async def retry_job(job_id: str):
    try:
        job = await anyio.to_thread.run_sync(services.jobs.requeue, job_id)
    except JobQueueError as exc:
        return _job_error(exc)
    services.cache.invalidate(_SUMMARY_KEY)
    return _ok_response({"job": job})


# ---- Pipeline ----


@app.post("/pipeline/leads/{lead_id}/run")
async def run_pipeline_for_lead(lead_id: str, request: Request):
    body = await _safe_json(request)
    result = await anyio.to_thread.run_sync(services.pipeline.run_if_eligible, lead_id, body.get("trigger") or "manual")
    return _ok_response({"result": result})


@app.post("/pipeline/run-eligible")
async def run_pipeline_eligible(request: Request):
    body = await _safe_json(request)
    result = await anyio.to_thread.run_sync(
        services.pipeline.run_eligible_batch, _int_param(body.get("limit"), 20, high=100), body.get("trigger") or "manual_batch"
    )
    return _ok_response(result)


@app.get("/pipeline/leads/{lead_id}/runs")
async def list_pipeline_runs(lead_id: str, limit: int = 20):
    runs = await anyio.to_thread.run_sync(partial(services.pipeline.list_runs, lead_id, limit=_int_param(limit, 20, high=100)))
    return _ok_response({"runs": runs})


@app.get("/pipeline/runs/{run_id}")
async def get_pipeline_run(run_id: str):
    run = await anyio.to_thread.run_sync(services.pipeline.get_run, run_id)
    if not run:
        return _error_response("RUN_NOT_FOUND", "Pipeline run not found", "run_id", status=404)
    return _ok_response({"run": run})


# ---- Notifications ----


@app.post("/notifications/dispatch")
async def dispatch_notifications(request: Request):
    limited = await _check_rate_limit(request, "notifications.dispatch")
    if limited:
        return limited
    body = await _safe_json(request)
    counts = await anyio.to_thread.run_sync(services.notifications.dispatch_pending, _int_param(body.get("limit"), 20, high=100))
    return _ok_response(counts)


@app.post("/notifications/escalations/evaluate")
async def evaluate_escalations(request: Request):
    limited = await _check_rate_limit(request, "notifications.escalations")
    if limited:
        return limited
    body = await _safe_json(request)
    result = await anyio.to_thread.run_sync(
        partial(services.notifications.evaluate_escalation_rules, limit=_int_param(body.get("limit"), 50, high=200))
    )
    return _ok_response(result)


@app.post("/notifications/deliveries/{delivery_id}/retry")
async def retry_notification_delivery(delivery_id: str):
    try:
        delivery = await anyio.to_thread.run_sync(services.notifications.retry_delivery, delivery_id)
    except NotificationError as exc:
        return _notification_error(exc)
    return _ok_response({"delivery": delivery})


@app.get("/notifications/events")
async def list_notification_events(status: str | None = None, limit: int = 100):
    events = await anyio.to_thread.run_sync(
        partial(services.notifications.list_events, status=status, limit=_int_param(limit, 100))
    )
    return _ok_response({"events": events})


@app.get("/notifications/inbox")
async def notification_inbox(unread_only: bool = False, limit: int = 200):
    inbox = await anyio.to_thread.run_sync(
        partial(services.notifications.list_inbox, unread_only=unread_only, limit=_int_param(limit, 200))
    )
    return _ok_response(inbox)


@app.post("/notifications/inbox/read_all")
async def notification_mark_all_read():
    count = await anyio.to_thread.run_sync(services.notifications.mark_all_read)
    return _ok_response({"count": count})


@app.post("/notifications/inbox/{notification_id}/read")
async def notification_mark_read(notification_id: str):
    try:
        item = await anyio.to_thread.run_sync(services.notifications.mark_read, notification_id)
    except NotificationError as exc:
        return _notification_error(exc)
    return _ok_response({"notification": item})


# ---- Job schedules ----


@app.get("/ops/job-schedules")
async def list_job_schedules():
    schedules = await anyio.to_thread.run_sync(services.schedules.list)
    return _ok_response({"schedules": schedules})


@app.post("/ops/job-schedules")
async def create_job_schedule(request: Request):
    body = await _safe_json(request)
    try:
        schedule = await anyio.to_thread.run_sync(services.schedules.create, body)
    except ScheduleError as exc:
        return _schedule_error(exc)
    return _ok_response({"schedule": schedule}, status=201)


@app.post("/ops/job-schedules/enqueue-due")
async def enqueue_due_job_schedules(request: Request):
    body = await _safe_json(request)
    result = await anyio.to_thread.run_sync(services.schedules.enqueue_due, _int_param(body.get("limit"), 20, high=50))
    if result["jobs_enqueued"]:
        services.cache.invalidate(_SUMMARY_KEY)
    return _ok_response(result)


@app.get("/ops/job-schedules/{schedule_id}")
async def get_job_schedule(schedule_id: str):
    try:
        schedule = await anyio.to_thread.run_sync(services.schedules.get, schedule_id)
    except ScheduleError as exc:
        return _schedule_error(exc)
    return _ok_response({"schedule": schedule})


@app.patch("/ops/job-schedules/{schedule_id}")
async def update_job_schedule(schedule_id: str, request: Request):
    body = await _safe_json(request)
    try:
        schedule = await anyio.to_thread.run_sync(services.schedules.update, schedule_id, body)
    except ScheduleError as exc:
        return _schedule_error(exc)
    return _ok_response({"schedule": schedule})


# ---- Metrics ----


@app.get("/ops/metrics")
async def ops_metrics(period: str = "24h"):
    try:
        summary = await anyio.to_thread.run_sync(
            services.cache.get_or_compute,
            f"metrics:{period}",
            METRICS_CACHE_TTL_MS,
            partial(services.metrics.summary, period),
        )
    except MetricsError as exc:
        return _error_response(exc.code, exc.message, "period")
    return _ok_response({"metrics": summary})
