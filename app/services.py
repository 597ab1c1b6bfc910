"""Builds the engine objects shared by the HTTP app and the worker."""

from __future__ import annotations

import importlib
import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict

from advisory_lock import AdvisoryLockManager, MemoryAdvisoryLockManager
from app.channels import get_adapter_for_channel_type
from app.stores import (
    MemoryJobStore,
    MemoryNotificationStore,
    MemoryPipelineStore,
    MemoryScheduleStore,
    seed_default_channels,
)
from event_bus import EventBus
from job_queue import BackoffPolicy, JobQueue
from job_schedules import JobScheduler
from notifications import NotificationDispatcher
from ops_metrics import MetricsCollector
from pipeline_runner import PipelineRunner, default_steps
from rate_limit import MemoryRateLimiter, RateLimiter
from ttl_cache import TTLCache

logger = logging.getLogger("client_engine.services")


def backoff_from_env() -> BackoffPolicy:
    return BackoffPolicy(
        kind=os.getenv("JOB_BACKOFF_KIND", "exponential").strip().lower() or "exponential",
        base_seconds=int(os.getenv("JOB_BACKOFF_BASE_SECONDS", "60")),
        max_seconds=int(os.getenv("JOB_BACKOFF_MAX_SECONDS", "3600")),
    )


def load_step_runners() -> Dict[str, Callable[[str], Any]]:
    """Step work comes from the module named by PIPELINE_STEPS_MODULE (its STEP_RUNNERS dict)."""
    module_name = os.getenv("PIPELINE_STEPS_MODULE", "").strip()
    if not module_name:
        logger.warning("pipeline_steps_not_configured steps will fail with step_not_configured")
        return {}
    module = importlib.import_module(module_name)
    runners = getattr(module, "STEP_RUNNERS", None)
    if not isinstance(runners, dict):
        raise RuntimeError(f"{module_name} must define a STEP_RUNNERS dict")
    return runners


@dataclass
class Services:
    bus: EventBus
    job_store: Any
    pipeline_store: Any
    notification_store: Any
    schedule_store: Any
    locks: AdvisoryLockManager
    rate_limiter: RateLimiter
    cache: TTLCache
    jobs: JobQueue
    pipeline: PipelineRunner
    notifications: NotificationDispatcher
    schedules: JobScheduler
    metrics: MetricsCollector


def build_services(
    use_db: bool = False,
    step_runners: Dict[str, Callable[[str], Any]] | None = None,
    backoff: BackoffPolicy | None = None,
) -> Services:
    if use_db:
        from app.stores_db import (
            DbAdvisoryLockManager,
            DbJobStore,
            DbNotificationStore,
            DbPipelineStore,
            DbRateLimiter,
            DbScheduleStore,
        )

        job_store = DbJobStore()
        pipeline_store = DbPipelineStore()
        notification_store = DbNotificationStore()
        schedule_store = DbScheduleStore()
        locks: AdvisoryLockManager = DbAdvisoryLockManager()
        rate_limiter: RateLimiter = DbRateLimiter()
    else:
        job_store = MemoryJobStore()
        pipeline_store = MemoryPipelineStore()
        notification_store = MemoryNotificationStore()
        schedule_store = MemoryScheduleStore()
        locks = MemoryAdvisoryLockManager()
        rate_limiter = MemoryRateLimiter()

    seed_default_channels(
        notification_store,
        ops_webhook_url=os.getenv("OPS_WEBHOOK_URL") or None,
        notify_email=os.getenv("NOTIFY_EMAIL") or None,
    )

    bus = EventBus()
    jobs = JobQueue(job_store, bus=bus, backoff=backoff or backoff_from_env())
    runners = step_runners if step_runners is not None else load_step_runners()
    pipeline = PipelineRunner(pipeline_store, locks, steps=default_steps(runners), bus=bus)
    dispatcher = NotificationDispatcher(
        notification_store,
        adapter_for=lambda channel_type: get_adapter_for_channel_type(channel_type, notification_store),
        job_store=job_store,
        pipeline_store=pipeline_store,
    )
    dispatcher.subscribe(bus)
    logger.info("services_ready use_db=%s steps=%s", int(use_db), sorted(runners))
    return Services(
        bus=bus,
        job_store=job_store,
        pipeline_store=pipeline_store,
        notification_store=notification_store,
        schedule_store=schedule_store,
        locks=locks,
        rate_limiter=rate_limiter,
        cache=TTLCache(),
        jobs=jobs,
        pipeline=pipeline,
        notifications=dispatcher,
        schedules=JobScheduler(schedule_store, jobs),
        metrics=MetricsCollector(job_store, notification_store),
    )
