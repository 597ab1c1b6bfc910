"""Operational metrics over notifications, deliveries, escalations and jobs."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable

from escalations import parse_ts

logger = logging.getLogger("client_engine.metrics")

PERIOD_HOURS = {"24h": 24, "7d": 24 * 7}
STALE_RUNNING_MINUTES = 15


@dataclass
class MetricsError(Exception):
    code: str
    message: str

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.code}: {self.message}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _bump(counts: dict, key: Any) -> None:
    key = key or "unknown"
    counts[key] = counts.get(key, 0) + 1


def _avg_ms(pairs: Iterable[tuple]) -> int | None:
    spans = []
    for start, end in pairs:
        started, ended = parse_ts(start), parse_ts(end)
        if started and ended:
            spans.append((ended - started).total_seconds() * 1000)
    return round(sum(spans) / len(spans)) if spans else None


def summarize_notifications(events: list[dict], inbox: dict) -> dict:
    by_source: dict = {}
    by_event_key: dict = {}
    by_severity: dict = {}
    for event in events:
        _bump(by_source, event.get("source_type"))
        _bump(by_event_key, event.get("event_key"))
        _bump(by_severity, event.get("severity"))
    return {
        "total_created": len(events),
        "by_source_type": by_source,
        "by_event_key": by_event_key,
        "by_severity": by_severity,
        "in_app_read": int(inbox.get("read") or 0),
        "in_app_unread": int(inbox.get("unread") or 0),
    }


def summarize_deliveries(deliveries: list[dict]) -> dict:
    """Counts deliveries by outcome; only ``sent`` ones contribute latency."""
    totals = {"attempted": 0, "succeeded": 0, "failed": 0, "pending": 0, "retried": 0}
    by_channel: dict = {}
    for delivery in deliveries:
        status = delivery.get("status")
        attempt = int(delivery.get("attempt") or 0)
        channel = by_channel.setdefault(delivery.get("channel_type") or "unknown", {"attempted": 0, "succeeded": 0, "failed": 0})
        if attempt > 0:
            totals["attempted"] += 1
            channel["attempted"] += 1
        if attempt > 1:
            totals["retried"] += 1
        if status == "sent":
            totals["succeeded"] += 1
            channel["succeeded"] += 1
        elif status == "failed":
            totals["failed"] += 1
            channel["failed"] += 1
        elif status == "pending":
            totals["pending"] += 1
    sent = [(d.get("created_at"), d.get("sent_at")) for d in deliveries if d.get("status") == "sent"]
    return {**totals, "avg_latency_ms": _avg_ms(sent), "by_channel": by_channel}


def summarize_escalations(events: list[dict]) -> dict:
    escalated = [e for e in events if e.get("created_by_rule")]
    by_severity: dict = {}
    for event in escalated:
        _bump(by_severity, event.get("severity"))
    return {
        "rules_triggered": len({e["created_by_rule"] for e in escalated}),
        "events_created": len(escalated),
        "by_severity": by_severity,
    }


def summarize_jobs(counts: dict, finished: list[dict], dead_letters: int, stale_running: int) -> dict:
    succeeded = [j for j in finished if j.get("status") == "succeeded"]
    failed = sum(1 for j in finished if j.get("status") == "failed")
    total = len(succeeded) + failed
    return {
        "pending": int(counts.get("queued") or 0),
        "running": int(counts.get("running") or 0),
        "succeeded": len(succeeded),
        "failed": failed,
        "dead_letter": dead_letters,
        "stale_running": stale_running,
        "success_rate": len(succeeded) / total if total else None,
        "failure_rate": failed / total if total else None,
        "avg_processing_duration_ms": _avg_ms((j.get("started_at"), j.get("finished_at")) for j in succeeded),
    }


class MetricsCollector:
    def __init__(self, job_store: Any, notification_store: Any, clock: Callable[[], datetime] = _utcnow) -> None:
        self.job_store = job_store
        self.notification_store = notification_store
        self._clock = clock

    def summary(self, period: str = "24h") -> dict:
        """Metrics for the trailing ``period`` ("24h" or "7d"); job backlog counts are current."""
        hours = PERIOD_HOURS.get(period)
        if hours is None:
            raise MetricsError("PERIOD_INVALID", f"period must be one of {', '.join(PERIOD_HOURS)}")
        now = self._clock()
        since = _iso(now - timedelta(hours=hours))
        stale_cutoff = _iso(now - timedelta(minutes=STALE_RUNNING_MINUTES))
        events = self.notification_store.list_events_since(since)
        deliveries = self.notification_store.list_deliveries_since(since)
        stale = self.job_store.list_running_before(stale_cutoff, limit=1000)
        summary = {
            "period": period,
            "since": since,
            "notifications": summarize_notifications(events, self.notification_store.inbox_counts()),
            "deliveries": summarize_deliveries(deliveries),
            "escalations": summarize_escalations(events),
            "jobs": summarize_jobs(
                self.job_store.count_by_status(),
                self.job_store.list_finished_since(since),
                self.job_store.count_dead_letters(),
                len(stale),
            ),
        }
        logger.info(
            "metrics_summary period=%s events=%s deliveries=%s stale_running=%s",
            period,
            len(events),
            len(deliveries),
            len(stale),
        )
        return summary
