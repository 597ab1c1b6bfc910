"""Notification events, per-channel deliveries and escalation rules.

An event fans out into one delivery per selected channel. Deliveries are
sent by ``dispatch_pending`` (manual, cron or the worker), retried with a
short backoff, and roll up into the event status:
``sent`` when every delivery is sent, ``failed`` once any delivery failed
for good, ``queued`` while deliveries are outstanding.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable

from escalations import SEVERITIES, evaluate_rules, stuck_statuses
from event_bus import JOB_DEAD_LETTER, PIPELINE_RUN_FAILED, EventBus
from notification_format import format_notification

logger = logging.getLogger("client_engine.notifications")

SEVERITY_ORDER = {name: index for index, name in enumerate(SEVERITIES)}
BACKOFF_MINUTES = (1, 5, 15)
DELIVERY_LEASE_SECONDS = 120
DEFAULT_DEDUPE_WINDOW_MINUTES = 60
_ERROR_MAX_CHARS = 1000


@dataclass
class NotificationError(Exception):
    code: str
    message: str

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.code}: {self.message}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def meets_severity_min(severity: str, channel_min: str | None) -> bool:
    if not channel_min:
        return True
    return SEVERITY_ORDER.get(severity, 0) >= SEVERITY_ORDER.get(channel_min, 0)


def default_channel_keys(severity: str) -> list[str]:
    keys = ["in_app"]
    if severity == "critical":
        keys.append("webhook_ops")
    return keys


class NotificationDispatcher:
    def __init__(
        self,
        store: Any,
        adapter_for: Callable[[str], Any] | None = None,
        job_store: Any = None,
        pipeline_store: Any = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.adapter_for = adapter_for or (lambda _channel_type: None)
        self.job_store = job_store
        self.pipeline_store = pipeline_store
        self._clock = clock

    # events

    def create_event(
        self,
        event_key: str,
        title: str | None = None,
        message: str | None = None,
        severity: str = "info",
        source_type: str | None = None,
        source_id: str | None = None,
        action_url: str | None = None,
        meta: dict | None = None,
        dedupe_key: str | None = None,
        created_by_rule: str | None = None,
        dedupe_window_minutes: int = DEFAULT_DEDUPE_WINDOW_MINUTES,
    ) -> dict:
        if not isinstance(event_key, str) or not event_key:
            raise NotificationError("EVENT_KEY_INVALID", "event_key must be a non-empty string")
        if severity not in SEVERITY_ORDER:
            raise NotificationError("SEVERITY_INVALID", f"Unknown severity: {severity}")
        now = self._clock()
        if dedupe_key:
            since = _iso(now - timedelta(minutes=dedupe_window_minutes))
            existing = self.store.find_event_by_dedupe_key(dedupe_key, since)
            if existing:
                logger.info("notification_event_deduped event_key=%s dedupe_key=%s", event_key, dedupe_key)
                return {"id": existing["id"], "created": False}
        if title is None or message is None:
            default_title, default_message = format_notification(event_key, source_type, source_id, meta)
            title = default_title if title is None else title
            message = default_message if message is None else message
        event = self.store.create_event(
            {
                "event_key": event_key,
                "title": title,
                "message": message,
                "severity": severity,
                "source_type": source_type,
                "source_id": source_id,
                "action_url": action_url,
                "meta": meta or {},
                "dedupe_key": dedupe_key,
                "created_by_rule": created_by_rule,
                "occurred_at": _iso(now),
                "created_at": _iso(now),
            }
        )
        logger.info("notification_event_created event_id=%s event_key=%s severity=%s", event["id"], event_key, severity)
        return {"id": event["id"], "created": True}

    def queue_deliveries(self, event_id: str, channel_keys: Iterable[str] | None = None) -> dict:
        event = self.store.get_event(event_id)
        if not event:
            raise NotificationError("EVENT_NOT_FOUND", f"Notification event not found: {event_id}")
        keys = list(channel_keys) if channel_keys is not None else default_channel_keys(event["severity"])
        existing = {d["channel_id"] for d in self.store.list_deliveries(event_id)}
        now = _iso(self._clock())
        queued = 0
        for channel in self.store.list_channels(keys, enabled_only=True):
            if not meets_severity_min(event["severity"], channel.get("severity_min")):
                continue
            if channel["id"] in existing:
                continue
            self.store.create_delivery({"event_id": event_id, "channel_id": channel["id"], "run_after": now, "created_at": now})
            queued += 1
        if queued:
            self.store.update_event(event_id, {"status": "queued", "queued_at": now})
        logger.info("notification_deliveries_queued event_id=%s queued=%s", event_id, queued)
        return {"queued": queued}

    def notify(self, event_key: str, channel_keys: Iterable[str] | None = None, **fields: Any) -> dict:
        result = self.create_event(event_key, **fields)
        result["queued"] = self.queue_deliveries(result["id"], channel_keys)["queued"] if result["created"] else 0
        return result

    # deliveries

    def _refresh_event_status(self, event_id: str) -> None:
        event = self.store.get_event(event_id)
        deliveries = self.store.list_deliveries(event_id)
        if not event or not deliveries:
            return
        now = _iso(self._clock())
        failed = [d for d in deliveries if d["status"] == "failed"]
        if failed:
            updates = {"status": "failed", "failed_at": event.get("failed_at") or now, "error_message": failed[0].get("error_message")}
        elif all(d["status"] == "sent" for d in deliveries):
            updates = {"status": "sent", "sent_at": event.get("sent_at") or now, "error_message": None}
        else:
            updates = {"status": "queued", "failed_at": None}
        if event.get("status") != updates["status"]:
            self.store.update_event(event_id, updates)

    def dispatch_delivery(self, delivery_id: str) -> str:
        """Send one delivery. Returns ``sent``, ``retry``, ``failed`` or ``skipped``."""
        delivery = self.store.get_delivery(delivery_id)
        if not delivery:
            raise NotificationError("DELIVERY_NOT_FOUND", f"Delivery not found: {delivery_id}")
        now_dt = self._clock()
        now = _iso(now_dt)
        attempt = int(delivery.get("attempt") or 0)
        if delivery["status"] != "pending" or (delivery.get("run_after") or "") > now:
            return "skipped"
        if attempt >= int(delivery.get("max_attempts") or 3):
            return self._expire_lease(delivery, now)
        # lease the delivery: concurrent dispatchers see a bumped attempt and back off
        claimed = self.store.update_delivery(
            delivery_id,
            {"attempt": attempt + 1, "run_after": _iso(now_dt + timedelta(seconds=DELIVERY_LEASE_SECONDS))},
            expected={"status": "pending", "attempt": attempt},
        )
        if not claimed:
            return "skipped"

        event = self.store.get_event(delivery["event_id"]) or {}
        channel = self.store.get_channel(delivery["channel_id"]) or {}
        adapter = self.adapter_for(channel.get("type"))
        if adapter is None:
            self.store.update_delivery(
                delivery_id,
                {
                    "status": "failed",
                    "failed_at": now,
                    "error_code": "NO_ADAPTER",
                    "error_message": f"No adapter for channel type: {channel.get('type')}",
                },
            )
            logger.warning("notification_no_adapter delivery_id=%s channel_type=%s", delivery_id, channel.get("type"))
            self._refresh_event_status(delivery["event_id"])
            return "failed"

        payload = {
            "event_id": event.get("id"),
            "event_key": event.get("event_key"),
            "title": event.get("title"),
            "message": event.get("message"),
            "severity": event.get("severity"),
            "source_type": event.get("source_type"),
            "source_id": event.get("source_id"),
            "action_url": event.get("action_url"),
            "meta": event.get("meta") or {},
            "occurred_at": event.get("occurred_at"),
        }
        try:
            response = adapter.send(payload, channel.get("config") or {}) or {}
        except Exception as exc:
            return self._record_failure(claimed, exc)

        self.store.update_delivery(
            delivery_id,
            {
                "status": "sent",
                "sent_at": _iso(self._clock()),
                "provider_message_id": response.get("provider_message_id"),
                "error_code": None,
                "error_message": None,
            },
        )
        logger.info("notification_delivery_sent delivery_id=%s channel=%s", delivery_id, channel.get("key"))
        self._refresh_event_status(delivery["event_id"])
        return "sent"

    def _expire_lease(self, delivery: dict, now: str) -> str:
        """The last attempt was leased and its lease ran out without an outcome."""
        expired = self.store.update_delivery(
            delivery["id"],
            {
                "status": "failed",
                "failed_at": now,
                "error_code": "LEASE_EXPIRED",
                "error_message": f"Attempt {delivery.get('attempt')} did not finish before its lease expired",
            },
            expected={"status": "pending", "attempt": delivery.get("attempt")},
        )
        if not expired:
            return "skipped"
        logger.warning("notification_delivery_lease_expired delivery_id=%s attempt=%s", delivery["id"], delivery.get("attempt"))
        self._refresh_event_status(delivery["event_id"])
        return "failed"

    def _record_failure(self, delivery: dict, exc: Exception) -> str:
        now_dt = self._clock()
        attempt = int(delivery["attempt"])
        message = str(exc) or exc.__class__.__name__
        message = message if len(message) <= _ERROR_MAX_CHARS else message[: _ERROR_MAX_CHARS - 3] + "..."
        error_code = getattr(exc, "code", None) or "SEND_FAILED"
        if attempt < int(delivery.get("max_attempts") or 3):
            delay = BACKOFF_MINUTES[min(attempt - 1, len(BACKOFF_MINUTES) - 1)]
            updates = {
                "status": "pending",
                "run_after": _iso(now_dt + timedelta(minutes=delay)),
                "error_code": error_code,
                "error_message": message,
            }
            outcome = "retry"
        else:
            updates = {"status": "failed", "failed_at": _iso(now_dt), "error_code": error_code, "error_message": message}
            outcome = "failed"
        self.store.update_delivery(delivery["id"], updates)
        logger.warning(
            "notification_delivery_failed delivery_id=%s attempt=%s outcome=%s error=%s",
            delivery["id"],
            attempt,
            outcome,
            message,
        )
        self._refresh_event_status(delivery["event_id"])
        return outcome

    def dispatch_pending(self, limit: int = 20) -> dict:
        counts = {"sent": 0, "failed": 0, "skipped": 0}
        due = self.store.list_due_deliveries(_iso(self._clock()), max(1, int(limit)))
        for delivery in due:
            try:
                outcome = self.dispatch_delivery(delivery["id"])
            except Exception:
                logger.exception("notification_dispatch_error delivery_id=%s", delivery["id"])
                outcome = "failed"
            counts["sent" if outcome == "sent" else "skipped" if outcome == "skipped" else "failed"] += 1
        if due:
            logger.info("notification_dispatch_cycle sent=%s failed=%s skipped=%s", counts["sent"], counts["failed"], counts["skipped"])
        return counts

    def retry_delivery(self, delivery_id: str) -> dict:
        delivery = self.store.get_delivery(delivery_id)
        if not delivery:
            raise NotificationError("DELIVERY_NOT_FOUND", f"Delivery not found: {delivery_id}")
        if delivery["status"] != "failed":
            return delivery
        attempt = int(delivery.get("attempt") or 0)
        self.store.update_delivery(
            delivery_id,
            {
                "status": "pending",
                "run_after": _iso(self._clock()),
                "failed_at": None,
                "error_code": None,
                "error_message": None,
                "max_attempts": max(int(delivery.get("max_attempts") or 3), attempt + 1),
            },
            expected={"status": "failed"},
        )
        self._refresh_event_status(delivery["event_id"])
        logger.info("notification_delivery_retry delivery_id=%s", delivery_id)
        self.dispatch_delivery(delivery_id)
        return self.store.get_delivery(delivery_id)

    # escalations

    def build_snapshot(self, now: datetime, rules: Iterable[dict] = ()) -> dict:
        now_iso = _iso(now)
        snapshot: dict = {"dead_letter_jobs": [], "running_jobs": [], "failed_runs": [], "leads": []}
        if self.job_store is not None:
            snapshot["dead_letter_jobs"] = self.job_store.list_dead_letters(limit=20)
            snapshot["running_jobs"] = self.job_store.list_running_before(now_iso, limit=50)
        if self.pipeline_store is not None:
            snapshot["failed_runs"] = self.pipeline_store.list_runs(status="failed", limit=20)
            statuses = stuck_statuses(rules)
            if statuses:
                snapshot["leads"] = self.pipeline_store.list_leads_updated_before(statuses, now_iso, limit=50)
        return snapshot

    def evaluate_escalation_rules(self, limit: int = 50, now: datetime | None = None) -> dict:
        now = now or self._clock()
        rules = self.store.list_rules(enabled_only=True, limit=limit)
        created = 0
        queued = 0
        if not rules:
            return {"created": 0, "queued": 0}
        for candidate in evaluate_rules(rules, self.build_snapshot(now, rules), now):
            result = self.create_event(
                candidate["event_key"],
                severity=candidate["severity"],
                source_type=candidate.get("source_type"),
                source_id=candidate.get("source_id"),
                action_url=candidate.get("action_url"),
                meta=candidate.get("meta"),
                dedupe_key=candidate["dedupe_key"],
                created_by_rule=candidate.get("rule_key"),
                dedupe_window_minutes=candidate["dedupe_window_minutes"],
            )
            if result["created"]:
                created += 1
                queued += self.queue_deliveries(result["id"], candidate.get("channel_targets"))["queued"]
        logger.info("escalations_evaluated rules=%s created=%s queued=%s", len(rules), created, queued)
        return {"created": created, "queued": queued}

    # domain events

    def handle_domain_event(self, event: dict) -> dict | None:
        payload = event.get("payload") or {}
        if event.get("name") == PIPELINE_RUN_FAILED:
            return self.notify(
                "pipeline.run_failed",
                severity="warning",
                source_type="lead",
                source_id=payload.get("lead_id"),
                action_url=f"/pipeline/runs/{payload.get('run_id')}",
                meta={"run_id": payload.get("run_id"), "failed_step": payload.get("failed_step"), "error": payload.get("error")},
                dedupe_key=f"pipeline:run_failed:{payload.get('run_id')}",
            )
        if event.get("name") == JOB_DEAD_LETTER:
            return self.notify(
                "job.dead_letter",
                severity="critical",
                source_type="job",
                source_id=payload.get("job_id"),
                action_url="/ops/jobs",
                meta={"job_type": payload.get("job_type"), "attempts": payload.get("attempts"), "error": payload.get("error")},
                dedupe_key=f"job:dead_letter:{payload.get('job_id')}",
            )
        return None

    def subscribe(self, bus: EventBus) -> None:
        bus.subscribe(PIPELINE_RUN_FAILED, self.handle_domain_event)
        bus.subscribe(JOB_DEAD_LETTER, self.handle_domain_event)

    # reads

    def list_events(self, status: str | None = None, limit: int = 100) -> list[dict]:
        events = self.store.list_events(status=status, limit=limit)
        for event in events:
            event["deliveries"] = self.store.list_deliveries(event["id"])
        return events

    def list_inbox(self, unread_only: bool = False, limit: int = 200) -> dict:
        return {"items": self.store.list_in_app(unread_only=unread_only, limit=limit), "unread": self.store.unread_count()}

    def mark_read(self, notification_id: str) -> dict:
        item = self.store.mark_read(notification_id)
        if not item:
            raise NotificationError("NOTIFICATION_NOT_FOUND", f"Notification not found: {notification_id}")
        return item

    def mark_all_read(self) -> int:
        return self.store.mark_all_read()
