import os
import sys
import unittest
from datetime import datetime, timedelta, timezone

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.channels import ChannelError, InAppChannel
from app.stores import MemoryJobStore, MemoryNotificationStore, MemoryPipelineStore, seed_default_channels
from event_bus import JOB_DEAD_LETTER, PIPELINE_RUN_FAILED, EventBus, make_event
from notifications import NotificationDispatcher, NotificationError


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 5, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class _FlakyAdapter:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.sent: list = []

    def send(self, payload: dict, config: dict) -> dict:
        if self.failures > 0:
            self.failures -= 1
            raise ChannelError("HTTP 502: upstream", code="HTTP_ERROR")
        self.sent.append(payload)
        return {"provider_message_id": f"msg-{len(self.sent)}"}


class TestNotificationDispatcher(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = _Clock()
        self.store = MemoryNotificationStore()
        self.job_store = MemoryJobStore()
        self.pipeline_store = MemoryPipelineStore()
        seed_default_channels(self.store, ops_webhook_url="https://hooks.example.test/ops")
        self.webhook = _FlakyAdapter(failures=0)
        self.adapters = {"in_app": InAppChannel(self.store), "webhook": self.webhook}
        self.dispatcher = NotificationDispatcher(
            self.store,
            adapter_for=self.adapters.get,
            job_store=self.job_store,
            pipeline_store=self.pipeline_store,
            clock=self.clock,
        )

    def _channel(self, key: str) -> dict:
        return self.store.list_channels([key])[0]

    def test_create_event_dedupes_inside_window(self) -> None:
        first = self.dispatcher.create_event("job.dead_letter", severity="critical", dedupe_key="job:dead_letter:j1", meta={"job_type": "t"})
        second = self.dispatcher.create_event("job.dead_letter", severity="critical", dedupe_key="job:dead_letter:j1")
        self.assertTrue(first["created"])
        self.assertFalse(second["created"])
        self.assertEqual(first["id"], second["id"])
        self.clock.advance(minutes=61)
        third = self.dispatcher.create_event("job.dead_letter", severity="critical", dedupe_key="job:dead_letter:j1")
        self.assertTrue(third["created"])

    def test_create_event_renders_default_copy(self) -> None:
        result = self.dispatcher.create_event(
            "job.dead_letter", severity="critical", source_type="job", source_id="j9", meta={"job_type": "pipeline.run", "attempts": 3, "error": "boom"}
        )
        event = self.store.get_event(result["id"])
        self.assertEqual(event["title"], "Job dead-lettered: pipeline.run")
        self.assertIn("failed after 3 attempts: boom", event["message"])

    def test_invalid_severity_raises(self) -> None:
        with self.assertRaises(NotificationError) as ctx:
            self.dispatcher.create_event("x", severity="loud")
        self.assertEqual(ctx.exception.code, "SEVERITY_INVALID")

    def test_default_channels_by_severity(self) -> None:
        info = self.dispatcher.notify("lead.stuck", severity="info", meta={})
        critical = self.dispatcher.notify("job.dead_letter", severity="critical", meta={})
        self.assertEqual(info["queued"], 1)
        self.assertEqual(critical["queued"], 2)
        self.assertEqual(self.store.get_event(critical["id"])["status"], "queued")

    def test_queue_deliveries_skips_existing_and_severity_min(self) -> None:
        event = self.dispatcher.create_event("x", severity="warning")
        self.assertEqual(self.dispatcher.queue_deliveries(event["id"], ["in_app", "webhook_ops"])["queued"], 1)
        self.assertEqual(self.dispatcher.queue_deliveries(event["id"], ["in_app"])["queued"], 0)
        self.assertEqual(self.store.get_event(event["id"])["status"], "queued")

    def test_dispatch_sends_and_rolls_up_event(self) -> None:
        result = self.dispatcher.notify("job.dead_letter", severity="critical", source_id="j1", meta={})
        counts = self.dispatcher.dispatch_pending(limit=10)
        self.assertEqual(counts, {"sent": 2, "failed": 0, "skipped": 0})
        event = self.store.get_event(result["id"])
        self.assertEqual(event["status"], "sent")
        inbox = self.dispatcher.list_inbox()
        self.assertEqual(inbox["unread"], 1)
        self.assertEqual(inbox["items"][0]["event_id"], result["id"])
        self.assertEqual(self.webhook.sent[0]["event_key"], "job.dead_letter")

    def test_failed_delivery_retries_with_backoff_then_fails(self) -> None:
        self.webhook.failures = 10
        result = self.dispatcher.notify("job.dead_letter", severity="critical", meta={})
        webhook_channel = self._channel("webhook_ops")

        def webhook_delivery() -> dict:
            return next(d for d in self.store.list_deliveries(result["id"]) if d["channel_id"] == webhook_channel["id"])

        self.assertEqual(self.dispatcher.dispatch_pending(), {"sent": 1, "failed": 1, "skipped": 0})
        delivery = webhook_delivery()
        self.assertEqual(delivery["status"], "pending")
        self.assertEqual(delivery["attempt"], 1)
        self.assertEqual(delivery["error_code"], "HTTP_ERROR")
        self.assertEqual(delivery["run_after"], "2026-01-05T12:01:00Z")
        self.assertEqual(self.store.get_event(result["id"])["status"], "queued")

        self.assertEqual(self.dispatcher.dispatch_pending(), {"sent": 0, "failed": 0, "skipped": 0})
        self.clock.advance(minutes=1)
        self.dispatcher.dispatch_pending()
        self.assertEqual(webhook_delivery()["run_after"], "2026-01-05T12:06:00Z")
        self.clock.advance(minutes=5)
        self.dispatcher.dispatch_pending()
        delivery = webhook_delivery()
        self.assertEqual(delivery["status"], "failed")
        self.assertEqual(delivery["attempt"], 3)
        self.assertEqual(self.store.get_event(result["id"])["status"], "failed")

    def test_retry_delivery_resends_failed(self) -> None:
        self.webhook.failures = 3
        result = self.dispatcher.notify("job.dead_letter", severity="critical", meta={})
        for _ in range(3):
            self.dispatcher.dispatch_pending()
            self.clock.advance(minutes=20)
        delivery = next(d for d in self.store.list_deliveries(result["id"]) if d["status"] == "failed")
        retried = self.dispatcher.retry_delivery(delivery["id"])
        self.assertEqual(retried["status"], "sent")
        self.assertEqual(self.store.get_event(result["id"])["status"], "sent")
        # non-failed deliveries come back unchanged
        self.assertEqual(self.dispatcher.retry_delivery(delivery["id"])["status"], "sent")

    def test_retry_unknown_delivery(self) -> None:
        with self.assertRaises(NotificationError) as ctx:
            self.dispatcher.retry_delivery("missing")
        self.assertEqual(ctx.exception.code, "DELIVERY_NOT_FOUND")

    def test_missing_adapter_fails_delivery(self) -> None:
        self.store.upsert_channel({"key": "sms_ops", "type": "sms"})
        event = self.dispatcher.create_event("x", severity="info")
        self.dispatcher.queue_deliveries(event["id"], ["sms_ops"])
        self.assertEqual(self.dispatcher.dispatch_pending()["failed"], 1)
        delivery = self.store.list_deliveries(event["id"])[0]
        self.assertEqual(delivery["status"], "failed")
        self.assertEqual(delivery["error_code"], "NO_ADAPTER")

    def test_leased_delivery_is_not_sent_twice(self) -> None:
        event = self.dispatcher.notify("x", severity="info")
        delivery = self.store.list_deliveries(event["id"])[0]
        # another dispatcher holds the lease
        self.store.update_delivery(delivery["id"], {"attempt": 1, "run_after": "2026-01-05T12:02:00Z"}, expected={"attempt": 0})
        self.assertEqual(self.dispatcher.dispatch_delivery(delivery["id"]), "skipped")
        self.assertEqual(self.dispatcher.dispatch_pending(), {"sent": 0, "failed": 0, "skipped": 0})

    def test_stale_read_loses_the_lease(self) -> None:
        event = self.dispatcher.notify("x", severity="info")
        delivery = self.store.list_deliveries(event["id"])[0]
        original_get = self.store.get_delivery

        def stale_get(delivery_id: str):
            snapshot = original_get(delivery_id)
            self.store.update_delivery(delivery_id, {"attempt": 1}, expected={"attempt": 0})
            return snapshot

        self.store.get_delivery = stale_get
        try:
            self.assertEqual(self.dispatcher.dispatch_delivery(delivery["id"]), "skipped")
        finally:
            self.store.get_delivery = original_get
        self.assertEqual(self.dispatcher.list_inbox()["items"], [])

    def test_expired_last_attempt_lease_fails_and_frees_the_batch(self) -> None:
        stuck = self.dispatcher.notify("x", severity="info")
        stuck_delivery = self.store.list_deliveries(stuck["id"])[0]
        # a dispatcher leased the final attempt and died before recording an outcome
        self.store.update_delivery(stuck_delivery["id"], {"attempt": 3, "run_after": "2026-01-05T11:50:00Z"}, expected={"attempt": 0})
        fresh = self.dispatcher.notify("y", severity="info")

        self.assertEqual(self.dispatcher.dispatch_pending(limit=1), {"sent": 0, "failed": 1, "skipped": 0})
        expired = self.store.get_delivery(stuck_delivery["id"])
        self.assertEqual(expired["status"], "failed")
        self.assertEqual(expired["error_code"], "LEASE_EXPIRED")
        self.assertEqual(expired["attempt"], 3)
        self.assertEqual(self.store.get_event(stuck["id"])["status"], "failed")

        self.assertEqual(self.dispatcher.dispatch_pending(limit=1), {"sent": 1, "failed": 0, "skipped": 0})
        self.assertEqual(self.dispatcher.list_inbox()["items"][0]["event_id"], fresh["id"])
        self.assertEqual(self.dispatcher.dispatch_pending(limit=1), {"sent": 0, "failed": 0, "skipped": 0})

    def test_expired_lease_can_be_retried_by_operator(self) -> None:
        event = self.dispatcher.notify("x", severity="info")
        delivery = self.store.list_deliveries(event["id"])[0]
        self.store.update_delivery(delivery["id"], {"attempt": 3, "run_after": "2026-01-05T11:50:00Z"}, expected={"attempt": 0})
        self.assertEqual(self.dispatcher.dispatch_delivery(delivery["id"]), "failed")
        self.assertEqual(self.dispatcher.retry_delivery(delivery["id"])["status"], "sent")
        self.assertEqual(self.store.get_event(event["id"])["status"], "sent")

    def test_lead_stuck_rule_watches_its_own_statuses(self) -> None:
        self.store.upsert_rule(
            {
                "key": "nurture_stuck",
                "source_type": "lead",
                "trigger_type": "stuck",
                "conditions": {"statuses": ["NURTURE"], "hours": 24},
            }
        )
        old = "2026-01-02T12:00:00Z"
        nurture = self.pipeline_store.create_lead({"title": "Nurture", "status": "NURTURE", "updated_at": old})
        self.pipeline_store.create_lead({"title": "New", "status": "NEW", "updated_at": old})
        result = self.dispatcher.evaluate_escalation_rules()
        self.assertEqual(result["created"], 1)
        events = self.store.list_events()
        self.assertEqual(events[0]["source_id"], nurture["id"])
        self.assertEqual(events[0]["created_by_rule"], "nurture_stuck")

    def test_no_lead_query_without_stuck_rule(self) -> None:
        self.store.upsert_rule({"key": "dead_letters", "source_type": "job", "trigger_type": "dead_letter"})
        self.pipeline_store.create_lead({"title": "New", "updated_at": "2026-01-01T00:00:00Z"})
        self.assertEqual(self.dispatcher.build_snapshot(self.clock(), self.store.list_rules())["leads"], [])

    def test_escalation_rules_create_once_per_window(self) -> None:
        self.store.upsert_rule({"key": "dead_letters", "source_type": "job", "trigger_type": "dead_letter", "severity": "critical"})
        self.store.upsert_rule({"key": "stale", "source_type": "job", "trigger_type": "stale_running"})
        dead, _ = self.job_store.insert({"job_type": "pipeline.run", "payload": {}})
        self.job_store.update(dead["id"], {"status": "failed", "dead_lettered_at": "2026-01-05T11:00:00Z", "attempts": 3})
        stuck, _ = self.job_store.insert({"job_type": "t", "payload": {}})
        self.job_store.update(stuck["id"], {"status": "running", "lock_owner": "w1", "locked_at": "2026-01-05T11:30:00Z"})

        first = self.dispatcher.evaluate_escalation_rules()
        self.assertEqual(first["created"], 2)
        self.assertEqual(first["queued"], 4)
        second = self.dispatcher.evaluate_escalation_rules()
        self.assertEqual(second, {"created": 0, "queued": 0})
        keys = sorted(e["dedupe_key"] for e in self.store.list_events())
        self.assertEqual(keys, [f"job:dead_letter:{dead['id']}", f"job:stale_running:{stuck['id']}"])

    def test_domain_events_become_notifications(self) -> None:
        bus = EventBus()
        self.dispatcher.subscribe(bus)
        bus.publish(make_event(PIPELINE_RUN_FAILED, {"lead_id": "l1", "run_id": "r1", "failed_step": "score", "error": "boom"}, "test"))
        bus.publish(make_event(JOB_DEAD_LETTER, {"job_id": "j1", "job_type": "t", "attempts": 3, "error": "x"}, "test"))
        events = {e["event_key"]: e for e in self.dispatcher.list_events()}
        self.assertEqual(events["pipeline.run_failed"]["severity"], "warning")
        self.assertEqual(events["pipeline.run_failed"]["title"], "Pipeline run failed at score")
        self.assertEqual(events["job.dead_letter"]["severity"], "critical")
        self.assertEqual(len(events["job.dead_letter"]["deliveries"]), 2)

    def test_inbox_mark_read(self) -> None:
        self.dispatcher.notify("x", severity="info")
        self.dispatcher.notify("y", severity="info")
        self.dispatcher.dispatch_pending()
        items = self.dispatcher.list_inbox()["items"]
        self.dispatcher.mark_read(items[0]["id"])
        self.assertEqual(self.dispatcher.list_inbox()["unread"], 1)
        self.assertEqual(self.dispatcher.mark_all_read(), 1)
        self.assertEqual(self.dispatcher.list_inbox(unread_only=True)["items"], [])
        with self.assertRaises(NotificationError):
            self.dispatcher.mark_read("missing")


if __name__ == "__main__":
    unittest.main()
