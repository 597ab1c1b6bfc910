import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from event_bus import PIPELINE_RUN_FAILED, EventBus, EventValidationError, make_event


class TestEventBus(unittest.TestCase):
    def test_handlers_called_in_order(self) -> None:
        bus = EventBus()
        calls = []

        def h1(evt: dict) -> None:
            calls.append("h1")

        def h2(evt: dict) -> None:
            calls.append("h2")

        bus.subscribe(PIPELINE_RUN_FAILED, h1)
        bus.subscribe(PIPELINE_RUN_FAILED, h2)
        delivered = bus.publish(make_event(PIPELINE_RUN_FAILED, {"run_id": "r1"}, "pipeline"))
        self.assertEqual(calls, ["h1", "h2"])
        self.assertEqual(delivered, 2)

    def test_unsubscribe(self) -> None:
        bus = EventBus()
        calls = []

        def h1(evt: dict) -> None:
            calls.append("h1")

        bus.subscribe(PIPELINE_RUN_FAILED, h1)
        self.assertTrue(bus.unsubscribe(PIPELINE_RUN_FAILED, h1))
        self.assertFalse(bus.unsubscribe(PIPELINE_RUN_FAILED, h1))
        bus.publish(make_event(PIPELINE_RUN_FAILED, {"run_id": "r1"}, "pipeline"))
        self.assertEqual(calls, [])

    def test_failing_handler_does_not_stop_others(self) -> None:
        bus = EventBus()
        calls = []

        def broken(evt: dict) -> None:
            raise RuntimeError("handler down")

        bus.subscribe(PIPELINE_RUN_FAILED, broken)
        bus.subscribe(PIPELINE_RUN_FAILED, lambda evt: calls.append(evt["payload"]["run_id"]))
        with self.assertLogs("client_engine.events", level="ERROR"):
            delivered = bus.publish(make_event(PIPELINE_RUN_FAILED, {"run_id": "r1"}, "pipeline"))
        self.assertEqual(calls, ["r1"])
        self.assertEqual(delivered, 1)

    def test_make_event_envelope(self) -> None:
        event = make_event("job.dead_letter", {"job_id": "j1"}, "jobs", trace_id="t-1")
        self.assertEqual(event["meta"]["source"], "jobs")
        self.assertEqual(event["meta"]["trace_id"], "t-1")
        self.assertEqual(event["meta"]["schema_version"], "1")
        self.assertTrue(event["meta"]["occurred_at"].endswith("Z"))

    def test_invalid_envelope_missing_name(self) -> None:
        bus = EventBus()
        event = make_event("job.dead_letter", {"job_id": "j1"}, "jobs")
        event.pop("name")
        with self.assertRaises(EventValidationError):
            bus.publish(event)

    def test_invalid_occurred_at(self) -> None:
        bus = EventBus()
        event = make_event("job.dead_letter", {"job_id": "j1"}, "jobs")
        event["meta"]["occurred_at"] = "2026-01-29T01:23:45"
        with self.assertRaises(EventValidationError) as ctx:
            bus.publish(event)
        self.assertEqual(ctx.exception.code, "META_OCCURRED_AT_INVALID")

    def test_payload_rejects_nan_inf(self) -> None:
        bus = EventBus()
        event = make_event("job.dead_letter", {"value": 1.0}, "jobs")
        event["payload"]["value"] = float("nan")
        with self.assertRaises(EventValidationError):
            bus.publish(event)


if __name__ == "__main__":
    unittest.main()
