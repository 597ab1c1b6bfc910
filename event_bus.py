"""In-process domain event bus with envelope validation."""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from client_engine.payloads import PayloadError, validate_payload

logger = logging.getLogger("client_engine.events")

Event = Dict[str, Any]
Handler = Callable[[Event], None]

PIPELINE_RUN_SUCCEEDED = "pipeline.run_succeeded"
PIPELINE_RUN_FAILED = "pipeline.run_failed"
JOB_DEAD_LETTER = "job.dead_letter"


@dataclass
class EventError(Exception):
    message: str

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return self.message


@dataclass
class EventValidationError(EventError):
    code: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


def _raise(code: str, message: str, path: str | None = None) -> None:
    raise EventValidationError(code=code, message=message, path=path)


def _validate_occurred_at(value: Any) -> None:
    if not isinstance(value, str) or not value.endswith("Z"):
        _raise("META_OCCURRED_AT_INVALID", "occurred_at must be a UTC string ending with 'Z'", "meta.occurred_at")
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        _raise("META_OCCURRED_AT_INVALID", "occurred_at must be ISO8601", "meta.occurred_at")


def validate_event(event: Any) -> None:
    if not isinstance(event, dict):
        _raise("EVENT_INVALID", "event must be object")
    name = event.get("name")
    if not isinstance(name, str) or not name:
        _raise("EVENT_NAME_INVALID", "name must be non-empty string", "name")

    payload = event.get("payload")
    try:
        validate_payload(payload, max_bytes=None)
    except PayloadError as exc:
        _raise(exc.code, exc.message, "payload" + exc.path[1:])

    meta = event.get("meta")
    if not isinstance(meta, dict):
        _raise("META_INVALID", "meta must be object", "meta")
    if not isinstance(meta.get("event_id"), str):
        _raise("META_EVENT_ID_INVALID", "event_id must be string", "meta.event_id")
    _validate_occurred_at(meta.get("occurred_at"))
    if not isinstance(meta.get("source"), str):
        _raise("META_SOURCE_INVALID", "source must be string", "meta.source")
    trace_id = meta.get("trace_id")
    if trace_id is not None and not isinstance(trace_id, str):
        _raise("META_TRACE_ID_INVALID", "trace_id must be string or null", "meta.trace_id")
    if meta.get("schema_version") != "1":
        _raise("META_SCHEMA_VERSION_INVALID", "schema_version must be '1'", "meta.schema_version")


def make_event(name: str, payload: dict, source: str, trace_id: str | None = None) -> Event:
    event = {
        "name": name,
        "payload": copy.deepcopy(payload),
        "meta": {
            "event_id": str(uuid.uuid4()),
            "occurred_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "source": source,
            "trace_id": trace_id,
            "schema_version": "1",
        },
    }
    validate_event(event)
    return event


class EventBus:
    """Synchronous fan-out to subscribers.

    A failing handler is logged and does not stop the remaining handlers or
    the publisher: domain events are raised after state is already committed.
    """

    def __init__(self) -> None:
        self._subs: Dict[str, List[Handler]] = {}
        self._lock = threading.Lock()

    def subscribe(self, name: str, handler: Handler) -> None:
        with self._lock:
            self._subs.setdefault(name, []).append(handler)

    def unsubscribe(self, name: str, handler: Handler) -> bool:
        with self._lock:
            handlers = self._subs.get(name)
            if not handlers or handler not in handlers:
                return False
            handlers.remove(handler)
            if not handlers:
                del self._subs[name]
            return True

    def publish(self, event: dict) -> int:
        validate_event(event)
        with self._lock:
            handlers = list(self._subs.get(event["name"], []))
        delivered = 0
        for handler in handlers:
            try:
                handler(event)
                delivered += 1
            except Exception:
                logger.exception(
                    "event_handler_failed event=%s event_id=%s handler=%s",
                    event["name"],
                    event["meta"]["event_id"],
                    getattr(handler, "__name__", repr(handler)),
                )
        return delivered
