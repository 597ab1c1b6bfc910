from __future__ import annotations

import logging
from typing import Any, Dict, Tuple

from jinja2 import StrictUndefined, TemplateError, Undefined
from jinja2.sandbox import ImmutableSandboxedEnvironment

logger = logging.getLogger("client_engine.notifications")

_ALLOWED_FILTERS = {"default", "lower", "upper", "title", "trim", "replace", "round", "length", "truncate"}

# event_key -> (title, message)
TEMPLATES: Dict[str, Tuple[str, str]] = {
    "job.dead_letter": (
        "Job dead-lettered: {{ meta.job_type | default('job') }}",
        "Job {{ source_id }} ({{ meta.job_type | default('unknown') }}) failed after "
        "{{ meta.attempts | default('?') }} attempts: {{ meta.error | default('no error recorded', true) | truncate(300) }}",
    ),
    "job.stale_running": (
        "Job stuck running: {{ meta.job_type | default('job') }}",
        "Job {{ source_id }} has held its lease for more than {{ meta.minutes | default(10) }} minutes"
        "{% if meta.lock_owner is defined and meta.lock_owner %} (worker {{ meta.lock_owner }}){% endif %}.",
    ),
    "pipeline.run_failed": (
        "Pipeline run failed{% if meta.failed_step is defined and meta.failed_step %} at {{ meta.failed_step }}{% endif %}",
        "Run {{ meta.run_id | default('?') }} for lead {{ source_id }} failed: "
        "{{ meta.error | default('unknown error', true) | truncate(300) }}",
    ),
    "lead.stuck": (
        "Lead stuck in {{ meta.status | default('pipeline') }}",
        "{{ meta.title | default('Lead ' ~ source_id, true) }} has not moved for {{ meta.hours | default(48) }} hours.",
    ),
}

_FALLBACK = ("{{ event_key }}", "{{ event_key }}{% if source_id %} ({{ source_type }} {{ source_id }}){% endif %}")


class _LockedSandbox(ImmutableSandboxedEnvironment):
    def is_safe_attribute(self, obj, attr, value) -> bool:
        return False

    def is_safe_callable(self, obj) -> bool:
        return False


def _env(strict: bool) -> _LockedSandbox:
    env = _LockedSandbox(autoescape=False, undefined=StrictUndefined if strict else Undefined)
    env.globals = {}
    env.filters = {key: val for key, val in env.filters.items() if key in _ALLOWED_FILTERS}
    return env


_STRICT = _env(strict=True)
_LENIENT = _env(strict=False)


def _sanitize(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(key): _sanitize(val) for key, val in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(val) for val in value]
    return str(value)


def render(text: str, context: dict, strict: bool = True) -> str:
    env = _STRICT if strict else _LENIENT
    return env.from_string(text).render(_sanitize(context))


def format_notification(
    event_key: str,
    source_type: str | None = None,
    source_id: str | None = None,
    meta: dict | None = None,
) -> tuple[str, str]:
    """Title and message for an event; falls back to the event key on template errors."""
    title_tpl, message_tpl = TEMPLATES.get(event_key, _FALLBACK)
    context = {
        "event_key": event_key,
        "source_type": source_type,
        "source_id": source_id,
        "meta": _sanitize(meta or {}),
    }
    try:
        return render(title_tpl, context).strip(), render(message_tpl, context).strip()
    except (TemplateError, TypeError) as exc:
        logger.warning("notification_format_failed event_key=%s error=%s", event_key, exc)
        return event_key, render(_FALLBACK[1], context, strict=False).strip()
