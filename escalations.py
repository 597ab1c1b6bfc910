"""Escalation rules evaluated against a point-in-time snapshot.

``evaluate_rules`` is pure: it reads the snapshot and returns notification
candidates, each with a ``dedupe_key``. Deciding whether a candidate already
has an open event inside the rule's window is the dispatcher's job.

Snapshot keys:
  dead_letter_jobs   failed jobs with ``dead_lettered_at``
  running_jobs       jobs in ``running`` (``locked_at``/``started_at``)
  failed_runs        pipeline runs with status ``failed``
  leads              leads with ``status`` and ``updated_at``
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List

SEVERITIES = ("info", "warning", "critical")
STALE_JOB_MINUTES = 10
LEAD_STUCK_HOURS = 48
DEFAULT_STUCK_STATUSES = ("NEW", "ENRICHED", "SCORED", "POSITIONED")
PER_RULE_LIMIT = 20


def parse_ts(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _candidate(rule: dict, event_key: str, default_severity: str, **fields: Any) -> dict:
    severity = rule.get("severity") if rule.get("severity") in SEVERITIES else default_severity
    targets = rule.get("channel_targets")
    if isinstance(targets, list):
        targets = [t for t in targets if isinstance(t, str)]
    else:
        targets = None
    out = {
        "rule_key": rule.get("key"),
        "event_key": event_key,
        "severity": severity,
        "dedupe_window_minutes": int(rule.get("dedupe_window_minutes") or 60),
        "channel_targets": targets,
        "meta": {},
        "action_url": None,
    }
    out.update(fields)
    return out


def _dead_letters(rule: dict, snapshot: dict, now: datetime) -> List[dict]:
    out = []
    for job in (snapshot.get("dead_letter_jobs") or [])[:PER_RULE_LIMIT]:
        out.append(
            _candidate(
                rule,
                "job.dead_letter",
                "critical",
                source_type="job",
                source_id=job["id"],
                dedupe_key=f"job:dead_letter:{job['id']}",
                action_url="/ops/jobs",
                meta={
                    "job_type": job.get("job_type"),
                    "attempts": job.get("attempts"),
                    "error": job.get("error_message"),
                },
            )
        )
    return out


def _stale_running(rule: dict, snapshot: dict, now: datetime) -> List[dict]:
    minutes = (rule.get("conditions") or {}).get("minutes") or STALE_JOB_MINUTES
    cutoff = now - timedelta(minutes=float(minutes))
    out = []
    for job in snapshot.get("running_jobs") or []:
        since = parse_ts(job.get("locked_at")) or parse_ts(job.get("started_at"))
        if since is None or since >= cutoff:
            continue
        out.append(
            _candidate(
                rule,
                "job.stale_running",
                "critical",
                source_type="job",
                source_id=job["id"],
                dedupe_key=f"job:stale_running:{job['id']}",
                action_url="/ops/jobs",
                meta={"job_type": job.get("job_type"), "lock_owner": job.get("lock_owner"), "minutes": minutes},
            )
        )
        if len(out) >= PER_RULE_LIMIT:
            break
    return out


def _run_failed(rule: dict, snapshot: dict, now: datetime) -> List[dict]:
    out = []
    for run in (snapshot.get("failed_runs") or [])[:PER_RULE_LIMIT]:
        out.append(
            _candidate(
                rule,
                "pipeline.run_failed",
                "warning",
                source_type="lead",
                source_id=run.get("lead_id"),
                dedupe_key=f"pipeline:run_failed:{run['id']}",
                action_url=f"/pipeline/runs/{run['id']}",
                meta={"run_id": run["id"], "error": run.get("error")},
            )
        )
    return out


def _lead_stuck(rule: dict, snapshot: dict, now: datetime) -> List[dict]:
    conditions = rule.get("conditions") or {}
    hours = conditions.get("hours") or LEAD_STUCK_HOURS
    statuses = set(conditions.get("statuses") or DEFAULT_STUCK_STATUSES)
    cutoff = now - timedelta(hours=float(hours))
    day = now.strftime("%Y-%m-%d")
    out = []
    for lead in snapshot.get("leads") or []:
        if lead.get("status") not in statuses or lead.get("project_id"):
            continue
        updated = parse_ts(lead.get("updated_at"))
        if updated is None or updated >= cutoff:
            continue
        out.append(
            _candidate(
                rule,
                "lead.stuck",
                "warning",
                source_type="lead",
                source_id=lead["id"],
                dedupe_key=f"lead:stuck:{lead['id']}:{day}",
                action_url=f"/pipeline/leads/{lead['id']}/runs",
                meta={"title": lead.get("title"), "status": lead.get("status"), "hours": hours},
            )
        )
        if len(out) >= PER_RULE_LIMIT:
            break
    return out


def stuck_statuses(rules: Iterable[dict]) -> tuple:
    """Lead statuses any enabled ``lead/stuck`` rule watches; empty when no such rule."""
    statuses: set = set()
    for rule in rules:
        if not rule.get("is_enabled", True):
            continue
        if (rule.get("source_type"), rule.get("trigger_type")) != ("lead", "stuck"):
            continue
        statuses.update((rule.get("conditions") or {}).get("statuses") or DEFAULT_STUCK_STATUSES)
    return tuple(sorted(statuses))


_EVALUATORS = {
    ("job", "dead_letter"): _dead_letters,
    ("job", "stale_running"): _stale_running,
    ("pipeline", "run_failed"): _run_failed,
    ("lead", "stuck"): _lead_stuck,
}


def evaluate_rules(rules: Iterable[dict], snapshot: dict, now: datetime) -> List[dict]:
    """Candidates for every enabled rule; unknown triggers yield nothing."""
    candidates: List[dict] = []
    seen = set()
    for rule in rules:
        if not rule.get("is_enabled", True):
            continue
        evaluator = _EVALUATORS.get((rule.get("source_type"), rule.get("trigger_type")))
        if evaluator is None:
            continue
        for candidate in evaluator(rule, snapshot, now):
            if candidate["dedupe_key"] in seen:
                continue
            seen.add(candidate["dedupe_key"])
            candidates.append(candidate)
    return candidates
