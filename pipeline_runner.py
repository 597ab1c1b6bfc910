"""Per-lead pipeline execution: enrich -> score -> position -> propose.

A run happens only under the lead's advisory lock. Steps whose output
already exists are recorded as skipped, so triggering the same lead twice
never repeats finished work. Build is not part of the automatic pipeline.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from advisory_lock import AdvisoryLockManager
from event_bus import PIPELINE_RUN_FAILED, PIPELINE_RUN_SUCCEEDED, EventBus, make_event

logger = logging.getLogger("client_engine.pipeline")

STEP_ORDER = ("enrich", "score", "position", "propose")
DEFAULT_ALLOWED_STATUSES = frozenset({"NEW", "ENRICHED", "SCORED", "POSITIONED"})
SKIPPED_NOTE = "skipped: artifact exists"
ENRICHMENT_TITLE = "AI Enrichment Report"
POSITIONING_TITLE = "POSITIONING_BRIEF"
_ERROR_MAX_CHARS = 1000


def allowed_statuses_from_env() -> frozenset:
    raw = os.getenv("PIPELINE_ALLOWED_STATUSES", "")
    values = {item.strip().upper() for item in raw.split(",") if item.strip()}
    return frozenset(values) if values else DEFAULT_ALLOWED_STATUSES


@dataclass
class StepOutput:
    artifact_ids: List[str] = field(default_factory=list)
    tokens_used: Optional[int] = None
    cost_estimate: Optional[float] = None
    notes: Optional[str] = None


@dataclass
class PipelineStep:
    name: str
    is_done: Callable[[dict], bool]
    run: Optional[Callable[[str], Any]] = None


class StepNotConfigured(RuntimeError):
    pass


def _artifacts(lead: dict) -> list:
    return lead.get("artifacts") or []


def has_enrichment(lead: dict) -> bool:
    return any(a.get("type") == "notes" and a.get("title") == ENRICHMENT_TITLE for a in _artifacts(lead))


def has_score(lead: dict) -> bool:
    return lead.get("scored_at") is not None


def has_positioning(lead: dict) -> bool:
    return any(a.get("type") == "positioning" and a.get("title") == POSITIONING_TITLE for a in _artifacts(lead))


def has_proposal(lead: dict) -> bool:
    return any(a.get("type") == "proposal" for a in _artifacts(lead))


_DONE_CHECKS = {
    "enrich": has_enrichment,
    "score": has_score,
    "position": has_positioning,
    "propose": has_proposal,
}


def default_steps(runners: Dict[str, Callable[[str], Any]] | None = None) -> List[PipelineStep]:
    """The four automatic steps with their output checks; ``runners`` supplies the work."""
    runners = runners or {}
    return [PipelineStep(name=name, is_done=_DONE_CHECKS[name], run=runners.get(name)) for name in STEP_ORDER]


def _coerce_output(value: Any) -> StepOutput:
    if value is None:
        return StepOutput()
    if isinstance(value, StepOutput):
        return value
    if isinstance(value, str):
        return StepOutput(artifact_ids=[value])
    if isinstance(value, dict):
        artifact_ids = list(value.get("artifact_ids") or [])
        if value.get("artifact_id"):
            artifact_ids.append(value["artifact_id"])
        return StepOutput(
            artifact_ids=artifact_ids,
            tokens_used=value.get("tokens_used"),
            cost_estimate=value.get("cost_estimate"),
            notes=value.get("notes"),
        )
    raise TypeError(f"Unsupported step output: {type(value).__name__}")


def _error_text(exc: BaseException) -> str:
    text = str(exc) or exc.__class__.__name__
    return text if len(text) <= _ERROR_MAX_CHARS else text[: _ERROR_MAX_CHARS - 3] + "..."


class PipelineRunner:
    def __init__(
        self,
        store: Any,
        locks: AdvisoryLockManager,
        steps: Iterable[PipelineStep] | None = None,
        bus: EventBus | None = None,
        allowed_statuses: Iterable[str] | None = None,
    ) -> None:
        self.store = store
        self.locks = locks
        self.steps = list(steps) if steps is not None else default_steps()
        self.bus = bus
        self.allowed_statuses = frozenset(allowed_statuses) if allowed_statuses is not None else allowed_statuses_from_env()

    def _ineligible_reason(self, lead: dict | None) -> str | None:
        if not lead:
            return "lead_not_found"
        status = lead.get("status")
        if status == "REJECTED":
            return "rejected"
        if status not in self.allowed_statuses:
            return "status_not_allowed"
        if lead.get("project_id"):
            return "has_project"
        return None

    def check_eligibility(self, lead_id: str) -> str | None:
        """Reason the lead cannot run right now, or None when it can."""
        reason = self._ineligible_reason(self.store.get_lead(lead_id))
        if reason:
            return reason
        if self.locks.is_locked(lead_id):
            return "locked"
        return None

    def run_if_eligible(
        self,
        lead_id: str,
        trigger: str,
        should_stop: Callable[[], bool] | None = None,
    ) -> dict:
        result: Dict[str, Any] = {
            "ran": False,
            "reason": None,
            "run_id": None,
            "steps_run": [],
            "steps_skipped": [],
            "failed_step": None,
            "error": None,
        }
        reason = self.check_eligibility(lead_id)
        if reason:
            result["reason"] = reason
            logger.info("pipeline_not_eligible lead_id=%s trigger=%s reason=%s", lead_id, trigger, reason)
            return result

        with self.locks.held(lead_id) as acquired:
            if not acquired:
                result["reason"] = "locked"
                logger.info("pipeline_locked lead_id=%s trigger=%s", lead_id, trigger)
                return result
            # state may have moved between the check and the lock
            reason = self._ineligible_reason(self.store.get_lead(lead_id))
            if reason:
                result["reason"] = reason
                return result
            self._execute(lead_id, trigger, should_stop, result)
        return result

    def _execute(self, lead_id: str, trigger: str, should_stop: Callable[[], bool] | None, result: dict) -> None:
        run = self.store.create_run({"lead_id": lead_id, "trigger": trigger})
        run_id = run["id"]
        result["ran"] = True
        result["run_id"] = run_id
        logger.info("pipeline_run_started lead_id=%s run_id=%s trigger=%s", lead_id, run_id, trigger)
        try:
            error = self._run_steps(lead_id, run_id, should_stop, result)
        except Exception as exc:
            # a store failure mid-run still closes the run before propagating
            logger.exception("pipeline_run_aborted lead_id=%s run_id=%s", lead_id, run_id)
            self._finish(lead_id, run_id, trigger, result, _error_text(exc))
            raise
        self._finish(lead_id, run_id, trigger, result, error)

    def _run_steps(self, lead_id: str, run_id: str, should_stop: Callable[[], bool] | None, result: dict) -> str | None:
        for index, step in enumerate(self.steps):
            if index > 0 and should_stop is not None and should_stop():
                logger.info("pipeline_run_stopped lead_id=%s run_id=%s before_step=%s", lead_id, run_id, step.name)
                return "canceled"
            step_run = self.store.create_step_run({"run_id": run_id, "step_name": step.name})
            lead = self.store.get_lead(lead_id)
            if lead is None:
                result["failed_step"] = step.name
                self.store.finish_step_run(step_run["id"], {"success": False, "notes": "lead_not_found"})
                return "lead_not_found"
            if step.is_done(lead):
                self.store.finish_step_run(step_run["id"], {"success": True, "notes": SKIPPED_NOTE})
                result["steps_skipped"].append(step.name)
                continue
            try:
                if step.run is None:
                    raise StepNotConfigured("step_not_configured")
                output = _coerce_output(step.run(lead_id))
            except Exception as exc:
                error = _error_text(exc)
                result["failed_step"] = step.name
                self.store.finish_step_run(step_run["id"], {"success": False, "notes": error})
                logger.warning(
                    "pipeline_step_failed lead_id=%s run_id=%s step=%s error=%s", lead_id, run_id, step.name, error
                )
                return error
            self.store.finish_step_run(
                step_run["id"],
                {
                    "success": True,
                    "notes": output.notes,
                    "output_artifact_ids": output.artifact_ids,
                    "tokens_used": output.tokens_used,
                    "cost_estimate": output.cost_estimate,
                },
            )
            result["steps_run"].append(step.name)
        return None

    def _finish(self, lead_id: str, run_id: str, trigger: str, result: dict, error: str | None) -> None:
        result["error"] = error
        success = error is None
        self.store.finish_run(
            run_id,
            {
                "status": "succeeded" if success else "failed",
                "success": success,
                "error": error,
                "steps_run": len(result["steps_run"]),
                "steps_skipped": len(result["steps_skipped"]),
            },
        )
        logger.info(
            "pipeline_run_finished lead_id=%s run_id=%s success=%s steps_run=%s steps_skipped=%s",
            lead_id,
            run_id,
            int(success),
            len(result["steps_run"]),
            len(result["steps_skipped"]),
        )
        if self.bus is not None:
            self.bus.publish(
                make_event(
                    PIPELINE_RUN_SUCCEEDED if success else PIPELINE_RUN_FAILED,
                    {
                        "lead_id": lead_id,
                        "run_id": run_id,
                        "trigger": trigger,
                        "failed_step": result["failed_step"],
                        "error": error,
                    },
                    source="pipeline_runner",
                )
            )

    def run_eligible_batch(self, limit: int = 20, trigger: str = "batch") -> dict:
        leads = self.store.list_candidate_leads(self.allowed_statuses, limit=max(1, int(limit)))
        results = []
        for lead in leads:
            try:
                results.append({"lead_id": lead["id"], **self.run_if_eligible(lead["id"], trigger)})
            except Exception as exc:
                logger.exception("pipeline_batch_item_failed lead_id=%s", lead["id"])
                results.append({"lead_id": lead["id"], "ran": False, "reason": "error", "error": _error_text(exc)})
        errors = sum(1 for r in results if r.get("reason") == "error")
        ran = sum(1 for r in results if r.get("ran"))
        return {"results": results, "ran": ran, "skipped": len(results) - ran - errors, "errors": errors}

    def get_run(self, run_id: str) -> dict | None:
        run = self.store.get_run(run_id)
        if not run:
            return None
        run["steps"] = self.store.list_step_runs(run_id)
        return run

    def list_runs(self, lead_id: str, limit: int = 20) -> list[dict]:
        runs = self.store.list_runs(lead_id=lead_id, limit=limit)
        for run in runs:
            run["steps"] = self.store.list_step_runs(run["id"])
        return runs
