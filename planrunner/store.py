"""Plan store — persisted plan records and their status state machine.

All plans live in one JSON file, rewritten atomically after every mutation.
Status changes go through ``_transition``, which refuses anything not listed
in TRANSITIONS.
"""

from __future__ import annotations

import json
import logging
import os
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from planrunner import config
from planrunner.errors import InvalidTransitionError, LifecycleError, PlanNotFoundError, PlanStoreError
from planrunner.events import EventBus
from planrunner.models import (
    Event,
    ExecutionAttempt,
    ExecutionResult,
    ExecutionState,
    Plan,
    PlanStatus,
    utcnow,
)
from planrunner.schema import ActionPlan
from planrunner.validator import PlanValidator

logger = logging.getLogger(__name__)

S = PlanStatus

TRANSITIONS: dict[PlanStatus, set[PlanStatus]] = {
    S.DRAFT: {S.PENDING, S.APPROVED},
    S.PENDING: {S.APPROVED},
    S.APPROVED: {S.EXECUTING},
    S.EXECUTING: {S.PAUSED, S.COMPLETED, S.FAILED, S.CANCELLED},
    S.PAUSED: {S.EXECUTING, S.CANCELLED},
    S.COMPLETED: set(),
    S.FAILED: {S.EXECUTING},
    S.CANCELLED: set(),
}

_EDITABLE = {"title", "priority", "tags", "notes", "pinned", "parent_id"}
_SORT_KEYS = {"created_at", "updated_at", "priority", "title", "status"}
_PATH_ARGS = ("path", "fromPath", "toPath")


@dataclass
class Readiness:
    can_execute: bool
    reason: str | None = None
    blocked_by: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"can_execute": self.can_execute, "reason": self.reason, "blocked_by": self.blocked_by}


@dataclass
class PlanConflict:
    plan_ids: tuple[str, str]
    paths: list[str]
    severity: str  # error | warning
    description: str

    def to_dict(self) -> dict:
        return {
            "plan_ids": list(self.plan_ids),
            "paths": self.paths,
            "severity": self.severity,
            "description": self.description,
        }


class PlanStore:
    def __init__(
        self,
        path: Path | None = None,
        validator: PlanValidator | None = None,
        event_bus: EventBus | None = None,
    ):
        self.path = path if path is not None else config.DATA_DIR / "plans.json"
        self.validator = validator or PlanValidator()
        self.event_bus = event_bus
        self._plans: dict[str, Plan] = {}

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> int:
        """Read all plans from disk. Plans left executing by a dead process come back paused."""
        if not self.path.exists():
            self._plans = {}
            return 0
        try:
            raw = json.loads(self.path.read_text())
            plans = [Plan.model_validate(p) for p in raw.get("plans", [])]
        except (json.JSONDecodeError, ValidationError, AttributeError) as e:
            raise PlanStoreError(f"Cannot read plan store {self.path}: {e}") from e

        self._plans = {p.id: p for p in plans}
        for plan in self._plans.values():
            if plan.status == S.EXECUTING:
                logger.warning(f"Plan {plan.id} was executing when the store was last saved; marking paused")
                plan.status = S.PAUSED
                attempt = plan.current_attempt()
                if attempt:
                    attempt.status = "paused"
        logger.info(f"Loaded {len(self._plans)} plans from {self.path}")
        return len(self._plans)

    def save(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"version": 1, "plans": [p.model_dump(mode="json", by_alias=True) for p in self._plans.values()]}
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2))
        os.replace(tmp, self.path)

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create(
        self,
        document: dict[str, Any] | ActionPlan,
        title: str | None = None,
        priority: int = 3,
        tags: list[str] | None = None,
        notes: str | None = None,
        parent_id: str | None = None,
    ) -> Plan:
        """Validate a plan document and store it as pending (valid) or draft (has errors)."""
        result = self.validator.validate(document)
        if result.plan is None:
            result.raise_for_errors()

        plan = Plan(
            title=title or result.plan.ui_hints.title or result.plan.goal[:80],
            status=S.PENDING if result.valid else S.DRAFT,
            priority=priority,
            document=result.plan,
            summary=result.summary,
            errors=[e.message for e in result.errors],
            warnings=[w.message for w in result.warnings],
            tags=tags or [],
            notes=notes,
            parent_id=parent_id,
        )
        self._plans[plan.id] = plan
        self.save()
        logger.info(f"Created plan {plan.id} ({plan.status.value}): {plan.title}")
        self._emit("plan.created", plan, status=plan.status.value)
        return plan

    def get(self, plan_id: str) -> Plan | None:
        return self._plans.get(plan_id)

    def require(self, plan_id: str) -> Plan:
        plan = self._plans.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        return plan

    def update(self, plan_id: str, **changes) -> Plan:
        plan = self.require(plan_id)
        unknown = set(changes) - _EDITABLE
        if unknown:
            raise ValueError(f"Fields cannot be edited directly: {', '.join(sorted(unknown))}")
        for key, value in changes.items():
            setattr(plan, key, value)
        plan.updated_at = utcnow()
        self.save()
        self._emit("plan.updated", plan, fields=sorted(changes))
        return plan

    def replace_document(self, plan_id: str, document: dict[str, Any] | ActionPlan) -> Plan:
        """Swap in a revised document; only before the plan has run."""
        plan = self.require(plan_id)
        if plan.status not in (S.DRAFT, S.PENDING, S.APPROVED):
            raise LifecycleError(f"Cannot edit plan {plan_id} while it is {plan.status.value}")
        result = self.validator.validate(document)
        if result.plan is None:
            result.raise_for_errors()
        plan.document = result.plan
        plan.summary = result.summary
        plan.errors = [e.message for e in result.errors]
        plan.warnings = [w.message for w in result.warnings]
        plan.status = S.PENDING if result.valid else S.DRAFT
        plan.updated_at = utcnow()
        self.save()
        self._emit("plan.updated", plan, fields=["document"])
        return plan

    def delete(self, plan_id: str):
        plan = self.require(plan_id)
        if plan.status in (S.EXECUTING, S.PAUSED):
            raise LifecycleError(f"Cannot delete plan {plan_id} while it is {plan.status.value}")
        del self._plans[plan_id]
        for other in self._plans.values():
            if plan_id in other.depends_on:
                other.depends_on.remove(plan_id)
        self.save()
        self._emit("plan.deleted", plan)

    def list(
        self,
        status: PlanStatus | str | list | None = None,
        tags: list[str] | None = None,
        search: str | None = None,
        sort_by: str = "created_at",
        descending: bool = True,
    ) -> list[Plan]:
        plans = list(self._plans.values())
        if status:
            wanted = {S(s) for s in (status if isinstance(status, list) else [status])}
            plans = [p for p in plans if p.status in wanted]
        if tags:
            plans = [p for p in plans if set(tags) & set(p.tags)]
        if search:
            q = search.lower()
            plans = [
                p for p in plans
                if q in p.title.lower() or q in p.goal.lower() or (p.notes and q in p.notes.lower())
            ]
        if sort_by not in _SORT_KEYS:
            raise ValueError(f"Cannot sort by {sort_by!r}")

        def key(p: Plan):
            value = getattr(p, sort_by)
            if sort_by == "title":
                return value.lower()
            if sort_by == "status":
                return value.value
            return value

        return sorted(plans, key=key, reverse=descending)

    def get_active(self) -> Plan | None:
        for plan in self._plans.values():
            if plan.status == S.EXECUTING:
                return plan
        return None

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def approve(self, plan_id: str) -> Plan:
        plan = self.require(plan_id)
        self._transition(plan, S.APPROVED)
        self.save()
        return plan

    def start_execution(self, plan_id: str) -> ExecutionAttempt:
        """approved/failed -> executing with a new attempt and a fresh checkpoint."""
        plan = self.require(plan_id)
        self._check_target(plan, S.EXECUTING)
        if plan.status == S.PAUSED:
            raise InvalidTransitionError(plan_id, plan.status.value, "executing (use resume)")

        active = self.get_active()
        if active and active.id != plan_id:
            raise LifecycleError(f"Plan {active.id} is already executing")
        readiness = self.can_execute(plan_id)
        if not readiness.can_execute:
            raise LifecycleError(f"Plan {plan_id} cannot start: {readiness.reason}")

        attempt = ExecutionAttempt()
        plan.execution_history.append(attempt)
        plan.execution_state = ExecutionState(attempt_id=attempt.id, total_steps=len(plan.document.steps))
        self._transition(plan, S.EXECUTING)
        self.save()
        self._emit("execution.started", plan, attempt_id=attempt.id, resumed=False)
        return attempt

    def pause(self, plan_id: str) -> Plan:
        plan = self.require(plan_id)
        self._transition(plan, S.PAUSED)
        attempt = plan.current_attempt()
        if attempt:
            attempt.status = "paused"
            attempt.ended_at = utcnow()
        self.save()
        return plan

    def resume(self, plan_id: str) -> ExecutionAttempt:
        """paused -> executing. A new attempt continues from the kept checkpoint."""
        plan = self.require(plan_id)
        if plan.status != S.PAUSED:
            raise InvalidTransitionError(plan_id, plan.status.value, "executing (resume)")
        if plan.execution_state is None:
            raise PlanStoreError(f"Plan {plan_id} is paused but has no execution state")
        active = self.get_active()
        if active and active.id != plan_id:
            raise LifecycleError(f"Plan {active.id} is already executing")

        previous = plan.execution_state.attempt_id
        attempt = ExecutionAttempt(resumed_from=previous)
        plan.execution_history.append(attempt)
        plan.execution_state.attempt_id = attempt.id
        self._transition(plan, S.EXECUTING)
        self.save()
        self._emit("execution.started", plan, attempt_id=attempt.id, resumed=True, resumed_from=previous)
        return attempt

    def cancel(self, plan_id: str) -> Plan:
        plan = self.require(plan_id)
        self._transition(plan, S.CANCELLED)
        self._close_attempt(plan, "cancelled")
        self.save()
        self._emit("execution.completed", plan, status="cancelled")
        return plan

    def complete(self, plan_id: str, result: ExecutionResult | None = None) -> Plan:
        plan = self.require(plan_id)
        self._transition(plan, S.COMPLETED)
        self._close_attempt(plan, "completed", result=result)
        self.save()
        self._emit("execution.completed", plan, status="completed")
        return plan

    def fail(self, plan_id: str, error: str) -> Plan:
        plan = self.require(plan_id)
        self._transition(plan, S.FAILED)
        self._close_attempt(plan, "failed", error=error)
        self.save()
        self._emit("execution.completed", plan, status="failed", error=error)
        return plan

    def update_progress(
        self,
        plan_id: str,
        step_index: int,
        result: ExecutionResult | None = None,
        completed_steps: list[str] | None = None,
    ) -> Plan:
        """Checkpoint a running (or pausing) attempt."""
        plan = self.require(plan_id)
        if plan.status not in (S.EXECUTING, S.PAUSED) or plan.execution_state is None:
            raise LifecycleError(f"Plan {plan_id} has no execution in progress")

        state = plan.execution_state
        state.current_step_index = step_index
        if completed_steps is not None:
            state.completed_steps = list(completed_steps)
        if result is not None:
            state.step_results.append(result)
            attempt = plan.current_attempt()
            if attempt:
                attempt.step_results.append(result)
        plan.updated_at = utcnow()
        self.save()
        self._emit(
            "execution.progress", plan,
            step_index=step_index,
            step_id=result.step_id if result else None,
            success=result.success if result else None,
        )
        return plan

    def _check_target(self, plan: Plan, target: PlanStatus):
        if target not in TRANSITIONS[plan.status]:
            raise InvalidTransitionError(plan.id, plan.status.value, target.value)

    def _transition(self, plan: Plan, target: PlanStatus):
        self._check_target(plan, target)
        previous = plan.status
        plan.status = target
        plan.updated_at = utcnow()
        logger.info(f"Plan {plan.id}: {previous.value} -> {target.value}")
        self._emit("plan.status_changed", plan, previous=previous.value, status=target.value)

    def _close_attempt(self, plan: Plan, status: str, result: ExecutionResult | None = None, error: str | None = None):
        attempt = plan.current_attempt()
        if attempt:
            attempt.status = status
            attempt.ended_at = utcnow()
            attempt.result = result
            attempt.error = error
        plan.execution_state = None

    # ------------------------------------------------------------------
    # Plan-level dependencies and conflicts
    # ------------------------------------------------------------------

    def add_dependency(self, plan_id: str, depends_on_id: str) -> Plan:
        plan = self.require(plan_id)
        self.require(depends_on_id)
        if plan_id == depends_on_id:
            raise ValueError("A plan cannot depend on itself")
        if self.would_cycle(plan_id, depends_on_id):
            raise ValueError("Adding this dependency would create a circular dependency")
        if depends_on_id not in plan.depends_on:
            plan.depends_on.append(depends_on_id)
            plan.updated_at = utcnow()
            self.save()
            self._emit("plan.updated", plan, fields=["depends_on"])
        return plan

    def remove_dependency(self, plan_id: str, depends_on_id: str) -> Plan:
        plan = self.require(plan_id)
        if depends_on_id in plan.depends_on:
            plan.depends_on.remove(depends_on_id)
            plan.updated_at = utcnow()
            self.save()
            self._emit("plan.updated", plan, fields=["depends_on"])
        return plan

    def dependencies(self, plan_id: str) -> list[Plan]:
        return [self._plans[d] for d in self.require(plan_id).depends_on if d in self._plans]

    def dependents(self, plan_id: str) -> list[Plan]:
        return [p for p in self._plans.values() if plan_id in p.depends_on]

    def would_cycle(self, plan_id: str, depends_on_id: str) -> bool:
        """True if depends_on_id already (transitively) depends on plan_id."""
        seen: set[str] = set()
        queue = deque([depends_on_id])
        while queue:
            current = queue.popleft()
            if current == plan_id:
                return True
            if current in seen:
                continue
            seen.add(current)
            other = self._plans.get(current)
            if other:
                queue.extend(other.depends_on)
        return False

    def can_execute(self, plan_id: str) -> Readiness:
        plan = self._plans.get(plan_id)
        if plan is None:
            return Readiness(False, "Plan not found")
        blocked = [d for d in plan.depends_on if d not in self._plans or self._plans[d].status != S.COMPLETED]
        if blocked:
            return Readiness(False, f"Blocked by {len(blocked)} incomplete dependencies", blocked)
        return Readiness(True)

    def file_paths(self, plan_id: str) -> list[str]:
        plan = self.require(plan_id)
        paths = []
        for step in plan.document.steps:
            for name in _PATH_ARGS:
                value = step.args.get(name)
                if isinstance(value, str) and value not in paths:
                    paths.append(value)
        return paths

    def detect_conflicts(self, plan_id: str) -> list[PlanConflict]:
        """Other queued or running plans that touch the same files."""
        plan = self.require(plan_id)
        mine = self.file_paths(plan_id)
        conflicts = []
        for other in self._plans.values():
            if other.id == plan_id or other.status not in (S.PENDING, S.APPROVED, S.EXECUTING):
                continue
            theirs = set(self.file_paths(other.id))
            overlap = [p for p in mine if p in theirs]
            if not overlap:
                continue
            writes = "writes" in (plan.document.risk_level.value, other.document.risk_level.value)
            conflicts.append(PlanConflict(
                plan_ids=(plan_id, other.id),
                paths=overlap,
                severity="error" if writes else "warning",
                description=f'Plans "{plan.title}" and "{other.title}" both operate on {len(overlap)} shared file(s)',
            ))
        return conflicts

    # ------------------------------------------------------------------

    def _emit(self, type: str, plan: Plan, **data):
        if self.event_bus:
            self.event_bus.emit(Event(type=type, plan_id=plan.id, data=data))
