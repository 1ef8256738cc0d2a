"""Execution lifecycle — one session at a time, with pause, resume and cancel.

The manager owns a single Session. Pause and cancel only set flags on the
session's CancellationToken; the executor honours them at the next step or
iteration boundary, so an in-flight tool call always runs to completion.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from planrunner.errors import LifecycleError
from planrunner.executor import CancellationToken, ExecutionReport, Executor, ResumeState
from planrunner.models import ExecutionContext, ExecutionProgress, ExecutionResult, Plan, PlanStatus
from planrunner.store import PlanStore
from planrunner.validator import PlanValidator

logger = logging.getLogger(__name__)

ProgressListener = Callable[[ExecutionProgress], None]

EXECUTABLE = (PlanStatus.APPROVED, PlanStatus.PAUSED, PlanStatus.FAILED)


class SessionStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    CANCELLING = "cancelling"


@dataclass
class Session:
    plan_id: str | None = None
    status: SessionStatus = SessionStatus.IDLE
    start_time: float | None = None
    token: CancellationToken = field(default_factory=CancellationToken)
    drained: asyncio.Event | None = None  # set once the executor has returned
    progress: ExecutionProgress | None = None

    def to_dict(self) -> dict:
        return {
            "plan_id": self.plan_id,
            "status": self.status.value,
            "start_time": self.start_time,
            "progress": self.progress.to_dict() if self.progress else None,
        }


@dataclass
class PlanExecutionResult:
    success: bool
    completed_steps: int
    total_steps: int
    results: list[ExecutionResult] = field(default_factory=list)
    error: str | None = None
    duration: float = 0.0

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "completed_steps": self.completed_steps,
            "total_steps": self.total_steps,
            "results": [r.model_dump(mode="json") for r in self.results],
            "error": self.error,
            "duration": self.duration,
        }


class ExecutionManager:
    def __init__(
        self,
        store: PlanStore,
        executor: Executor,
        environment: Callable[[], ExecutionContext] | None = None,
        validator: PlanValidator | None = None,
    ):
        self.store = store
        self.executor = executor
        self.validator = validator or store.validator
        self._environment = environment or ExecutionContext
        self._session = Session()
        self._listeners: list[ProgressListener] = []

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def session(self) -> Session:
        return self._session

    def is_executing(self) -> bool:
        return self._session.status == SessionStatus.RUNNING

    def current_plan_id(self) -> str | None:
        return self._session.plan_id

    def get_progress(self) -> ExecutionProgress | None:
        return self._session.progress

    def on_progress(self, listener: ProgressListener) -> Callable[[], None]:
        """Subscribe to progress. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def off():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return off

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def check_ready(self, plan_id: str) -> Plan:
        """Raise unless ``execute(plan_id)`` would start right now."""
        current = self._session
        if current.status == SessionStatus.RUNNING:
            raise LifecycleError("Another plan is already executing. Wait for it to complete or cancel it.")
        if current.status == SessionStatus.PAUSED and current.plan_id != plan_id:
            raise LifecycleError(f"Plan {current.plan_id} is paused. Resume or cancel it first.")

        plan = self.store.require(plan_id)
        if plan.status not in EXECUTABLE:
            raise LifecycleError(
                f"Cannot execute plan with status '{plan.status.value}'. Plan must be approved, paused, or failed."
            )
        if plan.status != PlanStatus.PAUSED:
            readiness = self.store.can_execute(plan_id)
            if not readiness.can_execute:
                raise LifecycleError(f"Plan {plan_id} cannot start: {readiness.reason}")
        self.validator.validate(plan.document).raise_for_errors()
        return plan

    def resume_target(self, plan_id: str | None = None) -> str:
        """The plan ``resume(plan_id)`` would continue; raises when there is none."""
        session = self._session
        if session.status == SessionStatus.PAUSED:
            if plan_id and plan_id != session.plan_id:
                raise LifecycleError(f"Plan {session.plan_id} is the paused execution, not {plan_id}")
            return session.plan_id
        if session.status == SessionStatus.IDLE and plan_id:
            if self.store.require(plan_id).status == PlanStatus.PAUSED:
                return plan_id
        raise LifecycleError("No paused execution to resume")

    async def execute(self, plan_id: str) -> PlanExecutionResult:
        """Run (or continue) a plan until it completes, fails, pauses or is cancelled."""
        current = self._session
        plan = self.check_ready(plan_id)

        if current.drained is not None:
            # a paused run may still be finishing its in-flight step
            await current.drained.wait()
            plan = self.store.require(plan_id)

        restored: list[ExecutionResult] = []
        if plan.status == PlanStatus.PAUSED:
            self.store.resume(plan_id)
            context, resume, restored = self._restore(plan)
            logger.info(f"Resuming plan {plan_id}: {len(resume.completed_steps)} steps already done")
        else:
            self.store.start_execution(plan_id)
            context, resume = self._environment(), None

        session = Session(
            plan_id=plan_id,
            status=SessionStatus.RUNNING,
            start_time=time.time(),
            drained=asyncio.Event(),
        )
        self._session = session

        try:
            report = await self.executor.execute(
                plan.document,
                context,
                on_progress=lambda progress: self._handle_progress(session, progress),
                token=session.token,
                resume=resume,
            )
        except Exception as e:
            logger.error(f"Execution of plan {plan_id} aborted: {e}", exc_info=True)
            if self._session is session:
                self._session = Session()
            failed = self.store.get(plan_id)
            if failed and failed.status == PlanStatus.EXECUTING:
                self.store.fail(plan_id, f"Execution error: {e}")
            raise
        finally:
            session.drained.set()

        return self._finish(session, plan, report, restored)

    def pause(self):
        session = self._session
        if session.status != SessionStatus.RUNNING:
            raise LifecycleError("No running execution to pause")
        session.token.pause()
        session.status = SessionStatus.PAUSED
        self.store.pause(session.plan_id)
        logger.info(f"Pause requested for plan {session.plan_id}")

    async def resume(self, plan_id: str | None = None) -> PlanExecutionResult:
        """Continue the paused session, or a plan left paused by an earlier process."""
        target = self.resume_target(plan_id)
        session = self._session
        if session.drained is not None:
            await session.drained.wait()
        return await self.execute(target)

    def cancel(self, plan_id: str | None = None):
        """Flag the run as cancelled, mark the plan cancelled, and free the slot at once."""
        session = self._session
        if session.status in (SessionStatus.RUNNING, SessionStatus.PAUSED):
            if plan_id and plan_id != session.plan_id:
                raise LifecycleError(f"Plan {plan_id} is not the active execution")
            session.status = SessionStatus.CANCELLING
            session.token.cancel()
            self.store.cancel(session.plan_id)
            self._session = Session()
            logger.info(f"Cancelled plan {session.plan_id}")
            return

        if session.status == SessionStatus.IDLE and plan_id:
            plan = self.store.require(plan_id)
            if plan.status == PlanStatus.PAUSED:
                self.store.cancel(plan_id)
                return
        raise LifecycleError("No execution to cancel")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _finish(
        self, session: Session, plan: Plan, report: ExecutionReport, restored: list[ExecutionResult]
    ) -> PlanExecutionResult:
        results = restored + report.results
        outcome = PlanExecutionResult(
            success=False,
            completed_steps=len(report.completed_steps),
            total_steps=len(plan.document.steps),
            results=results,
            duration=report.duration,
        )

        if session.token.cancelled:
            # cancel() already resolved the plan and freed the slot
            outcome.error = "Execution was cancelled"
            return outcome
        if session.token.paused:
            outcome.error = "Execution was paused"
            return outcome

        if self._session is session:
            self._session = Session()

        # a step retried after resume supersedes its earlier outcome
        latest = {(r.step_id, r.iteration): r for r in results}
        failure = next((r for r in latest.values() if not r.success), None)
        if failure is None and report.halted_by is None:
            self.store.complete(plan.id, results[-1] if results else None)
            outcome.success = True
        else:
            outcome.error = report.error or (failure.error if failure else f"Execution halted: {report.halted_by}")
            self.store.fail(plan.id, outcome.error)
        logger.info(f"Plan {plan.id} finished: success={outcome.success}")
        return outcome

    def _handle_progress(self, session: Session, progress: ExecutionProgress):
        session.progress = progress
        if session.token.cancelled:
            return
        try:
            self.store.update_progress(
                session.plan_id,
                progress.current_step,
                progress.last_result,
                progress.completed_steps,
            )
        except LifecycleError as e:
            logger.error(f"Could not checkpoint plan {session.plan_id}: {e}")
        for listener in list(self._listeners):
            try:
                listener(progress)
            except Exception as e:
                logger.error(f"Progress listener failed: {e}", exc_info=True)

    def _restore(self, plan: Plan) -> tuple[ExecutionContext, ResumeState, list[ExecutionResult]]:
        """Rebuild the context and resume markers from the persisted checkpoint."""
        context = self._environment()
        state = plan.execution_state
        resume = ResumeState(completed_steps=set(state.completed_steps))
        outputs: dict[str, dict[int, object]] = {}

        for r in state.step_results:
            if not r.success:
                continue
            if r.iteration is None:
                context.step_results[r.step_id] = r.result
            else:
                context.step_results[f"{r.step_id}_{r.iteration}"] = r.result
                outputs.setdefault(r.step_id, {})[r.iteration] = r.result
                if r.step_id not in resume.completed_steps:
                    resume.completed_iterations.setdefault(r.step_id, set()).add(r.iteration)

        for step_id, by_index in outputs.items():
            values: list[object] = [None] * (max(by_index) + 1)
            for i, value in by_index.items():
                values[i] = value
            context.step_results[step_id] = values

        for step in plan.document.steps:
            if step.capture_as and step.id in resume.completed_steps and step.id in context.step_results:
                context.variables[step.capture_as] = context.step_results[step.id]
        return context, resume, list(state.step_results)
