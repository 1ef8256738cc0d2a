"""Executor — runs a validated plan as a DAG of tool invocations.

Ready steps (every dependency terminal) launch in declaration order, bounded
by ``max_concurrency``. Each step goes through foreach expansion, retry and
timeout handling, and is dispatched to the capability provider. Step failures
are recorded as ExecutionResults and resolved by the step's error policy;
they never escape ``execute``.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from planrunner import config
from planrunner.errors import (
    DependencyError,
    StepError,
    StepExecutionError,
    StepTimeoutError,
)
from planrunner.interpolation import Interpolator
from planrunner.models import ExecutionContext, ExecutionProgress, ExecutionResult, LogEntry, UndoEntry
from planrunner.providers.base import CapabilityProvider
from planrunner.schema import ActionPlan, OnError, RetryPolicy, Step

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ExecutionProgress], None]


class CancellationToken:
    """Pause/cancel flags checked at step and iteration boundaries only."""

    def __init__(self):
        self._paused = False
        self._cancelled = False

    def pause(self):
        self._paused = True

    def cancel(self):
        self._cancelled = True

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def halted(self) -> bool:
        return self._paused or self._cancelled


@dataclass
class ResumeState:
    """Work already done by an earlier attempt of the same plan."""

    completed_steps: set[str] = field(default_factory=set)
    completed_iterations: dict[str, set[int]] = field(default_factory=dict)


class StepState(str, Enum):
    SCHEDULED = "scheduled"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"  # failed, tolerated by an onError: skip policy

    @property
    def terminal(self) -> bool:
        return self in (StepState.SUCCEEDED, StepState.FAILED, StepState.SKIPPED)


@dataclass
class StepNode:
    index: int
    step: Step
    deps: list[int] = field(default_factory=list)
    state: StepState = StepState.SCHEDULED


class StepGraph:
    """Arena of StepNodes addressed by declaration index."""

    def __init__(self, plan: ActionPlan):
        self.nodes: list[StepNode] = [StepNode(index=i, step=s) for i, s in enumerate(plan.steps)]
        self.index: dict[str, int] = {}
        for node in self.nodes:
            if node.step.id in self.index:
                raise DependencyError(f"Duplicate step id: {node.step.id}")
            self.index[node.step.id] = node.index
        for node in self.nodes:
            for dep in node.step.depends_on:
                if dep not in self.index:
                    raise DependencyError(f"Step {node.step.id} depends on non-existent step: {dep}")
                node.deps.append(self.index[dep])
        self._check_acyclic()

    def _check_acyclic(self):
        remaining = {n.index: set(n.deps) for n in self.nodes}
        while remaining:
            free = [i for i, deps in remaining.items() if not deps]
            if not free:
                stuck = self.nodes[min(remaining)].step.id
                raise DependencyError(f"Circular dependency detected involving step: {stuck}")
            for i in free:
                del remaining[i]
            for deps in remaining.values():
                deps.difference_update(free)

    def get(self, step_id: str) -> StepNode:
        return self.nodes[self.index[step_id]]

    def ready(self) -> list[StepNode]:
        return [
            n for n in self.nodes
            if n.state == StepState.SCHEDULED and all(self.nodes[d].state.terminal for d in n.deps)
        ]

    def pending(self) -> list[StepNode]:
        return [n for n in self.nodes if not n.state.terminal]


@dataclass
class ExecutionReport:
    results: list[ExecutionResult] = field(default_factory=list)
    halted_by: str | None = None  # stop | pause | cancel
    error: str | None = None
    states: dict[str, str] = field(default_factory=dict)
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return self.halted_by is None and all(r.success for r in self.results)

    @property
    def completed_steps(self) -> list[str]:
        return [sid for sid, state in self.states.items() if state in ("succeeded", "skipped")]


class _Run:
    """Mutable bookkeeping for a single execute() call."""

    def __init__(self, plan: ActionPlan, context: ExecutionContext, graph: StepGraph,
                 token: CancellationToken, resume: ResumeState, on_progress: ProgressCallback | None):
        self.plan = plan
        self.context = context
        self.graph = graph
        self.token = token
        self.resume = resume
        self.on_progress = on_progress
        self.results: list[ExecutionResult] = []
        self.start_time = time.time()
        self.log = [LogEntry(step_id=s.id, tool=s.tool, preview=s.label, args=s.args) for s in plan.steps]
        self.current_step = 0

    def record(self, result: ExecutionResult):
        self.results.append(result)

    def completed_steps(self) -> list[str]:
        return [n.step.id for n in self.graph.nodes if n.state in (StepState.SUCCEEDED, StepState.SKIPPED)]

    def emit(self, action: str, last_result: ExecutionResult | None = None):
        if not self.on_progress:
            return
        progress = ExecutionProgress(
            current_step=self.current_step,
            total_steps=len(self.plan.steps),
            current_action=action,
            start_time=self.start_time,
            log=list(self.log),
            last_result=last_result,
            completed_steps=self.completed_steps(),
        )
        try:
            self.on_progress(progress)
        except Exception as e:
            logger.error(f"Progress callback failed: {e}", exc_info=True)


class Executor:
    def __init__(
        self,
        provider: CapabilityProvider,
        interpolator: Interpolator | None = None,
        max_concurrency: int | None = None,
    ):
        self.provider = provider
        self.interpolator = interpolator or Interpolator()
        limit = config.MAX_CONCURRENT_STEPS if max_concurrency is None else max_concurrency
        self.max_concurrency = limit if limit and limit > 0 else None
        self._undo_journal: list[UndoEntry] = []

    async def execute(
        self,
        plan: ActionPlan,
        context: ExecutionContext | None = None,
        on_progress: ProgressCallback | None = None,
        token: CancellationToken | None = None,
        resume: ResumeState | None = None,
    ) -> ExecutionReport:
        """Run every step of the plan and return what happened.

        Raises DependencyError for a graph that cannot be scheduled; all
        per-step failures are reported through the returned results.
        """
        context = context or ExecutionContext()
        token = token or CancellationToken()
        resume = resume or ResumeState()
        graph = StepGraph(plan)
        run = _Run(plan, context, graph, token, resume, on_progress)
        self._undo_journal = context.undo_journal

        for step_id in resume.completed_steps:
            if step_id in graph.index:
                graph.get(step_id).state = StepState.SUCCEEDED
                run.log[graph.index[step_id]].status = "success"

        report = ExecutionReport()
        running: dict[asyncio.Task, StepNode] = {}
        logger.info(f"Executing plan '{plan.goal[:60]}' ({len(plan.steps)} steps)")

        while True:
            if report.halted_by is None:
                for node in graph.ready():
                    if self.max_concurrency and len(running) >= self.max_concurrency:
                        break
                    if token.cancelled:
                        report.halted_by = "cancel"
                        break
                    if token.paused:
                        report.halted_by = "pause"
                        break
                    node.state = StepState.RUNNING
                    task = asyncio.create_task(self._run_step(run, node))
                    running[task] = node

            if not running:
                break

            done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                node = running.pop(task)
                node.state = task.result()
                if node.state == StepState.FAILED and report.halted_by is None:
                    report.halted_by = "stop"
                    report.error = self._last_error(run, node.step.id)
                    logger.warning(f"Step {node.step.id} failed, halting: {report.error}")
                elif node.state == StepState.SCHEDULED and report.halted_by is None:
                    report.halted_by = "cancel" if token.cancelled else "pause"

        if report.halted_by is None and graph.pending():
            report.halted_by = "cancel" if token.cancelled else "pause"

        report.results = run.results
        report.states = {n.step.id: n.state.value for n in graph.nodes}
        report.duration = (time.time() - run.start_time) * 1000
        if report.halted_by in ("pause", "cancel"):
            run.emit(f"Execution {'paused' if report.halted_by == 'pause' else 'cancelled'}")
        else:
            run.emit("Execution complete")
        logger.info(f"Plan finished: {len(run.results)} results, halted_by={report.halted_by}")
        return report

    # ------------------------------------------------------------------
    # Per-step
    # ------------------------------------------------------------------

    async def _run_step(self, run: _Run, node: StepNode) -> StepState:
        step = node.step
        entry = run.log[node.index]
        entry.status = "running"
        entry.start_time = time.time()
        run.current_step = node.index + 1
        run.emit(step.label)

        policy = self.effective_policy(run.plan, step)
        retry = self.effective_retry(run.plan, step)

        if step.foreach:
            state, last = await self._run_foreach(run, node, retry, policy)
        else:
            last = await self._attempt(step, run.context, retry)
            run.record(last)
            if last.success:
                run.context.step_results[step.id] = last.result
            state = StepState.SUCCEEDED if last.success else self._failure_state(policy)

        if state == StepState.SUCCEEDED and step.capture_as:
            run.context.variables[step.capture_as] = run.context.step_results.get(step.id)

        # foreach iterations were already reported one by one
        fresh = None if step.foreach else last
        # set before emitting so the checkpoint already counts this step
        node.state = state
        entry.end_time = time.time()
        entry.duration = (entry.end_time - entry.start_time) * 1000
        if state == StepState.SCHEDULED:
            entry.status = "pending"
            run.emit(f"Interrupted: {step.label}", fresh)
            return state
        if state == StepState.SUCCEEDED:
            entry.status = "success"
            entry.result = run.context.step_results.get(step.id)
            run.emit(f"Completed: {step.label}", fresh)
        else:
            entry.status = "error"
            entry.error = last.error if last else None
            run.emit(f"Error: {entry.error}", fresh)
        return state

    async def _run_foreach(
        self, run: _Run, node: StepNode, retry: RetryPolicy | None, policy: OnError
    ) -> tuple[StepState, ExecutionResult | None]:
        step = node.step
        loop = step.foreach
        source = run.context.lookup(loop.from_)
        if not isinstance(source, (list, tuple)):
            result = ExecutionResult(
                step_id=step.id,
                success=False,
                error=f"Foreach path '{loop.from_}' is not an array",
                error_type="ForeachSourceTypeError",
            )
            run.record(result)
            run.emit(f"Error: {result.error}", result)
            return self._failure_state(policy), result

        items = list(source)
        done = run.resume.completed_iterations.get(step.id, set())
        outputs: list[Any] = [None] * len(items)
        existing = run.context.step_results.get(step.id)
        if isinstance(existing, list):
            outputs[: len(existing)] = existing[: len(items)]
        run.context.step_results[step.id] = outputs

        failure: ExecutionResult | None = None
        interrupted = False
        last: ExecutionResult | None = None

        async def iterate(i: int, item: Any) -> ExecutionResult:
            ctx = run.context.for_iteration({loop.item_name: item, loop.index_var: i})
            result = await self._attempt(step, ctx, retry, iteration=i)
            run.record(result)
            if result.success:
                outputs[i] = result.result
                run.context.step_results[f"{step.id}_{i}"] = result.result
            run.emit(f"{step.label} [{i + 1}/{len(items)}]", result)
            return result

        todo = [(i, item) for i, item in enumerate(items) if i not in done]

        if loop.concurrency is None:
            for i, item in todo:
                if run.token.halted:
                    interrupted = True
                    break
                last = await iterate(i, item)
                if not last.success:
                    failure = failure or last
                    if policy != OnError.SKIP:
                        break
        else:
            sem = asyncio.Semaphore(loop.concurrency)
            abort = False

            async def bounded(i: int, item: Any) -> ExecutionResult | None:
                nonlocal abort, interrupted
                async with sem:
                    if abort:
                        return None
                    if run.token.halted:
                        interrupted = True
                        return None
                    result = await iterate(i, item)
                    if not result.success and policy != OnError.SKIP:
                        abort = True
                    return result

            for result in await asyncio.gather(*(bounded(i, item) for i, item in todo)):
                if result is None:
                    continue
                last = result
                if not result.success:
                    failure = failure or result

        if failure:
            return self._failure_state(policy), failure
        if interrupted:
            return StepState.SCHEDULED, last
        return StepState.SUCCEEDED, last

    async def _attempt(
        self, step: Step, context: ExecutionContext, retry: RetryPolicy | None, iteration: int | None = None
    ) -> ExecutionResult:
        """Invoke once per allowed attempt; the last attempt's outcome is returned."""
        max_attempts = retry.max_attempts if retry else 1
        start = time.monotonic()
        error: StepError | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                args = self.interpolator.interpolate(step.args, context)
                value = await self._invoke(step, args, context)
                return ExecutionResult(
                    step_id=step.id,
                    success=True,
                    result=value,
                    duration=(time.monotonic() - start) * 1000,
                    iteration=iteration,
                    attempts=attempt,
                )
            except StepError as e:
                e.step_id = e.step_id or step.id
                error = e
                logger.warning(f"Step {step.id} attempt {attempt}/{max_attempts} failed: {e}")

            if attempt < max_attempts and retry and retry.backoff_ms > 0:
                await asyncio.sleep(retry.backoff_ms / 1000)

        return ExecutionResult(
            step_id=step.id,
            success=False,
            error=str(error),
            error_type=type(error).__name__,
            duration=(time.monotonic() - start) * 1000,
            iteration=iteration,
            attempts=max_attempts,
        )

    async def _invoke(self, step: Step, args: dict[str, Any], context: ExecutionContext) -> Any:
        if not self.provider.supports(step.tool):
            raise StepExecutionError(
                f"Tool '{step.tool}' is not supported by {type(self.provider).__name__}", step_id=step.id
            )
        limit = step.timeout_ms / 1000 if step.timeout_ms else None
        start = time.monotonic()
        try:
            if inspect.iscoroutinefunction(self.provider.invoke):
                call = self.provider.invoke(step.tool, args, context)
            else:
                # plain providers run on a worker thread
                call = asyncio.get_running_loop().run_in_executor(
                    None, self.provider.invoke, step.tool, args, context
                )
            result = await asyncio.wait_for(call, timeout=limit)
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(result, timeout=self._remaining(limit, start))
        except asyncio.TimeoutError as e:
            raise self._timed_out(step) from e
        except StepError:
            raise
        except Exception as e:
            raise StepExecutionError(str(e) or type(e).__name__, step_id=step.id, cause=e) from e

        # an async provider that blocks the loop can only be caught after it returns
        if limit is not None and time.monotonic() - start > limit:
            raise self._timed_out(step)
        return result

    @staticmethod
    def _remaining(limit: float | None, start: float) -> float | None:
        if limit is None:
            return None
        return max(limit - (time.monotonic() - start), 0)

    @staticmethod
    def _timed_out(step: Step) -> StepTimeoutError:
        return StepTimeoutError(
            f"Step {step.id} timed out after {step.timeout_ms}ms",
            timeout_ms=step.timeout_ms,
            step_id=step.id,
        )

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    @staticmethod
    def effective_policy(plan: ActionPlan, step: Step) -> OnError:
        """How a failure of this step is resolved once its attempts are spent."""
        policy = step.on_error or plan.defaults.on_error or OnError.STOP
        if policy == OnError.RETRY:
            fallback = plan.defaults.on_error
            return fallback if fallback in (OnError.STOP, OnError.SKIP) else OnError.STOP
        return policy

    @staticmethod
    def effective_retry(plan: ActionPlan, step: Step) -> RetryPolicy | None:
        if step.retry:
            return step.retry
        if plan.defaults.retry:
            return plan.defaults.retry
        if (step.on_error or plan.defaults.on_error) == OnError.RETRY:
            return RetryPolicy(max_attempts=config.DEFAULT_RETRY_ATTEMPTS, backoff_ms=config.DEFAULT_BACKOFF_MS)
        return None

    @staticmethod
    def _failure_state(policy: OnError) -> StepState:
        return StepState.SKIPPED if policy == OnError.SKIP else StepState.FAILED

    @staticmethod
    def _last_error(run: _Run, step_id: str) -> str | None:
        for result in reversed(run.results):
            if result.step_id == step_id and not result.success:
                return result.error
        return None

    # ------------------------------------------------------------------
    # Undo journal
    # ------------------------------------------------------------------

    @property
    def undo_journal(self) -> list[UndoEntry]:
        return list(self._undo_journal)

    def clear_undo_journal(self):
        self._undo_journal.clear()

    async def undo_last_operation(self) -> bool:
        """Hand the newest journal entry to the provider. The entry is kept if undo fails."""
        if not self._undo_journal:
            return False
        entry = self._undo_journal.pop()
        try:
            undone = self.provider.undo(entry)
            if hasattr(undone, "__await__"):
                undone = await undone
        except Exception:
            self._undo_journal.append(entry)
            raise
        if not undone:
            self._undo_journal.append(entry)
        return bool(undone)
