"""Exception taxonomy for validation, step execution, and lifecycle control."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from planrunner.validator import ValidationResult


class PlanRunnerError(Exception):
    """Base class for every error raised by planrunner."""


# ---------------------------------------------------------------------------
# Validation (terminal before any step runs)
# ---------------------------------------------------------------------------


class PlanValidationError(PlanRunnerError):
    """A plan document failed static validation."""

    def __init__(self, message: str, result: "ValidationResult | None" = None):
        super().__init__(message)
        self.result = result


class SchemaError(PlanValidationError):
    pass


class ToolNotFoundError(PlanValidationError):
    pass


class ArgumentValidationError(PlanValidationError):
    pass


class DependencyError(PlanValidationError):
    """Missing dependency reference or a dependency cycle."""


class PathSafetyError(PlanValidationError):
    pass


# ---------------------------------------------------------------------------
# Step-level failures (captured into ExecutionResult, never escape a run)
# ---------------------------------------------------------------------------


class StepError(PlanRunnerError):
    """Failure of a single step or foreach iteration."""

    def __init__(self, message: str, step_id: str | None = None):
        super().__init__(message)
        self.step_id = step_id


class ForeachSourceTypeError(StepError):
    pass


class InterpolationError(StepError):
    """A $steps / $vars reference could not be resolved."""

    def __init__(self, message: str, reference: str = "", step_id: str | None = None):
        super().__init__(message, step_id=step_id)
        self.reference = reference


class StepTimeoutError(StepError):
    def __init__(self, message: str, timeout_ms: int = 0, step_id: str | None = None):
        super().__init__(message, step_id=step_id)
        self.timeout_ms = timeout_ms


class StepExecutionError(StepError):
    """Wraps an exception raised by the capability provider."""

    def __init__(self, message: str, step_id: str | None = None, cause: BaseException | None = None):
        super().__init__(message, step_id=step_id)
        self.cause = cause


# ---------------------------------------------------------------------------
# Engine-internal faults (propagate to the caller)
# ---------------------------------------------------------------------------


class LifecycleError(PlanRunnerError):
    """Invalid execute/pause/resume/cancel call for the current state."""


class InvalidTransitionError(LifecycleError):
    def __init__(self, plan_id: str, current: str, target: str):
        super().__init__(f"Cannot move plan {plan_id} from '{current}' to '{target}'")
        self.plan_id = plan_id
        self.current = current
        self.target = target


class PlanNotFoundError(PlanRunnerError, KeyError):
    def __init__(self, plan_id: str):
        super().__init__(f"Plan not found: {plan_id}")
        self.plan_id = plan_id

    def __str__(self) -> str:
        return self.args[0]


class PlanStoreError(PlanRunnerError):
    """Persisted plan state is unreadable or inconsistent."""
