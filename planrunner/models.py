"""Core data structures — runtime execution state and persisted plan records."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from planrunner.schema import ActionPlan


def generate_id() -> str:
    return uuid.uuid4().hex[:12]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Tool System
# ---------------------------------------------------------------------------


@dataclass
class ToolDef:
    """Canonical tool definition. ``args_model`` validates a step's args."""

    name: str
    description: str
    args_model: type[BaseModel]
    category: str = "read"  # read | write | delete | command
    path_args: tuple[str, ...] = ("path", "fromPath", "toPath")

    @property
    def parameters(self) -> dict[str, Any]:
        """JSON Schema of the arguments, in wire (camelCase) form."""
        return self.args_model.model_json_schema(by_alias=True)

    @property
    def mutates(self) -> bool:
        return self.category in ("write", "delete")

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "parameters": self.parameters,
        }


# ---------------------------------------------------------------------------
# Step outcomes
# ---------------------------------------------------------------------------


class ExecutionResult(BaseModel):
    """Outcome of one step, or of one foreach iteration."""

    step_id: str
    success: bool
    result: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    duration: float = 0.0  # milliseconds
    iteration: Optional[int] = None
    attempts: int = 1


# ---------------------------------------------------------------------------
# Execution context
# ---------------------------------------------------------------------------


@dataclass
class UndoEntry:
    operation: str
    args: dict[str, Any]
    previous_state: Any = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "operation": self.operation,
            "args": self.args,
            "previous_state": self.previous_state,
            "timestamp": self.timestamp,
        }


@dataclass
class ExecutionContext:
    """Per-run state handed to the interpolator and the capability provider.

    ``variables`` is copied for each foreach iteration; ``step_results`` and
    ``undo_journal`` are shared by every step of the run.
    """

    variables: dict[str, Any] = field(default_factory=dict)
    step_results: dict[str, Any] = field(default_factory=dict)
    vault_path: str = ""
    active_file: str | None = None
    selection: str | None = None
    available_commands: list[dict[str, Any]] = field(default_factory=list)
    undo_journal: list[UndoEntry] = field(default_factory=list)

    def for_iteration(self, bindings: dict[str, Any]) -> "ExecutionContext":
        """Child context with its own copy of the variables."""
        variables = dict(self.variables)
        variables.update(bindings)
        return ExecutionContext(
            variables=variables,
            step_results=self.step_results,
            vault_path=self.vault_path,
            active_file=self.active_file,
            selection=self.selection,
            available_commands=self.available_commands,
            undo_journal=self.undo_journal,
        )

    def namespace(self) -> dict[str, Any]:
        return {
            "steps": self.step_results,
            "stepResults": self.step_results,
            "vars": self.variables,
            "variables": self.variables,
            "activeFile": self.active_file,
            "selection": self.selection,
            "vaultPath": self.vault_path,
            "availableCommands": self.available_commands,
        }

    def lookup(self, path: str) -> Any:
        """Resolve a dotted path (``steps.list.items``) against the context.

        Returns None when any segment is missing.
        """
        current: Any = self.namespace()
        for part in path.lstrip("$").split("."):
            if isinstance(current, dict) and part in current:
                current = current[part]
            elif isinstance(current, (list, tuple)) and part.isdigit() and int(part) < len(current):
                current = current[int(part)]
            else:
                return None
        return current

    def record_undo(self, operation: str, args: dict[str, Any], previous_state: Any = None) -> UndoEntry:
        entry = UndoEntry(operation=operation, args=dict(args), previous_state=previous_state)
        self.undo_journal.append(entry)
        return entry


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------

LogStatus = Literal["pending", "running", "success", "error", "skipped"]


@dataclass
class LogEntry:
    step_id: str
    tool: str
    preview: str
    status: LogStatus = "pending"
    start_time: float | None = None
    end_time: float | None = None
    duration: float | None = None
    result: Any = None
    error: str | None = None
    args: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "step_id": self.step_id,
            "tool": self.tool,
            "preview": self.preview,
            "status": self.status,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration": self.duration,
            "result": self.result,
            "error": self.error,
        }


@dataclass
class ExecutionProgress:
    current_step: int
    total_steps: int
    current_action: str
    start_time: float
    log: list[LogEntry] = field(default_factory=list)
    last_result: ExecutionResult | None = None
    completed_steps: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "current_action": self.current_action,
            "start_time": self.start_time,
            "log": [e.to_dict() for e in self.log],
            "last_result": self.last_result.model_dump(mode="json") if self.last_result else None,
            "completed_steps": list(self.completed_steps),
        }


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass
class Event:
    type: str
    plan_id: str
    ts: float = field(default_factory=time.time)
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"type": self.type, "plan_id": self.plan_id, "ts": self.ts, "data": self.data}


# ---------------------------------------------------------------------------
# Persisted plan entity
# ---------------------------------------------------------------------------


class PlanStatus(str, Enum):
    DRAFT = "draft"  # created, not yet validated
    PENDING = "pending"  # validated, awaiting approval
    APPROVED = "approved"
    EXECUTING = "executing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PlanSummary(BaseModel):
    goal: str
    risk_level: str
    estimated_steps: int
    files_created: list[str] = Field(default_factory=list)
    files_modified: list[str] = Field(default_factory=list)
    files_deleted: list[str] = Field(default_factory=list)
    folders_created: list[str] = Field(default_factory=list)
    commands_executed: list[str] = Field(default_factory=list)
    tools_used: list[str] = Field(default_factory=list)
    has_loops: bool = False
    has_dependencies: bool = False
    estimated_complexity: Literal["low", "medium", "high"] = "low"


class ExecutionState(BaseModel):
    """Checkpoint of a running or paused attempt."""

    attempt_id: str
    current_step_index: int = 0
    total_steps: int
    started_at: datetime = Field(default_factory=utcnow)
    step_results: list[ExecutionResult] = Field(default_factory=list)
    completed_steps: list[str] = Field(default_factory=list)


class ExecutionAttempt(BaseModel):
    id: str = Field(default_factory=generate_id)
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    status: Literal["running", "paused", "completed", "failed", "cancelled"] = "running"
    resumed_from: Optional[str] = None
    result: Optional[ExecutionResult] = None
    error: Optional[str] = None
    step_results: list[ExecutionResult] = Field(default_factory=list)


class Plan(BaseModel):
    id: str = Field(default_factory=generate_id)
    title: str
    status: PlanStatus = PlanStatus.DRAFT
    priority: int = Field(default=3, ge=1, le=5)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    document: ActionPlan
    summary: Optional[PlanSummary] = None
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    execution_state: Optional[ExecutionState] = None
    execution_history: list[ExecutionAttempt] = Field(default_factory=list)
    depends_on: list[str] = Field(default_factory=list)
    parent_id: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    notes: Optional[str] = None
    pinned: bool = False

    @property
    def goal(self) -> str:
        return self.document.goal

    def current_attempt(self) -> ExecutionAttempt | None:
        if not self.execution_state:
            return None
        for attempt in self.execution_history:
            if attempt.id == self.execution_state.attempt_id:
                return attempt
        return None

    def summary_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "goal": self.goal,
            "status": self.status.value,
            "priority": self.priority,
            "steps": len(self.document.steps),
            "attempts": len(self.execution_history),
            "tags": self.tags,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
