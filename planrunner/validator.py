"""Static plan validation — runs before any step is allowed to execute.

Checks, in order: document shape, tool existence, tool arguments,
dependency graph, path safety. A summary of the plan's effects and a set of
advisory warnings (risk level, safety, placeholders) are produced for any
document that passes the shape check.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from planrunner import config
from planrunner.errors import (
    ArgumentValidationError,
    DependencyError,
    PathSafetyError,
    PlanValidationError,
    SchemaError,
    ToolNotFoundError,
)
from planrunner.models import PlanSummary
from planrunner.paths import validate_vault_path
from planrunner.placeholders import PlaceholderDetector
from planrunner.schema import ActionPlan, RiskLevel, Step
from planrunner.tools.registry import ToolRegistry, create_default_registry

logger = logging.getLogger(__name__)

_ERROR_CLASSES: dict[str, type[PlanValidationError]] = {
    "schema": SchemaError,
    "tool": ToolNotFoundError,
    "argument": ArgumentValidationError,
    "dependency": DependencyError,
    "path": PathSafetyError,
}


@dataclass
class ValidationIssue:
    type: str  # errors: schema|tool|argument|dependency|path; warnings: risk|safety|performance|placeholder
    message: str
    step_id: str | None = None
    field: str | None = None

    def to_dict(self) -> dict:
        return {"type": self.type, "message": self.message, "step_id": self.step_id, "field": self.field}

    def describe(self) -> str:
        suffix = f" (step: {self.step_id})" if self.step_id else ""
        return f"[{self.type}] {self.message}{suffix}"


@dataclass
class ValidationResult:
    valid: bool
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)
    summary: PlanSummary | None = None
    plan: ActionPlan | None = None

    def raise_for_errors(self):
        """Raise the error class matching the first error, if any."""
        if not self.errors:
            return
        first = self.errors[0]
        error_cls = _ERROR_CLASSES.get(first.type, PlanValidationError)
        raise error_cls(first.message, result=self)

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "summary": self.summary.model_dump() if self.summary else None,
        }


class PlanValidator:
    def __init__(self, registry: ToolRegistry | None = None, placeholder_detector: PlaceholderDetector | None = None):
        self.registry = registry or create_default_registry()
        self.placeholders = placeholder_detector or PlaceholderDetector()

    def validate(self, document: dict[str, Any] | ActionPlan) -> ValidationResult:
        """Validate a plan document. Never raises for a bad plan."""
        errors: list[ValidationIssue] = []
        warnings: list[ValidationIssue] = []

        if isinstance(document, ActionPlan):
            plan = document
        else:
            try:
                plan = ActionPlan.model_validate(document)
            except ValidationError as e:
                for err in e.errors():
                    loc = ".".join(str(p) for p in err["loc"])
                    errors.append(ValidationIssue("schema", f"{loc}: {err['msg']}", field=loc))
                logger.debug(f"Plan rejected by schema check with {len(errors)} error(s)")
                return ValidationResult(valid=False, errors=errors, warnings=warnings)

        self._check_tools(plan.steps, errors)
        self._check_arguments(plan.steps, errors)
        self._check_dependencies(plan.steps, errors)
        self._check_paths(plan.steps, errors)

        summary = self.summarize(plan)
        self._safety_warnings(plan, summary, warnings)
        self._risk_warnings(plan, summary, warnings)
        self._placeholder_warnings(plan.steps, warnings)

        return ValidationResult(
            valid=not errors,
            errors=errors,
            warnings=warnings,
            summary=summary,
            plan=plan,
        )

    # ------------------------------------------------------------------
    # Errors
    # ------------------------------------------------------------------

    def _check_tools(self, steps: list[Step], errors: list[ValidationIssue]):
        for step in steps:
            if step.tool not in self.registry:
                errors.append(ValidationIssue("tool", f"Unknown tool: {step.tool}", step.id, "tool"))

    def _check_arguments(self, steps: list[Step], errors: list[ValidationIssue]):
        for step in steps:
            for loc, msg in self.registry.validate_args(step.tool, step.args):
                errors.append(ValidationIssue(
                    "argument",
                    f"Invalid argument for {step.tool}: {loc}: {msg}",
                    step.id,
                    f"args.{loc}" if loc else "args",
                ))

    def _check_dependencies(self, steps: list[Step], errors: list[ValidationIssue]):
        ids: set[str] = set()
        for step in steps:
            if step.id in ids:
                errors.append(ValidationIssue("dependency", f"Duplicate step id: {step.id}", step.id, "id"))
            ids.add(step.id)
        for step in steps:
            for dep in step.depends_on:
                if dep not in ids:
                    errors.append(ValidationIssue(
                        "dependency",
                        f"Step {step.id} depends on non-existent step: {dep}",
                        step.id,
                        "dependsOn",
                    ))

        deps = {s.id: s.depends_on for s in steps}
        visited: set[str] = set()
        on_stack: set[str] = set()

        def back_edge(step_id: str) -> str | None:
            """Id of the step whose dependency closes the first cycle reachable from step_id."""
            visited.add(step_id)
            on_stack.add(step_id)
            for dep in deps.get(step_id, []):
                if dep not in visited:
                    found = back_edge(dep)
                    if found:
                        return found
                elif dep in on_stack:
                    return step_id
            on_stack.discard(step_id)
            return None

        for step in steps:
            if step.id in visited:
                continue
            culprit = back_edge(step.id)
            if culprit:
                errors.append(ValidationIssue(
                    "dependency",
                    f"Circular dependency detected involving step: {culprit}",
                    culprit,
                ))
                break

    def _check_paths(self, steps: list[Step], errors: list[ValidationIssue]):
        for step in steps:
            tool_def = self.registry.get_def(step.tool)
            arg_names = tool_def.path_args if tool_def else ("path", "fromPath", "toPath")
            for name in arg_names:
                value = step.args.get(name)
                candidates = value if isinstance(value, list) else [value]
                for candidate in candidates:
                    if not isinstance(candidate, str):
                        continue
                    try:
                        validate_vault_path(candidate)
                    except PathSafetyError as e:
                        errors.append(ValidationIssue("path", f"Invalid path in {step.tool}: {e}", step.id, f"args.{name}"))

    # ------------------------------------------------------------------
    # Summary and warnings
    # ------------------------------------------------------------------

    def summarize(self, plan: ActionPlan) -> PlanSummary:
        summary = PlanSummary(
            goal=plan.goal,
            risk_level=plan.risk_level.value,
            estimated_steps=len(plan.steps),
            tools_used=list(dict.fromkeys(s.tool for s in plan.steps)),
            has_loops=any(s.foreach is not None for s in plan.steps),
            has_dependencies=any(s.depends_on for s in plan.steps),
        )
        buckets = {
            "vault.createFile": summary.files_created,
            "vault.writeFile": summary.files_modified,
            "vault.delete": summary.files_deleted,
            "vault.ensureFolder": summary.folders_created,
        }
        for step in plan.steps:
            if step.tool in buckets and isinstance(step.args.get("path"), str):
                buckets[step.tool].append(step.args["path"])
            elif step.tool == "commands.run" and isinstance(step.args.get("id"), str):
                summary.commands_executed.append(step.args["id"])

        if len(plan.steps) > 10 or summary.has_loops:
            summary.estimated_complexity = "high"
        elif len(plan.steps) > 5 or summary.has_dependencies:
            summary.estimated_complexity = "medium"
        return summary

    def _safety_warnings(self, plan: ActionPlan, summary: PlanSummary, warnings: list[ValidationIssue]):
        for step in plan.steps:
            if step.tool == "vault.delete":
                warnings.append(ValidationIssue(
                    "safety", f"Step {step.id} will delete a file. Ensure user confirmation is enabled.", step.id,
                ))
        if summary.commands_executed:
            warnings.append(ValidationIssue(
                "safety",
                f"Plan includes {len(summary.commands_executed)} command(s). "
                "Ensure command permissions are configured correctly.",
            ))
        if len(plan.steps) > config.LARGE_PLAN_STEPS:
            warnings.append(ValidationIssue(
                "performance", f"Plan has {len(plan.steps)} steps. Consider breaking into smaller plans.",
            ))
        for step in plan.steps:
            if step.foreach and step.foreach.concurrency is None:
                warnings.append(ValidationIssue(
                    "performance",
                    f"Step {step.id} has foreach without concurrency limit. Will execute sequentially.",
                    step.id,
                ))

    def _risk_warnings(self, plan: ActionPlan, summary: PlanSummary, warnings: list[ValidationIssue]):
        writes = (
            len(summary.files_created) + len(summary.files_modified)
            + len(summary.files_deleted) + len(summary.folders_created)
        )
        commands = len(summary.commands_executed)
        if plan.risk_level == RiskLevel.READ_ONLY:
            if writes:
                warnings.append(ValidationIssue(
                    "risk", f'Plan declares "read-only" risk but performs {writes} write operations',
                ))
            if commands:
                warnings.append(ValidationIssue(
                    "risk", f'Plan declares "read-only" risk but executes {commands} commands',
                ))
        elif plan.risk_level == RiskLevel.WRITES and commands:
            warnings.append(ValidationIssue(
                "risk", f'Plan declares "writes" risk but executes {commands} commands - should be "commands"',
            ))

    def _placeholder_warnings(self, steps: list[Step], warnings: list[ValidationIssue]):
        for step in steps:
            for hit in self.placeholders.scan(step.id, step.args):
                warnings.append(ValidationIssue(
                    "placeholder",
                    f'Step "{hit.step_id}" has a placeholder value in "{hit.field}": "{_truncate(hit.value, 60)}"',
                    hit.step_id,
                    f"args.{hit.field}",
                ))


def has_placeholders(result: ValidationResult) -> bool:
    return any(w.type == "placeholder" for w in result.warnings)


def placeholder_warnings(result: ValidationResult) -> list[ValidationIssue]:
    return [w for w in result.warnings if w.type == "placeholder"]


def format_result(result: ValidationResult) -> str:
    """Human-readable validation report."""
    lines: list[str] = []
    s = result.summary
    if s:
        lines.append("=== Plan Summary ===")
        lines.append(f"Goal: {s.goal}")
        lines.append(f"Risk Level: {s.risk_level}")
        lines.append(f"Steps: {s.estimated_steps}")
        lines.append(f"Complexity: {s.estimated_complexity}")
        lines.append(f"Tools: {', '.join(s.tools_used)}")
        for label, items in (
            ("Files to create", s.files_created),
            ("Files to modify", s.files_modified),
            ("Files to delete", s.files_deleted),
            ("Folders to create", s.folders_created),
            ("Commands to execute", s.commands_executed),
        ):
            if items:
                lines.append(f"{label}: {', '.join(items)}")
        lines.append("")

    if result.errors:
        lines.append("=== Errors ===")
        lines.extend(f"{i}. {e.describe()}" for i, e in enumerate(result.errors, 1))
        lines.append("")

    if result.warnings:
        lines.append("=== Warnings ===")
        lines.extend(f"{i}. {w.describe()}" for i, w in enumerate(result.warnings, 1))
        lines.append("")

    if result.valid:
        lines.append("✓ Plan is valid and ready for execution")
    else:
        lines.append("✗ Plan has errors and cannot be executed")
    return "\n".join(lines)


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."
