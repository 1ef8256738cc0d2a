"""Command-line interface — validate, run and inspect plans."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import yaml
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from planrunner.config import LOG_LEVEL
from planrunner.engine import Engine
from planrunner.errors import PlanRunnerError
from planrunner.lifecycle import PlanExecutionResult
from planrunner.models import ExecutionProgress, Plan
from planrunner.tools.registry import create_default_registry
from planrunner.validator import PlanValidator, ValidationResult

console = Console()
logger = logging.getLogger(__name__)

STATUS_STYLES = {
    "pending": "dim",
    "running": "yellow",
    "success": "green",
    "error": "red",
    "skipped": "magenta",
}


def load_document(path: Path) -> dict[str, Any]:
    """Read a plan document from JSON or YAML."""
    text = path.read_text(encoding="utf-8")
    if path.suffix in (".yaml", ".yml"):
        return yaml.safe_load(text)
    return json.loads(text)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def print_validation(result: ValidationResult):
    s = result.summary
    if s:
        lines = [
            f"[bold]Goal:[/bold] {s.goal}",
            f"[bold]Risk:[/bold] {s.risk_level}    [bold]Steps:[/bold] {s.estimated_steps}"
            f"    [bold]Complexity:[/bold] {s.estimated_complexity}",
            f"[bold]Tools:[/bold] {', '.join(s.tools_used)}",
        ]
        for label, items in (
            ("Create", s.files_created),
            ("Modify", s.files_modified),
            ("Delete", s.files_deleted),
            ("Folders", s.folders_created),
            ("Commands", s.commands_executed),
        ):
            if items:
                lines.append(f"[bold]{label}:[/bold] {', '.join(items)}")
        console.print(Panel("\n".join(lines), title="[bold]Plan Summary[/bold]", border_style="blue"))

    for issue in result.errors:
        console.print(f"[red]✗ {issue.describe()}[/red]")
    for issue in result.warnings:
        console.print(f"[yellow]! {issue.describe()}[/yellow]")

    if result.valid:
        console.print("[green]✓ Plan is valid and ready for execution[/green]")
    else:
        console.print("[red]✗ Plan has errors and cannot be executed[/red]")


def print_progress(progress: ExecutionProgress):
    last = progress.last_result
    if last is None:
        console.print(f"[dim]({progress.current_step}/{progress.total_steps})[/dim] {progress.current_action}")
        return
    label = last.step_id if last.iteration is None else f"{last.step_id}[{last.iteration}]"
    if last.success:
        console.print(f"  [green]✓[/green] {label} [dim]{last.duration:.0f}ms[/dim]")
    else:
        console.print(f"  [red]✗[/red] {label}: {last.error}")


def print_result(plan: Plan, outcome: PlanExecutionResult):
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Step", style="cyan")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Time", style="yellow", justify="right")
    table.add_column("Error", style="red")

    for r in outcome.results:
        label = r.step_id if r.iteration is None else f"{r.step_id}[{r.iteration}]"
        status = "success" if r.success else "error"
        style = STATUS_STYLES[status]
        table.add_row(label, f"[{style}]{status}[/{style}]", str(r.attempts), f"{r.duration:.0f}ms", r.error or "")
    console.print(table)

    colour = "green" if outcome.success else "red"
    verdict = "completed" if outcome.success else (outcome.error or "failed")
    console.print(
        f"[{colour}]{plan.title}: {verdict}[/{colour}] "
        f"({outcome.completed_steps}/{outcome.total_steps} steps, {outcome.duration / 1000:.2f}s)"
    )


def print_plans(plans: list[Plan]):
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("ID", style="cyan")
    table.add_column("Title", style="green")
    table.add_column("Status")
    table.add_column("Priority", justify="right")
    table.add_column("Steps", justify="right")
    table.add_column("Attempts", justify="right")
    for p in plans:
        table.add_row(p.id, p.title, p.status.value, str(p.priority), str(len(p.document.steps)),
                      str(len(p.execution_history)))
    console.print(table)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_validate(args) -> int:
    result = PlanValidator().validate(load_document(Path(args.file)))
    if args.json:
        console.print_json(data=result.to_dict())
    else:
        print_validation(result)
    return 0 if result.valid else 1


def cmd_tools(args) -> int:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Tool", style="cyan")
    table.add_column("Category", style="yellow")
    table.add_column("Description")
    for tool in create_default_registry().get_all(args.category):
        table.add_row(tool.name, tool.category, tool.description)
    console.print(table)
    return 0


def cmd_plans(args) -> int:
    engine = _engine(args)
    print_plans(engine.store.list(status=args.status, search=args.search))
    return 0


def cmd_run(args) -> int:
    engine = _engine(args)
    plan = engine.store.create(load_document(Path(args.file)), title=args.title)
    result = engine.validator.validate(plan.document)
    print_validation(result)
    if not result.valid:
        return 1
    if not args.yes and not Confirm.ask("\n[bold]Execute this plan?[/bold]"):
        console.print(f"[dim]Plan stored as {plan.id} ({plan.status.value})[/dim]")
        return 0
    engine.store.approve(plan.id)
    return _execute(engine, plan.id)


def cmd_execute(args) -> int:
    engine = _engine(args)
    plan = engine.store.require(args.plan_id)
    if plan.status.value in ("draft", "pending"):
        engine.store.approve(plan.id)
    return _execute(engine, plan.id)


def cmd_cancel(args) -> int:
    engine = _engine(args)
    engine.manager.cancel(args.plan_id)
    console.print(f"[yellow]Plan {args.plan_id} cancelled[/yellow]")
    return 0


def cmd_serve(args) -> int:
    from planrunner import server

    server.main()
    return 0


def _engine(args) -> Engine:
    return Engine(
        data_dir=Path(args.data_dir) if args.data_dir else None,
        vault_dir=Path(args.vault) if args.vault else None,
    )


def _execute(engine: Engine, plan_id: str) -> int:
    engine.manager.on_progress(print_progress)
    outcome = asyncio.run(engine.manager.execute(plan_id))
    print_result(engine.store.require(plan_id), outcome)
    return 0 if outcome.success else 1


# ---------------------------------------------------------------------------
# Entry Point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="planrunner", description="Validate and execute action plans.")
    parser.add_argument("--data-dir", help="Directory holding plans.json and events.jsonl")
    parser.add_argument("--vault", help="Vault root used by the local provider")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("validate", help="Validate a plan document")
    p.add_argument("file")
    p.add_argument("--json", action="store_true", help="Print the raw validation result")
    p.set_defaults(func=cmd_validate)

    p = sub.add_parser("run", help="Store, approve and execute a plan document")
    p.add_argument("file")
    p.add_argument("--title")
    p.add_argument("-y", "--yes", action="store_true", help="Skip the confirmation prompt")
    p.set_defaults(func=cmd_run)

    p = sub.add_parser("execute", help="Execute (or resume) a stored plan")
    p.add_argument("plan_id")
    p.set_defaults(func=cmd_execute)

    p = sub.add_parser("cancel", help="Cancel a paused plan")
    p.add_argument("plan_id")
    p.set_defaults(func=cmd_cancel)

    p = sub.add_parser("plans", help="List stored plans")
    p.add_argument("--status")
    p.add_argument("--search")
    p.set_defaults(func=cmd_plans)

    p = sub.add_parser("tools", help="List available tools")
    p.add_argument("--category", choices=["read", "write", "delete", "command"])
    p.set_defaults(func=cmd_tools)

    p = sub.add_parser("serve", help="Start the HTTP server")
    p.set_defaults(func=cmd_serve)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level="DEBUG" if args.verbose else LOG_LEVEL,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    try:
        return args.func(args)
    except PlanRunnerError as e:
        console.print(f"[red]Error:[/red] {e}")
        return 2


def run():
    sys.exit(main())


if __name__ == "__main__":
    run()
