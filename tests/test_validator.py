"""Test static plan validation."""

import pytest

from conftest import make_plan
from planrunner.errors import DependencyError, SchemaError, ToolNotFoundError
from planrunner.placeholders import PlaceholderDetector, RegexMatcher
from planrunner.validator import PlanValidator, format_result, has_placeholders, placeholder_warnings


@pytest.fixture
def validator():
    return PlanValidator()


def step(step_id, tool="vault.readFile", depends_on=None, **args):
    s = {"id": step_id, "tool": tool, "args": args or {"path": f"{step_id}.md"}}
    if depends_on:
        s["dependsOn"] = depends_on
    return s


def test_valid_plan(validator):
    result = validator.validate(make_plan(step("a"), step("b", depends_on=["a"])))
    assert result.valid
    assert result.errors == []
    assert result.plan.steps[1].depends_on == ["a"]
    assert result.summary.has_dependencies
    assert result.summary.estimated_complexity == "medium"


def test_schema_errors_short_circuit(validator):
    result = validator.validate({"goal": "x", "riskLevel": "dangerous", "steps": [{"id": "1bad", "tool": "?"}]})
    assert not result.valid
    assert {e.type for e in result.errors} == {"schema"}
    assert result.summary is None
    with pytest.raises(SchemaError):
        result.raise_for_errors()


def test_empty_steps_rejected(validator):
    result = validator.validate({"goal": "x", "riskLevel": "read-only", "steps": []})
    assert not result.valid
    assert result.errors[0].field == "steps"


def test_unknown_tool(validator):
    result = validator.validate(make_plan(step("a", tool="vault.teleport")))
    assert [e.message for e in result.errors] == ["Unknown tool: vault.teleport"]
    with pytest.raises(ToolNotFoundError):
        result.raise_for_errors()


def test_argument_shape(validator):
    result = validator.validate(make_plan(step("a", tool="vault.createFile", path="x.md"), risk="writes"))
    assert len(result.errors) == 1
    error = result.errors[0]
    assert error.type == "argument"
    assert error.field == "args.content"
    assert error.message.startswith("Invalid argument for vault.createFile: content:")


def test_missing_dependency(validator):
    result = validator.validate(make_plan(step("a", depends_on=["ghost"])))
    assert result.errors[0].message == "Step a depends on non-existent step: ghost"


def test_duplicate_step_ids(validator):
    result = validator.validate(make_plan(step("a"), step("a")))
    assert result.errors[0].message == "Duplicate step id: a"


def test_cycle_names_step_closing_the_loop(validator):
    plan = make_plan(
        step("start"),
        step("a", depends_on=["start", "c"]),
        step("b", depends_on=["a"]),
        step("c", depends_on=["b"]),
    )
    result = validator.validate(plan)
    cycles = [e for e in result.errors if "Circular dependency" in e.message]
    assert len(cycles) == 1
    # a -> c -> b, and b depends back on a
    assert cycles[0].step_id == "b"
    assert cycles[0].message == "Circular dependency detected involving step: b"
    with pytest.raises(DependencyError):
        result.raise_for_errors()


def test_self_dependency_is_a_cycle(validator):
    result = validator.validate(make_plan(step("a", depends_on=["a"])))
    assert result.errors[0].message == "Circular dependency detected involving step: a"


@pytest.mark.parametrize("path", ["/etc/passwd", "../outside.md", "notes/../../x.md", "C:\\temp\\x.md"])
def test_unsafe_paths(validator, path):
    result = validator.validate(make_plan(step("a", path=path)))
    assert [e.type for e in result.errors] == ["path"]
    assert result.errors[0].field == "args.path"


def test_unsafe_rename_target(validator):
    plan = make_plan(step("a", tool="vault.rename", fromPath="a.md", toPath="../b.md"), risk="writes")
    result = validator.validate(plan)
    assert [e.field for e in result.errors] == ["args.toPath"]


def test_unsafe_search_paths(validator):
    result = validator.validate(make_plan(step("a", tool="vault.searchText", query="x", paths=["ok", "/abs"])))
    assert len(result.errors) == 1


def test_summary(validator):
    plan = make_plan(
        step("folder", tool="vault.ensureFolder", path="Daily"),
        step("note", tool="vault.createFile", path="Daily/a.md", content="hi"),
        step("edit", tool="vault.writeFile", path="Inbox.md", content="hi"),
        step("rm", tool="vault.delete", path="Old.md"),
        step("cmd", tool="commands.run", id="app:reload"),
        risk="commands",
    )
    summary = validator.validate(plan).summary
    assert summary.folders_created == ["Daily"]
    assert summary.files_created == ["Daily/a.md"]
    assert summary.files_modified == ["Inbox.md"]
    assert summary.files_deleted == ["Old.md"]
    assert summary.commands_executed == ["app:reload"]
    assert summary.tools_used[0] == "vault.ensureFolder"


def test_loops_make_complexity_high(validator):
    s = step("a")
    s["foreach"] = {"from": "vars.files", "itemName": "file"}
    result = validator.validate(make_plan(s))
    assert result.summary.has_loops
    assert result.summary.estimated_complexity == "high"
    assert any("without concurrency limit" in w.message for w in result.warnings)


def test_risk_level_understated(validator):
    result = validator.validate(make_plan(step("a", tool="vault.writeFile", path="x.md", content="y")))
    assert result.valid
    risk = [w.message for w in result.warnings if w.type == "risk"]
    assert risk == ['Plan declares "read-only" risk but performs 1 write operations']


def test_commands_under_writes_risk(validator):
    result = validator.validate(make_plan(step("a", tool="commands.run", id="x"), risk="writes"))
    assert any('should be "commands"' in w.message for w in result.warnings)


def test_delete_warning(validator):
    result = validator.validate(make_plan(step("rm", tool="vault.delete", path="x.md"), risk="writes"))
    assert any(w.type == "safety" and w.step_id == "rm" for w in result.warnings)


def test_large_plan_warning(validator, monkeypatch):
    monkeypatch.setattr("planrunner.config.LARGE_PLAN_STEPS", 2)
    result = validator.validate(make_plan(step("a"), step("b"), step("c")))
    assert any(w.type == "performance" for w in result.warnings)


def test_placeholder_warning(validator):
    plan = make_plan(
        step("a", tool="vault.writeFile", path="x.md", content="[Insert summary here]"),
        risk="writes",
    )
    result = validator.validate(plan)
    assert result.valid
    assert has_placeholders(result)
    hit = placeholder_warnings(result)[0]
    assert hit.field == "args.content"
    assert hit.message == 'Step "a" has a placeholder value in "content": "[Insert summary here]"'


def test_custom_placeholder_matcher():
    detector = PlaceholderDetector(matchers=[])
    detector.register(RegexMatcher.compile("lorem", r"lorem ipsum"))
    validator = PlanValidator(placeholder_detector=detector)
    plan = make_plan(step("a", tool="vault.writeFile", path="x.md", content="Lorem ipsum dolor"), risk="writes")
    assert has_placeholders(validator.validate(plan))


def test_format_result(validator):
    report = format_result(validator.validate(make_plan(step("a", tool="vault.teleport"))))
    assert "=== Plan Summary ===" in report
    assert "=== Errors ===" in report
    assert "1. [tool] Unknown tool: vault.teleport (step: a)" in report
    assert report.endswith("✗ Plan has errors and cannot be executed")


def test_accepts_parsed_plan(validator):
    parsed = validator.validate(make_plan(step("a"))).plan
    assert validator.validate(parsed).valid
