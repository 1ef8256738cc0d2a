"""Test $steps / $vars reference resolution."""

import pytest

from planrunner.errors import InterpolationError
from planrunner.interpolation import Interpolator
from planrunner.models import ExecutionContext


@pytest.fixture
def context():
    return ExecutionContext(
        variables={"name": "Ada", "count": 3, "flag": True},
        step_results={
            "step1": {"content": "Hello", "items": [{"path": "a.md"}, {"path": "b.md"}]},
            "list": ["x", "y"],
        },
    )


def interpolate(args, context):
    return Interpolator().interpolate(args, context)


def test_step_reference(context):
    assert interpolate("$steps.step1.content", context) == "Hello"


def test_nested_and_indexed_reference(context):
    assert interpolate("$steps.step1.items.1.path", context) == "b.md"
    assert interpolate("$steps.list.0", context) == "x"


def test_whole_reference_keeps_type(context):
    assert interpolate("$vars.count", context) == 3
    assert interpolate("$steps.step1.items", context) == [{"path": "a.md"}, {"path": "b.md"}]


def test_embedded_references(context):
    assert interpolate("Hi ${vars.name}, you have ${vars.count} notes", context) == "Hi Ada, you have 3 notes"
    assert interpolate("flag=${vars.flag}", context) == "flag=true"


def test_walks_nested_args(context):
    args = {"path": "$steps.step1.items.0.path", "meta": {"tags": ["$vars.name", "plain"]}, "limit": 5}
    assert interpolate(args, context) == {"path": "a.md", "meta": {"tags": ["Ada", "plain"]}, "limit": 5}


def test_plain_strings_untouched(context):
    assert interpolate("costs $5", context) == "costs $5"
    assert interpolate("$other.thing", context) == "$other.thing"
    assert interpolate(None, context) is None


def test_unknown_step(context):
    with pytest.raises(InterpolationError) as exc:
        interpolate("$steps.nope.content", context)
    assert exc.value.reference == "$steps.nope.content"
    assert "unknown step 'nope'" in str(exc.value)


def test_missing_path_segment(context):
    with pytest.raises(InterpolationError, match="no value at 'steps.step1.missing'"):
        interpolate("$steps.step1.missing", context)


def test_index_out_of_range(context):
    with pytest.raises(InterpolationError):
        interpolate("$steps.list.7", context)


def test_undefined_variable(context):
    with pytest.raises(InterpolationError, match="unknown variable 'ghost'"):
        interpolate("${vars.ghost}", context)


def test_resolve_without_dollar(context):
    assert Interpolator().resolve("vars.name", context) == "Ada"
    with pytest.raises(InterpolationError, match="Malformed"):
        Interpolator().resolve("steps", context)
