"""Shared fixtures: a scriptable capability provider and plan builders."""

import asyncio
import inspect

import pytest

from planrunner.engine import Engine
from planrunner.providers.base import CapabilityProvider


class FakeProvider(CapabilityProvider):
    """Records every invocation. Behaviour is scripted per label.

    A label is ``args["label"]`` (or ``args["title"]`` for util tools). A
    scripted behaviour is either an exception instance (raised), or a callable
    taking ``(args, context)`` that may be async.
    """

    def __init__(self, behaviours=None, delay=0.0):
        self.behaviours = behaviours or {}
        self.delay = delay
        self.calls: list[str] = []
        self.timeline: list[tuple[str, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def invoke(self, tool, args, context):
        label = str(args.get("label", args.get("title", tool)))
        self.calls.append(label)
        self.timeline.append(("start", label))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            behaviour = self.behaviours.get(label)
            if isinstance(behaviour, BaseException):
                raise behaviour
            if callable(behaviour):
                result = behaviour(args, context)
                if inspect.isawaitable(result):
                    result = await result
                return result
            return {"label": label, "args": args}
        finally:
            self.in_flight -= 1
            self.timeline.append(("end", label))


def make_step(step_id, tool="test.echo", depends_on=None, **extra):
    step = {"id": step_id, "tool": tool, "args": {"label": step_id}}
    if depends_on:
        step["dependsOn"] = depends_on
    step.update(extra)
    return step


def make_plan(*steps, goal="Test plan", risk="read-only", **extra):
    return {"goal": goal, "riskLevel": risk, "steps": list(steps), **extra}


def slug_step(step_id, depends_on=None, **extra):
    """A step using a registered tool, so lifecycle re-validation passes."""
    step = {"id": step_id, "tool": "util.slugifyTitle", "args": {"title": step_id}}
    if depends_on:
        step["dependsOn"] = depends_on
    step.update(extra)
    return step


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def engine(tmp_path, provider):
    return Engine(data_dir=tmp_path / "data", vault_dir=tmp_path / "vault", provider=provider)


@pytest.fixture
def approved(engine):
    """Create and approve a plan, returning its id."""

    def _approved(*steps):
        plan = engine.store.create(make_plan(*steps))
        engine.store.approve(plan.id)
        return plan.id

    return _approved
