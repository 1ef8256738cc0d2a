"""Test the single-slot execution lifecycle: execute, pause, resume, cancel."""

import asyncio

import pytest

from conftest import FakeProvider, make_plan, slug_step
from planrunner.engine import Engine
from planrunner.errors import LifecycleError, PlanValidationError
from planrunner.lifecycle import SessionStatus
from planrunner.models import PlanStatus


def test_execute_completes_plan(engine, provider, approved):
    plan_id = approved(slug_step("a"), slug_step("b", depends_on=["a"]))
    outcome = asyncio.run(engine.manager.execute(plan_id))

    assert outcome.success
    assert outcome.completed_steps == 2
    assert provider.calls == ["a", "b"]

    plan = engine.store.require(plan_id)
    assert plan.status == PlanStatus.COMPLETED
    assert plan.execution_state is None
    assert [a.status for a in plan.execution_history] == ["completed"]
    assert [r.step_id for r in plan.execution_history[0].step_results] == ["a", "b"]
    assert engine.manager.session.status == SessionStatus.IDLE


def test_execute_requires_approval(engine):
    plan = engine.store.create(make_plan(slug_step("a")))
    assert plan.status == PlanStatus.PENDING
    with pytest.raises(LifecycleError, match="Plan must be approved, paused, or failed"):
        asyncio.run(engine.manager.execute(plan.id))


def test_execute_revalidates(engine):
    plan = engine.store.create(make_plan({"id": "a", "tool": "no.such", "args": {}}))
    assert plan.status == PlanStatus.DRAFT
    engine.store.approve(plan.id)
    with pytest.raises(PlanValidationError):
        asyncio.run(engine.manager.execute(plan.id))
    assert engine.store.require(plan.id).status == PlanStatus.APPROVED


def test_failure_marks_plan_failed(engine, provider, approved):
    provider.behaviours["b"] = RuntimeError("disk full")
    plan_id = approved(slug_step("a"), slug_step("b", depends_on=["a"]), slug_step("c", depends_on=["b"]))
    outcome = asyncio.run(engine.manager.execute(plan_id))

    assert not outcome.success
    assert outcome.error == "disk full"
    assert [r.step_id for r in outcome.results] == ["a", "b"]
    plan = engine.store.require(plan_id)
    assert plan.status == PlanStatus.FAILED
    assert plan.execution_history[-1].error == "disk full"


def test_failed_plan_can_run_again(engine, provider, approved):
    provider.behaviours["a"] = RuntimeError("first time")
    plan_id = approved(slug_step("a"))
    asyncio.run(engine.manager.execute(plan_id))

    del provider.behaviours["a"]
    outcome = asyncio.run(engine.manager.execute(plan_id))

    assert outcome.success
    plan = engine.store.require(plan_id)
    assert plan.status == PlanStatus.COMPLETED
    assert [a.status for a in plan.execution_history] == ["failed", "completed"]


def test_second_execute_is_rejected(engine, provider, approved):
    other = approved(slug_step("x"))
    rejected = []

    async def try_other(args, context):
        assert engine.manager.is_executing()
        with pytest.raises(LifecycleError, match="already executing"):
            await engine.manager.execute(other)
        rejected.append(other)

    provider.behaviours["a"] = try_other
    plan_id = approved(slug_step("a"))
    outcome = asyncio.run(engine.manager.execute(plan_id))

    assert outcome.success
    assert rejected == [other]
    assert engine.store.require(other).status == PlanStatus.APPROVED


def test_pause_then_resume_does_not_repeat_steps(engine, provider, approved):
    provider.behaviours["b"] = lambda args, context: engine.manager.pause()
    plan_id = approved(slug_step("a"), slug_step("b", depends_on=["a"]), slug_step("c", depends_on=["b"]))

    async def scenario():
        paused = await engine.manager.execute(plan_id)
        assert paused.error == "Execution was paused"
        assert engine.manager.session.status == SessionStatus.PAUSED
        assert engine.store.require(plan_id).status == PlanStatus.PAUSED

        del provider.behaviours["b"]
        return await engine.manager.resume()

    outcome = asyncio.run(scenario())

    assert provider.calls == ["a", "b", "c"]
    assert outcome.success
    plan = engine.store.require(plan_id)
    assert plan.status == PlanStatus.COMPLETED
    assert [a.status for a in plan.execution_history] == ["paused", "completed"]
    assert plan.execution_history[1].resumed_from == plan.execution_history[0].id


def test_resumed_steps_see_earlier_results(engine, provider, approved):
    provider.behaviours["a"] = lambda args, context: {"slug": "from-a"}
    provider.behaviours["b"] = lambda args, context: engine.manager.pause()
    c = slug_step("c", depends_on=["b"])
    c["args"]["title"] = "$steps.a.slug"
    plan_id = approved(slug_step("a"), slug_step("b", depends_on=["a"]), c)

    async def scenario():
        await engine.manager.execute(plan_id)
        del provider.behaviours["b"]
        return await engine.manager.resume(plan_id)

    outcome = asyncio.run(scenario())
    assert outcome.success
    assert provider.calls == ["a", "b", "from-a"]


def test_pause_requires_running_execution(engine):
    with pytest.raises(LifecycleError):
        engine.manager.pause()


def test_resume_requires_paused_execution(engine):
    with pytest.raises(LifecycleError):
        asyncio.run(engine.manager.resume())


def test_paused_plan_blocks_other_plans(engine, provider, approved):
    provider.behaviours["a"] = lambda args, context: engine.manager.pause()
    first = approved(slug_step("a"), slug_step("b", depends_on=["a"]))
    second = approved(slug_step("x"))

    async def scenario():
        await engine.manager.execute(first)
        with pytest.raises(LifecycleError, match="is paused"):
            await engine.manager.execute(second)

    asyncio.run(scenario())


def test_cancel_frees_slot_immediately(engine, provider, approved):
    observed = {}

    def cancel_during(args, context):
        engine.manager.cancel()
        observed["executing"] = engine.manager.is_executing()
        observed["status"] = engine.store.require(plan_id).status

    provider.behaviours["b"] = cancel_during
    plan_id = approved(slug_step("a"), slug_step("b", depends_on=["a"]), slug_step("c", depends_on=["b"]))
    outcome = asyncio.run(engine.manager.execute(plan_id))

    assert observed == {"executing": False, "status": PlanStatus.CANCELLED}
    assert outcome.error == "Execution was cancelled"
    assert provider.calls == ["a", "b"]
    plan = engine.store.require(plan_id)
    assert plan.status == PlanStatus.CANCELLED
    assert plan.execution_history[-1].status == "cancelled"
    assert engine.manager.session.status == SessionStatus.IDLE


def test_cancel_paused_plan(engine, provider, approved):
    provider.behaviours["a"] = lambda args, context: engine.manager.pause()
    plan_id = approved(slug_step("a"), slug_step("b", depends_on=["a"]))

    asyncio.run(engine.manager.execute(plan_id))
    engine.manager.cancel(plan_id)

    assert engine.store.require(plan_id).status == PlanStatus.CANCELLED
    assert engine.manager.session.status == SessionStatus.IDLE


def test_cancel_without_execution(engine):
    with pytest.raises(LifecycleError):
        engine.manager.cancel()


def test_progress_listeners_are_isolated(engine, approved):
    seen = []

    def broken(progress):
        raise RuntimeError("listener bug")

    engine.manager.on_progress(broken)
    off = engine.manager.on_progress(lambda p: seen.append(p.current_action))
    plan_id = approved(slug_step("a"))
    outcome = asyncio.run(engine.manager.execute(plan_id))

    assert outcome.success
    assert seen[-1] == "Execution complete"
    off()
    assert len(engine.manager._listeners) == 1


def test_resume_after_restart(tmp_path, engine, provider, approved):
    provider.behaviours["b"] = lambda args, context: engine.manager.pause()
    plan_id = approved(slug_step("a"), slug_step("b", depends_on=["a"]), slug_step("c", depends_on=["b"]))
    asyncio.run(engine.manager.execute(plan_id))

    fresh_provider = FakeProvider()
    restarted = Engine(data_dir=tmp_path / "data", vault_dir=tmp_path / "vault", provider=fresh_provider)
    assert restarted.store.require(plan_id).status == PlanStatus.PAUSED

    outcome = asyncio.run(restarted.manager.resume(plan_id))
    assert outcome.success
    assert fresh_provider.calls == ["c"]


def test_check_ready_rejects_blocked_plan(engine, provider, approved):
    first = approved(slug_step("a"))
    second = approved(slug_step("b"))
    engine.store.add_dependency(second, first)

    with pytest.raises(LifecycleError, match="incomplete dependencies"):
        engine.manager.check_ready(second)
    assert engine.store.require(second).status == PlanStatus.APPROVED
    assert provider.calls == []

    asyncio.run(engine.manager.execute(first))
    assert engine.manager.check_ready(second).id == second


def test_resume_target_requires_paused_plan(engine, approved):
    plan_id = approved(slug_step("a"))
    with pytest.raises(LifecycleError, match="No paused execution"):
        engine.manager.resume_target(plan_id)
