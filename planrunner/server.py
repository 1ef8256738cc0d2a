"""FastAPI server — HTTP and WebSocket surface for the plan engine."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import uvicorn
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from planrunner.config import LOG_LEVEL, SERVER_HOST, SERVER_PORT
from planrunner.engine import Engine
from planrunner.errors import LifecycleError, PlanNotFoundError, PlanStoreError, PlanValidationError
from planrunner.models import Plan, PlanStatus
from planrunner.validator import format_result

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s [%(name)s] %(levelname)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="planrunner", version="0.1", description="Plan execution engine")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_engine: Engine | None = None
_background: set[asyncio.Task] = set()


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = Engine()
    return _engine


def set_engine(engine: Engine | None):
    global _engine
    _engine = engine


# ---------------------------------------------------------------------------
# Request / Response Models
# ---------------------------------------------------------------------------


class ValidateRequest(BaseModel):
    document: dict[str, Any]


class CreatePlanRequest(BaseModel):
    document: dict[str, Any]
    title: str | None = None
    priority: int = Field(default=3, ge=1, le=5)
    tags: list[str] = Field(default_factory=list)
    notes: str | None = None
    parent_id: str | None = None


class UpdatePlanRequest(BaseModel):
    title: str | None = None
    priority: int | None = Field(default=None, ge=1, le=5)
    tags: list[str] | None = None
    notes: str | None = None
    pinned: bool | None = None


class DependencyRequest(BaseModel):
    depends_on: str


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


@app.exception_handler(PlanNotFoundError)
async def _not_found(request, exc: PlanNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(LifecycleError)
async def _conflict(request, exc: LifecycleError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(PlanValidationError)
async def _invalid(request, exc: PlanValidationError):
    content: dict[str, Any] = {"detail": str(exc)}
    if exc.result is not None:
        content["validation"] = exc.result.to_dict()
    return JSONResponse(status_code=422, content=content)


@app.exception_handler(PlanStoreError)
async def _store_error(request, exc: PlanStoreError):
    return JSONResponse(status_code=500, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Tools and validation
# ---------------------------------------------------------------------------


@app.get("/tools")
async def list_tools(category: str | None = None) -> list[dict]:
    """All registered tools with their argument schemas."""
    return [t.to_dict() for t in get_engine().registry.get_all(category)]


@app.post("/plans/validate")
async def validate_plan(req: ValidateRequest) -> dict:
    """Validate a plan document without storing it."""
    result = get_engine().validator.validate(req.document)
    return {**result.to_dict(), "report": format_result(result)}


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


@app.post("/plans")
async def create_plan(req: CreatePlanRequest) -> dict:
    plan = get_engine().store.create(
        req.document,
        title=req.title,
        priority=req.priority,
        tags=req.tags,
        notes=req.notes,
        parent_id=req.parent_id,
    )
    return _plan_detail(plan)


@app.get("/plans")
async def list_plans(
    status: str | None = None,
    tag: str | None = None,
    search: str | None = None,
    sort_by: str = "created_at",
    descending: bool = True,
) -> list[dict]:
    if status and status not in {s.value for s in PlanStatus}:
        raise HTTPException(status_code=400, detail=f"Unknown status: {status}")
    try:
        plans = get_engine().store.list(
            status=status,
            tags=[tag] if tag else None,
            search=search,
            sort_by=sort_by,
            descending=descending,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return [p.summary_dict() for p in plans]


@app.get("/plans/{plan_id}")
async def get_plan(plan_id: str) -> dict:
    return _plan_detail(get_engine().store.require(plan_id))


@app.patch("/plans/{plan_id}")
async def update_plan(plan_id: str, req: UpdatePlanRequest) -> dict:
    changes = req.model_dump(exclude_none=True)
    return _plan_detail(get_engine().store.update(plan_id, **changes))


@app.delete("/plans/{plan_id}")
async def delete_plan(plan_id: str) -> dict:
    get_engine().store.delete(plan_id)
    return {"status": "deleted", "id": plan_id}


@app.post("/plans/{plan_id}/approve")
async def approve_plan(plan_id: str) -> dict:
    return _plan_detail(get_engine().store.approve(plan_id))


@app.get("/plans/{plan_id}/history")
async def plan_history(plan_id: str) -> list[dict]:
    plan = get_engine().store.require(plan_id)
    return [a.model_dump(mode="json") for a in plan.execution_history]


@app.get("/plans/{plan_id}/readiness")
async def plan_readiness(plan_id: str) -> dict:
    get_engine().store.require(plan_id)
    return get_engine().store.can_execute(plan_id).to_dict()


@app.get("/plans/{plan_id}/conflicts")
async def plan_conflicts(plan_id: str) -> list[dict]:
    return [c.to_dict() for c in get_engine().store.detect_conflicts(plan_id)]


@app.post("/plans/{plan_id}/dependencies")
async def add_dependency(plan_id: str, req: DependencyRequest) -> dict:
    try:
        plan = get_engine().store.add_dependency(plan_id, req.depends_on)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _plan_detail(plan)


@app.delete("/plans/{plan_id}/dependencies/{depends_on}")
async def remove_dependency(plan_id: str, depends_on: str) -> dict:
    return _plan_detail(get_engine().store.remove_dependency(plan_id, depends_on))


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


@app.post("/plans/{plan_id}/execute")
async def execute_plan(plan_id: str, wait: bool = False) -> dict:
    """Start a plan. With ``wait`` the response carries the final result."""
    manager = get_engine().manager
    if wait:
        return (await manager.execute(plan_id)).to_dict()

    manager.check_ready(plan_id)
    _spawn(manager.execute(plan_id), plan_id)
    return {"status": "started", "plan_id": plan_id}


@app.get("/execution")
async def execution_status() -> dict:
    return get_engine().manager.session.to_dict()


@app.post("/execution/pause")
async def pause_execution() -> dict:
    manager = get_engine().manager
    manager.pause()
    return {"status": "paused", "plan_id": manager.current_plan_id()}


@app.post("/execution/resume")
async def resume_execution(plan_id: str | None = None, wait: bool = False) -> dict:
    manager = get_engine().manager
    if wait:
        return (await manager.resume(plan_id)).to_dict()
    target = manager.resume_target(plan_id)
    _spawn(manager.resume(plan_id), target)
    return {"status": "resuming", "plan_id": target}


@app.post("/execution/cancel")
async def cancel_execution(plan_id: str | None = None) -> dict:
    target = plan_id or get_engine().manager.current_plan_id()
    get_engine().manager.cancel(plan_id)
    return {"status": "cancelled", "plan_id": target}


@app.get("/execution/undo")
async def undo_journal() -> list[dict]:
    return [e.to_dict() for e in get_engine().executor.undo_journal]


@app.post("/execution/undo")
async def undo_last() -> dict:
    undone = await get_engine().executor.undo_last_operation()
    return {"undone": undone}


@app.delete("/execution/undo")
async def clear_undo() -> dict:
    executor = get_engine().executor
    cleared = len(executor.undo_journal)
    executor.clear_undo_journal()
    return {"cleared": cleared}


# ---------------------------------------------------------------------------
# Events (WebSocket + Polling)
# ---------------------------------------------------------------------------


@app.websocket("/events")
async def event_stream(websocket: WebSocket):
    """WebSocket stream of engine events."""
    await websocket.accept()
    bus = get_engine().event_bus
    queue = bus.subscribe()
    try:
        while True:
            event = await queue.get()
            await websocket.send_json(event.to_dict())
    except WebSocketDisconnect:
        pass
    finally:
        bus.unsubscribe(queue)


@app.get("/events")
async def get_events(limit: int = 50, offset: int = 0, plan_id: str | None = None) -> list[dict]:
    """Get recent events (polling fallback)."""
    events = get_engine().event_bus.recent(limit=limit, offset=offset, plan_id=plan_id)
    return [e.to_dict() for e in events]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _plan_detail(plan: Plan) -> dict:
    detail = plan.model_dump(mode="json", by_alias=True)
    detail["goal"] = plan.goal
    return detail


def _spawn(coro, plan_id: str):
    task = asyncio.create_task(coro)
    _background.add(task)

    def _done(t: asyncio.Task):
        _background.discard(t)
        if not t.cancelled() and t.exception() is not None:
            logger.error(f"Background execution of plan {plan_id} failed: {t.exception()}")

    task.add_done_callback(_done)


# ---------------------------------------------------------------------------
# Entry Point
# ---------------------------------------------------------------------------


def main():
    """Start the planrunner server."""
    logger.info(f"Starting planrunner server on {SERVER_HOST}:{SERVER_PORT}")
    uvicorn.run(app, host=SERVER_HOST, port=SERVER_PORT, log_level=LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
