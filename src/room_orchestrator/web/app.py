"""JSON API over rooms, tasks, events, contracts and workspaces."""

import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from room_orchestrator.config import get_config
from room_orchestrator.core import contracts as contracts_mod
from room_orchestrator.core import events as events_mod
from room_orchestrator.core import rooms as rooms_mod
from room_orchestrator.core import tasks as tasks_mod
from room_orchestrator.core.impact import publish_contract
from room_orchestrator.db.engine import init_db
from room_orchestrator.serializers import (
    contract_dict,
    event_dict,
    impact_dict,
    room_dict,
    task_dict,
    task_event_dict,
    version_dict,
    workspace_dict,
)
from room_orchestrator.services import Services, build_services


def _get_db(request: Request):
    return init_db(request.app.state.services.config.db_path)


def _not_found(what: str) -> JSONResponse:
    return JSONResponse({"error": f"{what} not found"}, status_code=404)


async def _json_body(request: Request) -> dict | None:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


# ── Rooms ─────────────────────────────────────────────────────────────────────


async def api_list_rooms(request: Request):
    db = _get_db(request)
    try:
        return JSONResponse([room_dict(r) for r in rooms_mod.list_rooms(db)])
    finally:
        db.close()


async def api_get_room(request: Request):
    room_id = request.path_params["room_id"]
    db = _get_db(request)
    try:
        room = rooms_mod.get_room(db, room_id)
        if not room:
            return _not_found("Room")
        rd = room_dict(room)
        rd["members"] = rooms_mod.list_members(db, room_id)
        return JSONResponse(rd)
    finally:
        db.close()


async def api_room_tasks(request: Request):
    room_id = request.path_params["room_id"]
    db = _get_db(request)
    try:
        if not rooms_mod.get_room(db, room_id):
            return _not_found("Room")
        tasks = tasks_mod.list_tasks(
            db,
            room_id,
            status=request.query_params.get("status"),
            assignee=request.query_params.get("assignee"),
        )
        return JSONResponse([task_dict(t) for t in tasks])
    finally:
        db.close()


async def api_room_summary(request: Request):
    room_id = request.path_params["room_id"]
    db = _get_db(request)
    try:
        if not rooms_mod.get_room(db, room_id):
            return _not_found("Room")
        tasks = tasks_mod.list_tasks(db, room_id)
        counts = {s: 0 for s in tasks_mod.STATUSES}
        for t in tasks:
            counts[t.status] = counts.get(t.status, 0) + 1
        total = len(tasks)
        progress = (counts["done"] / total * 100) if total > 0 else 0

        return JSONResponse({
            "room_id": room_id,
            "counts": counts,
            "total": total,
            "progress_pct": round(progress, 1),
            "ready": [t.id for t in tasks_mod.get_ready_tasks(db, room_id)],
            "blocked": [
                {"id": t.id, "title": t.title, "reason": t.blocked_reason}
                for t in tasks if t.status == "blocked"
            ],
            "contracts": len(contracts_mod.list_contracts(db, room_id)),
        })
    finally:
        db.close()


async def api_room_events(request: Request):
    room_id = request.path_params["room_id"]
    try:
        limit = int(request.query_params.get("limit", 50))
    except ValueError:
        return JSONResponse({"error": "limit must be an integer"}, status_code=400)
    db = _get_db(request)
    try:
        events = events_mod.list_events(
            db,
            room_id,
            event_type=request.query_params.get("type"),
            user_id=request.query_params.get("user"),
            limit=limit,
        )
        return JSONResponse([event_dict(e) for e in events])
    finally:
        db.close()


def api_room_workspace(request: Request):
    # Sync handler; Starlette runs it in a threadpool. status may clone or fetch.
    room_id = request.path_params["room_id"]
    services: Services = request.app.state.services
    db = _get_db(request)
    try:
        if not rooms_mod.get_room(db, room_id):
            return _not_found("Room")
        status = services.workspaces.status(db, room_id)
        return JSONResponse(workspace_dict(status))
    finally:
        db.close()


# ── Tasks ─────────────────────────────────────────────────────────────────────


async def api_get_task(request: Request):
    task_id = request.path_params["task_id"]
    db = _get_db(request)
    try:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            return _not_found("Task")
        td = task_dict(task)
        td["events"] = [task_event_dict(e) for e in tasks_mod.get_task_history(db, task_id)]
        td["dependents"] = [t.id for t in tasks_mod.get_dependents(db, task_id)]
        return JSONResponse(td)
    finally:
        db.close()


async def api_update_task_status(request: Request):
    task_id = request.path_params["task_id"]
    body = await _json_body(request)
    if not body or "status" not in body:
        return JSONResponse({"error": "status is required"}, status_code=400)

    db = _get_db(request)
    try:
        if not tasks_mod.get_task(db, task_id):
            return _not_found("Task")
        try:
            task = tasks_mod.update_task_status(
                db, task_id, body["status"], blocked_reason=body.get("blocked_reason")
            )
        except (tasks_mod.InvalidTransitionError, tasks_mod.TaskConflictError) as e:
            return JSONResponse({"error": str(e)}, status_code=409)
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        return JSONResponse(task_dict(task))
    finally:
        db.close()


# ── Contracts ─────────────────────────────────────────────────────────────────


async def api_publish_contract(request: Request):
    contract_id = request.path_params["contract_id"]
    body = await _json_body(request)
    if not body or not isinstance(body.get("content"), str):
        return JSONResponse({"error": "content is required"}, status_code=400)
    summary = body.get("summary")
    if not isinstance(summary, str) or not summary.strip():
        return JSONResponse({"error": "summary is required"}, status_code=400)
    breaking = body.get("breaking")
    if breaking is not None and not isinstance(breaking, bool):
        return JSONResponse({"error": "breaking must be a boolean"}, status_code=400)

    # Impact analysis may wait on the completion service.
    return await run_in_threadpool(
        _publish_contract,
        request,
        contract_id,
        body["content"],
        summary.strip(),
        breaking,
        body.get("proposed_by"),
    )


def _publish_contract(
    request: Request,
    contract_id: str,
    content: str,
    summary: str,
    breaking: bool | None,
    proposed_by: str | None,
) -> JSONResponse:
    services: Services = request.app.state.services
    db = _get_db(request)
    try:
        contract = contracts_mod.get_contract(db, contract_id)
        if not contract:
            return _not_found("Contract")
        version, report = publish_contract(
            db,
            contract_id,
            content,
            summary,
            services.notifier,
            breaking=breaking,
            proposed_by=proposed_by,
            completion=services.completion,
        )
        return JSONResponse(
            {
                "contract": contract_dict(contract, version),
                "version": version_dict(version),
                "impact": impact_dict(report),
            },
            status_code=201,
        )
    finally:
        db.close()


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(services: Services | None = None) -> Starlette:
    routes = [
        Route("/api/rooms", api_list_rooms),
        Route("/api/rooms/{room_id}", api_get_room),
        Route("/api/rooms/{room_id}/tasks", api_room_tasks),
        Route("/api/rooms/{room_id}/summary", api_room_summary),
        Route("/api/rooms/{room_id}/events", api_room_events),
        Route("/api/rooms/{room_id}/workspace", api_room_workspace),
        Route("/api/tasks/{task_id}", api_get_task),
        Route("/api/tasks/{task_id}/status", api_update_task_status, methods=["POST"]),
        Route("/api/contracts/{contract_id}/publish", api_publish_contract, methods=["POST"]),
    ]
    app = Starlette(routes=routes)
    app.state.services = services or build_services(get_config())
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787, with_monitor: bool = True):
    services = build_services(get_config())
    app = create_app(services)
    monitor = services.monitor() if with_monitor else None
    if monitor:
        monitor.start()
    try:
        uvicorn.run(app, host=host, port=port)
    finally:
        if monitor:
            monitor.stop()
