"""Read-only JSON API polled by dashboards."""

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from taskgraph import serializers
from taskgraph.config import get_config
from taskgraph.core import agents as agents_mod
from taskgraph.core import criteria as criteria_mod
from taskgraph.core import graph as graph_mod
from taskgraph.core import readiness as readiness_mod
from taskgraph.core import tasks as tasks_mod
from taskgraph.core.errors import NotFound, ValidationError
from taskgraph.db.engine import init_db


def _get_db():
    config = get_config()
    return init_db(config.db_path, busy_timeout_ms=config.busy_timeout_ms)


def _int_param(request: Request, name: str) -> int | None:
    value = request.query_params.get(name)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f"Query parameter '{name}' must be an integer") from None


def _error(e: Exception) -> JSONResponse:
    status = 404 if isinstance(e, NotFound) else 400
    return JSONResponse({"error": str(e), "type": type(e).__name__}, status_code=status)


# ── Handlers ──────────────────────────────────────────────────────────────────


async def api_list_tasks(request: Request):
    q = request.query_params
    db = _get_db()
    try:
        tasks = tasks_mod.list_tasks(
            db,
            status=q.get("status"),
            epic=q.get("epic"),
            priority=q.get("priority"),
            agent_id=_int_param(request, "agent"),
            limit=_int_param(request, "limit"),
            offset=_int_param(request, "offset") or 0,
        )
        return JSONResponse([serializers.task_dict(t) for t in tasks])
    except (NotFound, ValidationError) as e:
        return _error(e)
    finally:
        db.close()


async def api_get_task(request: Request):
    db = _get_db()
    try:
        task_id = int(request.path_params["task_id"])
        task = tasks_mod.get_task(db, task_id)
        if not task:
            return JSONResponse({"error": f"Task not found: #{task_id}"}, status_code=404)
        td = serializers.task_dict(task)
        td["criteria"] = [serializers.criterion_dict(c) for c in criteria_mod.list_criteria(db, task_id)]
        td["subtasks"] = [serializers.task_dict(s) for s in tasks_mod.get_subtasks(db, task_id)]
        td["events"] = [serializers.event_dict(e) for e in tasks_mod.get_task_events(db, task_id)]
        latest = agents_mod.get_latest_progress(db, task_id)
        td["progress"] = serializers.progress_dict(latest) if latest else None
        td["ready"] = readiness_mod.is_ready(db, task_id)
        return JSONResponse(td)
    finally:
        db.close()


async def api_ready(request: Request):
    db = _get_db()
    try:
        tasks = readiness_mod.ready(
            db,
            epic=request.query_params.get("epic"),
            limit=_int_param(request, "limit"),
            offset=_int_param(request, "offset") or 0,
        )
        return JSONResponse([serializers.task_dict(t) for t in tasks])
    except ValidationError as e:
        return _error(e)
    finally:
        db.close()


async def api_next(request: Request):
    q = request.query_params
    db = _get_db()
    try:
        agent_id = None
        if agent_ref := q.get("agent"):
            agent_id = agents_mod.resolve_agent(db, agent_ref).id
        task = readiness_mod.next_task(
            db, min_priority=q.get("priority"), epic=q.get("epic"), agent_id=agent_id
        )
        return JSONResponse({"task": serializers.task_dict(task) if task else None})
    except (NotFound, ValidationError) as e:
        return _error(e)
    finally:
        db.close()


async def api_agents(request: Request):
    db = _get_db()
    try:
        result = []
        for agent in agents_mod.list_agents(db):
            ad = serializers.agent_dict(agent)
            ad["metrics"] = serializers.metrics_dict(agents_mod.get_agent_metrics(db, agent.id))
            result.append(ad)
        return JSONResponse(result)
    finally:
        db.close()


async def api_stats(request: Request):
    db = _get_db()
    try:
        stats = tasks_mod.get_stats(db, epic=request.query_params.get("epic"))
        data = serializers.stats_dict(stats)
        data["epics"] = [serializers.epic_dict(e) for e in tasks_mod.list_epics(db)]
        return JSONResponse(data)
    finally:
        db.close()


async def api_graph(request: Request):
    db = _get_db()
    try:
        nodes = [
            {"id": t.id, "title": t.title, "status": t.status.value, "priority": t.priority.value}
            for t in tasks_mod.list_tasks(db)
        ]
        edges = [{"task_id": a, "depends_on_id": b} for a, b in graph_mod.all_edges(db)]
        return JSONResponse({"nodes": nodes, "edges": edges})
    finally:
        db.close()


# ── App ───────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    routes = [
        Route("/api/tasks", api_list_tasks),
        Route("/api/tasks/{task_id:int}", api_get_task),
        Route("/api/ready", api_ready),
        Route("/api/next", api_next),
        Route("/api/agents", api_agents),
        Route("/api/stats", api_stats),
        Route("/api/graph", api_graph),
    ]
    return Starlette(routes=routes)


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
