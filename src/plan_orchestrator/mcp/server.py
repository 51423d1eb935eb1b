"""MCP server exposing the plan orchestrator tools."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from plan_orchestrator.config import get_config
from plan_orchestrator.errors import OrchestratorError
from plan_orchestrator.runtime import Runtime

# Errors a caller can act on; anything else propagates to the MCP layer.
CALLER_ERRORS = (LookupError, ValueError, OrchestratorError)


@dataclass
class AppContext:
    runtime: Runtime


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Build the runtime and start background threads on startup."""
    runtime = Runtime.from_config(get_config())
    runtime.initialize()
    runtime.start()
    try:
        yield AppContext(runtime=runtime)
    finally:
        runtime.close()


mcp = FastMCP("plan-orchestrator", lifespan=app_lifespan)


def _rt(ctx: Context) -> Runtime:
    """Extract the Runtime from MCP Context."""
    return ctx.request_context.lifespan_context.runtime


# ── Project Tools ─────────────────────────────────────────────────────────────


@mcp.tool()
def project_create(
    ctx: Context,
    name: str,
    description: str = "",
    goals: list[str] | None = None,
) -> dict:
    """Create a new project from a name, description and list of goals."""
    try:
        project = _rt(ctx).manager.create_project(name, description, goals)
    except CALLER_ERRORS as e:
        return {"error": str(e)}
    return project.to_dict()


@mcp.tool()
def project_list(ctx: Context, status: str | None = None) -> list[dict]:
    """List all managed projects with optional status filter."""
    return _rt(ctx).manager.list_projects(status)


@mcp.tool()
def project_get(ctx: Context, project_id: str) -> dict:
    """Get full details of a project including its plan."""
    try:
        return _rt(ctx).manager.get_project(project_id).to_dict()
    except CALLER_ERRORS as e:
        return {"error": str(e)}


@mcp.tool()
def project_delete(ctx: Context, project_id: str) -> dict:
    """Delete a project and stop its monitoring."""
    rt = _rt(ctx)
    try:
        with rt.serialized(project_id):
            deleted = rt.manager.delete_project(project_id)
    except CALLER_ERRORS as e:
        return {"error": str(e)}
    return {"deleted": deleted, "project_id": project_id}


@mcp.tool()
def project_plan(ctx: Context, project_id: str, constraints: str | None = None) -> dict:
    """Generate a task plan for a project from its goals using AI decomposition."""
    rt = _rt(ctx)
    try:
        with rt.serialized(project_id):
            plan = rt.manager.generate_plan(project_id, constraints)
    except CALLER_ERRORS as e:
        return {"error": str(e)}
    return plan.to_dict()


@mcp.tool()
def project_replan(ctx: Context, project_id: str, reason: str) -> dict:
    """Re-plan the pending part of a project around a blocker."""
    rt = _rt(ctx)
    try:
        with rt.serialized(project_id):
            plan = rt.manager.replan_project(project_id, reason)
    except CALLER_ERRORS as e:
        return {"error": str(e)}
    return plan.to_dict()


@mcp.tool()
def project_execute(ctx: Context, project_id: str) -> dict:
    """Start executing ready tasks in a project by dispatching them to agents."""
    rt = _rt(ctx)
    try:
        with rt.serialized(project_id):
            return rt.manager.execute_plan(project_id)
    except CALLER_ERRORS as e:
        return {"error": str(e)}


@mcp.tool()
def project_pause(ctx: Context, project_id: str) -> dict:
    """Pause a project. Running agent executions are not cancelled."""
    rt = _rt(ctx)
    try:
        with rt.serialized(project_id):
            rt.manager.pause_project(project_id)
    except CALLER_ERRORS as e:
        return {"error": str(e)}
    return {"paused": True, "project_id": project_id}


@mcp.tool()
def project_status(ctx: Context, project_id: str) -> dict:
    """Get a quick status summary: completion and task counts."""
    rt = _rt(ctx)
    try:
        with rt.serialized(project_id):
            return rt.manager.get_project_status(project_id)
    except CALLER_ERRORS as e:
        return {"error": str(e)}


@mcp.tool()
def project_report(ctx: Context, project_id: str) -> dict:
    """Run a health check and return the full health report."""
    rt = _rt(ctx)
    try:
        with rt.serialized(project_id):
            return rt.manager.get_project_report(project_id).to_dict()
    except CALLER_ERRORS as e:
        return {"error": str(e)}


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def task_update(
    ctx: Context,
    project_id: str,
    task_id: str,
    status: str | None = None,
    notes: str | None = None,
) -> dict:
    """Update a task status or add notes.

    Valid statuses: pending, ready, in_progress, blocked, done, cancelled.
    """
    rt = _rt(ctx)
    try:
        with rt.serialized(project_id):
            task = rt.manager.update_task(project_id, task_id, status=status, notes=notes)
    except CALLER_ERRORS as e:
        return {"error": str(e)}
    return task.to_dict()


@mcp.tool()
def task_assign(ctx: Context, project_id: str, task_id: str, agent_id: str) -> dict:
    """Assign a task to a specific agent; it is dispatched now if ready, else once ready."""
    rt = _rt(ctx)
    try:
        with rt.serialized(project_id):
            dispatched = rt.manager.assign_task(project_id, task_id, agent_id)
    except CALLER_ERRORS as e:
        return {"error": str(e)}
    return {"dispatched": dispatched, "task_id": task_id, "agent_id": agent_id}


@mcp.tool()
def task_cancel(ctx: Context, project_id: str, task_id: str) -> dict:
    """Cancel the running execution of a task; the task returns to pending."""
    rt = _rt(ctx)
    try:
        with rt.serialized(project_id):
            cancelled = rt.manager.cancel_task(project_id, task_id)
    except CALLER_ERRORS as e:
        return {"error": str(e)}
    return {"cancelled": cancelled, "task_id": task_id}


@mcp.tool()
def task_search(ctx: Context, query: str, limit: int = 20) -> list[dict]:
    """Search across all project tasks by text."""
    matches = _rt(ctx).manager.search_tasks(query, limit=limit)
    return [
        {"project_id": m.project_id, **m.task.to_dict()}
        for m in matches
    ]


# ── Settings Tools ────────────────────────────────────────────────────────────


@mcp.tool()
def settings_get(ctx: Context, project_id: str | None = None) -> dict:
    """Get global default settings, or a project's settings when project_id is given."""
    rt = _rt(ctx)
    if project_id is None:
        return rt.manager.get_settings().to_dict()
    try:
        return rt.manager.get_project(project_id).settings.to_dict()
    except CALLER_ERRORS as e:
        return {"error": str(e)}


@mcp.tool()
def settings_update(ctx: Context, changes: dict, project_id: str | None = None) -> dict:
    """Update settings. Keys: auto_assign, auto_replan, check_interval,
    default_agent_ids, max_concurrent_tasks, notify_on_milestone.

    Without project_id the global defaults for new projects are updated.
    """
    rt = _rt(ctx)
    try:
        if project_id is None:
            return rt.manager.update_settings(**changes).to_dict()
        with rt.serialized(project_id):
            return rt.manager.update_project_settings(project_id, **changes).to_dict()
    except CALLER_ERRORS as e:
        return {"error": str(e)}
