"""CLI entry point for the plan orchestrator."""

import json
import logging
import sys
import time
from contextlib import contextmanager

import click

from plan_orchestrator.config import get_config
from plan_orchestrator.core.graph import find_task
from plan_orchestrator.errors import OrchestratorError
from plan_orchestrator.runtime import Runtime

CALLER_ERRORS = (LookupError, ValueError, OrchestratorError)

STATUS_ICONS = {
    "pending": "○",
    "ready": "◎",
    "in_progress": "●",
    "blocked": "✗",
    "done": "✓",
    "cancelled": "–",
}


@contextmanager
def _runtime():
    runtime = Runtime.from_config(get_config())
    try:
        runtime.initialize()
        yield runtime
        _wait_for_agents(runtime)
    except CALLER_ERRORS as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        runtime.close()


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable info logging")
def main(verbose):
    """po - Plan Orchestrator CLI"""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Project Commands ──────────────────────────────────────────────────────────


@main.group("project")
def project_group():
    """Manage projects."""
    pass


@project_group.command("create")
@click.argument("name")
@click.option("--description", "-d", default="", help="Project description")
@click.option("--goal", "-g", "goals", multiple=True, help="A project goal (repeatable)")
def project_create(name, description, goals):
    """Create a new project."""
    with _runtime() as rt:
        project = rt.manager.create_project(name, description, list(goals))
        click.echo(f"Project created: {project.id} ({project.name})")
        for goal in project.goals:
            click.echo(f"  Goal: {goal.description} (priority {goal.priority})")


@project_group.command("list")
@click.option("--status", default=None, help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def project_list(status, json_output):
    """List projects."""
    with _runtime() as rt:
        projects = rt.manager.list_projects(status)

        if json_output:
            click.echo(json.dumps(projects, indent=2))
            return

        if not projects:
            click.echo("No projects found.")
            return

        for p in projects:
            click.echo(f"  {p['id']}: {p['name']} ({p['status']})")


@project_group.command("show")
@click.argument("project_id")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def project_show(project_id, json_output):
    """Show project details and its task graph."""
    with _runtime() as rt:
        project = rt.manager.get_project(project_id)

        if json_output:
            click.echo(json.dumps(project.to_dict(), indent=2))
            return

        click.echo(f"Project: {project.id}")
        click.echo(f"  Name: {project.name}")
        click.echo(f"  Status: {project.status}")
        if project.description:
            click.echo(f"  Description: {project.description}")
        click.echo(f"  Plan: v{project.plan.version} ({len(project.plan.tasks)} tasks)")
        if project.plan.critical_path:
            click.echo(f"  Critical path: {' -> '.join(project.plan.critical_path)}")
        for milestone in project.milestones:
            click.echo(
                f"  Milestone: {milestone.name} "
                f"({milestone.completion_percentage}%, {milestone.status})"
            )
        for task in project.plan.tasks:
            _echo_task(task)


@project_group.command("delete")
@click.argument("project_id")
@click.confirmation_option(prompt="Delete this project?")
def project_delete(project_id):
    """Delete a project."""
    with _runtime() as rt:
        rt.manager.delete_project(project_id)
        click.echo(f"Deleted project: {project_id}")


# ── Planning & Execution ──────────────────────────────────────────────────────


@main.command("plan")
@click.argument("project_id")
@click.option("--constraints", "-c", default=None, help="Extra planning constraints")
def plan(project_id, constraints):
    """Generate a task plan for a project."""
    with _runtime() as rt:
        new_plan = rt.manager.generate_plan(project_id, constraints)
        click.echo(f"Plan v{new_plan.version}: {len(new_plan.tasks)} tasks")
        for task in new_plan.tasks:
            _echo_task(task)


@main.command("replan")
@click.argument("project_id")
@click.argument("reason")
def replan(project_id, reason):
    """Re-plan pending work around a blocker."""
    with _runtime() as rt:
        new_plan = rt.manager.replan_project(project_id, reason)
        click.echo(f"Plan v{new_plan.version}: {len(new_plan.tasks)} tasks")


@main.command("execute")
@click.argument("project_id")
@click.option("--poll", default=5.0, type=float, help="Seconds between progress checks")
@click.option("--timeout", default=None, type=float, help="Give up after this many seconds")
def execute(project_id, poll, timeout):
    """Dispatch ready tasks and wait for the agents to finish.

    Executions are tracked in this process only, so the command stays in the
    foreground until every agent it started (or cascaded to) has reported.
    """
    _execute(project_id, poll, timeout)


@main.command("run")
@click.argument("project_id")
@click.option("--poll", default=5.0, type=float, help="Seconds between progress checks")
@click.option("--timeout", default=None, type=float, help="Give up after this many seconds")
def run(project_id, poll, timeout):
    """Same as execute."""
    _execute(project_id, poll, timeout)


def _execute(project_id, poll, timeout):
    with _runtime() as rt:
        with rt.serialized(project_id):
            result = rt.manager.execute_plan(project_id)
        click.echo(f"Dispatched {result['dispatched']} tasks")
        _wait_for_agents(rt, poll, timeout)

        with rt.serialized(project_id):
            status = rt.manager.get_project_status(project_id)
        click.echo(
            f"{status['name']}: {status['status']}, {status['completion']}% complete "
            f"({status['done_tasks']}/{status['total_tasks']} done, "
            f"{status['blocked_tasks']} blocked)"
        )


@main.command("pause")
@click.argument("project_id")
def pause(project_id):
    """Pause a project (running agents are not cancelled)."""
    with _runtime() as rt:
        rt.manager.pause_project(project_id)
        click.echo(f"Paused project: {project_id}")


@main.command("status")
@click.argument("project_id")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def status(project_id, json_output):
    """Show a quick status summary."""
    with _runtime() as rt:
        summary = rt.manager.get_project_status(project_id)
        if json_output:
            click.echo(json.dumps(summary, indent=2))
            return
        click.echo(f"Project: {summary['id']} ({summary['status']})")
        click.echo(f"  Completion: {summary['completion']}%")
        click.echo(
            f"  Tasks: {summary['total_tasks']} total, {summary['done_tasks']} done, "
            f"{summary['in_progress_tasks']} in progress, {summary['blocked_tasks']} blocked, "
            f"{summary['ready_tasks']} ready"
        )


@main.command("report")
@click.argument("project_id")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def report(project_id, json_output):
    """Run a health check on a project."""
    with _runtime() as rt:
        health = rt.manager.get_project_report(project_id)
        if json_output:
            click.echo(json.dumps(health.to_dict(), indent=2))
            return
        click.echo(f"Health: {health.overall_health} ({health.completion_percentage}% complete)")
        for finding in health.findings:
            task = f" [{finding.task_id}]" if finding.task_id else ""
            click.echo(f"  {finding.severity.upper()} {finding.type}{task}: {finding.message}")
        for rec in health.recommendations:
            click.echo(f"  - {rec}")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("update")
@click.argument("project_id")
@click.argument("task_id")
@click.option("--status", "-s", default=None, help="New status")
@click.option("--note", "-n", default=None, help="Note to append")
def task_update(project_id, task_id, status, note):
    """Update a task's status or add a note."""
    with _runtime() as rt:
        task = rt.manager.update_task(project_id, task_id, status=status, notes=note)
        click.echo(f"Updated task: {task.id} ({task.status})")


@task_group.command("assign")
@click.argument("project_id")
@click.argument("task_id")
@click.argument("agent_id")
def task_assign(project_id, task_id, agent_id):
    """Assign a task to an agent; dispatch now if it is ready."""
    with _runtime() as rt:
        if rt.manager.assign_task(project_id, task_id, agent_id):
            click.echo(f"Dispatched {task_id} to {agent_id}")
            return
        task = find_task(rt.manager.get_project(project_id).plan.tasks, task_id)
        if task.notes and task.notes[-1].content.startswith("Dispatch failed"):
            click.echo(f"Dispatch of {task_id} failed; see task notes.", err=True)
            sys.exit(1)
        click.echo(f"Assigned {task_id} to {agent_id} ({task.status}); dispatch waits until it is ready")


@task_group.command("cancel")
@click.argument("project_id")
@click.argument("task_id")
def task_cancel(project_id, task_id):
    """Cancel a task's running execution."""
    with _runtime() as rt:
        if rt.manager.cancel_task(project_id, task_id):
            click.echo(f"Cancelled execution of {task_id}")
        else:
            click.echo(f"No running execution for {task_id}")


@task_group.command("search")
@click.argument("query")
@click.option("--limit", default=20, type=int, help="Maximum results")
def task_search(query, limit):
    """Search tasks across all projects."""
    with _runtime() as rt:
        matches = rt.manager.search_tasks(query, limit=limit)
        if not matches:
            click.echo("No tasks found.")
            return
        for match in matches:
            click.echo(f"  {match.project_id}/{match.task.id}: {match.task.title} ({match.task.status})")


# ── Settings ──────────────────────────────────────────────────────────────────


@main.group("settings")
def settings_group():
    """Show or change settings."""
    pass


@settings_group.command("show")
@click.option("--project", default=None, help="Show a project's settings instead of defaults")
def settings_show(project):
    """Show settings as JSON."""
    with _runtime() as rt:
        if project:
            settings = rt.manager.get_project(project).settings
        else:
            settings = rt.manager.get_settings()
        click.echo(json.dumps(settings.to_dict(), indent=2))


@settings_group.command("set")
@click.argument("key")
@click.argument("value")
@click.option("--project", default=None, help="Change a project's settings instead of defaults")
def settings_set(key, value, project):
    """Set a setting. VALUE is parsed as JSON when possible."""
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        parsed = value
    with _runtime() as rt:
        if project:
            settings = rt.manager.update_project_settings(project, **{key: parsed})
        else:
            settings = rt.manager.update_settings(**{key: parsed})
        click.echo(json.dumps(settings.to_dict(), indent=2))


# ── MCP Server Command ───────────────────────────────────────────────────────


@main.command("serve")
def serve():
    """Start the MCP server (stdio transport)."""
    from plan_orchestrator.mcp.server import mcp
    from plan_orchestrator.mcp import prompts  # noqa: F401 - registers prompts

    mcp.run(transport="stdio")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _wait_for_agents(rt, poll=5.0, timeout=None):
    """Block until every execution started by this process has reported back.

    Tracking lives in this process; exiting earlier would leave the tasks
    in_progress with nobody to apply their results.
    """
    project_ids = {e.project_id for e in rt.orchestrator.tracked_executions()}
    if not project_ids:
        return
    click.echo("Waiting for agents to finish...", err=True)
    rt.start()
    started = time.monotonic()
    while _agents_running(rt, project_ids):
        if timeout is not None and time.monotonic() - started > timeout:
            click.echo("Timed out waiting for agents.", err=True)
            sys.exit(1)
        time.sleep(poll)


def _agents_running(rt, project_ids) -> bool:
    # Under the project lock a completion and the dispatch it cascades into
    # are never observed half-applied.
    for project_id in project_ids:
        with rt.serialized(project_id):
            if rt.orchestrator.active_count(project_id):
                return True
    return False


def _echo_task(task):
    icon = STATUS_ICONS.get(task.status, "?")
    deps = f" [depends: {', '.join(task.depends_on)}]" if task.depends_on else ""
    agent = f" [agent: {task.assigned_agent_id}]" if task.assigned_agent_id else ""
    click.echo(
        f"  {icon} {task.id}: {task.title} ({task.status}, {task.priority}, "
        f"{task.estimated_effort}){deps}{agent}"
    )


if __name__ == "__main__":
    main()
