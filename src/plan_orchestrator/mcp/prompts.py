"""MCP prompt templates for common workflows."""

from plan_orchestrator.mcp.server import mcp


@mcp.prompt()
def plan_project(name: str, goals: str) -> str:
    """Generate a prompt to create and plan a project from goals."""
    return (
        f"I want to start a project called '{name}' with these goals:\n\n"
        f"{goals}\n\n"
        f"Please:\n"
        f"1. Use project_create with one goal per line above\n"
        f"2. Use project_plan to decompose it into milestones and tasks\n"
        f"3. Summarize the plan: milestones, the critical path, and the tasks ready to start\n"
        f"4. Ask me before calling project_execute"
    )


@mcp.prompt()
def status_report(project_id: str) -> str:
    """Generate a prompt for a project status report."""
    return (
        f"Please generate a status report for project '{project_id}'.\n\n"
        f"Use project_status for the numbers and project_report for the health check, then provide:\n"
        f"1. Overall progress summary\n"
        f"2. Tasks currently in progress\n"
        f"3. Tasks that are blocked and why\n"
        f"4. Health findings and recommendations\n"
        f"5. Whether a re-plan is warranted"
    )


@mcp.prompt()
def unblock_project(project_id: str) -> str:
    """Generate a prompt to work through a project's blocked tasks."""
    return (
        f"Project '{project_id}' has blocked tasks.\n\n"
        f"Use project_get to find tasks with status 'blocked' and read their blocker notes.\n"
        f"For each one, either suggest how to resolve it (then use task_update with a note)\n"
        f"or, if the approach itself is wrong, call project_replan with a short description of the blocker."
    )
