"""Prompt templates sent to the planning service and to worker agents."""

import json

from plan_orchestrator.db.models import Goal, Project, Task

ANALYZE_SYSTEM = (
    "You are a senior technical project manager. Analyze a project and identify "
    "implicit requirements, technical risks, skill domains needed, and constraints.\n"
    "Return JSON: {\n"
    '  "requirements": ["string"],\n'
    '  "risks": [{"description": "string", "severity": "high|medium|low", "mitigation": "string"}],\n'
    '  "skillDomains": ["string"],\n'
    '  "constraints": ["string"]\n'
    "}"
)

DECOMPOSE_SYSTEM = (
    "You are a project decomposition specialist. Break the project into milestones and tasks.\n"
    "Each task MUST have:\n"
    "- A clear, actionable title\n"
    "- Detailed description\n"
    "- Acceptance criteria (testable conditions)\n"
    "- Dependencies on other tasks (by title reference)\n"
    "- Priority: critical, high, medium, or low\n"
    '- Estimated effort (e.g., "2h", "1d")\n'
    "- Tags (skill domains needed)\n\n"
    "Return JSON: {\n"
    '  "milestones": [\n'
    "    {\n"
    '      "name": "Milestone Name",\n'
    '      "tasks": [\n'
    "        {\n"
    '          "title": "Task title",\n'
    '          "description": "What to do",\n'
    '          "priority": "high",\n'
    '          "estimatedEffort": "2h",\n'
    '          "dependsOn": ["Other task title"],\n'
    '          "tags": ["backend"],\n'
    '          "acceptanceCriteria": ["Criterion 1"]\n'
    "        }\n"
    "      ]\n"
    "    }\n"
    "  ]\n"
    "}"
)

VALIDATE_SYSTEM = (
    "You are a QA specialist for project plans. Review this plan for completeness.\n"
    "Check:\n"
    "1. Every goal is addressed by at least one task\n"
    "2. No acceptance criteria are vague\n"
    "3. Effort estimates are reasonable\n"
    "4. Dependencies are sensible\n\n"
    'Return JSON: { "issues": ["string"], "confidence": 0.0-1.0 }'
)

ESTIMATE_SYSTEM = (
    "You are an expert project estimator. For each task, provide a realistic effort estimate.\n"
    "Consider dependencies, complexity, and typical development velocity.\n"
    'Return JSON: { "estimates": [{ "id": "task_id", "estimatedEffort": "Xh" or "Xd" }] }'
)

PRIORITIZE_SYSTEM = (
    "You are a project prioritization specialist.\n"
    "Re-prioritize tasks based on dependencies, critical path analysis, and value delivery.\n"
    'Return JSON: { "priorities": [{ "id": "task_id", "priority": "critical|high|medium|low" }] }'
)

REPLAN_SYSTEM = (
    "You are a project recovery specialist. A project has encountered blockers.\n"
    "Analyze the situation and suggest revised tasks for the pending/ready items.\n"
    "Do NOT modify completed, in-progress, or blocked tasks.\n"
    "New tasks may depend on existing tasks by title or id.\n"
    'Return JSON: { "tasks": [{ "title": "...", "description": "...", "priority": "medium", '
    '"estimatedEffort": "2h", "dependsOn": ["..."], "tags": [], "acceptanceCriteria": [] }] }'
)

ASSIGN_SYSTEM = (
    "You are a resource allocation specialist.\n"
    "Match tasks to the most suitable agents based on their capabilities and the task requirements.\n"
    'Return JSON: { "assignments": [{ "taskId": "...", "agentId": "...", "reason": "..." }] }'
)

HEALTH_SYSTEM = (
    "You are a project health analyst. Evaluate the project and identify risks, "
    "bottlenecks, and recommendations. Be concise and actionable."
)


def format_goals(goals: list[Goal], with_priority: bool = False) -> str:
    lines = []
    for i, goal in enumerate(goals, 1):
        suffix = f" (priority: {goal.priority})" if with_priority else ""
        lines.append(f"{i}. {goal.description}{suffix}")
    return "\n".join(lines)


def analyze_request(name: str, description: str, goals: list[Goal]) -> str:
    return (
        f"Analyze this project:\nName: {name}\nDescription: {description}\n"
        f"Goals:\n{format_goals(goals, with_priority=True)}"
    )


def decompose_request(
    name: str,
    description: str,
    goals: list[Goal],
    analysis: str,
    constraints: str | None = None,
) -> str:
    constraint_text = f"\nAdditional constraints: {constraints}" if constraints else ""
    return (
        f"Project: {name}\nDescription: {description}\nGoals:\n{format_goals(goals)}\n\n"
        f"Analysis:\n{analysis}{constraint_text}"
    )


def validate_request(tasks: list[Task], goals: list[Goal]) -> str:
    summary = [
        {
            "id": t.id,
            "title": t.title,
            "acceptanceCriteria": t.acceptance_criteria,
            "dependsOn": t.depends_on,
        }
        for t in tasks
    ]
    return (
        f"Plan tasks:\n{json.dumps(summary, indent=2)}\n\n"
        f"Goals:\n{'; '.join(g.description for g in goals)}"
    )


def build_task_prompt(project: Project, task: Task) -> str:
    """Build the message sent to an agent for executing a task."""
    tasks_by_id = {t.id: t for t in project.plan.tasks}
    dep_lines = []
    for dep_id in task.depends_on:
        dep = tasks_by_id.get(dep_id)
        if not dep:
            continue
        if dep.status == "done" and dep.output:
            dep_lines.append(f"- [{dep.title}]: {dep.output}")
        else:
            dep_lines.append(f"- [{dep.title}]: completed")

    if task.acceptance_criteria:
        criteria = "\n".join(f"- {c}" for c in task.acceptance_criteria)
    else:
        criteria = "- Complete the task as described"

    parts = [f'You are working on project: "{project.name}"']
    parts.append(f"\n## Your Task\n**{task.title}**\n{task.description}")
    parts.append(f"\n## Acceptance Criteria\n{criteria}")
    parts.append("\n## Context")
    if dep_lines:
        parts.append("This task depends on completed work:\n" + "\n".join(dep_lines) + "\n")
    parts.append(f"Project description: {project.description}")
    parts.append(
        "\n## Instructions\n"
        "Complete this task according to the acceptance criteria above.\n"
        "When finished, provide a clear summary of what you accomplished and any artifacts produced.\n"
        "If you encounter blockers, describe them clearly so the project can be re-planned."
    )
    return "\n".join(parts)


def health_check_request(project: Project, completion: int, issue_count: int) -> str:
    summary = [
        {
            "id": t.id,
            "title": t.title,
            "status": t.status,
            "priority": t.priority,
            "estimatedEffort": t.estimated_effort,
            "startedAt": t.started_at.isoformat() if t.started_at else None,
            "dependsOn": t.depends_on,
        }
        for t in project.plan.tasks
    ]
    return (
        "Evaluate the health of this project:\n\n"
        f"Project: {project.name}\n"
        f"Completion: {completion}%\n"
        f"Detected issues: {issue_count}\n\n"
        f"Tasks:\n{json.dumps(summary, indent=2)}\n\n"
        "Return JSON: {\n"
        '  "findings": [\n'
        '    { "type": "stale_task|blocker|critical_path_drift|agent_error", '
        '"severity": "info|warning|critical", "taskId": "optional", '
        '"message": "description", "suggestedAction": "optional" }\n'
        "  ],\n"
        '  "recommendations": ["string"]\n'
        "}"
    )


def monitor_driving_prompt(project: Project) -> str:
    return (
        f'Monitor project "{project.name}" health. Check for stale tasks, blockers, '
        "and critical path drift. Report findings."
    )
