"""Plan engine: turns project goals into a validated task graph.

Planning runs as a prompt chain against the planning service: analyze ->
decompose -> build graph (dependency resolution, cycle repair, critical path)
-> validate. Every response is parsed defensively; a response that cannot be
understood degrades to an empty or unchanged result instead of an exception.
"""

import json
import logging

from plan_orchestrator.core import prompts
from plan_orchestrator.core.graph import (
    DISPATCHABLE_STATUSES,
    build_dependencies,
    compute_critical_path,
    detect_cycles,
    rebuild_blocked_by,
    repair_cycles,
)
from plan_orchestrator.core.interfaces import PlanningService
from plan_orchestrator.core.parsing import Malformed, Parsed, parse_response
from plan_orchestrator.db.models import (
    TASK_PRIORITIES,
    Agent,
    Goal,
    Milestone,
    Plan,
    Task,
    generate_id,
    unique_slug,
    utcnow,
)

logger = logging.getLogger(__name__)


def _str_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if isinstance(v, (str, int, float)) and str(v).strip()]


def _pick(raw: dict, *keys: str):
    for key in keys:
        if key in raw:
            return raw[key]
    return None


def task_from_raw(raw: dict, taken_ids: set[str]) -> Task:
    """Normalize one AI-produced task. Dependencies stay as raw references."""
    title = raw.get("title")
    title = title.strip() if isinstance(title, str) and title.strip() else "Untitled Task"

    raw_id = raw.get("id")
    if isinstance(raw_id, str) and raw_id.strip() and raw_id not in taken_ids:
        task_id = raw_id.strip()
    else:
        task_id = unique_slug(title, taken_ids)
    taken_ids.add(task_id)

    priority = raw.get("priority")
    effort = _pick(raw, "estimatedEffort", "estimated_effort")
    description = raw.get("description")

    return Task(
        id=task_id,
        title=title,
        description=description if isinstance(description, str) else "",
        priority=priority if priority in TASK_PRIORITIES else "medium",
        estimated_effort=effort if isinstance(effort, str) and effort.strip() else "unknown",
        depends_on=_str_list(_pick(raw, "dependsOn", "depends_on")),
        tags=_str_list(raw.get("tags")),
        acceptance_criteria=_str_list(_pick(raw, "acceptanceCriteria", "acceptance_criteria")),
    )


def resolve_references(
    task: Task,
    title_to_id: dict[str, str],
    known_ids: set[str],
) -> None:
    """Rewrite title references in depends_on to task ids, dropping unknowns."""
    resolved: list[str] = []
    for ref in task.depends_on:
        dep_id = title_to_id.get(ref.strip().lower())
        if dep_id is None and ref in known_ids:
            dep_id = ref
        if dep_id is None:
            logger.debug("Dropping unresolved dependency %r of %s", ref, task.id)
            continue
        if dep_id not in resolved:
            resolved.append(dep_id)
    task.depends_on = resolved


class PlanEngine:
    def __init__(self, planner: PlanningService, temperature: float = 0.3):
        self.planner = planner
        self.temperature = temperature

    # ── Main API ─────────────────────────────────────────────────────────────

    def decompose(
        self,
        name: str,
        description: str,
        goals: list[Goal],
        constraints: str | None = None,
    ) -> Plan:
        """Decompose project goals into a structured plan.

        Always returns a well-formed plan; a decomposition that cannot be
        parsed yields a plan with zero tasks.
        """
        logger.info("Decomposing project %r with %d goals", name, len(goals))

        analysis = self._ask(
            prompts.ANALYZE_SYSTEM, prompts.analyze_request(name, description, goals)
        )
        result = parse_response(
            self._ask(
                prompts.DECOMPOSE_SYSTEM,
                prompts.decompose_request(name, description, goals, analysis, constraints),
            )
        )
        if isinstance(result, Malformed):
            logger.error("Decomposition parse failed (%s); returning empty plan", result.reason)
            raw: dict = {}
        else:
            raw = result.data

        plan = self.build_plan(raw)
        self._validate(plan, goals)

        logger.info(
            "Plan generated: %d tasks, %d on critical path",
            len(plan.tasks), len(plan.critical_path),
        )
        return plan

    def estimate(self, tasks: list[Task]) -> list[Task]:
        """Apply AI effort estimates to matching tasks."""
        summary = [
            {"id": t.id, "title": t.title, "description": t.description, "dependsOn": t.depends_on}
            for t in tasks
        ]
        result = parse_response(
            self._ask(
                prompts.ESTIMATE_SYSTEM,
                f"Estimate effort for these tasks:\n{json.dumps(summary, indent=2)}",
            )
        )
        entries = result.list_of_dicts("estimates") if isinstance(result, Parsed) else None
        if entries is None:
            logger.warning("Effort estimation returned no usable estimates")
            return tasks

        by_id = {t.id: t for t in tasks}
        for entry in entries:
            task = by_id.get(entry.get("id"))
            effort = _pick(entry, "estimatedEffort", "estimated_effort")
            if task and isinstance(effort, str) and effort.strip():
                task.estimated_effort = effort.strip()
        return tasks

    def prioritize(self, tasks: list[Task], constraints: str | None = None) -> list[Task]:
        """Apply AI priorities to matching tasks."""
        summary = [
            {
                "id": t.id,
                "title": t.title,
                "priority": t.priority,
                "dependsOn": t.depends_on,
                "estimatedEffort": t.estimated_effort,
            }
            for t in tasks
        ]
        constraint_text = f"\nConstraints: {constraints}" if constraints else ""
        result = parse_response(
            self._ask(
                prompts.PRIORITIZE_SYSTEM,
                f"Prioritize these tasks:{constraint_text}\n{json.dumps(summary, indent=2)}",
            )
        )
        entries = result.list_of_dicts("priorities") if isinstance(result, Parsed) else None
        if entries is None:
            logger.warning("Prioritization returned no usable priorities")
            return tasks

        by_id = {t.id: t for t in tasks}
        for entry in entries:
            task = by_id.get(entry.get("id"))
            if task and entry.get("priority") in TASK_PRIORITIES:
                task.priority = entry["priority"]
        return tasks

    def replan(self, plan: Plan, blocker_description: str, goals: list[Goal]) -> Plan:
        """Regenerate the pending/ready part of a plan around a blocker.

        Tasks in any other status are preserved untouched, including the
        blocked tasks that prompted the replan.
        """
        logger.info("Re-planning plan %s due to: %s", plan.id, blocker_description)

        preserved = [t for t in plan.tasks if t.status not in DISPATCHABLE_STATUSES]
        replaceable = [t for t in plan.tasks if t.status in DISPATCHABLE_STATUSES]
        state = {
            "totalTasks": len(plan.tasks),
            "completedTasks": sum(1 for t in plan.tasks if t.status == "done"),
            "blockedTasks": [
                {"id": t.id, "title": t.title, "status": t.status}
                for t in plan.tasks if t.status == "blocked"
            ],
            "pendingTasks": [
                {"id": t.id, "title": t.title, "dependsOn": t.depends_on} for t in replaceable
            ],
        }
        result = parse_response(
            self._ask(
                prompts.REPLAN_SYSTEM,
                f"Blocker: {blocker_description}\n\n"
                f"Current state:\n{json.dumps(state, indent=2)}\n\n"
                f"Goals: {'; '.join(g.description for g in goals)}",
            )
        )
        raw_tasks = result.list_of_dicts("tasks") if isinstance(result, Parsed) else None
        if raw_tasks is None:
            logger.error("Re-plan response unusable; plan %s left unchanged", plan.id)
            return plan

        # Replaced ids are retired: a preserved task still naming one must not
        # end up depending on an unrelated new task.
        retired = {t.id for t in replaceable}
        taken = {t.id for t in preserved} | retired
        new_tasks = [task_from_raw(raw, taken) for raw in raw_tasks]

        title_to_id = {t.title.lower(): t.id for t in preserved}
        title_to_id.update({t.title.lower(): t.id for t in new_tasks})
        known = taken - retired
        for task in new_tasks:
            resolve_references(task, title_to_id, known)

        cyclic = detect_cycles(preserved + new_tasks)
        if cyclic:
            logger.warning("Breaking dependency cycle in re-planned tasks: %s", sorted(cyclic))
            for task in new_tasks:
                if task.id in cyclic:
                    task.depends_on = [d for d in task.depends_on if d not in cyclic]

        done_ids = {t.id for t in preserved if t.status == "done"}
        for task in new_tasks:
            task.status = "ready" if all(d in done_ids for d in task.depends_on) else "pending"
            task.blocked_by = [
                other.id for other in new_tasks if task.id in other.depends_on
            ]

        plan.tasks = preserved + new_tasks
        plan.dependencies = build_dependencies(plan.tasks)
        plan.milestones = [
            m for m in plan.milestones
            if any(tid in known for tid in m.task_ids)
        ]
        plan.version += 1
        plan.generated_at = utcnow()
        plan.generated_by = "ai"
        plan.critical_path = compute_critical_path(plan.tasks)
        logger.info(
            "Re-plan v%d: %d preserved, %d replaced by %d new tasks",
            plan.version, len(preserved), len(replaceable), len(new_tasks),
        )
        return plan

    def suggest_assignments(self, tasks: list[Task], agents: list[Agent]) -> list[dict]:
        """Ask for task->agent matches; only entries naming known ids are kept."""
        task_summary = [
            {"id": t.id, "title": t.title, "tags": t.tags, "description": t.description}
            for t in tasks
        ]
        agent_summary = [
            {"id": a.id, "name": a.name, "capabilities": a.capabilities} for a in agents
        ]
        result = parse_response(
            self._ask(
                prompts.ASSIGN_SYSTEM,
                f"Tasks:\n{json.dumps(task_summary, indent=2)}\n\n"
                f"Agents:\n{json.dumps(agent_summary, indent=2)}",
            )
        )
        entries = result.list_of_dicts("assignments") if isinstance(result, Parsed) else None
        if entries is None:
            logger.warning("Assignment suggestion returned nothing usable")
            return []

        task_ids = {t.id for t in tasks}
        agent_ids = {a.id for a in agents}
        suggestions = []
        for entry in entries:
            task_id = _pick(entry, "taskId", "task_id")
            agent_id = _pick(entry, "agentId", "agent_id")
            if task_id in task_ids and agent_id in agent_ids:
                suggestions.append({
                    "task_id": task_id,
                    "agent_id": agent_id,
                    "reason": str(entry.get("reason", "")),
                })
        return suggestions

    # ── Plan construction ────────────────────────────────────────────────────

    def build_plan(self, raw: dict) -> Plan:
        """Build a plan from a raw decomposition object."""
        tasks: list[Task] = []
        milestones: list[Milestone] = []
        title_to_id: dict[str, str] = {}
        taken: set[str] = set()

        raw_milestones = raw.get("milestones")
        if isinstance(raw_milestones, list):
            for raw_ms in raw_milestones:
                if not isinstance(raw_ms, dict):
                    continue
                task_ids = []
                raw_ms_tasks = raw_ms.get("tasks")
                for raw_task in raw_ms_tasks if isinstance(raw_ms_tasks, list) else []:
                    if not isinstance(raw_task, dict):
                        continue
                    task = task_from_raw(raw_task, taken)
                    title_to_id[task.title.lower()] = task.id
                    tasks.append(task)
                    task_ids.append(task.id)
                name = raw_ms.get("name")
                milestones.append(Milestone(
                    id=generate_id(),
                    name=name if isinstance(name, str) and name else "Unnamed Milestone",
                    task_ids=task_ids,
                ))

        raw_tasks = raw.get("tasks")
        if isinstance(raw_tasks, list):
            for raw_task in raw_tasks:
                if not isinstance(raw_task, dict):
                    continue
                title = raw_task.get("title")
                if isinstance(title, str) and title.strip().lower() in title_to_id:
                    continue
                task = task_from_raw(raw_task, taken)
                title_to_id[task.title.lower()] = task.id
                tasks.append(task)

        for task in tasks:
            resolve_references(task, title_to_id, taken)

        cyclic = repair_cycles(tasks)
        if cyclic:
            logger.warning("Circular dependencies detected in tasks: %s", ", ".join(sorted(cyclic)))

        rebuild_blocked_by(tasks)
        for task in tasks:
            task.status = "ready" if not task.depends_on else "pending"

        return Plan(
            id=generate_id(),
            version=1,
            tasks=tasks,
            dependencies=build_dependencies(tasks),
            critical_path=compute_critical_path(tasks),
            milestones=milestones,
            generated_by="ai",
        )

    # ── Internal steps ───────────────────────────────────────────────────────

    def _validate(self, plan: Plan, goals: list[Goal]) -> None:
        """Qualitative review of the plan. Findings are logged, never enforced."""
        if not plan.tasks:
            return
        result = parse_response(
            self._ask(prompts.VALIDATE_SYSTEM, prompts.validate_request(plan.tasks, goals))
        )
        if isinstance(result, Malformed):
            logger.debug("Plan validation response unparseable: %s", result.reason)
            return
        for issue in result.list_of_str("issues"):
            logger.warning("Plan validation issue: %s", issue)
        confidence = result.data.get("confidence")
        if isinstance(confidence, (int, float)):
            logger.info("Plan validation confidence: %.2f", confidence)

    def _ask(self, system: str, user: str) -> str:
        try:
            completion = self.planner.complete(
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                temperature=self.temperature,
                response_format="json",
            )
        except Exception:
            logger.exception("Planning service call failed")
            return "{}"
        return completion.content or ""
