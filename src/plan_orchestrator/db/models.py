"""Data models for the plan orchestrator."""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

PROJECT_STATUSES = ("planning", "active", "paused", "completed")
TASK_STATUSES = ("pending", "ready", "in_progress", "blocked", "done", "cancelled")
TASK_PRIORITIES = ("critical", "high", "medium", "low")
NOTE_TYPES = ("comment", "observation", "blocker", "resolution")
MILESTONE_STATUSES = ("pending", "in_progress", "completed")
HEALTH_STATUSES = ("healthy", "at_risk", "critical")
FINDING_TYPES = ("stale_task", "blocker", "critical_path_drift", "agent_error")
FINDING_SEVERITIES = ("info", "warning", "critical")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_id() -> str:
    return uuid.uuid4().hex[:12]


def slugify(title: str) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60]


def unique_slug(title: str, taken: set[str]) -> str:
    """Slugify a title, appending a number if the slug is already taken."""
    base = slugify(title) or generate_id()
    if base not in taken:
        return base
    i = 2
    while f"{base}-{i}" in taken:
        i += 1
    return f"{base}-{i}"


def _dt_to_str(val: datetime | None) -> str | None:
    if val is None:
        return None
    return val.isoformat()


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    parsed = datetime.fromisoformat(val)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Goal:
    id: str
    description: str
    priority: float = 1.0
    measure_of_success: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "description": self.description,
            "priority": self.priority,
            "measure_of_success": self.measure_of_success,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Goal":
        return cls(
            id=data["id"],
            description=data.get("description", ""),
            priority=float(data.get("priority", 1.0)),
            measure_of_success=data.get("measure_of_success", ""),
        )


@dataclass
class TaskNote:
    author: str
    content: str
    type: str = "comment"
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "author": self.author,
            "content": self.content,
            "type": self.type,
            "timestamp": _dt_to_str(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TaskNote":
        return cls(
            author=data.get("author", "ai"),
            content=data.get("content", ""),
            type=data.get("type", "comment"),
            timestamp=_parse_dt(data.get("timestamp")) or utcnow(),
        )


@dataclass
class Task:
    id: str
    title: str
    description: str = ""
    status: str = "pending"
    priority: str = "medium"
    estimated_effort: str = "unknown"
    depends_on: list[str] = field(default_factory=list)
    blocked_by: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)
    notes: list[TaskNote] = field(default_factory=list)
    subtasks: list["Task"] = field(default_factory=list)
    assigned_agent_id: str | None = None
    assigned_execution_id: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    output: str | None = None

    def add_note(self, author: str, content: str, note_type: str = "comment") -> TaskNote:
        note = TaskNote(author=author, content=content, type=note_type)
        self.notes.append(note)
        return note

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "estimated_effort": self.estimated_effort,
            "depends_on": list(self.depends_on),
            "blocked_by": list(self.blocked_by),
            "tags": list(self.tags),
            "acceptance_criteria": list(self.acceptance_criteria),
            "notes": [n.to_dict() for n in self.notes],
            "subtasks": [s.to_dict() for s in self.subtasks],
            "assigned_agent_id": self.assigned_agent_id,
            "assigned_execution_id": self.assigned_execution_id,
            "started_at": _dt_to_str(self.started_at),
            "completed_at": _dt_to_str(self.completed_at),
            "output": self.output,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Task":
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            description=data.get("description", ""),
            status=data.get("status", "pending"),
            priority=data.get("priority", "medium"),
            estimated_effort=data.get("estimated_effort", "unknown"),
            depends_on=list(data.get("depends_on", [])),
            blocked_by=list(data.get("blocked_by", [])),
            tags=list(data.get("tags", [])),
            acceptance_criteria=list(data.get("acceptance_criteria", [])),
            notes=[TaskNote.from_dict(n) for n in data.get("notes", [])],
            subtasks=[Task.from_dict(s) for s in data.get("subtasks", [])],
            assigned_agent_id=data.get("assigned_agent_id"),
            assigned_execution_id=data.get("assigned_execution_id"),
            started_at=_parse_dt(data.get("started_at")),
            completed_at=_parse_dt(data.get("completed_at")),
            output=data.get("output"),
        )


@dataclass
class Dependency:
    from_id: str
    to_id: str
    type: str = "blocks"

    def to_dict(self) -> dict:
        return {"from": self.from_id, "to": self.to_id, "type": self.type}

    @classmethod
    def from_dict(cls, data: dict) -> "Dependency":
        return cls(from_id=data["from"], to_id=data["to"], type=data.get("type", "blocks"))


@dataclass
class Milestone:
    id: str
    name: str
    task_ids: list[str] = field(default_factory=list)
    status: str = "pending"
    completion_percentage: int = 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "task_ids": list(self.task_ids),
            "status": self.status,
            "completion_percentage": self.completion_percentage,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Milestone":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            task_ids=list(data.get("task_ids", [])),
            status=data.get("status", "pending"),
            completion_percentage=int(data.get("completion_percentage", 0)),
        )


@dataclass
class Plan:
    id: str
    project_id: str = ""
    version: int = 0
    tasks: list[Task] = field(default_factory=list)
    dependencies: list[Dependency] = field(default_factory=list)
    critical_path: list[str] = field(default_factory=list)
    milestones: list[Milestone] = field(default_factory=list)
    generated_at: datetime = field(default_factory=utcnow)
    generated_by: str = "user"

    @classmethod
    def empty(cls, project_id: str) -> "Plan":
        return cls(id=generate_id(), project_id=project_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "version": self.version,
            "tasks": [t.to_dict() for t in self.tasks],
            "dependencies": [d.to_dict() for d in self.dependencies],
            "critical_path": list(self.critical_path),
            "milestones": [m.to_dict() for m in self.milestones],
            "generated_at": _dt_to_str(self.generated_at),
            "generated_by": self.generated_by,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Plan":
        return cls(
            id=data["id"],
            project_id=data.get("project_id", ""),
            version=int(data.get("version", 0)),
            tasks=[Task.from_dict(t) for t in data.get("tasks", [])],
            dependencies=[Dependency.from_dict(d) for d in data.get("dependencies", [])],
            critical_path=list(data.get("critical_path", [])),
            milestones=[Milestone.from_dict(m) for m in data.get("milestones", [])],
            generated_at=_parse_dt(data.get("generated_at")) or utcnow(),
            generated_by=data.get("generated_by", "user"),
        )


@dataclass
class ProjectSettings:
    auto_assign: bool = True
    auto_replan: bool = False
    check_interval: str = "*/30 * * * *"
    default_agent_ids: list[str] = field(default_factory=list)
    max_concurrent_tasks: int = 3
    notify_on_milestone: bool = True

    def to_dict(self) -> dict:
        return {
            "auto_assign": self.auto_assign,
            "auto_replan": self.auto_replan,
            "check_interval": self.check_interval,
            "default_agent_ids": list(self.default_agent_ids),
            "max_concurrent_tasks": self.max_concurrent_tasks,
            "notify_on_milestone": self.notify_on_milestone,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ProjectSettings":
        defaults = cls()
        return cls(
            auto_assign=bool(data.get("auto_assign", defaults.auto_assign)),
            auto_replan=bool(data.get("auto_replan", defaults.auto_replan)),
            check_interval=data.get("check_interval", defaults.check_interval),
            default_agent_ids=list(data.get("default_agent_ids", defaults.default_agent_ids)),
            max_concurrent_tasks=int(
                data.get("max_concurrent_tasks", defaults.max_concurrent_tasks)
            ),
            notify_on_milestone=bool(
                data.get("notify_on_milestone", defaults.notify_on_milestone)
            ),
        )


@dataclass
class Project:
    id: str
    name: str
    description: str = ""
    status: str = "planning"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    conversation_id: str = ""
    goals: list[Goal] = field(default_factory=list)
    milestones: list[Milestone] = field(default_factory=list)
    plan: Plan | None = None
    settings: ProjectSettings = field(default_factory=ProjectSettings)

    def __post_init__(self):
        if self.plan is None:
            self.plan = Plan.empty(self.id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "created_at": _dt_to_str(self.created_at),
            "updated_at": _dt_to_str(self.updated_at),
            "conversation_id": self.conversation_id,
            "goals": [g.to_dict() for g in self.goals],
            "milestones": [m.to_dict() for m in self.milestones],
            "plan": self.plan.to_dict(),
            "settings": self.settings.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Project":
        plan_data = data.get("plan")
        return cls(
            id=data["id"],
            name=data["name"],
            description=data.get("description", ""),
            status=data.get("status", "planning"),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
            updated_at=_parse_dt(data.get("updated_at")) or utcnow(),
            conversation_id=data.get("conversation_id", ""),
            goals=[Goal.from_dict(g) for g in data.get("goals", [])],
            milestones=[Milestone.from_dict(m) for m in data.get("milestones", [])],
            plan=Plan.from_dict(plan_data) if plan_data else None,
            settings=ProjectSettings.from_dict(data.get("settings", {})),
        )


@dataclass
class Finding:
    type: str
    severity: str
    message: str
    task_id: str | None = None
    suggested_action: str | None = None

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "severity": self.severity,
            "message": self.message,
            "task_id": self.task_id,
            "suggested_action": self.suggested_action,
        }


@dataclass
class HealthReport:
    project_id: str
    overall_health: str = "healthy"
    completion_percentage: int = 0
    findings: list[Finding] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "project_id": self.project_id,
            "timestamp": _dt_to_str(self.timestamp),
            "overall_health": self.overall_health,
            "completion_percentage": self.completion_percentage,
            "findings": [f.to_dict() for f in self.findings],
            "recommendations": list(self.recommendations),
        }


@dataclass
class Agent:
    id: str
    name: str = ""
    capabilities: list[str] = field(default_factory=list)


@dataclass
class TrackedExecution:
    execution_id: str
    project_id: str
    task_id: str
    agent_id: str
    dispatched_at: datetime = field(default_factory=utcnow)


@dataclass
class ExecutionUpdate:
    execution_id: str
    status: str
    result: str | None = None
    error: str | None = None


@dataclass
class ExecutionMessage:
    execution_id: str
    message: str
    role: str = "assistant"
