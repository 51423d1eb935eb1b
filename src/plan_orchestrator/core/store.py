"""Project persistence: key-value blobs, a flat project index, and task search."""

import logging
import threading
from dataclasses import dataclass

from plan_orchestrator.core.graph import flatten_tasks, find_task
from plan_orchestrator.core.interfaces import KeyValueStore, SemanticIndex
from plan_orchestrator.db.models import (
    Goal,
    Project,
    ProjectSettings,
    Task,
    generate_id,
    unique_slug,
    utcnow,
)

logger = logging.getLogger(__name__)

INDEX_KEY = "po:index"
SETTINGS_KEY = "po:settings"


def project_key(project_id: str) -> str:
    return f"po:project:{project_id}"


@dataclass
class TaskMatch:
    project_id: str
    task: Task


class ProjectStore:
    """Durable CRUD for projects with an in-memory cache.

    Each project is stored as one blob; a separate index entry lists every
    project. The two writes are not transactional, so a crash between them can
    leave the index stale; loading tolerates index entries without a blob.
    The index and cache are shared by the agent monitor and scheduler threads
    and are only touched under ``_lock``.
    """

    def __init__(self, kv: KeyValueStore, semantic_index: SemanticIndex | None = None):
        self.kv = kv
        self.semantic_index = semantic_index
        self._index: list[dict] = []
        self._cache: dict[str, Project] = {}
        self._lock = threading.Lock()

    def initialize(self) -> None:
        try:
            index = self.kv.get(INDEX_KEY)
        except Exception:
            logger.exception("Failed to load project index")
            return
        if isinstance(index, list):
            with self._lock:
                self._index = index

    # ── CRUD ─────────────────────────────────────────────────────────────────

    def save_project(self, project: Project) -> None:
        project.updated_at = utcnow()
        self.kv.set(project_key(project.id), project.to_dict())

        entry = {
            "id": project.id,
            "name": project.name,
            "status": project.status,
            "created_at": project.created_at.isoformat(),
            "updated_at": project.updated_at.isoformat(),
        }
        with self._lock:
            self._cache[project.id] = project
            for i, existing in enumerate(self._index):
                if existing["id"] == project.id:
                    self._index[i] = entry
                    break
            else:
                self._index.append(entry)
            self.kv.set(INDEX_KEY, self._index)

        self._sync_to_index(project)

    def load_project(self, project_id: str) -> Project | None:
        with self._lock:
            if project_id in self._cache:
                return self._cache[project_id]
        try:
            data = self.kv.get(project_key(project_id))
        except Exception:
            logger.exception("Failed to load project %s", project_id)
            return None
        if not data:
            return None
        project = Project.from_dict(data)
        with self._lock:
            return self._cache.setdefault(project_id, project)

    def ensure_loaded(self, project_id: str) -> Project | None:
        return self.load_project(project_id)

    def list_projects(self, status: str | None = None) -> list[dict]:
        with self._lock:
            return [dict(e) for e in self._index if not status or e["status"] == status]

    def delete_project(self, project_id: str) -> bool:
        try:
            with self._lock:
                self._cache.pop(project_id, None)
                before = len(self._index)
                self._index = [e for e in self._index if e["id"] != project_id]
                removed = len(self._index) < before
                self.kv.delete(project_key(project_id))
                self.kv.set(INDEX_KEY, self._index)
        except Exception:
            logger.exception("Failed to delete project %s", project_id)
            return False
        remove = getattr(self.semantic_index, "remove_prefix", None)
        if remove is not None:
            try:
                remove(f"project:{project_id}")
                remove(f"task:{project_id}:")
            except Exception:
                logger.warning("Failed to drop search entries for %s", project_id, exc_info=True)
        return removed

    def new_project(
        self,
        name: str,
        description: str,
        goals: list[str] | None = None,
        settings: ProjectSettings | None = None,
    ) -> Project:
        """Build an unsaved project; the first goal gets the highest priority."""
        with self._lock:
            taken = {e["id"] for e in self._index} | set(self._cache)
        project_id = unique_slug(name, taken)
        project_goals = [
            Goal(
                id=generate_id(),
                description=text,
                priority=round(max(0.0, 1.0 - i * 0.1), 2),
            )
            for i, text in enumerate(goals or [])
        ]
        return Project(
            id=project_id,
            name=name,
            description=description,
            goals=project_goals,
            settings=settings or ProjectSettings(),
        )

    # ── Task lookup ──────────────────────────────────────────────────────────

    def find_task(self, project_id: str, task_id: str) -> Task | None:
        with self._lock:
            project = self._cache.get(project_id)
        if not project:
            return None
        return find_task(project.plan.tasks, task_id)

    # ── Search ───────────────────────────────────────────────────────────────

    def search_tasks(self, query: str) -> list[TaskMatch]:
        """Case-insensitive text match over cached tasks' title, description, tags."""
        needle = query.lower()
        with self._lock:
            cached = list(self._cache.items())
        results = []
        for project_id, project in cached:
            for task in flatten_tasks(project.plan.tasks):
                if (
                    needle in task.title.lower()
                    or needle in task.description.lower()
                    or any(needle in tag.lower() for tag in task.tags)
                ):
                    results.append(TaskMatch(project_id, task))
        return results

    def search_tasks_semantic(self, query: str, limit: int = 20) -> list[TaskMatch]:
        """Search via the semantic index, falling back to local text search."""
        if self.semantic_index is None:
            return self.search_tasks(query)
        try:
            hits = self.semantic_index.search(query, limit=limit)
        except Exception:
            logger.warning("Semantic search failed, falling back to local", exc_info=True)
            return self.search_tasks(query)

        results = []
        for meta in hits:
            project_id = meta.get("project_id")
            task_id = meta.get("task_id")
            if not project_id or not task_id:
                continue
            self.ensure_loaded(project_id)
            task = self.find_task(project_id, task_id)
            if task:
                results.append(TaskMatch(project_id, task))
        if not results:
            return self.search_tasks(query)
        return results

    # ── Settings ─────────────────────────────────────────────────────────────

    def get_settings(self) -> ProjectSettings:
        try:
            stored = self.kv.get(SETTINGS_KEY)
        except Exception:
            logger.exception("Failed to load settings")
            stored = None
        if isinstance(stored, dict):
            return ProjectSettings.from_dict(stored)
        return ProjectSettings()

    def save_settings(self, settings: ProjectSettings) -> None:
        self.kv.set(SETTINGS_KEY, settings.to_dict())

    # ── Semantic index sync ──────────────────────────────────────────────────

    def _sync_to_index(self, project: Project) -> None:
        if self.semantic_index is None:
            return
        try:
            self.semantic_index.index(
                f"project:{project.id}",
                _project_summary(project),
                {"project_id": project.id, "type": "project_summary"},
            )
            for task in flatten_tasks(project.plan.tasks):
                self.semantic_index.index(
                    f"task:{project.id}:{task.id}",
                    f"{task.title}: {task.description}. Tags: {', '.join(task.tags)}. "
                    f"Status: {task.status}.",
                    {
                        "project_id": project.id,
                        "task_id": task.id,
                        "status": task.status,
                        "priority": task.priority,
                        "type": "task",
                    },
                )
        except Exception:
            logger.warning("Search index sync failed for %s", project.id, exc_info=True)


def _project_summary(project: Project) -> str:
    tasks = flatten_tasks(project.plan.tasks)
    done = sum(1 for t in tasks if t.status == "done")
    milestones = "; ".join(f"{m.name} ({m.completion_percentage}%)" for m in project.milestones)
    return "\n".join([
        f"Project: {project.name}",
        f"Description: {project.description}",
        f"Status: {project.status}",
        f"Tasks: {done}/{len(tasks)} complete",
        f"Goals: {'; '.join(g.description for g in project.goals)}",
        f"Milestones: {milestones}",
    ])
