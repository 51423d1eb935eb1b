"""Exceptions raised by the orchestration engine."""


class OrchestratorError(Exception):
    """Base class for engine errors."""


class ProjectNotFoundError(OrchestratorError, LookupError):
    def __init__(self, project_id: str):
        super().__init__(f"Project not found: {project_id}")
        self.project_id = project_id


class TaskNotFoundError(OrchestratorError, LookupError):
    def __init__(self, task_id: str, project_id: str | None = None):
        where = f" in project {project_id}" if project_id else ""
        super().__init__(f"Task not found: {task_id}{where}")
        self.task_id = task_id
        self.project_id = project_id
