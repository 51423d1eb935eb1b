"""Contracts for the external collaborators the engine talks to."""

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from plan_orchestrator.db.models import Agent, ExecutionMessage, ExecutionUpdate


@dataclass
class Completion:
    content: str


class KeyValueStore(Protocol):
    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...


class PlanningService(Protocol):
    def complete(
        self,
        messages: list[dict],
        temperature: float = 0.3,
        response_format: str = "json",
    ) -> Completion: ...


class ExecutionService(Protocol):
    def start_task(
        self,
        agent_id: str,
        conversation_id: str,
        message: str,
        metadata: dict,
    ) -> str:
        """Start work and return the execution handle."""
        ...

    def cancel_task(self, execution_id: str) -> None: ...

    def subscribe(
        self,
        on_update: Callable[[ExecutionUpdate], None],
        on_message: Callable[[ExecutionMessage], None] | None = None,
    ) -> None: ...


class AgentRegistry(Protocol):
    def list_agents(self) -> list[Agent]: ...


class Scheduler(Protocol):
    def create_task(
        self,
        name: str,
        cron_expression: str,
        driving_prompt: str,
        metadata: dict,
    ) -> str: ...

    def delete_task(self, task_id: str) -> None: ...


class Notifier(Protocol):
    def notify(
        self,
        title: str,
        message: str,
        type: str = "info",
        priority: str = "normal",
        category: str = "plan_orchestrator",
        source: str = "plan_orchestrator",
    ) -> None: ...


class SemanticIndex(Protocol):
    def index(self, key: str, content: str, metadata: dict) -> None: ...

    def search(self, query: str, limit: int = 20) -> list[dict]: ...


class ConversationService(Protocol):
    def create(self, title: str, metadata: dict) -> str: ...
