"""Tests for the project manager: the full status-change loop."""

import json
import tempfile
from itertools import count
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from plan_orchestrator.core.events import (
    PROJECT_COMPLETED,
    TASK_STATUS_CHANGED,
    EventBus,
    EventChannel,
    ReplanRequest,
)
from plan_orchestrator.core.interfaces import Completion
from plan_orchestrator.core.manager import ProjectManager
from plan_orchestrator.core.monitor import ProgressMonitor
from plan_orchestrator.core.orchestrator import ExecutionOrchestrator
from plan_orchestrator.core.planning import PlanEngine
from plan_orchestrator.core.store import ProjectStore
from plan_orchestrator.db.engine import SqliteKeyValueStore, init_db
from plan_orchestrator.db.models import Agent, ExecutionUpdate, Task
from plan_orchestrator.db.search import FtsTaskIndex
from plan_orchestrator.errors import OrchestratorError, ProjectNotFoundError, TaskNotFoundError

CHAIN = {
    "milestones": [
        {
            "name": "Everything",
            "tasks": [
                {"title": "A", "estimatedEffort": "1h"},
                {"title": "B", "dependsOn": ["A"]},
                {"title": "C", "dependsOn": ["B"]},
            ],
        }
    ]
}


class Harness:
    """A manager wired to real components and mocked external services."""

    def __init__(self, db):
        self.planner = MagicMock()
        self.planner.complete.return_value = Completion("{}")
        self.execution = MagicMock()
        ids = count(1)
        self.execution.start_task.side_effect = lambda **kwargs: f"exec-{next(ids)}"
        self.registry = MagicMock()
        self.registry.list_agents.return_value = [Agent(id="worker")]
        self.scheduler = MagicMock()
        self.scheduler.create_task.return_value = "sched-1"
        self.notifier = MagicMock()
        self.bus = EventBus()
        self.events = []
        for name in (TASK_STATUS_CHANGED, PROJECT_COMPLETED):
            self.bus.subscribe(name, lambda payload, n=name: self.events.append((n, payload)))
        self.channel = EventChannel()
        self.store = ProjectStore(SqliteKeyValueStore(db), FtsTaskIndex(db))
        self.orchestrator = ExecutionOrchestrator(self.execution, self.registry, self.channel)
        self.monitor = ProgressMonitor(
            self.planner, self.scheduler, self.channel, self.bus, self.notifier
        )
        self.manager = ProjectManager(
            store=self.store,
            engine=PlanEngine(self.planner),
            orchestrator=self.orchestrator,
            monitor=self.monitor,
            channel=self.channel,
            bus=self.bus,
            notifier=self.notifier,
        )
        self.manager.initialize()

    def plan_responses(self, decomposition):
        self.planner.complete.side_effect = [
            Completion("{}"),
            Completion(json.dumps(decomposition)),
            Completion("{}"),
        ]

    def planned_project(self, decomposition=CHAIN, **settings):
        project = self.manager.create_project("Demo", "A demo project", ["Finish"])
        if settings:
            self.manager.update_project_settings(project.id, **settings)
        self.plan_responses(decomposition)
        self.manager.generate_plan(project.id)
        self.planner.complete.side_effect = None
        return project

    def complete(self, execution_id, result="ok"):
        self.manager.handle_execution_update(ExecutionUpdate(execution_id, "completed", result=result))


@pytest.fixture
def db():
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        yield conn
        conn.close()


@pytest.fixture
def h(db):
    return Harness(db)


def _task(project, task_id) -> Task:
    return next(t for t in project.plan.tasks if t.id == task_id)


class TestProjects:
    def test_create_requires_name(self, h):
        with pytest.raises(ValueError, match="name is required"):
            h.manager.create_project("  ", "desc")

    def test_create_copies_global_settings(self, h):
        h.manager.update_settings(max_concurrent_tasks=9)
        project = h.manager.create_project("Demo", "", ["One", "Two"])
        assert project.settings.max_concurrent_tasks == 9
        assert [g.priority for g in project.goals] == [1.0, 0.9]
        assert project.status == "planning"
        assert project.plan.version == 0

    def test_conversation_created_when_available(self, h):
        h.manager.conversations = MagicMock()
        h.manager.conversations.create.return_value = "conv-9"
        project = h.manager.create_project("Demo", "")
        assert project.conversation_id == "conv-9"

    def test_conversation_failure_tolerated(self, h):
        h.manager.conversations = MagicMock()
        h.manager.conversations.create.side_effect = RuntimeError("offline")
        assert h.manager.create_project("Demo", "").conversation_id == ""

    def test_get_missing(self, h):
        with pytest.raises(ProjectNotFoundError, match="Project not found: nope"):
            h.manager.get_project("nope")

    def test_delete(self, h):
        project = h.manager.create_project("Demo", "")
        assert h.manager.delete_project(project.id) is True
        assert h.manager.list_projects() == []
        with pytest.raises(ProjectNotFoundError):
            h.manager.delete_project(project.id)

    def test_unknown_settings_key(self, h):
        with pytest.raises(ValueError, match="Unknown settings"):
            h.manager.update_settings(colour="blue")


class TestPlanning:
    def test_generate_plan_adopts_milestones(self, h):
        project = h.planned_project()
        assert [t.id for t in project.plan.tasks] == ["a", "b", "c"]
        assert project.plan.critical_path == ["a", "b", "c"]
        assert [m.name for m in project.milestones] == ["Everything"]
        assert project.plan.project_id == project.id

    def test_execute_without_plan(self, h):
        project = h.manager.create_project("Demo", "")
        with pytest.raises(OrchestratorError, match="no tasks"):
            h.manager.execute_plan(project.id)


class TestExecutionFlow:
    def test_chain_runs_to_completion(self, h):
        project = h.planned_project()

        result = h.manager.execute_plan(project.id)
        assert result == {"started": True, "dispatched": 1}
        assert project.status == "active"
        assert h.monitor.is_monitoring(project.id)
        assert _task(project, "a").status == "in_progress"

        h.complete("exec-1", "A output")
        assert _task(project, "a").status == "done"
        assert _task(project, "a").output == "A output"
        assert _task(project, "a").completed_at is not None
        assert _task(project, "b").status == "in_progress"

        message = h.execution.start_task.call_args.kwargs["message"]
        assert "[A]: A output" in message

        h.complete("exec-2")
        h.complete("exec-3")

        assert project.status == "completed"
        assert not h.monitor.is_monitoring(project.id)
        assert project.milestones[0].status == "completed"
        assert [n for n, _ in h.events if n == PROJECT_COMPLETED] == [PROJECT_COMPLETED]
        titles = [c.args[0] for c in h.notifier.notify.call_args_list]
        assert "Project completed" in titles
        assert titles.count("Milestone reached: Everything") == 1

        stored = ProjectStore(h.store.kv)
        stored.initialize()
        assert stored.load_project(project.id).status == "completed"

    def test_status_events_in_order(self, h):
        project = h.planned_project()
        h.manager.execute_plan(project.id)
        h.complete("exec-1")
        changes = [
            (p["task_id"], p["old_status"], p["new_status"])
            for n, p in h.events if n == TASK_STATUS_CHANGED
        ]
        assert changes == [
            ("a", "ready", "in_progress"),
            ("a", "in_progress", "done"),
            ("b", "pending", "in_progress"),
        ]

    def test_failure_blocks_task(self, h):
        project = h.planned_project()
        h.manager.execute_plan(project.id)
        h.manager.handle_execution_update(ExecutionUpdate("exec-1", "failed", error="tests red"))

        task = _task(project, "a")
        assert task.status == "blocked"
        assert task.notes[-1].type == "blocker"
        assert task.notes[-1].content == "tests red"
        assert h.execution.start_task.call_count == 1

    def test_concurrency_one(self, h):
        parallel = {"tasks": [{"title": "X"}, {"title": "Y"}]}
        project = h.planned_project(parallel, max_concurrent_tasks=1)
        assert h.manager.execute_plan(project.id)["dispatched"] == 1
        assert _task(project, "y").status == "ready"
        assert _task(project, "y").assigned_agent_id is None
        assert h.manager.execute_plan(project.id)["dispatched"] == 0

    def test_pause_keeps_executions(self, h):
        project = h.planned_project()
        h.manager.execute_plan(project.id)
        h.manager.pause_project(project.id)

        assert project.status == "paused"
        assert not h.monitor.is_monitoring(project.id)
        h.execution.cancel_task.assert_not_called()
        assert h.orchestrator.active_count(project.id) == 1

        h.complete("exec-1")
        assert _task(project, "a").status == "done"
        assert _task(project, "b").status == "pending"

    def test_cancel_returns_task_to_pending(self, h):
        project = h.planned_project()
        h.manager.execute_plan(project.id)
        assert h.manager.cancel_task(project.id, "a") is True

        task = _task(project, "a")
        assert task.status == "pending"
        assert task.assigned_execution_id is None
        h.execution.cancel_task.assert_called_once_with("exec-1")
        assert h.manager.cancel_task(project.id, "a") is False


class TestUpdateTask:
    def test_invalid_status(self, h):
        project = h.planned_project()
        with pytest.raises(ValueError, match="Invalid status"):
            h.manager.update_task(project.id, "a", status="finished")

    def test_unknown_task(self, h):
        project = h.planned_project()
        with pytest.raises(TaskNotFoundError):
            h.manager.update_task(project.id, "zzz", notes="hi")

    def test_note_only(self, h):
        project = h.planned_project()
        task = h.manager.update_task(project.id, "a", notes="looks good")
        assert task.notes[-1].author == "user"
        assert task.notes[-1].content == "looks good"
        assert task.status == "ready"

    def test_manual_done_cascades_when_active(self, h):
        project = h.planned_project()
        h.manager.execute_plan(project.id)
        h.manager.update_task(project.id, "a", status="done")
        assert _task(project, "b").status == "in_progress"

    def test_manual_done_does_not_dispatch_when_planning(self, h):
        project = h.planned_project()
        h.manager.update_task(project.id, "a", status="done")
        assert _task(project, "b").status == "pending"
        h.execution.start_task.assert_not_called()

    def test_manual_status_stops_running_agent(self, h):
        parallel = {"tasks": [{"title": "X"}, {"title": "Y"}]}
        project = h.planned_project(parallel)
        h.manager.execute_plan(project.id)

        h.manager.update_task(project.id, "x", status="pending")
        h.execution.cancel_task.assert_called_once_with("exec-1")
        assert not h.orchestrator.is_task_active(project.id, "x")

        h.manager.execute_plan(project.id)
        assert sorted(e.task_id for e in h.orchestrator.tracked_executions()) == ["x", "y"]
        assert _task(project, "x").assigned_execution_id == "exec-3"

        h.complete("exec-1")
        assert _task(project, "x").status == "in_progress"


class TestAssignTask:
    def test_ready_task_dispatched_to_chosen_agent(self, h):
        project = h.planned_project()
        assert h.manager.assign_task(project.id, "a", "specialist") is True
        assert _task(project, "a").status == "in_progress"
        assert h.execution.start_task.call_args.kwargs["agent_id"] == "specialist"

    def test_unmet_dependencies_only_record_agent(self, h):
        project = h.planned_project()
        assert h.manager.assign_task(project.id, "b", "specialist") is False

        b = _task(project, "b")
        assert b.status == "pending"
        assert b.assigned_agent_id == "specialist"
        h.execution.start_task.assert_not_called()

        h.manager.execute_plan(project.id)
        h.complete("exec-1")
        assert b.status == "in_progress"
        assert h.execution.start_task.call_args.kwargs["agent_id"] == "specialist"

    def test_done_task_not_redispatched(self, h):
        project = h.planned_project()
        h.manager.execute_plan(project.id)
        h.complete("exec-1")
        calls = h.execution.start_task.call_count

        assert h.manager.assign_task(project.id, "a", "specialist") is False
        assert _task(project, "a").status == "done"
        assert h.execution.start_task.call_count == calls


class TestResume:
    def test_execute_completes_project_finished_while_paused(self, h):
        project = h.planned_project({"tasks": [{"title": "Only"}]})
        h.manager.execute_plan(project.id)
        h.manager.pause_project(project.id)
        h.complete("exec-1")
        assert project.status == "paused"

        result = h.manager.execute_plan(project.id)
        assert result == {"started": False, "dispatched": 0}
        assert project.status == "completed"
        assert not h.monitor.is_monitoring(project.id)
        assert [n for n, _ in h.events if n == PROJECT_COMPLETED] == [PROJECT_COMPLETED]


class TestReplan:
    def test_replan_preserves_and_dispatches(self, h):
        project = h.planned_project()
        h.manager.execute_plan(project.id)
        h.manager.handle_execution_update(ExecutionUpdate("exec-1", "failed", error="no creds"))

        h.planner.complete.return_value = Completion(json.dumps(
            {"tasks": [{"title": "Get creds"}, {"title": "Retry B", "dependsOn": ["Get creds"]}]}
        ))
        plan = h.manager.replan_project(project.id, "no creds")

        assert plan.version == 2
        ids = [t.id for t in plan.tasks]
        assert ids == ["a", "get-creds", "retry-b"]
        assert _task(project, "a").status == "blocked"
        assert _task(project, "get-creds").status == "in_progress"

    def test_auto_replan_from_health_check(self, h):
        project = h.planned_project(auto_replan=True)
        h.manager.execute_plan(project.id)
        h.manager.handle_execution_update(ExecutionUpdate("exec-1", "failed", error="boom"))

        h.planner.complete.side_effect = [
            Completion("{}"),
            Completion(json.dumps({"tasks": [{"title": "Alternative"}]})),
        ]
        report = h.manager.get_project_report(project.id)

        assert report.overall_health == "critical"
        assert project.plan.version == 2
        assert "alternative" in [t.id for t in project.plan.tasks]

    def test_replan_request_message(self, h):
        project = h.planned_project()
        h.planner.complete.return_value = Completion(json.dumps({"tasks": []}))
        h.channel.publish(ReplanRequest(project.id, "manual"))
        h.manager.update_task(project.id, "a", notes="trigger drain")
        assert project.plan.version == 2


class TestQueries:
    def test_status_summary(self, h):
        project = h.planned_project()
        h.manager.execute_plan(project.id)
        status = h.manager.get_project_status(project.id)
        assert status["total_tasks"] == 3
        assert status["in_progress_tasks"] == 1
        assert status["ready_tasks"] == 0
        assert status["active_executions"] == 1
        assert status["monitoring"] is True
        assert status["last_health"] is None

    def test_search(self, h):
        project = h.planned_project()
        matches = h.manager.search_tasks("B")
        assert (project.id, "b") in [(m.project_id, m.task.id) for m in matches]

    def test_check_interval_change_restarts_monitoring(self, h):
        project = h.planned_project()
        h.manager.execute_plan(project.id)
        h.manager.update_project_settings(project.id, check_interval="0 9 * * *")
        assert h.scheduler.delete_task.call_count == 1
        assert h.scheduler.create_task.call_args.kwargs["cron_expression"] == "0 9 * * *"

    def test_initialize_resumes_monitoring(self, h, db):
        project = h.planned_project()
        h.manager.execute_plan(project.id)

        again = Harness(db)
        assert again.monitor.is_monitoring(project.id)
