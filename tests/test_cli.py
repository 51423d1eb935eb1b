"""Tests for the CLI."""

import json
import os
import tempfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from plan_orchestrator.cli import main

DECOMPOSITION = {
    "tasks": [
        {"title": "Write outline", "estimatedEffort": "1h"},
        {"title": "Write draft", "dependsOn": ["Write outline"]},
    ]
}


def _claude_result(payload) -> MagicMock:
    proc = MagicMock()
    proc.returncode = 0
    proc.stdout = json.dumps({"type": "result", "result": json.dumps(payload)})
    proc.stderr = ""
    return proc


@pytest.fixture
def cli_env():
    """Set up a temp environment for CLI testing."""
    with tempfile.TemporaryDirectory() as tmp:
        env = {
            "PO_DB_PATH": str(Path(tmp) / "test.db"),
            "PO_OUTPUT_DIR": str(Path(tmp) / "outputs"),
            "PO_AGENT_POLL": "0.01",
        }
        old_env = {}
        for k, v in env.items():
            old_env[k] = os.environ.get(k)
            os.environ[k] = v

        yield CliRunner()

        for k, v in old_env.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


def _planned(runner):
    runner.invoke(main, ["project", "create", "Essay", "-d", "An essay", "-g", "Publish"])
    responses = [_claude_result({}), _claude_result(DECOMPOSITION), _claude_result({"issues": []})]
    with patch("plan_orchestrator.integrations.claude.subprocess.run", side_effect=responses):
        return runner.invoke(main, ["plan", "essay"])


class TestCLI:
    def test_help(self, cli_env):
        result = cli_env.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "Plan Orchestrator" in result.output

    def test_project_create_and_list(self, cli_env):
        result = cli_env.invoke(
            main, ["project", "create", "My Project", "-g", "First", "-g", "Second"]
        )
        assert result.exit_code == 0
        assert "my-project" in result.output
        assert "First" in result.output

        result = cli_env.invoke(main, ["project", "list"])
        assert result.exit_code == 0
        assert "my-project: My Project (planning)" in result.output

        result = cli_env.invoke(main, ["project", "list", "--json"])
        assert json.loads(result.output)[0]["id"] == "my-project"

    def test_show_missing_project(self, cli_env):
        result = cli_env.invoke(main, ["project", "show", "nope"])
        assert result.exit_code == 1
        assert "Project not found: nope" in result.output

    def test_plan_and_show(self, cli_env):
        result = _planned(cli_env)
        assert result.exit_code == 0
        assert "Plan v1: 2 tasks" in result.output
        assert "write-outline" in result.output

        result = cli_env.invoke(main, ["project", "show", "essay"])
        assert result.exit_code == 0
        assert "Critical path: write-outline -> write-draft" in result.output
        assert "write-draft: Write draft (pending" in result.output

    def test_task_update_and_status(self, cli_env):
        _planned(cli_env)
        result = cli_env.invoke(main, ["task", "update", "essay", "write-outline", "-s", "done"])
        assert result.exit_code == 0
        assert "write-outline (done)" in result.output

        result = cli_env.invoke(main, ["status", "essay", "--json"])
        summary = json.loads(result.output)
        assert summary["done_tasks"] == 1
        assert summary["completion"] == 50

    def test_task_update_invalid_status(self, cli_env):
        _planned(cli_env)
        result = cli_env.invoke(main, ["task", "update", "essay", "write-outline", "-s", "nope"])
        assert result.exit_code == 1
        assert "Invalid status" in result.output

    def test_task_search(self, cli_env):
        _planned(cli_env)
        result = cli_env.invoke(main, ["task", "search", "draft"])
        assert result.exit_code == 0
        assert "essay/write-draft" in result.output

    def test_execute_waits_for_agents(self, cli_env):
        _planned(cli_env)

        def finished_agent(cmd, cwd=None, stdout=None, stderr=None):
            stdout.write(json.dumps({"result": f"did {cmd[2][:20]}", "is_error": False}))
            stdout.flush()
            proc = MagicMock(pid=4242)
            proc.poll.return_value = 0
            return proc

        with patch(
            "plan_orchestrator.integrations.claude.subprocess.Popen", side_effect=finished_agent
        ) as mock_popen:
            result = cli_env.invoke(main, ["execute", "essay", "--poll", "0.01", "--timeout", "30"])

        assert result.exit_code == 0
        assert "Dispatched 1 tasks" in result.output
        assert "Essay: completed, 100% complete (2/2 done, 0 blocked)" in result.output
        assert mock_popen.call_count == 2
        first_cmd = mock_popen.call_args_list[0][0][0]
        assert first_cmd[:2] == ["claude", "-p"]
        assert "Write outline" in first_cmd[2]

        status = json.loads(cli_env.invoke(main, ["status", "essay", "--json"]).output)
        assert status["done_tasks"] == 2

    def test_failed_agent_leaves_task_blocked(self, cli_env):
        _planned(cli_env)
        with patch("plan_orchestrator.integrations.claude.subprocess.Popen") as mock_popen:
            mock_popen.return_value = MagicMock(pid=4242)
            mock_popen.return_value.poll.return_value = 1
            result = cli_env.invoke(main, ["run", "essay", "--poll", "0.01", "--timeout", "30"])
        assert result.exit_code == 0
        assert "(0/2 done, 1 blocked)" in result.output

    def test_task_assign_waits_for_dependencies(self, cli_env):
        _planned(cli_env)
        with patch("plan_orchestrator.integrations.claude.subprocess.Popen") as mock_popen:
            result = cli_env.invoke(main, ["task", "assign", "essay", "write-draft", "claude"])
        assert result.exit_code == 0
        assert "Assigned write-draft to claude (pending)" in result.output
        mock_popen.assert_not_called()

        result = cli_env.invoke(main, ["project", "show", "essay", "--json"])
        tasks = json.loads(result.output)["plan"]["tasks"]
        draft = next(t for t in tasks if t["id"] == "write-draft")
        assert draft["assigned_agent_id"] == "claude"

    def test_task_assign_reports_failed_dispatch(self, cli_env):
        _planned(cli_env)
        with patch(
            "plan_orchestrator.integrations.claude.subprocess.Popen",
            side_effect=OSError("claude not found"),
        ):
            result = cli_env.invoke(main, ["task", "assign", "essay", "write-outline", "claude"])
        assert result.exit_code == 1
        assert "Dispatch of write-outline failed" in result.output

    def test_settings(self, cli_env):
        result = cli_env.invoke(main, ["settings", "set", "max_concurrent_tasks", "5"])
        assert result.exit_code == 0
        assert json.loads(result.output)["max_concurrent_tasks"] == 5

        result = cli_env.invoke(main, ["settings", "show"])
        assert json.loads(result.output)["max_concurrent_tasks"] == 5

        result = cli_env.invoke(main, ["settings", "set", "bogus", "1"])
        assert result.exit_code == 1
        assert "Unknown settings" in result.output

    def test_delete(self, cli_env):
        cli_env.invoke(main, ["project", "create", "Temp"])
        result = cli_env.invoke(main, ["project", "delete", "temp", "--yes"])
        assert result.exit_code == 0
        result = cli_env.invoke(main, ["project", "list"])
        assert "No projects found." in result.output
