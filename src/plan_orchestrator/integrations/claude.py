"""Claude CLI integration: planning completions and sub-agent task execution."""

import json
import logging
import os
import signal
import subprocess
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from plan_orchestrator.core.interfaces import Completion
from plan_orchestrator.db.models import Agent, ExecutionMessage, ExecutionUpdate, generate_id

logger = logging.getLogger(__name__)


class ClaudePlanner:
    """Planning service backed by one-shot `claude -p` calls.

    The CLI has no temperature control; the argument is accepted and ignored.
    """

    def __init__(self, model: str = "sonnet", timeout: float = 600.0):
        self.model = model
        self.timeout = timeout

    def complete(
        self,
        messages: list[dict],
        temperature: float = 0.3,
        response_format: str = "json",
    ) -> Completion:
        system = "\n\n".join(m["content"] for m in messages if m.get("role") == "system")
        prompt = "\n\n".join(m["content"] for m in messages if m.get("role") != "system")
        if response_format == "json":
            prompt += "\n\nRespond with a single JSON object and nothing else."

        cmd = ["claude", "-p", prompt, "--output-format", "json"]
        if self.model:
            cmd += ["--model", self.model]
        if system:
            cmd += ["--system-prompt", system]

        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        if proc.returncode != 0:
            raise RuntimeError(
                f"claude exited with {proc.returncode}: {proc.stderr.strip()[:500]}"
            )
        return Completion(content=_envelope_result(proc.stdout))


def _envelope_result(stdout: str) -> str:
    """Pull the `result` field out of the CLI's JSON envelope."""
    try:
        data = json.loads(stdout)
    except json.JSONDecodeError:
        return stdout
    if isinstance(data, dict) and isinstance(data.get("result"), str):
        return data["result"]
    return stdout


class StaticAgentRegistry:
    """Agents listed in configuration, in preference order."""

    def __init__(self, agent_ids: list[str]):
        self.agents = [Agent(id=a, name=a) for a in agent_ids]

    def list_agents(self) -> list[Agent]:
        return list(self.agents)


@dataclass
class _Run:
    execution_id: str
    agent_id: str
    proc: subprocess.Popen
    output_file: str


class ClaudeAgentExecutor:
    """Execution service that runs each task as a background `claude -p` process.

    Output is captured to a JSON file per run. A monitor thread polls the
    processes and publishes completed/failed updates to subscribers.
    """

    def __init__(
        self,
        output_dir: str | Path,
        model: str = "sonnet",
        max_turns: int | None = None,
        permission_mode: str = "acceptEdits",
        cwd: str | None = None,
        poll_interval: float = 5.0,
    ):
        self.output_dir = Path(output_dir)
        self.model = model
        self.max_turns = max_turns
        self.permission_mode = permission_mode
        self.cwd = cwd
        self.poll_interval = poll_interval
        self._runs: dict[str, _Run] = {}
        self._lock = threading.Lock()
        self._update_listeners: list[Callable[[ExecutionUpdate], None]] = []
        self._message_listeners: list[Callable[[ExecutionMessage], None]] = []
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # ── ExecutionService ─────────────────────────────────────────────────────

    def subscribe(
        self,
        on_update: Callable[[ExecutionUpdate], None],
        on_message: Callable[[ExecutionMessage], None] | None = None,
    ) -> None:
        self._update_listeners.append(on_update)
        if on_message is not None:
            self._message_listeners.append(on_message)

    def start_task(
        self,
        agent_id: str,
        conversation_id: str,
        message: str,
        metadata: dict,
    ) -> str:
        execution_id = f"exec-{generate_id()}"

        self.output_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        task_id = metadata.get("task_id", "task")
        output_file = str(self.output_dir / f"agent-{task_id}-{timestamp}-{execution_id}.json")

        cmd = ["claude", "-p", message, "--output-format", "json"]
        if self.model:
            cmd += ["--model", self.model]
        if self.permission_mode:
            cmd += ["--permission-mode", self.permission_mode]
        if self.max_turns:
            cmd += ["--max-turns", str(self.max_turns)]

        with open(output_file, "w") as f:
            proc = subprocess.Popen(
                cmd,
                cwd=self.cwd,
                stdout=f,
                stderr=subprocess.STDOUT,
            )

        with self._lock:
            self._runs[execution_id] = _Run(execution_id, agent_id, proc, output_file)
        logger.info(
            "Launched agent %s for task %s (PID %s, execution %s)",
            agent_id, task_id, proc.pid, execution_id,
        )
        return execution_id

    def cancel_task(self, execution_id: str) -> None:
        """Send SIGTERM to the run's process and publish a cancelled update."""
        with self._lock:
            run = self._runs.pop(execution_id, None)
        if run is None:
            raise ValueError(f"Execution not found: {execution_id}")
        try:
            os.kill(run.proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            pass  # Already exited
        logger.info("Cancelled execution %s (PID %s)", execution_id, run.proc.pid)
        self._emit_update(ExecutionUpdate(execution_id, "cancelled"))

    # ── Monitor thread ───────────────────────────────────────────────────────

    def start(self):
        """Start the monitor thread."""
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="agent-monitor", daemon=True
        )
        self._thread.start()
        logger.info("Agent monitor started")

    def stop(self):
        """Signal the monitor thread to stop."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
        logger.info("Agent monitor stopped")

    def running(self) -> list[str]:
        with self._lock:
            return list(self._runs)

    def _run(self):
        while not self._stop_event.is_set():
            try:
                self.check_processes()
            except Exception:
                logger.exception("Error in agent monitor loop")
            self._stop_event.wait(self.poll_interval)

    def check_processes(self) -> None:
        """Poll every running process and publish updates for finished ones."""
        with self._lock:
            runs = list(self._runs.values())
        for run in runs:
            exit_code = run.proc.poll()
            if exit_code is None:
                continue
            with self._lock:
                if self._runs.pop(run.execution_id, None) is None:
                    continue  # cancelled meanwhile
            self._handle_completion(run, exit_code)

    def _handle_completion(self, run: _Run, exit_code: int) -> None:
        summary = None
        failed = exit_code != 0

        path = Path(run.output_file)
        if path.exists():
            try:
                content = path.read_text()
            except OSError as e:
                content = ""
                summary = f"Error reading output: {e}"
                failed = True
            if content.strip():
                try:
                    data = json.loads(content)
                except json.JSONDecodeError:
                    data = None
                if isinstance(data, dict):
                    summary = data.get("result", content[:500])
                    if data.get("is_error"):
                        failed = True
                else:
                    summary = content[:500]
            elif summary is None:
                summary = "(empty output)"
                failed = True

        status = "failed" if failed else "completed"
        logger.info(
            "Agent %s execution %s %s (exit_code=%s)",
            run.agent_id, run.execution_id, status, exit_code,
        )
        if summary and not failed:
            self._emit_message(ExecutionMessage(run.execution_id, summary))
        if failed:
            self._emit_update(ExecutionUpdate(
                run.execution_id, "failed", error=summary or f"exit code {exit_code}",
            ))
        else:
            self._emit_update(ExecutionUpdate(run.execution_id, "completed", result=summary))

    def _emit_update(self, update: ExecutionUpdate) -> None:
        for listener in list(self._update_listeners):
            try:
                listener(update)
            except Exception:
                logger.exception("Execution update listener failed")

    def _emit_message(self, message: ExecutionMessage) -> None:
        for listener in list(self._message_listeners):
            try:
                listener(message)
            except Exception:
                logger.exception("Execution message listener failed")
