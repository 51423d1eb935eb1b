"""Progress monitoring: periodic health checks and milestone tracking."""

import logging
import re
from datetime import datetime

from plan_orchestrator.core import prompts
from plan_orchestrator.core.events import (
    HEALTH_UPDATE,
    MILESTONE_REACHED,
    EventBus,
    EventChannel,
    ReplanRequest,
)
from plan_orchestrator.core.graph import compute_completion_percentage, find_task
from plan_orchestrator.core.interfaces import Notifier, PlanningService, Scheduler
from plan_orchestrator.core.parsing import Parsed, parse_response
from plan_orchestrator.db.models import (
    FINDING_SEVERITIES,
    FINDING_TYPES,
    Finding,
    HealthReport,
    Project,
    utcnow,
)

logger = logging.getLogger(__name__)

WORKDAY_HOURS = 8
STALE_FACTOR = 2
AT_RISK_WARNINGS = 3

_EFFORT_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-z]+)\s*$", re.IGNORECASE)
_UNIT_MS = {
    "m": 60_000, "min": 60_000, "mins": 60_000, "minute": 60_000, "minutes": 60_000,
    "h": 3_600_000, "hr": 3_600_000, "hrs": 3_600_000, "hour": 3_600_000, "hours": 3_600_000,
    "d": WORKDAY_HOURS * 3_600_000, "day": WORKDAY_HOURS * 3_600_000,
    "days": WORKDAY_HOURS * 3_600_000,
}


def parse_effort(effort: str | None) -> int | None:
    """Parse an effort string like "2h", "30m" or "1d" into milliseconds.

    Returns None for anything unrecognized. A day counts as eight working hours.
    """
    if not effort:
        return None
    match = _EFFORT_RE.match(effort)
    if not match:
        return None
    unit_ms = _UNIT_MS.get(match.group(2).lower())
    if unit_ms is None:
        return None
    return int(float(match.group(1)) * unit_ms)


class ProgressMonitor:
    def __init__(
        self,
        planner: PlanningService,
        scheduler: Scheduler | None,
        channel: EventChannel,
        bus: EventBus,
        notifier: Notifier | None = None,
    ):
        self.planner = planner
        self.scheduler = scheduler
        self.channel = channel
        self.bus = bus
        self.notifier = notifier
        self._scheduled: dict[str, str | None] = {}
        self._last_reports: dict[str, HealthReport] = {}

    # ── Scheduling ───────────────────────────────────────────────────────────

    def start_monitoring(self, project: Project) -> None:
        if project.id in self._scheduled:
            return

        schedule_id = None
        if self.scheduler is not None:
            try:
                schedule_id = self.scheduler.create_task(
                    name=f"po-monitor-{project.id}",
                    cron_expression=project.settings.check_interval,
                    driving_prompt=prompts.monitor_driving_prompt(project),
                    metadata={"project_id": project.id, "type": "health_check"},
                )
            except Exception:
                logger.warning(
                    "Failed to schedule health checks for %s; manual checks only",
                    project.id, exc_info=True,
                )
        self._scheduled[project.id] = schedule_id
        logger.info("Monitoring started for project %s (%s)", project.id, schedule_id)

    def stop_monitoring(self, project_id: str) -> None:
        if project_id not in self._scheduled:
            return
        schedule_id = self._scheduled.pop(project_id)
        if schedule_id and self.scheduler is not None:
            try:
                self.scheduler.delete_task(schedule_id)
            except Exception:
                logger.exception("Failed to delete schedule %s", schedule_id)
        logger.info("Monitoring stopped for project %s", project_id)

    def stop_all(self) -> None:
        for project_id in list(self._scheduled):
            self.stop_monitoring(project_id)

    def is_monitoring(self, project_id: str) -> bool:
        return project_id in self._scheduled

    def last_report(self, project_id: str) -> HealthReport | None:
        return self._last_reports.get(project_id)

    # ── Health check ─────────────────────────────────────────────────────────

    def run_health_check(self, project: Project, now: datetime | None = None) -> HealthReport:
        now = now or utcnow()
        tasks = project.plan.tasks
        completion = compute_completion_percentage(tasks)

        findings = self._metric_findings(project, now)
        assessment_findings, recommendations = self._assess(project, completion, len(findings))
        findings.extend(assessment_findings)

        report = HealthReport(
            project_id=project.id,
            overall_health=self._overall_health(findings),
            completion_percentage=completion,
            findings=findings,
            recommendations=recommendations,
            timestamp=now,
        )

        if report.overall_health == "critical" and project.settings.auto_replan:
            critical = [f.message for f in findings if f.severity == "critical"]
            logger.info("Requesting auto-replan for %s", project.id)
            self.channel.publish(ReplanRequest(
                project.id, "Auto-replan: " + "; ".join(critical),
            ))

        self.update_milestones(project)

        self._last_reports[project.id] = report
        self.bus.emit(HEALTH_UPDATE, {"project_id": project.id, "report": report.to_dict()})
        logger.info(
            "Health check for %s: %s (%d%% complete, %d findings)",
            project.id, report.overall_health, completion, len(findings),
        )
        return report

    def update_milestones(self, project: Project) -> None:
        """Recompute milestone completion; fire the reached event once per milestone."""
        for milestone in project.milestones:
            tasks = [find_task(project.plan.tasks, tid) for tid in milestone.task_ids]
            tasks = [t for t in tasks if t is not None]
            done = sum(1 for t in tasks if t.status == "done")
            milestone.completion_percentage = round(done / len(tasks) * 100) if tasks else 0

            if milestone.completion_percentage == 100 and milestone.status != "completed":
                milestone.status = "completed"
                self.bus.emit(MILESTONE_REACHED, {
                    "project_id": project.id,
                    "milestone_id": milestone.id,
                    "name": milestone.name,
                })
                if project.settings.notify_on_milestone:
                    self._notify(
                        f"Milestone reached: {milestone.name}",
                        f'Project "{project.name}" completed milestone "{milestone.name}".',
                        type="success",
                    )
            elif 0 < milestone.completion_percentage < 100 and milestone.status == "pending":
                milestone.status = "in_progress"

    def _metric_findings(self, project: Project, now: datetime) -> list[Finding]:
        findings = []
        for task in project.plan.tasks:
            if task.status == "in_progress" and task.started_at:
                effort_ms = parse_effort(task.estimated_effort)
                if effort_ms is None:
                    continue
                elapsed_ms = (now - task.started_at).total_seconds() * 1000
                if elapsed_ms > effort_ms * STALE_FACTOR:
                    findings.append(Finding(
                        type="stale_task",
                        severity="warning",
                        task_id=task.id,
                        message=(
                            f'Task "{task.title}" has been in progress for '
                            f"{elapsed_ms / 3_600_000:.1f}h, estimated {task.estimated_effort}"
                        ),
                        suggested_action="Check agent status or reassign",
                    ))
            elif task.status == "blocked":
                if not any(n.type == "resolution" for n in task.notes):
                    findings.append(Finding(
                        type="blocker",
                        severity="critical",
                        task_id=task.id,
                        message=f'Task "{task.title}" is blocked with no resolution',
                        suggested_action="Re-plan around this blocker or resolve manually",
                    ))
        return findings

    def _assess(
        self, project: Project, completion: int, issue_count: int
    ) -> tuple[list[Finding], list[str]]:
        try:
            completion_result = self.planner.complete(
                messages=[
                    {"role": "system", "content": prompts.HEALTH_SYSTEM},
                    {
                        "role": "user",
                        "content": prompts.health_check_request(project, completion, issue_count),
                    },
                ],
                temperature=0.3,
                response_format="json",
            )
        except Exception:
            logger.warning("Health assessment unavailable for %s", project.id, exc_info=True)
            return [], []

        result = parse_response(completion_result.content)
        if not isinstance(result, Parsed):
            logger.debug("Health assessment unparseable: %s", result.reason)
            return [], []

        findings = []
        for entry in result.list_of_dicts("findings") or []:
            finding = _finding_from_raw(entry)
            if finding is None:
                logger.debug("Skipping invalid finding: %s", entry)
                continue
            findings.append(finding)
        return findings, result.list_of_str("recommendations")

    @staticmethod
    def _overall_health(findings: list[Finding]) -> str:
        if any(f.severity == "critical" for f in findings):
            return "critical"
        if sum(1 for f in findings if f.severity == "warning") >= AT_RISK_WARNINGS:
            return "at_risk"
        return "healthy"

    def _notify(self, title: str, message: str, type: str = "info") -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(title, message, type=type)
        except Exception:
            logger.warning("Notification failed: %s", title, exc_info=True)


def _finding_from_raw(entry: dict) -> Finding | None:
    message = entry.get("message")
    if entry.get("type") not in FINDING_TYPES or entry.get("severity") not in FINDING_SEVERITIES:
        return None
    if not isinstance(message, str) or not message:
        return None
    task_id = entry.get("taskId", entry.get("task_id"))
    action = entry.get("suggestedAction", entry.get("suggested_action"))
    return Finding(
        type=entry["type"],
        severity=entry["severity"],
        message=message,
        task_id=task_id if isinstance(task_id, str) else None,
        suggested_action=action if isinstance(action, str) else None,
    )
