"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    db_path: Path = field(
        default_factory=lambda: Path.home() / ".plan_orchestrator" / "po.db"
    )
    output_dir: Path = field(
        default_factory=lambda: Path.home() / ".plan_orchestrator" / "outputs"
    )
    planner_model: str = "sonnet"
    agent_model: str = "sonnet"
    agent_max_turns: int | None = None
    agent_ids: list[str] = field(default_factory=lambda: ["claude"])
    agent_poll: float = 5.0
    scheduler_poll: float = 30.0
    event_queue_size: int = 1024
    slack_bot_token: str | None = None
    slack_channel: str | None = None

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("PO_DB_PATH"):
            config.db_path = Path(db)

        if out_dir := os.environ.get("PO_OUTPUT_DIR"):
            config.output_dir = Path(out_dir)

        if model := os.environ.get("PO_PLANNER_MODEL"):
            config.planner_model = model

        if model := os.environ.get("PO_AGENT_MODEL"):
            config.agent_model = model

        if turns := os.environ.get("PO_AGENT_MAX_TURNS"):
            config.agent_max_turns = int(turns)

        if agent_ids := os.environ.get("PO_AGENT_IDS"):
            config.agent_ids = [a.strip() for a in agent_ids.split(",") if a.strip()]

        if poll := os.environ.get("PO_AGENT_POLL"):
            config.agent_poll = float(poll)

        if poll := os.environ.get("PO_SCHEDULER_POLL"):
            config.scheduler_poll = float(poll)

        if size := os.environ.get("PO_EVENT_QUEUE_SIZE"):
            config.event_queue_size = int(size)

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("PO_SLACK_CHANNEL")

        return config


def get_config() -> Config:
    return Config.from_env()
