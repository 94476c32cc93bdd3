"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".room_orchestrator" / "ro.db")
    workspaces_dir: Path = field(default_factory=lambda: Path.cwd() / "room-workspaces")
    slack_bot_token: str | None = None
    completion_binary: str = "claude"
    completion_model: str = "sonnet"
    completion_timeout: float = 120.0
    sweep_interval: float = 30.0
    event_interval: float = 5.0
    event_window: float = 60.0
    stale_after: float = 30 * 60
    signal_cooldown: float = 45.0
    verify_timeout: float = 180.0
    large_delta_files: int = 25
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("RO_DB_PATH"):
            config.db_path = Path(db)

        if ws := os.environ.get("RO_WORKSPACES_DIR"):
            config.workspaces_dir = Path(ws).resolve()

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")

        if binary := os.environ.get("RO_COMPLETION_BINARY"):
            config.completion_binary = binary

        if model := os.environ.get("RO_COMPLETION_MODEL"):
            config.completion_model = model

        if timeout := os.environ.get("RO_COMPLETION_TIMEOUT"):
            config.completion_timeout = float(timeout)

        if interval := os.environ.get("RO_SWEEP_INTERVAL"):
            config.sweep_interval = float(interval)

        if interval := os.environ.get("RO_EVENT_INTERVAL"):
            config.event_interval = float(interval)

        if window := os.environ.get("RO_EVENT_WINDOW"):
            config.event_window = float(window)

        if stale := os.environ.get("RO_STALE_AFTER"):
            config.stale_after = float(stale)

        if cooldown := os.environ.get("RO_SIGNAL_COOLDOWN"):
            config.signal_cooldown = float(cooldown)

        if verify := os.environ.get("RO_VERIFY_TIMEOUT"):
            config.verify_timeout = float(verify)

        if delta := os.environ.get("RO_LARGE_DELTA_FILES"):
            config.large_delta_files = int(delta)

        if level := os.environ.get("RO_LOG_LEVEL"):
            config.log_level = level.upper()

        return config


def get_config() -> Config:
    return Config.from_env()
