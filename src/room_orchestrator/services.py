"""Wiring of the long-lived services shared by the CLI, web API and MCP server."""

from dataclasses import dataclass

from room_orchestrator.config import Config
from room_orchestrator.core.execution import ExecutionPipeline
from room_orchestrator.core.monitor import RoomMonitor
from room_orchestrator.core.signals import Notifier, SignalCooldown
from room_orchestrator.core.workspace import WorkspaceManager
from room_orchestrator.integrations.completion import CompletionClient


@dataclass
class Services:
    config: Config
    notifier: Notifier
    workspaces: WorkspaceManager
    completion: CompletionClient
    pipeline: ExecutionPipeline

    def monitor(self) -> RoomMonitor:
        return RoomMonitor(
            db_path=self.config.db_path,
            notifier=self.notifier,
            pipeline=self.pipeline,
            workspaces=self.workspaces,
            sweep_interval=self.config.sweep_interval,
            event_interval=self.config.event_interval,
            event_window=self.config.event_window,
            stale_after=self.config.stale_after,
            large_delta_files=self.config.large_delta_files,
        )


def build_services(config: Config) -> Services:
    notifier = Notifier(
        cooldown=SignalCooldown(default_cooldown=config.signal_cooldown),
        slack_token=config.slack_bot_token,
    )
    workspaces = WorkspaceManager(config.workspaces_dir)
    completion = CompletionClient(
        binary=config.completion_binary,
        model=config.completion_model,
        timeout=config.completion_timeout,
    )
    pipeline = ExecutionPipeline(
        config.db_path,
        workspaces,
        completion,
        notifier,
        verify_timeout=config.verify_timeout,
    )
    return Services(config, notifier, workspaces, completion, pipeline)
