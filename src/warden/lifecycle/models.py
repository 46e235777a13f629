"""Server status state machine and status snapshots."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from warden.catalog import ServerDefinition


class ServerStatus(str, Enum):
    """STOPPED -> STARTING -> RUNNING -> STOPPING -> STOPPED, plus ERROR.

    ERROR is reachable from STARTING, RUNNING, and STOPPING, and a later
    start() recovers from it.
    """

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class ServerState:
    """Mutable runtime state for one registered server.

    Owned by ServerLifecycleManager; callers only see ServerStatusSnapshot.
    """

    definition: ServerDefinition
    status: ServerStatus = ServerStatus.STOPPED
    started_at: float | None = None
    last_error: str | None = None
    tools: list[dict[str, Any]] = field(default_factory=list)
    resources: list[dict[str, Any]] = field(default_factory=list)
    prompts: list[dict[str, Any]] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.definition.name

    def clear_capabilities(self) -> None:
        self.tools = []
        self.resources = []
        self.prompts = []

    def snapshot(self, now: float | None = None) -> ServerStatusSnapshot:
        now = time.time() if now is None else now
        uptime = None
        if self.status is ServerStatus.RUNNING and self.started_at is not None:
            uptime = now - self.started_at
        return ServerStatusSnapshot(
            name=self.name,
            status=self.status,
            started_at=self.started_at,
            uptime=uptime,
            last_error=self.last_error,
            tool_count=len(self.tools),
            resource_count=len(self.resources),
            prompt_count=len(self.prompts),
            capabilities=tuple(self.definition.capabilities),
        )


@dataclass(frozen=True)
class ServerStatusSnapshot:
    """Read-only view of a server's state at one point in time."""

    name: str
    status: ServerStatus
    started_at: float | None
    uptime: float | None
    last_error: str | None
    tool_count: int
    resource_count: int
    prompt_count: int
    capabilities: tuple[str, ...] = ()
