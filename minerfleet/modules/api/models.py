"""
minerfleet shared data models.

These models define the structure of all data passed between the control
plane, the store, the host agent and the update coordinator.
"""

from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional

from pydantic import BaseModel, Field

from minerfleet.exceptions import UnknownActionError

HEALTHY_WINDOW = timedelta(minutes=2)
STALE_WINDOW = timedelta(minutes=5)
SUPERSEDED_MESSAGE = "Superseded by new command"

# Enums


class CommandAction(str, Enum):
    """Actions the agent can perform on the managed mining service."""

    START = "start"
    STOP = "stop"
    RESTART = "restart"

    @classmethod
    def parse(cls, value: Any) -> "CommandAction":
        """
        Convert a stored action string to a known action.

        Raises:
            UnknownActionError: If the value is not a known action
        """
        try:
            return cls(value)
        except ValueError:
            raise UnknownActionError(value)


class CommandStatus(str, Enum):
    """Lifecycle of a command row."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (CommandStatus.COMPLETED, CommandStatus.FAILED)


class ProcessStatus(str, Enum):
    """Observed state of the mining process on a host."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    UNHEALTHY = "unhealthy"
    STOPPING = "stopping"
    CRASHED = "crashed"
    RESTARTING = "restarting"


ACTIVE_STATUSES = (ProcessStatus.STARTING, ProcessStatus.RUNNING, ProcessStatus.UNHEALTHY)
ATTENTION_STATUSES = (ProcessStatus.CRASHED, ProcessStatus.UNHEALTHY)


class HostOutcome(str, Enum):
    """Per-host result of an update run."""

    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


# Process Models


class CommandOutcome(NamedTuple):
    """Result of one local or remote process invocation."""

    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


# Store Models


class Command(BaseModel):
    """A row of the commands table."""

    id: int
    action: str = Field(..., description="Requested action, validated when executed")
    status: CommandStatus = CommandStatus.PENDING
    reason: Optional[str] = None
    result: Optional[str] = None
    error_message: Optional[str] = None
    hostname: Optional[str] = Field(None, description="Queue partition, None for the shared queue")
    processed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class ProcessState(BaseModel):
    """A row of the process_state table, one per managed host."""

    hostname: str
    worker_id: str
    status: ProcessStatus = ProcessStatus.STOPPED
    pid: Optional[int] = None
    hashrate: Optional[float] = None
    restart_count: int = 0
    error_count: int = 0
    last_error: Optional[str] = None
    last_health_check_at: Optional[datetime] = None
    accepted_shares: Optional[int] = None
    rejected_shares: Optional[int] = None
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    health_data: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def default_for(cls, hostname: str) -> "ProcessState":
        """State for a host that has never reported."""
        return cls(hostname=hostname, worker_id=f"{hostname}-production")

    def is_healthy(self, now: Optional[datetime] = None) -> bool:
        """Running and checked within the last two minutes."""
        now = now or datetime.now(UTC)
        return (
            self.status == ProcessStatus.RUNNING
            and self.last_health_check_at is not None
            and self.last_health_check_at > now - HEALTHY_WINDOW
        )

    def is_stale(self, now: Optional[datetime] = None) -> bool:
        """No health check within the last five minutes."""
        now = now or datetime.now(UTC)
        return self.last_health_check_at is None or self.last_health_check_at < now - STALE_WINDOW


# Agent Models


class MinerSummary(BaseModel):
    """Subset of the miner's loopback status report used for health checks."""

    hashrate: Optional[float] = Field(None, description="Current hashrate in H/s, None while warming up")
    connected: bool = False
    pool: Optional[str] = None
    accepted_shares: Optional[int] = None
    rejected_shares: Optional[int] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


# Update Models


class HostResult(BaseModel):
    """Outcome of one host's update pipeline."""

    hostname: str
    outcome: HostOutcome
    reason: Optional[str] = None
    elapsed_seconds: float = 0.0
    output: str = ""

    @property
    def succeeded(self) -> bool:
        return self.outcome == HostOutcome.SUCCESS


class UpdateRun(BaseModel):
    """State of a single coordinator invocation; never persisted."""

    hosts: List[str]
    checksum: Optional[str] = None
    dry_run: bool = False
    results: List[HostResult] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def succeeded(self) -> List[HostResult]:
        return [r for r in self.results if r.succeeded]

    @property
    def failed(self) -> List[HostResult]:
        return [r for r in self.results if not r.succeeded]

    @property
    def exit_code(self) -> int:
        return 0 if not self.failed else 1
