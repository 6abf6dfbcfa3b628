"""
Error taxonomy shared by the agent and the fleet update coordinator.

Preflight errors abort a whole update run. Per-host errors are caught at the
host task boundary and become that host's recorded failure reason.
"""

from typing import List, Optional


class MinerFleetError(Exception):
    """Base class for all minerfleet errors."""


class ConfigurationError(MinerFleetError):
    """Bad or missing fleet descriptor or environment configuration."""


class ValidationError(MinerFleetError):
    """Malformed hostname or CLI input."""


class HostStageError(MinerFleetError):
    """An error raised by one stage of one host's update pipeline."""

    reason = "Host update failed"

    def __init__(self, hostname: str, detail: Optional[str] = None, stage: Optional[str] = None):
        self.hostname = hostname
        self.detail = detail
        self.stage = stage
        message = self.reason if not detail else f"{self.reason}: {detail}"
        super().__init__(message)


class ConnectivityError(HostStageError):
    """Host unreachable, connection timed out or authentication failed."""

    reason = "SSH connection failed"


class IntegrityError(HostStageError):
    """Remote artifact checksum does not match the expected checksum."""

    reason = "Checksum mismatch"


class ExecutionError(HostStageError):
    """A remote command exited non-zero."""

    reason = "Remote command failed"


class ServiceVerificationError(HostStageError):
    """Managed service is not active after the update."""

    reason = "Service verification failed"


class StageTimeoutError(HostStageError, TimeoutError):
    """A stage or a whole host pipeline exceeded its time bound."""

    reason = "Timed out"


class UnknownActionError(MinerFleetError):
    """Agent received a command action outside the known set."""

    def __init__(self, action):
        self.action = action
        super().__init__(f"Unknown action: {action}")


class PreflightError(MinerFleetError):
    """A preflight check failed; the whole run is aborted."""

    def __init__(self, message: str, hosts: Optional[List[str]] = None):
        self.hosts = list(hosts or [])
        super().__init__(message)
