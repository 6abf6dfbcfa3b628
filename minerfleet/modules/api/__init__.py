"""
API Module - Black Box Interface

Purpose: Shared data models for commands, process state and update runs
Interface: pydantic models and closed enums
Hidden: Nothing - these are the contracts between modules
"""

from .models import (
    Command,
    CommandAction,
    CommandOutcome,
    CommandStatus,
    HostOutcome,
    HostResult,
    MinerSummary,
    ProcessState,
    ProcessStatus,
    UpdateRun,
)

__all__ = [
    "Command",
    "CommandAction",
    "CommandOutcome",
    "CommandStatus",
    "HostOutcome",
    "HostResult",
    "MinerSummary",
    "ProcessState",
    "ProcessStatus",
    "UpdateRun",
]
