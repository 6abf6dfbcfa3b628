"""
Fleet Module - Black Box Interface

Purpose: Push the agent artifact to every mining host and restart it safely
Interface: UpdateCoordinator.run(), load_hosts(), KnownHostsManager
Hidden: ssh/scp argument vectors, checksum verification, install script

Runs on the operator's machine. Hosts are updated concurrently with a bounded
pool; one host's failure never affects another.
"""

from .checksum import ChecksumManager
from .confirmation import ConfirmationProvider, InteractiveConfirmation, StaticConfirmation
from .coordinator import UpdateCancelled, UpdateCoordinator
from .fleet_config import load_hosts
from .host_validator import HostValidator
from .known_hosts import KnownHostsManager, ScanResult, fingerprint
from .ssh import SSHExecutor, TransferError

__all__ = [
    "ChecksumManager",
    "ConfirmationProvider",
    "HostValidator",
    "InteractiveConfirmation",
    "KnownHostsManager",
    "ScanResult",
    "SSHExecutor",
    "StaticConfirmation",
    "TransferError",
    "UpdateCancelled",
    "UpdateCoordinator",
    "fingerprint",
    "load_hosts",
]
