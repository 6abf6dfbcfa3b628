"""
Managed-service interface for the host agent.

Wraps the local service manager (systemd) for the mining unit. Every call
returns an explicit CommandOutcome; nothing is inferred from ambient state.
"""

import logging
import subprocess
from typing import List, Optional

from minerfleet.modules.api.models import CommandOutcome

logger = logging.getLogger("minerfleet.agent.service")

# systemctl is-active states
ACTIVE = "active"
INACTIVE = "inactive"
FAILED = "failed"
ACTIVATING = "activating"
DEACTIVATING = "deactivating"


class ServiceManager:
    """Privileged start/stop/restart/is-active/status calls for one unit."""

    def __init__(self, service_name: str, use_sudo: bool = True, timeout: float = 60):
        """
        Args:
            service_name: systemd unit name
            use_sudo: Prefix calls with non-interactive sudo
            timeout: Seconds before a call is abandoned
        """
        self.service_name = service_name
        self.use_sudo = use_sudo
        self.timeout = timeout

    def start(self) -> CommandOutcome:
        return self._systemctl("start")

    def stop(self) -> CommandOutcome:
        return self._systemctl("stop")

    def restart(self) -> CommandOutcome:
        return self._systemctl("restart")

    def status(self) -> CommandOutcome:
        return self._systemctl("status", "--no-pager")

    def is_active(self) -> str:
        """
        Current unit state as reported by systemctl is-active.

        Returns:
            One of active, inactive, failed, activating, deactivating, or
            "unknown" when the service manager could not be queried
        """
        outcome = self._systemctl("is-active")
        state = outcome.stdout.strip().splitlines()[0] if outcome.stdout.strip() else ""
        return state or "unknown"

    def main_pid(self) -> Optional[int]:
        """PID of the unit's main process, None when not running."""
        outcome = self._systemctl("show", "--property=MainPID", "--value")
        try:
            pid = int(outcome.stdout.strip())
        except ValueError:
            return None
        return pid or None

    def _command(self, *args: str) -> List[str]:
        cmd = ["systemctl", *args, self.service_name]
        if self.use_sudo:
            cmd = ["sudo", "-n"] + cmd
        return cmd

    def _systemctl(self, *args: str) -> CommandOutcome:
        """
        Run systemctl synchronously.

        Timeouts and a missing binary are reported as exit code -1 so callers
        treat them like any other failed call.
        """
        cmd = self._command(*args)
        logger.debug(f"Running: {' '.join(cmd)}")

        try:
            process = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            logger.error(f"systemctl {args[0]} {self.service_name} timed out after {self.timeout}s")
            return CommandOutcome("", f"Command timed out after {self.timeout}s", -1)
        except OSError as e:
            logger.error(f"systemctl {args[0]} {self.service_name} could not run: {e}")
            return CommandOutcome("", str(e), -1)

        return CommandOutcome(process.stdout or "", process.stderr or "", process.returncode)
