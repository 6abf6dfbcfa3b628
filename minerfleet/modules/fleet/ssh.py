"""
SSH transport for the update coordinator.

Every remote call is built from an argument vector. The hostname is validated
before an executor exists, remote arguments are quoted individually, and the
install script receives its values as positional parameters on stdin rather
than by string interpolation.
"""

import asyncio
import logging
import os
import secrets
import shlex
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence

from minerfleet.exceptions import (
    ConnectivityError,
    ExecutionError,
    IntegrityError,
    ServiceVerificationError,
    StageTimeoutError,
)
from minerfleet.modules.api.models import CommandOutcome
from minerfleet.modules.fleet.checksum import ChecksumManager
from minerfleet.modules.fleet.host_validator import HostValidator

logger = logging.getLogger("minerfleet.fleet.ssh")

READ_CHUNK = 64 * 1024
SSH_CONNECTION_ERROR = 255

INSTALL_SCRIPT = r"""
set -euo pipefail
TEMP_FILE="$1"
INSTALL_PATH="$2"
SERVICE="$3"
MINER_PATH="$4"
SETTLE="$5"
trap 'rm -f "$TEMP_FILE"' EXIT

# 1. Detect mining binary location
MINER_NAME="$(basename "$MINER_PATH")"
FOUND="$(command -v "$MINER_NAME" 2>/dev/null || true)"
if [ -n "$FOUND" ] && [ "$FOUND" != "$MINER_PATH" ]; then
  sudo ln -sf "$FOUND" "$MINER_PATH"
  echo "  ✓ $MINER_NAME relinked: $MINER_PATH -> $FOUND"
elif [ -z "$FOUND" ]; then
  echo "  ⚠ Warning: $MINER_NAME not found in PATH"
else
  echo "  ✓ $MINER_NAME already at $MINER_PATH"
fi

# 2. Install agent
sudo install -m 0755 "$TEMP_FILE" "$INSTALL_PATH"
echo "  ✓ Agent installed at $INSTALL_PATH"

# 3. Restart service
sudo systemctl restart "$SERVICE"
sleep "$SETTLE"

# 4. Verify running
if sudo systemctl is-active --quiet "$SERVICE"; then
  echo "  ✓ Service verified"
else
  echo "  ✗ Service failed to start" >&2
  sudo journalctl -u "$SERVICE" -n 10 --no-pager >&2 || true
  exit 1
fi
"""


class TransferError(ExecutionError):
    """Copying the artifact to the host failed."""

    reason = "SCP transfer failed"


def truncate_output(data: bytes, limit: int, dropped: int = 0) -> str:
    """Decode captured output, noting how much was discarded past the cap."""
    text = data[:limit].decode("utf-8", errors="replace")
    dropped += max(len(data) - limit, 0)
    if dropped:
        text += f"\n[output truncated: {dropped} bytes dropped]"
    return text


class SSHExecutor:
    """Remote operations on a single host."""

    def __init__(
        self,
        hostname: str,
        user: str = "deploy",
        known_hosts_path: Optional[Path] = None,
        verify_host: bool = True,
        connect_timeout: int = 5,
        command_timeout: float = 300,
        output_limit: int = 100 * 1024,
        verbose: bool = False,
    ):
        self.hostname = HostValidator.validate(hostname)
        self.user = user
        self.known_hosts_path = known_hosts_path
        self.verify_host = verify_host
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self.output_limit = output_limit
        self.verbose = verbose
        # Unique per process and per executor so concurrent runs never share a path
        self.temp_path = f"/tmp/minerfleet-agent-{os.getpid()}-{secrets.token_hex(4)}"

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.hostname}"

    def transport_options(self) -> List[str]:
        """Options shared by ssh and scp."""
        options = ["-o", "BatchMode=yes", "-o", f"ConnectTimeout={self.connect_timeout}"]
        if self.verify_host:
            options += ["-o", "StrictHostKeyChecking=yes"]
            if self.known_hosts_path:
                options += ["-o", f"UserKnownHostsFile={self.known_hosts_path}"]
        else:
            options += ["-o", "StrictHostKeyChecking=no", "-o", "UserKnownHostsFile=/dev/null"]
        return options

    def ssh_argv(self, argv: Sequence[str]) -> List[str]:
        """
        Full local argv for running argv on the host.

        ssh joins remote arguments with spaces for the remote shell, so each
        one is quoted individually.
        """
        return ["ssh", *self.transport_options(), "--", self.destination, shlex.join(argv)]

    def scp_argv(self, source: Path) -> List[str]:
        return ["scp", "-q", *self.transport_options(), "--", str(source), f"{self.destination}:{self.temp_path}"]

    # Pipeline stages

    async def check_connectivity(self) -> None:
        """Trivial round trip. Raises ConnectivityError."""
        outcome = await self.run(["echo", "ok"], stage="connectivity")
        if not outcome.ok or outcome.stdout.strip() != "ok":
            raise ConnectivityError(self.hostname, self._detail(outcome), stage="connectivity")

    async def copy_artifact(self, source: Path) -> None:
        """Copy the artifact to this executor's temporary path. Raises TransferError."""
        outcome = await self._exec(self.scp_argv(source), stage="copy")
        if not outcome.ok:
            if outcome.exit_code == SSH_CONNECTION_ERROR:
                raise ConnectivityError(self.hostname, self._detail(outcome), stage="copy")
            raise TransferError(self.hostname, self._detail(outcome), stage="copy")

    async def remote_checksum(self) -> Optional[str]:
        outcome = await self.run(ChecksumManager.remote_command(self.temp_path), stage="checksum")
        if not outcome.ok:
            await self.remove_artifact()
            raise ExecutionError(self.hostname, self._detail(outcome), stage="checksum")
        return ChecksumManager.parse_remote(outcome.stdout)

    async def verify_checksum(self, expected: str) -> str:
        """
        Compare the remote copy's checksum with the expected one.

        On mismatch the remote copy is removed and IntegrityError is raised.
        """
        actual = await self.remote_checksum()
        if not ChecksumManager.matches(expected, actual):
            await self.remove_artifact()
            raise IntegrityError(
                self.hostname, f"expected {expected}, got {actual or 'nothing'}", stage="checksum"
            )
        return actual

    async def install(
        self, install_path: str, service_name: str, miner_binary_path: str, settle_delay: int = 2
    ) -> CommandOutcome:
        """Run the install script. Raises ExecutionError on non-zero exit."""
        argv = ["bash", "-s", "--", self.temp_path, install_path, service_name, miner_binary_path, str(settle_delay)]
        outcome = await self.run(argv, stdin=INSTALL_SCRIPT.encode(), stage="install")
        if not outcome.ok:
            if outcome.exit_code == SSH_CONNECTION_ERROR:
                raise ConnectivityError(self.hostname, self._detail(outcome), stage="install")
            raise ExecutionError(self.hostname, self._detail(outcome), stage="install")
        return outcome

    async def verify_service(self, service_name: str) -> None:
        """Independent is-active check. Raises ServiceVerificationError."""
        outcome = await self.run(["sudo", "-n", "systemctl", "is-active", service_name], stage="verify")
        if not outcome.ok or outcome.stdout.strip() != "active":
            state = outcome.stdout.strip() or self._detail(outcome)
            raise ServiceVerificationError(self.hostname, f"{service_name} is {state}", stage="verify")

    async def remove_artifact(self) -> None:
        try:
            await self.run(["rm", "-f", self.temp_path], stage="cleanup")
        except Exception as e:
            logger.warning(f"[{self.hostname}] Could not remove {self.temp_path}: {e}")

    # Process plumbing

    async def run(self, argv: Sequence[str], stdin: Optional[bytes] = None, stage: str = "command") -> CommandOutcome:
        """Run argv on the host."""
        return await self._exec(self.ssh_argv(argv), stdin=stdin, stage=stage)

    async def _exec(self, cmd: List[str], stdin: Optional[bytes] = None, stage: str = "command") -> CommandOutcome:
        """
        Run a local process with a hard timeout and capped output capture.

        Returns:
            (stdout, stderr, exit_code) of the process

        Raises:
            StageTimeoutError: The process outlived command_timeout and was killed
            ConnectivityError: The transport binary could not be started
        """
        if self.verbose:
            logger.info(f"[{datetime.now().strftime('%H:%M:%S')}] Executing: {' '.join(cmd)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ConnectivityError(self.hostname, f"could not start {cmd[0]}: {e}", stage=stage)

        try:
            stdout, stderr, _ = await asyncio.wait_for(
                asyncio.gather(
                    self._read_capped(process.stdout),
                    self._read_capped(process.stderr),
                    self._feed(process, stdin),
                ),
                timeout=self.command_timeout,
            )
            exit_code = await process.wait()
        except asyncio.TimeoutError:
            await self._kill(process)
            raise StageTimeoutError(self.hostname, f"{stage} exceeded {self.command_timeout}s", stage=stage)
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        return CommandOutcome(stdout, stderr, exit_code)

    async def _read_capped(self, stream: asyncio.StreamReader) -> str:
        # Keep reading past the cap so the child never blocks on a full pipe
        kept = bytearray()
        dropped = 0
        while True:
            chunk = await stream.read(READ_CHUNK)
            if not chunk:
                break
            room = self.output_limit - len(kept)
            if room > 0:
                kept += chunk[:room]
            dropped += max(len(chunk) - max(room, 0), 0)
        return truncate_output(bytes(kept), self.output_limit, dropped)

    @staticmethod
    async def _feed(process: asyncio.subprocess.Process, data: Optional[bytes]) -> None:
        if data is None or process.stdin is None:
            return
        try:
            process.stdin.write(data)
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            pass
        finally:
            process.stdin.close()

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                return
            await asyncio.shield(process.wait())

    @staticmethod
    def _detail(outcome: CommandOutcome) -> str:
        detail = outcome.stderr.strip() or outcome.stdout.strip()
        lines = detail.splitlines()
        tail = lines[-1] if lines else ""
        return f"exit {outcome.exit_code}" + (f": {tail}" if tail else "")
