"""
Fleet update coordinator.

Pushes the agent artifact to every host, verifies it, installs it and restarts
the managed service. Preflight failures abort the run before any host is
touched; per-host failures are recorded and never affect sibling hosts.
"""

import asyncio
import logging
import time
from typing import Callable, List, Optional, Sequence

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from minerfleet.config import UpdateConfig
from minerfleet.exceptions import MinerFleetError, PreflightError, StageTimeoutError
from minerfleet.modules.api.models import HostOutcome, HostResult, UpdateRun
from minerfleet.modules.fleet.checksum import ChecksumManager
from minerfleet.modules.fleet.confirmation import ConfirmationProvider, InteractiveConfirmation
from minerfleet.modules.fleet.host_validator import HostValidator
from minerfleet.modules.fleet.known_hosts import KnownHostsManager
from minerfleet.modules.fleet.ssh import SSHExecutor

logger = logging.getLogger("minerfleet.fleet.coordinator")

RETRY_COMMAND = "minerfleet-update --host {hostname} --yes"

ExecutorFactory = Callable[[str], SSHExecutor]


class UpdateCancelled(MinerFleetError):
    """The operator declined the confirmation prompt."""


class UpdateCoordinator:
    """Runs one update over a fixed set of hosts."""

    def __init__(
        self,
        hosts: Sequence[str],
        config: UpdateConfig,
        console: Optional[Console] = None,
        confirmation: Optional[ConfirmationProvider] = None,
        executor_factory: Optional[ExecutorFactory] = None,
        known_hosts: Optional[KnownHostsManager] = None,
        dry_run: bool = False,
        yes: bool = False,
        skip_host_verification: bool = False,
        verbose: bool = False,
    ):
        """
        Initialize the coordinator.

        Args:
            hosts: Target hostnames, validated here
            config: Update configuration
            console: Output console for progress and the summary
            confirmation: Gate consulted before any destructive action
            executor_factory: Builds the remote executor for a hostname
            known_hosts: Trusted host-identity registry
            dry_run: Report what would happen without any network I/O
            yes: Skip the confirmation gate
            skip_host_verification: Do not require registered host identities
            verbose: Echo every remote command
        """
        self.hosts: List[str] = []
        for hostname in HostValidator.validate_all(hosts):
            if hostname not in self.hosts:
                self.hosts.append(hostname)

        self.config = config
        self.console = console or Console()
        self.confirmation = confirmation or InteractiveConfirmation()
        self.executor_factory = executor_factory or self._default_executor
        self.known_hosts = known_hosts or KnownHostsManager(
            config.known_hosts_path, keyscan_timeout=config.connect_timeout
        )
        self.dry_run = dry_run
        self.yes = yes
        self.skip_host_verification = skip_host_verification
        self.verbose = verbose

    @property
    def concurrency(self) -> int:
        return max(1, min(len(self.hosts), self.config.max_concurrency))

    def _default_executor(self, hostname: str) -> SSHExecutor:
        return SSHExecutor(
            hostname,
            user=self.config.ssh_user,
            known_hosts_path=self.config.known_hosts_path,
            verify_host=not self.skip_host_verification,
            connect_timeout=self.config.connect_timeout,
            command_timeout=self.config.command_timeout,
            output_limit=self.config.output_limit,
            verbose=self.verbose,
        )

    # Preflight

    def preflight(self) -> str:
        """
        Checks performed once before any host is touched.

        Returns:
            Checksum of the source artifact

        Raises:
            PreflightError: Bad artifact or unverified host identities
        """
        source = self.config.source_path
        if source.is_symlink():
            raise PreflightError(f"Source is a symlink, refusing to deploy: {source}")
        if not source.exists():
            raise PreflightError(f"Source not found: {source}")
        if not source.is_file():
            raise PreflightError(f"Source is not a regular file: {source}")

        checksum = ChecksumManager.compute(source)
        logger.debug(f"Source checksum: {checksum}")

        if self.skip_host_verification:
            logger.warning("Host identity verification disabled; connections are INSECURE")
            self.console.print("[bold red]WARNING: host key verification is disabled (insecure)[/bold red]")
        else:
            unverified = self.known_hosts.unverified(self.hosts)
            if unverified:
                raise PreflightError(
                    f"Unverified host identities: {', '.join(unverified)}. "
                    f"Run 'minerfleet-update --add-hosts' first.",
                    hosts=unverified,
                )

        return checksum

    def confirm(self) -> bool:
        if self.dry_run or self.yes:
            return True
        return self.confirmation.confirm(
            self.hosts, f"Update {len(self.hosts)} host(s) and restart {self.config.service_name}?"
        )

    # Run

    async def run(self) -> UpdateRun:
        """
        Execute the whole update.

        Returns:
            UpdateRun with one HostResult per host, in host order

        Raises:
            PreflightError: Preflight failed, no host was touched
            UpdateCancelled: The confirmation gate said no
        """
        started = time.monotonic()
        self._print_header()

        checksum = self.preflight()
        self.console.print(f"Checksum: [dim]{checksum}[/dim]")

        if not self.confirm():
            raise UpdateCancelled("Update cancelled")

        update = UpdateRun(hosts=list(self.hosts), checksum=checksum, dry_run=self.dry_run)
        if self.dry_run:
            update.results = [self._dry_run_result(h) for h in self.hosts]
        else:
            update.results = await self._update_all(checksum)

        self._print_summary(update, time.monotonic() - started)
        return update

    def _dry_run_result(self, hostname: str) -> HostResult:
        message = f"[DRY RUN] Would update {hostname}"
        self.console.print(f"  {message}", markup=False)
        return HostResult(hostname=hostname, outcome=HostOutcome.SUCCESS, output=message)

    async def _update_all(self, checksum: str) -> List[HostResult]:
        semaphore = asyncio.Semaphore(self.concurrency)
        logger.info(f"Updating {len(self.hosts)} host(s), {self.concurrency} at a time")

        async def bounded(hostname: str) -> HostResult:
            async with semaphore:
                return await self._update_host(hostname, checksum)

        tasks = [asyncio.create_task(bounded(h), name=f"update-{h}") for h in self.hosts]

        # Results are only appended here, one at a time, as tasks finish
        results: List[HostResult] = []
        try:
            for finished in asyncio.as_completed(tasks):
                result = await finished
                results.append(result)
                self._print_result(result)
        except asyncio.CancelledError:
            await self._shutdown(tasks)
            raise

        order = {h: i for i, h in enumerate(self.hosts)}
        return sorted(results, key=lambda r: order[r.hostname])

    async def _shutdown(self, tasks: List[asyncio.Task]) -> None:
        pending = [t for t in tasks if not t.done()]
        if not pending:
            return
        logger.warning(f"Interrupted; waiting up to {self.config.shutdown_grace}s for {len(pending)} host(s)")
        _, still_running = await asyncio.wait(pending, timeout=self.config.shutdown_grace)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.wait(still_running)

    async def _update_host(self, hostname: str, checksum: str) -> HostResult:
        """Run one host's pipeline under its own timeout; never raises."""
        started = time.monotonic()
        outcome = HostOutcome.FAILURE
        reason = None
        output = ""

        try:
            output = await asyncio.wait_for(
                self._pipeline(hostname, checksum), timeout=self.config.host_timeout
            )
            outcome = HostOutcome.SUCCESS
        except StageTimeoutError as e:
            outcome, reason = HostOutcome.TIMEOUT, str(e)
        except asyncio.TimeoutError:
            outcome, reason = HostOutcome.TIMEOUT, f"Timed out after {self.config.host_timeout:g}s"
        except MinerFleetError as e:
            reason = str(e)
        except Exception as e:
            logger.exception(f"[{hostname}] Unexpected error")
            reason = f"Unexpected error: {e}"

        if reason:
            logger.error(f"[{hostname}] {reason}")
        return HostResult(
            hostname=hostname,
            outcome=outcome,
            reason=reason,
            elapsed_seconds=round(time.monotonic() - started, 2),
            output=output,
        )

    async def _pipeline(self, hostname: str, checksum: str) -> str:
        executor = self.executor_factory(hostname)
        config = self.config

        self._stage(hostname, "Checking connectivity")
        await executor.check_connectivity()

        self._stage(hostname, "Copying agent")
        await executor.copy_artifact(config.source_path)

        self._stage(hostname, "Verifying checksum")
        await executor.verify_checksum(checksum)

        self._stage(hostname, "Installing and restarting service")
        outcome = await executor.install(
            config.install_path, config.service_name, config.miner_binary_path, config.settle_delay
        )

        self._stage(hostname, "Verifying service")
        await executor.verify_service(config.service_name)
        return outcome.stdout

    # Output

    def retry_commands(self, update: UpdateRun) -> List[str]:
        return [RETRY_COMMAND.format(hostname=r.hostname) for r in update.failed]

    def _stage(self, hostname: str, message: str) -> None:
        self.console.print(f"  [cyan]{hostname}[/cyan] {message}...")

    def _print_result(self, result: HostResult) -> None:
        if result.succeeded:
            self.console.print(f"  [green]✓ {result.hostname}[/green] ({result.elapsed_seconds:.1f}s)")
        else:
            self.console.print(f"  [red]✗ {result.hostname}[/red] {escape(result.reason or '')}")
        if self.verbose and result.output:
            self.console.print(result.output, markup=False)

    def _print_header(self) -> None:
        mode = []
        if self.dry_run:
            mode.append("[yellow]DRY RUN[/yellow]")
        if self.skip_host_verification:
            mode.append("[red]INSECURE[/red]")
        self.console.print(
            Panel(
                f"Hosts: {', '.join(self.hosts)}\n"
                f"Source: {self.config.source_path}\n"
                f"Mode: {' '.join(mode) or 'live'}",
                title="Minerfleet Agent Update",
            )
        )

    def _print_summary(self, update: UpdateRun, elapsed: float) -> None:
        table = Table(title="Update Summary")
        table.add_column("Host", style="cyan")
        table.add_column("Result")
        table.add_column("Time", justify="right")
        table.add_column("Reason", style="dim")
        for result in update.results:
            status = "[green]✓[/green]" if result.succeeded else f"[red]✗ {result.outcome.value}[/red]"
            table.add_row(result.hostname, status, f"{result.elapsed_seconds:.1f}s", escape(result.reason or ""))

        self.console.print("\n")
        self.console.print(table)
        self.console.print(
            f"Successful: {len(update.succeeded)}  Failed: {len(update.failed)}  Total time: {elapsed:.1f}s"
        )

        retries = self.retry_commands(update)
        if retries:
            self.console.print("\n[yellow]Retry failed hosts:[/yellow]")
            for command in retries:
                self.console.print(f"  {command}", markup=False)
