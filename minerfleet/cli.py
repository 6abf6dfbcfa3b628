"""
Console entry points.

minerfleet-update   push the agent to the fleet (operator machine)
minerfleet-agent    run the host agent loop (each mining host)
minerctl            issue commands and inspect state in the shared store
"""

import asyncio
import logging
import signal
import sys
import threading
from datetime import timedelta
from pathlib import Path
from typing import List, Optional, Tuple

import click
from dotenv import find_dotenv, load_dotenv
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from minerfleet.config import EnvConfigProvider, UpdateConfig
from minerfleet.exceptions import ConfigurationError, MinerFleetError, PreflightError
from minerfleet.logging_config import configure_logging
from minerfleet.modules.api import CommandAction, CommandStatus
from minerfleet.modules.executor import MiningAgent
from minerfleet.modules.fleet import (
    ChecksumManager,
    HostValidator,
    InteractiveConfirmation,
    KnownHostsManager,
    UpdateCancelled,
    UpdateCoordinator,
    load_hosts,
)
from minerfleet.modules.queue import CommandQueue
from minerfleet.modules.storage import MinerStore

logger = logging.getLogger("minerfleet.cli")

CONTEXT_SETTINGS = {"help_option_names": ["-h", "--help"]}


def _invoke(command: click.Command, argv: Optional[List[str]], prog_name: str) -> int:
    """Run a click command so that usage errors exit 1 like every other failure."""
    try:
        code = command.main(args=argv, prog_name=prog_name, standalone_mode=False)
    except click.ClickException as e:
        e.show()
        return 1
    except click.Abort:
        click.echo("Aborted!", err=True)
        return 1
    except MinerFleetError as e:
        click.echo(f"ERROR: {e}", err=True)
        return 1
    return code if isinstance(code, int) else 0


def _error(console: Console, error: Exception) -> None:
    console.print(f"[bold red]ERROR:[/bold red] {escape(str(error))}", highlight=False)


def _load_env() -> None:
    """Load .env from the working directory upwards; real environment variables win."""
    load_dotenv(find_dotenv(usecwd=True))


# ---------------- minerfleet-update ----------------


@click.command(context_settings=CONTEXT_SETTINGS)
@click.option("--host", "hosts", multiple=True, metavar="NAME", help="Update only this host (repeatable)")
@click.option("--yes", is_flag=True, help="Skip the confirmation prompt")
@click.option("--dry-run", is_flag=True, help="Show what would be updated without connecting")
@click.option("--verbose", is_flag=True, help="Debug logging and echo every remote command")
@click.option("--add-hosts", is_flag=True, help="Scan host keys and add them to the registry")
@click.option("--list-hosts", is_flag=True, help="List hosts and whether their identity is registered")
@click.option("--show-checksum", is_flag=True, help="Print the artifact checksum and exit")
@click.option("--skip-host-verification", is_flag=True, help="Do not verify host identities (INSECURE)")
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="Fleet descriptor YAML")
@click.option("--source", "source_path", type=click.Path(path_type=Path), help="Agent artifact to deploy")
@click.pass_context
def update_command(
    ctx,
    hosts: Tuple[str, ...],
    yes: bool,
    dry_run: bool,
    verbose: bool,
    add_hosts: bool,
    list_hosts: bool,
    show_checksum: bool,
    skip_host_verification: bool,
    config_path: Optional[Path],
    source_path: Optional[Path],
):
    """Update the minerfleet agent on every mining host."""
    _load_env()
    configure_logging("DEBUG" if verbose else None)
    console = Console(highlight=False)

    try:
        config = EnvConfigProvider().get_update_config()
        if config_path:
            config.deploy_config_path = config_path
        if source_path:
            config.source_path = source_path

        if show_checksum:
            ctx.exit(_show_checksum(console, config))

        targets = _targets(config, hosts)
        registry = KnownHostsManager(config.known_hosts_path, keyscan_timeout=config.connect_timeout)

        if list_hosts:
            ctx.exit(_list_hosts(console, registry, targets))
        if add_hosts:
            ctx.exit(_add_hosts(console, registry, targets))

        coordinator = UpdateCoordinator(
            targets,
            config,
            console=console,
            confirmation=InteractiveConfirmation(),
            known_hosts=registry,
            dry_run=dry_run,
            yes=yes,
            skip_host_verification=skip_host_verification,
            verbose=verbose,
        )
        update = asyncio.run(coordinator.run())
        ctx.exit(update.exit_code)
    except UpdateCancelled:
        console.print("Aborted.")
        ctx.exit(1)
    except PreflightError as e:
        _error(console, e)
        for hostname in e.hosts:
            console.print(f"  minerfleet-update --add-hosts --host {hostname}", markup=False)
        ctx.exit(1)
    except MinerFleetError as e:
        _error(console, e)
        ctx.exit(1)


def _targets(config: UpdateConfig, hosts: Tuple[str, ...]) -> List[str]:
    if hosts:
        return HostValidator.validate_all(hosts, source="--host")
    return load_hosts(config.deploy_config_path, config.hosts_key_path)


def _show_checksum(console: Console, config: UpdateConfig) -> int:
    if not config.source_path.is_file():
        raise ConfigurationError(f"Source not found: {config.source_path}")
    console.print(f"{ChecksumManager.compute(config.source_path)}  {config.source_path}", markup=False)
    return 0


def _list_hosts(console: Console, registry: KnownHostsManager, targets: List[str]) -> int:
    table = Table(title=f"Hosts ({registry.path})")
    table.add_column("Host", style="cyan")
    table.add_column("Identity")
    for hostname in targets:
        known = registry.is_known(hostname)
        table.add_row(hostname, "[green]known[/green]" if known else "[yellow]unknown[/yellow]")
    console.print(table)
    return 0


def _add_hosts(console: Console, registry: KnownHostsManager, targets: List[str]) -> int:
    failed = 0
    for result in registry.add_hosts(targets):
        if result.error:
            failed += 1
            console.print(f"  [red]✗ {result.hostname}[/red] {escape(result.error)}")
        elif result.already_known:
            console.print(f"  [dim]- {result.hostname} already known[/dim]")
        else:
            console.print(f"  [green]✓ {result.hostname}[/green]")
            for fp in result.added:
                console.print(f"      {fp}", markup=False)
    if failed:
        console.print(f"\n{failed} host(s) could not be scanned")
    return 1 if failed else 0


def update_main(argv: Optional[List[str]] = None) -> None:
    sys.exit(_invoke(update_command, argv, "minerfleet-update"))


# ---------------- minerfleet-agent ----------------


@click.command(context_settings=CONTEXT_SETTINGS)
@click.option("--once", is_flag=True, help="Run a single poll and health check, then exit")
@click.option("--log-level", default=None, help="Override LOG_LEVEL")
@click.pass_context
def agent_command(ctx, once: bool, log_level: Optional[str]):
    """Run the mining host agent."""
    _load_env()
    configure_logging(log_level)

    try:
        config = EnvConfigProvider().get_agent_config()
        agent = MiningAgent.from_config(config)
    except MinerFleetError as e:
        logger.error(f"Agent failed to start: {e}")
        ctx.exit(1)

    stop_event = threading.Event()

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        stop_event.set()

    previous = {sig: signal.signal(sig, handle_signal) for sig in (signal.SIGTERM, signal.SIGINT)}

    try:
        agent.run(stop_event=stop_event, max_cycles=1 if once else None)
    finally:
        agent.close()
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def agent_main(argv: Optional[List[str]] = None) -> None:
    sys.exit(_invoke(agent_command, argv, "minerfleet-agent"))


# ---------------- minerctl ----------------


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option("--db", "db_path", default=None, help="Store path (default: MINERFLEET_DB_PATH)")
@click.option("--host", "hostname", default=None, help="Command queue partition, when agents scope by host")
@click.pass_context
def ctl(ctx, db_path: Optional[str], hostname: Optional[str]):
    """Inspect and command the mining fleet through the shared store."""
    _load_env()
    configure_logging()

    if hostname:
        HostValidator.validate(hostname, source="--host")
    store = MinerStore(db_path or EnvConfigProvider().get_agent_config().db_path)
    ctx.call_on_close(store.close)
    ctx.obj = CommandQueue(store, hostname=hostname)


@ctl.command("issue")
@click.argument("action", type=click.Choice([a.value for a in CommandAction]))
@click.option("--reason", default="manual", help="Recorded with the command")
@click.pass_obj
def issue_command(queue: CommandQueue, action: str, reason: str):
    """Issue a start, stop or restart command."""
    command = queue.issue(action, reason=reason)
    click.echo(f"Issued {command.action} command {command.id}")


@ctl.command("commands")
@click.option(
    "--status", type=click.Choice([s.value for s in CommandStatus]), default=None, help="Filter by status"
)
@click.option("--hours", type=int, default=1, show_default=True, help="How far back to look")
@click.pass_obj
def commands_command(queue: CommandQueue, status: Optional[str], hours: int):
    """List recent commands, newest first."""
    commands = queue.store.list_commands(
        status=CommandStatus(status) if status else None, since=timedelta(hours=hours)
    )

    table = Table(title="Commands")
    for column in ("ID", "Action", "Status", "Reason", "Result / Error", "Created"):
        table.add_column(column)
    for command in commands:
        table.add_row(
            str(command.id),
            command.action,
            command.status.value,
            command.reason or "",
            command.error_message or command.result or "",
            command.created_at.strftime("%Y-%m-%d %H:%M:%S") if command.created_at else "",
        )
    Console().print(table)


@ctl.command("status")
@click.pass_obj
def status_command(queue: CommandQueue):
    """Show the process state of every host."""
    states = queue.store.list_process_states()

    table = Table(title="Process State")
    for column in ("Host", "Status", "Hashrate", "Restarts", "Errors", "Health", "Last Error"):
        table.add_column(column)
    for state in states:
        if state.is_healthy():
            health = "[green]healthy[/green]"
        elif state.is_stale():
            health = "[yellow]stale[/yellow]"
        else:
            health = "[red]degraded[/red]"
        table.add_row(
            state.hostname,
            state.status.value,
            f"{state.hashrate:.1f} H/s" if state.hashrate is not None else "-",
            str(state.restart_count),
            str(state.error_count),
            health,
            state.last_error or "",
        )
    Console().print(table)


def ctl_main(argv: Optional[List[str]] = None) -> None:
    sys.exit(_invoke(ctl, argv, "minerctl"))
