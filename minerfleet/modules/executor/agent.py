#!/usr/bin/env python3
"""
Mining Agent - host-resident command executor and health monitor.

The agent never accepts inbound connections. Every cycle it polls the shared
store for the oldest pending command, executes it against the local service
manager, then checks the miner's health and records what it sees. When the
miner looks broken it issues a restart command through the same queue the
control plane uses.
"""

import json
import logging
import threading
import time
from typing import Callable, Dict, Optional

from minerfleet.config.provider import AgentConfig
from minerfleet.exceptions import UnknownActionError
from minerfleet.modules.api.models import (
    Command,
    CommandAction,
    CommandOutcome,
    MinerSummary,
    ProcessState,
    ProcessStatus,
)
from minerfleet.modules.executor.miner_api import MinerApiClient, MinerApiError
from minerfleet.modules.executor import service_manager
from minerfleet.modules.executor.service_manager import ServiceManager
from minerfleet.modules.queue import CommandQueue
from minerfleet.modules.storage import MinerStore, utcnow

logger = logging.getLogger("minerfleet.agent")

ZERO_HASHRATE = "Zero hashrate detected"
SERVICE_FAILED = "Service manager reports unit failed"


class MiningAgent:
    """Polls the command mailbox and keeps the mining service healthy."""

    def __init__(
        self,
        store: MinerStore,
        service: ServiceManager,
        miner_api: MinerApiClient,
        hostname: str,
        worker_id: Optional[str] = None,
        queue_hostname: Optional[str] = None,
        poll_interval: float = 10.0,
    ):
        """
        Args:
            store: Durable store shared with the control plane
            service: Local service manager for the mining unit
            miner_api: Loopback status probe
            hostname: Key of this host's process_state row
            worker_id: Miner worker id, defaults to "<hostname>-production"
            queue_hostname: Command queue partition, None for the shared queue
            poll_interval: Seconds between cycle starts
        """
        self.store = store
        self.service = service
        self.miner_api = miner_api
        self.hostname = hostname
        self.worker_id = worker_id or f"{hostname}-production"
        self.queue = CommandQueue(store, hostname=queue_hostname)
        self.poll_interval = poll_interval

        self._handlers: Dict[CommandAction, Callable[[], CommandOutcome]] = {
            CommandAction.START: self._start,
            CommandAction.STOP: self._stop,
            CommandAction.RESTART: self._restart,
        }

    @classmethod
    def from_config(cls, config: AgentConfig) -> "MiningAgent":
        """Build an agent and its collaborators from configuration."""
        return cls(
            store=MinerStore(config.db_path),
            service=ServiceManager(
                config.service_name, use_sudo=config.use_sudo, timeout=config.command_timeout
            ),
            miner_api=MinerApiClient(
                config.miner_api_url, token=config.miner_api_token, timeout=config.probe_timeout
            ),
            hostname=config.hostname,
            worker_id=config.worker_id,
            queue_hostname=config.queue_hostname,
            poll_interval=config.poll_interval,
        )

    def run(self, stop_event: Optional[threading.Event] = None, max_cycles: Optional[int] = None) -> None:
        """
        Main agent loop.

        Cycles start every poll_interval seconds and never overlap; a slow cycle
        delays the next one instead of stacking up behind it.
        """
        stop_event = stop_event or threading.Event()
        logger.info(
            f"Agent started for {self.hostname} (service: {self.service.service_name}, "
            f"interval: {self.poll_interval}s)"
        )

        cycles = 0
        while not stop_event.is_set():
            started = time.monotonic()
            self.run_cycle()

            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break

            remaining = self.poll_interval - (time.monotonic() - started)
            if remaining > 0:
                stop_event.wait(remaining)

        logger.info("Agent stopped")

    def run_cycle(self) -> None:
        """One poll followed by one health check. Never raises."""
        try:
            self.poll()
        except Exception as e:
            logger.exception(f"Error polling commands: {e}")

        try:
            self.health_check()
        except Exception as e:
            logger.exception(f"Error during health check: {e}")

    def close(self) -> None:
        self.miner_api.close()
        self.store.close()

    # Command processing

    def poll(self) -> Optional[Command]:
        """
        Execute the oldest pending command, if any.

        Returns:
            The command as stored after execution, or None if nothing ran
        """
        command = self.queue.next_pending()
        if command is None:
            return None

        if not self.queue.claim(command):
            logger.info(f"Command {command.id} was superseded before it could be claimed")
            return None

        self.process(command)
        return self.store.get_command(command.id)

    def process(self, command: Command) -> None:
        """
        Execute one command and write its terminal status.

        Unknown actions and any exception raised while executing are recorded
        on the command as failed. Nothing propagates out of this call.
        """
        logger.info(f"Processing command: {command.action} (ID: {command.id})")

        try:
            try:
                action = CommandAction.parse(command.action)
                outcome = self._handlers[action]()
            except UnknownActionError as e:
                self.queue.fail(command, str(e))
                logger.error(f"Command failed: {command.action} - {e}")
                return
            except Exception as e:
                message = str(e) or e.__class__.__name__
                self.queue.fail(command, message)
                self._record_error(message)
                logger.error(f"Command error: {message}")
                return

            if outcome.ok:
                result = outcome.stdout.strip() or f"{action.value} {self.service.service_name}: OK"
                self.queue.complete(command, result)
                logger.info(f"Command completed: {action.value}")
            else:
                error = outcome.stderr.strip() or f"{action.value} exited with status {outcome.exit_code}"
                self.queue.fail(command, error)
                logger.error(f"Command failed: {action.value} - {error}")

        except Exception as e:
            # Store unavailable; the row stays processing until an operator intervenes
            logger.exception(f"Could not record outcome of command {command.id}: {e}")

    def _start(self) -> CommandOutcome:
        self._update_state(status=ProcessStatus.STARTING)
        outcome = self.service.start()
        if outcome.ok:
            self._update_state(
                status=ProcessStatus.RUNNING, started_at=utcnow(), pid=self.service.main_pid()
            )
        else:
            self._record_failure(outcome, "start")
        return outcome

    def _stop(self) -> CommandOutcome:
        self._update_state(status=ProcessStatus.STOPPING)
        outcome = self.service.stop()
        if outcome.ok:
            self._update_state(
                status=ProcessStatus.STOPPED, stopped_at=utcnow(), pid=None, hashrate=None
            )
        else:
            self._record_failure(outcome, "stop")
        return outcome

    def _restart(self) -> CommandOutcome:
        self._update_state(status=ProcessStatus.RESTARTING)
        outcome = self.service.restart()
        if outcome.ok:
            self._update_state(
                status=ProcessStatus.RUNNING, started_at=utcnow(), pid=self.service.main_pid()
            )
        else:
            self._record_failure(outcome, "restart")
        return outcome

    # Health checking

    def health_check(self) -> ProcessState:
        """
        Observe the miner, persist its state and remediate if it is broken.

        Signals: service manager state, loopback status probe, hashrate.
        A failed unit, an unreachable probe or a zero hashrate on an active
        unit issues a restart command immediately.
        """
        unit_state = self.service.is_active()
        summary: Optional[MinerSummary] = None
        trigger: Optional[str] = None
        changes: Dict = {"last_health_check_at": utcnow()}

        if unit_state == service_manager.ACTIVE:
            try:
                summary = self.miner_api.summary()
            except MinerApiError as e:
                trigger = str(e)
                status = ProcessStatus.UNHEALTHY
            else:
                if summary.hashrate is None:
                    status = ProcessStatus.STARTING
                elif summary.hashrate <= 0:
                    trigger = ZERO_HASHRATE
                    status = ProcessStatus.UNHEALTHY
                else:
                    status = ProcessStatus.RUNNING
            changes["pid"] = self.service.main_pid()
        elif unit_state == service_manager.FAILED:
            trigger = SERVICE_FAILED
            status = ProcessStatus.CRASHED
            changes["pid"] = None
        elif unit_state == service_manager.ACTIVATING:
            status = ProcessStatus.STARTING
        elif unit_state == service_manager.DEACTIVATING:
            status = ProcessStatus.STOPPING
        elif unit_state == service_manager.INACTIVE:
            status = ProcessStatus.STOPPED
            changes.update(pid=None, hashrate=None)
        else:
            logger.warning(f"Service manager state unknown for {self.service.service_name}: {unit_state}")
            status = self._current_state().status
            changes["last_error"] = f"Service manager returned unexpected state: {unit_state}"

        changes["status"] = status
        if summary is not None:
            changes.update(
                hashrate=summary.hashrate,
                accepted_shares=summary.accepted_shares,
                rejected_shares=summary.rejected_shares,
                health_data=json.dumps(summary.raw),
            )

        if trigger:
            current = self._current_state()
            changes.update(error_count=current.error_count + 1, last_error=trigger)

        # The observation is stored even if the restart cannot be issued
        state = self._update_state(**changes)
        if not trigger:
            logger.debug(f"Health check on {self.hostname}: {status.value}")
            return state

        logger.warning(f"Health check failed on {self.hostname}: {trigger}; issuing restart")
        self.queue.restart_mining(reason=trigger)
        return self._update_state(restart_count=state.restart_count + 1)

    # State helpers

    def _current_state(self) -> ProcessState:
        state = self.store.get_process_state(self.hostname)
        if state is None:
            state = ProcessState(hostname=self.hostname, worker_id=self.worker_id)
        return state

    def _update_state(self, **changes) -> ProcessState:
        data = self._current_state().model_dump()
        data.update(changes)
        return self.store.upsert_process_state(ProcessState.model_validate(data))

    def _record_failure(self, outcome: CommandOutcome, action: str) -> None:
        error = outcome.stderr.strip() or f"{action} exited with status {outcome.exit_code}"
        self._record_error(error, status=ProcessStatus.CRASHED)

    def _record_error(self, message: str, status: Optional[ProcessStatus] = None) -> None:
        current = self._current_state()
        changes = {"last_error": message, "error_count": current.error_count + 1}
        if status is not None:
            changes["status"] = status
        self._update_state(**changes)
