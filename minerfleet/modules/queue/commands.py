import logging
from datetime import timedelta
from typing import List, Optional, Union

from minerfleet.modules.api.models import Command, CommandAction, CommandStatus
from minerfleet.modules.storage import MinerStore

logger = logging.getLogger("minerfleet.queue")


class CommandQueue:
    def __init__(self, store: MinerStore, hostname: Optional[str] = None):
        """
        Initialize command queue.

        Args:
            store: Durable store holding the commands table
            hostname: Queue partition; None addresses the single shared queue
        """
        self.store = store
        self.hostname = hostname

    def issue(self, action: Union[CommandAction, str], reason: Optional[str] = None) -> Command:
        """
        Record new intent for the agent.

        Args:
            action: start, stop or restart
            reason: Free text recorded on the command

        Returns:
            The new pending command

        Logic:
        1. Reject actions outside the known set
        2. In one transaction, mark every pending command failed (superseded)
        3. In the same transaction, insert the new pending command

        The store's transaction is the only mutual exclusion; concurrent callers
        serialize on its write lock, so at most one command is pending afterwards.
        """
        action = CommandAction.parse(action)

        command = self.store.replace_pending_command(action.value, reason, self.hostname)

        logger.info(f"Issued {action.value} command {command.id}" + (f": {reason}" if reason else ""))
        return command

    def start_mining(self, reason: str = "manual") -> Command:
        return self.issue(CommandAction.START, reason)

    def stop_mining(self, reason: str = "manual") -> Command:
        return self.issue(CommandAction.STOP, reason)

    def restart_mining(self, reason: str = "health_check_failed") -> Command:
        return self.issue(CommandAction.RESTART, reason)

    def next_pending(self) -> Optional[Command]:
        """Oldest pending command in this queue, or None."""
        return self.store.oldest_pending_command(self.hostname)

    def claim(self, command: Command) -> bool:
        """
        Mark a command processing before executing it.

        Returns:
            False if it was superseded between polling and claiming
        """
        return self.store.claim_command(command.id)

    def complete(self, command: Command, result: Optional[str] = None) -> bool:
        return self.store.complete_command(command.id, result)

    def fail(self, command: Command, error_message: str) -> bool:
        return self.store.fail_command(command.id, error_message)

    def recent(self, hours: int = 1) -> List[Command]:
        """Commands created within the last hours."""
        return self.store.list_commands(since=timedelta(hours=hours))

    def depth(self) -> int:
        """Number of pending or processing commands in this queue."""
        return self.store.count_open_commands(self.hostname)

    def pending(self) -> List[Command]:
        """Pending commands, newest first."""
        return [
            c
            for c in self.store.list_commands(status=CommandStatus.PENDING)
            if c.hostname == self.hostname
        ]
