#!/usr/bin/env python3
"""
Durable store for the command mailbox and observed process state.

The commands table carries intent from the control plane to host agents.
The process_state table carries what agents observe back to the control plane.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Iterator, List, Optional, Sequence

from minerfleet.modules.api.models import (
    ACTIVE_STATUSES,
    ATTENTION_STATUSES,
    SUPERSEDED_MESSAGE,
    Command,
    CommandStatus,
    ProcessState,
    ProcessStatus,
)

logger = logging.getLogger("minerfleet.store")

OPEN_STATUSES = tuple(s.value for s in CommandStatus if not s.is_terminal)


def utcnow() -> str:
    """Current UTC time as the ISO string stored in every timestamp column."""
    return datetime.now(UTC).isoformat()


class MinerStore:
    """sqlite3-backed command and process-state tables."""

    def __init__(self, db_path: str = "/var/lib/minerfleet/minerfleet.sqlite3", busy_timeout: float = 30.0):
        """
        Initialize the store.

        Args:
            db_path: Path to SQLite database, or ":memory:"
            busy_timeout: Seconds to wait for another writer's lock
        """
        self.db_path = db_path
        self.busy_timeout = busy_timeout

        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = None

        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema."""
        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

            self._conn = sqlite3.connect(
                self.db_path,
                timeout=self.busy_timeout,
                check_same_thread=False,
                isolation_level=None,  # Autocommit mode, transactions are explicit
            )
            self._conn.row_factory = sqlite3.Row

            if self.db_path != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL")
                self._conn.execute("PRAGMA synchronous=NORMAL")

            self._create_tables()

            logger.info(f"Database initialized at {self.db_path}")

        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

    def _create_tables(self) -> None:
        """Create database tables."""
        with self._lock:
            cursor = self._conn.cursor()

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS commands (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    action TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    reason TEXT,
                    result TEXT,
                    error_message TEXT,
                    hostname TEXT,
                    processed_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_commands_status_created
                ON commands(status, created_at)
            """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_commands_hostname_status
                ON commands(hostname, status)
            """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS process_state (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    hostname TEXT NOT NULL UNIQUE,
                    worker_id TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'stopped',
                    pid INTEGER,
                    hashrate REAL,
                    restart_count INTEGER NOT NULL DEFAULT 0,
                    error_count INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    last_health_check_at TEXT,
                    accepted_shares INTEGER,
                    rejected_shares INTEGER,
                    started_at TEXT,
                    stopped_at TEXT,
                    health_data TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """
            )

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """
        Run a block inside one write transaction.

        BEGIN IMMEDIATE takes the database write lock up front, so concurrent
        writers in other processes queue behind it instead of interleaving.
        """
        with self._lock:
            cursor = self._conn.cursor()
            cursor.execute("BEGIN IMMEDIATE")
            try:
                yield cursor
            except BaseException:
                cursor.execute("ROLLBACK")
                raise
            else:
                cursor.execute("COMMIT")

    # ---------------- Commands ----------------

    def replace_pending_command(
        self, action: str, reason: Optional[str] = None, hostname: Optional[str] = None
    ) -> Command:
        """
        Supersede every pending command and insert a new pending one, atomically.

        Args:
            action: Requested action
            reason: Why the command was issued
            hostname: Queue partition, None for the shared queue

        Returns:
            The newly inserted command
        """
        now = utcnow()
        with self.transaction() as cursor:
            cursor.execute(
                """
                UPDATE commands
                SET status = 'failed',
                    error_message = ?,
                    reason = ? || CASE WHEN reason IS NULL THEN '' ELSE ' (was: ' || reason || ')' END,
                    updated_at = ?
                WHERE status = 'pending' AND hostname IS ?
            """,
                (SUPERSEDED_MESSAGE, SUPERSEDED_MESSAGE, now, hostname),
            )
            superseded = cursor.rowcount

            cursor.execute(
                """
                INSERT INTO commands (action, status, reason, hostname, created_at, updated_at)
                VALUES (?, 'pending', ?, ?, ?, ?)
            """,
                (action, reason, hostname, now, now),
            )
            command_id = cursor.lastrowid

        if superseded:
            logger.info(f"Superseded {superseded} pending command(s) with command {command_id}")

        return self.get_command(command_id)

    def get_command(self, command_id: int) -> Optional[Command]:
        """Get a command by id."""
        with self._lock:
            row = self._conn.execute("SELECT * FROM commands WHERE id = ?", (command_id,)).fetchone()
        return Command(**dict(row)) if row else None

    def oldest_pending_command(self, hostname: Optional[str] = None) -> Optional[Command]:
        """Get the oldest pending command in a partition (FIFO by creation time)."""
        with self._lock:
            row = self._conn.execute(
                """
                SELECT * FROM commands
                WHERE status = 'pending' AND hostname IS ?
                ORDER BY created_at ASC, id ASC
                LIMIT 1
            """,
                (hostname,),
            ).fetchone()
        return Command(**dict(row)) if row else None

    def claim_command(self, command_id: int) -> bool:
        """
        Move a pending command to processing.

        Returns:
            False if the command is no longer pending (superseded meanwhile)
        """
        now = utcnow()
        with self.transaction() as cursor:
            cursor.execute(
                """
                UPDATE commands
                SET status = 'processing', processed_at = ?, updated_at = ?
                WHERE id = ? AND status = 'pending'
            """,
                (now, now, command_id),
            )
            return cursor.rowcount == 1

    def complete_command(self, command_id: int, result: Optional[str] = None) -> bool:
        """Mark a non-terminal command completed. Terminal rows are left untouched."""
        return self._finish_command(command_id, CommandStatus.COMPLETED, result=result)

    def fail_command(self, command_id: int, error_message: str) -> bool:
        """Mark a non-terminal command failed. Terminal rows are left untouched."""
        return self._finish_command(command_id, CommandStatus.FAILED, error_message=error_message)

    def _finish_command(
        self,
        command_id: int,
        status: CommandStatus,
        result: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        now = utcnow()
        with self.transaction() as cursor:
            cursor.execute(
                f"""
                UPDATE commands
                SET status = ?, result = ?, error_message = ?, updated_at = ?
                WHERE id = ? AND status IN ({",".join("?" for _ in OPEN_STATUSES)})
            """,
                (status.value, result, error_message, now, command_id, *OPEN_STATUSES),
            )
            finished = cursor.rowcount == 1

        if not finished:
            logger.warning(f"Command {command_id} already terminal, not marking {status.value}")
        return finished

    def list_commands(
        self,
        status: Optional[CommandStatus] = None,
        since: Optional[timedelta] = None,
        limit: int = 100,
    ) -> List[Command]:
        """
        List commands, newest first.

        Args:
            status: Only commands in this status
            since: Only commands created within this window
            limit: Maximum rows returned
        """
        clauses = []
        params: list = []
        if status is not None:
            clauses.append("status = ?")
            params.append(CommandStatus(status).value)
        if since is not None:
            clauses.append("created_at >= ?")
            params.append((datetime.now(UTC) - since).isoformat())

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            rows = self._conn.execute(
                f"SELECT * FROM commands {where} ORDER BY created_at DESC, id DESC LIMIT ?",
                (*params, limit),
            ).fetchall()
        return [Command(**dict(row)) for row in rows]

    def count_open_commands(self, hostname: Optional[str] = None) -> int:
        """Number of pending or processing commands in a partition."""
        with self._lock:
            row = self._conn.execute(
                f"""
                SELECT COUNT(*) AS c FROM commands
                WHERE hostname IS ? AND status IN ({",".join("?" for _ in OPEN_STATUSES)})
            """,
                (hostname, *OPEN_STATUSES),
            ).fetchone()
        return row["c"]

    # ---------------- Process state ----------------

    def get_process_state(self, hostname: str) -> Optional[ProcessState]:
        """Get the stored state for a host."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM process_state WHERE hostname = ?", (hostname,)
            ).fetchone()
        if not row:
            return None
        data = dict(row)
        data.pop("id", None)
        return ProcessState(**data)

    def process_state_for(self, hostname: str) -> ProcessState:
        """Stored state for a host, or the default stopped state if none exists."""
        return self.get_process_state(hostname) or ProcessState.default_for(hostname)

    def upsert_process_state(self, state: ProcessState) -> ProcessState:
        """Insert or replace the row for state.hostname."""
        now = utcnow()
        values = state.model_dump(mode="json", exclude={"created_at", "updated_at"})
        columns = list(values.keys())

        with self.transaction() as cursor:
            cursor.execute(
                f"""
                INSERT INTO process_state ({", ".join(columns)}, created_at, updated_at)
                VALUES ({", ".join("?" for _ in columns)}, ?, ?)
                ON CONFLICT(hostname) DO UPDATE SET
                    {", ".join(f"{c} = excluded.{c}" for c in columns if c != "hostname")},
                    updated_at = excluded.updated_at
            """,
                (*values.values(), now, now),
            )

        return self.get_process_state(state.hostname)

    def list_process_states(self, statuses: Optional[Sequence[ProcessStatus]] = None) -> List[ProcessState]:
        """List process states ordered by hostname, optionally filtered by status."""
        query = "SELECT * FROM process_state"
        params: list = []
        if statuses:
            query += f" WHERE status IN ({','.join('?' for _ in statuses)})"
            params.extend(ProcessStatus(s).value for s in statuses)
        query += " ORDER BY hostname"

        with self._lock:
            rows = self._conn.execute(query, params).fetchall()

        states = []
        for row in rows:
            data = dict(row)
            data.pop("id", None)
            states.append(ProcessState(**data))
        return states

    def active_process_states(self) -> List[ProcessState]:
        return self.list_process_states(ACTIVE_STATUSES)

    def process_states_needing_attention(self) -> List[ProcessState]:
        return self.list_process_states(ATTENTION_STATUSES)

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None
