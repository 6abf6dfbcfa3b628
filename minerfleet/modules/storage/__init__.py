"""
Storage Module - Black Box Interface

Purpose: Durable command mailbox and process-state tables
Interface: replace_pending_command(), oldest_pending_command(), claim_command(),
           complete_command(), fail_command(), upsert_process_state()
Hidden: SQLite specifics, locking, row serialization

Can be replaced with any transactional store without affecting other modules.
"""

from .store import MinerStore, utcnow

__all__ = ["MinerStore", "utcnow"]
