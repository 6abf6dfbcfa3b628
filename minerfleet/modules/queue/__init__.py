"""
Queue Module - Black Box Interface

Purpose: Command dispatch between the control plane and host agents
Interface: issue(), next_pending(), claim(), complete(), fail()
Hidden: Supersede semantics, partitioning, storage transactions

Can be replaced with any transactional mailbox.
"""

from .commands import CommandQueue

__all__ = ["CommandQueue"]
