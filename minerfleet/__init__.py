"""
minerfleet - Mining Fleet Coordination

Coordinates mining worker processes on hosts the control plane cannot reach
directly.

Architecture:
- Each module is self-contained with clear interfaces
- Modules communicate only through the shared store or defined interfaces
- The control plane never talks to an agent; it writes intent to the store

Modules:
- api: Shared data models
- storage: Durable command and process-state tables
- queue: Command dispatch (issue, claim, complete, fail)
- executor: Host-resident agent (service manager, miner probe, poll loop)
- fleet: Fleet update coordinator (validation, checksums, SSH, rollout)
"""

__version__ = "1.0.0"
