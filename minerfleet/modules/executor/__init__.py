"""
Executor Module - Black Box Interface

Purpose: Host-resident agent that executes mining commands and checks health
Interface: MiningAgent.poll(), process(), health_check(), run()
Hidden: systemctl invocation, miner status probe parsing, state transitions

Runs on each mining host and only ever connects outwards to the shared store.
"""

from .agent import MiningAgent
from .miner_api import MinerApiClient, MinerApiError
from .service_manager import ServiceManager

__all__ = ["MiningAgent", "MinerApiClient", "MinerApiError", "ServiceManager"]
