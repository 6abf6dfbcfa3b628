"""
Config Module - Black Box Interface

Purpose: Provide agent and coordinator settings
Interface: EnvConfigProvider.get_agent_config(), get_update_config()
Hidden: Environment variable names and defaults
"""

from .provider import AgentConfig, ConfigProvider, EnvConfigProvider, UpdateConfig

__all__ = ["AgentConfig", "ConfigProvider", "EnvConfigProvider", "UpdateConfig"]
