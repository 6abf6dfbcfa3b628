"""Configuration provider following Black Box Design principles."""
import os
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol, Tuple

from minerfleet.exceptions import ConfigurationError


@dataclass
class AgentConfig:
    """Host agent configuration."""
    db_path: str
    hostname: str
    worker_id: str
    service_name: str
    miner_api_url: str
    miner_api_token: Optional[str]
    poll_interval: float
    command_timeout: float
    probe_timeout: float
    use_sudo: bool
    scope_commands_to_host: bool

    @property
    def queue_hostname(self) -> Optional[str]:
        """Partition key for the command queue, None for the shared queue."""
        return self.hostname if self.scope_commands_to_host else None


@dataclass
class UpdateConfig:
    """Fleet update coordinator configuration."""
    deploy_config_path: Path
    hosts_key_path: Tuple[str, ...]
    source_path: Path
    install_path: str
    miner_binary_path: str
    service_name: str
    ssh_user: str
    known_hosts_path: Path
    max_concurrency: int
    host_timeout: float
    command_timeout: float
    connect_timeout: int
    output_limit: int
    settle_delay: int
    shutdown_grace: float


class ConfigProvider(Protocol):
    """Protocol for configuration providers."""

    def get_agent_config(self) -> AgentConfig:
        """Get host agent configuration."""
        ...

    def get_update_config(self) -> UpdateConfig:
        """Get update coordinator configuration."""
        ...


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_number(name: str, default: str, cast=float):
    raw = os.getenv(name, default)
    try:
        return cast(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


class EnvConfigProvider:
    """Environment-based configuration provider."""

    def get_agent_config(self) -> AgentConfig:
        """Get agent configuration from environment variables."""
        hostname = os.getenv("MINERFLEET_HOSTNAME") or socket.gethostname()

        return AgentConfig(
            db_path=os.getenv("MINERFLEET_DB_PATH", "/var/lib/minerfleet/minerfleet.sqlite3"),
            hostname=hostname,
            worker_id=os.getenv("MINERFLEET_WORKER_ID") or f"{hostname}-production",
            service_name=os.getenv("MINERFLEET_SERVICE", "xmrig"),
            miner_api_url=os.getenv("MINERFLEET_MINER_API_URL", "http://127.0.0.1:8080/1/summary"),
            miner_api_token=os.getenv("MINERFLEET_MINER_API_TOKEN") or None,
            poll_interval=_env_number("MINERFLEET_POLL_INTERVAL", "10"),
            command_timeout=_env_number("MINERFLEET_COMMAND_TIMEOUT", "60"),
            probe_timeout=_env_number("MINERFLEET_PROBE_TIMEOUT", "5"),
            use_sudo=_env_bool("MINERFLEET_USE_SUDO", "true"),
            scope_commands_to_host=_env_bool("MINERFLEET_SCOPE_COMMANDS", "false"),
        )

    def get_update_config(self) -> UpdateConfig:
        """Get update coordinator configuration from environment variables."""
        key_path = os.getenv("MINERFLEET_HOSTS_KEY", "servers.web.hosts")
        known_hosts = os.getenv("MINERFLEET_KNOWN_HOSTS") or str(
            Path.home() / ".config" / "minerfleet" / "known_hosts"
        )

        return UpdateConfig(
            deploy_config_path=Path(os.getenv("MINERFLEET_DEPLOY_CONFIG", "config/deploy.yml")),
            hosts_key_path=tuple(part for part in key_path.split(".") if part),
            source_path=Path(os.getenv("MINERFLEET_SOURCE", "dist/minerfleet-agent")),
            install_path=os.getenv("MINERFLEET_INSTALL_PATH", "/usr/local/bin/minerfleet-agent"),
            miner_binary_path=os.getenv("MINERFLEET_MINER_BINARY", "/usr/local/bin/xmrig"),
            service_name=os.getenv("MINERFLEET_AGENT_SERVICE", "minerfleet-agent"),
            ssh_user=os.getenv("MINERFLEET_SSH_USER", "deploy"),
            known_hosts_path=Path(known_hosts).expanduser(),
            max_concurrency=_env_number("MINERFLEET_MAX_CONCURRENCY", "10", int),
            host_timeout=_env_number("MINERFLEET_HOST_TIMEOUT", "300"),
            command_timeout=_env_number("MINERFLEET_COMMAND_TIMEOUT", "300"),
            connect_timeout=_env_number("MINERFLEET_CONNECT_TIMEOUT", "5", int),
            output_limit=_env_number("MINERFLEET_OUTPUT_LIMIT", str(100 * 1024), int),
            settle_delay=_env_number("MINERFLEET_SETTLE_DELAY", "2", int),
            shutdown_grace=_env_number("MINERFLEET_SHUTDOWN_GRACE", "10"),
        )
