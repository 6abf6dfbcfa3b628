"""
Fleet descriptor loading.

Hosts come from a YAML deploy file, addressed by a nested key path
(servers -> web -> hosts by default). Every failure here happens before any
network action.
"""

import logging
from pathlib import Path
from typing import Any, List, Sequence, Union

import yaml

from minerfleet.exceptions import ConfigurationError
from minerfleet.modules.fleet.host_validator import HostValidator

logger = logging.getLogger("minerfleet.fleet.config")

DEFAULT_KEY_PATH = ("servers", "web", "hosts")


def load_hosts(
    config_path: Union[str, Path], key_path: Sequence[str] = DEFAULT_KEY_PATH
) -> List[str]:
    """
    Read and validate the host list.

    Args:
        config_path: Path to the YAML descriptor
        key_path: Nested keys leading to the host list

    Returns:
        Validated hostnames in file order, duplicates removed

    Raises:
        ConfigurationError: Missing file, malformed YAML, missing or empty list
        ValidationError: A listed hostname fails validation
    """
    config_path = Path(config_path)
    try:
        with open(config_path, "r") as f:
            config = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"Config file not found: {config_path}")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in config file: {e}")

    hosts = _dig(config, key_path)
    if not hosts or not isinstance(hosts, list):
        raise ConfigurationError(f"No hosts found in config at {'.'.join(key_path)}: {config_path}")

    names = []
    for entry in hosts:
        # Kamal allows "- host: [tags]" mappings alongside plain names
        if isinstance(entry, dict) and len(entry) == 1:
            entry = next(iter(entry))
        HostValidator.validate(entry, source="config")
        if entry not in names:
            names.append(entry)

    logger.debug(f"Loaded {len(names)} host(s) from {config_path}")
    return names


def _dig(data: Any, key_path: Sequence[str]) -> Any:
    for key in key_path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data
