"""
Registry of verified host identities.

A flat, append-only text file with one "<hostname> <key-material>" entry per
line. The same file is handed to ssh as its UserKnownHostsFile, so a host is
trusted by the transport exactly when it is listed here.
"""

import base64
import binascii
import hashlib
import logging
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from minerfleet.exceptions import ConnectivityError
from minerfleet.modules.fleet.host_validator import HostValidator

logger = logging.getLogger("minerfleet.fleet.known_hosts")

KEY_TYPES = "ed25519,ecdsa,rsa"


@dataclass
class ScanResult:
    """Keys discovered for one host by add_hosts()."""

    hostname: str
    added: List[str] = field(default_factory=list)
    already_known: bool = False
    error: Optional[str] = None


class KnownHostsManager:
    """Linear-scan lookups and append-only writes on the registry file."""

    def __init__(self, path: Path, keyscan_timeout: int = 5):
        self.path = Path(path)
        self.keyscan_timeout = keyscan_timeout

    def entries(self) -> List[Tuple[str, str]]:
        """All (hostname, key-material) pairs, in file order."""
        if not self.path.exists():
            return []

        entries = []
        with open(self.path, "r") as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith("#"):
                    continue
                parts = line.split(maxsplit=1)
                if len(parts) == 2:
                    entries.append((parts[0], parts[1]))
        return entries

    def is_known(self, hostname: str) -> bool:
        for known, _ in self.entries():
            if hostname in known.split(","):
                return True
        return False

    def unverified(self, hostnames: Iterable[str]) -> List[str]:
        """Hosts with no registry entry."""
        return [h for h in hostnames if not self.is_known(h)]

    def add(self, hostname: str, key_material: str) -> bool:
        """
        Append an entry unless the identical entry is already present.

        Returns:
            True if a line was written
        """
        HostValidator.validate(hostname)
        key_material = " ".join(key_material.split())
        if (hostname, key_material) in self.entries():
            return False

        self.path.parent.mkdir(parents=True, exist_ok=True)
        new_file = not self.path.exists()
        with open(self.path, "a") as f:
            f.write(f"{hostname} {key_material}\n")
        if new_file:
            os.chmod(self.path, 0o600)

        logger.info(f"Added {hostname} to {self.path} ({fingerprint(key_material)})")
        return True

    def scan(self, hostname: str) -> List[str]:
        """
        Fetch a host's public keys with ssh-keyscan.

        Returns:
            Key material strings ("<type> <base64>")

        Raises:
            ConnectivityError: If no key could be retrieved
        """
        HostValidator.validate(hostname)
        cmd = ["ssh-keyscan", "-T", str(self.keyscan_timeout), "-t", KEY_TYPES, hostname]
        logger.debug(f"Running: {' '.join(cmd)}")

        try:
            process = subprocess.run(
                cmd, capture_output=True, text=True, timeout=self.keyscan_timeout + 10
            )
        except subprocess.TimeoutExpired:
            raise ConnectivityError(hostname, "ssh-keyscan timed out", stage="keyscan")
        except OSError as e:
            raise ConnectivityError(hostname, str(e), stage="keyscan")

        keys = []
        for line in process.stdout.splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            parts = line.split()
            if len(parts) >= 3 and parts[0] == hostname:
                keys.append(f"{parts[1]} {parts[2]}")

        if not keys:
            detail = process.stderr.strip() or "no host keys returned"
            raise ConnectivityError(hostname, detail, stage="keyscan")
        return keys

    def add_hosts(self, hostnames: Iterable[str]) -> List[ScanResult]:
        """Scan and register every host not already in the registry."""
        results = []
        for hostname in hostnames:
            result = ScanResult(hostname=hostname)
            if self.is_known(hostname):
                result.already_known = True
                results.append(result)
                continue

            try:
                for key in self.scan(hostname):
                    if self.add(hostname, key):
                        result.added.append(fingerprint(key))
            except ConnectivityError as e:
                logger.error(f"Could not scan {hostname}: {e}")
                result.error = str(e)
            results.append(result)
        return results

    def fingerprints(self) -> Dict[str, List[str]]:
        """Registry contents as hostname -> fingerprints."""
        found: Dict[str, List[str]] = {}
        for hostname, key in self.entries():
            found.setdefault(hostname, []).append(fingerprint(key))
        return found


def fingerprint(key_material: str) -> str:
    """OpenSSH-style SHA256 fingerprint of "<type> <base64>" key material."""
    parts = key_material.split()
    if len(parts) < 2:
        return "invalid key"
    try:
        blob = base64.b64decode(parts[1], validate=True)
    except (binascii.Error, ValueError):
        return f"{parts[0]} invalid key"
    digest = base64.b64encode(hashlib.sha256(blob).digest()).decode().rstrip("=")
    return f"{parts[0]} SHA256:{digest}"
