"""
Artifact content hashes, computed locally and on remote hosts.
"""

import hashlib
import logging
import re
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger("minerfleet.fleet.checksum")

CHUNK_SIZE = 1024 * 1024
SHA256_HEX = re.compile(r"\A[0-9a-f]{64}\Z")


class ChecksumManager:
    """SHA-256 helpers for the agent artifact."""

    @staticmethod
    def compute(path: Union[str, Path]) -> str:
        """Hex SHA-256 of a local file, read in chunks."""
        digest = hashlib.sha256()
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
                digest.update(chunk)
        return digest.hexdigest()

    @staticmethod
    def remote_command(remote_path: str) -> list:
        """Argument vector that prints the checksum of a file on a remote host."""
        return ["sha256sum", remote_path]

    @staticmethod
    def parse_remote(output: str) -> Optional[str]:
        """
        Extract the digest from sha256sum output ("<hex>  <path>").

        Returns:
            Lowercase hex digest, or None if the output is not a digest line
        """
        first = output.strip().split(maxsplit=1)
        if not first:
            return None
        digest = first[0].lower().lstrip("\\")
        return digest if SHA256_HEX.match(digest) else None

    @staticmethod
    def matches(expected: str, actual: Optional[str]) -> bool:
        return actual is not None and expected.lower() == actual.lower()
