"""
Hostname validation for every value that reaches a remote-facing call.

Only RFC 952/1123 style DNS names pass. Shell metacharacters, whitespace,
path separators and traversal sequences can never match the label grammar.
"""

import re
from typing import Any, Iterable, List

from minerfleet.exceptions import ValidationError

# Alphanumeric start and end, alphanumeric or hyphen inside, 63 chars max
LABEL_REGEX = re.compile(r"\A[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\Z")
MAX_HOSTNAME_LENGTH = 253


class HostValidator:
    """Strict DNS-label hostname grammar."""

    @staticmethod
    def is_valid(hostname: Any) -> bool:
        if not isinstance(hostname, str) or not hostname:
            return False
        if len(hostname) > MAX_HOSTNAME_LENGTH:
            return False

        labels = hostname.split(".")
        return all(LABEL_REGEX.match(label) for label in labels)

    @classmethod
    def validate(cls, hostname: Any, source: str = "") -> str:
        """
        Return the hostname unchanged if valid.

        Raises:
            ValidationError: If the hostname fails the grammar
        """
        if not cls.is_valid(hostname):
            where = f" in {source}" if source else ""
            raise ValidationError(f"Invalid hostname{where}: {hostname!r}")
        return hostname

    @classmethod
    def validate_all(cls, hostnames: Iterable[Any], source: str = "") -> List[str]:
        return [cls.validate(h, source) for h in hostnames]
