"""
Loopback HTTP status probe for the mining process.

Understands the XMRig summary document (hashrate.total, connection, results)
and flat {hashrate, connection} payloads.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from minerfleet.exceptions import MinerFleetError
from minerfleet.modules.api.models import MinerSummary

logger = logging.getLogger("minerfleet.agent.miner_api")


class MinerApiError(MinerFleetError):
    """The miner status endpoint is unreachable or returned garbage."""


class MinerApiClient:
    """Synchronous client for the miner's loopback status endpoint."""

    def __init__(
        self,
        url: str = "http://127.0.0.1:8080/1/summary",
        token: Optional[str] = None,
        timeout: float = 5.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.url = url
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(headers=headers, timeout=timeout, transport=transport)

    def summary(self) -> MinerSummary:
        """
        Fetch and parse the current status report.

        Raises:
            MinerApiError: Connection refused, timeout, non-2xx or invalid JSON
        """
        try:
            response = self._client.get(self.url)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise MinerApiError(f"Miner API unreachable: {e}") from e
        except ValueError as e:
            raise MinerApiError(f"Miner API returned invalid JSON: {e}") from e

        if not isinstance(data, dict):
            raise MinerApiError("Miner API returned an unexpected document")

        return parse_summary(data)

    def close(self) -> None:
        self._client.close()


def parse_summary(data: Dict[str, Any]) -> MinerSummary:
    """Extract hashrate, connection state and share counts from a status document."""
    hashrate = _parse_hashrate(data.get("hashrate"))

    connection = data.get("connection")
    pool = None
    accepted = rejected = None
    if isinstance(connection, dict):
        pool = connection.get("pool") or None
        connected = bool(pool) and connection.get("uptime", 1) != 0
        accepted = connection.get("accepted")
        rejected = connection.get("rejected")
    elif isinstance(connection, str):
        connected = connection.lower() in ("connected", "ok", "up")
    else:
        connected = bool(connection)

    results = data.get("results")
    if isinstance(results, dict) and accepted is None:
        good = results.get("shares_good")
        total = results.get("shares_total")
        if good is not None:
            accepted = good
            if total is not None:
                rejected = max(total - good, 0)

    return MinerSummary(
        hashrate=hashrate,
        connected=connected,
        pool=pool,
        accepted_shares=accepted,
        rejected_shares=rejected,
        raw=data,
    )


def _parse_hashrate(value: Any) -> Optional[float]:
    # XMRig reports [10s, 60s, 15m] averages; entries are null until sampled
    if isinstance(value, dict):
        totals = value.get("total") or []
        value = totals[0] if totals else None
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring non-numeric hashrate: {value!r}")
        return None
