import httpx
import pytest

from minerfleet.modules.executor import MinerApiClient, MinerApiError
from minerfleet.modules.executor.miner_api import parse_summary

XMRIG_SUMMARY = {
    "id": "a1b2c3",
    "worker_id": "rig-a-production",
    "hashrate": {"total": [1520.4, 1498.2, 1501.0], "highest": 1610.3},
    "connection": {"pool": "pool.example.com:3333", "uptime": 3600, "accepted": 120, "rejected": 2},
    "results": {"shares_good": 120, "shares_total": 122},
}


def client_for(handler, token=None) -> MinerApiClient:
    return MinerApiClient("http://127.0.0.1:8080/1/summary", token=token, transport=httpx.MockTransport(handler))


class TestParseSummary:
    """Test status document parsing."""

    def test_xmrig_document(self):
        summary = parse_summary(XMRIG_SUMMARY)

        assert summary.hashrate == 1520.4
        assert summary.connected
        assert summary.pool == "pool.example.com:3333"
        assert summary.accepted_shares == 120
        assert summary.rejected_shares == 2

    def test_warming_up(self):
        summary = parse_summary({"hashrate": {"total": [None, None, None]}, "connection": {"pool": ""}})
        assert summary.hashrate is None
        assert not summary.connected

    def test_flat_document(self):
        summary = parse_summary({"hashrate": 0, "connection": "connected"})
        assert summary.hashrate == 0.0
        assert summary.connected

    def test_shares_from_results(self):
        summary = parse_summary({"hashrate": 10, "results": {"shares_good": 8, "shares_total": 10}})
        assert summary.accepted_shares == 8
        assert summary.rejected_shares == 2

    def test_non_numeric_hashrate(self):
        assert parse_summary({"hashrate": "fast"}).hashrate is None


class TestMinerApiClient:
    """Test the loopback probe over a mocked transport."""

    def test_summary(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json=XMRIG_SUMMARY)

        client = client_for(handler, token="s3cret")
        try:
            assert client.summary().hashrate == 1520.4
        finally:
            client.close()
        assert seen["auth"] == "Bearer s3cret"

    def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("Connection refused", request=request)

        client = client_for(handler)
        with pytest.raises(MinerApiError, match="Miner API unreachable"):
            client.summary()

    def test_http_error_status(self):
        client = client_for(lambda request: httpx.Response(403, json={"error": "Unauthorized"}))
        with pytest.raises(MinerApiError, match="unreachable"):
            client.summary()

    def test_invalid_json(self):
        client = client_for(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(MinerApiError, match="invalid JSON"):
            client.summary()

    def test_unexpected_document(self):
        client = client_for(lambda request: httpx.Response(200, json=[1, 2, 3]))
        with pytest.raises(MinerApiError, match="unexpected document"):
            client.summary()
