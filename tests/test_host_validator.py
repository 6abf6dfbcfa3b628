import pytest

from minerfleet.exceptions import ValidationError
from minerfleet.modules.fleet import HostValidator


class TestHostValidator:
    """Test the DNS-label hostname grammar."""

    @pytest.mark.parametrize(
        "hostname",
        ["host.example.com", "miner-1", "a" * 63, "10.0.0.5", "Mini-Rig-07.local"],
    )
    def test_accepts_dns_names(self, hostname):
        assert HostValidator.is_valid(hostname)

    @pytest.mark.parametrize(
        "hostname",
        [
            "mini-1; rm -rf /",
            "a" * 64,
            "",
            None,
            "../etc/passwd",
            "host/../../root",
            "-leading.example.com",
            "trailing-.example.com",
            "host..example.com",
            "host name",
            "$(reboot)",
            "`id`",
            "host|nc",
            "host\nother",
            42,
        ],
    )
    def test_rejects_unsafe_or_malformed(self, hostname):
        assert not HostValidator.is_valid(hostname)

    def test_total_length_limit(self):
        name = ".".join(["a" * 63] * 4)
        assert len(name) == 255
        assert not HostValidator.is_valid(name)
        assert HostValidator.is_valid(".".join(["a" * 63] * 3 + ["a" * 61]))

    def test_validate_returns_hostname(self):
        assert HostValidator.validate("miner-1.example.com") == "miner-1.example.com"

    def test_validate_names_source(self):
        with pytest.raises(ValidationError) as exc:
            HostValidator.validate("bad;host", source="config")
        assert "in config" in str(exc.value)
        assert "bad;host" in str(exc.value)

    def test_validate_all_stops_on_first_bad_host(self):
        with pytest.raises(ValidationError):
            HostValidator.validate_all(["good-1", "bad host", "good-2"])
