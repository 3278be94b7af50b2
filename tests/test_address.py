"""Tests for server address parsing and SRV resolution."""

from unittest.mock import MagicMock, patch

import dns.exception
import pytest

from mcprobe.address import Address, AddressError


def _srv_record(target: str, port: int, priority: int = 0, weight: int = 5):
    record = MagicMock()
    record.priority = priority
    record.weight = weight
    record.port = port
    record.target.to_text.return_value = target
    return record


class TestParse:
    def test_bare_hostname(self):
        address = Address.parse("mc.example.com")
        assert address.host == "mc.example.com"
        assert address.port == 25565
        assert not address.explicit_port

    def test_host_port(self):
        address = Address.parse("mc.example.com:25570")
        assert address.host == "mc.example.com"
        assert address.port == 25570
        assert address.explicit_port

    def test_ipv6_with_port(self):
        address = Address.parse("[::1]:25570")
        assert address.host == "::1"
        assert address.port == 25570
        assert str(address) == "[::1]:25570"

    def test_bracketed_ipv6_without_port(self):
        address = Address.parse("[2001:db8::1]")
        assert address.host == "2001:db8::1"
        assert not address.explicit_port

    def test_bare_ipv6(self):
        address = Address.parse("2001:db8::1")
        assert address.host == "2001:db8::1"
        assert address.port == 25565

    def test_strips_whitespace(self):
        assert Address.parse("  localhost ").host == "localhost"

    @pytest.mark.parametrize(
        "raw",
        ["", ":25565", "host:abc", "host:0", "host:65536", "[::1", "[::1]x"],
    )
    def test_invalid(self, raw):
        with pytest.raises(AddressError):
            Address.parse(raw)

    def test_address_error_is_value_error(self):
        with pytest.raises(ValueError, match="Invalid port"):
            Address.parse("host:port")

    def test_is_ip(self):
        assert Address.parse("127.0.0.1").is_ip
        assert Address.parse("::1").is_ip
        assert not Address.parse("localhost").is_ip


class TestResolveSrv:
    def test_applies_record(self):
        address = Address.parse("example.com")
        with patch("mcprobe.address.dns.resolver.resolve") as mock_resolve:
            mock_resolve.return_value = [_srv_record("mc.example.com.", 25566)]
            assert address.resolve_srv(timeout=3.0)

        mock_resolve.assert_called_once_with("_minecraft._tcp.example.com", "SRV", lifetime=3.0)
        assert address.srv_resolved
        assert address.target == ("mc.example.com.", 25566)
        # The handshake still announces what the user typed
        assert address.host == "example.com"
        assert address.port == 25565

    def test_prefers_lowest_priority_then_highest_weight(self):
        address = Address.parse("example.com")
        records = [
            _srv_record("b.example.com", 1, priority=10, weight=100),
            _srv_record("c.example.com", 2, priority=5, weight=1),
            _srv_record("d.example.com", 3, priority=5, weight=50),
        ]
        with patch("mcprobe.address.dns.resolver.resolve", return_value=records):
            address.resolve_srv()

        assert address.target == ("d.example.com", 3)

    def test_lookup_failure_leaves_address(self):
        address = Address.parse("example.com")
        with patch(
            "mcprobe.address.dns.resolver.resolve", side_effect=dns.exception.Timeout()
        ):
            assert not address.resolve_srv()

        assert not address.srv_resolved
        assert address.target == ("example.com", 25565)

    @pytest.mark.parametrize("raw", ["example.com:25565", "127.0.0.1", "[::1]"])
    def test_skipped(self, raw):
        address = Address.parse(raw)
        with patch("mcprobe.address.dns.resolver.resolve") as mock_resolve:
            assert not address.resolve_srv()
        mock_resolve.assert_not_called()
