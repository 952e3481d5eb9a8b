"""Tests for access code resolution."""

import pytest

from castlink.access_code import (
    SERVICE_PORT,
    AccessCode,
    ResolvedAddress,
    encode,
    resolve,
)
from castlink.errors import FormatError, RangeError


class TestAccessCodeParse:
    """Tests for AccessCode.parse validation."""

    @pytest.mark.parametrize("raw", ["0A0A0A01", "0a0a0a01", "C0A80105FF", "  7F000001 "])
    def test_accepts_valid_codes(self, raw):
        """8 and 10 hex characters are accepted, surrounding space stripped."""
        code = AccessCode.parse(raw)
        assert code.text == raw.strip().upper()

    @pytest.mark.parametrize(
        "raw",
        ["", "0A0A0A0", "0A0A0A011", "0A0A0A01FFF", "0G0A0A01", "0A0A-A01", "0x0A0A01"],
    )
    def test_rejects_invalid_codes(self, raw):
        """Wrong length or non-hex characters raise FormatError."""
        with pytest.raises(FormatError):
            AccessCode.parse(raw)

    def test_rejects_non_string(self):
        """Non-string input raises FormatError."""
        with pytest.raises(FormatError):
            AccessCode.parse(0x0A0A0A01)

    def test_is_salted(self):
        assert not AccessCode.parse("0A0A0A01").is_salted
        assert AccessCode.parse("0A0A0A01FF").is_salted


class TestResolve:
    """Tests for resolve()."""

    def test_unsalted_code(self):
        """8 characters decode as a big-endian address."""
        address = resolve("0A0A0A01")
        assert address.octets == (10, 10, 10, 1)
        assert address.host == "10.10.10.1"
        assert address.port == SERVICE_PORT

    def test_salted_code_xors_every_octet(self):
        """The salt byte is XORed into each octet."""
        assert resolve("0A0A0A01FF").host == "245.245.245.254"

    def test_zero_salt_is_identity(self):
        assert resolve("0A0A0A0100").host == "10.10.10.1"
        assert resolve("C0A8010500").host == "192.168.1.5"

    @pytest.mark.parametrize(
        "data, salt",
        [("0A0A0A01", 0xFF), ("C0A80105", 0x5A), ("7F000001", 0x01), ("00000000", 0x80), ("FFFFFFFF", 0x0F)],
    )
    def test_salt_xors_plain_octets(self, data, salt):
        """A salted code resolves to the plain octets XOR the salt."""
        plain = resolve(data).octets
        salted = resolve(f"{data}{salt:02X}").octets
        assert salted == tuple(octet ^ salt for octet in plain)

    def test_lower_case_input(self):
        assert resolve("c0a80105").host == "192.168.1.5"

    def test_accepts_parsed_code(self):
        assert resolve(AccessCode.parse("7F000001")).host == "127.0.0.1"

    def test_invalid_code_raises_format_error(self):
        with pytest.raises(FormatError):
            resolve("not-a-code")

    def test_custom_port(self):
        address = resolve("7F000001", port=9000)
        assert address.port == 9000
        assert str(address) == "127.0.0.1:9000"

    def test_ws_url(self):
        """Signaling URL uses the service port and /ws path."""
        assert resolve("0A0A0A01").ws_url == "ws://10.10.10.1:8080/ws"


class TestEncode:
    """Tests for encode()."""

    def test_encode_unsalted(self):
        assert encode("10.10.10.1") == "0A0A0A01"

    def test_encode_salted(self):
        assert encode("10.10.10.1", salt=0x20) == "2A2A2A2120"

    def test_every_salt_resolves_back(self):
        """All 256 salted codes for one address resolve to it."""
        codes = {encode("192.168.1.5", salt=salt) for salt in range(256)}
        assert len(codes) == 256
        assert {resolve(code).host for code in codes} == {"192.168.1.5"}

    @pytest.mark.parametrize("host", ["10.10.10", "10.10.10.1.5", "a.b.c.d", "10.10.10.-1"])
    def test_rejects_malformed_host(self, host):
        with pytest.raises(FormatError):
            encode(host)

    def test_rejects_octet_out_of_range(self):
        with pytest.raises(RangeError):
            encode("10.10.10.256")

    def test_rejects_salt_out_of_range(self):
        with pytest.raises(RangeError):
            encode("10.10.10.1", salt=0x100)


class TestResolvedAddress:
    """Tests for ResolvedAddress."""

    def test_str_is_host_and_port(self):
        assert str(ResolvedAddress((192, 168, 1, 5))) == "192.168.1.5:8080"

    def test_is_frozen(self):
        address = ResolvedAddress((192, 168, 1, 5))
        with pytest.raises(AttributeError):
            address.port = 1
