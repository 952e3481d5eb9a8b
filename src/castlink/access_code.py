"""Access code to receiver address resolution.

An access code is 8 or 10 hex characters typed by the operator:

- 8 characters: the receiver's IPv4 address as a big-endian 32-bit integer.
  "0A0A0A01" -> 10.10.10.1
- 10 characters: the same 8 characters followed by a salt byte. Every octet
  is XORed with the salt, so one address has 256 different codes.
  "0A0A0A01FF" -> 245.245.245.254

The salt travels in cleartext inside the code. It hides repeated codes from
casual pattern matching and nothing more.
"""

import re
from dataclasses import dataclass

from castlink.errors import FormatError, RangeError

__all__ = [
    "AccessCode",
    "ResolvedAddress",
    "SERVICE_PORT",
    "SIGNALING_PATH",
    "encode",
    "resolve",
]

SERVICE_PORT = 8080
SIGNALING_PATH = "/ws"

_CODE_PATTERN = re.compile(r"^(?:[0-9A-Fa-f]{8}|[0-9A-Fa-f]{10})$")


@dataclass(frozen=True)
class AccessCode:
    """Validated access code, normalized to upper case."""

    text: str

    @classmethod
    def parse(cls, raw: str) -> "AccessCode":
        """Validate operator input.

        Raises:
            FormatError: If the code is not 8 or 10 hex characters.
        """
        if not isinstance(raw, str):
            raise FormatError("Access code must be a string")
        candidate = raw.strip()
        if not _CODE_PATTERN.match(candidate):
            raise FormatError("Access code must be 8 or 10 hex characters")
        return cls(candidate.upper())

    @property
    def is_salted(self) -> bool:
        return len(self.text) == 10

    def __str__(self) -> str:
        return self.text


@dataclass(frozen=True)
class ResolvedAddress:
    """IPv4 address plus signaling port of a receiver."""

    octets: tuple[int, int, int, int]
    port: int = SERVICE_PORT

    @property
    def host(self) -> str:
        return ".".join(str(octet) for octet in self.octets)

    @property
    def ws_url(self) -> str:
        """WebSocket URL of the receiver's signaling endpoint."""
        return f"ws://{self.host}:{self.port}{SIGNALING_PATH}"

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


def _check_octets(octets: list[int]) -> tuple[int, int, int, int]:
    for octet in octets:
        if not 0 <= octet <= 0xFF:
            raise RangeError(f"Decoded octet {octet} outside 0-255")
    a, b, c, d = octets
    return (a, b, c, d)


def resolve(code: "AccessCode | str", port: int = SERVICE_PORT) -> ResolvedAddress:
    """Recover the receiver address from an access code.

    Args:
        code: Parsed AccessCode or raw operator input.
        port: Signaling port of the receiver.

    Returns:
        ResolvedAddress for the code.

    Raises:
        FormatError: Code has the wrong length or characters.
        RangeError: A decoded octet is outside 0-255.
    """
    if not isinstance(code, AccessCode):
        code = AccessCode.parse(code)

    value = int(code.text[:8], 16)
    octets = [(value >> shift) & 0xFF for shift in (24, 16, 8, 0)]

    if code.is_salted:
        salt = int(code.text[8:], 16)
        octets = [octet ^ salt for octet in octets]

    return ResolvedAddress(octets=_check_octets(octets), port=port)


def encode(host: str, salt: int | None = None) -> str:
    """Build an access code for a dotted IPv4 host.

    Args:
        host: Address like "10.10.10.1".
        salt: Optional salt byte; produces a 10-character code.

    Returns:
        Upper-case access code.

    Raises:
        FormatError: Host is not a dotted quad.
        RangeError: An octet or the salt is outside 0-255.
    """
    parts = host.strip().split(".")
    if len(parts) != 4 or not all(part.isdigit() for part in parts):
        raise FormatError(f"Not an IPv4 address: {host!r}")
    octets = list(_check_octets([int(part) for part in parts]))

    if salt is None:
        return "".join(f"{octet:02X}" for octet in octets)

    if not 0 <= salt <= 0xFF:
        raise RangeError(f"Salt {salt} outside 0-255")
    return "".join(f"{octet ^ salt:02X}" for octet in octets) + f"{salt:02X}"
