"""Parsing of IPv4 addresses and address ranges from text.

Three forms are accepted: a single address (``192.168.1.1``), a CIDR
block (``192.168.1.0/24``) and a dashed range
(``192.168.1.0-192.168.1.255``).
"""

from __future__ import annotations

from rdpsweep.ranges import Range

_DIGITS = frozenset("0123456789")
_SPACE = frozenset(" \t\n\v\f\r")


class RangeParseError(ValueError):
    """Raised when text does not hold a valid IPv4 address or range."""


def _char(line: str, offset: int) -> str:
    return line[offset] if offset < len(line) else ""


def _skip_space(line: str, offset: int) -> int:
    while offset < len(line) and line[offset] in _SPACE:
        offset += 1
    return offset


def _parse_address(line: str, offset: int) -> tuple[int, int]:
    """Parse a dotted-quad address; return it and the offset just past it."""
    result = 0
    for octet in range(4):
        if offset >= len(line):
            raise RangeParseError("address ends early")
        if line[offset] not in _DIGITS:
            raise RangeParseError(f"expected a digit at offset {offset}")

        while _char(line, offset) == "0":
            offset += 1

        value = 0
        digits = 0
        while _char(line, offset) in _DIGITS and offset < len(line):
            value = value * 10 + int(line[offset])
            offset += 1
            digits += 1
            if digits > 3:
                raise RangeParseError("too many digits in an address octet")
        if value > 255:
            raise RangeParseError(f"address octet {value} is above 255")
        result = (result << 8) | value

        if octet == 3:
            break
        if _char(line, offset) != ".":
            raise RangeParseError(f"expected '.' at offset {offset}")
        offset += 1
    return result, offset


def _format(addr: int) -> str:
    return ".".join(str((addr >> shift) & 0xFF) for shift in (24, 16, 8, 0))


def parse_ipv4_range(line: str, offset: int = 0) -> tuple[Range, int]:
    """Parse an address, CIDR block or dashed range starting at ``offset``.

    Returns the inclusive range and the offset of the first character
    after it.
    """
    if offset < 0 or offset > len(line):
        raise RangeParseError(f"offset {offset} is outside the text")

    offset = _skip_space(line, offset)
    begin, offset = _parse_address(line, offset)
    offset = _skip_space(line, offset)

    if offset >= len(line):
        return Range(begin, begin), offset

    if line[offset] == "/":
        offset += 1
        if _char(line, offset) not in _DIGITS or offset >= len(line):
            raise RangeParseError("expected a prefix length after '/'")
        while _char(line, offset) == "0":
            offset += 1
        prefix = 0
        digits = 0
        while offset < len(line) and line[offset] in _DIGITS:
            prefix = prefix * 10 + int(line[offset])
            offset += 1
            digits += 1
            if digits > 2:
                raise RangeParseError("prefix length has too many digits")
        if prefix > 32:
            raise RangeParseError(f"prefix length {prefix} is above 32")
        mask = (0xFFFFFFFF00000000 >> prefix) & 0xFFFFFFFF
        begin &= mask
        return Range(begin, begin | (~mask & 0xFFFFFFFF)), offset

    if line[offset] == "-":
        end, offset = _parse_address(line, offset + 1)
        if end < begin:
            raise RangeParseError(
                f"ending addr {_format(end)} cannot come before "
                f"starting addr {_format(begin)}"
            )
        return Range(begin, end), offset

    return Range(begin, begin), offset


def aton4(host: str) -> bytes:
    """Convert a single dotted-quad address to its four network-order bytes."""
    found, offset = parse_ipv4_range(host)
    if found.begin != found.end:
        raise RangeParseError(f"{host!r} is a range, not a single address")
    if offset != len(host):
        raise RangeParseError(f"unexpected text after the address in {host!r}")
    return found.begin.to_bytes(4, "big")