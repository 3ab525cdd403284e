"""Bech32 encoding of public keys as human-readable addresses."""

from __future__ import annotations

from collections.abc import Iterable

PUBLIC_KEY_LEN = 32

_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
_CHARSET_INDEX = {char: index for index, char in enumerate(_CHARSET)}
_GENERATORS = (0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3)
_CHECKSUM_LEN = 6
_MAX_LENGTH = 90


class AddressError(ValueError):
    """Raised when an address cannot be encoded or parsed."""


def _polymod(values: Iterable[int]) -> int:
    checksum = 1
    for value in values:
        top = checksum >> 25
        checksum = (checksum & 0x1FFFFFF) << 5 ^ value
        for bit, generator in enumerate(_GENERATORS):
            if (top >> bit) & 1:
                checksum ^= generator
    return checksum


def _hrp_expand(hrp: str) -> list[int]:
    return [ord(c) >> 5 for c in hrp] + [0] + [ord(c) & 31 for c in hrp]


def _create_checksum(hrp: str, data: list[int]) -> list[int]:
    polymod = _polymod(_hrp_expand(hrp) + data + [0] * _CHECKSUM_LEN) ^ 1
    return [(polymod >> 5 * (5 - i)) & 31 for i in range(_CHECKSUM_LEN)]


def _convert_bits(data: Iterable[int], from_bits: int, to_bits: int, pad: bool) -> list[int]:
    acc = 0
    bits = 0
    result: list[int] = []
    max_value = (1 << to_bits) - 1
    for value in data:
        acc = (acc << from_bits) | value
        bits += from_bits
        while bits >= to_bits:
            bits -= to_bits
            result.append((acc >> bits) & max_value)
    if pad:
        if bits:
            result.append((acc << (to_bits - bits)) & max_value)
    elif bits >= from_bits or (acc << (to_bits - bits)) & max_value:
        raise AddressError("invalid padding in address data")
    return result


def _decode(text: str) -> tuple[str, list[int]]:
    if len(text) > _MAX_LENGTH:
        raise AddressError("address too long")
    if any(ord(c) < 33 or ord(c) > 126 for c in text):
        raise AddressError("invalid character in address")
    if text.lower() != text and text.upper() != text:
        raise AddressError("address has mixed case")
    text = text.lower()
    separator = text.rfind("1")
    if separator < 1 or separator + _CHECKSUM_LEN + 1 > len(text):
        raise AddressError("invalid separator position")
    hrp = text[:separator]
    try:
        data = [_CHARSET_INDEX[c] for c in text[separator + 1 :]]
    except KeyError as exc:
        raise AddressError(f"invalid data character {exc.args[0]!r}") from None
    if _polymod(_hrp_expand(hrp) + data) != 1:
        raise AddressError("invalid checksum")
    return hrp, data[:-_CHECKSUM_LEN]


def address(public_key: bytes, hrp: str) -> str:
    """Encode a public key as a bech32 address with prefix ``hrp``."""
    public_key = bytes(public_key)
    if len(public_key) != PUBLIC_KEY_LEN:
        raise AddressError(f"public key must be {PUBLIC_KEY_LEN} bytes")
    data = _convert_bits(public_key, 8, 5, True)
    checksum = _create_checksum(hrp, data)
    return hrp + "1" + "".join(_CHARSET[d] for d in data + checksum)


def parse_address(text: str, hrp: str) -> bytes:
    """Decode a bech32 address into a public key, checking its prefix."""
    found_hrp, data = _decode(text)
    if found_hrp != hrp:
        raise AddressError(f"incorrect hrp: expected {hrp!r}, got {found_hrp!r}")
    public_key = bytes(_convert_bits(data, 5, 8, False))
    if len(public_key) != PUBLIC_KEY_LEN:
        raise AddressError("invalid public key length")
    return public_key