"""
Bech32 address encoding and decoding (BIP-173).

Only native segwit v0 P2WPKH addresses are supported: witness version 0
with a 20-byte program. The human-readable prefix is whatever the
deployment is configured with ("ltc", "tltc", "bc", ...).
"""

from typing import Optional, Tuple

from .errors import InvalidAddressError

# Bech32 character set
BECH32_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"

P2WPKH_PROGRAM_LENGTH = 20


def bech32_polymod(values: list[int]) -> int:
    """Internal function for Bech32 checksum computation."""
    GEN = [0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3]
    chk = 1
    for v in values:
        b = chk >> 25
        chk = ((chk & 0x1FFFFFF) << 5) ^ v
        for i in range(5):
            chk ^= GEN[i] if ((b >> i) & 1) else 0
    return chk


def bech32_hrp_expand(hrp: str) -> list[int]:
    """Expand HRP for checksum computation."""
    return [ord(x) >> 5 for x in hrp] + [0] + [ord(x) & 31 for x in hrp]


def bech32_verify_checksum(hrp: str, data: list[int]) -> bool:
    """Verify Bech32 checksum."""
    return bech32_polymod(bech32_hrp_expand(hrp) + data) == 1


def bech32_create_checksum(hrp: str, data: list[int]) -> list[int]:
    """Compute the six checksum characters (as 5-bit values)."""
    polymod = bech32_polymod(bech32_hrp_expand(hrp) + data + [0] * 6) ^ 1
    return [(polymod >> 5 * (5 - i)) & 31 for i in range(6)]


def bech32_encode(hrp: str, data: list[int]) -> str:
    """Encode 5-bit values under an HRP."""
    combined = data + bech32_create_checksum(hrp, data)
    return hrp + "1" + "".join(BECH32_CHARSET[d] for d in combined)


def bech32_decode(address: str) -> Tuple[str, list[int]] | None:
    """
    Decode a Bech32 string.

    Returns:
        (hrp, data) with the checksum stripped, or None if invalid
    """
    if any(ord(c) < 33 or ord(c) > 126 for c in address):
        return None
    if address.lower() != address and address.upper() != address:
        return None
    if len(address) > 90:
        return None

    address = address.lower()

    # Find separator
    pos = address.rfind("1")
    if pos < 1 or pos + 7 > len(address):
        return None

    hrp = address[:pos]
    data = []
    for c in address[pos + 1:]:
        if c not in BECH32_CHARSET:
            return None
        data.append(BECH32_CHARSET.index(c))

    if not bech32_verify_checksum(hrp, data):
        return None

    return (hrp, data[:-6])


def convert_bits(data: list[int], frombits: int, tobits: int, pad: bool) -> list[int] | None:
    """Convert between bit widths."""
    acc = 0
    bits = 0
    ret = []
    maxv = (1 << tobits) - 1
    max_acc = (1 << (frombits + tobits - 1)) - 1

    for value in data:
        if value < 0 or (value >> frombits):
            return None
        acc = ((acc << frombits) | value) & max_acc
        bits += frombits
        while bits >= tobits:
            bits -= tobits
            ret.append((acc >> bits) & maxv)

    if pad:
        if bits:
            ret.append((acc << (tobits - bits)) & maxv)
    elif bits >= frombits or ((acc << (tobits - bits)) & maxv):
        return None

    return ret


def encode_p2wpkh_address(hrp: str, pubkey_hash: bytes) -> str:
    """Encode a 20-byte pubkey hash as a witness v0 address."""
    if len(pubkey_hash) != P2WPKH_PROGRAM_LENGTH:
        raise InvalidAddressError(f"P2WPKH program must be 20 bytes, got {len(pubkey_hash)}")
    five_bit = convert_bits(list(pubkey_hash), 8, 5, True)
    assert five_bit is not None
    return bech32_encode(hrp, [0] + five_bit)


def decode_p2wpkh_address(address: str, hrp: Optional[str] = None) -> bytes:
    """
    Decode a witness v0 P2WPKH address to its 20-byte program.

    Raises:
        InvalidAddressError: bad encoding or checksum, HRP other than `hrp`
            (when given), witness version other than 0, or a program that
            is not 20 bytes
    """
    decoded = bech32_decode(address)
    if decoded is None:
        raise InvalidAddressError(f"Invalid bech32 address: {address!r}")

    addr_hrp, data = decoded
    if hrp is not None and addr_hrp != hrp.lower():
        raise InvalidAddressError(f"Address prefix {addr_hrp!r} does not match {hrp!r}")
    if not data:
        raise InvalidAddressError("Address has no witness version")

    version = data[0]
    if version != 0:
        raise InvalidAddressError(f"Unsupported witness version {version}")

    program = convert_bits(data[1:], 5, 8, False)
    if program is None or len(program) != P2WPKH_PROGRAM_LENGTH:
        raise InvalidAddressError("Witness program is not a 20-byte P2WPKH program")

    return bytes(program)


def is_valid_p2wpkh_address(address: str, hrp: Optional[str] = None) -> bool:
    try:
        decode_p2wpkh_address(address, hrp)
    except InvalidAddressError:
        return False
    return True
