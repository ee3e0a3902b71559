"""
Transaction data structures, serialization and BIP143 signature hashing.

Only what a P2WPKH sweep needs: segwit-aware (de)serialization, txid and
vsize, the version 0 witness signature digest, and unit conversion.
"""

import hashlib
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Tuple, Union

SIGHASH_ALL = 0x01

# Constants for coin to base unit conversion
SATS_PER_COIN = Decimal("100000000")

# Witness size per P2WPKH input: item count, DER sig + sighash byte (max 73), compressed pubkey
P2WPKH_WITNESS_SIZE = 1 + 1 + 73 + 1 + 33
P2WPKH_INPUT_BASE_SIZE = 32 + 4 + 1 + 4
P2WPKH_OUTPUT_SIZE = 8 + 1 + 22


def sha256d(data: bytes) -> bytes:
    """Double SHA256 hash (Bitcoin standard)."""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))."""
    h = hashlib.sha256(data).digest()
    r = hashlib.new("ripemd160")
    r.update(h)
    return r.digest()


def reverse_bytes(data: bytes) -> bytes:
    """Reverse byte order (for Bitcoin little-endian display)."""
    return data[::-1]


def bytes_to_hex_le(data: bytes) -> str:
    """Convert bytes to hex string in little-endian display format."""
    return reverse_bytes(data).hex()


def hex_le_to_bytes(hex_str: str) -> bytes:
    """Convert little-endian hex string to bytes."""
    return reverse_bytes(bytes.fromhex(hex_str))


def encode_varint(n: int) -> bytes:
    if n < 0:
        raise ValueError("varint must be non-negative")
    if n < 0xFD:
        return bytes([n])
    if n <= 0xFFFF:
        return b"\xFD" + n.to_bytes(2, "little")
    if n <= 0xFFFFFFFF:
        return b"\xFE" + n.to_bytes(4, "little")
    return b"\xFF" + n.to_bytes(8, "little")


def parse_varint(data: bytes, offset: int = 0) -> Tuple[int, int]:
    """
    Parse Bitcoin VarInt.
    Returns (value, new_offset).
    """
    first = data[offset]
    if first < 0xFD:
        return first, offset + 1
    elif first == 0xFD:
        return int.from_bytes(data[offset + 1 : offset + 3], "little"), offset + 3
    elif first == 0xFE:
        return int.from_bytes(data[offset + 1 : offset + 5], "little"), offset + 5
    else:
        return int.from_bytes(data[offset + 1 : offset + 9], "little"), offset + 9


def p2wpkh_script(pubkey_hash: bytes) -> bytes:
    """scriptPubKey for a P2WPKH output: OP_0 <20 bytes>."""
    return b"\x00\x14" + pubkey_hash


def p2pkh_script(pubkey_hash: bytes) -> bytes:
    """OP_DUP OP_HASH160 <20 bytes> OP_EQUALVERIFY OP_CHECKSIG (the BIP143 P2WPKH script code)."""
    return b"\x76\xa9\x14" + pubkey_hash + b"\x88\xac"


def btc_to_sats(value: Union[int, float, str, Decimal]) -> int:
    """
    Convert a coin amount to base units with exact precision.

    Uses Decimal arithmetic to avoid float precision issues:
    float(0.1) * 1e8 = 9999999.999999998, not 10000000.

    Examples:
        >>> btc_to_sats(0.1)
        10000000
        >>> btc_to_sats("0.01")
        1000000
    """
    if isinstance(value, Decimal):
        dec_value = value
    elif isinstance(value, str):
        dec_value = Decimal(value)
    else:
        # int or float: convert via string to avoid float representation issues
        dec_value = Decimal(str(value))

    sats = dec_value * SATS_PER_COIN

    if sats != sats.to_integral_value():
        raise ValueError(f"Value {value} results in fractional base units: {sats}")

    return int(sats)


def sats_to_btc(sats: int) -> Decimal:
    return Decimal(sats) / SATS_PER_COIN


@dataclass(frozen=True)
class OutPoint:
    """Reference to a previous output."""

    txid: bytes  # 32 bytes, internal byte order
    vout: int

    def serialize(self) -> bytes:
        return self.txid + self.vout.to_bytes(4, "little")

    @classmethod
    def from_display(cls, txid_hex: str, vout: int) -> "OutPoint":
        """Build from a display-format (reversed) txid as returned by Electrum."""
        txid = hex_le_to_bytes(txid_hex)
        if len(txid) != 32:
            raise ValueError(f"txid must be 32 bytes, got {len(txid)}")
        return cls(txid=txid, vout=vout)


@dataclass
class TxIn:
    """Transaction input."""

    prevout: OutPoint
    script_sig: bytes = b""
    sequence: int = 0xFFFFFFFF
    witness: List[bytes] = field(default_factory=list)

    def serialize(self) -> bytes:
        return (
            self.prevout.serialize()
            + encode_varint(len(self.script_sig))
            + self.script_sig
            + self.sequence.to_bytes(4, "little")
        )

    def serialize_witness(self) -> bytes:
        out = encode_varint(len(self.witness))
        for item in self.witness:
            out += encode_varint(len(item)) + item
        return out


@dataclass
class TxOut:
    """Transaction output."""

    value: int  # satoshis
    script_pubkey: bytes

    def serialize(self) -> bytes:
        return (
            self.value.to_bytes(8, "little")
            + encode_varint(len(self.script_pubkey))
            + self.script_pubkey
        )


@dataclass
class Transaction:
    """A transaction with optional segwit witnesses."""

    version: int = 2
    inputs: List[TxIn] = field(default_factory=list)
    outputs: List[TxOut] = field(default_factory=list)
    locktime: int = 0

    def has_witness(self) -> bool:
        return any(txin.witness for txin in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        """
        Serialize the transaction.

        The segwit marker and flag are emitted only when witnesses are
        requested and at least one input carries one.
        """
        segwit = include_witness and self.has_witness()

        out = self.version.to_bytes(4, "little")
        if segwit:
            out += b"\x00\x01"
        out += encode_varint(len(self.inputs))
        for txin in self.inputs:
            out += txin.serialize()
        out += encode_varint(len(self.outputs))
        for txout in self.outputs:
            out += txout.serialize()
        if segwit:
            for txin in self.inputs:
                out += txin.serialize_witness()
        out += self.locktime.to_bytes(4, "little")
        return out

    def txid(self) -> str:
        """Transaction ID in display format."""
        return bytes_to_hex_le(sha256d(self.serialize(include_witness=False)))

    def weight(self) -> int:
        base = len(self.serialize(include_witness=False))
        total = len(self.serialize(include_witness=True))
        return base * 3 + total

    def vsize(self) -> int:
        return (self.weight() + 3) // 4

    @classmethod
    def from_bytes(cls, raw: bytes) -> "Transaction":
        """Parse a serialized transaction (legacy or segwit)."""
        offset = 0
        version = int.from_bytes(raw[0:4], "little")
        offset = 4

        segwit = False
        if raw[offset] == 0x00 and raw[offset + 1] == 0x01:
            segwit = True
            offset += 2  # Skip marker and flag

        input_count, offset = parse_varint(raw, offset)
        inputs = []
        for _ in range(input_count):
            prev_txid = raw[offset : offset + 32]
            offset += 32
            prev_vout = int.from_bytes(raw[offset : offset + 4], "little")
            offset += 4
            script_len, offset = parse_varint(raw, offset)
            script_sig = raw[offset : offset + script_len]
            offset += script_len
            sequence = int.from_bytes(raw[offset : offset + 4], "little")
            offset += 4
            inputs.append(
                TxIn(
                    prevout=OutPoint(txid=prev_txid, vout=prev_vout),
                    script_sig=script_sig,
                    sequence=sequence,
                )
            )

        output_count, offset = parse_varint(raw, offset)
        outputs = []
        for _ in range(output_count):
            value = int.from_bytes(raw[offset : offset + 8], "little")
            offset += 8
            script_len, offset = parse_varint(raw, offset)
            script_pubkey = raw[offset : offset + script_len]
            offset += script_len
            outputs.append(TxOut(value=value, script_pubkey=script_pubkey))

        if segwit:
            for txin in inputs:
                item_count, offset = parse_varint(raw, offset)
                for _ in range(item_count):
                    item_len, offset = parse_varint(raw, offset)
                    txin.witness.append(raw[offset : offset + item_len])
                    offset += item_len

        locktime = int.from_bytes(raw[offset : offset + 4], "little")
        offset += 4
        if offset != len(raw):
            raise ValueError(f"Trailing bytes after transaction: {len(raw) - offset}")

        return cls(version=version, inputs=inputs, outputs=outputs, locktime=locktime)


def segwit_sighash(
    tx: Transaction,
    index: int,
    script_code: bytes,
    value: int,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    """
    BIP143 signature digest for witness v0 input `index`.

    `script_code` is the bare script (for P2WPKH, the P2PKH script of the
    key hash); its length prefix is added here. `value` is the amount of
    the output being spent.
    """
    if sighash_type != SIGHASH_ALL:
        raise ValueError(f"Unsupported sighash type {sighash_type:#x}")
    if index < 0 or index >= len(tx.inputs):
        raise ValueError(f"input index {index} out of range [0, {len(tx.inputs)})")

    hash_prevouts = sha256d(b"".join(txin.prevout.serialize() for txin in tx.inputs))
    hash_sequence = sha256d(
        b"".join(txin.sequence.to_bytes(4, "little") for txin in tx.inputs)
    )
    hash_outputs = sha256d(b"".join(txout.serialize() for txout in tx.outputs))

    txin = tx.inputs[index]
    preimage = (
        tx.version.to_bytes(4, "little")
        + hash_prevouts
        + hash_sequence
        + txin.prevout.serialize()
        + encode_varint(len(script_code))
        + script_code
        + value.to_bytes(8, "little")
        + txin.sequence.to_bytes(4, "little")
        + hash_outputs
        + tx.locktime.to_bytes(4, "little")
        + sighash_type.to_bytes(4, "little")
    )
    return sha256d(preimage)


def estimate_sweep_vsize(n_inputs: int, n_outputs: int = 1) -> int:
    """
    Virtual size of a fully signed transaction spending `n_inputs` P2WPKH
    outputs into `n_outputs` P2WPKH outputs.

    Assumes maximum-length signatures, so the result is an upper bound.
    """
    base = (
        4
        + len(encode_varint(n_inputs))
        + n_inputs * P2WPKH_INPUT_BASE_SIZE
        + len(encode_varint(n_outputs))
        + n_outputs * P2WPKH_OUTPUT_SIZE
        + 4
    )
    witness = 2 + n_inputs * P2WPKH_WITNESS_SIZE
    weight = base * 4 + witness
    return (weight + 3) // 4
