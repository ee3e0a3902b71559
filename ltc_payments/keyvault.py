"""
Key material for receiving addresses.

Every payment gets a fresh secp256k1 key. The secret is kept encrypted at
rest with AES-256-GCM under a single process-wide key taken from
configuration; the blob layout is hex(nonce[12] || tag[16] || ciphertext).
"""

from __future__ import annotations

import hashlib
import os
from typing import Optional, Sequence

import structlog
from coincurve import PrivateKey
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .address import decode_p2wpkh_address, encode_p2wpkh_address
from .bitcoin import (
    SIGHASH_ALL,
    Transaction,
    hash160,
    p2pkh_script,
    p2wpkh_script,
    segwit_sighash,
)
from .errors import AuthenticationFailure, ConfigurationError, KeyMismatchError

logger = structlog.get_logger()

NONCE_SIZE = 12
TAG_SIZE = 16
ENCRYPTION_KEY_SIZE = 32


def script_hash(address: str) -> str:
    """
    Electrum script hash for an address.

    sha256 of the P2WPKH scriptPubKey, byte-reversed, hex encoded. This is
    the key used by the blockchain.scripthash.* methods.
    """
    program = decode_p2wpkh_address(address)
    digest = hashlib.sha256(p2wpkh_script(program)).digest()
    return digest[::-1].hex()


class KeyVault:
    """Generates receiving keys and guards their secrets."""

    def __init__(self, encryption_key: bytes, hrp: str):
        if len(encryption_key) != ENCRYPTION_KEY_SIZE:
            raise ConfigurationError(
                f"Key encryption key must be {ENCRYPTION_KEY_SIZE} bytes, got {len(encryption_key)}"
            )
        self.hrp = hrp
        self._aead = AESGCM(encryption_key)

    @classmethod
    def from_hex(cls, key_hex: str, hrp: str) -> "KeyVault":
        try:
            key = bytes.fromhex(key_hex)
        except ValueError as e:
            raise ConfigurationError("Key encryption key is not valid hex") from e
        return cls(key, hrp)

    def address_for(self, private_key: PrivateKey) -> str:
        pubkey = private_key.public_key.format(compressed=True)
        return encode_p2wpkh_address(self.hrp, hash160(pubkey))

    def generate_key(self) -> tuple[bytes, str]:
        """Fresh key pair. Returns (32-byte secret, receiving address)."""
        private_key = PrivateKey()
        return private_key.secret, self.address_for(private_key)

    def encrypt(self, secret: bytes) -> str:
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, secret, None)
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return (nonce + tag + ciphertext).hex()

    def decrypt(self, blob: str) -> bytes:
        """
        Reverse encrypt().

        Raises:
            AuthenticationFailure: blob is malformed, was tampered with, or
                was sealed under a different key
        """
        try:
            raw = bytes.fromhex(blob)
        except ValueError as e:
            raise AuthenticationFailure("Encrypted key is not valid hex") from e
        if len(raw) < NONCE_SIZE + TAG_SIZE:
            raise AuthenticationFailure("Encrypted key is truncated")

        nonce = raw[:NONCE_SIZE]
        tag = raw[NONCE_SIZE : NONCE_SIZE + TAG_SIZE]
        ciphertext = raw[NONCE_SIZE + TAG_SIZE :]
        try:
            return self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as e:
            raise AuthenticationFailure("Encrypted key failed authentication") from e

    def script_identifier(self, address: str) -> str:
        return script_hash(address)

    def sign_sweep(
        self,
        tx: Transaction,
        secret: bytes,
        prev_values: Sequence[int],
        expected_address: Optional[str] = None,
    ) -> Transaction:
        """
        Sign every input of `tx` as a P2WPKH spend by `secret`.

        `prev_values[i]` is the amount of the output spent by input i. Each
        witness becomes [DER signature || SIGHASH_ALL, compressed pubkey].
        """
        if len(prev_values) != len(tx.inputs):
            raise ValueError("prev_values must have one entry per input")

        private_key = PrivateKey(secret)
        if expected_address is not None and self.address_for(private_key) != expected_address:
            raise KeyMismatchError(f"Key does not derive address {expected_address}")

        pubkey = private_key.public_key.format(compressed=True)
        script_code = p2pkh_script(hash160(pubkey))

        for i, value in enumerate(prev_values):
            digest = segwit_sighash(tx, i, script_code, value, SIGHASH_ALL)
            signature = private_key.sign(digest, hasher=None) + bytes([SIGHASH_ALL])
            tx.inputs[i].witness = [signature, pubkey]

        logger.debug("sweep_signed", inputs=len(tx.inputs))
        return tx
