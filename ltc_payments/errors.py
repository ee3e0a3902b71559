"""
Exception hierarchy for the payment gateway.

Chain errors are split into the transient kind (socket/dial failures) and
the protocol kind (the node answered, but not with something we can use).
Both count against the same retry budget in the Electrum client; once the
budget is spent the caller sees a single ChainCallError.
"""

from __future__ import annotations

from typing import Optional


class PaymentGatewayError(Exception):
    """Base class for all gateway errors."""


class ConfigurationError(PaymentGatewayError):
    """Required setting missing or malformed. Fatal at startup."""


class InvalidAddressError(PaymentGatewayError, ValueError):
    """Address is not a valid witness v0 P2WPKH address."""


class AuthenticationFailure(PaymentGatewayError):
    """Encrypted key blob failed integrity verification."""


class KeyMismatchError(PaymentGatewayError):
    """Decrypted key does not derive the payment's address."""


class ChainError(PaymentGatewayError):
    """Base class for Electrum failures."""


class TransientNetworkError(ChainError):
    """Dial, handshake or socket failure against the Electrum server."""


class ProtocolError(ChainError):
    """Malformed or unexpected response."""


class ElectrumServerError(ProtocolError):
    """The server answered with a JSON-RPC error object."""

    def __init__(self, code: int, message: str):
        self.code = code
        self.message = message
        super().__init__(f"Electrum error {code}: {message}")


class ChainCallError(ChainError):
    """A call failed on every attempt of its retry policy."""

    def __init__(self, method: str, attempts: int, last_error: Optional[BaseException] = None):
        self.method = method
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"rpc failed after {attempts} attempts (method='{method}')")


class PaymentConflictError(PaymentGatewayError):
    """Payment id or address already exists."""


class WebhookDeliveryError(PaymentGatewayError):
    """Webhook endpoint rejected or did not receive the notification."""
