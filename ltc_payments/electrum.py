"""
Electrum protocol client.

Talks newline-delimited JSON-RPC to a single upstream Electrum server over
TCP or TLS. Connections are pooled; a connection that fails a call is
discarded instead of being returned to the pool. Every call runs under a
RetryPolicy and ends in either a result or a ChainCallError naming the
method.

All methods here block. From the event loop use acall()/afee_rate_for(),
which run the blocking work in a worker thread.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import socket
import ssl
import threading
from collections import deque
from decimal import ROUND_CEILING, Decimal
from typing import Any, Callable, Deque, Optional, Sequence, Union

import structlog
from pydantic import BaseModel, TypeAdapter, ValidationError

from .bitcoin import SATS_PER_COIN
from .errors import (
    ChainCallError,
    ChainError,
    ElectrumServerError,
    ProtocolError,
    TransientNetworkError,
)
from .retry import RetryPolicy
from .schemas import Balance, HeaderTip, HistoryEntry, Unspent

logger = structlog.get_logger()

Param = Union[str, int, float, bool, bytes]

MIN_SAT_PER_VBYTE = 1

METHOD_VERSION = "server.version"
METHOD_BALANCE = "blockchain.scripthash.get_balance"
METHOD_HISTORY = "blockchain.scripthash.get_history"
METHOD_LISTUNSPENT = "blockchain.scripthash.listunspent"
METHOD_HEADERS = "blockchain.headers.subscribe"
METHOD_ESTIMATEFEE = "blockchain.estimatefee"
METHOD_BROADCAST = "blockchain.transaction.broadcast"

_balance_adapter = TypeAdapter(Balance)
_history_adapter = TypeAdapter(list[HistoryEntry])
_unspent_adapter = TypeAdapter(list[Unspent])
_header_adapter = TypeAdapter(HeaderTip)
_fee_adapter = TypeAdapter(float)
_txid_adapter = TypeAdapter(str)


class ElectrumConfig(BaseModel):
    """Configuration for the Electrum connection."""

    host: str = "localhost"
    port: int = 50001
    use_ssl: bool = False
    validate_tls: bool = False
    timeout: float = 15.0
    client_name: str = "ltc-payments/1.0"
    protocol_version: str = "1.4"
    pool_size: int = 4

    @property
    def url(self) -> str:
        scheme = "ssl" if self.use_ssl else "tcp"
        return f"{scheme}://{self.host}:{self.port}"


def encode_param(value: Param) -> Any:
    """Map a call parameter to its JSON form. Bytes travel as hex."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    if isinstance(value, (str, bool, int, float)):
        return value
    raise TypeError(f"Unsupported Electrum parameter type: {type(value).__name__}")


class ElectrumConnection:
    """One session with the server. Not thread-safe; owned by the pool."""

    def __init__(self, sock: socket.socket, url: str):
        self._sock = sock
        self._reader = sock.makefile("rb")
        self._ids = itertools.count(1)
        self.url = url
        self.closed = False

    @classmethod
    def open(cls, config: ElectrumConfig) -> "ElectrumConnection":
        """Dial the server and perform the server.version handshake."""
        logger.debug("electrum_connecting", url=config.url)
        try:
            sock = socket.create_connection((config.host, config.port), timeout=config.timeout)
            if config.use_ssl:
                context = ssl.create_default_context()
                if not config.validate_tls:
                    context.check_hostname = False
                    context.verify_mode = ssl.CERT_NONE
                sock = context.wrap_socket(sock, server_hostname=config.host)
        except OSError as e:
            raise TransientNetworkError(f"dial {config.url}: {e}") from e

        conn = cls(sock, config.url)
        try:
            conn.request(METHOD_VERSION, [config.client_name, config.protocol_version])
        except ChainError:
            conn.close()
            raise

        logger.info("electrum_ready", url=config.url)
        return conn

    @property
    def is_open(self) -> bool:
        return not self.closed

    def request(self, method: str, params: Sequence[Param] = ()) -> Any:
        if self.closed:
            raise TransientNetworkError("connection is closed")

        request_id = next(self._ids)
        payload = {
            "jsonrpc": "2.0",
            "id": request_id,
            "method": method,
            "params": [encode_param(p) for p in params],
        }
        line = json.dumps(payload, separators=(",", ":")).encode("utf-8") + b"\n"

        try:
            self._sock.sendall(line)
            while True:
                raw = self._reader.readline()
                if not raw:
                    raise TransientNetworkError(f"{self.url} closed the connection")
                message = self._decode(raw)
                if "id" not in message:
                    # Subscription notification
                    continue
                if message["id"] != request_id:
                    raise ProtocolError(
                        f"response id {message['id']!r} does not match request {request_id}"
                    )
                break
        except OSError as e:
            raise TransientNetworkError(f"{method} on {self.url}: {e}") from e

        error = message.get("error")
        if error:
            if isinstance(error, dict):
                raise ElectrumServerError(error.get("code", -1), str(error.get("message", "Unknown error")))
            raise ElectrumServerError(-1, str(error))

        if "result" not in message:
            raise ProtocolError(f"{method} response has no result")
        return message["result"]

    @staticmethod
    def _decode(raw: bytes) -> dict[str, Any]:
        try:
            message = json.loads(raw)
        except ValueError as e:
            raise ProtocolError(f"invalid JSON from server: {e}") from e
        if not isinstance(message, dict):
            raise ProtocolError("server message is not a JSON object")
        return message

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._reader.close()
            self._sock.close()
        except OSError:
            logger.debug("electrum_close_failed", url=self.url)


class ConnectionPool:
    """
    Idle connections to the upstream server.

    checkout() hands out an idle connection or dials a new one; checkin()
    returns a healthy connection; discard() closes a broken one. The lock
    guards only the idle list, never network I/O.
    """

    def __init__(self, factory: Callable[[], ElectrumConnection], max_idle: int = 4):
        self._factory = factory
        self._max_idle = max_idle
        self._idle: Deque[ElectrumConnection] = deque()
        self._lock = threading.Lock()

    def checkout(self) -> ElectrumConnection:
        while True:
            with self._lock:
                conn = self._idle.pop() if self._idle else None
            if conn is None:
                return self._factory()
            if conn.is_open:
                return conn
            conn.close()

    def checkin(self, conn: ElectrumConnection) -> None:
        if not conn.is_open:
            return
        with self._lock:
            if len(self._idle) < self._max_idle:
                self._idle.append(conn)
                return
        conn.close()

    def discard(self, conn: ElectrumConnection) -> None:
        conn.close()

    def idle_count(self) -> int:
        with self._lock:
            return len(self._idle)

    def close(self) -> None:
        with self._lock:
            idle, self._idle = list(self._idle), deque()
        for conn in idle:
            conn.close()


class ElectrumClient:
    """
    Electrum client with pooling and bounded retry.

    Provides the calls needed by the sweeper and the payment lookup path.
    """

    def __init__(
        self,
        config: ElectrumConfig,
        retry: Optional[RetryPolicy] = None,
        pool: Optional[ConnectionPool] = None,
        fee_target_blocks: int = 6,
    ):
        self.config = config
        self.retry = retry or RetryPolicy()
        self.pool = pool or ConnectionPool(
            lambda: ElectrumConnection.open(config), max_idle=config.pool_size
        )
        self.fee_target_blocks = fee_target_blocks

    def call(
        self,
        method: str,
        params: Sequence[Param] = (),
        schema: Optional[TypeAdapter] = None,
    ) -> Any:
        """
        Execute `method` and return its (optionally validated) result.

        Raises:
            ChainCallError: every attempt failed
        """
        for p in params:
            encode_param(p)

        last_error: Optional[BaseException] = None
        for attempt in range(1, self.retry.max_attempts + 1):
            conn: Optional[ElectrumConnection] = None
            try:
                conn = self.pool.checkout()
                logger.debug("rpc_attempt", method=method, attempt=attempt)
                result = conn.request(method, params)
                if schema is not None:
                    try:
                        result = schema.validate_python(result)
                    except ValidationError as e:
                        raise ProtocolError(f"unexpected {method} response: {e}") from e
            except ChainError as e:
                last_error = e
                logger.error("rpc_failed", method=method, attempt=attempt, error=str(e))
                if conn is not None:
                    self.pool.discard(conn)
                if self.retry.should_retry(attempt):
                    self.retry.wait(attempt)
                continue

            self.pool.checkin(conn)
            logger.debug("rpc_success", method=method)
            return result

        raise ChainCallError(method, self.retry.max_attempts, last_error)

    async def acall(
        self,
        method: str,
        params: Sequence[Param] = (),
        schema: Optional[TypeAdapter] = None,
    ) -> Any:
        return await asyncio.to_thread(self.call, method, params, schema)

    # Typed calls

    def get_balance(self, scripthash: str) -> Balance:
        return self.call(METHOD_BALANCE, [scripthash], _balance_adapter)

    def get_history(self, scripthash: str) -> list[HistoryEntry]:
        return self.call(METHOD_HISTORY, [scripthash], _history_adapter)

    def list_unspent(self, scripthash: str) -> list[Unspent]:
        return self.call(METHOD_LISTUNSPENT, [scripthash], _unspent_adapter)

    def tip_height(self) -> int:
        header: HeaderTip = self.call(METHOD_HEADERS, [], _header_adapter)
        return header.height

    def estimate_fee(self, target_blocks: Optional[int] = None) -> float:
        """Fee estimate in coins per kilobyte (-1 when the server has none)."""
        target = target_blocks or self.fee_target_blocks
        return self.call(METHOD_ESTIMATEFEE, [target], _fee_adapter)

    def broadcast(self, raw_tx: Union[str, bytes]) -> str:
        """Submit a raw transaction. Returns the txid reported by the server."""
        raw_hex = raw_tx.hex() if isinstance(raw_tx, bytes) else raw_tx
        return self.call(METHOD_BROADCAST, [raw_hex], _txid_adapter)

    # Fees

    def sat_per_vbyte(self) -> int:
        """
        Fee rate from blockchain.estimatefee, never below 1 sat/vbyte.

        Falls back to the minimum rate when the estimate cannot be fetched.
        """
        try:
            estimate = self.estimate_fee()
        except ChainCallError as e:
            logger.warning("fee_estimate_unavailable", error=str(e), fallback=MIN_SAT_PER_VBYTE)
            return MIN_SAT_PER_VBYTE

        per_kb = Decimal(str(estimate)) * SATS_PER_COIN
        rate = int((per_kb / 1000).to_integral_value(rounding=ROUND_CEILING))
        return max(rate, MIN_SAT_PER_VBYTE)

    def fee_rate_for(self, vsize: int) -> int:
        """Total fee in base units for a transaction of `vsize` vbytes."""
        rate = self.sat_per_vbyte()
        fee = vsize * rate
        logger.debug("fee_computed", vsize=vsize, sat_per_vbyte=rate, fee=fee)
        return fee

    async def afee_rate_for(self, vsize: int) -> int:
        return await asyncio.to_thread(self.fee_rate_for, vsize)

    def check_connectivity(self) -> bool:
        try:
            self.tip_height()
            return True
        except ChainCallError:
            return False

    def close(self) -> None:
        self.pool.close()
