"""
Tests for the Electrum client: wire framing, pooling, retry and fees.
"""

import json
import socket

import pytest

from ltc_payments.electrum import (
    METHOD_BALANCE,
    METHOD_ESTIMATEFEE,
    METHOD_HEADERS,
    ConnectionPool,
    ElectrumClient,
    ElectrumConfig,
    ElectrumConnection,
    encode_param,
)
from ltc_payments.errors import (
    ChainCallError,
    ElectrumServerError,
    ProtocolError,
    TransientNetworkError,
)
from ltc_payments.retry import RetryPolicy
from ltc_payments.schemas import Balance

SCRIPTHASH = "ab" * 32


class FakeConnection:
    """Connection answering from a script of results or exceptions."""

    def __init__(self, script: list):
        self.script = script
        self.calls: list[tuple[str, list]] = []
        self.closed = False

    @property
    def is_open(self) -> bool:
        return not self.closed

    def request(self, method, params=()):
        self.calls.append((method, list(params)))
        outcome = self.script.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def close(self) -> None:
        self.closed = True


class ScriptedFactory:
    """Dials FakeConnections that share one response script."""

    def __init__(self, *script):
        self.script = list(script)
        self.dialed: list[FakeConnection] = []

    def __call__(self) -> FakeConnection:
        conn = FakeConnection(self.script)
        self.dialed.append(conn)
        return conn


def make_client(factory, max_attempts: int = 3):
    sleeps: list[float] = []
    retry = RetryPolicy(max_attempts=max_attempts, backoff_seconds=0.5, sleep=sleeps.append)
    pool = ConnectionPool(factory, max_idle=2)
    client = ElectrumClient(ElectrumConfig(), retry=retry, pool=pool)
    return client, sleeps


class TestEncodeParam:
    """Test parameter encoding."""

    def test_bytes_as_hex(self) -> None:
        assert encode_param(b"\x01\xff") == "01ff"

    def test_scalars_pass_through(self) -> None:
        assert encode_param("x") == "x"
        assert encode_param(6) == 6
        assert encode_param(True) is True
        assert encode_param(0.5) == 0.5

    def test_unsupported_type(self) -> None:
        with pytest.raises(TypeError):
            encode_param({"a": 1})


class TestRetryPolicy:
    """Test the backoff schedule."""

    def test_linear_backoff(self) -> None:
        policy = RetryPolicy()
        assert policy.delay(1) == 0.5
        assert policy.delay(2) == 1.0
        assert policy.should_retry(2)
        assert not policy.should_retry(3)

    def test_invalid_attempts(self) -> None:
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


class TestElectrumConnection:
    """Test request framing over a socket pair."""

    def _pair(self, *replies: dict):
        ours, theirs = socket.socketpair()
        theirs.sendall(b"".join(json.dumps(r).encode() + b"\n" for r in replies))
        return ElectrumConnection(ours, "tcp://test:0"), theirs

    def test_request_and_notification_skip(self) -> None:
        conn, peer = self._pair(
            {"jsonrpc": "2.0", "method": "blockchain.headers.subscribe", "params": [{"height": 9}]},
            {"jsonrpc": "2.0", "id": 1, "result": {"height": 10, "hex": ""}},
        )
        try:
            assert conn.request(METHOD_HEADERS, []) == {"height": 10, "hex": ""}
            sent = json.loads(peer.recv(4096).split(b"\n")[0])
            assert sent == {"jsonrpc": "2.0", "id": 1, "method": METHOD_HEADERS, "params": []}
        finally:
            conn.close()
            peer.close()

    def test_bytes_params_sent_as_hex(self) -> None:
        conn, peer = self._pair({"jsonrpc": "2.0", "id": 1, "result": "ok"})
        try:
            conn.request("blockchain.transaction.broadcast", [b"\xde\xad"])
            sent = json.loads(peer.recv(4096).split(b"\n")[0])
            assert sent["params"] == ["dead"]
        finally:
            conn.close()
            peer.close()

    def test_server_error(self) -> None:
        conn, peer = self._pair(
            {"jsonrpc": "2.0", "id": 1, "error": {"code": -32600, "message": "bad tx"}}
        )
        try:
            with pytest.raises(ElectrumServerError) as exc_info:
                conn.request("blockchain.transaction.broadcast", ["00"])
            assert exc_info.value.code == -32600
        finally:
            conn.close()
            peer.close()

    def test_mismatched_id(self) -> None:
        conn, peer = self._pair({"jsonrpc": "2.0", "id": 7, "result": 1})
        try:
            with pytest.raises(ProtocolError):
                conn.request(METHOD_HEADERS, [])
        finally:
            conn.close()
            peer.close()

    def test_eof_is_transient(self) -> None:
        conn, peer = self._pair()
        peer.shutdown(socket.SHUT_WR)
        try:
            with pytest.raises(TransientNetworkError):
                conn.request(METHOD_HEADERS, [])
        finally:
            conn.close()
            peer.close()

    def test_closed_connection(self) -> None:
        conn, peer = self._pair()
        conn.close()
        peer.close()
        assert not conn.is_open
        with pytest.raises(TransientNetworkError):
            conn.request(METHOD_HEADERS, [])


class TestConnectionPool:
    """Test checkout/checkin/discard."""

    def test_reuses_idle_connection(self) -> None:
        factory = ScriptedFactory()
        pool = ConnectionPool(factory, max_idle=2)
        conn = pool.checkout()
        pool.checkin(conn)
        assert pool.idle_count() == 1
        assert pool.checkout() is conn
        assert len(factory.dialed) == 1

    def test_closed_connections_not_reused(self) -> None:
        factory = ScriptedFactory()
        pool = ConnectionPool(factory)
        conn = pool.checkout()
        pool.checkin(conn)
        conn.close()
        assert pool.checkout() is not conn

    def test_idle_limit(self) -> None:
        factory = ScriptedFactory()
        pool = ConnectionPool(factory, max_idle=1)
        first, second = pool.checkout(), pool.checkout()
        pool.checkin(first)
        pool.checkin(second)
        assert pool.idle_count() == 1
        assert second.closed


class TestElectrumClient:
    """Test retry, validation and the typed calls."""

    def test_success_checks_connection_back_in(self) -> None:
        factory = ScriptedFactory({"confirmed": 5, "unconfirmed": 1})
        client, sleeps = make_client(factory)

        balance = client.get_balance(SCRIPTHASH)

        assert balance == Balance(confirmed=5, unconfirmed=1)
        assert factory.dialed[0].calls == [(METHOD_BALANCE, [SCRIPTHASH])]
        assert client.pool.idle_count() == 1
        assert sleeps == []

    def test_retries_then_succeeds(self) -> None:
        factory = ScriptedFactory(
            TransientNetworkError("reset"),
            {"height": 42, "hex": "00"},
        )
        client, sleeps = make_client(factory)

        assert client.tip_height() == 42
        assert sleeps == [0.5]
        assert factory.dialed[0].closed
        assert len(factory.dialed) == 2

    def test_gives_up_after_max_attempts(self) -> None:
        factory = ScriptedFactory(*[TransientNetworkError("down")] * 3)
        client, sleeps = make_client(factory)

        with pytest.raises(ChainCallError) as exc_info:
            client.get_balance(SCRIPTHASH)

        assert exc_info.value.method == METHOD_BALANCE
        assert exc_info.value.attempts == 3
        assert METHOD_BALANCE in str(exc_info.value)
        assert sleeps == [0.5, 1.0]
        assert all(conn.closed for conn in factory.dialed)
        assert client.pool.idle_count() == 0

    def test_dial_failures_count(self) -> None:
        dials = []

        def failing_factory():
            dials.append(1)
            raise TransientNetworkError("refused")

        client, sleeps = make_client(failing_factory)
        with pytest.raises(ChainCallError):
            client.tip_height()
        assert len(dials) == 3

    def test_server_error_is_retried(self) -> None:
        factory = ScriptedFactory(ElectrumServerError(-1, "busy"), "ab" * 32)
        client, _ = make_client(factory)
        assert client.broadcast(b"\x00") == "ab" * 32
        assert factory.dialed[1].calls == [("blockchain.transaction.broadcast", ["00"])]

    def test_schema_mismatch_is_protocol_error(self) -> None:
        factory = ScriptedFactory(*[[{"tx_hash": "short", "tx_pos": 0, "value": 1}]] * 2)
        client, _ = make_client(factory, max_attempts=2)

        with pytest.raises(ChainCallError) as exc_info:
            client.list_unspent(SCRIPTHASH)
        assert isinstance(exc_info.value.last_error, ProtocolError)

    def test_unknown_fields_ignored(self) -> None:
        factory = ScriptedFactory([{"tx_hash": "cd" * 32, "height": 7, "extra": True}])
        client, _ = make_client(factory)
        history = client.get_history(SCRIPTHASH)
        assert history[0].height == 7

    @pytest.mark.asyncio
    async def test_acall(self) -> None:
        factory = ScriptedFactory(0.001)
        client, _ = make_client(factory)
        assert await client.acall(METHOD_ESTIMATEFEE, [6]) == 0.001


class TestFees:
    """Test fee-rate derivation from blockchain.estimatefee."""

    def test_rate_from_estimate(self) -> None:
        # 0.0001 coin/kB = 10000 sat/kB = 10 sat/vB
        client, _ = make_client(ScriptedFactory(0.0001))
        assert client.fee_rate_for(110) == 1100

    def test_rate_rounds_up(self) -> None:
        client, _ = make_client(ScriptedFactory(0.000015))
        assert client.sat_per_vbyte() == 2

    def test_zero_or_negative_estimate_uses_minimum(self) -> None:
        client, _ = make_client(ScriptedFactory(0, -1))
        assert client.sat_per_vbyte() == 1
        assert client.sat_per_vbyte() == 1

    def test_unavailable_estimate_uses_minimum(self) -> None:
        client, _ = make_client(ScriptedFactory(*[TransientNetworkError("down")] * 3))
        assert client.fee_rate_for(200) == 200

    def test_fee_monotonic_in_vsize(self) -> None:
        client, _ = make_client(ScriptedFactory(*[0.00012] * 5))
        fees = [client.fee_rate_for(v) for v in (100, 141, 200, 250, 400)]
        assert fees == sorted(fees)

    def test_target_blocks(self) -> None:
        factory = ScriptedFactory(0.0001)
        client, _ = make_client(factory)
        client.estimate_fee()
        assert factory.dialed[0].calls == [(METHOD_ESTIMATEFEE, [6])]

    @pytest.mark.asyncio
    async def test_async_fee(self) -> None:
        client, _ = make_client(ScriptedFactory(0.0001))
        assert await client.afee_rate_for(100) == 1000
