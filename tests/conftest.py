"""
Shared fixtures: an in-memory chain, a SQLite store and a wired gateway.
"""

import pytest

from ltc_payments.address import encode_p2wpkh_address
from ltc_payments.bitcoin import Transaction
from ltc_payments.config import Settings
from ltc_payments.db import PaymentStore
from ltc_payments.errors import ChainCallError
from ltc_payments.gateway import PaymentGateway
from ltc_payments.keyvault import KeyVault
from ltc_payments.schemas import Balance, HistoryEntry, Unspent

KEY_HEX = "11" * 32
HRP = "ltc"
MAIN_ADDRESS = encode_p2wpkh_address(HRP, bytes(range(20)))


class FakeClock:
    """Settable wall clock."""

    def __init__(self, now: float = 1_700_000_000):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeChain:
    """
    Stand-in for ElectrumClient keyed by script hash.

    Unknown script hashes have no history, no balance and no UTXOs.
    """

    def __init__(self, tip: int = 100, fee: int = 200):
        self.tip = tip
        self.fee = fee
        self.history: dict[str, list[HistoryEntry]] = {}
        self.balances: dict[str, Balance] = {}
        self.utxos: dict[str, list[Unspent]] = {}
        self.broadcasts: list[str] = []
        self.fee_vsizes: list[int] = []
        self.fail_methods: set[str] = set()
        self.connected = True
        self.closed = False

    def _maybe_fail(self, method: str) -> None:
        if method in self.fail_methods:
            raise ChainCallError(method, 3, ConnectionError("unreachable"))

    def fund(self, scripthash: str, *utxos: tuple[int, int], tx_byte: int = 0xAB) -> None:
        """Give `scripthash` one UTXO per (value, height) pair."""
        entries = []
        history = []
        for i, (value, height) in enumerate(utxos):
            tx_hash = f"{tx_byte:02x}{i:02x}" * 16
            entries.append(Unspent(tx_hash=tx_hash, tx_pos=i, value=value, height=height))
            history.append(HistoryEntry(tx_hash=tx_hash, height=height))
        self.utxos[scripthash] = entries
        self.history[scripthash] = history
        confirmed = sum(u.value for u in entries if u.height > 0)
        unconfirmed = sum(u.value for u in entries if u.height <= 0)
        self.balances[scripthash] = Balance(confirmed=confirmed, unconfirmed=unconfirmed)

    def get_history(self, scripthash: str) -> list[HistoryEntry]:
        self._maybe_fail("blockchain.scripthash.get_history")
        return list(self.history.get(scripthash, []))

    def get_balance(self, scripthash: str) -> Balance:
        self._maybe_fail("blockchain.scripthash.get_balance")
        return self.balances.get(scripthash, Balance())

    def list_unspent(self, scripthash: str) -> list[Unspent]:
        self._maybe_fail("blockchain.scripthash.listunspent")
        return list(self.utxos.get(scripthash, []))

    def tip_height(self) -> int:
        self._maybe_fail("blockchain.headers.subscribe")
        return self.tip

    def fee_rate_for(self, vsize: int) -> int:
        self.fee_vsizes.append(vsize)
        return self.fee

    def broadcast(self, raw_tx: str) -> str:
        self._maybe_fail("blockchain.transaction.broadcast")
        self.broadcasts.append(raw_tx)
        return Transaction.from_bytes(bytes.fromhex(raw_tx)).txid()

    def check_connectivity(self) -> bool:
        return self.connected

    def close(self) -> None:
        self.closed = True


def make_settings(**overrides) -> Settings:
    values = {
        "key_encryption_key": KEY_HEX,
        "main_address": MAIN_ADDRESS,
        "address_hrp": HRP,
        "database_url": "sqlite:///:memory:",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def vault() -> KeyVault:
    return KeyVault.from_hex(KEY_HEX, HRP)


@pytest.fixture
def store(tmp_path, clock) -> PaymentStore:
    store = PaymentStore(f"sqlite:///{tmp_path}/payments.db", clock=clock)
    yield store
    store.close()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(database_url=f"sqlite:///{tmp_path}/payments.db")


@pytest.fixture
def gateway(settings, store, chain, vault, clock) -> PaymentGateway:
    return PaymentGateway(settings, store, chain, vault, clock=clock)
