"""
Sweeper - moves confirmed funds from receiving addresses to cold storage.

Every tick the sweeper walks the payment table. Pending payments are
evaluated on every tick; completed and expired ones only once every
`secondary_interval` ticks, to pick up coins that arrive after a sweep.
A payment is swept when its history has enough confirmations and its
confirmed balance covers the requested amount (any positive balance for
a payment that is already terminal).

Nothing is written before the broadcast succeeds, so a failed sweep is
simply recomputed on the next eligible tick.
"""

import asyncio
import time
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable, Optional

import structlog

from .address import decode_p2wpkh_address
from .bitcoin import (
    OutPoint,
    Transaction,
    TxIn,
    TxOut,
    estimate_sweep_vsize,
    p2wpkh_script,
)
from .db import STATUS_EXPIRED, Payment, PaymentStore
from .electrum import ElectrumClient
from .keyvault import KeyVault
from .schemas import HistoryEntry, Unspent
from .webhook import WebhookNotifier

logger = structlog.get_logger()

# Balance that makes a terminal payment worth sweeping again
LATE_DEPOSIT_THRESHOLD = 1


class SweepOutcome(str, Enum):
    NOT_CONFIRMED = "not_confirmed"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    NO_UTXOS = "no_utxos"
    DUST = "dust"
    SWEPT = "swept"


@dataclass
class SweepResult:
    """What happened to one payment during a tick."""

    payment_id: str
    outcome: SweepOutcome
    confirmations: int = 0
    txid: Optional[str] = None
    fee: Optional[int] = None
    value: Optional[int] = None


@dataclass
class SweeperState:
    """Current sweeper state."""

    is_running: bool = False
    cycles: int = 0
    last_tick_at: Optional[datetime] = None
    swept: int = 0
    failed: int = 0


def count_confirmations(history: Iterable[HistoryEntry], tip_height: int) -> int:
    """
    Confirmations of the least-confirmed confirmed transaction.

    Mempool entries (height <= 0) are ignored; no confirmed entries means 0.
    """
    depths = [tip_height - entry.height + 1 for entry in history if entry.height > 0]
    return min(depths) if depths else 0


class SweepEngine:
    """
    Periodic sweeper.

    All blocking work (database, Electrum, signing) runs in worker threads
    so the event loop keeps serving requests.
    """

    def __init__(
        self,
        store: PaymentStore,
        chain: ElectrumClient,
        vault: KeyVault,
        main_address: str,
        confirmations_required: int = 2,
        interval_seconds: float = 10.0,
        secondary_interval: int = 360,
        notifier: Optional[WebhookNotifier] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.chain = chain
        self.vault = vault
        self.main_address = main_address
        self.main_script = p2wpkh_script(decode_p2wpkh_address(main_address))
        self.confirmations_required = confirmations_required
        self.interval_seconds = interval_seconds
        self.secondary_interval = secondary_interval
        self.notifier = notifier
        self._clock = clock
        self.state = SweeperState()

        logger.info(
            "sweeper_initialized",
            main_address=main_address,
            confirmations_required=confirmations_required,
            interval_seconds=interval_seconds,
            secondary_interval=secondary_interval,
        )

    def is_due(self, payment: Payment, cycle: int) -> bool:
        if payment.is_pending:
            return True
        return cycle % self.secondary_interval == 0

    async def tick(self) -> list[SweepResult]:
        """Run one evaluation pass over all payments."""
        self.state.cycles += 1
        cycle = self.state.cycles
        results: list[SweepResult] = []

        try:
            payments = await asyncio.to_thread(self.store.all)
        except Exception as e:
            logger.error("sweep_load_failed", cycle=cycle, error=str(e))
            return results

        for payment in payments:
            if not self.is_due(payment, cycle):
                continue
            try:
                result = await self.process(payment)
            except Exception as e:
                self.state.failed += 1
                logger.error(
                    "sweep_payment_error",
                    payment_id=payment.id,
                    address=payment.address,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue

            results.append(result)
            if result.outcome is SweepOutcome.SWEPT:
                self.state.swept += 1

        self.state.last_tick_at = datetime.now()
        return results

    async def process(self, payment: Payment) -> SweepResult:
        """Evaluate one payment and sweep it if eligible."""
        now = int(self._clock())
        if payment.is_pending and payment.is_past_deadline(now):
            if await asyncio.to_thread(self.store.mark_expired, payment.id):
                payment = replace(payment, status=STATUS_EXPIRED)
            else:
                payment = await asyncio.to_thread(self.store.find, payment.id) or payment

        scripthash = self.vault.script_identifier(payment.address)

        history = await asyncio.to_thread(self.chain.get_history, scripthash)
        tip = await asyncio.to_thread(self.chain.tip_height)
        confirmations = count_confirmations(history, tip)
        if confirmations < self.confirmations_required:
            return SweepResult(payment.id, SweepOutcome.NOT_CONFIRMED, confirmations)

        balance = await asyncio.to_thread(self.chain.get_balance, scripthash)
        threshold = payment.amount if payment.is_pending else LATE_DEPOSIT_THRESHOLD
        if balance.confirmed < threshold:
            logger.debug(
                "sweep_balance_below_threshold",
                payment_id=payment.id,
                confirmed=balance.confirmed,
                threshold=threshold,
            )
            return SweepResult(payment.id, SweepOutcome.INSUFFICIENT_BALANCE, confirmations)

        utxos = await asyncio.to_thread(self.chain.list_unspent, scripthash)
        return await self._sweep(payment, utxos, confirmations)

    def build_sweep(self, utxos: list[Unspent]) -> tuple[Transaction, list[int]]:
        """Unsigned transaction spending every UTXO to the main address (output value 0)."""
        tx = Transaction(version=2, locktime=0)
        prev_values = []
        for utxo in utxos:
            tx.inputs.append(TxIn(prevout=OutPoint.from_display(utxo.tx_hash, utxo.tx_pos)))
            prev_values.append(utxo.value)
        tx.outputs.append(TxOut(value=0, script_pubkey=self.main_script))
        return tx, prev_values

    def _sign(self, tx: Transaction, payment: Payment, prev_values: list[int]) -> Transaction:
        secret = self.vault.decrypt(payment.encrypted_key)
        return self.vault.sign_sweep(tx, secret, prev_values, expected_address=payment.address)

    async def _sweep(
        self, payment: Payment, utxos: list[Unspent], confirmations: int
    ) -> SweepResult:
        if not utxos:
            return SweepResult(payment.id, SweepOutcome.NO_UTXOS, confirmations)

        tx, prev_values = self.build_sweep(utxos)
        total = sum(prev_values)

        vsize = estimate_sweep_vsize(len(tx.inputs), len(tx.outputs))
        fee = await asyncio.to_thread(self.chain.fee_rate_for, vsize)
        if total <= fee:
            logger.info("sweep_skipped_dust", payment_id=payment.id, total=total, fee=fee)
            return SweepResult(payment.id, SweepOutcome.DUST, confirmations, fee=fee)

        tx.outputs[0].value = total - fee
        tx = await asyncio.to_thread(self._sign, tx, payment, prev_values)

        raw_hex = tx.serialize().hex()
        txid = await asyncio.to_thread(self.chain.broadcast, raw_hex)

        logger.info(
            "sweep_broadcast",
            payment_id=payment.id,
            txid=txid,
            inputs=len(tx.inputs),
            total=total,
            fee=fee,
            value=total - fee,
        )

        if payment.status != STATUS_EXPIRED:
            was_pending = payment.is_pending
            await asyncio.to_thread(self.store.mark_completed, payment.id)
            if was_pending:
                await self._notify_completed(payment.id)

        return SweepResult(
            payment.id,
            SweepOutcome.SWEPT,
            confirmations,
            txid=txid,
            fee=fee,
            value=total - fee,
        )

    async def _notify_completed(self, payment_id: str) -> None:
        if self.notifier is None or not self.notifier.enabled:
            return
        payment = await asyncio.to_thread(self.store.find, payment_id)
        if payment is None:
            return
        try:
            await self.notifier.payment_completed(payment)
        except Exception as e:
            logger.error("webhook_failed", payment_id=payment_id, error=str(e))

    async def run(self) -> None:
        """Run the sweeper until stop() is called."""
        self.state.is_running = True
        logger.info("sweeper_starting", interval_seconds=self.interval_seconds)

        while self.state.is_running:
            results = await self.tick()
            swept = sum(1 for r in results if r.outcome is SweepOutcome.SWEPT)
            logger.debug(
                "sweep_cycle_complete",
                cycle=self.state.cycles,
                evaluated=len(results),
                swept=swept,
                total_swept=self.state.swept,
                total_failed=self.state.failed,
            )
            await asyncio.sleep(self.interval_seconds)

    def stop(self) -> None:
        """Stop the sweeper."""
        self.state.is_running = False
        logger.info("sweeper_stopping")
