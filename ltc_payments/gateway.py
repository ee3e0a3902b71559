"""
Service object wiring the gateway together.

Built once at startup from Settings and shared by the HTTP layer, the
sweeper and the CLI. Nothing here is module-global.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from .config import Settings
from .db import Payment, PaymentStore
from .electrum import ElectrumClient
from .keyvault import KeyVault
from .sweeper import SweepEngine, count_confirmations
from .webhook import WebhookNotifier

logger = structlog.get_logger()


@dataclass
class PaymentStatus:
    """A payment plus live chain state, as reported to users."""

    payment: Payment
    confirmations: int
    confirmations_needed: int
    received: int  # confirmed + unconfirmed, base units


class PaymentGateway:
    """Owns the store, Electrum client, key vault, notifier and sweeper."""

    def __init__(
        self,
        settings: Settings,
        store: PaymentStore,
        chain: ElectrumClient,
        vault: KeyVault,
        notifier: Optional[WebhookNotifier] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.store = store
        self.chain = chain
        self.vault = vault
        self.notifier = notifier
        self._clock = clock
        self.sweeper = SweepEngine(
            store=store,
            chain=chain,
            vault=vault,
            main_address=settings.main_address,
            confirmations_required=settings.confirmations_required,
            interval_seconds=settings.sweep_interval_seconds,
            secondary_interval=settings.secondary_sweep_interval,
            notifier=notifier,
            clock=clock,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "PaymentGateway":
        vault = KeyVault.from_hex(settings.key_encryption_key, settings.address_hrp)
        store = PaymentStore(settings.database_url)
        chain = ElectrumClient(
            settings.electrum_config(),
            retry=settings.retry_policy(),
            fee_target_blocks=settings.fee_target_blocks,
        )
        notifier = WebhookNotifier(settings.webhook_url, settings.webhook_secret)
        return cls(settings, store, chain, vault, notifier)

    def create_payment(self, amount: int, expires_in: Optional[int] = None) -> Payment:
        """
        Create a pending payment for `amount` base units at a fresh address.

        `expires_in` seconds (None uses the configured default, 0 = never).
        """
        if amount <= 0:
            raise ValueError("amount must be positive")
        ttl = self.settings.payment_ttl_seconds if expires_in is None else expires_in

        secret, address = self.vault.generate_key()
        now = int(self._clock())
        payment = Payment(
            id=str(uuid.uuid4()),
            address=address,
            encrypted_key=self.vault.encrypt(secret),
            amount=amount,
            created_at=now,
            updated_at=now,
            expires_at=now + ttl if ttl else 0,
        )
        stored = self.store.insert(payment)
        logger.info(
            "payment_created",
            payment_id=stored.id,
            address=stored.address,
            amount=stored.amount,
            expires_at=stored.expires_at,
        )
        return stored

    def lookup(self, payment_id: str) -> Optional[PaymentStatus]:
        """
        Payment record plus live confirmations and received amount.

        Chain state is read before anything is written, so a ChainCallError
        leaves the record untouched.
        """
        payment = self.store.find(payment_id)
        if payment is None:
            return None

        scripthash = self.vault.script_identifier(payment.address)
        balance = self.chain.get_balance(scripthash)
        tip = self.chain.tip_height()
        history = self.chain.get_history(scripthash)

        if payment.is_pending and payment.is_past_deadline(int(self._clock())):
            self.store.mark_expired(payment.id)
            payment = self.store.find(payment.id) or payment

        return PaymentStatus(
            payment=payment,
            confirmations=count_confirmations(history, tip),
            confirmations_needed=self.settings.confirmations_required,
            received=max(balance.confirmed, 0) + max(balance.unconfirmed, 0),
        )

    async def close(self) -> None:
        self.sweeper.stop()
        self.chain.close()
        if self.notifier:
            await self.notifier.close()
        self.store.close()
