"""Composition root for the settlement engine.

Wires every service to one store, one notifier and one failed side-effect
queue. Use the constructors for the common setups:

    engine = SettlementEngine.in_memory(payments)
    engine = SettlementEngine.sqlite("~/.marketcore/market.db", payments)
    engine = SettlementEngine.supabase(payments, config=config)
"""

import logging
from typing import Any, Optional

from marketcore.batches.service import BatchService
from marketcore.batches.storage import InMemoryBatchStorage
from marketcore.config import SettlementConfig
from marketcore.credits.referrals import InMemoryReferralStorage, ReferralService
from marketcore.credits.service import CreditsLedger
from marketcore.credits.storage import InMemoryCreditStorage
from marketcore.errands.service import ErrandService
from marketcore.errands.storage import InMemoryErrandStorage
from marketcore.escrow.models import Order
from marketcore.escrow.service import EscrowLedger
from marketcore.escrow.storage import InMemoryOrderStorage
from marketcore.notifications import Notifier
from marketcore.protocols import NotificationDispatcher, PaymentProcessor, SuspensionChecker
from marketcore.retry import SideEffectKind, SideEffectQueue
from marketcore.wallet.service import WalletService
from marketcore.wallet.storage import InMemoryWalletStorage

logger = logging.getLogger(__name__)


class SettlementEngine:
    """All marketcore services sharing one set of storages."""

    def __init__(
        self,
        orders: Any,
        batches: Any,
        errands: Any,
        credits: Any,
        referrals: Any,
        wallets: Any,
        payments: PaymentProcessor,
        dispatcher: Optional[NotificationDispatcher] = None,
        suspensions: Optional[SuspensionChecker] = None,
        config: Optional[SettlementConfig] = None,
    ):
        """Initialize the engine.

        Args:
            orders: OrderStorage backend
            batches: BatchStorage backend (must share a store with ``orders``)
            errands: ErrandStorage backend
            credits: CreditStorage backend
            referrals: ReferralStorage backend
            wallets: WalletStorage backend
            payments: Payment processor used for authorize/capture/refund
            dispatcher: Notification transport
            suspensions: Moderation lookup
            config: Engine configuration
        """
        self.config = config or SettlementConfig()
        self.side_effects = SideEffectQueue()
        self.notifier = Notifier(dispatcher)

        self.escrow = EscrowLedger(orders, payments, self.config, self.side_effects)
        self.batches = BatchService(batches, self.escrow, self.notifier, suspensions, self.config)
        self.credits = CreditsLedger(credits, self.config)
        self.referrals = ReferralService(referrals, self.credits, self.config, self.side_effects)
        self.errands = ErrandService(
            errands,
            self.credits,
            self.notifier,
            suspensions,
            self.config,
            self.side_effects,
        )
        self.wallet = WalletService(wallets, orders, batches, self.notifier, self.config)

    @classmethod
    def from_store(cls, store: Any, payments: PaymentProcessor, **kwargs) -> "SettlementEngine":
        """Build an engine on a store that implements every storage protocol."""
        return cls(store, store, store, store, store, store, payments, **kwargs)

    @classmethod
    def in_memory(cls, payments: PaymentProcessor, **kwargs) -> "SettlementEngine":
        orders = InMemoryOrderStorage()
        return cls(
            orders,
            InMemoryBatchStorage(orders),
            InMemoryErrandStorage(),
            InMemoryCreditStorage(),
            InMemoryReferralStorage(),
            InMemoryWalletStorage(),
            payments,
            **kwargs,
        )

    @classmethod
    def sqlite(cls, db_path: str, payments: PaymentProcessor, **kwargs) -> "SettlementEngine":
        from marketcore.storage.sqlite import SQLiteStore

        return cls.from_store(SQLiteStore(db_path), payments, **kwargs)

    @classmethod
    def supabase(cls, payments: PaymentProcessor, **kwargs) -> "SettlementEngine":
        from marketcore.storage.supabase import SupabaseStore

        config = kwargs.get("config") or SettlementConfig()
        kwargs["config"] = config
        return cls.from_store(SupabaseStore.from_config(config), payments, **kwargs)

    def join_batch(
        self,
        batch_id: str,
        buyer_id: str,
        quantity: int = 1,
        customer: Optional[str] = None,
    ) -> Order:
        """Join a batch and reward the buyer's referral on their first order.

        The order is already held when the referral is processed, so a
        failed reward is queued for the reconciliation sweep rather than
        raised.
        """
        order = self.batches.join_batch(batch_id, buyer_id, quantity=quantity, customer=customer)
        try:
            self.referrals.process_first_order(buyer_id, order.id)
        except Exception as e:
            logger.error(f"Referral reward for {buyer_id} on order {order.id} failed: {e}")
            self.side_effects.record(
                SideEffectKind.REFERRAL_REWARD, buyer_id, f"{type(e).__name__}: {e}", order_id=order.id
            )
        return order
