"""
Vendor wallet service.

Balances are computed from the escrow ledger on every read:

- RELEASED orders of the vendor's batches -> total earned
- HELD orders -> pending balance
- total earned minus live withdrawal requests -> available balance

Withdrawals only record a request; moving the money is the payout
processor's job.
"""

import logging
import threading
from collections import defaultdict
from decimal import Decimal
from typing import List, Optional

from marketcore.batches.storage import BatchStorage
from marketcore.config import SettlementConfig
from marketcore.escrow.models import EscrowStatus
from marketcore.escrow.storage import OrderStorage
from marketcore.notifications import NotificationType, Notifier
from marketcore.protocols import MarketcoreError
from marketcore.types import ZERO, to_money, utc_now
from marketcore.wallet.models import (
    VendorWallet,
    WalletReconciliation,
    WithdrawalRequest,
    WithdrawalStatus,
)
from marketcore.wallet.storage import WalletStorage

logger = logging.getLogger(__name__)


class WalletError(MarketcoreError):
    """Base exception for wallet operations."""

    pass


class BelowMinimumError(WalletError):
    """Withdrawal amount is below the configured minimum."""

    def __init__(self, amount: Decimal, minimum: Decimal):
        self.amount = amount
        self.minimum = minimum
        super().__init__(f"Minimum withdrawal amount is {minimum}, requested {amount}")


class InsufficientBalanceError(WalletError):
    """Withdrawal amount exceeds the available balance."""

    def __init__(self, amount: Decimal, available: Decimal):
        self.amount = amount
        self.available = available
        super().__init__(f"Insufficient balance: requested {amount}, available {available}")


class WithdrawalNotFoundError(WalletError):
    """Withdrawal request does not exist."""

    pass


class WalletService:
    """Derived vendor balances and withdrawal requests."""

    def __init__(
        self,
        storage: WalletStorage,
        orders: OrderStorage,
        batches: BatchStorage,
        notifier: Optional[Notifier] = None,
        config: Optional[SettlementConfig] = None,
    ):
        self.storage = storage
        self.orders = orders
        self.batches = batches
        self.notifier = notifier or Notifier()
        self.config = config or SettlementConfig()
        # Serializes the balance check and insert of withdrawals per vendor
        self._vendor_locks: dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def _vendor_lock(self, vendor_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._vendor_locks[vendor_id]

    # === Balances ===

    def compute_wallet(self, vendor_id: str) -> VendorWallet:
        """Recompute the wallet from escrow and withdrawals. Stores nothing."""
        batch_ids = [b.id for b in self.batches.list_batches(vendor_id=vendor_id)]
        earned = pending = ZERO
        if batch_ids:
            for order in self.orders.list_orders(batch_ids=batch_ids):
                if order.escrow_status == EscrowStatus.RELEASED.value:
                    earned += order.amount
                elif order.escrow_status == EscrowStatus.HELD.value:
                    pending += order.amount

        withdrawn = ZERO
        for withdrawal in self.storage.list_withdrawals(vendor_id):
            if withdrawal.counts_against_balance:
                withdrawn += withdrawal.amount

        return VendorWallet(
            vendor_id=vendor_id,
            available_balance=earned - withdrawn,
            pending_balance=pending,
            total_earned=earned,
            total_withdrawn=withdrawn,
            updated_at=utc_now(),
        )

    def get_wallet(self, vendor_id: str) -> VendorWallet:
        """Current wallet for a vendor. Refreshes the stored snapshot."""
        wallet = self.compute_wallet(vendor_id)
        self.storage.save_wallet_snapshot(wallet)
        return wallet

    def reconcile_wallet(self, vendor_id: str) -> WalletReconciliation:
        """Recompute the wallet and report how far the snapshot had drifted."""
        previous = self.storage.get_wallet_snapshot(vendor_id)
        wallet = self.compute_wallet(vendor_id)
        drift = wallet.drift_from(previous) if previous is not None else {}
        self.storage.save_wallet_snapshot(wallet)
        if drift:
            logger.warning(f"Wallet for {vendor_id} drifted from snapshot: {drift}")
        return WalletReconciliation(wallet=wallet, previous=previous, drift=drift)

    # === Withdrawals ===

    def create_withdrawal(self, vendor_id: str, amount, method_id: str) -> WithdrawalRequest:
        """Record a PENDING withdrawal against the available balance.

        Raises:
            BelowMinimumError: Amount under the configured minimum
            InsufficientBalanceError: Amount over the available balance
            WalletError: Invalid amount, method or fee
        """
        try:
            amount = to_money(amount)
        except ValueError as e:
            raise WalletError(str(e)) from e
        minimum = to_money(self.config.minimum_withdrawal)
        if amount < minimum:
            raise BelowMinimumError(amount, minimum)

        fee = to_money(self.config.withdrawal_fee)
        if fee >= amount:
            raise WalletError(f"Withdrawal fee {fee} leaves nothing to pay out")

        with self._vendor_lock(vendor_id):
            wallet = self.compute_wallet(vendor_id)
            if amount > wallet.available_balance:
                raise InsufficientBalanceError(amount, wallet.available_balance)
            try:
                withdrawal = WithdrawalRequest(
                    vendor_id=vendor_id,
                    method_id=method_id,
                    amount=amount,
                    fee=fee,
                    minimum_threshold=minimum,
                )
            except ValueError as e:
                raise WalletError(str(e)) from e
            self.storage.save_withdrawal(withdrawal)

        logger.info(f"Withdrawal {withdrawal.id} requested by {vendor_id} ({amount})")
        self.notifier.send(
            vendor_id,
            NotificationType.WITHDRAWAL_REQUESTED,
            "Withdrawal Requested",
            f"Your withdrawal of {withdrawal.net_amount} is being processed.",
            {"withdrawal_id": withdrawal.id},
        )
        return withdrawal

    def get_withdrawal(self, withdrawal_id: str) -> WithdrawalRequest:
        withdrawal = self.storage.get_withdrawal(withdrawal_id)
        if withdrawal is None:
            raise WithdrawalNotFoundError(f"Withdrawal {withdrawal_id} not found")
        return withdrawal

    def list_withdrawals(
        self, vendor_id: str, status: Optional[WithdrawalStatus] = None
    ) -> List[WithdrawalRequest]:
        return self.storage.list_withdrawals(vendor_id, status=status)
