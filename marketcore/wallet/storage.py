"""
Wallet storage layer.

Keeps the per-vendor wallet snapshot and the withdrawal requests. Order
amounts themselves stay in the escrow storage.
"""

import logging
import threading
from typing import List, Optional, Protocol

from marketcore.wallet.models import VendorWallet, WithdrawalRequest, WithdrawalStatus

logger = logging.getLogger(__name__)


class WalletStorage(Protocol):
    """Protocol for wallet persistence backends."""

    def get_wallet_snapshot(self, vendor_id: str) -> Optional[VendorWallet]:
        """Get the last stored wallet for a vendor."""
        ...

    def save_wallet_snapshot(self, wallet: VendorWallet) -> None:
        """Store (overwrite) the wallet snapshot for a vendor."""
        ...

    def save_withdrawal(self, withdrawal: WithdrawalRequest) -> str:
        """Insert a withdrawal request. Returns its ID."""
        ...

    def get_withdrawal(self, withdrawal_id: str) -> Optional[WithdrawalRequest]:
        """Get a withdrawal request by ID."""
        ...

    def list_withdrawals(
        self,
        vendor_id: str,
        status: Optional[WithdrawalStatus] = None,
        limit: int = 1000,
    ) -> List[WithdrawalRequest]:
        """List a vendor's withdrawal requests, newest first."""
        ...


class InMemoryWalletStorage:
    """In-memory wallet storage for testing and local development."""

    def __init__(self):
        """Initialize empty storage."""
        self._wallets: dict[str, VendorWallet] = {}
        self._withdrawals: dict[str, WithdrawalRequest] = {}
        self._lock = threading.Lock()

    def get_wallet_snapshot(self, vendor_id: str) -> Optional[VendorWallet]:
        """Get the stored wallet."""
        return self._wallets.get(vendor_id)

    def save_wallet_snapshot(self, wallet: VendorWallet) -> None:
        """Store the wallet."""
        with self._lock:
            self._wallets[wallet.vendor_id] = wallet

    def save_withdrawal(self, withdrawal: WithdrawalRequest) -> str:
        """Insert a withdrawal request."""
        with self._lock:
            self._withdrawals[withdrawal.id] = withdrawal
        return withdrawal.id

    def get_withdrawal(self, withdrawal_id: str) -> Optional[WithdrawalRequest]:
        """Get a withdrawal request."""
        return self._withdrawals.get(withdrawal_id)

    def list_withdrawals(
        self,
        vendor_id: str,
        status: Optional[WithdrawalStatus] = None,
        limit: int = 1000,
    ) -> List[WithdrawalRequest]:
        """List withdrawal requests."""
        with self._lock:
            withdrawals = [w for w in self._withdrawals.values() if w.vendor_id == vendor_id]
        if status is not None:
            status_val = WithdrawalStatus(status).value
            withdrawals = [w for w in withdrawals if w.status == status_val]
        withdrawals.sort(key=lambda w: w.requested_at, reverse=True)
        return withdrawals[:limit]
