"""Vendor wallet subsystem for marketcore.

A vendor's wallet is derived from the escrow ledger: released orders are
earnings, held orders are pending. Withdrawal requests are recorded
against the available balance.

Modules:
- models.py: VendorWallet, WithdrawalRequest, WithdrawalStatus
- storage.py: WalletStorage protocol and in-memory backend
- service.py: WalletService (get, reconcile, withdraw)
"""

from marketcore.wallet.models import (
    VALID_WITHDRAWAL_TRANSITIONS,
    VendorWallet,
    WalletReconciliation,
    WithdrawalRequest,
    WithdrawalStatus,
)
from marketcore.wallet.service import (
    BelowMinimumError,
    InsufficientBalanceError,
    WalletError,
    WalletService,
    WithdrawalNotFoundError,
)
from marketcore.wallet.storage import InMemoryWalletStorage, WalletStorage

__all__ = [
    # Models
    "VendorWallet",
    "WithdrawalRequest",
    "WithdrawalStatus",
    "WalletReconciliation",
    "VALID_WITHDRAWAL_TRANSITIONS",
    # Storage
    "WalletStorage",
    "InMemoryWalletStorage",
    # Service
    "WalletService",
    "WalletError",
    "BelowMinimumError",
    "InsufficientBalanceError",
    "WithdrawalNotFoundError",
]
