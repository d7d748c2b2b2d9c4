"""Credits subsystem for marketcore.

Credits are expiring monetary entitlements usable against future orders.
They are issued by referrals and errand payouts and consumed oldest-expiry
first.

Modules:
- models.py: CreditEntry, CreditSource
- storage.py: CreditStorage protocol and in-memory backend
- service.py: CreditsLedger (issue, balance, apply_to_order, history)
- referrals.py: Referral, ReferralService and its storage
"""

from marketcore.credits.models import CreditEntry, CreditSource
from marketcore.credits.referrals import (
    InMemoryReferralStorage,
    Referral,
    ReferralError,
    ReferralService,
    ReferralStats,
    ReferralStatus,
    ReferralStorage,
)
from marketcore.credits.service import CreditsError, CreditsLedger, InsufficientCreditsError
from marketcore.credits.storage import CreditStorage, InMemoryCreditStorage

__all__ = [
    # Models
    "CreditEntry",
    "CreditSource",
    "Referral",
    "ReferralStatus",
    "ReferralStats",
    # Storage
    "CreditStorage",
    "InMemoryCreditStorage",
    "ReferralStorage",
    "InMemoryReferralStorage",
    # Services
    "CreditsLedger",
    "ReferralService",
    "CreditsError",
    "InsufficientCreditsError",
    "ReferralError",
]
