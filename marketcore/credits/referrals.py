"""
Referral tracking and rewards.

A referral code is single use. The referrer's code row waits PENDING
until someone signs up with it (JOINED); the referred user's first order
moves it to REWARDED and issues credit to both sides:

    PENDING --signup--> JOINED --first order--> REWARDED

The JOINED -> REWARDED compare-and-set decides who issues the credits, so
a first-order hook that fires twice rewards once. Each credit is keyed on
the referral, so the sweep can re-issue rewards that failed or were cut
off without paying either side twice.
"""

import logging
import re
import secrets
import string
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from marketcore.config import SettlementConfig
from marketcore.credits.models import CreditSource
from marketcore.credits.service import CreditsError, CreditsLedger
from marketcore.retry import RetryConfig, SideEffectKind, SideEffectQueue, call_with_retry
from marketcore.types import ZERO, format_datetime, money_str, parse_datetime, to_money, utc_now

logger = logging.getLogger(__name__)

CODE_PREFIX_LENGTH = 3
CODE_SUFFIX_LENGTH = 6
_CODE_ALPHABET = string.digits + string.ascii_uppercase


class ReferralStatus(str, Enum):
    """Lifecycle status of a referral."""

    PENDING = "pending"  # Code issued, nobody has used it yet
    JOINED = "joined"  # Referred user signed up
    REWARDED = "rewarded"  # Referred user ordered; credits issued


VALID_REFERRAL_TRANSITIONS: Dict[ReferralStatus, set] = {
    ReferralStatus.PENDING: {ReferralStatus.JOINED},
    ReferralStatus.JOINED: {ReferralStatus.REWARDED},
    ReferralStatus.REWARDED: set(),
}


@dataclass
class Referral:
    """A referral code and what became of it."""

    referrer_id: str
    referral_code: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    referred_id: Optional[str] = None
    product_id: Optional[str] = None
    status: str = ReferralStatus.PENDING.value
    referrer_credits: Optional[Decimal] = None
    referee_credits: Optional[Decimal] = None
    created_at: datetime = field(default_factory=utc_now)
    joined_at: Optional[datetime] = None
    rewarded_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.referral_code:
            raise ValueError("Referral code is required")
        if isinstance(self.status, ReferralStatus):
            self.status = self.status.value
        valid = {s.value for s in ReferralStatus}
        if self.status not in valid:
            raise ValueError(f"Invalid status: {self.status}. Must be one of {sorted(valid)}")
        if self.referrer_credits is not None:
            self.referrer_credits = to_money(self.referrer_credits)
        if self.referee_credits is not None:
            self.referee_credits = to_money(self.referee_credits)

    def can_transition_to(self, new_status: ReferralStatus) -> bool:
        return ReferralStatus(new_status) in VALID_REFERRAL_TRANSITIONS[ReferralStatus(self.status)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "referrer_id": self.referrer_id,
            "referral_code": self.referral_code,
            "referred_id": self.referred_id,
            "product_id": self.product_id,
            "status": self.status,
            "referrer_credits": money_str(self.referrer_credits),
            "referee_credits": money_str(self.referee_credits),
            "created_at": format_datetime(self.created_at),
            "joined_at": format_datetime(self.joined_at),
            "rewarded_at": format_datetime(self.rewarded_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Referral":
        return cls(
            id=data["id"],
            referrer_id=data["referrer_id"],
            referral_code=data["referral_code"],
            referred_id=data.get("referred_id"),
            product_id=data.get("product_id"),
            status=data.get("status") or ReferralStatus.PENDING.value,
            referrer_credits=data.get("referrer_credits"),
            referee_credits=data.get("referee_credits"),
            created_at=parse_datetime(data.get("created_at")) or utc_now(),
            joined_at=parse_datetime(data.get("joined_at")),
            rewarded_at=parse_datetime(data.get("rewarded_at")),
        )


@dataclass
class ReferralStats:
    """Summary of a referrer's referrals."""

    total: int = 0
    successful: int = 0
    pending: int = 0
    credits_earned: Decimal = ZERO

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "successful": self.successful,
            "pending": self.pending,
            "credits_earned": money_str(self.credits_earned),
        }


class ReferralError(CreditsError):
    """Referral code is invalid, used, or cannot apply to this user."""

    pass


# =============================================================================
# STORAGE
# =============================================================================


class ReferralStorage(Protocol):
    """Protocol for referral persistence backends."""

    def save_referral(self, referral: Referral) -> str:
        """Insert a referral. Returns the referral ID."""
        ...

    def get_referral(self, referral_id: str) -> Optional[Referral]:
        """Get a referral by ID."""
        ...

    def get_referral_by_code(self, code: str) -> Optional[Referral]:
        """Get a referral by its code."""
        ...

    def list_referrals(
        self,
        referrer_id: Optional[str] = None,
        referred_id: Optional[str] = None,
        status: Optional[ReferralStatus] = None,
    ) -> List[Referral]:
        """List referrals with optional filters, newest first."""
        ...

    def transition_referral(
        self,
        referral_id: str,
        expected: ReferralStatus,
        new_status: ReferralStatus,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[Referral]:
        """Compare-and-set the referral status. Returns None if not in ``expected``."""
        ...


class InMemoryReferralStorage:
    """In-memory referral storage for testing and local development."""

    def __init__(self):
        """Initialize empty storage."""
        self._referrals: dict[str, Referral] = {}
        self._lock = threading.Lock()

    def save_referral(self, referral: Referral) -> str:
        """Insert a referral."""
        with self._lock:
            self._referrals[referral.id] = referral
        return referral.id

    def get_referral(self, referral_id: str) -> Optional[Referral]:
        """Get a referral by ID."""
        return self._referrals.get(referral_id)

    def get_referral_by_code(self, code: str) -> Optional[Referral]:
        """Get a referral by code."""
        with self._lock:
            for referral in self._referrals.values():
                if referral.referral_code == code:
                    return referral
        return None

    def list_referrals(
        self,
        referrer_id: Optional[str] = None,
        referred_id: Optional[str] = None,
        status: Optional[ReferralStatus] = None,
    ) -> List[Referral]:
        """List referrals with optional filters."""
        with self._lock:
            referrals = list(self._referrals.values())

        if referrer_id is not None:
            referrals = [r for r in referrals if r.referrer_id == referrer_id]
        if referred_id is not None:
            referrals = [r for r in referrals if r.referred_id == referred_id]
        if status is not None:
            status_val = ReferralStatus(status).value
            referrals = [r for r in referrals if r.status == status_val]

        referrals.sort(key=lambda r: r.created_at, reverse=True)
        return referrals

    def transition_referral(
        self,
        referral_id: str,
        expected: ReferralStatus,
        new_status: ReferralStatus,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[Referral]:
        """Compare-and-set the referral status."""
        with self._lock:
            referral = self._referrals.get(referral_id)
            if referral is None or referral.status != ReferralStatus(expected).value:
                return None
            for key, value in (updates or {}).items():
                setattr(referral, key, value)
            referral.status = ReferralStatus(new_status).value
            return referral


# =============================================================================
# SERVICE
# =============================================================================


def make_referral_code(user_id: str) -> str:
    """Build a code from the user id's first alphanumerics plus a random suffix."""
    prefix = re.sub(r"[^A-Z0-9]", "", user_id.upper())[:CODE_PREFIX_LENGTH]
    suffix = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(CODE_SUFFIX_LENGTH))
    return prefix.ljust(CODE_PREFIX_LENGTH, "X") + suffix


class ReferralService:
    """Referral codes, signups and first-order rewards."""

    def __init__(
        self,
        storage: ReferralStorage,
        credits: CreditsLedger,
        config: Optional[SettlementConfig] = None,
        side_effects: Optional[SideEffectQueue] = None,
    ):
        self.storage = storage
        self.credits = credits
        self.config = config or credits.config
        self.retry = RetryConfig.from_settings(self.config)
        self.side_effects = side_effects if side_effects is not None else SideEffectQueue()

    def referral_code(self, user_id: str, product_id: Optional[str] = None) -> str:
        """Get the user's unused referral code, creating one if needed."""
        unused = self.storage.list_referrals(referrer_id=user_id, status=ReferralStatus.PENDING)
        if unused:
            return unused[0].referral_code

        code = make_referral_code(user_id)
        while self.storage.get_referral_by_code(code) is not None:
            code = make_referral_code(user_id)
        self.storage.save_referral(
            Referral(referrer_id=user_id, referral_code=code, product_id=product_id)
        )
        logger.info(f"Created referral code {code} for {user_id}")
        return code

    def process_signup(self, code: str, new_user_id: str) -> Referral:
        """Attach a newly signed-up user to a referral code (PENDING -> JOINED).

        Raises:
            ReferralError: Unknown or used code, self-referral, or the user
                was already referred
        """
        referral = self.storage.get_referral_by_code(code)
        if referral is None or referral.status != ReferralStatus.PENDING.value:
            raise ReferralError("Invalid or already used referral code")
        if referral.referrer_id == new_user_id:
            raise ReferralError("Cannot use your own referral code")
        if self.storage.list_referrals(referred_id=new_user_id):
            raise ReferralError(f"User {new_user_id} has already been referred")

        joined = self.storage.transition_referral(
            referral.id,
            ReferralStatus.PENDING,
            ReferralStatus.JOINED,
            {"referred_id": new_user_id, "joined_at": utc_now()},
        )
        if joined is None:
            raise ReferralError("Invalid or already used referral code")
        logger.info(f"User {new_user_id} joined via referral {referral.id}")
        return joined

    def process_first_order(self, referred_user_id: str, order_id: str) -> Optional[Referral]:
        """Reward a referral when the referred user places their first order.

        Returns the rewarded referral, or None if there was nothing to
        reward (no referral, or already rewarded). Credits that cannot be
        issued are queued for the reconciliation sweep.
        """
        joined = self.storage.list_referrals(
            referred_id=referred_user_id, status=ReferralStatus.JOINED
        )
        if not joined:
            return None

        referral = joined[0]
        referrer_amount = to_money(self.config.referrer_credit_amount)
        referee_amount = to_money(self.config.referee_credit_amount)
        rewarded = self.storage.transition_referral(
            referral.id,
            ReferralStatus.JOINED,
            ReferralStatus.REWARDED,
            {
                "rewarded_at": utc_now(),
                "referrer_credits": referrer_amount,
                "referee_credits": referee_amount,
            },
        )
        if rewarded is None:
            return None

        self._issue_rewards(rewarded)
        logger.info(f"Referral {rewarded.id} rewarded on order {order_id}")
        return rewarded

    def rewards_missing(self, referral: Referral) -> bool:
        """Whether a REWARDED referral lacks either side's credit."""
        if referral.status != ReferralStatus.REWARDED.value:
            return False
        return any(
            self.credits.issued_entry(user_id, source, referral.id) is None
            for user_id, _, source in self._grants(referral)
        )

    def repair_rewards(self, referral_id: str) -> bool:
        """Issue whatever a REWARDED referral's credits are still missing.

        Returns True if missing credit was issued.
        """
        referral = self.storage.get_referral(referral_id)
        if referral is None or not self.rewards_missing(referral):
            return False
        if not self._issue_rewards(referral):
            return False
        logger.warning(f"Repaired missing rewards for referral {referral_id}")
        return True

    def _grants(self, referral: Referral):
        referrer_amount = referral.referrer_credits or to_money(self.config.referrer_credit_amount)
        referee_amount = referral.referee_credits or to_money(self.config.referee_credit_amount)
        return [
            (referral.referrer_id, referrer_amount, CreditSource.REFERRAL_REFERRER),
            (referral.referred_id, referee_amount, CreditSource.REFERRAL_REFEREE),
        ]

    def _issue_rewards(self, referral: Referral) -> bool:
        for user_id, amount, source in self._grants(referral):
            outcome = call_with_retry(
                lambda u=user_id, a=amount, s=source: self.credits.issue_once(
                    u, a, s, key=referral.id
                ),
                self.retry,
                operation=f"{source.value} credit for referral {referral.id}",
            )
            if not outcome.ok:
                self.side_effects.record(
                    SideEffectKind.REFERRAL_REWARD,
                    referral.referred_id,
                    outcome.error,
                    attempts=outcome.attempts,
                    referral_id=referral.id,
                )
                return False
        self.side_effects.resolve(SideEffectKind.REFERRAL_REWARD, referral.referred_id)
        return True

    def referrals_for(self, user_id: str) -> List[Referral]:
        return self.storage.list_referrals(referrer_id=user_id)

    def stats(self, user_id: str) -> ReferralStats:
        stats = ReferralStats()
        for referral in self.referrals_for(user_id):
            stats.total += 1
            if referral.status == ReferralStatus.REWARDED.value:
                stats.successful += 1
                stats.credits_earned += referral.referrer_credits or ZERO
            else:
                stats.pending += 1
        return stats
