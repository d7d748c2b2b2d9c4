"""
Bounded retries for external side effects, and the queue of the ones that
still failed.

A status transition commits first. The side effects it triggers (payment
capture or refund, payout credit issuance) are attempted with a bounded
number of retries; if they still fail they are recorded here for the
reconciliation sweep instead of undoing the transition.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from marketcore.config import SettlementConfig
from marketcore.types import utc_now

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Retry configuration for side effects."""

    max_attempts: int = 3
    delay: float = 0.5
    backoff_factor: float = 2.0
    max_delay: float = 30.0

    @classmethod
    def from_settings(cls, config: SettlementConfig) -> "RetryConfig":
        return cls(
            max_attempts=config.retry_max_attempts,
            delay=config.retry_delay_seconds,
            backoff_factor=config.retry_backoff_factor,
            max_delay=config.retry_max_delay_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (0-based)."""
        return min(self.delay * (self.backoff_factor**attempt), self.max_delay)


@dataclass
class RetryOutcome:
    """Result of a retried call."""

    ok: bool
    value: Any = None
    error: Optional[str] = None
    attempts: int = 0


def call_with_retry(
    func: Callable[[], Any],
    config: RetryConfig,
    operation: str,
    is_success: Optional[Callable[[Any], bool]] = None,
    describe_failure: Optional[Callable[[Any], str]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> RetryOutcome:
    """Call ``func`` up to ``config.max_attempts`` times.

    A call fails if it raises, or if ``is_success`` rejects its return value.
    Never raises: the caller decides what an exhausted retry means.
    """
    last_error: Optional[str] = None

    for attempt in range(config.max_attempts):
        try:
            value = func()
        except Exception as e:
            last_error = f"{type(e).__name__}: {e}"
        else:
            if is_success is None or is_success(value):
                return RetryOutcome(ok=True, value=value, attempts=attempt + 1)
            last_error = describe_failure(value) if describe_failure else "call reported failure"

        if attempt < config.max_attempts - 1:
            delay = config.delay_for(attempt)
            logger.warning(
                "%s attempt %d failed, retrying in %.2fs: %s",
                operation,
                attempt + 1,
                delay,
                last_error,
            )
            if delay > 0:
                sleep(delay)

    logger.error("%s failed after %d attempts: %s", operation, config.max_attempts, last_error)
    return RetryOutcome(ok=False, error=last_error, attempts=config.max_attempts)


class SideEffectKind(str, Enum):
    """Kinds of side effect the sweep knows how to replay."""

    ESCROW_RELEASE = "escrow_release"  # entity_id = batch id
    ESCROW_REFUND = "escrow_refund"  # entity_id = batch id
    ERRAND_PAYMENT = "errand_payment"  # entity_id = errand id
    REFERRAL_REWARD = "referral_reward"  # entity_id = referred user id


@dataclass
class FailedSideEffect:
    """A side effect that exhausted its retries."""

    kind: str
    entity_id: str
    error: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    attempts: int = 0
    detail: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)


class SideEffectQueue:
    """Failed side effects awaiting the reconciliation sweep.

    One entry per (kind, entity): recording the same failure twice only
    refreshes the error.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[tuple, FailedSideEffect] = {}

    def record(
        self,
        kind: SideEffectKind,
        entity_id: str,
        error: Optional[str],
        attempts: int = 0,
        **detail: Any,
    ) -> FailedSideEffect:
        key = (SideEffectKind(kind).value, entity_id)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = FailedSideEffect(kind=key[0], entity_id=entity_id)
                self._entries[key] = entry
            entry.error = error
            entry.attempts += attempts
            entry.detail.update(detail)
        logger.error("Queued %s for %s: %s", key[0], entity_id, error)
        return entry

    def pending(self, kind: Optional[SideEffectKind] = None) -> List[FailedSideEffect]:
        with self._lock:
            entries = list(self._entries.values())
        if kind is not None:
            kind_val = SideEffectKind(kind).value
            entries = [e for e in entries if e.kind == kind_val]
        return sorted(entries, key=lambda e: e.created_at)

    def resolve(self, kind: SideEffectKind, entity_id: str) -> bool:
        with self._lock:
            return self._entries.pop((SideEffectKind(kind).value, entity_id), None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
