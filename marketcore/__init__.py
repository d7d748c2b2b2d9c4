"""
marketcore - settlement and fulfillment engine.

Escrow for regional group-buy batches, the errand lifecycle, an expiring
credits ledger with referrals, and vendor wallets with withdrawals.

Usage:
    from marketcore import SettlementEngine

    engine = SettlementEngine.in_memory(payments)
    batch = engine.batches.create_batch(...)
"""

from importlib.metadata import PackageNotFoundError, version

from marketcore.engine import SettlementEngine
from marketcore.protocols import MarketcoreError
from marketcore.sweeper import ReconciliationSweeper, SweepReport

try:
    __version__ = version("marketcore")
except PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = [
    "SettlementEngine",
    "ReconciliationSweeper",
    "SweepReport",
    "MarketcoreError",
    "__version__",
]
