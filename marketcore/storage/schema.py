"""Database schema for marketcore SQLite storage.

Contains:
- Schema DDL (SCHEMA) and version (SCHEMA_VERSION)
- Per-table column allowlists used to validate dynamic updates
- Database initialization (init_db)

Money is stored as TEXT (exact decimal strings), timestamps as ISO-8601
TEXT in UTC, booleans as INTEGER.
"""

import logging
import sqlite3

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS batches (
    id TEXT PRIMARY KEY,
    vendor_id TEXT NOT NULL,
    listing_id TEXT NOT NULL,
    region TEXT NOT NULL,
    unit_price TEXT NOT NULL,
    minimum_quantity INTEGER NOT NULL,
    current_quantity INTEGER NOT NULL DEFAULT 0,
    deadline TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'draft',
    delivery_method TEXT,
    created_at TEXT,
    updated_at TEXT,
    closed_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_batches_status ON batches(status);
CREATE INDEX IF NOT EXISTS idx_batches_vendor ON batches(vendor_id);

CREATE TABLE IF NOT EXISTS batch_transitions (
    id TEXT PRIMARY KEY,
    batch_id TEXT NOT NULL,
    from_status TEXT,
    to_status TEXT NOT NULL,
    actor_id TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_batch_transitions_batch ON batch_transitions(batch_id);

CREATE TABLE IF NOT EXISTS orders (
    id TEXT PRIMARY KEY,
    batch_id TEXT NOT NULL,
    buyer_id TEXT NOT NULL,
    amount TEXT NOT NULL,
    quantity INTEGER NOT NULL DEFAULT 1,
    escrow_status TEXT NOT NULL DEFAULT 'pending',
    payment_ref TEXT,
    last_error TEXT,
    created_at TEXT,
    updated_at TEXT,
    held_at TEXT,
    captured_at TEXT,
    refunded_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_orders_batch ON orders(batch_id);
CREATE INDEX IF NOT EXISTS idx_orders_buyer ON orders(buyer_id);

CREATE TABLE IF NOT EXISTS errands (
    id TEXT PRIMARY KEY,
    requester_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    budget TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'open',
    assigned_helper_id TEXT,
    requester_confirmed INTEGER NOT NULL DEFAULT 0,
    helper_confirmed INTEGER NOT NULL DEFAULT 0,
    payment_released INTEGER NOT NULL DEFAULT 0,
    deadline TEXT,
    created_at TEXT,
    updated_at TEXT,
    assigned_at TEXT,
    completed_at TEXT,
    payment_released_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_errands_status ON errands(status);
CREATE INDEX IF NOT EXISTS idx_errands_helper ON errands(assigned_helper_id);

CREATE TABLE IF NOT EXISTS errand_applications (
    id TEXT PRIMARY KEY,
    errand_id TEXT NOT NULL,
    helper_id TEXT NOT NULL,
    offer_amount TEXT,
    message TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_applications_errand ON errand_applications(errand_id);

CREATE TABLE IF NOT EXISTS errand_ratings (
    id TEXT PRIMARY KEY,
    errand_id TEXT NOT NULL,
    rater_id TEXT NOT NULL,
    rated_id TEXT NOT NULL,
    rating INTEGER NOT NULL CHECK (rating BETWEEN 1 AND 5),
    comment TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (errand_id, rater_id)
);

CREATE TABLE IF NOT EXISTS errand_transitions (
    id TEXT PRIMARY KEY,
    errand_id TEXT NOT NULL,
    from_status TEXT,
    to_status TEXT NOT NULL,
    actor_id TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_errand_transitions_errand ON errand_transitions(errand_id);

CREATE TABLE IF NOT EXISTS credit_entries (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    amount TEXT NOT NULL,
    source TEXT NOT NULL,
    expires_at TEXT,
    used_at TEXT,
    order_id TEXT,
    referral_id TEXT,
    parent_id TEXT,
    refund_order_id TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_credit_entries_user ON credit_entries(user_id);

CREATE TABLE IF NOT EXISTS referrals (
    id TEXT PRIMARY KEY,
    referrer_id TEXT NOT NULL,
    referral_code TEXT NOT NULL UNIQUE,
    referred_id TEXT,
    product_id TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    referrer_credits TEXT,
    referee_credits TEXT,
    created_at TEXT NOT NULL,
    joined_at TEXT,
    rewarded_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_referrals_referrer ON referrals(referrer_id);
CREATE INDEX IF NOT EXISTS idx_referrals_referred ON referrals(referred_id);

CREATE TABLE IF NOT EXISTS vendor_wallets (
    vendor_id TEXT PRIMARY KEY,
    available_balance TEXT NOT NULL,
    pending_balance TEXT NOT NULL,
    total_earned TEXT NOT NULL,
    total_withdrawn TEXT NOT NULL,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS withdrawal_requests (
    id TEXT PRIMARY KEY,
    vendor_id TEXT NOT NULL,
    method_id TEXT NOT NULL,
    amount TEXT NOT NULL,
    fee TEXT NOT NULL,
    net_amount TEXT NOT NULL,
    minimum_threshold TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    requested_at TEXT NOT NULL,
    processed_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_withdrawals_vendor ON withdrawal_requests(vendor_id);
"""

# Columns that conditional updates may write (security: keys come from callers)
UPDATABLE_COLUMNS = {
    "orders": frozenset(
        {"amount", "payment_ref", "last_error", "held_at", "captured_at", "refunded_at"}
    ),
    "batches": frozenset({"closed_at", "delivery_method"}),
    "errands": frozenset(
        {
            "assigned_helper_id",
            "requester_confirmed",
            "helper_confirmed",
            "assigned_at",
            "completed_at",
        }
    ),
    "referrals": frozenset(
        {"referred_id", "joined_at", "rewarded_at", "referrer_credits", "referee_credits"}
    ),
}


def validate_columns(table: str, columns) -> None:
    """Reject update columns outside the table's allowlist."""
    allowed = UPDATABLE_COLUMNS.get(table, frozenset())
    invalid = set(columns) - allowed
    if invalid:
        raise ValueError(f"Cannot update {sorted(invalid)} on {table}")


# Columns added after version 1: (table, column, type)
ADDED_COLUMNS = [
    ("credit_entries", "refund_order_id", "TEXT"),
]


def _migrate(conn: sqlite3.Connection) -> None:
    """Add columns that databases created by older versions lack."""
    for table, column, column_type in ADDED_COLUMNS:
        existing = {r[1] for r in conn.execute(f"PRAGMA table_info({table})").fetchall()}
        if column not in existing:
            logger.info(f"Adding column {table}.{column}")
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {column_type}")


def init_db(conn: sqlite3.Connection) -> None:
    """Create tables if needed, migrate older ones and record the schema version."""
    conn.executescript(SCHEMA)
    row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
    if row is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
    elif row[0] != SCHEMA_VERSION:
        _migrate(conn)
        logger.info(f"Updating schema version {row[0]} -> {SCHEMA_VERSION}")
        conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))
