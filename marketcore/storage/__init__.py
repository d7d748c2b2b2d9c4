"""Persistent storage backends for marketcore.

Each backend implements every subsystem's storage protocol on one store:

- sqlite.py: SQLiteStore (local file, transactional multi-record units)
- supabase.py: SupabaseStore (hosted Postgres via the Supabase client)

The in-memory storages live beside each subsystem's models.
"""

from marketcore.storage.schema import SCHEMA_VERSION
from marketcore.storage.sqlite import SQLiteStore
from marketcore.storage.supabase import SupabaseStore, get_supabase_client

__all__ = [
    "SCHEMA_VERSION",
    "SQLiteStore",
    "SupabaseStore",
    "get_supabase_client",
]
