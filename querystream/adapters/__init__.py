"""
Database Adapters for querystream

- ConnectionPool: shared, thread-safe connection checkout
- CursorAdapter: lazy, forward-only row sequence over one query
- PostgreSQL implementations backed by psycopg2 named cursors
"""

from querystream.adapters.base import ColumnDescriptor, ConnectionPool, CursorAdapter, Row
from querystream.adapters.postgres_adapter import PostgresCursor, PostgresPool, describe

__all__ = [
    "ColumnDescriptor",
    "ConnectionPool",
    "CursorAdapter",
    "Row",
    "PostgresCursor",
    "PostgresPool",
    "describe",
]
