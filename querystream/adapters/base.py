"""
Base Adapter Interface for querystream

The streaming pipeline only talks to these two seams, so any driver (or a
fake in tests) can back it.

DESIGN PRINCIPLES:
-----------------
1. The pool is handed in explicitly; adapters never reach for a global
2. A cursor owns its connection from open() until close()
3. Rows are pulled one at a time, never materialized as a whole result
4. close() is idempotent and never raises
5. Errors before the first byte is sent are QueryError, after it
   StreamingError
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)

Row = Tuple[Any, ...]


@dataclass(frozen=True)
class ColumnDescriptor:
    """
    One column of a result set.

    Attributes:
        name: Column name as reported by the database
        position: 0-based ordinal within the row
        type_code: Driver type identifier (PostgreSQL type OID), if known
    """
    name: str
    position: int
    type_code: Optional[int] = None


class ConnectionPool(ABC):
    """
    Connection checkout shared by all requests.

    Implementations must be safe to call from several threads at once; each
    acquired connection is used by exactly one request until released.
    """

    @abstractmethod
    def acquire(self) -> Any:
        """
        Check out a connection.

        Raises:
            QueryError: If no connection can be obtained
        """

    @abstractmethod
    def release(self, conn: Any, discard: bool = False) -> None:
        """Return a connection; ``discard`` closes it instead of reusing it."""

    @abstractmethod
    def close(self) -> None:
        """Close every pooled connection."""

    @abstractmethod
    def health_check(self) -> bool:
        """Check that a connection can be acquired and answers a query."""


class CursorAdapter(ABC):
    """
    Forward-only, non-restartable view over one query's result set.

    Usage:
        cursor = PostgresCursor.open(pool, "SELECT 1 AS a")
        try:
            names = [c.name for c in cursor.columns]
            for row in cursor:
                ...
        finally:
            cursor.close()
    """

    @property
    @abstractmethod
    def columns(self) -> List[ColumnDescriptor]:
        """Column descriptors, available right after open."""

    @abstractmethod
    def next_row(self) -> Optional[Row]:
        """
        Advance by one row.

        Returns:
            The next row, or None once the result set is exhausted

        Raises:
            StreamingError: If the database fails while advancing
        """

    @abstractmethod
    def close(self) -> None:
        """Release the cursor and its connection. Safe to call repeatedly."""

    def __iter__(self) -> Iterator[Row]:
        while True:
            row = self.next_row()
            if row is None:
                return
            yield row

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
