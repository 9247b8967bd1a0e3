"""
Pytest configuration and shared fixtures for querystream tests.

No database is needed: the HTTP tests run against an in-memory FakeDatabase
that hands out FakeCursor adapters through a FakePool.
"""

import json
import threading
import zlib
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import pytest
from fastapi.testclient import TestClient

from querystream.adapters.base import ColumnDescriptor, ConnectionPool, CursorAdapter
from querystream.core.config import Settings
from querystream.errors import connection_failed, cursor_failed, query_failed
from querystream.main import create_app


# =============================================================================
# FAKES
# =============================================================================

class FakeDriverError(Exception):
    """Stands in for a driver exception carrying the database's message."""


class FakePool(ConnectionPool):
    """Counts checkouts so tests can assert every connection came back."""

    def __init__(self, healthy: bool = True, available: bool = True):
        self.healthy = healthy
        self.available = available
        self.acquired = 0
        self.released = 0
        self.discarded = 0
        self.closed = False

    @property
    def in_use(self) -> int:
        return self.acquired - self.released

    def acquire(self):
        if not self.available:
            raise connection_failed(FakeDriverError("connection refused"))
        self.acquired += 1
        return object()

    def release(self, conn, discard: bool = False) -> None:
        self.released += 1
        if discard:
            self.discarded += 1

    def close(self) -> None:
        self.closed = True

    def health_check(self) -> bool:
        return self.healthy


class FakeCursor(CursorAdapter):
    """
    Cursor adapter over any iterable of rows.

    Rows are pulled lazily from ``rows`` so a generator can stand in for a
    huge result set. ``fail_after`` makes the cursor fail after that many rows.
    """

    def __init__(
        self,
        columns: Sequence[str],
        rows: Iterable[Tuple[Any, ...]] = (),
        pool: Optional[FakePool] = None,
        fail_after: Optional[int] = None,
    ):
        self._columns = [ColumnDescriptor(name=name, position=i) for i, name in enumerate(columns)]
        self._rows = iter(rows)
        self._pool = pool
        self._conn = pool.acquire() if pool is not None else None
        self.fail_after = fail_after
        self.rows_read = 0
        self.close_calls = 0
        self.close_thread = None
        self.closed = False

    @property
    def columns(self) -> List[ColumnDescriptor]:
        return self._columns

    def next_row(self):
        if self.closed:
            return None
        if self.fail_after is not None and self.rows_read >= self.fail_after:
            raise cursor_failed(FakeDriverError("canceling statement due to conflict with recovery"), self.rows_read)
        row = next(self._rows, None)
        if row is None:
            return None
        self.rows_read += 1
        return row

    def close(self) -> None:
        self.close_calls += 1
        if self.closed:
            return
        self.close_thread = threading.current_thread()
        self.closed = True
        if self._pool is not None:
            self._pool.release(self._conn)


class FakeDatabase:
    """
    Maps query text to canned results.

    Unknown query text is rejected the way PostgreSQL rejects bad SQL.
    """

    def __init__(self):
        self.results: Dict[str, Dict[str, Any]] = {}
        self.cursors: List[FakeCursor] = []

    def add(self, query: str, columns: Sequence[str], rows: Iterable[Tuple[Any, ...]] = (), fail_after=None):
        self.results[query] = {"columns": columns, "rows": rows, "fail_after": fail_after}

    def open_cursor(self, pool: FakePool, query: str, fetch_size: int) -> FakeCursor:
        if query not in self.results:
            first_word = query.split()[0] if query.split() else ""
            raise query_failed(FakeDriverError(f'syntax error at or near "{first_word}"'))
        result = self.results[query]
        cursor = FakeCursor(result["columns"], result["rows"], pool=pool, fail_after=result["fail_after"])
        self.cursors.append(cursor)
        return cursor


# =============================================================================
# STREAM DECODING HELPERS
# =============================================================================

def decode_stream(raw: bytes) -> Tuple[List[Dict[str, Any]], bool]:
    """
    Decompress and parse a response body.

    Returns:
        (records, complete) where complete is True only if the gzip stream
        reached its end-of-stream marker
    """
    inflater = zlib.decompressobj(16 + zlib.MAX_WBITS)
    text = inflater.decompress(raw) + inflater.flush()
    records = [json.loads(line) for line in text.split(b"\n") if line.strip()]
    return records, inflater.eof


def all_rows(records: List[Dict[str, Any]]) -> List[List[Any]]:
    return [row for record in records[1:] for row in record["rows"]]


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def settings():
    return Settings(database_url="postgresql://test@localhost/test", batch_size=1, log_level="DEBUG")


@pytest.fixture
def pool():
    return FakePool()


@pytest.fixture
def database():
    db = FakeDatabase()
    db.add("SELECT 1 AS a, 2 AS b", ["a", "b"], [(1, 2)])
    db.add("SELECT * FROM empty_table", ["id", "name", "created_at"], [])
    return db


@pytest.fixture
def app(settings, pool, database):
    return create_app(settings=settings, pool=pool, cursor_factory=database.open_cursor)


@pytest.fixture
def client(app):
    """Create a test client for the FastAPI app."""
    return TestClient(app)


@pytest.fixture
def post_raw(client):
    """POST a query and return (response, raw compressed body)."""

    def _post(query: str):
        with client.stream("POST", "/query", json={"query": query}) as response:
            raw = b"".join(response.iter_raw())
        return response, raw

    return _post
