"""
querystream Client

Reads a query stream incrementally and refuses to treat a truncated stream
as a complete result.

Example:
    client = QueryStreamClient("http://localhost:8080")

    # Stream rows as they arrive
    reader = client.iter_rows("SELECT id, name FROM users")
    print(reader.columns)
    for row in reader:
        print(row)

    # Or collect everything
    result = client.fetch("SELECT 1 AS a, 2 AS b")
    result.to_dicts()  # [{"a": 1, "b": 2}]
"""

import json
import zlib
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

import httpx


# =============================================================================
# Exceptions
# =============================================================================

class QueryStreamError(Exception):
    """Base exception for the querystream client."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def __str__(self):
        if self.status_code:
            return f"[{self.status_code}] {self.message}"
        return self.message


class QueryRejectedError(QueryStreamError):
    """The server refused the request or the database refused the query."""


class ServerUnavailableError(QueryStreamError):
    """The server could not be reached or could not reach its database."""


class IncompleteStreamError(QueryStreamError):
    """The body ended before the gzip end-of-stream marker."""

    def __init__(self, message: str, records_read: int = 0):
        super().__init__(message)
        self.records_read = records_read


class ProtocolError(QueryStreamError):
    """A record did not have the expected shape."""


# =============================================================================
# Decoding
# =============================================================================

class RecordDecoder:
    """
    Incremental decoder for a gzip-compressed stream of JSON records.

    Feed raw (still compressed) body bytes; each call returns the records
    completed so far. finish() must be called at the end of the body and
    raises IncompleteStreamError unless the gzip stream terminated properly.
    """

    def __init__(self):
        self._inflater = zlib.decompressobj(16 + zlib.MAX_WBITS)
        self._pending = b""
        self.records_read = 0

    def feed(self, data: bytes) -> List[Dict[str, Any]]:
        if self._inflater.eof:
            if data:
                raise ProtocolError("data after end of stream")
            return []
        try:
            text = self._inflater.decompress(data)
        except zlib.error as e:
            raise IncompleteStreamError(f"Corrupt compressed stream: {e}", self.records_read)
        return self._split(text)

    def finish(self) -> List[Dict[str, Any]]:
        try:
            records = self._split(self._inflater.flush())
        except zlib.error as e:
            raise IncompleteStreamError(f"Corrupt compressed stream: {e}", self.records_read)
        if not self._inflater.eof:
            raise IncompleteStreamError(
                f"Stream ended without end-of-stream marker after {self.records_read} records",
                self.records_read,
            )
        if self._pending.strip():
            raise IncompleteStreamError("Stream ended inside a record", self.records_read)
        return records

    def _split(self, text: bytes) -> List[Dict[str, Any]]:
        self._pending += text
        *lines, self._pending = self._pending.split(b"\n")
        records = []
        for line in lines:
            if not line.strip():
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError as e:
                raise ProtocolError(f"Invalid record: {e}")
            self.records_read += 1
        return records


# =============================================================================
# Results
# =============================================================================

class QueryResultReader:
    """
    Row iterator over one streamed query.

    ``columns`` is available as soon as the header record has arrived.
    Iteration yields each row as a list and raises IncompleteStreamError if
    the stream is cut short, so a partial result is never silently accepted.
    """

    def __init__(self, records: Iterator[Dict[str, Any]]):
        self._records = records
        try:
            header = next(records)
        except StopIteration:
            raise IncompleteStreamError("Stream ended before the column header")
        if "columns" not in header:
            raise ProtocolError("First record is not a column header")
        self.columns: List[str] = header["columns"]
        self.rows_read = 0

    def __iter__(self) -> Iterator[List[Any]]:
        for record in self._records:
            if "rows" not in record:
                raise ProtocolError(f"Unexpected record: {sorted(record)}")
            for row in record["rows"]:
                self.rows_read += 1
                yield row

    def close(self) -> None:
        close = getattr(self._records, "close", None)
        if close is not None:
            close()


@dataclass
class QueryResult:
    """Fully received result of a query."""
    columns: List[str]
    rows: List[List[Any]] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def to_dicts(self) -> List[Dict[str, Any]]:
        return [dict(zip(self.columns, row)) for row in self.rows]


# =============================================================================
# Client
# =============================================================================

class QueryStreamClient:
    """
    Client for the querystream /query endpoint.

    Args:
        url: Base URL of the server
        timeout: Read/connect timeout in seconds
        client: Existing httpx.Client to use instead (its base_url is kept)
    """

    def __init__(
        self,
        url: str = "http://localhost:8080",
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        self.url = url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.Client(base_url=self.url, timeout=timeout)

    def close(self) -> None:
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def stream(self, query: str) -> Iterator[Dict[str, Any]]:
        """Yield decoded records (header first) as they arrive."""
        decoder = RecordDecoder()
        try:
            with self._client.stream(
                "POST",
                "/query",
                json={"query": query},
                headers={"Accept-Encoding": "gzip"},
            ) as response:
                if response.status_code != 200:
                    response.read()
                    raise self._error_for(response)
                try:
                    for chunk in response.iter_raw():
                        yield from decoder.feed(chunk)
                except (httpx.RemoteProtocolError, httpx.ReadError) as e:
                    raise IncompleteStreamError(f"Connection lost mid-stream: {e}", decoder.records_read)
                yield from decoder.finish()
        except httpx.ConnectError as e:
            raise ServerUnavailableError(f"Failed to connect to {self.url}: {e}")
        except httpx.TimeoutException as e:
            raise ServerUnavailableError(f"Request timed out after {self.timeout}s: {e}")

    def iter_rows(self, query: str) -> QueryResultReader:
        """Start a query; rows are read lazily from the returned reader."""
        return QueryResultReader(self.stream(query))

    def fetch(self, query: str) -> QueryResult:
        """Run a query and collect the whole result."""
        reader = self.iter_rows(query)
        return QueryResult(columns=reader.columns, rows=list(reader))

    def _error_for(self, response: httpx.Response) -> QueryStreamError:
        message = response.text.strip() or f"HTTP {response.status_code}"
        if response.status_code in (400, 405):
            return QueryRejectedError(message, status_code=response.status_code)
        if response.status_code == 503:
            return ServerUnavailableError(message, status_code=503)
        return QueryStreamError(message, status_code=response.status_code)
