"""
Streaming Responses for querystream

Turns an open cursor into a gzip-compressed HTTP body without ever holding
the whole result set:

    {"columns":["a","b"]}\\n
    {"rows":[[1,2]]}\\n
    {"rows":[[3,4]]}\\n
    <gzip trailer>

Every record is an independent JSON value followed by a newline, so a
client can parse records as they arrive. The compressor is sync-flushed
after each record, which makes every record decodable as soon as its bytes
are received.

Features:
- Pull-driven: the next rows are read only when the server asks for the
  next chunk, so a slow client throttles the database cursor
- Cancellation checked once per row
- Mid-stream failures end the body without a gzip trailer; the client sees
  a truncated stream, never an error record appended to valid data
- Cursor and connection released exactly once on every exit path
"""

import json
import logging
import threading
import time
import zlib
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import anyio
from starlette.concurrency import run_in_threadpool
from starlette.responses import StreamingResponse

from querystream.adapters.base import ColumnDescriptor, CursorAdapter, Row
from querystream.errors import StreamingError, encoding_failed
from querystream.observability import StreamStats
from querystream.values import row_to_json

logger = logging.getLogger(__name__)


# =============================================================================
# Encoder
# =============================================================================

def encode_record(record: Dict[str, Any]) -> bytes:
    """Serialize one record as compact JSON terminated by a newline."""
    text = json.dumps(record, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
    return (text + "\n").encode("utf-8")


class ResultStreamEncoder:
    """
    Gzip-framed stream of JSON records.

    begin() opens the compressor and emits the column header, write_rows()
    emits one batch record, end() emits the gzip trailer. abort() drops the
    compressor without a trailer.
    """

    CONTENT_TYPE = "application/json"
    CONTENT_ENCODING = "gzip"

    def __init__(self, compress_level: int = 6):
        self.compress_level = compress_level
        self._compressor = None
        self._finished = False

    @property
    def started(self) -> bool:
        return self._compressor is not None or self._finished

    @property
    def finished(self) -> bool:
        return self._finished

    def begin(self, columns: Sequence[ColumnDescriptor]) -> bytes:
        if self.started:
            raise RuntimeError("stream already started")
        # wbits 16 + MAX_WBITS selects the gzip container
        self._compressor = zlib.compressobj(self.compress_level, zlib.DEFLATED, 16 + zlib.MAX_WBITS)
        return self._write({"columns": [column.name for column in columns]})

    def write_rows(self, rows: Sequence[Row]) -> bytes:
        return self._write({"rows": [row_to_json(row) for row in rows]})

    def end(self) -> bytes:
        compressor = self._require_open()
        self._compressor = None
        self._finished = True
        return compressor.flush(zlib.Z_FINISH)

    def abort(self) -> None:
        self._compressor = None

    def _write(self, record: Dict[str, Any]) -> bytes:
        compressor = self._require_open()
        payload = encode_record(record)
        return compressor.compress(payload) + compressor.flush(zlib.Z_SYNC_FLUSH)

    def _require_open(self):
        if self._compressor is None:
            raise RuntimeError("stream is not open")
        return self._compressor


# =============================================================================
# Pipeline
# =============================================================================

class StreamState(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class QueryResultStream:
    """
    Pulls rows from a cursor adapter and pushes them through the encoder.

    next_chunk() is blocking and meant to run in a worker thread; it returns
    the next piece of compressed body, or None when the body is over.
    close() may be called from any thread at any time; it stops the stream
    and releases the cursor, immediately if no chunk is being produced,
    otherwise as soon as the producing thread returns.
    """

    def __init__(
        self,
        cursor: CursorAdapter,
        encoder: Optional[ResultStreamEncoder] = None,
        batch_size: int = 1,
        stats: Optional[StreamStats] = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.cursor = cursor
        self.encoder = encoder or ResultStreamEncoder()
        self.batch_size = batch_size
        self.stats = stats
        self.state = StreamState.PENDING
        self.rows_sent = 0
        self.bytes_sent = 0
        self.error: Optional[StreamingError] = None

        self._lock = threading.Lock()
        self._cancelled = threading.Event()
        self._released = False
        self._started_at = time.perf_counter()

    @property
    def columns(self) -> List[ColumnDescriptor]:
        return self.cursor.columns

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Ask the stream to stop; observed before the next row is read."""
        self._cancelled.set()

    def next_chunk(self) -> Optional[bytes]:
        try:
            with self._lock:
                chunk = self._next_chunk_locked()
        finally:
            if self._cancelled.is_set():
                self._release_if_idle()
        if chunk:
            self.bytes_sent += len(chunk)
        return chunk

    def close(self) -> None:
        self._cancelled.set()
        self._release_if_idle()

    async def iter_chunks(self) -> AsyncIterator[bytes]:
        """Async body iterator; each chunk is produced in the threadpool."""
        try:
            while True:
                chunk = await run_in_threadpool(self.next_chunk)
                if chunk is None:
                    break
                if chunk:
                    yield chunk
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        """close() in the threadpool; closing a cursor is a database round trip."""
        with anyio.CancelScope(shield=True):
            await run_in_threadpool(self.close)

    # -------------------------------------------------------------------------

    def _next_chunk_locked(self) -> Optional[bytes]:
        if self.state is StreamState.PENDING:
            if self._cancelled.is_set():
                self._shutdown()
                return None
            return self._begin()
        if self.state is not StreamState.STREAMING:
            return None

        try:
            return self._advance()
        except StreamingError as e:
            self._fail(e)
        except (TypeError, ValueError, zlib.error) as e:
            self._fail(encoding_failed(e))
        return None

    def _begin(self) -> Optional[bytes]:
        self.state = StreamState.STREAMING
        if self.stats:
            self.stats.stream_started()
        logger.info(f"Stream started: columns={[c.name for c in self.columns]}")
        try:
            header = self.encoder.begin(self.columns)
        except (TypeError, ValueError, zlib.error) as e:
            self._fail(encoding_failed(e))
            return None
        self._count(0, header)
        return header

    def _advance(self) -> Optional[bytes]:
        batch: List[Row] = []
        exhausted = False
        failure: Optional[StreamingError] = None
        while len(batch) < self.batch_size:
            if self._cancelled.is_set():
                self._shutdown()
                return None
            try:
                row = self.cursor.next_row()
            except StreamingError as e:
                failure = e
                break
            if row is None:
                exhausted = True
                break
            batch.append(row)

        chunk = b""
        if batch:
            chunk = self.encoder.write_rows(batch)
            self.rows_sent += len(batch)
            self._count(len(batch), chunk)
        if failure is not None:
            # Rows read before the failure still go out, the trailer never does
            self._fail(failure)
            return chunk or None
        if exhausted:
            trailer = self.encoder.end()
            self._count(0, trailer)
            chunk += trailer
            self._complete()
        return chunk

    def _count(self, rows: int, chunk: bytes) -> None:
        if self.stats:
            self.stats.chunk_sent(rows, len(chunk))

    def _complete(self) -> None:
        self.state = StreamState.COMPLETED
        if self.stats:
            self.stats.stream_completed()
        duration_ms = (time.perf_counter() - self._started_at) * 1000
        logger.info(f"Stream completed: rows={self.rows_sent} duration_ms={duration_ms:.1f}")
        self._release()

    def _fail(self, error: StreamingError) -> None:
        self.state = StreamState.FAILED
        self.error = error
        if self.stats:
            self.stats.stream_failed()
        logger.error(f"[{error.code.value}] Stream aborted after {self.rows_sent} rows: {error.message}")
        self._release()

    def _shutdown(self) -> None:
        if self.state is StreamState.STREAMING:
            self.state = StreamState.CANCELLED
            if self.stats:
                self.stats.stream_cancelled()
            logger.warning(f"Stream cancelled after {self.rows_sent} rows")
        elif self.state is StreamState.PENDING:
            self.state = StreamState.CANCELLED
        self._release()

    def _release_if_idle(self) -> None:
        if not self._lock.acquire(blocking=False):
            return
        try:
            self._shutdown()
        finally:
            self._lock.release()

    def _release(self) -> None:
        if self._released:
            return
        self._released = True
        if not self.encoder.finished:
            self.encoder.abort()
        try:
            self.cursor.close()
        except Exception as e:
            logger.warning(f"Error releasing cursor: {e}")


# =============================================================================
# Streaming Response
# =============================================================================

class QueryStreamResponse(StreamingResponse):
    """
    HTTP response whose body is a QueryResultStream.

    The stream is closed when the ASGI call ends for any reason, including
    client disconnects and cancellation.
    """

    def __init__(self, stream: QueryResultStream, headers: Optional[Dict[str, str]] = None):
        response_headers = {
            "Content-Encoding": ResultStreamEncoder.CONTENT_ENCODING,
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        }
        response_headers.update(headers or {})
        super().__init__(
            stream.iter_chunks(),
            status_code=200,
            media_type=ResultStreamEncoder.CONTENT_TYPE,
            headers=response_headers,
        )
        self.stream = stream

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.stream.aclose()
