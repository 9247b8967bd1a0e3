"""
querystream - Structured Error Handling

ERROR TAXONOMY:
---------------
1. RequestError   - bad method or body, rejected before any work is done
2. QueryError     - the database refused the query (or no connection could
                    be obtained) before the response was committed
3. StreamingError - failure after the header record was sent; it can no
                    longer change the status code and is only logged

Pre-stream errors are rendered as plain text:

    HTTP/1.1 400 Bad Request
    Content-Type: text/plain; charset=utf-8
    X-Error-Code: ERR_2001

    Query error: syntax error at or near "SELEC"
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from querystream.core.logging import request_id_var

logger = logging.getLogger(__name__)


# =============================================================================
# ERROR CODES
# =============================================================================

class ErrorCode(str, Enum):
    """Unique error codes for every error type."""

    # Request (1xxx)
    ERR_METHOD_NOT_ALLOWED = "ERR_1001"
    ERR_INVALID_BODY = "ERR_1002"
    ERR_NOT_FOUND = "ERR_1003"

    # Query Execution (2xxx)
    ERR_QUERY_FAILED = "ERR_2001"
    ERR_CONNECTION_FAILED = "ERR_2002"

    # Streaming (3xxx)
    ERR_CURSOR_FAILED = "ERR_3001"
    ERR_ENCODING_FAILED = "ERR_3002"
    ERR_CLIENT_DISCONNECTED = "ERR_3003"

    # Internal (9xxx)
    ERR_INTERNAL = "ERR_9001"


# =============================================================================
# ERRORS
# =============================================================================

@dataclass(eq=False)
class QueryStreamError(Exception):
    """
    Base error carrying everything needed to report or log a failure.

    Attributes:
        code: Unique error code for searching logs
        message: Human-readable message, sent verbatim as the response body
        status_code: HTTP status code for pre-stream errors
        original_error: Driver or library exception that caused it
    """
    code: ErrorCode
    message: str
    status_code: int = 400
    original_error: Optional[BaseException] = None

    def __post_init__(self):
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message

    def to_response(self) -> PlainTextResponse:
        """Convert to a plain-text response."""
        return PlainTextResponse(
            self.message,
            status_code=self.status_code,
            headers={"X-Error-Code": self.code.value},
        )

    def log(self, level: str = "error"):
        """Log the error with its code."""
        getattr(logger, level)(f"[{self.code.value}] {self.message}")


class RequestError(QueryStreamError):
    """Malformed request method or body."""


class QueryError(QueryStreamError):
    """Query rejected by the database before streaming started."""


class StreamingError(QueryStreamError):
    """Failure after the response was committed; never becomes a status code."""


# =============================================================================
# ERROR FACTORY FUNCTIONS
# =============================================================================

def method_not_allowed() -> RequestError:
    return RequestError(
        code=ErrorCode.ERR_METHOD_NOT_ALLOWED,
        message="Invalid request method",
        status_code=405,
    )


def invalid_body(original_error: Optional[BaseException] = None) -> RequestError:
    return RequestError(
        code=ErrorCode.ERR_INVALID_BODY,
        message="Invalid request body",
        status_code=400,
        original_error=original_error,
    )


def query_failed(error: BaseException) -> QueryError:
    """Create a query error whose message carries the database's own text."""
    return QueryError(
        code=ErrorCode.ERR_QUERY_FAILED,
        message=f"Query error: {_driver_message(error)}",
        status_code=400,
        original_error=error,
    )


def connection_failed(error: BaseException) -> QueryError:
    return QueryError(
        code=ErrorCode.ERR_CONNECTION_FAILED,
        message=f"Database unavailable: {_driver_message(error)}",
        status_code=503,
        original_error=error,
    )


def cursor_failed(error: BaseException, rows_sent: int = 0) -> StreamingError:
    return StreamingError(
        code=ErrorCode.ERR_CURSOR_FAILED,
        message=f"Error reading row {rows_sent + 1}: {_driver_message(error)}",
        status_code=500,
        original_error=error,
    )


def encoding_failed(error: BaseException) -> StreamingError:
    return StreamingError(
        code=ErrorCode.ERR_ENCODING_FAILED,
        message=f"Error encoding row: {error}",
        status_code=500,
        original_error=error,
    )


def _driver_message(error: BaseException) -> str:
    # psycopg2 appends a "LINE n: <statement>" line and a caret line; the
    # statement may be the DECLARE wrapper, so neither is sent to the client
    lines = []
    skip_caret = False
    for line in str(error).strip().splitlines():
        if line.startswith("LINE "):
            skip_caret = True
            continue
        if skip_caret and line.strip() == "^":
            skip_caret = False
            continue
        skip_caret = False
        lines.append(line)
    return "\n".join(lines).strip() or type(error).__name__


# =============================================================================
# EXCEPTION HANDLERS
# =============================================================================

async def querystream_error_handler(request: Request, exc: QueryStreamError) -> PlainTextResponse:
    """Handle QueryStreamError raised before the response started."""
    exc.log("warning" if exc.status_code < 500 else "error")
    return exc.to_response()


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> PlainTextResponse:
    """Render routing errors (404, 405) as plain text."""
    if exc.status_code == 405:
        error = method_not_allowed()
    elif exc.status_code == 404:
        error = RequestError(code=ErrorCode.ERR_NOT_FOUND, message="Not found", status_code=404)
    else:
        error = RequestError(code=ErrorCode.ERR_INTERNAL, message=str(exc.detail), status_code=exc.status_code)
    error.log("warning")
    response = error.to_response()
    if exc.headers:
        response.headers.update(exc.headers)
    return response


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> PlainTextResponse:
    """Malformed JSON or a missing ``query`` field is a 400, not FastAPI's 422."""
    error = invalid_body(exc)
    logger.warning(f"[{error.code.value}] {error.message} | errors={exc.errors()}")
    return error.to_response()


async def generic_exception_handler(request: Request, exc: Exception) -> PlainTextResponse:
    """Handle unexpected exceptions."""
    logger.exception(f"Unhandled exception | request_id={request_id_var.get()}")
    return PlainTextResponse("Internal server error", status_code=500)


# =============================================================================
# HELPER TO INSTALL HANDLERS
# =============================================================================

def install_error_handlers(app):
    """Install error handlers on FastAPI app."""
    app.add_exception_handler(QueryStreamError, querystream_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    logger.debug("Error handlers installed")
