"""
Read-only access to the stop-record table.

Every analyzer goes through ``StopRecordStore.fetch``: it executes one
parameter-bound statement under the per-query timeout and translates
database failures into the typed errors of ``core.errors``.
"""

import asyncio
import re
import time
from typing import Any, Mapping, Optional

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from config import DatabaseConfig
from core.database import read_only_connection
from core.errors import (
    AnalyticsError,
    AreaTooLarge,
    DatasetNotReady,
    InternalAggregationFailure,
    StoreUnavailable,
    UpstreamTimeout,
)
from core.structured_logging import get_logger

logger = get_logger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")

# SQLSTATE codes
UNDEFINED_TABLE = "42P01"
RESOURCE_EXHAUSTION = ("53100", "53200")  # disk_full, out_of_memory
QUERY_CANCELED = "57014"
CONNECTION_EXCEPTION_CLASS = "08"
CANNOT_CONNECT_NOW = "57P03"

# Only used when the driver reports no SQLSTATE; "column ... of relation ..." is a schema bug
_MISSING_TABLE_MESSAGE = re.compile(r'(?<!of )relation "[^"]+" does not exist')
_RESOURCE_MARKERS = (
    "could not resize shared memory",
    "No space left on device",
    "out of memory",
)


def _sqlstate(exc: BaseException) -> Optional[str]:
    """Find the SQLSTATE of a (possibly wrapped) driver exception."""
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        for attr in ("sqlstate", "pgcode"):
            code = getattr(current, attr, None)
            if isinstance(code, str) and code:
                return code
        current = getattr(current, "orig", None) or current.__cause__
    return None


def _is_connection_failure(exc: BaseException, code: Optional[str]) -> bool:
    if code is not None:
        return code.startswith(CONNECTION_EXCEPTION_CLASS) or code == CANNOT_CONNECT_NOW
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    original = getattr(exc, "orig", None)
    return isinstance(exc, OSError) or isinstance(original, OSError)


def translate_database_error(exc: BaseException) -> AnalyticsError:
    """
    Map a database failure onto the analytics error it represents.

    - undefined table -> DatasetNotReady
    - shared memory / disk / memory exhaustion -> AreaTooLarge
    - statement timeout or cancellation -> UpstreamTimeout
    - lost or refused connection -> StoreUnavailable
    - anything else -> InternalAggregationFailure
    """
    if isinstance(exc, AnalyticsError):
        return exc
    if isinstance(exc, asyncio.TimeoutError):
        return UpstreamTimeout()

    code = _sqlstate(exc)
    message = str(exc)

    if code == UNDEFINED_TABLE or (code is None and _MISSING_TABLE_MESSAGE.search(message)):
        return DatasetNotReady()
    if code in RESOURCE_EXHAUSTION or any(m in message for m in _RESOURCE_MARKERS):
        return AreaTooLarge()
    if code == QUERY_CANCELED:
        return UpstreamTimeout()
    if _is_connection_failure(exc, code):
        return StoreUnavailable()
    return InternalAggregationFailure()


class StopRecordStore:
    """Executes named, parameter-bound queries against the stop-record table."""

    def __init__(self, table: Optional[str] = None, query_timeout: Optional[float] = None):
        self.table = table or DatabaseConfig.STOPS_TABLE
        if not _IDENTIFIER.match(self.table):
            raise ValueError(f"Invalid stop-record table name: {self.table!r}")
        self.query_timeout = query_timeout or DatabaseConfig.QUERY_TIMEOUT_SECONDS

    async def fetch(
        self,
        name: str,
        sql: str,
        params: Optional[Mapping[str, Any]] = None,
    ) -> list[dict[str, Any]]:
        """
        Run one statement and return its rows as plain dicts.

        Args:
            name: Short query name, used in logs.
            sql: Statement with ``:name`` placeholders.
            params: Bound values for the placeholders.

        Raises:
            AnalyticsError subclass describing the failure.
        """
        start = time.time()
        try:
            rows = await asyncio.wait_for(
                self._execute(sql, dict(params or {})),
                timeout=self.query_timeout,
            )
        except (asyncio.TimeoutError, DBAPIError, SQLAlchemyError, OSError) as e:
            error = translate_database_error(e)
            log = logger.info if isinstance(error, DatasetNotReady) else logger.error
            log(
                f"Query {name} failed: {error.code}",
                context={
                    "query": name,
                    "error_type": type(e).__name__,
                    "error": str(e)[:500],
                    "duration_ms": int((time.time() - start) * 1000),
                },
            )
            raise error from e

        logger.debug(
            f"Query {name} returned {len(rows)} rows",
            context={"query": name, "duration_ms": int((time.time() - start) * 1000)},
        )
        return rows

    async def _execute(self, sql: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        async with read_only_connection() as conn:
            result = await conn.execute(text(sql), params)
            return [dict(row._mapping) for row in result]
