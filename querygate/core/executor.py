# querygate/core/executor.py
"""
QUERY EXECUTOR - Run a template against the backend under an isolation level

Isolation levels:
    none   run on the shared engine, bounded only by the caller's deadline
    basic  stream the rows and stop reading at max_rows
    full   run on a separate task, turn any crash into an ExecutionError and
           race it against the deadline and the total timeout

Whatever happens, the caller gets either FetchedRows or an ExecutionError.
Connections and cursors are released by `async with` on every exit path,
including cancellation of the losing worker in "full" mode.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from querygate.core.context import RequestContext
from querygate.core.exceptions import ExecutionError

logger = logging.getLogger(__name__)

_BIND_NAME = re.compile(r"(?<![:\w]):(\w+)")


@dataclass
class FetchedRows:
    columns: List[str]
    rows: List[Sequence[Any]] = field(default_factory=list)


# ============================================================================
# PARAMETERS
# ============================================================================


def bind_parameters(template: str, max_rows: int) -> Dict[str, Any]:
    """
    Fill the template's named parameters with fixed stand-in values.

    Template selection is not real text-to-SQL, so the values are neutral
    defaults: the current year, no region, no minimum amount and the row cap.
    """
    defaults = {
        "year": datetime.now(timezone.utc).year,
        "region": "",
        "min_amount": 0,
        "limit": max_rows,
    }
    return {
        name: defaults[name]
        for name in _BIND_NAME.findall(template)
        if name in defaults
    }


# ============================================================================
# EXECUTION
# ============================================================================


class QueryExecutor:
    def __init__(
        self,
        engine: AsyncEngine,
        isolation_level: str,
        total_timeout: float,
        max_rows: int,
    ):
        self.engine = engine
        self.isolation_level = isolation_level
        self.total_timeout = total_timeout
        self.max_rows = max_rows

        self._strategies: Dict[str, Callable[..., Awaitable[FetchedRows]]] = {
            "full": self._execute_full,
            "basic": self._execute_basic,
            "none": self._execute_direct,
        }

    async def execute(
        self,
        ctx: RequestContext,
        template: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> FetchedRows:
        strategy = self._strategies.get(self.isolation_level, self._execute_direct)
        return await strategy(ctx, template, params or {})

    async def _execute_direct(
        self, ctx: RequestContext, template: str, params: Dict[str, Any]
    ) -> FetchedRows:
        return await self._bounded_by(ctx, self._fetch_all(template, params))

    async def _execute_basic(
        self, ctx: RequestContext, template: str, params: Dict[str, Any]
    ) -> FetchedRows:
        return await self._bounded_by(ctx, self._fetch_limited(template, params))

    async def _execute_full(
        self, ctx: RequestContext, template: str, params: Dict[str, Any]
    ) -> FetchedRows:
        worker = asyncio.create_task(self._isolated_worker(template, params))

        remaining = ctx.remaining()
        wait_for = self.total_timeout if remaining is None else min(self.total_timeout, remaining)

        try:
            done, _ = await asyncio.wait({worker}, timeout=max(wait_for, 0))
        finally:
            # Caller cancelled or we timed out: the worker's answer is no longer wanted
            if not worker.done():
                worker.cancel()

        if worker in done:
            return worker.result()

        if remaining is not None and remaining <= self.total_timeout:
            raise ExecutionError(ctx.cause)
        raise ExecutionError(f"execution timeout after {self.total_timeout:g}s")

    async def _isolated_worker(self, template: str, params: Dict[str, Any]) -> FetchedRows:
        try:
            return await self._fetch_all(template, params)
        except ExecutionError:
            raise
        except Exception as e:
            logger.error("Isolated query worker crashed: %r", e)
            raise ExecutionError(f"execution panic: {e!r}") from e

    async def _bounded_by(self, ctx: RequestContext, operation: Awaitable[FetchedRows]) -> FetchedRows:
        remaining = ctx.remaining()
        if remaining is None:
            return await operation
        try:
            return await asyncio.wait_for(operation, timeout=max(remaining, 0))
        except asyncio.TimeoutError:
            raise ExecutionError(ctx.cause) from None

    # --------------------------------------------------------------------------
    # Backend access
    # --------------------------------------------------------------------------

    async def _fetch_all(self, template: str, params: Dict[str, Any]) -> FetchedRows:
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(text(template), params)
                return FetchedRows(columns=list(result.keys()), rows=result.fetchall())
        except SQLAlchemyError as e:
            raise ExecutionError(str(e)) from e

    async def _fetch_limited(self, template: str, params: Dict[str, Any]) -> FetchedRows:
        try:
            async with self.engine.connect() as conn:
                result = await conn.stream(text(template), params)
                try:
                    rows = await result.fetchmany(self.max_rows)
                    return FetchedRows(columns=list(result.keys()), rows=rows)
                finally:
                    await result.close()
        except SQLAlchemyError as e:
            raise ExecutionError(str(e)) from e


# ============================================================================
# ROW DECODING
# ============================================================================

INT, FLOAT, STRING = "INT", "FLOAT", "STRING"
_ZERO_VALUES = {INT: 0, FLOAT: 0.0, STRING: ""}


def value_kind(value: Any) -> str:
    if isinstance(value, (bool, int)):
        return INT
    if isinstance(value, (float, Decimal)):
        return FLOAT
    return STRING


def coerce_value(value: Any, kind: str) -> Any:
    if value is None:
        return _ZERO_VALUES[kind]
    if kind == INT:
        return int(value)
    if kind == FLOAT:
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


def column_kind(values: Sequence[Any]) -> str:
    """
    One kind for a whole column, from every non-NULL value in it.

    INT and FLOAT together widen to FLOAT; any other mix (or no values at
    all) is STRING, which every value can be rendered as.
    """
    kinds = {value_kind(value) for value in values if value is not None}
    if kinds == {INT}:
        return INT
    if kinds and kinds <= {INT, FLOAT}:
        return FLOAT
    return STRING


def decode_rows(fetched: FetchedRows, max_rows: int) -> List[Dict[str, Any]]:
    """
    Turn raw backend rows into {column: int | float | str} dicts.

    Column kinds come from the values the driver handed back (the driver has
    already mapped the backend column type to a Python type). NULLs become
    the zero value of their column's kind. Anything that still cannot be
    converted is reported as an ExecutionError.
    """
    rows = list(fetched.rows[:max_rows])
    kinds = [
        column_kind([row[index] for row in rows])
        for index in range(len(fetched.columns))
    ]

    try:
        return [
            {
                column: coerce_value(row[index], kinds[index])
                for index, column in enumerate(fetched.columns)
            }
            for row in rows
        ]
    except (TypeError, ValueError, OverflowError) as e:
        raise ExecutionError(f"row decoding failed: {e}") from e
