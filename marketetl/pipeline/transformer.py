"""Raw -> transformed rebuild with imputation and derived metrics.

Runs entirely inside the database as a fixed sequence of set-based
statements:

1. empty the transformed table
2. carry the last known close forward over missing closes (raw table)
3. derive missing high/low from open/close (raw table)
4. insert imputed OHLCV plus price_change, volatility and vwap
5. fill sma_7 over the freshly inserted rows

Steps 1-3 and 5 are guarded individually; a failure there is logged and the
rebuild continues. A failure in step 4 ends the rebuild with zero rows.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from marketetl.db.connection import get_engine
from marketetl.pipeline.types import TransformResult

logger = logging.getLogger(__name__)

# Placeholder bounds used when only one of open/close exists
HIGH_FLOOR = 0
LOW_CEILING = 999999


@dataclass(frozen=True)
class TransformStatements:
    """SQL for one raw/transformed table pair on one dialect."""

    clear: str
    carry_forward_close: str
    derive_high_low: str
    insert: str
    update_sma7: str


def build_statements(raw: str, transformed: str, dialect: str) -> TransformStatements:
    """Render the rebuild statements for a dialect.

    Args:
        raw: Quoted raw table name
        transformed: Quoted transformed table name
        dialect: SQLAlchemy dialect name ("postgresql", "sqlite", ...)
    """
    if dialect == "postgresql":
        greatest, least = "GREATEST", "LEAST"
        clear = f"TRUNCATE TABLE {transformed}"
    else:
        # SQLite's multi-argument MAX/MIN are scalar
        greatest, least = "MAX", "MIN"
        clear = f"DELETE FROM {transformed}"

    carry_forward_close = f"""
        UPDATE {raw}
        SET close = (
            SELECT c.close
            FROM {raw} AS c
            WHERE c.ticker = {raw}.ticker
              AND c.date <= {raw}.date
              AND c.close IS NOT NULL
            ORDER BY c.date DESC
            LIMIT 1
        )
        WHERE close IS NULL
          AND EXISTS (
            SELECT 1
            FROM {raw} AS c
            WHERE c.ticker = {raw}.ticker
              AND c.date <= {raw}.date
              AND c.close IS NOT NULL
          )
    """

    derive_high_low = f"""
        UPDATE {raw}
        SET
            high = {greatest}(COALESCE(high, {HIGH_FLOOR}), COALESCE(open, {HIGH_FLOOR}), COALESCE(close, {HIGH_FLOOR})),
            low = CASE
                WHEN low IS NULL THEN {least}(COALESCE(open, {LOW_CEILING}), COALESCE(close, {LOW_CEILING}))
                ELSE low
            END
        WHERE (high IS NULL OR low IS NULL)
          AND (open IS NOT NULL OR close IS NOT NULL)
    """

    window_7 = "PARTITION BY p.ticker ORDER BY p.date ROWS BETWEEN 6 PRECEDING AND CURRENT ROW"

    # "* 1.0" keeps the arithmetic fractional on stores with integer affinity
    insert = f"""
        INSERT INTO {transformed} (
            ticker, date, open, high, low, close, volume, closeadj,
            price_change, volatility, vwap
        )
        SELECT
            p.ticker,
            p.date,
            p.open,
            p.high,
            p.low,
            p.close,
            p.volume,
            p.closeadj,
            CASE
                WHEN p.open = 0 OR p.open IS NULL THEN 0
                ELSE ((p.close - p.open) * 1.0 / p.open) * 100
            END AS price_change,
            CASE
                WHEN p.open = 0 OR p.open IS NULL THEN 0
                ELSE ((p.high - p.low) * 1.0 / p.open) * 100
            END AS volatility,
            CASE
                WHEN SUM(p.volume) OVER ({window_7}) = 0 THEN p.close
                ELSE SUM(p.close * p.volume) OVER ({window_7}) * 1.0
                     / SUM(p.volume) OVER ({window_7})
            END AS vwap
        FROM (
            SELECT
                ticker,
                date,
                COALESCE(
                    open,
                    LAG(close) OVER (PARTITION BY ticker ORDER BY date),
                    (high + low) / 2.0,
                    close
                ) AS open,
                COALESCE(high, {greatest}(COALESCE(open, {HIGH_FLOOR}), COALESCE(close, {HIGH_FLOOR}))) AS high,
                COALESCE(low, {least}(COALESCE(open, {LOW_CEILING}), COALESCE(close, {LOW_CEILING}))) AS low,
                COALESCE(close, open) AS close,
                COALESCE(
                    NULLIF(volume, 0),
                    AVG(NULLIF(volume, 0)) OVER (
                        PARTITION BY ticker
                        ORDER BY date
                        ROWS BETWEEN 7 PRECEDING AND 1 PRECEDING
                    ),
                    1
                ) AS volume,
                closeadj
            FROM {raw}
        ) AS p
    """

    update_sma7 = f"""
        UPDATE {transformed}
        SET sma_7 = avg_data.sma
        FROM (
            SELECT
                ticker,
                date,
                AVG(close) OVER (
                    PARTITION BY ticker
                    ORDER BY date
                    ROWS BETWEEN 6 PRECEDING AND CURRENT ROW
                ) AS sma
            FROM {transformed}
        ) AS avg_data
        WHERE {transformed}.ticker = avg_data.ticker
          AND {transformed}.date = avg_data.date
    """

    return TransformStatements(
        clear=clear,
        carry_forward_close=carry_forward_close,
        derive_high_low=derive_high_low,
        insert=insert,
        update_sma7=update_sma7,
    )


class TransformationEngine:
    """Rebuild one transformed table from its raw table.

    Only one rebuild runs at a time per engine instance; an overlapping call
    returns immediately with an error result.
    """

    def __init__(
        self,
        raw_table: str = "raw_stock_data",
        transformed_table: str = "transformed_stock_data",
        engine: Optional[AsyncEngine] = None,
    ):
        self.raw_table = raw_table
        self.transformed_table = transformed_table
        self.engine = engine or get_engine()
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def statements(self) -> TransformStatements:
        quote = self.engine.dialect.identifier_preparer.quote
        return build_statements(
            quote(self.raw_table), quote(self.transformed_table), self.engine.dialect.name
        )

    async def transform(self) -> TransformResult:
        """Run the full rebuild.

        Returns:
            TransformResult with inserted/updated row counts; ``error`` is set
            when the main insert failed or a rebuild was already running
        """
        if not self._lock.acquire(blocking=False):
            logger.warning(f"Transformation of {self.transformed_table} is already in progress")
            return TransformResult(error="transformation already in progress", rejected=True)

        try:
            return await self._transform()
        finally:
            self._lock.release()

    async def _transform(self) -> TransformResult:
        sql = self.statements()
        result = TransformResult()
        start = time.monotonic()
        logger.info(f"Starting transformation {self.raw_table} -> {self.transformed_table}")

        await self._guarded(result, "clear transformed table", sql.clear)
        await self._guarded(result, "carry forward close", sql.carry_forward_close)
        await self._guarded(result, "derive high/low", sql.derive_high_low)

        try:
            async with self.engine.begin() as conn:
                inserted = await conn.execute(text(sql.insert))
            result.rows_inserted = max(inserted.rowcount or 0, 0)
            logger.info(f"Initial transformation completed. Rows affected: {result.rows_inserted}")
        except SQLAlchemyError as e:
            logger.error(f"Error during stock data transformation: {e}", exc_info=True)
            result.error = str(e)
            return result

        try:
            async with self.engine.begin() as conn:
                updated = await conn.execute(text(sql.update_sma7))
            result.sma_rows_updated = max(updated.rowcount or 0, 0)
            logger.info(f"SMA_7 update completed. Rows affected: {result.sma_rows_updated}")
        except SQLAlchemyError as e:
            logger.error(f"Error updating SMA_7 values: {e}")

        logger.info(
            f"Transformation completed in {time.monotonic() - start:.1f}s "
            f"({result.rows_inserted} rows)"
        )
        return result

    async def _guarded(self, result: TransformResult, step: str, statement: str) -> None:
        try:
            async with self.engine.begin() as conn:
                outcome = await conn.execute(text(statement))
            logger.info(f"Step '{step}' completed. Rows affected: {outcome.rowcount}")
        except SQLAlchemyError as e:
            logger.error(f"Error in step '{step}': {e}")
            result.imputation_errors.append(f"{step}: {e}")
