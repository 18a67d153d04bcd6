"""Raw-table bulk loader.

Loads a staging file through a fallback cascade:

1. server-side COPY of the whole file in one transaction
2. if COPY rejected a malformed numeric literal: clean the file, COPY again
3. batched INSERTs, each batch in its own transaction; failed batches are
   logged and skipped

Stores without a bulk copy protocol (SQLite) go straight to step 3.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from pathlib import Path
from typing import Optional

from sqlalchemy import insert, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from marketetl.config import LoaderConfig
from marketetl.db.connection import get_engine, is_postgres
from marketetl.db.models import raw_table
from marketetl.pipeline.staging import (
    STAGING_COLUMNS,
    clean_staging_file,
    create_staging_file,
    read_staging_batches,
    remove_staging_file,
)
from marketetl.pipeline.types import (
    NULL_SENTINEL,
    BulkCopyUnsupportedError,
    LoadExhaustedError,
    LoadResult,
    LoadStrategy,
)

logger = logging.getLogger(__name__)

INVALID_TEXT_REPRESENTATION = "22P02"
NUMERIC_FORMAT_MESSAGE = "invalid input syntax for type numeric"

_COPY_STATUS = re.compile(r"COPY\s+(\d+)")


def _is_numeric_format_error(error: BaseException) -> bool:
    """True if a COPY failure was caused by a malformed numeric literal.

    Checks the SQLSTATE on the error and on any wrapped driver error, then
    falls back to the message text.
    """
    seen: set[int] = set()
    current: Optional[BaseException] = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        for attr in ("sqlstate", "pgcode"):
            if getattr(current, attr, None) == INVALID_TEXT_REPRESENTATION:
                return True
        if NUMERIC_FORMAT_MESSAGE in str(current).lower():
            return True
        current = getattr(current, "orig", None) or current.__cause__
    return False


def _copied_rows(status: str) -> int:
    match = _COPY_STATUS.search(status or "")
    return int(match.group(1)) if match else 0


class BulkLoader:
    """Load staging files into one raw table.

    Usage:
        loader = BulkLoader("raw_stock_data")
        await loader.truncate()
        result = await loader.load(staging_path)
    """

    def __init__(
        self,
        table_name: str = "raw_stock_data",
        engine: Optional[AsyncEngine] = None,
        config: Optional[LoaderConfig] = None,
    ):
        self.table_name = table_name
        self.table = raw_table(table_name)
        self.engine = engine or get_engine()
        self.config = config or LoaderConfig()

    @property
    def _quoted_table(self) -> str:
        return self.engine.dialect.identifier_preparer.quote(self.table_name)

    async def truncate(self) -> None:
        """Empty the raw table ahead of a full reload."""
        if is_postgres(self.engine):
            stmt = f"TRUNCATE TABLE {self._quoted_table}"
        else:
            stmt = f"DELETE FROM {self._quoted_table}"

        async with self.engine.begin() as conn:
            await conn.execute(text(stmt))
        logger.info(f"Truncated {self.table_name}")

    async def load(self, staging_path: Path) -> LoadResult:
        """Load a staging file, falling back through the cascade.

        Args:
            staging_path: Staging file written by the ingestor (not deleted here)

        Returns:
            LoadResult naming the strategy that committed the rows

        Raises:
            LoadExhaustedError: If batch insertion loaded nothing and every
                batch failed
        """
        attempts: list[LoadStrategy] = [LoadStrategy.BULK_COPY]
        start = time.monotonic()

        try:
            rows = await self._copy_file(staging_path)
            logger.info(
                f"Bulk copy loaded {rows} rows into {self.table_name} "
                f"in {time.monotonic() - start:.1f}s"
            )
            return LoadResult(LoadStrategy.BULK_COPY, rows_loaded=rows, attempts=attempts)
        except BulkCopyUnsupportedError as e:
            logger.info(f"{e}; using batch insert")
        except Exception as e:
            if _is_numeric_format_error(e):
                logger.warning(f"Bulk copy rejected a numeric value, cleaning file: {e}")
                attempts.append(LoadStrategy.CLEANED_COPY)
                rows = await self._copy_cleaned(staging_path)
                if rows is not None:
                    return LoadResult(
                        LoadStrategy.CLEANED_COPY, rows_loaded=rows, attempts=attempts
                    )
            else:
                logger.error(f"Bulk copy failed: {e}")

        attempts.append(LoadStrategy.BATCH_INSERT)
        result = await self._batch_insert(staging_path)
        result.attempts = attempts

        if result.rows_loaded == 0 and result.batches_failed > 0:
            raise LoadExhaustedError(
                f"All {result.batches_failed} batches failed loading {staging_path.name}"
            )
        return result

    async def _copy_cleaned(self, staging_path: Path) -> Optional[int]:
        cleaned = create_staging_file(prefix="cleaned_", directory=staging_path.parent)
        try:
            processed, written = await asyncio.to_thread(clean_staging_file, staging_path, cleaned)
            logger.info(f"Cleaned file: {processed} lines read, {written} lines written")
            rows = await self._copy_file(cleaned)
            logger.info(f"Cleaned bulk copy loaded {rows} rows into {self.table_name}")
            return rows
        except Exception as e:
            logger.error(f"Cleaned bulk copy failed: {e}")
            return None
        finally:
            remove_staging_file(cleaned)

    async def _copy_file(self, path: Path) -> int:
        """COPY a staging file into the table in a single transaction.

        Raises:
            BulkCopyUnsupportedError: If the engine is not PostgreSQL
        """
        if not is_postgres(self.engine):
            raise BulkCopyUnsupportedError(
                f"{self.engine.dialect.name} has no server-side bulk copy"
            )

        async with self.engine.connect() as conn:
            raw = await conn.get_raw_connection()
            driver = raw.driver_connection
            async with driver.transaction():
                status = await driver.copy_to_table(
                    self.table_name,
                    source=str(path),
                    columns=list(STAGING_COLUMNS),
                    format="text",
                    delimiter="\t",
                    null=NULL_SENTINEL,
                )
        return _copied_rows(status)

    async def _batch_insert(self, path: Path) -> LoadResult:
        batch_size = self.config.batch_size
        logger.info(f"Loading {path.name} with batch inserts of {batch_size} rows")

        loaded = 0
        failed = 0
        number = 0
        batches = read_staging_batches(path, batch_size)
        try:
            while True:
                # File reads and Decimal parsing run off the event loop
                batch = await asyncio.to_thread(next, batches, None)
                if batch is None:
                    break
                number += 1
                try:
                    async with self.engine.begin() as conn:
                        await conn.execute(insert(self.table), batch)
                except SQLAlchemyError as e:
                    failed += 1
                    logger.error(f"Error inserting batch {number}: {e}")
                    continue

                loaded += len(batch)
                logger.info(f"Inserted batch {number} ({loaded} rows total)")
        finally:
            batches.close()

        logger.info(f"Batch insert finished: {loaded} rows loaded, {failed} batches failed")
        return LoadResult(LoadStrategy.BATCH_INSERT, rows_loaded=loaded, batches_failed=failed)
