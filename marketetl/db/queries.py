"""Read helpers over the raw, transformed and run-log tables.

Used by the CLI and by external reporting collaborators that read the
pipeline's output after a run has completed.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from marketetl.db.models import PipelineRunLogModel, raw_table, transformed_table


async def raw_row_exists(
    session: AsyncSession,
    ticker: str,
    date: datetime,
    table_name: str = "raw_stock_data",
) -> bool:
    """Check whether the raw table holds an observation for ticker on date.

    Args:
        session: Database session
        ticker: Ticker symbol (matched upper-cased, as loaded)
        date: Observation timestamp (midnight for daily bars)
        table_name: Raw table to query

    Returns:
        True if at least one matching row exists
    """
    table = raw_table(table_name)
    stmt = (
        select(func.count())
        .select_from(table)
        .where(table.c.ticker == ticker.strip().upper(), table.c.date == date)
    )
    count = await session.scalar(stmt)
    return bool(count)


async def count_rows(session: AsyncSession, raw_name: str, transformed_name: str) -> dict[str, int]:
    """Row counts for an asset's raw and transformed tables."""
    raw = raw_table(raw_name)
    transformed = transformed_table(transformed_name)

    raw_count = await session.scalar(select(func.count()).select_from(raw))
    transformed_count = await session.scalar(select(func.count()).select_from(transformed))
    return {"raw": raw_count or 0, "transformed": transformed_count or 0}


async def recent_runs(session: AsyncSession, last_n: int = 5) -> dict[datetime, list[PipelineRunLogModel]]:
    """Return the last N runs' log rows grouped by run timestamp, newest first."""
    stmt = (
        select(PipelineRunLogModel)
        .order_by(PipelineRunLogModel.run_timestamp.desc())
        .limit(last_n * 10)  # several files per run; grouped below
    )
    result = await session.execute(stmt)
    logs = result.scalars().all()

    runs: dict[datetime, list[PipelineRunLogModel]] = {}
    for log in logs:
        runs.setdefault(log.run_timestamp, []).append(log)

    newest = sorted(runs.keys(), reverse=True)[:last_n]
    return {ts: runs[ts] for ts in newest}
