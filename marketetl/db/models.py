"""SQLAlchemy async database models for marketetl.

Maps to a PostgreSQL/TimescaleDB schema; SQLite works for tests.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    BigInteger,
    CheckConstraint,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    Table,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func

# SQLite only autoincrements INTEGER PRIMARY KEY columns
_Identity = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class RawStockDataModel(Base):
    """One OHLCV observation exactly as loaded from the vendor archive.

    No uniqueness on (ticker, date): the table is truncated and fully
    reloaded on every run.
    """

    __tablename__ = "raw_stock_data"

    id: Mapped[int] = mapped_column(_Identity, primary_key=True, autoincrement=True)
    ticker: Mapped[str] = mapped_column(Text, nullable=False)
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    open: Mapped[Decimal | None] = mapped_column(Numeric)
    high: Mapped[Decimal | None] = mapped_column(Numeric)
    low: Mapped[Decimal | None] = mapped_column(Numeric)
    close: Mapped[Decimal | None] = mapped_column(Numeric)
    volume: Mapped[Decimal | None] = mapped_column(Numeric)
    closeadj: Mapped[Decimal | None] = mapped_column(Numeric)

    source_file: Mapped[str | None] = mapped_column(Text)


class TransformedStockDataModel(Base):
    """Imputed OHLCV plus derived metrics, one row per (ticker, date)."""

    __tablename__ = "transformed_stock_data"

    id: Mapped[int] = mapped_column(_Identity, primary_key=True, autoincrement=True)
    ticker: Mapped[str] = mapped_column(Text, nullable=False)
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    open: Mapped[Decimal | None] = mapped_column(Numeric)
    high: Mapped[Decimal | None] = mapped_column(Numeric)
    low: Mapped[Decimal | None] = mapped_column(Numeric)
    close: Mapped[Decimal | None] = mapped_column(Numeric)
    volume: Mapped[Decimal | None] = mapped_column(Numeric)
    closeadj: Mapped[Decimal | None] = mapped_column(Numeric)

    # Derived metrics
    price_change: Mapped[Decimal | None] = mapped_column(Numeric)  # (close-open)/open*100
    volatility: Mapped[Decimal | None] = mapped_column(Numeric)  # (high-low)/open*100
    vwap: Mapped[Decimal | None] = mapped_column(Numeric)  # trailing 7-row window
    sma_7: Mapped[Decimal | None] = mapped_column(Numeric)

    # Constraint left unnamed so per-asset copies get their own generated name
    __table_args__ = (UniqueConstraint("ticker", "date"),)


class PipelineRunLogModel(Base):
    """Per-file outcome of a pipeline run, for operational monitoring."""

    __tablename__ = "pipeline_run_log"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)

    # Pipeline execution tracking
    run_timestamp: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, index=True
    )
    asset: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    source_file: Mapped[str | None] = mapped_column(Text)

    # Execution outcome
    status: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    rows_seen: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rows_loaded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rows_transformed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    load_strategy: Mapped[str | None] = mapped_column(Text)

    # Detailed diagnostics
    message: Mapped[str | None] = mapped_column(Text)
    error_details: Mapped[dict | None] = mapped_column(JSON)

    # Execution metrics
    duration_seconds: Mapped[float | None] = mapped_column()

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('SUCCESS', 'FAILED', 'PARTIAL_SUCCESS', 'SKIPPED', 'REJECTED')",
            name="check_run_status_valid",
        ),
        CheckConstraint("rows_loaded >= 0", name="check_rows_loaded_non_negative"),
    )


def raw_table(name: str, metadata: MetaData | None = None) -> Table:
    """Return the raw-table definition for ``name``.

    The default name resolves to the declarative table; any other name gets a
    structural copy registered on ``Base.metadata`` (or ``metadata``).
    """
    return _table_variant(RawStockDataModel.__table__, name, metadata)


def transformed_table(name: str, metadata: MetaData | None = None) -> Table:
    """Return the transformed-table definition for ``name``."""
    return _table_variant(TransformedStockDataModel.__table__, name, metadata)


def _table_variant(template: Table, name: str, metadata: MetaData | None) -> Table:
    target = metadata or Base.metadata
    if name == template.name and target is template.metadata:
        return template
    if name in target.tables:
        return target.tables[name]
    return template.to_metadata(target, name=name)
