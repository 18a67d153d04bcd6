"""Pytest configuration and fixtures for marketetl tests.

Provides common fixtures for testing.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from marketetl.config import AppConfig, ArchiveConfig, DBConfig, LoaderConfig, reset_config
from marketetl.db.connection import init_db
from marketetl.pipeline.types import StagingRecord

OHLCV_HEADER = "ticker,date,open,high,low,close,volume,closeadj,closeunadj,lastupdated"


@pytest.fixture(autouse=True)
def database_env(monkeypatch):
    """Every test sees a configured (throwaway) database URL."""
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    reset_config()
    yield
    reset_config()


@pytest_asyncio.fixture()
async def engine(tmp_path: Path) -> AsyncEngine:
    """File-backed SQLite database with all tables created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'marketetl.db'}")
    await init_db(engine)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Config pointing scratch space at a per-test directory."""
    return AppConfig(
        db=DBConfig(url=f"sqlite+aiosqlite:///{tmp_path / 'marketetl.db'}"),
        archive=ArchiveConfig(
            folder_url="https://1drv.ms/f/s!test-folder",
            api_base_url="https://api.test/v1.0",
            scratch_dir=tmp_path / "scratch",
        ),
        loader=LoaderConfig(batch_size=2),
    )


@pytest.fixture
def sample_records() -> list[StagingRecord]:
    """Three AAPL days and one MSFT day."""
    return [
        StagingRecord(
            ticker="AAPL",
            date=datetime(2024, 1, 2),
            open=Decimal("150"),
            high=Decimal("155"),
            low=Decimal("148"),
            close=Decimal("152"),
            volume=Decimal("1000"),
            close_adj=Decimal("151.5"),
            source_file="SHARADAR_SEP.csv",
        ),
        StagingRecord(
            ticker="AAPL",
            date=datetime(2024, 1, 3),
            open=None,
            high=Decimal("157"),
            low=Decimal("151"),
            close=Decimal("155"),
            volume=Decimal("0"),
            close_adj=None,
            source_file="SHARADAR_SEP.csv",
        ),
        StagingRecord(
            ticker="AAPL",
            date=datetime(2024, 1, 4),
            open=Decimal("156"),
            high=None,
            low=None,
            close=None,
            volume=Decimal("500"),
            close_adj=None,
            source_file="SHARADAR_SEP.csv",
        ),
        StagingRecord(
            ticker="MSFT",
            date=datetime(2024, 1, 2),
            open=Decimal("0"),
            high=Decimal("10"),
            low=Decimal("9"),
            close=Decimal("9.5"),
            volume=Decimal("100"),
            close_adj=None,
            source_file="SHARADAR_SEP.csv",
        ),
    ]


@pytest.fixture
def sep_csv(tmp_path: Path) -> Path:
    """Small vendor CSV in the SEP layout."""
    path = tmp_path / "SHARADAR_SEP_2024.csv"
    path.write_text(
        "\n".join(
            [
                OHLCV_HEADER,
                "AAPL,2024-01-02,150,155,148,152,1000,151.5,152,2024-01-02",
                "AAPL,2024-01-03,,157,151,155,0,,155,2024-01-03",
                "AAPL,2024-01-04,156,,,N/A,500,,,2024-01-04",
                "MSFT,1/2/2024,0,10,9,9.5,100,,,2024-01-02",
                "",
            ]
        ),
        encoding="utf-8",
    )
    return path
