"""Unit tests for TabularIngestor (CSV and XLSX parsing into staging files)."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from pathlib import Path

import openpyxl
import pytest

from marketetl.config import IngestConfig
from marketetl.pipeline.ingestor import TabularIngestor, detect_columns, is_ohlcv_table
from marketetl.pipeline.staging import read_staging_batches


def _staged_rows(path: Path) -> list[dict]:
    return [row for batch in read_staging_batches(path, 100) for row in batch]


@pytest.fixture
def ingestor(tmp_path: Path) -> TabularIngestor:
    return TabularIngestor(IngestConfig(progress_interval=2, csv_chunk_size=2), staging_dir=tmp_path)


class TestColumnDetection:
    def test_detect_columns_is_case_and_space_insensitive(self):
        columns = detect_columns([" Ticker", "DATE ", "Close", "dimension", "close"])

        assert columns == {"ticker": 0, "date": 1, "close": 2}

    def test_requires_ticker_date_and_one_price_column(self):
        assert is_ohlcv_table({"ticker": 0, "date": 1, "volume": 2})
        assert not is_ohlcv_table({"ticker": 0, "date": 1, "closeunadj": 2, "lastupdated": 3})
        assert not is_ohlcv_table({"ticker": 0, "open": 1, "close": 2})
        assert not is_ohlcv_table({"date": 0, "close": 1})


class TestCsvIngest:
    def test_stages_valid_rows(self, ingestor: TabularIngestor, sep_csv: Path):
        result = ingestor.ingest(sep_csv)

        assert result.accepted
        assert result.rows_seen == 4
        assert result.rows_accepted == 4

        rows = _staged_rows(result.staging_path)
        assert [r["ticker"] for r in rows] == ["AAPL", "AAPL", "AAPL", "MSFT"]
        assert rows[0]["open"] == Decimal("150")
        assert rows[0]["closeadj"] == Decimal("151.5")
        assert rows[1]["open"] is None
        assert rows[2]["close"] is None  # N/A
        assert rows[2]["high"] is None
        assert rows[3]["date"] == datetime(2024, 1, 2)  # M/d/yyyy
        assert rows[3]["source_file"] == sep_csv.name

    def test_drops_rows_without_ticker_or_date(self, ingestor: TabularIngestor, tmp_path: Path):
        path = tmp_path / "SEP.csv"
        path.write_text(
            "date,ticker,close\n"
            "2024-01-02,AAPL,1\n"
            "2024-01-02,,2\n"
            "garbage,MSFT,3\n"
            ",,\n"
            "2024-01-03,msft,4\n",
            encoding="utf-8",
        )

        result = ingestor.ingest(path)

        assert result.rows_seen == 4  # blank line not counted
        assert result.rows_accepted == 2
        assert result.rows_rejected == 2
        assert [r["ticker"] for r in _staged_rows(result.staging_path)] == ["AAPL", "MSFT"]

    def test_columns_in_any_order(self, ingestor: TabularIngestor, tmp_path: Path):
        path = tmp_path / "SEP.csv"
        path.write_text("volume,Close,TICKER,Date\n900,10.5,ibm,2024/02/01\n", encoding="utf-8")

        rows = _staged_rows(ingestor.ingest(path).staging_path)

        assert rows == [
            {
                "ticker": "IBM",
                "date": datetime(2024, 2, 1),
                "open": None,
                "high": None,
                "low": None,
                "close": Decimal("10.5"),
                "volume": Decimal("900"),
                "closeadj": None,
                "source_file": "SEP.csv",
            }
        ]

    def test_non_ohlcv_file_is_skipped(self, ingestor: TabularIngestor, tmp_path: Path):
        path = tmp_path / "SEP_tickers.csv"
        path.write_text("ticker,name,exchange\nAAPL,Apple,NASDAQ\n", encoding="utf-8")

        result = ingestor.ingest(path)

        assert not result.accepted
        assert result.staging_path is None
        assert "required stock data columns" in result.skipped_reason
        assert list(tmp_path.glob("*.tsv")) == []

    def test_empty_file_is_skipped(self, ingestor: TabularIngestor, tmp_path: Path):
        path = tmp_path / "empty.csv"
        path.write_text("", encoding="utf-8")

        result = ingestor.ingest(path)

        assert not result.accepted
        assert result.skipped_reason

    def test_missing_file_raises(self, ingestor: TabularIngestor, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            ingestor.ingest(tmp_path / "nope.csv")

    def test_staging_prefix(self, ingestor: TabularIngestor, sep_csv: Path):
        result = ingestor.ingest(sep_csv, staging_prefix="fund_data_")
        assert result.staging_path.name.startswith("fund_data_")


class TestSpreadsheetIngest:
    def test_reads_first_sheet(self, ingestor: TabularIngestor, tmp_path: Path):
        path = tmp_path / "SHARADAR_SEP.xlsx"
        workbook = openpyxl.Workbook()
        sheet = workbook.active
        sheet.append(["ticker", "date", "open", "high", "low", "close", "volume", "closeadj"])
        sheet.append(["AAPL", datetime(2024, 1, 2), 150.5, 155, 148, 152.25, 1000, None])
        sheet.append(["MSFT", "1/3/2024", "n/a", 10, 9, 9.5, 100, 9.4])
        sheet.append([None, None, None])
        other = workbook.create_sheet("ignored")
        other.append(["ticker", "date", "close"])
        other.append(["IGN", "2024-01-01", 1])
        workbook.save(path)

        result = ingestor.ingest(path)

        assert result.accepted
        assert result.rows_seen == 2
        rows = _staged_rows(result.staging_path)
        assert [r["ticker"] for r in rows] == ["AAPL", "MSFT"]
        assert rows[0]["date"] == datetime(2024, 1, 2)
        assert rows[0]["open"] == Decimal("150.5")
        assert rows[0]["close"] == Decimal("152.25")
        assert rows[0]["closeadj"] is None
        assert rows[1]["date"] == datetime(2024, 1, 3)
        assert rows[1]["open"] is None
        assert rows[1]["closeadj"] == Decimal("9.4")

    def test_falls_back_to_csv_when_not_a_workbook(self, ingestor: TabularIngestor, tmp_path: Path):
        path = tmp_path / "SEP.xlsx"
        path.write_text("ticker,date,close\nAAPL,2024-01-02,1\n", encoding="utf-8")

        result = ingestor.ingest(path)

        assert result.accepted
        assert result.rows_accepted == 1

    def test_spreadsheet_header_mismatch_is_skipped(self, ingestor: TabularIngestor, tmp_path: Path):
        path = tmp_path / "SEP.xlsx"
        workbook = openpyxl.Workbook()
        workbook.active.append(["ticker", "name"])
        workbook.active.append(["AAPL", "Apple"])
        workbook.save(path)

        result = ingestor.ingest(path)

        assert not result.accepted
        assert result.staging_path is None
