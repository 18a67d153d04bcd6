"""Tabular OHLCV ingestion.

Reads an extracted CSV or XLSX file, validates its header against the
recognized column vocabulary and writes every usable row to a staging file
for the bulk loader.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator, Mapping, Sequence
from datetime import date, datetime, time as dt_time
from pathlib import Path
from typing import Optional

import openpyxl
import pandas as pd

from marketetl.config import IngestConfig
from marketetl.pipeline.cells import EMPTY_CELL, CellKind, CellValue
from marketetl.pipeline.normalize import parse_date, normalize_ticker
from marketetl.pipeline.staging import StagingWriter, create_staging_file, remove_staging_file
from marketetl.pipeline.types import IngestResult, SchemaMismatchError, StagingRecord

logger = logging.getLogger(__name__)

RECOGNIZED_COLUMNS = (
    "ticker",
    "date",
    "open",
    "high",
    "low",
    "close",
    "volume",
    "closeadj",
    "closeunadj",
    "lastupdated",
)
MANDATORY_COLUMNS = ("ticker", "date")
PRICE_VOLUME_COLUMNS = ("open", "high", "low", "close", "volume", "closeadj")

SPREADSHEET_SUFFIXES = (".xlsx",)

CellRow = Sequence[CellValue]


def detect_columns(header: Sequence[str]) -> dict[str, int]:
    """Map recognized column names to their position in a header row.

    Names are compared trimmed and lower-cased; the first occurrence wins.
    """
    columns: dict[str, int] = {}
    for idx, name in enumerate(header):
        key = str(name).strip().lower() if name is not None else ""
        if key in RECOGNIZED_COLUMNS and key not in columns:
            columns[key] = idx
    return columns


def is_ohlcv_table(columns: Mapping[str, int]) -> bool:
    """True if the header carries ticker, date and at least one price/volume column."""
    if not all(name in columns for name in MANDATORY_COLUMNS):
        return False
    return any(name in columns for name in PRICE_VOLUME_COLUMNS)


def _cell(row: CellRow, columns: Mapping[str, int], name: str) -> CellValue:
    idx = columns.get(name)
    if idx is None or idx >= len(row):
        return EMPTY_CELL
    return row[idx]


def _cell_date(cell: CellValue) -> Optional[datetime]:
    if cell.kind is CellKind.DATE:
        if isinstance(cell.value, datetime):
            return cell.value.replace(tzinfo=None)
        if isinstance(cell.value, date):
            return datetime.combine(cell.value, dt_time())
        return None
    return parse_date(cell.as_text())


def build_record(
    row: CellRow, columns: Mapping[str, int], source_file: str
) -> Optional[StagingRecord]:
    """Turn one data row into a staging record.

    Returns None when the ticker is blank or the date cannot be parsed;
    numeric fields that do not parse are kept as NULL.
    """
    ticker = normalize_ticker(_cell(row, columns, "ticker").as_text())
    if not ticker:
        return None

    row_date = _cell_date(_cell(row, columns, "date"))
    if row_date is None:
        return None

    return StagingRecord(
        ticker=ticker,
        date=row_date,
        open=_cell(row, columns, "open").as_number(),
        high=_cell(row, columns, "high").as_number(),
        low=_cell(row, columns, "low").as_number(),
        close=_cell(row, columns, "close").as_number(),
        volume=_cell(row, columns, "volume").as_number(),
        close_adj=_cell(row, columns, "closeadj").as_number(),
        source_file=source_file,
    )


def _text_cell(value: object) -> CellValue:
    # pandas pads short rows with NaN even with dtype=str
    if not isinstance(value, str) or value == "":
        return EMPTY_CELL
    return CellValue(CellKind.STRING, value)


class TabularIngestor:
    """Parse extracted OHLCV files into staging files.

    Usage:
        ingestor = TabularIngestor(config.ingest)
        result = ingestor.ingest(Path("SHARADAR_SEP.csv"))
        if result.accepted:
            await loader.load(result.staging_path)
    """

    def __init__(self, config: Optional[IngestConfig] = None, staging_dir: Optional[Path] = None):
        self.config = config or IngestConfig()
        self.staging_dir = staging_dir

    def ingest(self, file_path: Path, staging_prefix: str = "stock_data_") -> IngestResult:
        """Ingest one file.

        Spreadsheets are read with openpyxl; if that fails for any reason
        other than a header mismatch, the file is retried as CSV.

        Args:
            file_path: Extracted CSV or XLSX file
            staging_prefix: Name prefix for the staging file

        Returns:
            IngestResult; ``staging_path`` is set only for accepted files and
            the caller owns (and must delete) that file.

        Raises:
            FileNotFoundError: If file_path doesn't exist
        """
        if not file_path.exists():
            raise FileNotFoundError(f"Input file not found: {file_path}")

        logger.info(f"Processing file: {file_path}")

        if file_path.suffix.lower() in SPREADSHEET_SUFFIXES:
            try:
                return self._ingest_rows(file_path, self._spreadsheet_rows(file_path), staging_prefix)
            except SchemaMismatchError as e:
                return self._skipped(file_path, str(e))
            except Exception as e:
                logger.error(f"Error processing Excel file, attempting CSV fallback: {e}")

        try:
            return self._ingest_rows(file_path, self._csv_rows(file_path), staging_prefix)
        except SchemaMismatchError as e:
            return self._skipped(file_path, str(e))

    def _skipped(self, file_path: Path, reason: str) -> IngestResult:
        logger.warning(f"Skipping {file_path.name}: {reason}")
        return IngestResult(source_file=file_path.name, skipped_reason=reason)

    def _ingest_rows(
        self, file_path: Path, rows: Iterator[CellRow], staging_prefix: str
    ) -> IngestResult:
        """Validate the header (first item of rows) and stage the remaining rows."""
        try:
            header = next(rows, None)
            if header is None:
                raise SchemaMismatchError("file has no header row")

            columns = detect_columns([cell.as_text() for cell in header])
            logger.info(f"Detected columns: {sorted(columns, key=columns.get)}")
            if not is_ohlcv_table(columns):
                raise SchemaMismatchError(
                    "file does not contain required stock data columns "
                    "(ticker, date and at least one price/volume column)"
                )

            staging_path = create_staging_file(prefix=staging_prefix, directory=self.staging_dir)
            try:
                result = self._stage(file_path, rows, columns, staging_path)
            except BaseException:
                remove_staging_file(staging_path)
                raise
        finally:
            rows.close()

        logger.info(
            f"Processed {result.rows_seen} rows from {file_path.name}: "
            f"{result.rows_accepted} staged, {result.rows_rejected} rejected"
        )
        return result

    def _stage(
        self,
        file_path: Path,
        rows: Iterator[CellRow],
        columns: Mapping[str, int],
        staging_path: Path,
    ) -> IngestResult:
        interval = self.config.progress_interval
        start = time.monotonic()
        seen = 0

        with StagingWriter(staging_path) as writer:
            for row in rows:
                if all(cell.kind is CellKind.EMPTY for cell in row):
                    continue
                seen += 1

                record = build_record(row, columns, file_path.name)
                if record is not None:
                    writer.write(record)

                if seen % interval == 0:
                    elapsed = time.monotonic() - start
                    rate = seen / elapsed if elapsed > 0 else 0.0
                    logger.info(f"Processed {seen} rows ({rate:.0f} rows/sec)")

            accepted = writer.rows_written

        return IngestResult(
            source_file=file_path.name,
            rows_seen=seen,
            rows_accepted=accepted,
            staging_path=staging_path,
        )

    def _csv_rows(self, file_path: Path) -> Iterator[CellRow]:
        """Yield the header, then data rows, of a CSV file as cell rows."""
        try:
            header = pd.read_csv(file_path, nrows=0, dtype=str, encoding="utf-8-sig")
        except pd.errors.EmptyDataError:
            return
        yield [_text_cell(name) for name in header.columns]

        reader = pd.read_csv(
            file_path,
            dtype=str,
            keep_default_na=False,
            encoding="utf-8-sig",
            chunksize=self.config.csv_chunk_size,
            on_bad_lines="skip",
        )
        with reader:
            for chunk in reader:
                for values in chunk.itertuples(index=False, name=None):
                    yield [_text_cell(v) for v in values]

    def _spreadsheet_rows(self, file_path: Path) -> Iterator[CellRow]:
        """Yield the header, then data rows, of the first worksheet."""
        workbook = openpyxl.load_workbook(file_path, read_only=True, data_only=True)
        try:
            sheet = workbook.worksheets[0]
            for row in sheet.iter_rows():
                yield [CellValue.from_openpyxl(cell) for cell in row]
        finally:
            workbook.close()
