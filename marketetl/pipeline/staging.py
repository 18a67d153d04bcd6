"""Staging file codec.

The staging file bridges parsing and loading: tab-delimited UTF-8 text in
PostgreSQL COPY text format, one row per line, columns in raw-table order:

    ticker, date, open, high, low, close, volume, closeadj, source_file

NULL is written as the two characters backslash-N.
"""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Iterator
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Optional, TextIO

from marketetl.pipeline.normalize import is_numeric_token, normalize_numeric
from marketetl.pipeline.types import NULL_SENTINEL, StagingRecord

logger = logging.getLogger(__name__)

STAGING_COLUMNS = (
    "ticker",
    "date",
    "open",
    "high",
    "low",
    "close",
    "volume",
    "closeadj",
    "source_file",
)
NUMERIC_FIELD_RANGE = range(2, 8)  # open .. closeadj
MIN_FIELDS = 8  # source_file may be missing

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def escape_text(value: str) -> str:
    """Escape a text field for COPY text format."""
    return (
        value.replace("\\", "\\\\")
        .replace("\t", " ")
        .replace("\r", " ")
        .replace("\n", " ")
    )


def unescape_text(value: str) -> str:
    return value.replace("\\\\", "\\")


def format_numeric(value: Optional[Decimal]) -> str:
    return NULL_SENTINEL if value is None else str(value)


def format_record(record: StagingRecord) -> str:
    """Render one record as a staging line (with trailing newline)."""
    fields = [escape_text(record.ticker), record.date.strftime(DATE_FORMAT)]
    fields.extend(format_numeric(v) for v in record.numeric_fields)
    fields.append(escape_text(record.source_file) if record.source_file else NULL_SENTINEL)
    return "\t".join(fields) + "\n"


def create_staging_file(prefix: str = "stock_data_", directory: Optional[Path] = None) -> Path:
    """Create an empty staging file and return its path."""
    fd, name = tempfile.mkstemp(prefix=prefix, suffix=".tsv", dir=directory)
    os.close(fd)
    return Path(name)


def remove_staging_file(path: Optional[Path]) -> None:
    """Delete a staging file if it still exists."""
    if path is None:
        return
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Could not delete staging file {path}: {e}")


class StagingWriter:
    """Append records to a staging file.

    Usage:
        with StagingWriter(path) as writer:
            writer.write(record)
    """

    def __init__(self, path: Path):
        self.path = path
        self.rows_written = 0
        self._handle: Optional[TextIO] = None

    def __enter__(self) -> StagingWriter:
        self._handle = open(self.path, "w", encoding="utf-8", newline="\n")
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    def write(self, record: StagingRecord) -> None:
        if self._handle is None:
            raise RuntimeError("StagingWriter used outside of its context")
        self._handle.write(format_record(record))
        self.rows_written += 1


def parse_staging_line(line: str) -> Optional[dict]:
    """Parse a staging line into raw-table column values.

    Numeric tokens that do not parse become None. Returns None for lines with
    too few fields or an unreadable date.
    """
    fields = line.rstrip("\n").split("\t")
    if len(fields) < MIN_FIELDS:
        return None

    try:
        date = datetime.strptime(fields[1], DATE_FORMAT)
    except ValueError:
        return None

    row = {
        "ticker": unescape_text(fields[0]),
        "date": date,
    }
    for name, idx in zip(STAGING_COLUMNS[2:8], NUMERIC_FIELD_RANGE):
        token = fields[idx]
        row[name] = None if token == NULL_SENTINEL else normalize_numeric(token)

    source = fields[8] if len(fields) > 8 else NULL_SENTINEL
    row["source_file"] = None if source == NULL_SENTINEL else unescape_text(source)
    return row


def read_staging_batches(path: Path, batch_size: int) -> Iterator[list[dict]]:
    """Yield parsed rows from a staging file in lists of ``batch_size``."""
    batch: list[dict] = []
    with open(path, encoding="utf-8") as f:
        for line in f:
            row = parse_staging_line(line)
            if row is None:
                continue
            batch.append(row)
            if len(batch) >= batch_size:
                yield batch
                batch = []
    if batch:
        yield batch


def clean_staging_file(source: Path, target: Path, log_every: int = 100_000) -> tuple[int, int]:
    """Rewrite a staging file with every invalid numeric token set to NULL.

    Returns:
        (lines read, lines written)
    """
    processed = 0
    written = 0
    with open(source, encoding="utf-8") as src, open(
        target, "w", encoding="utf-8", newline="\n"
    ) as dst:
        for line in src:
            processed += 1
            fields = line.rstrip("\n").split("\t")
            if len(fields) < MIN_FIELDS:
                continue

            cleaned = fields[:2]
            for idx in NUMERIC_FIELD_RANGE:
                token = fields[idx]
                if token == NULL_SENTINEL or not token or not is_numeric_token(token):
                    cleaned.append(NULL_SENTINEL)
                else:
                    cleaned.append(token)
            cleaned.append(fields[8] if len(fields) > 8 else NULL_SENTINEL)

            dst.write("\t".join(cleaned) + "\n")
            written += 1

            if processed % log_every == 0:
                logger.info(f"Cleaned {processed} lines so far...")

    return processed, written
