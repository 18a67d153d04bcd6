"""Type definitions for pipeline operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Optional

# COPY text-format NULL marker, also used in staging files
NULL_SENTINEL = "\\N"


class PipelineError(Exception):
    """Base class for pipeline failures."""


class SchemaMismatchError(PipelineError):
    """File header lacks the mandatory or price/volume columns."""


class BulkCopyUnsupportedError(PipelineError):
    """The store has no server-side bulk copy protocol."""


class LoadExhaustedError(PipelineError):
    """Every load strategy failed for a staging file."""


class RunStatus(str, Enum):
    """Status of a pipeline run or of one file within it."""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    PARTIAL_SUCCESS = "PARTIAL_SUCCESS"
    SKIPPED = "SKIPPED"
    REJECTED = "REJECTED"  # another run was already in progress


class RunState(str, Enum):
    """Orchestrator state machine."""

    IDLE = "IDLE"
    RUNNING = "RUNNING"


class LoadStrategy(str, Enum):
    """Bulk loading strategy that finally committed the rows."""

    BULK_COPY = "BULK_COPY"
    CLEANED_COPY = "CLEANED_COPY"
    BATCH_INSERT = "BATCH_INSERT"


@dataclass(frozen=True)
class ArchiveFileDescriptor:
    """A candidate archive listed in the shared folder."""

    name: str
    last_modified: datetime
    download_url: str


@dataclass
class StagingRecord:
    """Normalized OHLCV row, ready to be written to the staging file.

    ``ticker`` and ``date`` are mandatory; every numeric field is
    individually nullable.
    """

    ticker: str
    date: datetime
    open: Optional[Decimal] = None
    high: Optional[Decimal] = None
    low: Optional[Decimal] = None
    close: Optional[Decimal] = None
    volume: Optional[Decimal] = None
    close_adj: Optional[Decimal] = None
    source_file: str = ""

    @property
    def numeric_fields(self) -> tuple[Optional[Decimal], ...]:
        """Numeric values in staging/raw-table column order."""
        return (self.open, self.high, self.low, self.close, self.volume, self.close_adj)


@dataclass
class IngestResult:
    """Outcome of parsing one extracted file into a staging file."""

    source_file: str
    rows_seen: int = 0
    rows_accepted: int = 0
    staging_path: Optional[Path] = None
    skipped_reason: Optional[str] = None

    @property
    def accepted(self) -> bool:
        """True when the file passed the schema check and produced a staging file."""
        return self.skipped_reason is None and self.staging_path is not None

    @property
    def rows_rejected(self) -> int:
        return self.rows_seen - self.rows_accepted


@dataclass
class LoadResult:
    """Outcome of loading one staging file into the raw table."""

    strategy: LoadStrategy
    rows_loaded: int = 0
    batches_failed: int = 0
    attempts: list[LoadStrategy] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.batches_failed == 0


@dataclass
class TransformResult:
    """Outcome of one transformation pass."""

    rows_inserted: int = 0
    sma_rows_updated: int = 0
    imputation_errors: list[str] = field(default_factory=list)
    error: Optional[str] = None
    rejected: bool = False  # another rebuild of the same table was running

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class FileRunResult:
    """Per-file outcome within a pipeline run."""

    asset: str
    source_file: str
    status: RunStatus
    rows_seen: int = 0
    rows_accepted: int = 0
    rows_loaded: int = 0
    rows_transformed: int = 0
    load_strategy: Optional[LoadStrategy] = None
    message: str = ""
    error_details: Optional[dict] = None
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.status in (RunStatus.SUCCESS, RunStatus.PARTIAL_SUCCESS)


@dataclass
class PipelineRunResult:
    """Result of an orchestrator invocation."""

    status: RunStatus
    run_timestamp: datetime
    files: list[FileRunResult] = field(default_factory=list)
    message: str = ""
    duration_seconds: float = 0.0

    @property
    def rejected(self) -> bool:
        return self.status is RunStatus.REJECTED

    @property
    def total_rows_loaded(self) -> int:
        return sum(f.rows_loaded for f in self.files)

    @property
    def total_rows_transformed(self) -> int:
        return sum(f.rows_transformed for f in self.files)
