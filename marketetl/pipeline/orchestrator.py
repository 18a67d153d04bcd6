"""Pipeline orchestrator - retrieval, ingest, load and transform per asset.

One run:
1. fetch the newest archive for every configured asset
2. for each retrieved file: ingest -> truncate raw -> bulk load -> transform
3. clean up old scratch files
4. log per-file results to pipeline_run_log

Resilient design: a failing file is recorded and the run moves on. Runs,
manual ingests and transform-only rebuilds never overlap; a second trigger
while one is in progress is rejected, not queued.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from marketetl.config import AppConfig, get_config
from marketetl.db.connection import get_engine
from marketetl.db.models import PipelineRunLogModel
from marketetl.pipeline.assets import AssetDescriptor, enabled_assets
from marketetl.pipeline.ingestor import TabularIngestor
from marketetl.pipeline.loader import BulkLoader
from marketetl.pipeline.retriever import ArchiveRetriever
from marketetl.pipeline.staging import remove_staging_file
from marketetl.pipeline.transformer import TransformationEngine
from marketetl.pipeline.types import (
    FileRunResult,
    PipelineRunResult,
    RunState,
    RunStatus,
)

logger = logging.getLogger(__name__)


def overall_status(files: list[FileRunResult]) -> RunStatus:
    """Roll per-file statuses up into a run status."""
    if not files:
        return RunStatus.SKIPPED
    statuses = {f.status for f in files}
    if len(statuses) == 1:
        return statuses.pop()
    return RunStatus.PARTIAL_SUCCESS


class PipelineOrchestrator:
    """Drives the retrieve -> ingest -> load -> transform sequence.

    Usage:
        orchestrator = PipelineOrchestrator()
        result = await orchestrator.run()
        if result.rejected:
            ...  # another run was in progress
    """

    def __init__(
        self,
        assets: Optional[Iterable[AssetDescriptor]] = None,
        engine: Optional[AsyncEngine] = None,
        config: Optional[AppConfig] = None,
        retriever: Optional[ArchiveRetriever] = None,
        ingestor: Optional[TabularIngestor] = None,
    ):
        self.config = config or get_config()
        self.engine = engine or get_engine()
        self.assets = list(assets) if assets is not None else enabled_assets()
        self.retriever = retriever or ArchiveRetriever(self.config.archive)
        self.ingestor = ingestor or TabularIngestor(self.config.ingest)

        self._state = RunState.IDLE
        self._state_lock = threading.Lock()
        self._transformers: dict[str, TransformationEngine] = {}

    @property
    def state(self) -> RunState:
        return self._state

    def _try_begin(self) -> bool:
        """Atomically move IDLE -> RUNNING; False if already running."""
        with self._state_lock:
            if self._state is RunState.RUNNING:
                return False
            self._state = RunState.RUNNING
            return True

    def _end(self) -> None:
        with self._state_lock:
            self._state = RunState.IDLE

    def _rejected(self, run_timestamp: datetime) -> PipelineRunResult:
        logger.warning("Pipeline run already in progress, rejecting trigger")
        return PipelineRunResult(
            status=RunStatus.REJECTED,
            run_timestamp=run_timestamp,
            message="pipeline run already in progress",
        )

    def transformer_for(self, asset: AssetDescriptor) -> TransformationEngine:
        """Shared TransformationEngine per asset, so its guard spans callers."""
        if asset.name not in self._transformers:
            self._transformers[asset.name] = TransformationEngine(
                asset.raw_table, asset.transformed_table, engine=self.engine
            )
        return self._transformers[asset.name]

    def asset_for_file(self, file_path: Path) -> Optional[AssetDescriptor]:
        for asset in self.assets:
            if asset.matches(file_path.name):
                return asset
        return None

    async def run(self) -> PipelineRunResult:
        """Execute a full pipeline run.

        Returns:
            PipelineRunResult; REJECTED if a run was already in progress,
            SKIPPED if no archive was retrieved
        """
        run_timestamp = datetime.now(timezone.utc)
        if not self._try_begin():
            return self._rejected(run_timestamp)

        start = time.monotonic()
        files: list[FileRunResult] = []
        try:
            logger.info(f"Starting pipeline run at {run_timestamp}")
            logger.info(f"Configured assets: {[a.name for a in self.assets]}")

            retrieved = await self.retriever.fetch_latest(self.assets)
            if not retrieved:
                logger.info("No new files to process")
            else:
                by_tag = {asset.tag: asset for asset in self.assets}
                for tag, path in retrieved.items():
                    asset = by_tag.get(tag)
                    if asset is None:
                        logger.warning(f"No configured asset for tag {tag}, skipping {path}")
                        continue
                    files.append(await self._process_file(asset, path))

            await asyncio.to_thread(self.retriever.cleanup_scratch)
        finally:
            self._end()

        return await self._finish(run_timestamp, files, start)

    async def ingest_local_file(
        self, file_path: Path, asset: Optional[AssetDescriptor] = None
    ) -> PipelineRunResult:
        """Ingest, load and transform a file already on disk.

        Args:
            file_path: Extracted CSV/XLSX file
            asset: Target asset; inferred from the file name when omitted

        Raises:
            ValueError: If no asset was given and none matches the file name
        """
        asset = asset or self.asset_for_file(file_path)
        if asset is None:
            raise ValueError(f"No configured asset matches {file_path.name}")

        run_timestamp = datetime.now(timezone.utc)
        if not self._try_begin():
            return self._rejected(run_timestamp)

        start = time.monotonic()
        try:
            logger.info(f"Manual ingest of {file_path} as asset {asset.name}")
            files = [await self._process_file(asset, file_path)]
        finally:
            self._end()

        return await self._finish(run_timestamp, files, start)

    async def transform_only(self, asset: Optional[AssetDescriptor] = None) -> PipelineRunResult:
        """Rebuild transformed tables from what is already in the raw tables.

        Shares the run guard: while a run is truncating or loading a raw
        table, a manual rebuild is rejected.
        """
        run_timestamp = datetime.now(timezone.utc)
        if not self._try_begin():
            return self._rejected(run_timestamp)

        start = time.monotonic()
        files = []
        try:
            for target in [asset] if asset else self.assets:
                files.append(await self._transform_asset(target))
        finally:
            self._end()

        return await self._finish(run_timestamp, files, start)

    async def _transform_asset(self, asset: AssetDescriptor) -> FileRunResult:
        started = time.monotonic()
        result = FileRunResult(asset=asset.name, source_file="", status=RunStatus.SUCCESS)

        transform = await self.transformer_for(asset).transform()
        result.rows_transformed = transform.rows_inserted
        if transform.rejected:
            result.status = RunStatus.REJECTED
            result.message = transform.error or ""
        elif not transform.success:
            result.status = RunStatus.FAILED
            result.message = f"Transform failed: {transform.error}"
        elif transform.imputation_errors:
            result.status = RunStatus.PARTIAL_SUCCESS
            result.message = "; ".join(transform.imputation_errors)
        else:
            result.message = f"Transformed {transform.rows_inserted} rows"

        result.duration_seconds = time.monotonic() - started
        return result

    async def _process_file(self, asset: AssetDescriptor, file_path: Path) -> FileRunResult:
        """Ingest -> truncate -> load -> transform one file.

        Failures are contained here and reported on the returned result.
        """
        started = time.monotonic()
        logger.info(f"Processing {asset.name} file: {file_path}")

        result = FileRunResult(
            asset=asset.name, source_file=file_path.name, status=RunStatus.SUCCESS
        )
        staging_path = None

        try:
            ingest = await asyncio.to_thread(
                self.ingestor.ingest, file_path, f"{asset.name}_data_"
            )
            staging_path = ingest.staging_path
            result.rows_seen = ingest.rows_seen
            result.rows_accepted = ingest.rows_accepted

            if not ingest.accepted:
                result.status = RunStatus.SKIPPED
                result.message = ingest.skipped_reason or "file not accepted"
                return result

            loader = BulkLoader(asset.raw_table, engine=self.engine, config=self.config.loader)
            await loader.truncate()
            load = await loader.load(staging_path)
            result.rows_loaded = load.rows_loaded
            result.load_strategy = load.strategy

            transform = await self.transformer_for(asset).transform()
            result.rows_transformed = transform.rows_inserted

            problems = []
            if load.batches_failed:
                problems.append(f"{load.batches_failed} batches failed")
            if transform.error:
                problems.append(f"transform: {transform.error}")
            problems.extend(transform.imputation_errors)

            result.message = (
                f"Staged {ingest.rows_accepted}/{ingest.rows_seen} rows, "
                f"loaded {load.rows_loaded} via {load.strategy.value}, "
                f"transformed {transform.rows_inserted}"
            )
            if problems:
                result.status = RunStatus.PARTIAL_SUCCESS
                result.message += "; " + "; ".join(problems)

            logger.info(f"✓ {asset.name}: {result.message}")

        except Exception as e:
            result.status = RunStatus.FAILED
            result.message = f"Processing failed: {str(e)}"
            result.error_details = {
                "error_type": type(e).__name__,
                "error_message": str(e),
            }
            logger.error(f"✗ {asset.name} ({file_path.name}) failed: {e}", exc_info=True)

        finally:
            remove_staging_file(staging_path)
            result.duration_seconds = time.monotonic() - started

        return result

    async def _finish(
        self, run_timestamp: datetime, files: list[FileRunResult], start: float
    ) -> PipelineRunResult:
        status = overall_status(files)
        result = PipelineRunResult(
            status=status,
            run_timestamp=run_timestamp,
            files=files,
            duration_seconds=time.monotonic() - start,
        )
        succeeded = sum(1 for f in files if f.success)
        result.message = (
            f"{succeeded}/{len(files)} files successful, "
            f"{result.total_rows_loaded} rows loaded, "
            f"{result.total_rows_transformed} rows transformed"
        )
        logger.info(f"Pipeline run completed ({status.value}): {result.message}")

        for f in files:
            if not f.success and f.status is not RunStatus.SKIPPED:
                logger.warning(f"  - {f.asset} {f.source_file}: {f.message}")

        await self._log_results(run_timestamp, files)
        return result

    async def _log_results(self, run_timestamp: datetime, files: list[FileRunResult]) -> None:
        """Write per-file results to pipeline_run_log; failures are only logged."""
        if not files:
            return
        try:
            async with AsyncSession(self.engine) as session:
                session.add_all(
                    PipelineRunLogModel(
                        run_timestamp=run_timestamp,
                        asset=f.asset,
                        source_file=f.source_file or None,
                        status=f.status.value,
                        rows_seen=f.rows_seen,
                        rows_loaded=f.rows_loaded,
                        rows_transformed=f.rows_transformed,
                        load_strategy=f.load_strategy.value if f.load_strategy else None,
                        message=f.message,
                        error_details=f.error_details,
                        duration_seconds=f.duration_seconds,
                    )
                    for f in files
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to write pipeline run log: {e}")

    async def close(self) -> None:
        await self.retriever.close()


async def run_pipeline(assets: Optional[Iterable[AssetDescriptor]] = None) -> PipelineRunResult:
    """Convenience function to run the pipeline once.

    Args:
        assets: Assets to process (default: all enabled assets)

    Returns:
        Pipeline run result
    """
    orchestrator = PipelineOrchestrator(assets)
    try:
        return await orchestrator.run()
    finally:
        await orchestrator.close()
