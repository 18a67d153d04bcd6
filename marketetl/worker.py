"""arq worker: scheduled and on-demand pipeline jobs.

Start with:
    arq marketetl.worker.WorkerSettings
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

from arq.cron import cron

from marketetl.config import get_config
from marketetl.core.logging import configure_logging
from marketetl.core.queue import get_redis_settings
from marketetl.db.connection import close_db
from marketetl.pipeline.assets import get_asset
from marketetl.pipeline.config_loader import load_configured_assets
from marketetl.pipeline.orchestrator import PipelineOrchestrator
from marketetl.pipeline.types import PipelineRunResult

logger = logging.getLogger(__name__)


def summarize(result: PipelineRunResult) -> dict[str, Any]:
    """JSON-friendly job result."""
    return {
        "status": result.status.value,
        "run_timestamp": result.run_timestamp.isoformat(),
        "message": result.message,
        "rows_loaded": result.total_rows_loaded,
        "rows_transformed": result.total_rows_transformed,
        "files": [
            {
                "asset": f.asset,
                "source_file": f.source_file,
                "status": f.status.value,
                "rows_loaded": f.rows_loaded,
                "rows_transformed": f.rows_transformed,
                "message": f.message,
            }
            for f in result.files
        ],
    }


async def startup(ctx: dict[str, Any]) -> None:
    """Initialize resources when worker starts."""
    config = get_config()
    configure_logging(config.log_level)
    assets = load_configured_assets(config.default_assets_path)
    ctx["orchestrator"] = PipelineOrchestrator(assets, config=config)
    logger.info(f"Worker started with assets: {[a.name for a in assets]}")


async def shutdown(ctx: dict[str, Any]) -> None:
    """Cleanup resources when worker stops."""
    orchestrator: Optional[PipelineOrchestrator] = ctx.get("orchestrator")
    if orchestrator is not None:
        await orchestrator.close()
    await close_db()
    logger.info("Worker stopped. Database connection closed.")


async def run_full_pipeline(ctx: dict[str, Any]) -> dict[str, Any]:
    """Retrieve, ingest, load and transform every configured asset."""
    logger.info("Starting scheduled pipeline run")
    result = await ctx["orchestrator"].run()
    return summarize(result)


async def run_transformation(ctx: dict[str, Any], asset_name: Optional[str] = None) -> dict[str, Any]:
    """Rebuild transformed tables from the current raw data."""
    asset = get_asset(asset_name) if asset_name else None
    logger.info(f"Starting transformation job for {asset_name or 'all assets'}")
    result = await ctx["orchestrator"].transform_only(asset)
    return summarize(result)


async def ingest_file(
    ctx: dict[str, Any], file_path: str, asset_name: Optional[str] = None
) -> dict[str, Any]:
    """Ingest, load and transform a file already present on the worker host."""
    asset = get_asset(asset_name) if asset_name else None
    result = await ctx["orchestrator"].ingest_local_file(Path(file_path), asset)
    return summarize(result)


class WorkerSettings:
    functions = [
        run_full_pipeline,
        run_transformation,
        ingest_file,
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = get_redis_settings()
    # Full run at 01:00, standalone transform at 02:00
    cron_jobs = [
        cron(run_full_pipeline, hour=1, minute=0),
        cron(run_transformation, hour=2, minute=0),
    ]
    job_timeout = 6 * 3600
