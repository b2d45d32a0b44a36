"""
Daily prediction recalculation task

Flow:
1. Build the pipeline from settings (inventory repository from
   INVENTORY_REPOSITORY)
2. PredictionEngine.recalculate_all(): every household, failures isolated
3. Return the run metrics (also logged)

Celery tasks are synchronous; the async engine runs under asyncio.run with a
fresh pipeline per invocation so no event-loop-bound state leaks between runs.
"""
import asyncio
from dataclasses import asdict
from typing import Any, Dict, Optional

import structlog
from celery import Task

from packages.common.pipeline_factory import build_pipeline
from services.worker.celery_app import app

logger = structlog.get_logger()


class PredictionTask(Task):
    """Base task with retry on infrastructure failure"""
    autoretry_for = (ConnectionError, OSError)
    retry_kwargs = {"max_retries": 3}
    retry_backoff = True


async def run_recalculation(household_id: Optional[str] = None, pipeline=None) -> Dict[str, Any]:
    """
    Recalculate predictions for one household, or all of them.

    Args:
        household_id: Only this household when given
        pipeline: Pre-built pipeline (tests); built from settings when omitted
    """
    owned = pipeline is None
    pipeline = pipeline or build_pipeline()
    try:
        if household_id:
            stats = await pipeline.prediction.batch_recalculate(household_id)
            return {"household_id": household_id, **asdict(stats)}

        metrics = await pipeline.prediction.recalculate_all()
        if metrics.items_running_out_soon:
            logger.info("items_running_out_soon", count=metrics.items_running_out_soon)
        return asdict(metrics)
    finally:
        if owned:
            await pipeline.close()


@app.task(base=PredictionTask, name="services.worker.tasks.recalculate_predictions.recalculate_all_predictions")
def recalculate_all_predictions() -> Dict[str, Any]:
    """Beat entry point: every household"""
    logger.info("prediction_job_started")
    result = asyncio.run(run_recalculation())
    logger.info("prediction_job_finished",
                households_processed=result["households_processed"],
                households_failed=result["households_failed"],
                duration_ms=result["duration_ms"])
    return result


@app.task(base=PredictionTask, name="services.worker.tasks.recalculate_predictions.recalculate_household")
def recalculate_household(household_id: str) -> Dict[str, Any]:
    """On-demand recalculation of one household (e.g. after an upload is committed)"""
    return asyncio.run(run_recalculation(household_id))
