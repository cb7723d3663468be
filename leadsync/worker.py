import asyncio
from typing import Any, Dict, List

from celery import Celery

from leadsync import monitoring
from leadsync.config import get_settings
from leadsync.db import dispose_engine
from leadsync.jobs import JOBS, run_job, run_pipeline
from leadsync.llm.router import LLMRouter

settings = get_settings()
monitoring.init_monitoring(settings)

celery_app = Celery(
    "leadsync",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend or settings.celery_broker_url,
)
celery_app.conf.beat_schedule = {
    "sync-pipeline": {
        "task": "leadsync.worker.run_pipeline_task",
        "schedule": settings.pipeline_interval_minutes * 60.0,
    },
}


async def _run_pipeline() -> List[Dict[str, Any]]:
    try:
        results = await run_pipeline(settings, LLMRouter(settings))
        return [result.as_dict() for result in results]
    finally:
        # each task gets a fresh event loop, so pooled connections cannot be reused
        await dispose_engine()


async def _run_job(name: str) -> Dict[str, Any]:
    try:
        result = await run_job(name, settings, LLMRouter(settings))
        return result.as_dict()
    finally:
        await dispose_engine()


@celery_app.task(name="leadsync.worker.run_pipeline_task")
def run_pipeline_task() -> List[Dict[str, Any]]:
    return asyncio.run(_run_pipeline())


@celery_app.task(name="leadsync.worker.run_job_task")
def run_job_task(name: str) -> Dict[str, Any]:
    if name not in JOBS:
        raise ValueError(f"Unknown job '{name}'")
    return asyncio.run(_run_job(name))
