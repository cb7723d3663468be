import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional, Type

from leadsync.config import SyncSettings
from leadsync.jobs.appointments import AppointmentDetectionJob
from leadsync.jobs.base import BatchJob, JobResult
from leadsync.jobs.classification import ClassificationJob
from leadsync.jobs.crm import CrmJob
from leadsync.jobs.followups import AutoFollowUpDraftJob, FollowUpSuggestionJob, SequenceFollowUpJob
from leadsync.jobs.tasks import TaskExtractionJob
from leadsync.llm.router import LLMRouter
from leadsync.retry import SleepFn

logger = logging.getLogger(__name__)

PIPELINE: List[Type[BatchJob]] = [
    ClassificationJob,
    AppointmentDetectionJob,
    TaskExtractionJob,
    CrmJob,
    FollowUpSuggestionJob,
    AutoFollowUpDraftJob,
    SequenceFollowUpJob,
]
JOBS: Dict[str, Type[BatchJob]] = {job.name: job for job in PIPELINE}


async def run_job(
    name: str,
    settings: SyncSettings,
    llm: LLMRouter,
    *,
    sleep: SleepFn = asyncio.sleep,
    now: Optional[datetime] = None,
) -> JobResult:
    try:
        job_cls = JOBS[name]
    except KeyError:
        raise ValueError(f"Unknown job '{name}'") from None
    return await job_cls(settings, llm, sleep=sleep, now=now).run()


async def run_pipeline(
    settings: SyncSettings,
    llm: LLMRouter,
    *,
    sleep: SleepFn = asyncio.sleep,
    now: Optional[datetime] = None,
) -> List[JobResult]:
    """Run every batch job once, in pipeline order.

    A job that raises is logged and the remaining jobs still run.
    """
    results = []
    for job_cls in PIPELINE:
        try:
            results.append(await job_cls(settings, llm, sleep=sleep, now=now).run())
        except Exception as exc:
            logger.exception("Job %s aborted", job_cls.name)
            results.append(JobResult(job=job_cls.name, error=str(exc)))
    return results
