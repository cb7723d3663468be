from leadsync.jobs.appointments import AppointmentDetectionJob
from leadsync.jobs.base import BatchJob, JobResult
from leadsync.jobs.classification import ClassificationJob
from leadsync.jobs.crm import CrmJob
from leadsync.jobs.followups import AutoFollowUpDraftJob, FollowUpSuggestionJob, SequenceFollowUpJob
from leadsync.jobs.runner import JOBS, PIPELINE, run_job, run_pipeline
from leadsync.jobs.tasks import TaskExtractionJob

__all__ = [
    "AppointmentDetectionJob",
    "AutoFollowUpDraftJob",
    "BatchJob",
    "ClassificationJob",
    "CrmJob",
    "FollowUpSuggestionJob",
    "JOBS",
    "JobResult",
    "PIPELINE",
    "SequenceFollowUpJob",
    "TaskExtractionJob",
    "run_job",
    "run_pipeline",
]
