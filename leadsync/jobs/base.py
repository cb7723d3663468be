import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Generic, List, Optional, TypeVar

from leadsync import monitoring
from leadsync.config import SyncSettings
from leadsync.db import utcnow
from leadsync.errors import RetryExhaustedError
from leadsync.llm.router import LLMRouter
from leadsync.retry import SleepFn, exponential_backoff, run_with_retry

RowT = TypeVar("RowT")


@dataclass
class JobResult:
    job: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    created: int = 0
    disabled: bool = False
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class BatchJob(Generic[RowT]):
    """Select a batch of rows and process each one with bounded retries.

    Subclasses provide ``select_batch``, ``process`` and ``mark_failed``.
    ``process`` returns the number of rows it created, or ``None`` when the
    row was skipped because its side effect already exists. A row whose
    retries are exhausted is marked failed and the batch moves on.
    """

    name = "batch"
    # None means the job only follows the master switch
    feature: Optional[str] = None

    def __init__(
        self,
        settings: SyncSettings,
        llm: LLMRouter,
        *,
        sleep: SleepFn = asyncio.sleep,
        now: Optional[datetime] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.settings = settings
        self.llm = llm
        self.sleep = sleep
        self._now = now
        self.logger = logger or logging.getLogger(f"leadsync.jobs.{self.name}")

    def now(self) -> datetime:
        return self._now or utcnow()

    def enabled(self) -> bool:
        if self.feature is None:
            return self.settings.sync_intelligence_enabled
        return self.settings.feature(self.feature)

    async def select_batch(self, limit: int) -> List[RowT]:
        raise NotImplementedError

    async def process(self, row: RowT) -> Optional[int]:
        raise NotImplementedError

    async def mark_failed(self, row: RowT, exc: BaseException) -> None:
        """Record a terminal failure on the row; no-op by default."""

    def row_id(self, row: RowT) -> str:
        return str(getattr(row, "id", row))

    async def run(self) -> JobResult:
        result = JobResult(job=self.name)
        if not self.enabled():
            result.disabled = True
            self._log("disabled")
            return result

        started = time.perf_counter()
        error_text = None
        try:
            rows = await self.select_batch(self.settings.batch_size)
            result.processed = len(rows)
            for row in rows:
                await self._process_row(row, result)
        except Exception as exc:
            error_text = monitoring.format_exception(exc)
            monitoring.capture_exception(exc)
            raise
        finally:
            duration_ms = (time.perf_counter() - started) * 1000
            await monitoring.record_run(
                job=self.name,
                success=error_text is None,
                duration_ms=duration_ms,
                processed=result.processed,
                succeeded=result.succeeded,
                failed=result.failed,
                skipped=result.skipped,
                error_text=error_text,
            )
            self._log("finished", **result.as_dict())
        return result

    async def _process_row(self, row: RowT, result: JobResult) -> None:
        row_id = self.row_id(row)
        try:
            created = await run_with_retry(
                lambda: self.process(row),
                max_attempts=self.settings.max_retries,
                backoff=exponential_backoff(self.settings.retry_backoff_base_seconds),
                sleep=self.sleep,
                label=f"{self.name}:{row_id}",
            )
        except RetryExhaustedError as exc:
            result.failed += 1
            monitoring.capture_exception(exc.last_error or exc)
            self._log("row_failed", row_id=row_id, attempts=exc.attempts, error=str(exc.last_error))
            await self.mark_failed(row, exc)
            return

        if created is None:
            result.skipped += 1
            self._log("row_skipped", row_id=row_id)
        else:
            result.succeeded += 1
            result.created += created

    def _log(self, status: str, **extra: Any) -> None:
        payload = {"job": self.name, "status": status}
        payload.update(extra)
        self.logger.info("job", extra={"job": payload})
