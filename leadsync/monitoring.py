import logging
import traceback
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration

from leadsync.config import SyncSettings
from leadsync.db import JobRun, get_session

_logger = logging.getLogger("leadsync")
_initialized = False


def init_monitoring(settings: SyncSettings) -> None:
    global _initialized
    if _initialized:
        return

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )

    if settings.sentry_dsn:
        sentry_logging = LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            integrations=[sentry_logging],
            traces_sample_rate=settings.sentry_traces_sample_rate,
            environment=settings.sentry_environment,
        )
        _logger.info("Sentry initialized")
    else:
        _logger.info("Sentry DSN not provided; skipping initialization")

    _initialized = True


async def record_run(
    *,
    job: str,
    success: bool,
    duration_ms: float,
    processed: int = 0,
    succeeded: int = 0,
    failed: int = 0,
    skipped: int = 0,
    tenant_id: Optional[str] = None,
    error_text: Optional[str] = None,
) -> None:
    entry = JobRun(
        job=job,
        tenant_id=tenant_id,
        processed=processed,
        succeeded=succeeded,
        failed=failed,
        skipped=skipped,
        success=success,
        error_text=error_text[:1024] if error_text else None,
        duration_ms=duration_ms,
    )
    async with get_session() as session:
        session.add(entry)
        await session.commit()


def capture_exception(exc: BaseException) -> None:
    _logger.error("Exception captured", exc_info=exc)
    if sentry_sdk.get_client().is_active():
        sentry_sdk.capture_exception(exc)


def format_exception(exc: BaseException) -> str:
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
