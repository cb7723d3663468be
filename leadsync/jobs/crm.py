from typing import List, Optional

from sqlmodel import select

from leadsync import monitoring
from leadsync.agents.crm_fields import extract_crm_fields
from leadsync.agents.lead_scoring import compute_email_priority
from leadsync.agents.opportunities import detect_opportunity_signals
from leadsync.agents.text import email_body
from leadsync.business import get_business_context, get_sync_preferences
from leadsync.crm import (
    get_or_create_lead,
    update_lead_from_email_context,
    upsert_contact_for_email,
    upsert_opportunities,
)
from leadsync.db import (
    Contact,
    EmailAppointment,
    EmailMessage,
    EmailReminder,
    EmailTask,
    Lead,
    LeadFollowUpSuggestion,
    get_session,
)
from leadsync.jobs.base import BatchJob
from leadsync.memory.context import format_thread_for_prompt, get_thread_context
from leadsync.schemas import ThreadContext

IGNORED_CATEGORIES = ("marketing",)


class CrmJob(BatchJob[EmailMessage]):
    """Turn classified inbound emails into contacts, scored leads and opportunity signals."""

    name = "crm"
    feature = "lead_scoring_enabled"

    async def select_batch(self, limit: int) -> List[EmailMessage]:
        async with get_session() as session:
            return list(
                (
                    await session.exec(
                        select(EmailMessage)
                        .where(
                            EmailMessage.classification_status == "completed",
                            EmailMessage.crm_status == "pending",
                            EmailMessage.deleted_at.is_(None),
                        )
                        .order_by(EmailMessage.internal_date)
                        .limit(limit)
                    )
                ).all()
            )

    async def _finish(self, email_id: str, status: str, priority: Optional[int] = None) -> None:
        async with get_session() as session:
            email = await session.get(EmailMessage, email_id)
            if email is None:
                return
            email.crm_status = status
            email.crm_processed_at = self.now()
            if priority is not None:
                email.priority_score = priority
            session.add(email)
            await session.commit()

    async def _is_irrelevant(self, row: EmailMessage) -> bool:
        if row.category in IGNORED_CATEGORIES:
            return True
        prefs = await get_sync_preferences(row.tenant_id)
        mailbox = (prefs.mailbox_address or "").strip().lower()
        return bool(mailbox) and row.from_address.strip().lower() == mailbox

    async def process(self, row: EmailMessage) -> Optional[int]:
        if await self._is_irrelevant(row):
            await self._finish(row.id, "skipped")
            return None

        contact = await upsert_contact_for_email(row.tenant_id, row.from_address, name=row.from_name)
        business = await get_business_context(row.tenant_id)
        lead, created = await get_or_create_lead(
            row.tenant_id, contact.id, business.profile.id if business else None
        )
        if lead.last_email_id == row.id:
            # already folded in by an earlier run
            await self._finish(row.id, "completed")
            return None

        context = ThreadContext()
        if row.thread_id:
            context = await get_thread_context(self.llm, row.tenant_id, row.thread_id, row.id)

        body = email_body(row.body_text, row.body_html)
        extraction = await extract_crm_fields(
            self.llm,
            from_address=row.from_address,
            subject=row.subject,
            body=body,
            thread_context=format_thread_for_prompt(context) or None,
            services=[(service.id, service.name) for service in business.services] if business else (),
        )

        async with get_session() as session:
            appointments = (
                await session.exec(select(EmailAppointment.id).where(EmailAppointment.email_id == row.id))
            ).all()

        lead = await update_lead_from_email_context(
            row.tenant_id,
            lead.id,
            row.id,
            extraction=extraction,
            appointment_count=len(appointments),
            message_count=context.total_messages + 1,
            activity_at=row.internal_date,
        )

        priority = await self._priority(row, lead)

        if self.settings.feature("opportunity_detection_enabled"):
            await self._detect_opportunities(row, lead, contact, body, context)

        await self._finish(row.id, "completed", priority)
        self._log("lead_updated", row_id=row.id, lead_id=lead.id, score=lead.score, stage=lead.stage)
        return 1 if created else 0

    async def _priority(self, row: EmailMessage, lead: Lead) -> int:
        async with get_session() as session:
            tasks = (await session.exec(select(EmailTask).where(EmailTask.email_id == row.id))).all()
            reminders = (await session.exec(select(EmailReminder).where(EmailReminder.email_id == row.id))).all()
            suggestion = (
                await session.exec(
                    select(LeadFollowUpSuggestion.id).where(
                        LeadFollowUpSuggestion.lead_id == lead.id,
                        LeadFollowUpSuggestion.status == "pending",
                    )
                )
            ).first()
        return compute_email_priority(
            category=row.category,
            lead_score=lead.score,
            tasks=tasks,
            reminders=reminders,
            is_unread=not row.is_read,
            has_follow_up_suggestion=suggestion is not None,
            now=self.now(),
        )

    async def _detect_opportunities(
        self,
        row: EmailMessage,
        lead: Lead,
        contact: Contact,
        body: str,
        context: ThreadContext,
    ) -> None:
        try:
            signals = await detect_opportunity_signals(
                self.llm,
                subject=row.subject,
                body=body,
                lead_stage=lead.stage,
                lead_score=lead.score,
                contact_name=contact.name,
                thread_context=context,
            )
            if signals:
                await upsert_opportunities(row.tenant_id, lead.id, row.id, signals)
        except Exception as exc:
            monitoring.capture_exception(exc)
            self._log("opportunities_failed", row_id=row.id, lead_id=lead.id, error=str(exc))

    async def mark_failed(self, row: EmailMessage, exc: BaseException) -> None:
        await self._finish(row.id, "failed")
