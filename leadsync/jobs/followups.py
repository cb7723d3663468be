"""Follow-up jobs over stale leads.

Suggestions, prepared drafts and sequence steps all work on leads in the
active stages. Prepared drafts are semi-automatic: they wait for a person to
review and consume them, and a lead never has more than one unconsumed draft.
"""

from datetime import datetime, time, timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy import and_, exists
from sqlmodel import or_, select

from leadsync.agents.followups import generate_follow_up_draft
from leadsync.agents.lead_scoring import ACTIVE_STAGES
from leadsync.db import (
    Contact,
    EmailAppointment,
    EmailMessage,
    FollowUpSequenceStep,
    Lead,
    LeadFollowUpSuggestion,
    PreparedFollowUpDraft,
    SyncPreferences,
    get_session,
)
from leadsync.jobs.base import BatchJob

APPOINTMENT_LOOKAHEAD = timedelta(days=7)
SUGGESTION_HOUR = time(9, 0)

PENDING_SUGGESTION = exists().where(
    LeadFollowUpSuggestion.lead_id == Lead.id,
    LeadFollowUpSuggestion.status == "pending",
)
UNCONSUMED_DRAFT = exists().where(
    PreparedFollowUpDraft.tenant_id == Lead.tenant_id,
    PreparedFollowUpDraft.lead_id == Lead.id,
    PreparedFollowUpDraft.consumed == False,  # noqa: E712
)


async def _thresholds(default_days: int) -> Dict[str, int]:
    async with get_session() as session:
        prefs = (
            await session.exec(select(SyncPreferences).where(SyncPreferences.follow_up_threshold_days.is_not(None)))
        ).all()
    return {item.tenant_id: item.follow_up_threshold_days or default_days for item in prefs}


def _appointment_start(appointment: EmailAppointment) -> Optional[datetime]:
    try:
        return datetime.fromisoformat(f"{appointment.appointment_date}T{appointment.appointment_time}")
    except ValueError:
        return None


async def has_unconsumed_draft(tenant_id: str, lead_id: str) -> bool:
    async with get_session() as session:
        existing = (
            await session.exec(
                select(PreparedFollowUpDraft.id).where(
                    PreparedFollowUpDraft.tenant_id == tenant_id,
                    PreparedFollowUpDraft.lead_id == lead_id,
                    PreparedFollowUpDraft.consumed == False,  # noqa: E712
                )
            )
        ).first()
    return existing is not None


class LeadJob(BatchJob[Lead]):
    async def prepare_draft(self, lead: Lead, reason: str) -> Optional[PreparedFollowUpDraft]:
        """Generate and store a draft for ``lead`` unless it already has one waiting."""
        if not lead.last_email_id:
            self._log("no_last_email", row_id=lead.id)
            return None
        if await has_unconsumed_draft(lead.tenant_id, lead.id):
            return None

        async with get_session() as session:
            email = await session.get(EmailMessage, lead.last_email_id)
            contact = await session.get(Contact, lead.contact_id)
        if email is None or email.tenant_id != lead.tenant_id or contact is None:
            self._log("missing_context", row_id=lead.id)
            return None

        result = await generate_follow_up_draft(
            self.settings,
            self.llm,
            tenant_id=lead.tenant_id,
            lead=lead,
            contact=contact,
            email_id=email.id,
            thread_id=email.thread_id,
            reason=reason,
        )
        draft = PreparedFollowUpDraft(
            tenant_id=lead.tenant_id,
            lead_id=lead.id,
            email_id=email.id,
            draft_body=result.draft,
            reason=reason,
            flagged_amounts=result.flagged_amounts,
            consumed=False,
        )
        async with get_session() as session:
            session.add(draft)
            await session.commit()
            await session.refresh(draft)
        return draft


class StaleLeadJob(LeadJob):
    """Shared selection of active leads quiet for longer than their tenant's threshold.

    Leads the job would only skip are left out of the batch, so a backlog of
    leads waiting on a person never crowds out the rest.
    """

    extra_filters: Tuple = ()

    async def eligible(self, lead: Lead) -> bool:
        return True

    async def select_batch(self, limit: int) -> List[Lead]:
        default_days = self.settings.follow_up_threshold_days
        thresholds = await _thresholds(default_days)
        shortest = min([default_days, *thresholds.values()])
        now = self.now()

        async with get_session() as session:
            candidates = (
                await session.exec(
                    select(Lead)
                    .where(
                        Lead.stage.in_(ACTIVE_STAGES),
                        Lead.last_activity_at < now - timedelta(days=shortest),
                        *self.extra_filters,
                    )
                    .order_by(Lead.last_activity_at)
                )
            ).all()

        batch: List[Lead] = []
        for lead in candidates:
            if len(batch) >= limit:
                break
            threshold = timedelta(days=thresholds.get(lead.tenant_id, default_days))
            if lead.last_activity_at < now - threshold and await self.eligible(lead):
                batch.append(lead)
        return batch


class FollowUpSuggestionJob(StaleLeadJob):
    """Suggest a ``no_reply`` follow-up for tomorrow morning on quiet leads."""

    name = "follow_up_suggestions"
    feature = "follow_up_suggestions_enabled"
    extra_filters = (~PENDING_SUGGESTION,)

    async def eligible(self, lead: Lead) -> bool:
        return not await self._upcoming_appointment(lead)

    async def _upcoming_appointment(self, lead: Lead) -> bool:
        if not lead.last_email_id:
            return False
        async with get_session() as session:
            email = await session.get(EmailMessage, lead.last_email_id)
            if email is None or not email.thread_id:
                return False
            thread_ids = select(EmailMessage.id).where(
                EmailMessage.tenant_id == lead.tenant_id,
                EmailMessage.thread_id == email.thread_id,
            )
            appointments = (
                await session.exec(
                    select(EmailAppointment).where(
                        EmailAppointment.tenant_id == lead.tenant_id,
                        EmailAppointment.email_id.in_(thread_ids),
                        EmailAppointment.status != "cancelled",
                    )
                )
            ).all()

        now = self.now()
        for appointment in appointments:
            start = _appointment_start(appointment)
            if start is not None and now <= start <= now + APPOINTMENT_LOOKAHEAD:
                return True
        return False

    async def process(self, row: Lead) -> Optional[int]:
        async with get_session() as session:
            pending = (
                await session.exec(
                    select(LeadFollowUpSuggestion.id).where(
                        LeadFollowUpSuggestion.lead_id == row.id,
                        LeadFollowUpSuggestion.status == "pending",
                    )
                )
            ).first()
        if pending is not None:
            return None
        if await self._upcoming_appointment(row):
            return None

        tomorrow = self.now().date() + timedelta(days=1)
        suggestion = LeadFollowUpSuggestion(
            tenant_id=row.tenant_id,
            lead_id=row.id,
            email_id=row.last_email_id,
            reason="no_reply",
            suggested_for=datetime.combine(tomorrow, SUGGESTION_HOUR),
            status="pending",
        )
        async with get_session() as session:
            session.add(suggestion)
            await session.commit()
        return 1


class AutoFollowUpDraftJob(StaleLeadJob):
    """Prepare a follow-up draft for quiet leads with no draft since their last activity."""

    name = "auto_follow_up_drafts"
    feature = "auto_sequence_follow_ups_enabled"
    extra_filters = (
        or_(
            Lead.last_follow_up_generated_at.is_(None),
            Lead.last_follow_up_generated_at < Lead.last_activity_at,
        ),
        Lead.last_email_id.is_not(None),
        ~UNCONSUMED_DRAFT,
    )

    async def process(self, row: Lead) -> Optional[int]:
        draft = await self.prepare_draft(row, "no_reply")
        if draft is None:
            return None
        async with get_session() as session:
            lead = await session.get(Lead, row.id)
            lead.last_follow_up_generated_at = self.now()
            lead.updated_at = self.now()
            session.add(lead)
            await session.commit()
        return 1


class SequenceFollowUpJob(LeadJob):
    """Walk each enrolled lead through its follow-up sequence one step at a time.

    A step is due once ``days_after_last_activity`` days have passed since
    the lead's last activity. After a draft is prepared the lead moves to the
    next step, or leaves the sequence when none is left.
    """

    name = "sequence_follow_ups"
    feature = "auto_sequence_follow_ups_enabled"

    async def select_batch(self, limit: int) -> List[Lead]:
        current_step = and_(
            FollowUpSequenceStep.sequence_id == Lead.sequence_id,
            FollowUpSequenceStep.step_order == Lead.next_sequence_step_order,
        )
        async with get_session() as session:
            rows = (
                await session.exec(
                    select(Lead, FollowUpSequenceStep)
                    .outerjoin(FollowUpSequenceStep, current_step)
                    .where(
                        Lead.sequence_id.is_not(None),
                        Lead.next_sequence_step_order.is_not(None),
                        Lead.stage.in_(ACTIVE_STAGES),
                        # a missing step is still selected so the lead gets cleared
                        or_(
                            FollowUpSequenceStep.id.is_(None),
                            and_(Lead.last_email_id.is_not(None), ~UNCONSUMED_DRAFT),
                        ),
                    )
                    .order_by(Lead.last_activity_at)
                )
            ).all()

        now = self.now()
        due = [
            lead
            for lead, step in rows
            if step is None or lead.last_activity_at + timedelta(days=step.days_after_last_activity) <= now
        ]
        return due[:limit]

    async def _step(self, sequence_id: str, order: int) -> Optional[FollowUpSequenceStep]:
        async with get_session() as session:
            return (
                await session.exec(
                    select(FollowUpSequenceStep).where(
                        FollowUpSequenceStep.sequence_id == sequence_id,
                        FollowUpSequenceStep.step_order == order,
                    )
                )
            ).first()

    async def _advance(self, lead_id: str, next_order: Optional[int], generated: bool) -> None:
        async with get_session() as session:
            lead = await session.get(Lead, lead_id)
            if next_order is None:
                lead.sequence_id = None
            lead.next_sequence_step_order = next_order
            if generated:
                lead.last_follow_up_generated_at = self.now()
            lead.updated_at = self.now()
            session.add(lead)
            await session.commit()

    async def process(self, row: Lead) -> Optional[int]:
        step = await self._step(row.sequence_id, row.next_sequence_step_order)
        if step is None:
            self._log("step_missing", row_id=row.id, step=row.next_sequence_step_order)
            await self._advance(row.id, None, generated=False)
            return None

        due_at = row.last_activity_at + timedelta(days=step.days_after_last_activity)
        if self.now() < due_at:
            return None

        reason = f"sequence_step_{step.step_order}_{step.label or 'follow_up'}"
        draft = await self.prepare_draft(row, reason)
        if draft is None:
            return None

        following = await self._step(row.sequence_id, step.step_order + 1)
        await self._advance(row.id, following.step_order if following else None, generated=True)
        return 1
