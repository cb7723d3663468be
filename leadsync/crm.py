"""Contact and lead store.

Contacts are keyed by (tenant, lower-cased email). Leads carry an
``active_key`` unique per (tenant, contact, business) so the database, not
query ordering, guarantees a single active lead for that triple.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from leadsync.agents.lead_scoring import LeadSignals, compute_lead_score
from leadsync.agents.opportunities import STRENGTH_RANK, strongest_signal
from leadsync.db import Contact, Lead, LeadOpportunity, get_session, utcnow
from leadsync.errors import LeadConflictError, LeadNotFoundError
from leadsync.schemas import CrmExtraction, OpportunitySignal

logger = logging.getLogger(__name__)

CLOSING_OUTCOMES = ("won", "lost", "cold")
RETIRED_STAGES = ("won", "lost")
SERVICE_VALUE_WEIGHT = 0.5


def active_key(tenant_id: str, contact_id: str, business_id: Optional[str] = None) -> str:
    return f"{tenant_id}:{contact_id}:{business_id or '-'}"


def _non_empty(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


async def upsert_contact_for_email(
    tenant_id: str,
    email: str,
    name: Optional[str] = None,
    company: Optional[str] = None,
    role: Optional[str] = None,
    phone: Optional[str] = None,
) -> Contact:
    """Insert or refresh the contact for ``email``.

    Existing details are only overwritten by non-empty values.
    """
    normalized = email.strip().lower()
    fields = {"name": name, "company": company, "role": role, "phone": phone}

    for attempt in range(2):
        now = utcnow()
        async with get_session() as session:
            contact = (
                await session.exec(
                    select(Contact).where(Contact.tenant_id == tenant_id, Contact.email == normalized)
                )
            ).first()
            if contact is None:
                contact = Contact(
                    tenant_id=tenant_id,
                    email=normalized,
                    first_seen_at=now,
                    last_seen_at=now,
                    **{key: _non_empty(value) for key, value in fields.items()},
                )
            else:
                contact.last_seen_at = now
                contact.updated_at = now
                for key, value in fields.items():
                    cleaned = _non_empty(value)
                    if cleaned:
                        setattr(contact, key, cleaned)
            session.add(contact)
            try:
                await session.commit()
            except IntegrityError:
                # lost an insert race; the second pass updates the winner
                await session.rollback()
                if attempt:
                    raise
                continue
            await session.refresh(contact)
            return contact
    raise RuntimeError("unreachable")


async def _find_active_lead(key: str) -> Optional[Lead]:
    async with get_session() as session:
        return (await session.exec(select(Lead).where(Lead.active_key == key))).first()


async def create_lead(
    tenant_id: str,
    contact_id: str,
    business_id: Optional[str] = None,
) -> Lead:
    """Create a fresh active lead.

    Raises:
        LeadConflictError: an active lead already exists for the key.
    """
    lead = Lead(
        tenant_id=tenant_id,
        contact_id=contact_id,
        business_id=business_id,
        score=0,
        stage="new",
        last_activity_at=utcnow(),
        active_key=active_key(tenant_id, contact_id, business_id),
    )
    async with get_session() as session:
        session.add(lead)
        try:
            await session.commit()
        except IntegrityError as exc:
            await session.rollback()
            raise LeadConflictError(tenant_id, contact_id, business_id) from exc
        await session.refresh(lead)
    return lead


async def get_or_create_lead(
    tenant_id: str,
    contact_id: str,
    business_id: Optional[str] = None,
) -> Tuple[Lead, bool]:
    """Return ``(lead, created)`` for the active lead of the triple."""
    key = active_key(tenant_id, contact_id, business_id)
    existing = await _find_active_lead(key)
    if existing is not None:
        return existing, False
    try:
        return await create_lead(tenant_id, contact_id, business_id), True
    except LeadConflictError:
        winner = await _find_active_lead(key)
        if winner is None:
            raise
        return winner, False


async def get_or_create_lead_for_contact(
    tenant_id: str,
    contact_id: str,
    business_id: Optional[str] = None,
) -> Lead:
    lead, _ = await get_or_create_lead(tenant_id, contact_id, business_id)
    return lead


async def get_lead(tenant_id: str, lead_id: str) -> Optional[Lead]:
    async with get_session() as session:
        lead = await session.get(Lead, lead_id)
    if lead is None or lead.tenant_id != tenant_id:
        return None
    return lead


async def get_lead_for_contact(tenant_id: str, contact_id: str) -> Optional[Lead]:
    async with get_session() as session:
        return (
            await session.exec(
                select(Lead)
                .where(Lead.tenant_id == tenant_id, Lead.contact_id == contact_id)
                .order_by(Lead.last_activity_at.desc())
                .limit(1)
            )
        ).first()


async def get_lead_by_contact_email(tenant_id: str, email: str) -> Optional[Lead]:
    async with get_session() as session:
        return (
            await session.exec(
                select(Lead)
                .join(Contact, Contact.id == Lead.contact_id)
                .where(
                    Lead.tenant_id == tenant_id,
                    Contact.tenant_id == tenant_id,
                    Contact.email == email.strip().lower(),
                )
                .order_by(Lead.last_activity_at.desc())
                .limit(1)
            )
        ).first()


def signals_from_extraction(
    extraction: CrmExtraction,
    *,
    appointment_count: int,
    message_count: int,
) -> LeadSignals:
    return LeadSignals(
        intent_type=extraction.intent_type,
        has_pricing_request=extraction.intent_type == "pricing",
        has_appointment_request=appointment_count > 0 or extraction.wants_appointment,
        message_count=message_count,
        urgency=extraction.urgency_level,
        budget=extraction.budget_level,
        service_value_weight=SERVICE_VALUE_WEIGHT if extraction.inferred_service_id else None,
    )


async def update_lead_from_email_context(
    tenant_id: str,
    lead_id: str,
    email_id: str,
    *,
    extraction: CrmExtraction,
    appointment_count: int = 0,
    message_count: int = 1,
    activity_at: Optional[datetime] = None,
    apply_score: bool = True,
) -> Lead:
    """Fold one email's signals into its lead.

    Won and lost leads keep their score and stage; only activity is recorded.

    Raises:
        LeadNotFoundError: no such lead for the tenant.
    """
    async with get_session() as session:
        lead = await session.get(Lead, lead_id)
        if lead is None or lead.tenant_id != tenant_id:
            raise LeadNotFoundError(f"Lead {lead_id} not found")

        if apply_score and lead.stage not in RETIRED_STAGES:
            signals = signals_from_extraction(
                extraction, appointment_count=appointment_count, message_count=message_count
            )
            result = compute_lead_score(lead.score, signals)
            lead.score = result.score
            lead.stage = result.stage

        lead.last_email_id = email_id
        lead.last_activity_at = activity_at or utcnow()
        if extraction.inferred_service_id:
            lead.primary_service_id = extraction.inferred_service_id
        if extraction.budget_text:
            lead.budget = extraction.budget_text
        if extraction.timeline:
            lead.timeline = extraction.timeline
        lead.updated_at = utcnow()

        session.add(lead)
        await session.commit()
        await session.refresh(lead)

    logger.info(
        "lead",
        extra={"lead": {"lead_id": lead.id, "score": lead.score, "stage": lead.stage, "email_id": email_id}},
    )
    return lead


async def close_lead(tenant_id: str, lead_id: str, outcome: str) -> Lead:
    """Move a lead to ``won``, ``lost`` or ``cold``.

    Won and lost retire the lead: it releases its active key so the next
    email from the contact opens a new one. Cold leads stay active.
    """
    if outcome not in CLOSING_OUTCOMES:
        raise ValueError(f"Unsupported lead outcome '{outcome}'")

    async with get_session() as session:
        lead = await session.get(Lead, lead_id)
        if lead is None or lead.tenant_id != tenant_id:
            raise LeadNotFoundError(f"Lead {lead_id} not found")
        lead.stage = outcome
        lead.updated_at = utcnow()
        if outcome in RETIRED_STAGES:
            lead.active_key = None
            lead.closed_at = utcnow()
            lead.sequence_id = None
            lead.next_sequence_step_order = None
        session.add(lead)
        await session.commit()
        await session.refresh(lead)
    return lead


async def upsert_opportunities(
    tenant_id: str,
    lead_id: str,
    email_id: str,
    signals: Iterable[OpportunitySignal],
) -> List[LeadOpportunity]:
    """Store signals (unique per tenant/lead/email/type) and promote the strongest onto the lead."""
    by_type = {}
    for signal in signals:
        current = by_type.get(signal.type)
        if current is None or STRENGTH_RANK[signal.strength] > STRENGTH_RANK[current.strength]:
            by_type[signal.type] = signal
    signals = list(by_type.values())
    if not signals:
        return []

    stored: List[LeadOpportunity] = []
    async with get_session() as session:
        for signal in signals:
            row = (
                await session.exec(
                    select(LeadOpportunity).where(
                        LeadOpportunity.tenant_id == tenant_id,
                        LeadOpportunity.lead_id == lead_id,
                        LeadOpportunity.email_id == email_id,
                        LeadOpportunity.type == signal.type,
                    )
                )
            ).first()
            if row is None:
                row = LeadOpportunity(
                    tenant_id=tenant_id,
                    lead_id=lead_id,
                    email_id=email_id,
                    type=signal.type,
                    strength=signal.strength,
                    summary=signal.summary,
                )
            else:
                row.strength = signal.strength
                row.summary = signal.summary
                row.updated_at = utcnow()
            session.add(row)
            stored.append(row)
        await session.commit()

    await promote_primary_opportunity(tenant_id, lead_id, signals)
    return stored


async def promote_primary_opportunity(
    tenant_id: str,
    lead_id: str,
    signals: Iterable[OpportunitySignal],
) -> Optional[Lead]:
    """Copy the strongest of ``signals`` onto the lead. Returns the lead, or ``None`` when nothing changed."""
    best = strongest_signal(list(signals))
    if best is None:
        return None
    async with get_session() as session:
        lead = await session.get(Lead, lead_id)
        if lead is None or lead.tenant_id != tenant_id:
            return None
        lead.primary_opportunity_type = best.type
        lead.primary_opportunity_strength = best.strength
        lead.updated_at = utcnow()
        session.add(lead)
        await session.commit()
        await session.refresh(lead)
    return lead
