import pytest
from sqlmodel import select

from leadsync.crm import (
    active_key,
    close_lead,
    create_lead,
    get_lead,
    get_lead_by_contact_email,
    get_lead_for_contact,
    get_or_create_lead,
    get_or_create_lead_for_contact,
    promote_primary_opportunity,
    update_lead_from_email_context,
    upsert_contact_for_email,
    upsert_opportunities,
)
from leadsync.db import Contact, Lead, LeadOpportunity, get_session
from leadsync.errors import LeadConflictError, LeadNotFoundError
from leadsync.schemas import CrmExtraction, OpportunitySignal
from leadsync.tests.conftest import NOW, TENANT, reload

pytestmark = pytest.mark.asyncio


async def test_contact_upsert_normalises_and_keeps_details(db):
    first = await upsert_contact_for_email(TENANT, "  Pat@Example.COM ", name="Pat", company="Acme")
    second = await upsert_contact_for_email(TENANT, "pat@example.com", name="", company="Acme Corp")
    assert first.id == second.id
    assert second.email == "pat@example.com"
    assert second.name == "Pat"
    assert second.company == "Acme Corp"
    assert second.last_seen_at >= first.last_seen_at

    async with get_session() as session:
        contacts = (await session.exec(select(Contact))).all()
    assert len(contacts) == 1


async def test_contacts_are_scoped_by_tenant(db):
    a = await upsert_contact_for_email(TENANT, "pat@example.com")
    b = await upsert_contact_for_email("tenant-2", "pat@example.com")
    assert a.id != b.id


async def test_one_active_lead_per_key(db):
    contact = await upsert_contact_for_email(TENANT, "pat@example.com")
    lead, created = await get_or_create_lead(TENANT, contact.id)
    again, created_again = await get_or_create_lead(TENANT, contact.id)
    assert created is True and created_again is False
    assert again.id == lead.id
    assert lead.stage == "new" and lead.score == 0
    assert lead.active_key == active_key(TENANT, contact.id)

    with pytest.raises(LeadConflictError) as info:
        await create_lead(TENANT, contact.id)
    assert info.value.contact_id == contact.id


async def test_business_scoped_leads_are_separate(db):
    contact = await upsert_contact_for_email(TENANT, "pat@example.com")
    plain, _ = await get_or_create_lead(TENANT, contact.id)
    scoped, created = await get_or_create_lead(TENANT, contact.id, "biz-1")
    assert created and scoped.id != plain.id


async def test_update_lead_scores_and_records_activity(db):
    contact = await upsert_contact_for_email(TENANT, "pat@example.com")
    lead, _ = await get_or_create_lead(TENANT, contact.id)
    extraction = CrmExtraction(
        intent_type="appointment",
        urgency_level="high",
        budget_text="about $8k",
        timeline="next month",
        inferred_service_id="svc-1",
    )
    updated = await update_lead_from_email_context(
        TENANT, lead.id, "email-1", extraction=extraction, appointment_count=1, message_count=3, activity_at=NOW
    )
    # appointment request 25 + appointment intent 25 + urgency 15 + 3 messages 5 + service 5
    assert updated.score == 75
    assert updated.stage == "negotiating"
    assert updated.last_email_id == "email-1"
    assert updated.last_activity_at == NOW
    assert updated.budget == "about $8k"
    assert updated.timeline == "next month"
    assert updated.primary_service_id == "svc-1"


async def test_update_without_score_keeps_score(db):
    contact = await upsert_contact_for_email(TENANT, "pat@example.com")
    lead, _ = await get_or_create_lead(TENANT, contact.id)
    updated = await update_lead_from_email_context(
        TENANT, lead.id, "email-1", extraction=CrmExtraction(intent_type="pricing"), apply_score=False
    )
    assert updated.score == 0
    assert updated.last_email_id == "email-1"


async def test_update_unknown_lead_raises(db):
    with pytest.raises(LeadNotFoundError):
        await update_lead_from_email_context(TENANT, "missing", "email-1", extraction=CrmExtraction())


async def test_closed_won_lead_is_retired(db):
    contact = await upsert_contact_for_email(TENANT, "pat@example.com")
    lead, _ = await get_or_create_lead(TENANT, contact.id)
    won = await close_lead(TENANT, lead.id, "won")
    assert won.stage == "won"
    assert won.active_key is None
    assert won.closed_at is not None

    after = await update_lead_from_email_context(
        TENANT, lead.id, "email-2", extraction=CrmExtraction(intent_type="pricing")
    )
    assert after.stage == "won" and after.score == 0

    fresh, created = await get_or_create_lead(TENANT, contact.id)
    assert created and fresh.id != lead.id


async def test_cold_lead_stays_active_and_revives(db):
    contact = await upsert_contact_for_email(TENANT, "pat@example.com")
    lead, _ = await get_or_create_lead(TENANT, contact.id)
    cold = await close_lead(TENANT, lead.id, "cold")
    assert cold.stage == "cold" and cold.active_key is not None

    revived = await update_lead_from_email_context(
        TENANT, lead.id, "email-3", extraction=CrmExtraction(intent_type="pricing")
    )
    assert revived.score == 40
    assert revived.stage == "qualified"


async def test_close_lead_validates(db):
    contact = await upsert_contact_for_email(TENANT, "pat@example.com")
    lead, _ = await get_or_create_lead(TENANT, contact.id)
    with pytest.raises(ValueError):
        await close_lead(TENANT, lead.id, "maybe")
    with pytest.raises(LeadNotFoundError):
        await close_lead("tenant-2", lead.id, "lost")


async def test_lookups_are_tenant_scoped(db):
    contact = await upsert_contact_for_email(TENANT, "pat@example.com")
    lead, _ = await get_or_create_lead(TENANT, contact.id)
    assert (await get_lead(TENANT, lead.id)).id == lead.id
    assert await get_lead("tenant-2", lead.id) is None
    assert (await get_lead_by_contact_email(TENANT, "PAT@example.com")).id == lead.id
    assert await get_lead_by_contact_email("tenant-2", "pat@example.com") is None


async def test_opportunity_upsert_dedupes_and_promotes(db):
    contact = await upsert_contact_for_email(TENANT, "pat@example.com")
    lead, _ = await get_or_create_lead(TENANT, contact.id)
    await upsert_opportunities(
        TENANT,
        lead.id,
        "email-1",
        [
            OpportunitySignal(type="risk", strength="low", summary="Budget worry."),
            OpportunitySignal(type="risk", strength="medium", summary="Budget cut mentioned."),
            OpportunitySignal(type="buying_signal", strength="high", summary="Asked for contract."),
        ],
    )
    await upsert_opportunities(
        TENANT,
        lead.id,
        "email-1",
        [OpportunitySignal(type="risk", strength="high", summary="Might cancel.")],
    )

    async with get_session() as session:
        rows = (await session.exec(select(LeadOpportunity).order_by(LeadOpportunity.type))).all()
    assert [(row.type, row.strength) for row in rows] == [("buying_signal", "high"), ("risk", "high")]
    assert rows[1].summary == "Might cancel."

    stored = await reload(Lead, lead.id)
    assert stored.primary_opportunity_type == "risk"
    assert stored.primary_opportunity_strength == "high"


async def test_opportunity_upsert_with_no_signals(db):
    assert await upsert_opportunities(TENANT, "lead-x", "email-1", []) == []


async def test_contact_level_helpers(db):
    contact = await upsert_contact_for_email(TENANT, "pat@example.com")
    assert await get_lead_for_contact(TENANT, contact.id) is None
    lead = await get_or_create_lead_for_contact(TENANT, contact.id)
    assert (await get_or_create_lead_for_contact(TENANT, contact.id)).id == lead.id
    assert (await get_lead_for_contact(TENANT, contact.id)).id == lead.id
    assert await get_lead_for_contact("tenant-2", contact.id) is None


async def test_promote_primary_opportunity(db):
    contact = await upsert_contact_for_email(TENANT, "pat@example.com")
    lead, _ = await get_or_create_lead(TENANT, contact.id)
    signals = [
        OpportunitySignal(type="competitor", strength="medium", summary="Comparing with another agency."),
        OpportunitySignal(type="upsell", strength="medium", summary="Asked about hosting."),
    ]
    assert await promote_primary_opportunity(TENANT, lead.id, []) is None
    assert await promote_primary_opportunity("tenant-2", lead.id, signals) is None

    promoted = await promote_primary_opportunity(TENANT, lead.id, signals)
    assert (promoted.primary_opportunity_type, promoted.primary_opportunity_strength) == ("competitor", "medium")


async def test_naive_utc_timestamps_round_trip(db):
    contact = await upsert_contact_for_email(TENANT, "pat@example.com")
    lead, _ = await get_or_create_lead(TENANT, contact.id)
    lead = await update_lead_from_email_context(
        TENANT, lead.id, "e1", extraction=CrmExtraction(), message_count=1, activity_at=NOW
    )
    stored = await reload(Lead, lead.id)
    assert stored.last_activity_at == NOW
    assert stored.last_activity_at.tzinfo is None
    assert (await reload(Contact, contact.id)).created_at.tzinfo is None
