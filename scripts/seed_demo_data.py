#!/usr/bin/env python
import asyncio
import random
from datetime import timedelta

from faker import Faker

from leadsync.crm import get_or_create_lead, update_lead_from_email_context, upsert_contact_for_email
from leadsync.db import (
    BusinessHours,
    BusinessPricingTier,
    BusinessProfile,
    BusinessService,
    EmailMessage,
    FollowUpSequence,
    FollowUpSequenceStep,
    Lead,
    SyncPreferences,
    get_session,
    init_db,
    utcnow,
)
from leadsync.schemas import CrmExtraction

FAKE_TENANT_ID = "demo"
MAILBOX = "owner@demo-studio.test"
SERVICES = {"Website redesign": 12000.0, "SEO audit": 1500.0, "Care plan": 99.0}


async def seed_business(fake: Faker) -> FollowUpSequence:
    sequence = FollowUpSequence(tenant_id=FAKE_TENANT_ID, name="Gentle nudge")
    async with get_session() as session:
        session.add(BusinessProfile(tenant_id=FAKE_TENANT_ID, business_name=fake.company(), default_currency="USD"))
        for name, price in SERVICES.items():
            service = BusinessService(tenant_id=FAKE_TENANT_ID, name=name, description=fake.sentence())
            session.add(service)
            session.add(
                BusinessPricingTier(
                    tenant_id=FAKE_TENANT_ID,
                    service_id=service.id,
                    name=f"{name} standard",
                    price_amount=price,
                    price_currency="USD",
                    billing_interval="monthly" if price < 100 else "one_time",
                    is_default=name == "Website redesign",
                )
            )
        # Monday to Friday
        for day in range(1, 6):
            session.add(BusinessHours(tenant_id=FAKE_TENANT_ID, day_of_week=day, open_time="09:00", close_time="17:00"))
        session.add(SyncPreferences(tenant_id=FAKE_TENANT_ID, mailbox_address=MAILBOX, tone_preset="friendly"))
        session.add(sequence)
        for order, (days, label) in enumerate(((3, "check_in"), (7, "value_add"), (14, "last_call")), start=1):
            session.add(
                FollowUpSequenceStep(
                    sequence_id=sequence.id, step_order=order, days_after_last_activity=days, label=label
                )
            )
        await session.commit()
    return sequence


async def seed_inbox(fake: Faker, total: int) -> None:
    """Unprocessed inbound mail for the pipeline to pick up."""
    async with get_session() as session:
        for _ in range(total):
            thread_id = fake.uuid4()
            sender = fake.email()
            received = utcnow() - timedelta(hours=random.randint(1, 72))
            service = random.choice(list(SERVICES))
            session.add(
                EmailMessage(
                    tenant_id=FAKE_TENANT_ID,
                    from_address=sender,
                    from_name=fake.name(),
                    to_addresses=[MAILBOX],
                    subject=f"Question about {service.lower()}",
                    body_text=f"{fake.paragraph(nb_sentences=2)} What would {service.lower()} cost?",
                    thread_id=thread_id,
                    internal_date=received,
                )
            )
        await session.commit()


async def seed_stale_lead(fake: Faker, sequence: FollowUpSequence) -> Lead:
    """A lead that went quiet a while ago, enrolled in the follow-up sequence."""
    sender = fake.email()
    quiet_since = utcnow() - timedelta(days=random.randint(4, 12))
    email = EmailMessage(
        tenant_id=FAKE_TENANT_ID,
        from_address=sender,
        subject="Re: proposal",
        body_text=fake.paragraph(nb_sentences=3),
        thread_id=fake.uuid4(),
        internal_date=quiet_since,
        category="important",
        classification_status="completed",
        appointment_status="completed",
        task_status="completed",
        crm_status="completed",
    )
    async with get_session() as session:
        session.add(email)
        await session.commit()

    contact = await upsert_contact_for_email(FAKE_TENANT_ID, sender, name=fake.name(), company=fake.company())
    lead, _ = await get_or_create_lead(FAKE_TENANT_ID, contact.id)
    extraction = CrmExtraction(
        intent_type=random.choice(["pricing", "appointment", "general_question"]),
        budget_level=random.choice(["low", "medium", "high"]),
        urgency_level=random.choice(["low", "medium", "high"]),
        budget_text=f"${random.randint(2, 20)}k",
    )
    lead = await update_lead_from_email_context(
        FAKE_TENANT_ID,
        lead.id,
        email.id,
        extraction=extraction,
        message_count=random.randint(1, 8),
        activity_at=quiet_since,
    )

    async with get_session() as session:
        stored = await session.get(Lead, lead.id)
        stored.sequence_id = sequence.id
        stored.next_sequence_step_order = 1
        session.add(stored)
        await session.commit()
    return lead


async def main(inbox: int = 20, stale: int = 5) -> None:
    await init_db()
    fake = Faker()
    sequence = await seed_business(fake)
    await seed_inbox(fake, inbox)
    for _ in range(stale):
        await seed_stale_lead(fake, sequence)
    print(f"Seeded {inbox} inbound emails and {stale} stale leads for tenant '{FAKE_TENANT_ID}'.")


if __name__ == "__main__":
    asyncio.run(main())
