"""Reply draft generation and instructed revision."""

import logging
from datetime import timedelta
from typing import List, Optional

from leadsync import monitoring
from leadsync.agents.price_guard import extract_amounts, find_unverified_amounts
from leadsync.agents.text import email_body, parse_json_object, truncate
from leadsync.agents.voice_profile import LeadVoiceContext, build_voice_profile
from leadsync.business import format_business_info, get_business_context, get_sync_preferences
from leadsync.config import SyncSettings
from leadsync.crm import get_lead_by_contact_email
from leadsync.db import EmailMessage, Lead, get_session, utcnow
from leadsync.errors import EmailNotFoundError
from leadsync.llm.router import LLMRouter
from leadsync.memory.context import format_thread_for_prompt, get_thread_context
from leadsync.scheduling import format_time_slot, get_available_time_slots
from leadsync.schemas import DraftResult, DraftRevision, TimeSlot

logger = logging.getLogger(__name__)

BODY_LIMIT = 3000
DRAFT_LIMIT = 4000

BASE_PROMPT = """You draft email replies for a business owner to review before sending.
Read the incoming email, answer every question or request in it, and give clear next steps.
Aim for 2-4 sentences unless more detail is needed. If information is missing, say so politely.
Return only the reply text."""

THREAD_RULES = """Thread awareness:
- Earlier messages in the thread are included; stay consistent with prior commitments on dates, prices and agreements.
- Reply to the latest message; refer back only when it clarifies things.
- Do not mention attachments or facts the thread does not support."""

BUSINESS_RULES = """Business information:
- Quote only the services, prices, hours and policies listed in BUSINESS INFORMATION.
- If pricing is missing, offer to send a custom quote instead of estimating."""

SCHEDULING_RULES = """Scheduling:
- Offer 2-3 of the listed available time slots and nothing else.
- If no slots are listed, say the calendar is full for now without inventing times."""

REVISION_PROMPT = """You revise an email draft according to the user's instructions.
Keep facts, prices and dates from the original draft unless told otherwise.
Respond with JSON only: {"draftBody": "<revised draft>", "explanation": "<1-2 sentences on what changed>"}"""


def lead_urgency(lead: Optional[Lead]) -> str:
    """Urgency proxy for drafts, derived from the stored lead score."""
    if lead is None:
        return "unknown"
    if lead.score >= 80:
        return "high"
    if lead.score >= 60:
        return "medium"
    return "low"


async def load_email(tenant_id: str, email_id: str) -> EmailMessage:
    async with get_session() as session:
        email = await session.get(EmailMessage, email_id)
    if email is None or email.tenant_id != tenant_id or email.deleted_at is not None:
        raise EmailNotFoundError(f"Email {email_id} not found")
    return email


def _fallback(email: EmailMessage) -> str:
    return (
        f"Hi {email.from_name or 'there'},\n\n"
        f"Thanks for your message about \"{email.subject or 'your enquiry'}\". "
        "I'll look into this and get back to you shortly.\n\n"
        "Best regards"
    )


async def _time_slots(tenant_id: str, prefs) -> List[TimeSlot]:
    today = utcnow().date()
    try:
        return await get_available_time_slots(
            tenant_id,
            today,
            today + timedelta(days=prefs.scheduling_time_window_days),
            duration_minutes=prefs.default_meeting_duration_minutes,
        )
    except Exception as exc:
        monitoring.capture_exception(exc)
        return []


async def generate_email_draft(
    settings: SyncSettings,
    llm: LLMRouter,
    *,
    tenant_id: str,
    email_id: str,
) -> DraftResult:
    """Draft a reply to an inbound email.

    Thread context, business information and time slots are each included
    only when their feature gate is on and the data exists.

    Raises:
        EmailNotFoundError: the email does not belong to the tenant.
    """
    email = await load_email(tenant_id, email_id)
    body = email_body(email.body_text, email.body_html)

    thread_text = ""
    if settings.feature("thread_context_for_drafts") and email.thread_id:
        context = await get_thread_context(llm, tenant_id, email.thread_id, email.id)
        thread_text = format_thread_for_prompt(context)

    business = None
    if settings.feature("business_info_aware_drafts"):
        business = await get_business_context(tenant_id)

    prefs = await get_sync_preferences(tenant_id)
    slots: List[TimeSlot] = []
    if settings.feature("smart_scheduling_suggestions") and email.thread_id:
        slots = await _time_slots(tenant_id, prefs)

    lead = await get_lead_by_contact_email(tenant_id, email.from_address)
    voice = build_voice_profile(
        prefs.tone_preset,
        prefs.tone_custom_instructions,
        prefs.follow_up_intensity,
        lead=LeadVoiceContext(stage=lead.stage, score=lead.score, urgency=lead_urgency(lead)) if lead else None,
        has_business_context=business is not None,
    )

    system_parts = [BASE_PROMPT]
    if thread_text:
        system_parts.append(THREAD_RULES)
    if business:
        system_parts.append(BUSINESS_RULES)
    if slots:
        system_parts.append(SCHEDULING_RULES)
    system_parts.append(voice)

    sender = f"{email.from_name} <{email.from_address}>" if email.from_name else email.from_address
    sections = []
    if business:
        sections.append(format_business_info(business))
    if thread_text:
        sections.append(f"--- THREAD HISTORY ---\n{thread_text}\n--- END THREAD HISTORY ---")
    if slots:
        sections.append("Available time slots:\n" + "\n".join(f"- {format_time_slot(slot)}" for slot in slots))
    sections.append(
        f"Latest email\nFrom: {sender}\nSubject: {email.subject}\n\n{truncate(body, BODY_LIMIT)}"
    )
    sections.append("Write the reply.")

    draft = ""
    try:
        draft = await llm.complete(
            "\n\n".join(system_parts), "\n\n".join(sections), temperature=0.7, max_tokens=500
        )
    except Exception as exc:
        monitoring.capture_exception(exc)
    if not draft.strip():
        draft = _fallback(email)

    inbound_amounts = [value for _, value in extract_amounts(body)]
    return DraftResult(
        draft=draft.strip(),
        flagged_amounts=find_unverified_amounts(draft, business, inbound_amounts),
        used_thread_context=bool(thread_text),
        used_business_info=business is not None,
        suggested_slots=slots,
    )


async def update_draft_with_instructions(
    settings: SyncSettings,
    llm: LLMRouter,
    *,
    tenant_id: str,
    email_id: str,
    draft: str,
    instructions: str,
) -> DraftRevision:
    """Revise ``draft`` per ``instructions``; the unchanged draft is returned on failure.

    Raises:
        EmailNotFoundError: the email does not belong to the tenant.
    """
    email = await load_email(tenant_id, email_id)

    business = None
    if settings.feature("business_info_aware_drafts"):
        business = await get_business_context(tenant_id)

    sections = [
        f"Original email\nFrom: {email.from_address}\nSubject: {email.subject}\n\n"
        f"{truncate(email_body(email.body_text, email.body_html), BODY_LIMIT)}",
        f"Current draft:\n{truncate(draft, DRAFT_LIMIT)}",
        f"Instructions:\n{instructions}",
    ]
    if business:
        sections.insert(0, format_business_info(business))

    try:
        raw = await llm.complete(
            REVISION_PROMPT,
            "\n\n".join(sections),
            response_format="json_object",
            temperature=0.7,
            max_tokens=1500,
        )
    except Exception as exc:
        monitoring.capture_exception(exc)
        return DraftRevision(draft_body=draft, explanation="Draft could not be revised.")

    data = parse_json_object(raw) or {}
    revised = data.get("draftBody") or data.get("draft_body")
    if not isinstance(revised, str) or not revised.strip():
        return DraftRevision(draft_body=draft, explanation="Draft could not be revised.")
    explanation = data.get("explanation")
    return DraftRevision(
        draft_body=revised.strip(),
        explanation=explanation if isinstance(explanation, str) and explanation else "Draft updated based on your instructions.",
    )
