"""Follow-up draft generation for stale leads."""

import logging
from typing import Optional

from leadsync import monitoring
from leadsync.agents.price_guard import find_unverified_amounts
from leadsync.agents.voice_profile import LeadVoiceContext, build_voice_profile
from leadsync.business import BusinessContext, format_business_info, get_business_context, get_sync_preferences
from leadsync.config import SyncSettings
from leadsync.db import Contact, Lead
from leadsync.llm.router import LLMRouter
from leadsync.memory.context import format_thread_for_prompt, get_thread_context
from leadsync.schemas import DraftResult

logger = logging.getLogger(__name__)

# No urgency is extracted for silent threads; follow-ups assume a moderate one.
FOLLOW_UP_URGENCY = "medium"

SYSTEM_PROMPT = """You write short follow-up emails on behalf of a business.
The follow-up should:
1. Pick up the earlier conversation naturally.
2. Suit the lead stage ({stage}).
3. Move things forward without pressure.
4. Be addressed to {recipient}.

{voice_profile}

Keep it to 2-4 sentences (a little longer with bullets). Mention budget or timeline if they came up.
For a no_reply follow-up, be gentle and offer something useful.
Return only the email body, with no subject line."""


def _fallback(name: Optional[str], reason: Optional[str], business: Optional[BusinessContext]) -> str:
    signature = business.profile.business_name if business else "The team"
    opener = (
        "I wanted to check in since I haven't heard back"
        if reason in (None, "no_reply")
        else "I wanted to follow up on our conversation"
    )
    return (
        f"Hi {name or 'there'},\n\n"
        f"{opener}. Happy to answer any questions or adjust anything based on what you need.\n\n"
        "Would a quick call this week be helpful?\n\n"
        f"Best,\n{signature}"
    )


def _lead_block(lead: Lead, reason: Optional[str]) -> str:
    lines = [
        "Lead Information:",
        f"- Stage: {lead.stage}",
        f"- Score: {lead.score}/100",
        f"- Budget: {lead.budget or 'Not specified'}",
        f"- Timeline: {lead.timeline or 'Not specified'}",
        f"- Last Activity: {lead.last_activity_at.date().isoformat()}",
    ]
    if reason:
        lines.append(f"- Follow-up Reason: {reason}")
    return "\n".join(lines)


async def generate_follow_up_draft(
    settings: SyncSettings,
    llm: LLMRouter,
    *,
    tenant_id: str,
    lead: Lead,
    contact: Contact,
    email_id: str,
    thread_id: Optional[str] = None,
    reason: Optional[str] = None,
) -> DraftResult:
    """Compose a follow-up for a lead whose conversation has gone quiet.

    Args:
        settings: Feature gates for thread and business context.
        llm: Text-generation client.
        tenant_id: Owner of the lead.
        lead: Lead being followed up.
        contact: The lead's contact.
        email_id: Latest email on the lead.
        thread_id: Conversation to draw context from.
        reason: Why the follow-up is due (``no_reply``, a sequence step label...).

    Returns:
        DraftResult: A templated fallback draft when generation fails or is empty.
    """
    thread_text = ""
    if settings.feature("thread_context_for_drafts") and thread_id:
        context = await get_thread_context(llm, tenant_id, thread_id, email_id)
        thread_text = format_thread_for_prompt(context)

    business = None
    if settings.feature("business_info_aware_drafts"):
        business = await get_business_context(tenant_id)

    prefs = await get_sync_preferences(tenant_id)
    voice_profile = build_voice_profile(
        prefs.tone_preset,
        prefs.tone_custom_instructions,
        prefs.follow_up_intensity,
        lead=LeadVoiceContext(stage=lead.stage, score=lead.score, urgency=FOLLOW_UP_URGENCY),
        has_business_context=business is not None,
    )
    recipient = contact.name or contact.email
    system_prompt = SYSTEM_PROMPT.format(stage=lead.stage, recipient=recipient, voice_profile=voice_profile)

    sections = ["Generate a follow-up email draft."]
    if business:
        sections.append(format_business_info(business))
    sections.append(_lead_block(lead, reason))
    if thread_text:
        sections.append(thread_text)
    company = f" at {contact.company}" if contact.company else ""
    sections.append(f"Contact: {recipient}{company}")
    prompt = "\n\n".join(sections)

    draft = ""
    try:
        draft = await llm.complete(system_prompt, prompt, temperature=0.7, max_tokens=300)
    except Exception as exc:
        monitoring.capture_exception(exc)
    if not draft.strip():
        logger.info("Using fallback follow-up for lead %s", lead.id)
        draft = _fallback(contact.name, reason, business)

    return DraftResult(
        draft=draft.strip(),
        flagged_amounts=find_unverified_amounts(draft, business),
        used_thread_context=bool(thread_text),
        used_business_info=business is not None,
    )
