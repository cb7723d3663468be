"""Conversation copilot: structured insights and free-form chat about one email."""

import logging
from typing import Any, List, Optional, Sequence

from leadsync import monitoring
from leadsync.agents.drafts import load_email
from leadsync.agents.text import email_body, parse_json_object, truncate
from leadsync.agents.voice_profile import build_voice_profile
from leadsync.business import format_business_info, get_business_context, get_sync_preferences
from leadsync.config import SyncSettings
from leadsync.crm import get_lead_by_contact_email
from leadsync.db import Lead
from leadsync.llm.router import LLMRouter
from leadsync.memory.context import format_thread_for_prompt, get_thread_context
from leadsync.schemas import ChatReply, ChatTurn, CopilotInsights

logger = logging.getLogger(__name__)

BODY_LIMIT = 3000
COPILOT_MODES = ("summary", "next_step", "proposal_hint", "risk_analysis")
CHAT_REPLY_TYPES = ("answer", "draft_update", "clarification")

MODE_INSTRUCTIONS = {
    "summary": "Summarise the conversation, list the key points and any decisions or action items.",
    "next_step": "Recommend the single best next step for the business owner and outline a reply.",
    "proposal_hint": "Suggest how to pitch or price a proposal using only the listed services and prices.",
    "risk_analysis": "Identify risks, concerns or red flags in the conversation and how to mitigate them.",
}

INSIGHTS_FORMAT = """Respond with JSON only:
{"summary": "...", "key_points": ["..."], "risks": ["..."], "opportunities": ["..."],
 "recommended_next_step": "...", "suggested_reply_outline": ["..."]}"""

CHAT_PROMPT = """You are a sales assistant helping a business owner handle one email conversation.
Answer questions about the conversation, or rewrite the reply draft when asked.
Never invent prices, dates or commitments that are not in the provided context.

{voice_profile}

Respond with JSON only:
{{"type": "answer" | "draft_update" | "clarification", "message": "...", "draftBody": "<full revised draft, only for draft_update>"}}"""


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def _lead_line(lead: Optional[Lead]) -> str:
    if lead is None:
        return "Lead: none on record"
    parts = [f"stage {lead.stage}", f"score {lead.score}/100"]
    if lead.budget:
        parts.append(f"budget {lead.budget}")
    if lead.timeline:
        parts.append(f"timeline {lead.timeline}")
    if lead.primary_opportunity_type:
        parts.append(f"opportunity {lead.primary_opportunity_type} ({lead.primary_opportunity_strength})")
    return "Lead: " + ", ".join(parts)


async def _conversation_sections(settings: SyncSettings, llm: LLMRouter, tenant_id: str, email_id: str):
    email = await load_email(tenant_id, email_id)
    sections = []

    business = None
    if settings.feature("business_info_aware_drafts"):
        business = await get_business_context(tenant_id)
        if business:
            sections.append(format_business_info(business))

    if email.thread_id:
        context = await get_thread_context(llm, tenant_id, email.thread_id, email.id)
        thread_text = format_thread_for_prompt(context)
        if thread_text:
            sections.append(thread_text)

    lead = await get_lead_by_contact_email(tenant_id, email.from_address)
    sections.append(_lead_line(lead))
    sections.append(
        f"Latest email\nFrom: {email.from_name or email.from_address}\nSubject: {email.subject}\n\n"
        f"{truncate(email_body(email.body_text, email.body_html), BODY_LIMIT)}"
    )
    return sections, business


async def copilot_insights(
    settings: SyncSettings,
    llm: LLMRouter,
    *,
    tenant_id: str,
    email_id: str,
    mode: str = "summary",
) -> CopilotInsights:
    """Structured analysis of a conversation in one of the copilot modes.

    Empty insights are returned when generation fails.

    Raises:
        ValueError: unknown mode.
        EmailNotFoundError: the email does not belong to the tenant.
    """
    if mode not in COPILOT_MODES:
        raise ValueError(f"Unknown copilot mode '{mode}'")

    sections, _ = await _conversation_sections(settings, llm, tenant_id, email_id)
    system_prompt = f"You analyse sales email conversations. {MODE_INSTRUCTIONS[mode]}\n\n{INSIGHTS_FORMAT}"
    try:
        raw = await llm.complete(
            system_prompt,
            "\n\n".join(sections),
            response_format="json_object",
            temperature=0.7,
            max_tokens=1000,
        )
    except Exception as exc:
        monitoring.capture_exception(exc)
        return CopilotInsights()

    data = parse_json_object(raw)
    if data is None:
        return CopilotInsights()
    return CopilotInsights(
        summary=data.get("summary") if isinstance(data.get("summary"), str) else "",
        key_points=_string_list(data.get("key_points")),
        risks=_string_list(data.get("risks")),
        opportunities=_string_list(data.get("opportunities")),
        recommended_next_step=(
            data.get("recommended_next_step") if isinstance(data.get("recommended_next_step"), str) else ""
        ),
        suggested_reply_outline=_string_list(data.get("suggested_reply_outline")),
    )


async def copilot_chat(
    settings: SyncSettings,
    llm: LLMRouter,
    *,
    tenant_id: str,
    email_id: str,
    message: str,
    draft: Optional[str] = None,
    history: Sequence[ChatTurn] = (),
) -> ChatReply:
    """Answer a question about a conversation or revise the current draft."""
    sections, business = await _conversation_sections(settings, llm, tenant_id, email_id)
    prefs = await get_sync_preferences(tenant_id)
    voice = build_voice_profile(
        prefs.tone_preset,
        prefs.tone_custom_instructions,
        prefs.follow_up_intensity,
        has_business_context=business is not None,
    )

    if draft:
        sections.append(f"Current draft:\n{draft}")
    if history:
        sections.append(
            "Chat so far:\n" + "\n".join(f"{turn.role}: {turn.content}" for turn in list(history)[-10:])
        )
    sections.append(f"Owner's message: {message}")

    try:
        raw = await llm.complete(
            CHAT_PROMPT.format(voice_profile=voice),
            "\n\n".join(sections),
            response_format="json_object",
            temperature=0.7,
            max_tokens=1000,
        )
    except Exception as exc:
        monitoring.capture_exception(exc)
        return ChatReply(type="clarification", message="I couldn't process that just now. Please try again.")

    data = parse_json_object(raw) or {}
    reply_type = data.get("type") if data.get("type") in CHAT_REPLY_TYPES else "answer"
    text = data.get("message") if isinstance(data.get("message"), str) else ""
    draft_body = data.get("draftBody") or data.get("draft_body")
    if reply_type == "draft_update" and not (isinstance(draft_body, str) and draft_body.strip()):
        reply_type, draft_body = "answer", None
    if not text and reply_type != "draft_update":
        return ChatReply(type="clarification", message="Could you rephrase that?")
    return ChatReply(
        type=reply_type,
        message=text or "Draft updated.",
        draft_body=draft_body.strip() if reply_type == "draft_update" else None,
    )
