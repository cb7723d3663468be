"""Opportunity signal detection agent."""

import logging
from typing import List, Optional

from leadsync import monitoring
from leadsync.agents.text import parse_json_object, truncate
from leadsync.llm.router import LLMRouter
from leadsync.schemas import OPPORTUNITY_STRENGTHS, OPPORTUNITY_TYPES, OpportunitySignal, ThreadContext

logger = logging.getLogger(__name__)

BODY_LIMIT = 2000
SUMMARY_LIMIT = 500
STRENGTH_RANK = {"low": 1, "medium": 2, "high": 3}

SYSTEM_PROMPT = """You analyse sales conversations for opportunity signals.

Types:
- buying_signal: the prospect is ready to buy or asks about contracts and pricing.
- risk: delays, budget concerns, negative sentiment.
- competitor: other vendors or alternatives mentioned.
- upsell: room to sell more to an existing customer.
- renewal: contract or subscription renewal.

Strength: high for explicit language, medium for implied intent, low for subtle hints.
Only report signals grounded in the actual text, with a summary of at most two sentences.

Respond with JSON only: {"opportunities": [{"type": "...", "strength": "...", "summary": "..."}]}
Use an empty list when nothing qualifies."""


def _thread_excerpt(context: Optional[ThreadContext]) -> str:
    if not context:
        return ""
    lines = []
    if context.summary:
        lines.append(f"Thread Summary: {context.summary}")
    if context.recent_messages:
        lines.append("Recent Messages:")
        for idx, message in enumerate(context.recent_messages[-5:], start=1):
            sender = "You" if message.is_from_user else (message.from_name or message.from_address)
            lines.append(f"{idx}. {sender}: {truncate(message.body, 200, '...')}")
    return "\n".join(lines)


def validate_signals(data: Optional[dict]) -> List[OpportunitySignal]:
    if not data or not isinstance(data.get("opportunities"), list):
        return []
    signals = []
    for item in data["opportunities"]:
        if not isinstance(item, dict):
            continue
        summary = item.get("summary")
        if (
            item.get("type") in OPPORTUNITY_TYPES
            and item.get("strength") in OPPORTUNITY_STRENGTHS
            and isinstance(summary, str)
            and 0 < len(summary.strip()) <= SUMMARY_LIMIT
        ):
            signals.append(
                OpportunitySignal(type=item["type"], strength=item["strength"], summary=summary.strip())
            )
    return signals


def strongest_signal(signals: List[OpportunitySignal]) -> Optional[OpportunitySignal]:
    """Highest-strength signal; the first one wins ties."""
    best = None
    for signal in signals:
        if best is None or STRENGTH_RANK[signal.strength] > STRENGTH_RANK[best.strength]:
            best = signal
    return best


async def detect_opportunity_signals(
    llm: LLMRouter,
    *,
    subject: str,
    body: str,
    lead_stage: str,
    lead_score: int,
    contact_name: Optional[str] = None,
    thread_context: Optional[ThreadContext] = None,
) -> List[OpportunitySignal]:
    """Find buying, risk, competitor, upsell and renewal cues. Returns ``[]`` on failure."""
    prompt = (
        "Analyze this email conversation for opportunity signals:\n\n"
        "Lead Information:\n"
        f"- Stage: {lead_stage}\n"
        f"- Score: {lead_score}/100\n"
        f"- Contact: {contact_name or 'Unknown'}\n\n"
        f"Email Subject: {subject}\n\n"
        f"Email Content:\n{truncate(body, BODY_LIMIT, '...')}"
    )
    excerpt = _thread_excerpt(thread_context)
    if excerpt:
        prompt += f"\n\n{excerpt}"

    try:
        raw = await llm.complete(
            SYSTEM_PROMPT,
            prompt,
            response_format="json_object",
            temperature=0.3,
            max_tokens=500,
        )
    except Exception as exc:
        monitoring.capture_exception(exc)
        return []

    return validate_signals(parse_json_object(raw))
