"""Email classification agent."""

import logging
from typing import Optional

from leadsync import monitoring
from leadsync.agents.text import email_body, parse_json_object, truncate
from leadsync.llm.router import LLMRouter
from leadsync.schemas import EMAIL_CATEGORIES, ClassificationResult

logger = logging.getLogger(__name__)

BODY_LIMIT = 2000
DEFAULT_CATEGORY = "other"

SYSTEM_PROMPT = """You sort incoming email into exactly one category.

Categories:
- important: personal, urgent, security or account alerts, high-priority work mail.
- missed_unread: direct conversations that clearly expect a reply.
- payment_bill: bills, charges, bank notices, payment reminders.
- invoice: invoices, receipts, payment confirmations, billing documents.
- marketing: newsletters, promotions, campaigns.
- updates: product, service or system notifications.
- other: anything that fits none of the above.

Respond with JSON only: {"category": "<one of the categories above>"}"""


def _build_prompt(from_address: str, subject: str, body: str) -> str:
    parts = [f"From: {from_address}", f"Subject: {subject or '(no subject)'}"]
    if body:
        parts.append(f"Body: {truncate(body, BODY_LIMIT)}")
    return "Classify this email:\n\n" + "\n\n".join(parts)


async def classify_email(
    llm: LLMRouter,
    *,
    from_address: str,
    subject: str,
    body_text: Optional[str] = None,
    body_html: Optional[str] = None,
) -> ClassificationResult:
    """Assign one of the fixed categories to an email.

    Args:
        llm: Text-generation client.
        from_address: Sender address.
        subject: Subject line.
        body_text: Plain-text body, if any.
        body_html: HTML body, used when no plain text exists.

    Returns:
        ClassificationResult: ``other`` whenever the model output is empty,
        unparseable or outside the category set.
    """
    prompt = _build_prompt(from_address, subject, email_body(body_text, body_html))
    try:
        raw = await llm.complete(
            SYSTEM_PROMPT,
            prompt,
            response_format="json_object",
            temperature=0.1,
            max_tokens=50,
        )
    except Exception as exc:
        monitoring.capture_exception(exc)
        return ClassificationResult(category=DEFAULT_CATEGORY, raw={"error": str(exc)})

    data = parse_json_object(raw)
    if data is None:
        logger.warning("Unparseable classification output: %r", (raw or "")[:200])
        return ClassificationResult(category=DEFAULT_CATEGORY, raw={"content": raw, "error": "parse_error"})

    category = data.get("category")
    if isinstance(category, str):
        category = category.strip().lower()
    if category not in EMAIL_CATEGORIES:
        logger.warning("Unknown category %r, defaulting to %s", category, DEFAULT_CATEGORY)
        category = DEFAULT_CATEGORY
    return ClassificationResult(category=category, raw=data)
