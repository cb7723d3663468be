"""CRM field extraction agent.

Reads an inbound email (plus optional thread context) and infers what the
sender wants, how urgently, and with what budget.
"""

import logging
from typing import Iterable, Optional, Tuple

from leadsync import monitoring
from leadsync.agents.text import clean_str, parse_json_object, pick, truncate
from leadsync.llm.router import LLMRouter
from leadsync.schemas import INTENT_TYPES, SIGNAL_LEVELS, CrmExtraction

logger = logging.getLogger(__name__)

BODY_LIMIT = 2000
THREAD_LIMIT = 1000

SYSTEM_PROMPT = """You extract CRM fields from a sales email.

Respond with JSON only:
{
  "inferredServiceId": "<id from the services list> or null",
  "inferredServiceName": "... or null",
  "budgetText": "... or null",
  "budgetLevel": "low" | "medium" | "high" | "unknown",
  "urgencyLevel": "low" | "medium" | "high" | "unknown",
  "intentType": "pricing" | "appointment" | "general_question" | "support" | "other",
  "timeline": "... or null",
  "wantsAppointment": true | false,
  "isNewLead": true | false
}

Budget: high is 10k and up, medium 1k-10k, low under 1k, unknown if unclear.
Urgency: high for time-sensitive language, medium for some urgency, low for casual enquiries.
wantsAppointment is true only for an explicit request for a call, meeting or demo.
Only fill a field when the email gives clear evidence."""


def _level(value) -> str:
    return value if value in SIGNAL_LEVELS else "unknown"


def validate_crm_fields(data: Optional[dict], service_ids: Iterable[str] = ()) -> CrmExtraction:
    if not data:
        return CrmExtraction()

    known_ids = set(service_ids)
    service_id = clean_str(pick(data, "inferredServiceId", "inferred_service_id"))
    if service_id not in known_ids:
        service_id = None

    intent = pick(data, "intentType", "intent_type")
    return CrmExtraction(
        inferred_service_id=service_id,
        inferred_service_name=clean_str(pick(data, "inferredServiceName", "inferred_service_name")),
        budget_text=clean_str(pick(data, "budgetText", "budget_text")),
        budget_level=_level(pick(data, "budgetLevel", "budget_level")),
        urgency_level=_level(pick(data, "urgencyLevel", "urgency_level")),
        intent_type=intent if intent in INTENT_TYPES else "other",
        timeline=clean_str(data.get("timeline")),
        wants_appointment=pick(data, "wantsAppointment", "wants_appointment", default=False) is True,
        is_new_lead=pick(data, "isNewLead", "is_new_lead", default=False) is True,
    )


async def extract_crm_fields(
    llm: LLMRouter,
    *,
    from_address: str,
    subject: str,
    body: str,
    thread_context: Optional[str] = None,
    services: Iterable[Tuple[str, str]] = (),
) -> CrmExtraction:
    """Infer service interest, budget, urgency and intent from an email.

    Args:
        llm: Text-generation client.
        from_address: Sender address.
        subject: Subject line.
        body: Plain-text body.
        thread_context: Rendered earlier conversation, if any.
        services: ``(id, name)`` pairs the sender may be asking about.

    Returns:
        CrmExtraction: All-unknown defaults when generation fails.
    """
    services = list(services)
    prompt = f"From: {from_address}\nEmail Subject: {subject}\n\nEmail Body:\n{truncate(body, BODY_LIMIT)}"
    if thread_context:
        prompt += f"\n\nThread Context:\n{truncate(thread_context, THREAD_LIMIT)}"
    if services:
        listing = "\n".join(f"- {name} (ID: {service_id})" for service_id, name in services)
        prompt += f"\n\nAvailable Services:\n{listing}"

    try:
        raw = await llm.complete(
            SYSTEM_PROMPT,
            prompt,
            response_format="json_object",
            temperature=0.2,
            max_tokens=300,
        )
    except Exception as exc:
        monitoring.capture_exception(exc)
        return CrmExtraction()

    data = parse_json_object(raw)
    if data is None:
        logger.warning("Unparseable CRM extraction output")
    return validate_crm_fields(data, (service_id for service_id, _ in services))
