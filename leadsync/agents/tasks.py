"""Task and reminder extraction agent."""

import logging
from datetime import datetime, timezone
from typing import Any, List, Optional

from leadsync import monitoring
from leadsync.agents.text import (
    clean_str,
    email_body,
    parse_clock_time,
    parse_iso_date,
    parse_json_object,
    pick,
    truncate,
)
from leadsync.llm.router import LLMRouter
from leadsync.schemas import ExtractedReminder, ExtractedTask, TaskExtraction

logger = logging.getLogger(__name__)

BODY_LIMIT = 3000
PRIORITIES = ("high", "medium", "low")
FREQUENCIES = ("daily", "weekly", "monthly")

SYSTEM_PROMPT = """You extract action items and reminders from email.
Look for explicit requests, deadlines, urgency words and recurring patterns.

Respond with JSON only:
{{
  "hasTasks": true | false,
  "tasks": [
    {{
      "description": "...",
      "dueDate": "YYYY-MM-DD or null",
      "dueTime": "HH:MM or null",
      "priority": "high" | "medium" | "low",
      "assignee": "address or null",
      "recurring": {{"frequency": "daily" | "weekly" | "monthly" | null, "endDate": "YYYY-MM-DD or null"}}
    }}
  ],
  "reminders": [{{"message": "...", "remindAt": "YYYY-MM-DDTHH:MM:SS"}}]
}}
When there is nothing to do respond with {{"hasTasks": false}}.

Today is {today}."""


def _iso_date(value: Any) -> Optional[str]:
    parsed = parse_iso_date(value)
    return parsed.isoformat() if parsed else None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp into naive UTC."""
    value = clean_str(value)
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _clean_task(raw: Any) -> Optional[ExtractedTask]:
    if not isinstance(raw, dict):
        return None
    description = clean_str(raw.get("description"))
    if not description:
        return None

    priority = raw.get("priority")
    recurring = raw.get("recurring") if isinstance(raw.get("recurring"), dict) else {}
    frequency = recurring.get("frequency")
    if frequency not in FREQUENCIES:
        frequency = None

    return ExtractedTask(
        description=description,
        due_date=_iso_date(pick(raw, "dueDate", "due_date")),
        due_time=parse_clock_time(pick(raw, "dueTime", "due_time")),
        priority=priority if priority in PRIORITIES else "medium",
        assignee_email=clean_str(pick(raw, "assignee", "assignee_email")),
        is_recurring=frequency is not None,
        recurring_frequency=frequency,
        recurring_end_date=_iso_date(pick(recurring, "endDate", "end_date")) if frequency else None,
    )


def _clean_reminder(raw: Any) -> Optional[ExtractedReminder]:
    if not isinstance(raw, dict):
        return None
    message = clean_str(raw.get("message"))
    remind_at = parse_timestamp(pick(raw, "remindAt", "remind_at"))
    if not message or remind_at is None:
        return None
    return ExtractedReminder(message=message, remind_at=remind_at)


def validate_tasks(data: Optional[dict]) -> TaskExtraction:
    if not data:
        return TaskExtraction()

    raw_tasks = data.get("tasks") if isinstance(data.get("tasks"), list) else []
    raw_reminders = data.get("reminders") if isinstance(data.get("reminders"), list) else []

    tasks: List[ExtractedTask] = []
    if pick(data, "hasTasks", "has_tasks") is True:
        tasks = [task for task in map(_clean_task, raw_tasks) if task is not None]
    reminders = [reminder for reminder in map(_clean_reminder, raw_reminders) if reminder is not None]

    return TaskExtraction(has_tasks=bool(tasks), tasks=tasks, reminders=reminders)


async def extract_tasks(
    llm: LLMRouter,
    *,
    from_address: str,
    subject: str,
    body_text: Optional[str] = None,
    body_html: Optional[str] = None,
    internal_date: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> TaskExtraction:
    """Extract action items and reminders; an empty extraction on any failure."""
    today = (now or datetime.utcnow()).date()
    parts = [f"From: {from_address}", f"Subject: {subject}"]
    body = email_body(body_text, body_html)
    if body:
        parts.append(f"Body: {truncate(body, BODY_LIMIT)}")
    if internal_date:
        parts.append(f"Email Date: {internal_date.isoformat()}")
    prompt = "Extract tasks and reminders from this email:\n\n" + "\n\n".join(parts)

    try:
        raw = await llm.complete(
            SYSTEM_PROMPT.format(today=today.isoformat()),
            prompt,
            response_format="json_object",
            temperature=0.2,
            max_tokens=1000,
        )
    except Exception as exc:
        monitoring.capture_exception(exc)
        return TaskExtraction()

    return validate_tasks(parse_json_object(raw))
