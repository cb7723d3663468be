"""Appointment detection agent."""

import logging
from datetime import date, datetime
from typing import Any, List, Optional, Sequence

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
from leadsync.schemas import AppointmentDetection, DetectedAppointment

logger = logging.getLogger(__name__)

BODY_LIMIT = 3000
APPOINTMENT_TYPES = ("request", "proposal", "confirmation", "invitation")
DURATION_BUCKETS = (15, 30, 45, 60, 90, 120, 180, 240)
DEFAULT_DURATION = 60
DEFAULT_CONFIDENCE = 0.5

SYSTEM_PROMPT = """You extract meetings and appointments from email.
Look for: a request to meet, a proposed date/time, a confirmed date/time, or a calendar invitation.

Respond with JSON only:
{{
  "hasAppointment": true | false,
  "appointmentType": "request" | "proposal" | "confirmation" | "invitation",
  "appointment": {{
    "title": "...",
    "description": "...",
    "date": "YYYY-MM-DD",
    "time": "HH:MM (24-hour)",
    "timezone": "IANA zone or null",
    "location": "... or null",
    "duration_minutes": 60,
    "attendees": ["address@example.com"]
  }},
  "confidence": 0.0-1.0
}}
When nothing is scheduled respond with {{"hasAppointment": false}}.

Today is {today}."""


def _one_year_before(day: date) -> date:
    try:
        return day.replace(year=day.year - 1)
    except ValueError:  # Feb 29
        return day.replace(year=day.year - 1, day=28)


def snap_duration(value: Any) -> int:
    """Clamp a duration in minutes to the nearest supported bucket."""
    if isinstance(value, bool):
        return DEFAULT_DURATION
    try:
        minutes = float(value)
    except (TypeError, ValueError):
        return DEFAULT_DURATION
    if minutes <= 0:
        return DEFAULT_DURATION
    return min(DURATION_BUCKETS, key=lambda bucket: (abs(bucket - minutes), bucket))


def _confidence(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return DEFAULT_CONFIDENCE
    return max(0.0, min(1.0, float(value)))


def _attendees(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def _build_prompt(
    from_address: str,
    subject: str,
    body: str,
    to_addresses: Sequence[str],
    internal_date: Optional[datetime],
) -> str:
    parts = [f"From: {from_address}", f"Subject: {subject}"]
    if body:
        parts.append(f"Body: {truncate(body, BODY_LIMIT)}")
    if to_addresses:
        parts.append(f"To: {', '.join(to_addresses)}")
    if internal_date:
        parts.append(f"Email Date: {internal_date.isoformat()}")
    return "Extract appointment information from this email:\n\n" + "\n\n".join(parts)


def validate_appointment(data: Optional[dict], subject: str, today: date) -> AppointmentDetection:
    """Turn raw model output into a detection, rejecting anything malformed or stale."""
    if not data or pick(data, "hasAppointment", "has_appointment") is not True:
        return AppointmentDetection()

    appointment = data.get("appointment")
    if not isinstance(appointment, dict):
        return AppointmentDetection()

    raw_date = clean_str(appointment.get("date"))
    raw_time = clean_str(appointment.get("time"))
    if not raw_date or not raw_time:
        logger.warning("Appointment missing date or time")
        return AppointmentDetection()

    parsed_date = parse_iso_date(raw_date)
    if parsed_date is None:
        logger.warning("Invalid appointment date: %s", raw_date)
        return AppointmentDetection()
    if parse_clock_time(raw_time) is None:
        logger.warning("Invalid appointment time: %s", raw_time)
        return AppointmentDetection()
    if parsed_date < _one_year_before(today):
        logger.warning("Appointment date too far in the past: %s", raw_date)
        return AppointmentDetection()

    appointment_type = pick(data, "appointmentType", "appointment_type")
    if appointment_type not in APPOINTMENT_TYPES:
        appointment_type = "proposal"

    return AppointmentDetection(
        has_appointment=True,
        appointment=DetectedAppointment(
            appointment_type=appointment_type,
            title=clean_str(appointment.get("title")) or subject or "Meeting",
            description=clean_str(appointment.get("description")),
            date=raw_date,
            time=raw_time,
            timezone=clean_str(appointment.get("timezone")),
            location=clean_str(appointment.get("location")),
            duration_minutes=snap_duration(pick(appointment, "duration_minutes", "durationMinutes")),
            attendees=_attendees(appointment.get("attendees")),
            confidence=_confidence(data.get("confidence")),
        ),
    )


async def detect_appointment(
    llm: LLMRouter,
    *,
    from_address: str,
    subject: str,
    body_text: Optional[str] = None,
    body_html: Optional[str] = None,
    to_addresses: Sequence[str] = (),
    internal_date: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> AppointmentDetection:
    """Detect a meeting request, proposal, confirmation or invitation in an email.

    Never raises: provider errors and invalid output yield ``has_appointment=False``.
    """
    today = (now or datetime.utcnow()).date()
    prompt = _build_prompt(
        from_address, subject, email_body(body_text, body_html), to_addresses, internal_date
    )
    try:
        raw = await llm.complete(
            SYSTEM_PROMPT.format(today=today.isoformat()),
            prompt,
            response_format="json_object",
            temperature=0.1,
            max_tokens=500,
        )
    except Exception as exc:
        monitoring.capture_exception(exc)
        return AppointmentDetection()

    return validate_appointment(parse_json_object(raw), subject, today)
