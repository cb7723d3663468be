import logging
from datetime import date, datetime, time, timedelta
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo

from sqlmodel import select

from leadsync.business import get_business_context
from leadsync.db import EmailAppointment, get_session
from leadsync.schemas import TimeSlot

logger = logging.getLogger(__name__)

DEFAULT_OPEN = time(9, 0)
DEFAULT_CLOSE = time(17, 0)
SLOT_STEP_MINUTES = 30
MAX_SLOTS = 10


def _parse_clock(value: Optional[str]) -> Optional[time]:
    if not value:
        return None
    try:
        hours, minutes = value.split(":")[:2]
        return time(int(hours), int(minutes))
    except ValueError:
        return None


def _sunday_based(day: date) -> int:
    # Python weekday(): Monday=0; stored hours use Sunday=0
    return (day.weekday() + 1) % 7


def _overlaps(start: datetime, end: datetime, busy: List[Tuple[datetime, datetime]]) -> bool:
    return any(start < busy_end and end > busy_start for busy_start, busy_end in busy)


async def _busy_ranges(tenant_id: str, start: date, end: date) -> List[Tuple[datetime, datetime]]:
    async with get_session() as session:
        rows = (
            await session.exec(
                select(EmailAppointment).where(
                    EmailAppointment.tenant_id == tenant_id,
                    EmailAppointment.status.in_(("detected", "confirmed")),
                    EmailAppointment.appointment_date >= start.isoformat(),
                    EmailAppointment.appointment_date <= end.isoformat(),
                )
            )
        ).all()

    ranges = []
    for row in rows:
        clock = _parse_clock(row.appointment_time)
        if clock is None:
            continue
        try:
            begins = datetime.combine(date.fromisoformat(row.appointment_date), clock)
        except ValueError:
            continue
        ranges.append((begins, begins + timedelta(minutes=row.duration_minutes)))
    return ranges


async def get_available_time_slots(
    tenant_id: str,
    start: date,
    end: date,
    *,
    duration_minutes: int = 60,
    now: Optional[datetime] = None,
    default_timezone: str = "America/New_York",
) -> List[TimeSlot]:
    """Free meeting slots between ``start`` and ``end`` (inclusive days).

    Slots are business-local wall-clock times on a 30-minute grid inside
    business hours (09:00-17:00 when none are configured). Closed days,
    slots overlapping detected or confirmed appointments, and slots that are
    not in the future are skipped. At most ten slots are returned.
    """
    business = await get_business_context(tenant_id)
    hours_by_day = {hours.day_of_week: hours for hours in (business.hours if business else [])}
    tz_name = next(iter(hours_by_day.values())).timezone if hours_by_day else default_timezone
    local_now = (now or datetime.utcnow()).replace(tzinfo=ZoneInfo("UTC")).astimezone(ZoneInfo(tz_name))
    local_now = local_now.replace(tzinfo=None)

    busy = await _busy_ranges(tenant_id, start, end)
    step = timedelta(minutes=SLOT_STEP_MINUTES)
    length = timedelta(minutes=duration_minutes)

    slots: List[TimeSlot] = []
    day = start
    while day <= end and len(slots) < MAX_SLOTS:
        hours = hours_by_day.get(_sunday_based(day))
        if hours is not None and hours.is_closed:
            day += timedelta(days=1)
            continue
        opens = (hours and _parse_clock(hours.open_time)) or DEFAULT_OPEN
        closes = (hours and _parse_clock(hours.close_time)) or DEFAULT_CLOSE

        slot_start = datetime.combine(day, opens)
        day_end = datetime.combine(day, closes)
        while slot_start + length <= day_end and len(slots) < MAX_SLOTS:
            slot_end = slot_start + length
            if slot_start > local_now and not _overlaps(slot_start, slot_end, busy):
                slots.append(TimeSlot(start=slot_start, end=slot_end, timezone=hours.timezone if hours else tz_name))
            slot_start += step
        day += timedelta(days=1)

    return slots


def format_time_slot(slot: TimeSlot) -> str:
    def _clock(value: datetime) -> str:
        return value.strftime("%I:%M %p").lstrip("0")

    day = f"{slot.start.strftime('%A, %B')} {slot.start.day}"
    return f"{day} at {_clock(slot.start)} - {_clock(slot.end)} ({slot.timezone})"
