from typing import List, Optional

from sqlmodel import select

from leadsync.agents.appointments import detect_appointment
from leadsync.db import EmailAppointment, EmailMessage, get_session
from leadsync.jobs.base import BatchJob


class AppointmentDetectionJob(BatchJob[EmailMessage]):
    """Store meetings found in classified emails.

    Detections below ``settings.min_appointment_confidence`` are dropped;
    the email is still marked completed.
    """

    name = "appointments"

    async def select_batch(self, limit: int) -> List[EmailMessage]:
        async with get_session() as session:
            return list(
                (
                    await session.exec(
                        select(EmailMessage)
                        .where(
                            EmailMessage.category.is_not(None),
                            EmailMessage.appointment_status == "pending",
                            EmailMessage.deleted_at.is_(None),
                        )
                        .order_by(EmailMessage.internal_date.desc())
                        .limit(limit)
                    )
                ).all()
            )

    async def _already_detected(self, email_id: str) -> bool:
        async with get_session() as session:
            existing = (
                await session.exec(select(EmailAppointment.id).where(EmailAppointment.email_id == email_id).limit(1))
            ).first()
        return existing is not None

    async def _complete(self, email_id: str, appointment: Optional[EmailAppointment]) -> None:
        async with get_session() as session:
            email = await session.get(EmailMessage, email_id)
            if appointment is not None:
                session.add(appointment)
                email.has_appointment = True
                email.appointment_detected_at = self.now()
            email.appointment_status = "completed"
            session.add(email)
            await session.commit()

    async def process(self, row: EmailMessage) -> Optional[int]:
        if await self._already_detected(row.id):
            await self._complete(row.id, None)
            return None

        detection = await detect_appointment(
            self.llm,
            from_address=row.from_address,
            subject=row.subject,
            body_text=row.body_text,
            body_html=row.body_html,
            to_addresses=row.to_addresses or [],
            internal_date=row.internal_date,
            now=self.now(),
        )
        found = detection.appointment
        if not detection.has_appointment or found is None:
            await self._complete(row.id, None)
            return 0
        if found.confidence < self.settings.min_appointment_confidence:
            self._log("low_confidence", row_id=row.id, confidence=found.confidence)
            await self._complete(row.id, None)
            return 0

        appointment = EmailAppointment(
            tenant_id=row.tenant_id,
            email_id=row.id,
            appointment_type=found.appointment_type,
            title=found.title,
            description=found.description,
            appointment_date=found.date,
            appointment_time=found.time,
            timezone=found.timezone or self.settings.default_timezone,
            location=found.location,
            duration_minutes=found.duration_minutes,
            attendees=found.attendees,
            status="detected",
            confidence=found.confidence,
        )
        await self._complete(row.id, appointment)
        return 1

    async def mark_failed(self, row: EmailMessage, exc: BaseException) -> None:
        async with get_session() as session:
            email = await session.get(EmailMessage, row.id)
            if email is not None:
                email.appointment_status = "failed"
                session.add(email)
                await session.commit()
