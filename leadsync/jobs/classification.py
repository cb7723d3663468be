from typing import List, Optional

from sqlmodel import select

from leadsync.agents.classification import classify_email
from leadsync.db import EmailMessage, get_session
from leadsync.jobs.base import BatchJob


class ClassificationJob(BatchJob[EmailMessage]):
    """Categorise pending emails.

    Rows are claimed as ``processing`` before the model call. The claim is
    optimistic: two overlapping runs can still pick the same row between
    the select and the update.
    """

    name = "classification"

    async def select_batch(self, limit: int) -> List[EmailMessage]:
        async with get_session() as session:
            return list(
                (
                    await session.exec(
                        select(EmailMessage)
                        .where(
                            EmailMessage.classification_status == "pending",
                            EmailMessage.deleted_at.is_(None),
                        )
                        .order_by(EmailMessage.internal_date.desc())
                        .limit(limit)
                    )
                ).all()
            )

    async def _set_status(self, email_id: str, status: str, **fields) -> None:
        async with get_session() as session:
            email = await session.get(EmailMessage, email_id)
            if email is None:
                return
            email.classification_status = status
            for key, value in fields.items():
                setattr(email, key, value)
            session.add(email)
            await session.commit()

    async def process(self, row: EmailMessage) -> Optional[int]:
        await self._set_status(row.id, "processing", classification_attempted_at=self.now())
        result = await classify_email(
            self.llm,
            from_address=row.from_address,
            subject=row.subject,
            body_text=row.body_text,
            body_html=row.body_html,
        )
        await self._set_status(
            row.id,
            "completed",
            category=result.category,
            classification_raw=result.raw,
        )
        return 1

    async def mark_failed(self, row: EmailMessage, exc: BaseException) -> None:
        await self._set_status(row.id, "failed")
