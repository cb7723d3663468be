from typing import List, Optional

from sqlmodel import select

from leadsync.agents.tasks import extract_tasks
from leadsync.db import EmailMessage, EmailReminder, EmailTask, get_session
from leadsync.jobs.base import BatchJob

TASK_CATEGORIES = ("important", "missed_unread")


class TaskExtractionJob(BatchJob[EmailMessage]):
    """Extract action items and reminders from important emails."""

    name = "tasks"

    async def select_batch(self, limit: int) -> List[EmailMessage]:
        async with get_session() as session:
            return list(
                (
                    await session.exec(
                        select(EmailMessage)
                        .where(
                            EmailMessage.category.in_(TASK_CATEGORIES),
                            EmailMessage.task_status == "pending",
                            EmailMessage.deleted_at.is_(None),
                        )
                        .order_by(EmailMessage.internal_date.desc())
                        .limit(limit)
                    )
                ).all()
            )

    async def _set_status(self, email_id: str, status: str) -> None:
        async with get_session() as session:
            email = await session.get(EmailMessage, email_id)
            if email is not None:
                email.task_status = status
                session.add(email)
                await session.commit()

    async def process(self, row: EmailMessage) -> Optional[int]:
        async with get_session() as session:
            existing = (
                await session.exec(select(EmailTask.id).where(EmailTask.email_id == row.id).limit(1))
            ).first()
        if existing is not None:
            await self._set_status(row.id, "completed")
            return None

        extraction = await extract_tasks(
            self.llm,
            from_address=row.from_address,
            subject=row.subject or "(No subject)",
            body_text=row.body_text,
            body_html=row.body_html,
            internal_date=row.internal_date,
            now=self.now(),
        )

        tasks = [
            EmailTask(
                tenant_id=row.tenant_id,
                email_id=row.id,
                description=task.description,
                due_date=task.due_date,
                due_time=task.due_time,
                priority=task.priority,
                assignee_email=task.assignee_email,
                is_recurring=task.is_recurring,
                recurring_frequency=task.recurring_frequency,
                recurring_end_date=task.recurring_end_date,
                status="open",
            )
            for task in extraction.tasks
        ]
        # reminders attach to the task at the same position, when there is one
        reminders = [
            EmailReminder(
                tenant_id=row.tenant_id,
                email_id=row.id,
                task_id=tasks[index].id if index < len(tasks) else None,
                message=reminder.message,
                remind_at=reminder.remind_at,
                status="pending",
                notification_method="in_app",
            )
            for index, reminder in enumerate(extraction.reminders)
        ]

        async with get_session() as session:
            email = await session.get(EmailMessage, row.id)
            for item in [*tasks, *reminders]:
                session.add(item)
            if tasks or reminders:
                email.has_tasks = True
                email.tasks_detected_at = self.now()
            email.task_status = "completed"
            session.add(email)
            await session.commit()
        return len(tasks) + len(reminders)

    async def mark_failed(self, row: EmailMessage, exc: BaseException) -> None:
        await self._set_status(row.id, "failed")
