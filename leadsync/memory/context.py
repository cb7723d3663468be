"""Thread context assembly for prompts.

Builds the conversation history an agent sees when it answers or scores an
email: earlier messages verbatim for short threads, an AI summary plus the last
few messages for long ones, and any still-open intents tied to the thread.
"""

import logging
from typing import List, Optional, Sequence

from sqlmodel import select

from leadsync import monitoring
from leadsync.agents.text import email_body, truncate
from leadsync.db import (
    EmailAppointment,
    EmailMessage,
    EmailReminder,
    EmailTask,
    SyncPreferences,
    get_session,
)
from leadsync.llm.router import LLMRouter
from leadsync.schemas import (
    OpenAppointment,
    OpenTask,
    PendingReminder,
    ThreadContext,
    ThreadIntentMetadata,
    ThreadMessage,
)

logger = logging.getLogger(__name__)

MAX_RECENT_MESSAGES = 5
SUMMARY_THRESHOLD = 10
MAX_BODY_LENGTH = 2000
SUMMARY_SOURCE_LENGTH = 500
SUMMARY_FALLBACK = "Previous conversation in this thread."

SUMMARY_PROMPT = """Summarise this email thread in 2-3 factual sentences.
Cover the main topics, commitments or agreements, dates and deadlines, and decisions reached."""


def _is_from_user(message: EmailMessage, mailbox: str) -> bool:
    return bool(mailbox) and (message.from_address or "").lower() == mailbox


async def summarize_messages(llm: LLMRouter, messages: Sequence[EmailMessage], mailbox: str) -> str:
    chunks = []
    for idx, message in enumerate(messages, start=1):
        sender = "You" if _is_from_user(message, mailbox) else (message.from_address or "Unknown")
        body = (email_body(message.body_text, message.body_html))[:SUMMARY_SOURCE_LENGTH]
        chunks.append(
            f"Message {idx} ({message.internal_date.isoformat()}):\n"
            f"From: {sender}\nSubject: {message.subject}\n{body}"
        )
    try:
        summary = await llm.complete(
            SUMMARY_PROMPT,
            "Summarize this email thread:\n\n" + "\n\n---\n\n".join(chunks),
            temperature=0.2,
            max_tokens=200,
        )
    except Exception as exc:
        monitoring.capture_exception(exc)
        return SUMMARY_FALLBACK
    return summary.strip() or SUMMARY_FALLBACK


async def _intent_metadata(tenant_id: str, email_ids: List[str]) -> ThreadIntentMetadata:
    async with get_session() as session:
        appointments = (
            await session.exec(
                select(EmailAppointment).where(
                    EmailAppointment.tenant_id == tenant_id,
                    EmailAppointment.email_id.in_(email_ids),
                    EmailAppointment.status == "detected",
                )
            )
        ).all()
        tasks = (
            await session.exec(
                select(EmailTask).where(
                    EmailTask.tenant_id == tenant_id,
                    EmailTask.email_id.in_(email_ids),
                    EmailTask.status.in_(("open", "in_progress")),
                )
            )
        ).all()
        reminders = (
            await session.exec(
                select(EmailReminder).where(
                    EmailReminder.tenant_id == tenant_id,
                    EmailReminder.email_id.in_(email_ids),
                    EmailReminder.status == "pending",
                )
            )
        ).all()

    return ThreadIntentMetadata(
        appointments=[
            OpenAppointment(
                title=item.title,
                date=item.appointment_date,
                time=item.appointment_time,
                status=item.status,
            )
            for item in appointments
        ],
        tasks=[
            OpenTask(description=item.description, due_date=item.due_date, priority=item.priority, status=item.status)
            for item in tasks
        ],
        reminders=[PendingReminder(message=item.message, remind_at=item.remind_at) for item in reminders],
    )


async def _load_context(
    llm: LLMRouter,
    tenant_id: str,
    thread_id: str,
    current_email_id: str,
    limit: Optional[int],
    mailbox_address: Optional[str],
) -> ThreadContext:
    async with get_session() as session:
        emails = (
            await session.exec(
                select(EmailMessage)
                .where(
                    EmailMessage.tenant_id == tenant_id,
                    EmailMessage.thread_id == thread_id,
                    EmailMessage.id != current_email_id,
                    EmailMessage.deleted_at.is_(None),
                )
                .order_by(EmailMessage.internal_date)
            )
        ).all()
        if not emails:
            return ThreadContext()
        if mailbox_address is None:
            prefs = await session.get(SyncPreferences, tenant_id)
            mailbox_address = prefs.mailbox_address if prefs else None

    mailbox = (mailbox_address or "").lower()
    total = len(emails)
    summary = None
    if total > SUMMARY_THRESHOLD:
        summary = await summarize_messages(llm, emails[: total - MAX_RECENT_MESSAGES], mailbox)
        included = emails[-MAX_RECENT_MESSAGES:]
    else:
        included = emails[-limit:] if limit else emails

    recent = [
        ThreadMessage(
            id=email.id,
            from_address=email.from_address,
            from_name=email.from_name,
            subject=email.subject or "(No subject)",
            body=truncate(email_body(email.body_text, email.body_html), MAX_BODY_LENGTH),
            internal_date=email.internal_date,
            is_from_user=_is_from_user(email, mailbox),
        )
        for email in included
    ]

    intent = await _intent_metadata(tenant_id, [email.id for email in emails])
    return ThreadContext(
        recent_messages=recent,
        summary=summary,
        total_messages=total,
        intent=None if intent.is_empty() else intent,
    )


async def get_thread_context(
    llm: LLMRouter,
    tenant_id: str,
    thread_id: Optional[str],
    current_email_id: str,
    *,
    limit: Optional[int] = None,
    mailbox_address: Optional[str] = None,
) -> ThreadContext:
    """Assemble the prior conversation for ``current_email_id``.

    Args:
        llm: Used only to summarise threads longer than ten messages.
        tenant_id: Owner of the thread.
        thread_id: Conversation id; ``None`` yields an empty context.
        current_email_id: Excluded from the history.
        limit: Keep only the last ``limit`` messages of a short thread.
        mailbox_address: The tenant's own address, looked up from preferences when omitted.

    Returns:
        ThreadContext: Empty on any storage failure; context is best-effort.
    """
    if not thread_id:
        return ThreadContext()
    try:
        return await _load_context(llm, tenant_id, thread_id, current_email_id, limit, mailbox_address)
    except Exception as exc:
        monitoring.capture_exception(exc)
        logger.warning("Thread context unavailable for thread %s", thread_id)
        return ThreadContext()


def format_thread_for_prompt(context: ThreadContext) -> str:
    """Render a thread context as plain text for a generation prompt."""
    if not context.recent_messages and not context.summary:
        return ""

    lines: List[str] = []
    if context.summary:
        lines.append(f"Earlier in this thread: {context.summary}")
    if context.recent_messages:
        lines.append(f"Previous messages ({len(context.recent_messages)} of {context.total_messages}):")
        for message in context.recent_messages:
            sender = "You" if message.is_from_user else (message.from_name or message.from_address)
            lines.append(
                f"[{message.internal_date.strftime('%Y-%m-%d %H:%M')}] {sender} - {message.subject}\n{message.body}"
            )

    intent = context.intent
    if intent:
        if intent.appointments:
            lines.append("Scheduled or proposed meetings:")
            lines += [f"- {item.title} on {item.date} at {item.time} ({item.status})" for item in intent.appointments]
        if intent.tasks:
            lines.append("Open tasks:")
            lines += [
                f"- {item.description}" + (f" (due {item.due_date})" if item.due_date else "")
                for item in intent.tasks
            ]
        if intent.reminders:
            lines.append("Pending reminders:")
            lines += [f"- {item.message} at {item.remind_at.isoformat()}" for item in intent.reminders]

    return "\n\n".join(lines)
