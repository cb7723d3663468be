from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, List, Optional
from uuid import uuid4

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import Field, SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession


_engine: Optional[AsyncEngine] = None
_session_factory: Optional[sessionmaker] = None


def utcnow() -> datetime:
    return datetime.utcnow()


def new_id() -> str:
    return uuid4().hex


def configure_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """(Re)bind the module-level engine and session factory."""
    global _engine, _session_factory
    if database_url is None:
        from leadsync.config import get_settings

        database_url = get_settings().database_url

    options = {"echo": False, "future": True}
    if not database_url.startswith("sqlite"):
        options["pool_pre_ping"] = True
    _engine = create_async_engine(database_url, **options)
    _session_factory = sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return _engine


def get_engine() -> AsyncEngine:
    if _engine is None:
        configure_engine()
    return _engine


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


class Contact(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    tenant_id: str = Field(index=True)
    email: str  # always stored lower-cased
    name: Optional[str] = None
    company: Optional[str] = None
    role: Optional[str] = None
    phone: Optional[str] = None
    first_seen_at: datetime = Field(default_factory=utcnow)
    last_seen_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    __table_args__ = (UniqueConstraint("tenant_id", "email", name="uq_contact_email"),)


class Lead(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    tenant_id: str = Field(index=True)
    contact_id: str = Field(index=True)
    business_id: Optional[str] = None
    score: int = 0
    stage: str = "new"  # new, cold, qualified, warm, negotiating, ready_to_close, won, lost
    primary_service_id: Optional[str] = None
    budget: Optional[str] = None
    timeline: Optional[str] = None
    last_email_id: Optional[str] = None
    last_activity_at: datetime = Field(default_factory=utcnow)
    next_follow_up_at: Optional[datetime] = None
    sequence_id: Optional[str] = None
    next_sequence_step_order: Optional[int] = None
    last_follow_up_generated_at: Optional[datetime] = None
    primary_opportunity_type: Optional[str] = None
    primary_opportunity_strength: Optional[str] = None
    # tenant:contact:business while the lead is active, cleared once won or lost
    active_key: Optional[str] = Field(default=None, unique=True)
    closed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class EmailMessage(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    tenant_id: str = Field(index=True)
    from_address: str
    from_name: Optional[str] = None
    to_addresses: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    cc_addresses: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    subject: str = ""
    body_text: Optional[str] = None
    body_html: Optional[str] = None
    thread_id: Optional[str] = Field(default=None, index=True)
    internal_date: datetime = Field(default_factory=utcnow)
    is_read: bool = False
    category: Optional[str] = None
    classification_status: str = "pending"  # pending, processing, completed, failed
    classification_attempted_at: Optional[datetime] = None
    classification_raw: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    appointment_status: str = "pending"
    has_appointment: bool = False
    appointment_detected_at: Optional[datetime] = None
    task_status: str = "pending"
    has_tasks: bool = False
    tasks_detected_at: Optional[datetime] = None
    crm_status: str = "pending"  # pending, completed, failed, skipped
    crm_processed_at: Optional[datetime] = None
    priority_score: int = 0
    deleted_at: Optional[datetime] = None


class EmailAppointment(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    tenant_id: str = Field(index=True)
    email_id: str = Field(index=True)
    appointment_type: str = "proposal"
    title: str
    description: Optional[str] = None
    appointment_date: str
    appointment_time: str
    timezone: str = "America/New_York"
    location: Optional[str] = None
    duration_minutes: int = 60
    attendees: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    status: str = "detected"  # detected, confirmed, cancelled
    confidence: float = 0.5
    created_at: datetime = Field(default_factory=utcnow)


class EmailTask(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    tenant_id: str = Field(index=True)
    email_id: str = Field(index=True)
    description: str
    due_date: Optional[str] = None
    due_time: Optional[str] = None
    priority: str = "medium"
    assignee_email: Optional[str] = None
    is_recurring: bool = False
    recurring_frequency: Optional[str] = None
    recurring_end_date: Optional[str] = None
    status: str = "open"  # open, in_progress, completed, cancelled
    created_at: datetime = Field(default_factory=utcnow)


class EmailReminder(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    tenant_id: str = Field(index=True)
    email_id: str = Field(index=True)
    task_id: Optional[str] = None
    message: str
    remind_at: datetime
    status: str = "pending"  # pending, sent, dismissed
    notification_method: str = "in_app"
    created_at: datetime = Field(default_factory=utcnow)


class PreparedFollowUpDraft(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    tenant_id: str = Field(index=True)
    lead_id: str = Field(index=True)
    email_id: str
    draft_body: str
    reason: str = "no_reply"
    flagged_amounts: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    consumed: bool = False
    consumed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class LeadOpportunity(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    tenant_id: str = Field(index=True)
    lead_id: str = Field(index=True)
    email_id: str
    type: str  # buying_signal, risk, competitor, upsell, renewal
    strength: str  # low, medium, high
    summary: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "lead_id", "email_id", "type", name="uq_lead_opportunity"),
    )


class LeadFollowUpSuggestion(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    tenant_id: str = Field(index=True)
    lead_id: str = Field(index=True)
    email_id: Optional[str] = None
    reason: str = "no_reply"
    suggested_for: datetime
    status: str = "pending"  # pending, accepted, dismissed
    created_at: datetime = Field(default_factory=utcnow)


class FollowUpSequence(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    tenant_id: str = Field(index=True)
    name: str
    created_at: datetime = Field(default_factory=utcnow)


class FollowUpSequenceStep(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    sequence_id: str = Field(index=True)
    step_order: int
    days_after_last_activity: int
    label: Optional[str] = None

    __table_args__ = (UniqueConstraint("sequence_id", "step_order", name="uq_sequence_step"),)


class BusinessProfile(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    tenant_id: str = Field(unique=True, index=True)
    business_name: str
    description: Optional[str] = None
    website_url: Optional[str] = None
    default_currency: Optional[str] = None
    brand_voice: Optional[str] = None
    website_summary: Optional[str] = None


class BusinessService(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    tenant_id: str = Field(index=True)
    name: str
    description: Optional[str] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)


class BusinessPricingTier(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    tenant_id: str = Field(index=True)
    service_id: Optional[str] = None
    name: str
    description: Optional[str] = None
    price_amount: Optional[float] = None
    price_currency: Optional[str] = None
    billing_interval: Optional[str] = None  # one_time, monthly, yearly
    is_default: bool = False
    is_active: bool = True


class BusinessHours(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    tenant_id: str = Field(index=True)
    day_of_week: int  # 0 = Sunday
    open_time: Optional[str] = None
    close_time: Optional[str] = None
    is_closed: bool = False
    timezone: str = "America/New_York"


class BusinessFAQ(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    tenant_id: str = Field(index=True)
    question: str
    answer: str
    is_active: bool = True


class SyncPreferences(SQLModel, table=True):
    tenant_id: str = Field(primary_key=True)
    mailbox_address: Optional[str] = None
    tone_preset: str = "professional"  # friendly, professional, direct, custom
    tone_custom_instructions: Optional[str] = None
    follow_up_intensity: str = "normal"  # light, normal, strong
    follow_up_threshold_days: Optional[int] = None
    default_meeting_duration_minutes: int = 60
    scheduling_time_window_days: int = 7


class JobRun(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    job: str = Field(index=True)
    tenant_id: Optional[str] = None
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    success: bool = True
    error_text: Optional[str] = None
    duration_ms: float = 0.0
    timestamp: datetime = Field(default_factory=utcnow)


async def init_db() -> None:
    async with get_engine().begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    if _session_factory is None:
        configure_engine()
    async with _session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
