from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


EMAIL_CATEGORIES = (
    "important",
    "missed_unread",
    "payment_bill",
    "invoice",
    "marketing",
    "updates",
    "other",
)
INTENT_TYPES = ("pricing", "appointment", "general_question", "support", "other")
SIGNAL_LEVELS = ("low", "medium", "high", "unknown")
OPPORTUNITY_TYPES = ("buying_signal", "risk", "competitor", "upsell", "renewal")
OPPORTUNITY_STRENGTHS = ("low", "medium", "high")
LEAD_STAGES = (
    "new",
    "cold",
    "qualified",
    "warm",
    "negotiating",
    "ready_to_close",
    "won",
    "lost",
)


class ClassificationResult(BaseModel):
    category: str = "other"
    raw: Optional[dict] = None


class DetectedAppointment(BaseModel):
    appointment_type: str = "proposal"
    title: str
    description: Optional[str] = None
    date: str
    time: str
    timezone: Optional[str] = None
    location: Optional[str] = None
    duration_minutes: int = 60
    attendees: List[str] = Field(default_factory=list)
    confidence: float = 0.5


class AppointmentDetection(BaseModel):
    has_appointment: bool = False
    appointment: Optional[DetectedAppointment] = None


class ExtractedTask(BaseModel):
    description: str
    due_date: Optional[str] = None
    due_time: Optional[str] = None
    priority: str = "medium"
    assignee_email: Optional[str] = None
    is_recurring: bool = False
    recurring_frequency: Optional[str] = None
    recurring_end_date: Optional[str] = None


class ExtractedReminder(BaseModel):
    message: str
    remind_at: datetime


class TaskExtraction(BaseModel):
    has_tasks: bool = False
    tasks: List[ExtractedTask] = Field(default_factory=list)
    reminders: List[ExtractedReminder] = Field(default_factory=list)


class CrmExtraction(BaseModel):
    inferred_service_id: Optional[str] = None
    inferred_service_name: Optional[str] = None
    budget_text: Optional[str] = None
    budget_level: str = "unknown"
    urgency_level: str = "unknown"
    intent_type: str = "other"
    timeline: Optional[str] = None
    wants_appointment: bool = False
    is_new_lead: bool = False


class OpportunitySignal(BaseModel):
    type: str
    strength: str
    summary: str


class ThreadMessage(BaseModel):
    id: str
    from_address: str
    from_name: Optional[str] = None
    subject: str = ""
    body: str = ""
    internal_date: datetime
    is_from_user: bool = False


class OpenAppointment(BaseModel):
    title: str
    date: str
    time: str
    status: str


class OpenTask(BaseModel):
    description: str
    due_date: Optional[str] = None
    priority: str = "medium"
    status: str = "open"


class PendingReminder(BaseModel):
    message: str
    remind_at: datetime


class ThreadIntentMetadata(BaseModel):
    appointments: List[OpenAppointment] = Field(default_factory=list)
    tasks: List[OpenTask] = Field(default_factory=list)
    reminders: List[PendingReminder] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.appointments or self.tasks or self.reminders)


class ThreadContext(BaseModel):
    recent_messages: List[ThreadMessage] = Field(default_factory=list)
    summary: Optional[str] = None
    total_messages: int = 0
    intent: Optional[ThreadIntentMetadata] = None


class TimeSlot(BaseModel):
    start: datetime
    end: datetime
    timezone: str = "America/New_York"


class DraftResult(BaseModel):
    draft: str
    flagged_amounts: List[str] = Field(default_factory=list)
    used_thread_context: bool = False
    used_business_info: bool = False
    suggested_slots: List[TimeSlot] = Field(default_factory=list)


class DraftRevision(BaseModel):
    draft_body: str
    explanation: Optional[str] = None


class CopilotInsights(BaseModel):
    summary: str = ""
    key_points: List[str] = Field(default_factory=list)
    risks: List[str] = Field(default_factory=list)
    opportunities: List[str] = Field(default_factory=list)
    recommended_next_step: str = ""
    suggested_reply_outline: List[str] = Field(default_factory=list)


class ChatTurn(BaseModel):
    role: str  # user, assistant
    content: str


class ChatReply(BaseModel):
    type: str = "answer"  # answer, draft_update, clarification
    message: str
    draft_body: Optional[str] = None


# HTTP payloads


class DraftUpdateIn(BaseModel):
    draft: str
    instructions: str


class CopilotIn(BaseModel):
    mode: str = "summary"


class LeadCloseIn(BaseModel):
    outcome: str  # won, lost, cold


class CopilotChatIn(BaseModel):
    message: str
    draft: Optional[str] = None
    history: List[ChatTurn] = Field(default_factory=list)


class LeadOut(BaseModel):
    id: str
    contact_id: str
    business_id: Optional[str] = None
    score: int
    stage: str
    budget: Optional[str] = None
    timeline: Optional[str] = None
    last_email_id: Optional[str] = None
    last_activity_at: datetime
    primary_opportunity_type: Optional[str] = None
    primary_opportunity_strength: Optional[str] = None


class PreparedDraftOut(BaseModel):
    id: str
    lead_id: str
    email_id: str
    draft_body: str
    reason: str
    flagged_amounts: List[str]
    consumed: bool
    created_at: datetime
