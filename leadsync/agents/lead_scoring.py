"""Lead scoring and email priority utilities.

Both functions are pure: callers gather signals from storage and persist the
result themselves.
"""

import math
from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, Optional

STAGE_THRESHOLDS = (
    (80, "ready_to_close"),
    (60, "negotiating"),
    (40, "qualified"),
    (20, "warm"),
)
DEFAULT_STAGE = "new"
ADVANCED_STAGES = ("warm", "negotiating", "ready_to_close")
ACTIVE_STAGES = ("qualified",) + ADVANCED_STAGES

MIN_SCORE = 0
MAX_SCORE = 100

CATEGORY_PRIORITY = {
    "important": 15,
    "payment_bill": 15,
    "invoice": 15,
    "missed_unread": 10,
    "marketing": 2,
    "other": 2,
}


@dataclass(frozen=True)
class LeadSignals:
    intent_type: str = "other"
    has_pricing_request: bool = False
    has_appointment_request: bool = False
    message_count: int = 1
    urgency: str = "unknown"
    budget: str = "unknown"
    service_value_weight: Optional[float] = None


@dataclass(frozen=True)
class LeadScore:
    score: int
    stage: str


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _level_points(level: str) -> int:
    if level == "high":
        return 15
    if level == "medium":
        return 8
    return 0


def derive_stage(score: int) -> str:
    """Map a score to its stage. ``cold``, ``won`` and ``lost`` are never produced here."""
    for threshold, stage in STAGE_THRESHOLDS:
        if score >= threshold:
            return stage
    return DEFAULT_STAGE


def compute_lead_score(current_score: int, signals: LeadSignals) -> LeadScore:
    """Add the points earned by ``signals`` to ``current_score``.

    Args:
        current_score: The lead's stored score.
        signals: Signals extracted from the latest email and its thread.

    Returns:
        LeadScore: New score clamped to [0, 100] and the stage derived from it.
    """
    score = current_score

    if signals.has_pricing_request:
        score += 20
    if signals.has_appointment_request:
        score += 25
    # intent points stack with the request flags above
    if signals.intent_type == "pricing":
        score += 20
    elif signals.intent_type == "appointment":
        score += 25

    score += _level_points(signals.urgency)
    score += _level_points(signals.budget)

    if signals.message_count > 5:
        score += 10
    elif signals.message_count > 2:
        score += 5

    weight = signals.service_value_weight
    if weight is not None and weight > 0:
        score += _round_half_up(10 * min(weight, 1.0))

    score = max(MIN_SCORE, min(MAX_SCORE, score))
    return LeadScore(score=score, stage=derive_stage(score))


def _task_due(task) -> Optional[date]:
    due = getattr(task, "due_date", None)
    if not due:
        return None
    try:
        return date.fromisoformat(due)
    except ValueError:
        return None


def compute_email_priority(
    *,
    category: Optional[str],
    lead_score: Optional[int] = None,
    tasks: Iterable = (),
    reminders: Iterable = (),
    is_unread: bool = False,
    has_follow_up_suggestion: bool = False,
    now: Optional[datetime] = None,
) -> int:
    """Score how urgently an email needs attention (0 and up, higher first)."""
    now = now or datetime.utcnow()
    today = now.date()
    score = 0

    if lead_score is not None:
        score += _round_half_up(lead_score * 0.6)

    score += CATEGORY_PRIORITY.get(category or "", 0)

    for task in tasks:
        if task.status in ("completed", "cancelled"):
            continue
        due = _task_due(task)
        if due is None:
            continue
        if due < today:
            score += 30
        elif due == today:
            score += 20

    for reminder in reminders:
        if reminder.status == "pending" and reminder.remind_at <= now:
            score += 20

    if is_unread:
        score += 10
    if has_follow_up_suggestion:
        score += 15

    return max(0, score)
