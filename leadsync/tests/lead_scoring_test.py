from datetime import datetime
from types import SimpleNamespace

import pytest

from leadsync.agents.lead_scoring import (
    LeadSignals,
    compute_email_priority,
    compute_lead_score,
    derive_stage,
)

NOW = datetime(2024, 6, 10, 12, 0)


@pytest.mark.parametrize(
    "score,stage",
    [
        (0, "new"),
        (19, "new"),
        (20, "warm"),
        (39, "warm"),
        (40, "qualified"),
        (59, "qualified"),
        (60, "negotiating"),
        (79, "negotiating"),
        (80, "ready_to_close"),
        (100, "ready_to_close"),
    ],
)
def test_derive_stage_boundaries(score, stage):
    assert derive_stage(score) == stage


def test_appointment_request_with_high_urgency():
    result = compute_lead_score(50, LeadSignals(has_appointment_request=True, urgency="high"))
    assert result.score == 90
    assert result.stage == "ready_to_close"


def test_score_is_clamped_to_100():
    signals = LeadSignals(
        intent_type="appointment",
        has_pricing_request=True,
        has_appointment_request=True,
        message_count=8,
        urgency="high",
        budget="high",
        service_value_weight=1.0,
    )
    assert compute_lead_score(70, signals).score == 100


def test_no_signals_keep_score():
    result = compute_lead_score(33, LeadSignals())
    assert result.score == 33
    assert result.stage == "warm"


def test_message_count_tiers():
    assert compute_lead_score(0, LeadSignals(message_count=2)).score == 0
    assert compute_lead_score(0, LeadSignals(message_count=3)).score == 5
    assert compute_lead_score(0, LeadSignals(message_count=6)).score == 10


def test_service_weight_rounds_half_up_and_caps():
    assert compute_lead_score(0, LeadSignals(service_value_weight=0.25)).score == 3
    assert compute_lead_score(0, LeadSignals(service_value_weight=5.0)).score == 10
    assert compute_lead_score(0, LeadSignals(service_value_weight=0)).score == 0


@pytest.mark.parametrize("current", [0, 10, 45, 99])
def test_score_never_decreases(current):
    signals = LeadSignals(intent_type="pricing", budget="medium", message_count=4)
    assert compute_lead_score(current, signals).score >= current


def test_priority_combines_lead_category_and_unread():
    priority = compute_email_priority(category="important", lead_score=50, is_unread=True, now=NOW)
    assert priority == 30 + 15 + 10


def test_priority_counts_overdue_and_due_today_tasks():
    tasks = [
        SimpleNamespace(status="open", due_date="2024-06-01"),
        SimpleNamespace(status="open", due_date="2024-06-10"),
        SimpleNamespace(status="completed", due_date="2024-06-01"),
        SimpleNamespace(status="open", due_date="not a date"),
    ]
    assert compute_email_priority(category=None, tasks=tasks, now=NOW) == 50


def test_priority_counts_due_pending_reminders_and_suggestions():
    reminders = [
        SimpleNamespace(status="pending", remind_at=datetime(2024, 6, 10, 9, 0)),
        SimpleNamespace(status="pending", remind_at=datetime(2024, 6, 11, 9, 0)),
        SimpleNamespace(status="sent", remind_at=datetime(2024, 6, 9, 9, 0)),
    ]
    priority = compute_email_priority(
        category="marketing", reminders=reminders, has_follow_up_suggestion=True, now=NOW
    )
    assert priority == 2 + 20 + 15
