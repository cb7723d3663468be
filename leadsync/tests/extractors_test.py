from datetime import date, datetime

import pytest

from leadsync.agents.appointments import detect_appointment, snap_duration, validate_appointment
from leadsync.agents.classification import classify_email
from leadsync.agents.crm_fields import extract_crm_fields
from leadsync.agents.opportunities import detect_opportunity_signals, strongest_signal
from leadsync.agents.tasks import extract_tasks, parse_timestamp
from leadsync.agents.text import parse_json_object, strip_html, truncate
from leadsync.schemas import OpportunitySignal
from leadsync.tests.conftest import FakeLLM

NOW = datetime(2024, 6, 10, 12, 0)


@pytest.mark.asyncio
async def test_classify_invoice():
    llm = FakeLLM({"category": "invoice"})
    result = await classify_email(
        llm, from_address="x@y.com", subject="Invoice #12", body_text="Please pay $500 by Friday"
    )
    assert result.category == "invoice"
    assert llm.calls[0]["temperature"] == 0.1
    assert llm.calls[0]["max_tokens"] == 50
    assert llm.calls[0]["response_format"] == "json_object"


@pytest.mark.parametrize("reply", ["", "not json", {"category": "spam"}, {"label": "invoice"}])
@pytest.mark.asyncio
async def test_classify_defaults_to_other(reply):
    result = await classify_email(FakeLLM(reply), from_address="x@y.com", subject="Hello")
    assert result.category == "other"


@pytest.mark.asyncio
async def test_classify_provider_error_defaults_to_other():
    result = await classify_email(FakeLLM(RuntimeError("boom")), from_address="x@y.com", subject="Hello")
    assert result.category == "other"
    assert result.raw == {"error": "boom"}


@pytest.mark.asyncio
async def test_classify_uses_html_when_no_text():
    llm = FakeLLM({"category": "marketing"})
    await classify_email(llm, from_address="x@y.com", subject="Sale", body_html="<p>50% <b>off</b></p>")
    assert "50% off" in llm.calls[0]["user"]


def _appointment(**overrides):
    appointment = {"title": "Kickoff", "date": "2024-06-12", "time": "14:30", "duration_minutes": 50}
    appointment.update(overrides)
    return {"hasAppointment": True, "appointmentType": "request", "appointment": appointment, "confidence": 0.9}


@pytest.mark.asyncio
async def test_detect_appointment_valid():
    result = await detect_appointment(
        FakeLLM(_appointment()), from_address="x@y.com", subject="Call", body_text="Meet Wed 2:30?", now=NOW
    )
    assert result.has_appointment
    assert result.appointment.appointment_type == "request"
    assert result.appointment.duration_minutes == 45
    assert result.appointment.confidence == 0.9


@pytest.mark.parametrize(
    "overrides",
    [
        {"date": "12/06/2024"},
        {"date": "2024-02-30"},
        {"time": "2pm"},
        {"time": "25:00"},
        {"date": None},
        {"date": "2020-01-01", "time": "09:00"},
    ],
)
@pytest.mark.asyncio
async def test_detect_appointment_rejects_invalid(overrides):
    result = await detect_appointment(
        FakeLLM(_appointment(**overrides)), from_address="x@y.com", subject="Call", now=NOW
    )
    assert result.has_appointment is False
    assert result.appointment is None


@pytest.mark.asyncio
async def test_detect_appointment_error_is_empty():
    result = await detect_appointment(FakeLLM(TimeoutError()), from_address="x@y.com", subject="Call", now=NOW)
    assert result.has_appointment is False


def test_validate_appointment_defaults():
    data = {"hasAppointment": True, "appointmentType": "brunch", "appointment": {"date": "2024-06-12", "time": "09:00"}, "confidence": 7}
    result = validate_appointment(data, "Coffee chat", date(2024, 6, 10))
    assert result.appointment.appointment_type == "proposal"
    assert result.appointment.title == "Coffee chat"
    assert result.appointment.confidence == 1.0
    assert result.appointment.duration_minutes == 60


@pytest.mark.parametrize("value,expected", [(10, 15), (50, 45), (75, 60), (1000, 240), ("abc", 60), (-5, 60)])
def test_snap_duration(value, expected):
    assert snap_duration(value) == expected


@pytest.mark.asyncio
async def test_extract_tasks_and_reminders():
    llm = FakeLLM(
        {
            "hasTasks": True,
            "tasks": [
                {"description": "Send the contract", "dueDate": "2024-06-14", "priority": "high"},
                {"description": "Weekly report", "priority": "urgent", "recurring": {"frequency": "weekly"}},
                {"description": ""},
            ],
            "reminders": [
                {"message": "Chase signature", "remindAt": "2024-06-13T09:00:00Z"},
                {"message": "No date"},
            ],
        }
    )
    result = await extract_tasks(llm, from_address="x@y.com", subject="Next steps", body_text="...", now=NOW)
    assert result.has_tasks
    assert [task.description for task in result.tasks] == ["Send the contract", "Weekly report"]
    assert result.tasks[1].priority == "medium"
    assert result.tasks[1].is_recurring and result.tasks[1].recurring_frequency == "weekly"
    assert len(result.reminders) == 1
    assert result.reminders[0].remind_at == datetime(2024, 6, 13, 9, 0)


@pytest.mark.asyncio
async def test_extract_tasks_bad_output_is_empty():
    result = await extract_tasks(FakeLLM("```json\nnope\n```"), from_address="x@y.com", subject="Hi", now=NOW)
    assert result.has_tasks is False
    assert result.tasks == [] and result.reminders == []


@pytest.mark.asyncio
async def test_extract_tasks_drops_impossible_due_values():
    llm = FakeLLM(
        {
            "hasTasks": True,
            "tasks": [
                {"description": "Send invoice", "dueDate": "2024-13-45", "dueTime": "99:99"},
                {"description": "Call back", "dueDate": "2024-06-14", "dueTime": "17:30"},
                {
                    "description": "Monthly check",
                    "recurring": {"frequency": "monthly", "endDate": "2024-02-30"},
                },
            ],
        }
    )
    result = await extract_tasks(llm, from_address="x@y.com", subject="Todo", body_text="...", now=NOW)
    assert [(t.due_date, t.due_time) for t in result.tasks] == [(None, None), ("2024-06-14", "17:30"), (None, None)]
    assert result.tasks[2].is_recurring and result.tasks[2].recurring_end_date is None


def test_string_flags_do_not_count_as_true():
    appointment = {"hasAppointment": "false", "appointment": {"date": "2024-06-12", "time": "09:00"}}
    assert validate_appointment(appointment, "Call", date(2024, 6, 10)).has_appointment is False


@pytest.mark.asyncio
async def test_extract_tasks_string_flag_is_not_true():
    llm = FakeLLM({"hasTasks": "false", "tasks": [{"description": "Phantom task"}]})
    result = await extract_tasks(llm, from_address="x@y.com", subject="Hi", body_text="...", now=NOW)
    assert result.has_tasks is False
    assert result.tasks == []


def test_parse_timestamp_normalises_offsets():
    assert parse_timestamp("2024-06-13T11:00:00+02:00") == datetime(2024, 6, 13, 9, 0)
    assert parse_timestamp("tomorrow") is None


@pytest.mark.asyncio
async def test_crm_fields_drops_unknown_service():
    llm = FakeLLM(
        {
            "inferredServiceId": "svc-unknown",
            "budgetText": "$5k",
            "budgetLevel": "medium",
            "urgencyLevel": "extreme",
            "intentType": "pricing",
            "wantsAppointment": "yes",
        }
    )
    result = await extract_crm_fields(
        llm, from_address="x@y.com", subject="Quote", body="How much?", services=[("svc-1", "Web design")]
    )
    assert result.inferred_service_id is None
    assert result.budget_text == "$5k"
    assert result.budget_level == "medium"
    assert result.urgency_level == "unknown"
    assert result.intent_type == "pricing"
    assert result.wants_appointment is False
    assert "Web design (ID: svc-1)" in llm.calls[0]["user"]


@pytest.mark.asyncio
async def test_crm_fields_error_defaults():
    result = await extract_crm_fields(FakeLLM(ValueError("bad")), from_address="x@y.com", subject="", body="")
    assert result.intent_type == "other"
    assert result.budget_level == "unknown"


@pytest.mark.asyncio
async def test_opportunity_signals_filtered():
    llm = FakeLLM(
        {
            "opportunities": [
                {"type": "buying_signal", "strength": "high", "summary": "Asked for a contract."},
                {"type": "gossip", "strength": "high", "summary": "n/a"},
                {"type": "risk", "strength": "extreme", "summary": "n/a"},
                {"type": "competitor", "strength": "low", "summary": ""},
            ]
        }
    )
    signals = await detect_opportunity_signals(
        llm, subject="Contract", body="Send the contract", lead_stage="negotiating", lead_score=70
    )
    assert [(s.type, s.strength) for s in signals] == [("buying_signal", "high")]
    assert llm.calls[0]["temperature"] == 0.3


@pytest.mark.asyncio
async def test_opportunity_signals_error_is_empty():
    signals = await detect_opportunity_signals(
        FakeLLM(RuntimeError()), subject="", body="", lead_stage="new", lead_score=0
    )
    assert signals == []


def test_strongest_signal_keeps_first_on_ties():
    signals = [
        OpportunitySignal(type="risk", strength="medium", summary="a"),
        OpportunitySignal(type="upsell", strength="medium", summary="b"),
        OpportunitySignal(type="renewal", strength="low", summary="c"),
    ]
    assert strongest_signal(signals).type == "risk"
    assert strongest_signal([]) is None


def test_parse_json_object_tolerates_noise():
    assert parse_json_object('```json\n{"a": 1}\n```') == {"a": 1}
    assert parse_json_object('Sure! {"a": 2} hope that helps') == {"a": 2}
    assert parse_json_object("[1, 2]") is None
    assert parse_json_object(None) is None


def test_text_helpers():
    assert truncate("abcdef", 3) == "abc... [truncated]"
    assert truncate(None, 3) == ""
    assert strip_html("<p>Hello <b>there</b></p><script>x()</script>") == "Hello there"
    assert strip_html("a &amp; b") == "a & b"
