from datetime import timedelta

import pytest

from leadsync.agents.copilot import copilot_chat, copilot_insights
from leadsync.agents.drafts import generate_email_draft, update_draft_with_instructions
from leadsync.agents.followups import generate_follow_up_draft
from leadsync.db import BusinessPricingTier, BusinessProfile, BusinessService, Contact, SyncPreferences
from leadsync.errors import EmailNotFoundError
from leadsync.schemas import ChatTurn
from leadsync.tests.conftest import NOW, TENANT, FakeLLM, add_all, make_email, make_lead

pytestmark = pytest.mark.asyncio


async def _business():
    await add_all(
        BusinessProfile(tenant_id=TENANT, business_name="Acme Studio", description="Websites for small firms"),
        BusinessService(tenant_id=TENANT, name="Web design", description="Five-page sites"),
        BusinessPricingTier(
            tenant_id=TENANT, name="Starter", price_amount=5000, price_currency="USD", is_default=True
        ),
    )


async def _conversation():
    await add_all(
        make_email(id="earlier", body_text="We met at the expo last week.", internal_date=NOW - timedelta(days=1)),
        make_email(id="current", body_text="Our budget is around $8k. What would a new site cost?"),
    )


# reply drafts


async def test_draft_uses_thread_and_business_and_flags_unknown_prices(db, settings):
    await _business()
    await _conversation()
    llm = FakeLLM("Our Starter package is $5,000. We could match your $8,000 budget, or go premium at $12,000.")

    result = await generate_email_draft(settings, llm, tenant_id=TENANT, email_id="current")

    assert result.used_thread_context and result.used_business_info
    assert result.flagged_amounts == ["$12,000"]
    assert result.suggested_slots == []
    call = llm.calls[0]
    assert "Thread awareness" in call["system"]
    assert "Quote only the services" in call["system"]
    assert "=== TONE & STYLE ===" in call["system"]
    assert "- Starter: USD 5,000" in call["user"]
    assert "We met at the expo last week." in call["user"]
    assert "From: Pat Prospect <prospect@example.com>" in call["user"]


async def test_draft_without_context_features(db, settings):
    settings.thread_context_for_drafts = False
    settings.business_info_aware_drafts = False
    await _business()
    await _conversation()
    llm = FakeLLM("Happy to help.")

    result = await generate_email_draft(settings, llm, tenant_id=TENANT, email_id="current")

    assert result.draft == "Happy to help."
    assert not result.used_thread_context and not result.used_business_info
    assert "BUSINESS INFORMATION" not in llm.calls[0]["user"]
    assert "Thread awareness" not in llm.calls[0]["system"]


async def test_draft_fallback_when_generation_fails(db, settings):
    await add_all(make_email(id="current", thread_id=None))
    result = await generate_email_draft(settings, FakeLLM(RuntimeError("down")), tenant_id=TENANT, email_id="current")
    assert result.draft.startswith("Hi Pat Prospect,")
    assert '"Website redesign"' in result.draft
    assert result.flagged_amounts == []


async def test_draft_offers_time_slots_when_enabled(db, settings):
    settings.smart_scheduling_suggestions = True
    await _conversation()
    llm = FakeLLM("Does Tuesday at 10 work?")

    result = await generate_email_draft(settings, llm, tenant_id=TENANT, email_id="current")

    assert 0 < len(result.suggested_slots) <= 10
    assert "Available time slots:" in llm.calls[0]["user"]
    assert "Offer 2-3 of the listed available time slots" in llm.calls[0]["system"]


async def test_draft_rejects_foreign_or_deleted_email(db, settings):
    await add_all(
        make_email(id="theirs", tenant_id="tenant-2"),
        make_email(id="gone", deleted_at=NOW),
    )
    for email_id in ("theirs", "gone", "missing"):
        with pytest.raises(EmailNotFoundError):
            await generate_email_draft(settings, FakeLLM(), tenant_id=TENANT, email_id=email_id)


async def test_draft_tone_follows_preferences_and_lead(db, settings):
    await add_all(SyncPreferences(tenant_id=TENANT, tone_preset="custom", tone_custom_instructions="Always sign off as Sam."))
    await make_lead(score=85, stage="ready_to_close")
    await _conversation()
    llm = FakeLLM("Sounds good.")
    await generate_email_draft(settings, llm, tenant_id=TENANT, email_id="current")
    assert "Always sign off as Sam." in llm.calls[0]["system"]


# revisions


async def test_revision_returns_new_body(db, settings):
    await _conversation()
    llm = FakeLLM({"draftBody": "  Shorter reply.  ", "explanation": "Trimmed the intro."})
    revision = await update_draft_with_instructions(
        settings, llm, tenant_id=TENANT, email_id="current", draft="A long reply.", instructions="Make it shorter"
    )
    assert revision.draft_body == "Shorter reply."
    assert revision.explanation == "Trimmed the intro."
    assert "Instructions:\nMake it shorter" in llm.calls[0]["user"]
    assert llm.calls[0]["response_format"] == "json_object"


@pytest.mark.parametrize("reply", [RuntimeError("down"), "not json", {"draftBody": "   "}])
async def test_revision_keeps_draft_on_bad_output(db, settings, reply):
    await _conversation()
    revision = await update_draft_with_instructions(
        settings, FakeLLM(reply), tenant_id=TENANT, email_id="current", draft="Original.", instructions="Shorter"
    )
    assert revision.draft_body == "Original."


# follow-up drafts


async def test_follow_up_draft_prompt_carries_lead_details(db, settings):
    await _business()
    await _conversation()
    contact, lead = await make_lead(budget="$8k", timeline="July", last_activity_at=NOW - timedelta(days=6))
    llm = FakeLLM("Hi Pat, still keen on the July launch? The Starter plan at $5,000 fits.")

    result = await generate_follow_up_draft(
        settings,
        llm,
        tenant_id=TENANT,
        lead=lead,
        contact=contact,
        email_id="current",
        thread_id="thread-1",
        reason="no_reply",
    )

    assert result.flagged_amounts == []
    assert result.used_thread_context and result.used_business_info
    user = llm.calls[0]["user"]
    assert "- Budget: $8k" in user
    assert "- Follow-up Reason: no_reply" in user
    assert "Contact: Pat Prospect" in user
    assert "Be addressed to Pat Prospect." in llm.calls[0]["system"]


async def test_follow_up_fallback_mentions_business(db, settings):
    await _business()
    contact = Contact(tenant_id=TENANT, email="anon@example.com")
    _, lead = await make_lead(email="anon@example.com", name=None)
    result = await generate_follow_up_draft(
        settings, FakeLLM(""), tenant_id=TENANT, lead=lead, contact=contact, email_id="x", reason="sequence_step_1"
    )
    assert result.draft.startswith("Hi there,")
    assert "I wanted to follow up on our conversation" in result.draft
    assert result.draft.endswith("Acme Studio")


# copilot


async def test_insights_parse_and_filter_lists(db, settings):
    await _conversation()
    await make_lead()
    llm = FakeLLM(
        {
            "summary": "Prospect wants a quote.",
            "key_points": ["Budget about $8k", "", 3],
            "risks": "none",
            "recommended_next_step": "Send the Starter quote.",
        }
    )

    insights = await copilot_insights(settings, llm, tenant_id=TENANT, email_id="current", mode="next_step")

    assert insights.summary == "Prospect wants a quote."
    assert insights.key_points == ["Budget about $8k"]
    assert insights.risks == []
    assert insights.recommended_next_step == "Send the Starter quote."
    assert "Recommend the single best next step" in llm.calls[0]["system"]
    assert "Lead: stage qualified, score 45/100" in llm.calls[0]["user"]


async def test_insights_reject_unknown_mode(db, settings):
    await _conversation()
    with pytest.raises(ValueError):
        await copilot_insights(settings, FakeLLM(), tenant_id=TENANT, email_id="current", mode="horoscope")


async def test_insights_empty_on_failure(db, settings):
    await _conversation()
    insights = await copilot_insights(settings, FakeLLM(RuntimeError("down")), tenant_id=TENANT, email_id="current")
    assert insights.summary == "" and insights.key_points == []


async def test_chat_draft_update(db, settings):
    await _conversation()
    llm = FakeLLM({"type": "draft_update", "message": "Made it friendlier.", "draftBody": "Hey Pat!"})
    history = [ChatTurn(role="user", content=f"question {i}") for i in range(12)]

    reply = await copilot_chat(
        settings, llm, tenant_id=TENANT, email_id="current", message="Friendlier please", draft="Dear Pat,", history=history
    )

    assert (reply.type, reply.message, reply.draft_body) == ("draft_update", "Made it friendlier.", "Hey Pat!")
    user = llm.calls[0]["user"]
    assert "Current draft:\nDear Pat," in user
    assert "question 1\n" not in user
    assert "question 2" in user and "question 11" in user
    assert user.endswith("Owner's message: Friendlier please")


async def test_chat_downgrades_update_without_body(db, settings):
    await _conversation()
    llm = FakeLLM({"type": "draft_update", "message": "Here you go."})
    reply = await copilot_chat(settings, llm, tenant_id=TENANT, email_id="current", message="Rewrite it")
    assert (reply.type, reply.draft_body) == ("answer", None)


async def test_chat_asks_for_clarification(db, settings):
    await _conversation()
    empty = await copilot_chat(settings, FakeLLM({"type": "answer"}), tenant_id=TENANT, email_id="current", message="?")
    assert empty.type == "clarification"
    failed = await copilot_chat(
        settings, FakeLLM(RuntimeError("down")), tenant_id=TENANT, email_id="current", message="Hi"
    )
    assert failed.type == "clarification"
