"""FastAPI application exposing the sync pipeline to the rest of the product."""

import hmac
import logging
from typing import List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlmodel import select

from leadsync import monitoring
from leadsync.agents.copilot import copilot_chat, copilot_insights
from leadsync.agents.drafts import generate_email_draft, load_email, update_draft_with_instructions
from leadsync.agents.followups import generate_follow_up_draft
from leadsync.auth import TenantAuthMiddleware
from leadsync.config import SyncSettings, get_settings
from leadsync.crm import close_lead, get_lead, get_lead_by_contact_email
from leadsync.db import Contact, PreparedFollowUpDraft, get_session, init_db, utcnow
from leadsync.errors import EmailNotFoundError, LeadNotFoundError
from leadsync.jobs import run_pipeline
from leadsync.llm.router import LLMRouter
from leadsync.schemas import (
    ChatReply,
    CopilotChatIn,
    CopilotIn,
    CopilotInsights,
    DraftResult,
    DraftRevision,
    DraftUpdateIn,
    LeadCloseIn,
    LeadOut,
    PreparedDraftOut,
)

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()

app = FastAPI(title="LeadSync API")
app.state.settings = get_settings()
app.state.llm = LLMRouter(app.state.settings)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(
    TenantAuthMiddleware,
    exempt_paths={"/healthz"},
    exempt_prefixes={"/internal/", "/docs", "/openapi", "/redoc"},
)


def _settings(request: Request) -> SyncSettings:
    return request.app.state.settings


def _llm(request: Request) -> LLMRouter:
    return request.app.state.llm


def _lead_out(lead) -> LeadOut:
    return LeadOut(
        id=lead.id,
        contact_id=lead.contact_id,
        business_id=lead.business_id,
        score=lead.score,
        stage=lead.stage,
        budget=lead.budget,
        timeline=lead.timeline,
        last_email_id=lead.last_email_id,
        last_activity_at=lead.last_activity_at,
        primary_opportunity_type=lead.primary_opportunity_type,
        primary_opportunity_strength=lead.primary_opportunity_strength,
    )


def _draft_out(draft: PreparedFollowUpDraft) -> PreparedDraftOut:
    return PreparedDraftOut(
        id=draft.id,
        lead_id=draft.lead_id,
        email_id=draft.email_id,
        draft_body=draft.draft_body,
        reason=draft.reason,
        flagged_amounts=draft.flagged_amounts or [],
        consumed=draft.consumed,
        created_at=draft.created_at,
    )


@app.exception_handler(EmailNotFoundError)
@app.exception_handler(LeadNotFoundError)
async def not_found_handler(request: Request, exc: Exception):
    return JSONResponse({"detail": str(exc)}, status_code=404)


async def _scheduled_pipeline() -> None:
    settings = app.state.settings
    try:
        await run_pipeline(settings, app.state.llm)
    except Exception as exc:
        monitoring.capture_exception(exc)


@app.on_event("startup")
async def on_startup():
    settings = app.state.settings
    monitoring.init_monitoring(settings)
    await init_db()
    if not scheduler.running:
        scheduler.start()
    if not scheduler.get_job("sync-pipeline"):
        scheduler.add_job(
            _scheduled_pipeline,
            "interval",
            minutes=settings.pipeline_interval_minutes,
            id="sync-pipeline",
        )


@app.on_event("shutdown")
async def on_shutdown():
    if scheduler.running:
        scheduler.shutdown(wait=False)


@app.get("/healthz")
async def health_check():
    return {"status": "ok"}


@app.post("/internal/sync/run-once")
async def run_once(request: Request, x_cron_secret: Optional[str] = Header(default=None)):
    """Run every batch job once; meant for an external cron trigger."""
    settings = _settings(request)
    if not settings.cron_secret:
        raise HTTPException(status_code=503, detail="Cron secret not configured")
    if not x_cron_secret or not hmac.compare_digest(x_cron_secret, settings.cron_secret):
        raise HTTPException(status_code=401, detail="Invalid cron secret")
    results = await run_pipeline(settings, _llm(request))
    return {"jobs": [result.as_dict() for result in results]}


@app.get("/sync/follow-ups/prepared", response_model=List[PreparedDraftOut])
async def list_prepared_follow_ups(request: Request):
    async with get_session() as session:
        drafts = (
            await session.exec(
                select(PreparedFollowUpDraft)
                .where(
                    PreparedFollowUpDraft.tenant_id == request.state.tenant_id,
                    PreparedFollowUpDraft.consumed == False,  # noqa: E712
                )
                .order_by(PreparedFollowUpDraft.created_at.desc())
            )
        ).all()
    return [_draft_out(draft) for draft in drafts]


@app.post("/sync/follow-ups/prepared/{draft_id}/consume", response_model=PreparedDraftOut)
async def consume_prepared_follow_up(draft_id: str, request: Request):
    """Mark a prepared draft as used so the lead can receive a new one."""
    async with get_session() as session:
        draft = await session.get(PreparedFollowUpDraft, draft_id)
        if draft is None or draft.tenant_id != request.state.tenant_id:
            raise HTTPException(status_code=404, detail="Draft not found")
        if not draft.consumed:
            draft.consumed = True
            draft.consumed_at = utcnow()
            session.add(draft)
            await session.commit()
            await session.refresh(draft)
    return _draft_out(draft)


@app.post("/sync/email/{email_id}/draft", response_model=DraftResult)
async def draft_reply(email_id: str, request: Request):
    return await generate_email_draft(
        _settings(request), _llm(request), tenant_id=request.state.tenant_id, email_id=email_id
    )


@app.post("/sync/email/{email_id}/draft/update", response_model=DraftRevision)
async def revise_draft(email_id: str, payload: DraftUpdateIn, request: Request):
    return await update_draft_with_instructions(
        _settings(request),
        _llm(request),
        tenant_id=request.state.tenant_id,
        email_id=email_id,
        draft=payload.draft,
        instructions=payload.instructions,
    )


@app.post("/sync/email/{email_id}/follow-up-draft", response_model=DraftResult)
async def follow_up_draft(email_id: str, request: Request):
    """Generate an on-demand follow-up for the lead behind an email's sender."""
    tenant_id = request.state.tenant_id
    email = await load_email(tenant_id, email_id)
    lead = await get_lead_by_contact_email(tenant_id, email.from_address)
    if lead is None:
        raise LeadNotFoundError(f"No lead for sender of email {email_id}")
    async with get_session() as session:
        contact = await session.get(Contact, lead.contact_id)
    if contact is None:
        raise LeadNotFoundError(f"Contact for lead {lead.id} not found")
    return await generate_follow_up_draft(
        _settings(request),
        _llm(request),
        tenant_id=tenant_id,
        lead=lead,
        contact=contact,
        email_id=email.id,
        thread_id=email.thread_id,
        reason="manual",
    )


@app.post("/sync/email/{email_id}/copilot", response_model=CopilotInsights)
async def copilot(email_id: str, payload: CopilotIn, request: Request):
    try:
        return await copilot_insights(
            _settings(request),
            _llm(request),
            tenant_id=request.state.tenant_id,
            email_id=email_id,
            mode=payload.mode,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/sync/email/{email_id}/copilot/chat", response_model=ChatReply)
async def copilot_conversation(email_id: str, payload: CopilotChatIn, request: Request):
    return await copilot_chat(
        _settings(request),
        _llm(request),
        tenant_id=request.state.tenant_id,
        email_id=email_id,
        message=payload.message,
        draft=payload.draft,
        history=payload.history,
    )


@app.get("/sync/lead/{lead_id}", response_model=LeadOut)
async def read_lead(lead_id: str, request: Request):
    lead = await get_lead(request.state.tenant_id, lead_id)
    if lead is None:
        raise HTTPException(status_code=404, detail="Lead not found")
    return _lead_out(lead)


@app.post("/sync/lead/{lead_id}/close", response_model=LeadOut)
async def close_lead_endpoint(lead_id: str, payload: LeadCloseIn, request: Request):
    try:
        lead = await close_lead(request.state.tenant_id, lead_id, payload.outcome)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _lead_out(lead)
