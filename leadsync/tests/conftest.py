import json
from datetime import datetime
from typing import Any, Callable, List, Optional, Tuple, Union

import pytest
import pytest_asyncio

from leadsync.config import SyncSettings
from leadsync.db import (
    Contact,
    EmailMessage,
    Lead,
    configure_engine,
    dispose_engine,
    get_session,
    init_db,
)

NOW = datetime(2024, 6, 10, 12, 0, 0)
TENANT = "tenant-1"

Reply = Union[str, dict, Exception, Callable[[str, str], str]]


class FakeLLM:
    """Scripted stand-in for the text-generation client.

    Replies are consumed in order; dicts are sent back as JSON, exceptions
    are raised and callables receive ``(system_prompt, user_prompt)``. Once
    the script runs out ``default`` is returned.
    """

    def __init__(self, *replies: Reply, default: str = ""):
        self.replies: List[Reply] = list(replies)
        self.default = default
        self.calls: List[dict] = []

    def queue(self, *replies: Reply) -> None:
        self.replies.extend(replies)

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        response_format: str = "text",
        temperature: float = 0.7,
        max_tokens: int = 500,
    ) -> str:
        self.calls.append(
            {
                "system": system_prompt,
                "user": user_prompt,
                "response_format": response_format,
                "temperature": temperature,
                "max_tokens": max_tokens,
            }
        )
        if not self.replies:
            return self.default
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, dict):
            return json.dumps(reply)
        if callable(reply):
            return reply(system_prompt, user_prompt)
        return reply


class Sleeps:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def settings(tmp_path) -> SyncSettings:
    return SyncSettings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'leadsync.db'}",
        jwt_secret="test-secret",
        cron_secret="cron-secret",
        smart_scheduling_suggestions=False,
        auto_sequence_follow_ups_enabled=True,
    )


@pytest_asyncio.fixture
async def db(settings):
    configure_engine(settings.database_url)
    await init_db()
    try:
        yield
    finally:
        await dispose_engine()


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def sleeps() -> Sleeps:
    return Sleeps()


async def add_all(*rows: Any) -> None:
    async with get_session() as session:
        for row in rows:
            session.add(row)
        await session.commit()


async def reload(model, row_id: Any):
    async with get_session() as session:
        return await session.get(model, row_id)


def make_email(**overrides: Any) -> EmailMessage:
    fields = {
        "tenant_id": TENANT,
        "from_address": "prospect@example.com",
        "from_name": "Pat Prospect",
        "subject": "Website redesign",
        "body_text": "Hi, could you send pricing for a website redesign?",
        "thread_id": "thread-1",
        "internal_date": NOW,
    }
    fields.update(overrides)
    return EmailMessage(**fields)


async def make_lead(
    *,
    tenant_id: str = TENANT,
    email: str = "prospect@example.com",
    name: Optional[str] = "Pat Prospect",
    **overrides: Any,
) -> Tuple[Contact, Lead]:
    contact = Contact(tenant_id=tenant_id, email=email, name=name)
    fields = {
        "tenant_id": tenant_id,
        "contact_id": contact.id,
        "score": 45,
        "stage": "qualified",
        "last_activity_at": NOW,
        "active_key": f"{tenant_id}:{contact.id}:-",
    }
    fields.update(overrides)
    lead = Lead(**fields)
    await add_all(contact, lead)
    return contact, lead
