"""
Conversation HTTP routes — the front-end glue for the wizard engine.

  POST /api/conversations/{conversation_id}/onboarding
  POST /api/conversations/{conversation_id}/start
  POST /api/conversations/{conversation_id}/input
  POST /api/conversations/{conversation_id}/navigate
  POST /api/conversations/{conversation_id}/language
  GET  /api/conversations/{conversation_id}

Every POST carries the sender identity; the Session is created (or refreshed)
before the engine sees the event. Replies are WizardReply JSON — message keys
and a step view, rendered by the messenger front-end.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from taxhelp.store import SessionStore
from taxhelp.sync_queue import SyncQueue
from taxhelp.wizard.engine import SessionNotFoundError, WizardEngine
from taxhelp.wizard.schemas import (
    ConversationEvent,
    InputRequest,
    LanguageRequest,
    NavigateRequest,
    NavigationDirective,
    StartRequest,
    WizardReply,
)

router = APIRouter(prefix="/api/conversations", tags=["conversations"])
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _engine(request: Request) -> WizardEngine:
    return request.app.state.engine


def _touch(request: Request, conversation_id: int, event: ConversationEvent) -> None:
    """Get-or-create the Session for this event's sender."""
    store: SessionStore = request.app.state.store
    store.upsert(conversation_id, event.identity, event.language)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/{conversation_id}/onboarding", response_model=WizardReply)
async def onboarding(
    request: Request, conversation_id: int, body: ConversationEvent
) -> WizardReply:
    """First contact: menu for signed-in users, login for known users, else registration."""
    _touch(request, conversation_id, body)
    return await _engine(request).begin_onboarding(conversation_id)


@router.post("/{conversation_id}/start", response_model=WizardReply)
async def start_wizard(
    request: Request, conversation_id: int, body: StartRequest
) -> WizardReply:
    _touch(request, conversation_id, body)
    return await _engine(request).start(conversation_id, body.kind, body.field)


@router.post("/{conversation_id}/input", response_model=WizardReply)
async def submit_input(
    request: Request, conversation_id: int, body: InputRequest
) -> WizardReply:
    """A typed message, a pressed option button or a shared contact."""
    _touch(request, conversation_id, body)
    return await _engine(request).advance(
        conversation_id, body.text, contact_phone=body.contact_phone
    )


@router.post("/{conversation_id}/navigate", response_model=WizardReply)
async def navigate(
    request: Request, conversation_id: int, body: NavigateRequest
) -> WizardReply:
    _touch(request, conversation_id, body)
    directive = NavigationDirective(action=body.action, target=body.target)
    return await _engine(request).handle_navigation(conversation_id, directive)


@router.post("/{conversation_id}/language", response_model=WizardReply)
async def change_language(
    request: Request, conversation_id: int, body: LanguageRequest
) -> WizardReply:
    store: SessionStore = request.app.state.store
    store.upsert(conversation_id, body.identity)
    return await _engine(request).change_language(conversation_id, body.language)


@router.get("/{conversation_id}")
async def get_conversation(request: Request, conversation_id: int) -> JSONResponse:
    """Session snapshot for the front-end. The bearer token never leaves the service."""
    store: SessionStore = request.app.state.store
    queue: SyncQueue = request.app.state.sync_queue
    session = store.get(conversation_id)
    if session is None:
        raise SessionNotFoundError(conversation_id)

    content = session.model_dump(
        mode="json",
        exclude={"token": True, "last_activity": True, "wizard": {"data": {"password"}}},
    )
    content["authenticated"] = session.is_authenticated
    content["sync_queued"] = queue.is_pending(conversation_id)
    return JSONResponse(status_code=200, content=content)
