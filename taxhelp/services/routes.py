"""
Backend pass-through routes — GET  /api/conversations/{id}/forms,
                               GET  /api/conversations/{id}/forms/{form_id}/pdf,
                               POST /api/conversations/{id}/payment,
                               GET  /api/sync,
                               POST /api/sync/drain

Each call runs with the bearer token of the conversation's Session. Backend
failures surface as ApiError and are mapped by the global handler in main.py.
"""
from __future__ import annotations

import io
import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse

from taxhelp.models import Session
from taxhelp.services.api_client import ApiClient
from taxhelp.store import SessionStore
from taxhelp.sync_queue import SyncQueue
from taxhelp.wizard.engine import SessionNotFoundError

router = APIRouter(prefix="/api", tags=["services"])
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _signed_in_session(request: Request, conversation_id: int) -> Session:
    store: SessionStore = request.app.state.store
    session = store.get(conversation_id)
    if session is None:
        raise SessionNotFoundError(conversation_id)
    if not session.is_authenticated:
        raise HTTPException(status_code=401, detail="Sign in first")
    return session


# ---------------------------------------------------------------------------
# Tax forms and payments
# ---------------------------------------------------------------------------

@router.get("/conversations/{conversation_id}/forms")
async def list_forms(request: Request, conversation_id: int) -> JSONResponse:
    session = _signed_in_session(request, conversation_id)
    client: ApiClient = request.app.state.api_client
    forms = await client.list_tax_forms(session.token)
    return JSONResponse(
        status_code=200,
        content=[form.model_dump(mode="json", by_alias=True) for form in forms],
    )


@router.get("/conversations/{conversation_id}/forms/{form_id}/pdf")
async def download_form(
    request: Request, conversation_id: int, form_id: str
) -> StreamingResponse:
    """Stream a tax form PDF fetched from the backend."""
    session = _signed_in_session(request, conversation_id)
    client: ApiClient = request.app.state.api_client
    pdf = await client.download_tax_form(form_id, session.token)
    filename = f"tax_form_{form_id}.pdf"
    logger.info(
        "Form downloaded conversation_id=%s form_id=%s bytes=%d",
        conversation_id, form_id, len(pdf),
    )
    return StreamingResponse(
        io.BytesIO(pdf),
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/conversations/{conversation_id}/payment")
async def start_payment(request: Request, conversation_id: int) -> JSONResponse:
    session = _signed_in_session(request, conversation_id)
    client: ApiClient = request.app.state.api_client
    checkout = await client.create_payment_session(session.token)
    logger.info("Checkout created conversation_id=%s", conversation_id)
    return JSONResponse(status_code=200, content=checkout.model_dump(by_alias=True))


# ---------------------------------------------------------------------------
# Write-behind queue
# ---------------------------------------------------------------------------

@router.get("/sync")
async def sync_status(request: Request) -> dict:
    queue: SyncQueue = request.app.state.sync_queue
    return {"pending": len(queue)}


@router.post("/sync/drain")
async def drain_sync_queue(request: Request) -> dict:
    """Run one drain pass now instead of waiting for the next interval."""
    queue: SyncQueue = request.app.state.sync_queue
    report = await queue.drain()
    return {
        "synced": report.synced,
        "deferred": report.deferred,
        "dropped": report.dropped,
        "pending": len(queue),
    }
