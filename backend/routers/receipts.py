"""
Receipts Router

POST   /api/receipts                            — choose an image, start a session
GET    /api/receipts/{id}                       — session state (items, totals, save state)
POST   /api/receipts/{id}/analyze               — run Claude Vision on the image
POST   /api/receipts/{id}/items/{item_id}/toggle — (de)select a line item
POST   /api/receipts/{id}/save                  — store the result in Baserow
DELETE /api/receipts/{id}                       — reset (discard the session)
"""
import logging
import os
from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile

from models.schemas import SaveRequest, SaveResult, SessionView, ToggleResult
from routers.settings import get_settings_store
from services.audit_service import AuditLogger
from services.baserow_service import BaserowClient, BaserowError
from services.config_service import ConfigurationMissing, load_config
from services.receipt_service import (
    AnalysisInProgress, SessionReset, analyze_session, save_session, toggle_session_item,
)
from services.save_lifecycle import InvalidTransition
from services.selection_service import SaveValidationError
from services.session_service import ReceiptSession, SessionNotFound, SessionStore, get_session_store
from services.vision_service import AnalyzerError, ImageReadError, normalize_upload

logger = logging.getLogger("bonnenmonster.receipts")
router = APIRouter()


def get_persistence_factory():
    """Dependency: builds the Baserow client for a config. Overridden in tests."""
    return BaserowClient


def _session_or_404(sessions: SessionStore, session_id: str) -> ReceiptSession:
    try:
        return sessions.get(session_id)
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Receipt session not found")


def _settings_required(e: ConfigurationMissing) -> HTTPException:
    return HTTPException(
        status_code=409,
        detail={"message": str(e), "settingsRequired": True, "missing": e.missing},
    )


def _audit(request: Request, client: Optional[BaserowClient]) -> AuditLogger:
    return AuditLogger(client, user_agent=request.headers.get("user-agent", ""))


# ── Image selection ───────────────────────────────────────────────────────────

@router.post("", response_model=SessionView, status_code=201)
async def create_session(
    file: Optional[UploadFile] = File(None),
    sessions: SessionStore = Depends(get_session_store),
):
    """
    Accept a photo (camera capture or file upload) and open a new session.
    Nothing is analyzed yet; the previous image's state is never reused.
    """
    contents = await file.read() if file is not None else b""
    content_type = (file.content_type or "") if file is not None else ""
    try:
        image = normalize_upload(contents, content_type)
    except ImageReadError as e:
        raise HTTPException(status_code=422, detail=str(e))

    # Always .jpg since normalize_upload re-encodes
    stem = os.path.splitext(os.path.basename(file.filename or ""))[0] if file is not None else ""
    session = sessions.create(image, filename=f"{stem or 'receipt'}.jpg")
    logger.info("New session %s (%d KB)", session.id, len(image) // 1024)
    return session.view()


@router.get("/{session_id}", response_model=SessionView)
async def get_session(session_id: str, sessions: SessionStore = Depends(get_session_store)):
    return _session_or_404(sessions, session_id).view()


@router.delete("/{session_id}")
async def reset_session(session_id: str, sessions: SessionStore = Depends(get_session_store)):
    """Discard the session. An analysis still in flight finishes but is thrown away."""
    if not sessions.discard(session_id):
        raise HTTPException(status_code=404, detail="Receipt session not found")
    return {"status": "ok", "session_id": session_id}


# ── Analyze ───────────────────────────────────────────────────────────────────

@router.post("/{session_id}/analyze", response_model=SessionView)
async def analyze(
    session_id: str,
    request: Request,
    sessions: SessionStore = Depends(get_session_store),
    store=Depends(get_settings_store),
    persistence=Depends(get_persistence_factory),
):
    session = _session_or_404(sessions, session_id)
    config = await load_config(store)
    audit = _audit(request, persistence(config))

    try:
        await analyze_session(session, sessions, config, audit)
    except ConfigurationMissing as e:
        raise _settings_required(e)
    except (AnalysisInProgress, SessionReset) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    except AnalyzerError as e:
        raise HTTPException(status_code=502, detail=f"Analysis failed: {e}")
    return session.view()


# ── Selection ─────────────────────────────────────────────────────────────────

@router.post("/{session_id}/items/{item_id}/toggle", response_model=ToggleResult)
async def toggle(session_id: str, item_id: str, sessions: SessionStore = Depends(get_session_store)):
    session = _session_or_404(sessions, session_id)
    try:
        applied = toggle_session_item(session, item_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Line item not found")
    except (AnalysisInProgress, InvalidTransition) as e:
        raise HTTPException(status_code=409, detail=str(e))
    return ToggleResult(applied=applied, session=session.view())


# ── Save ──────────────────────────────────────────────────────────────────────

@router.post("/{session_id}/save", response_model=SaveResult)
async def save(
    session_id: str,
    request: Request,
    body: Optional[SaveRequest] = None,
    sessions: SessionStore = Depends(get_session_store),
    store=Depends(get_settings_store),
    persistence=Depends(get_persistence_factory),
):
    session = _session_or_404(sessions, session_id)
    body = body or SaveRequest()
    config = await load_config(store)
    client = persistence(config)

    try:
        outcome = await save_session(
            session, config, client, _audit(request, client), attach_photo=body.attach_photo,
        )
    except ConfigurationMissing as e:
        raise _settings_required(e)
    except SaveValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except (AnalysisInProgress, InvalidTransition) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except BaserowError as e:
        raise HTTPException(status_code=502, detail=str(e))

    return SaveResult(
        state=session.lifecycle.state,
        row_id=outcome.row_id,
        photo_uploaded=outcome.photo_uploaded,
    )
