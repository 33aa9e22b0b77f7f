"""
Receipt Service — the analyze and save flows for one session.

Routers call these; they only translate the exceptions raised here into
HTTP responses.  Audit logging happens at each step but can never fail a flow.
"""
import logging

from models.schemas import AppConfig, LogActionType, LogStatus, ReceiptData
from services import vision_service
from services.audit_service import AuditLogger
from services.baserow_service import BaserowClient, BaserowError, SaveOutcome
from services.config_service import require_analyzer, require_persistence
from services.save_lifecycle import InvalidTransition, SaveLifecycle
from services.selection_service import SaveValidationError, build_save_payload, init_selection, toggle_item
from services.session_service import ReceiptSession, SessionStore

logger = logging.getLogger("bonnenmonster.receipts")


class AnalysisInProgress(Exception):
    """The session is still being analyzed; analyze, toggle and save must wait."""
    pass


class SessionReset(Exception):
    """The session was reset while its analysis was in flight."""
    pass


async def analyze_session(
    session: ReceiptSession,
    sessions: SessionStore,
    config: AppConfig,
    audit: AuditLogger,
) -> ReceiptData:
    """Run the analyzer on the session's image and initialise item selection."""
    if session.analyzing:
        raise AnalysisInProgress("The receipt is already being analyzed.")
    # Covers a save in flight (loading): a finished analysis replaces the lifecycle
    if not session.lifecycle.can_begin:
        raise InvalidTransition(session.lifecycle.state, "re-analyze the receipt")
    require_analyzer(config)

    session.analyzing = True
    await audit.log(LogActionType.ANALYZE_START, LogStatus.INFO, f"Analyzing {session.filename}")
    try:
        candidate = await vision_service.analyze_receipt(session.image, config.analyzer_api_key)
    except vision_service.AnalyzerError as e:
        await audit.log(LogActionType.ANALYZE_ERROR, LogStatus.ERROR, str(e), error=e)
        raise
    finally:
        session.analyzing = False

    if not sessions.is_active(session):
        logger.info("Session %s was reset during analysis — result discarded", session.id)
        raise SessionReset("The receipt was reset while it was being analyzed.")

    receipt = init_selection(candidate)
    session.receipt = receipt
    session.items = receipt.line_items or []
    session.lifecycle = SaveLifecycle()
    await audit.log(
        LogActionType.ANALYZE_SUCCESS, LogStatus.SUCCESS,
        f"Analyzed receipt from {receipt.supplier_name}", receipt=receipt,
    )
    return receipt


def toggle_session_item(session: ReceiptSession, item_id: str) -> bool:
    """
    Toggle one item of an analyzed session. Returns False when the toggle was
    refused because it would deselect the last selected item.
    """
    if session.analyzing:
        raise AnalysisInProgress("Wait for the analysis to finish before changing the selection.")
    if not session.items:
        raise KeyError(item_id)
    if not session.lifecycle.can_begin:
        raise InvalidTransition(session.lifecycle.state, "change the selection")

    items, applied = toggle_item(session.items, item_id)
    if applied:
        session.items = items
        session.lifecycle.dismiss()
    return applied


async def save_session(
    session: ReceiptSession,
    config: AppConfig,
    client: BaserowClient,
    audit: AuditLogger,
    attach_photo: bool = True,
) -> SaveOutcome:
    """
    Build the payload from the current selection and store it in Baserow.

    Validation problems (no analysis, missing settings, nothing selected) are
    raised before the lifecycle leaves idle, so the collaborator is never
    called and the user can simply fix and retry.
    """
    if session.analyzing:
        raise AnalysisInProgress("Wait for the analysis to finish before saving.")
    if not session.lifecycle.can_begin:
        raise InvalidTransition(session.lifecycle.state, "start a save")
    if session.receipt is None:
        raise SaveValidationError("Analyze the receipt before saving.")
    require_persistence(config)
    payload = build_save_payload(session.receipt, session.items)

    session.lifecycle.begin()
    await audit.log(LogActionType.SAVE_START, LogStatus.INFO, "Saving receipt", receipt=payload)
    try:
        outcome = await client.save_receipt(
            payload,
            photo=session.image if attach_photo else None,
            filename=session.filename,
            media_type=session.media_type,
            on_photo_event=audit.photo_event,
        )
    except BaserowError as e:
        session.lifecycle.fail(str(e))
        await audit.log(LogActionType.SAVE_ERROR, LogStatus.ERROR, str(e), error=e, receipt=payload)
        raise
    except Exception as e:
        session.lifecycle.fail("An unexpected error occurred while saving.")
        await audit.log(LogActionType.APP_ERROR, LogStatus.ERROR, "Unexpected save failure", error=e)
        raise

    session.lifecycle.succeed()
    await audit.log(
        LogActionType.SAVE_SUCCESS, LogStatus.SUCCESS,
        f"Saved as row {outcome.row_id}", receipt=payload,
    )
    return outcome
