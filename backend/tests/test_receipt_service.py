"""
Tests for the analyze / toggle / save flows of a session, without HTTP.

The analyzer is patched at services.vision_service.analyze_receipt and the
Baserow client is an AsyncMock, so these tests only exercise the flow rules:
re-entrancy, reset during analysis, validation before the collaborator is
called, and the save lifecycle.
"""
import asyncio

import pytest
from unittest.mock import patch, AsyncMock, MagicMock

from conftest import image_bytes
from models.schemas import AppConfig, LineItemCandidate, ReceiptCandidate, SaveState
from services.audit_service import AuditLogger
from services.baserow_service import BaserowError, SaveOutcome
from services.config_service import ConfigurationMissing
from services.receipt_service import (
    AnalysisInProgress,
    SessionReset,
    analyze_session,
    save_session,
    toggle_session_item,
)
from services.save_lifecycle import InvalidTransition
from services.selection_service import SaveValidationError
from services.session_service import SessionStore
from services.vision_service import AnalyzerError

CONFIG = AppConfig(api_key="tok", table_id="42", analyzer_api_key="sk-ant-test")


def candidate(n_items=2):
    items = [
        LineItemCandidate(description="Euro 95", total_amount=10, vat_amount=2, net_amount=8),
        LineItemCandidate(description="Wasstraat", total_amount=5, vat_amount=1, net_amount=4),
    ][:n_items]
    return ReceiptCandidate(
        date="2025-03-07", supplier_name="Tango", total_amount=15, vat_amount=3,
        net_amount=12, line_items=items,
    )


def fake_client(outcome=None, error=None):
    client = MagicMock()
    client.config = CONFIG
    client.save_receipt = AsyncMock(
        return_value=outcome or SaveOutcome(row_id=7, photo_uploaded=True),
        side_effect=error,
    )
    return client


@pytest.fixture
def sessions():
    return SessionStore()


@pytest.fixture
def session(sessions):
    return sessions.create(image_bytes("JPEG"), "bon.jpg")


async def analyzed(session, sessions, cand=None):
    with patch("services.vision_service.analyze_receipt",
               new_callable=AsyncMock, return_value=cand or candidate()):
        await analyze_session(session, sessions, CONFIG, AuditLogger(None))
    return session


# ── analyze_session ──────────────────────────────────────────────────────────

class TestAnalyzeSession:

    @pytest.mark.asyncio
    async def test_items_initialised(self, session, sessions):
        await analyzed(session, sessions)
        assert [i.id for i in session.items] == ["item-1", "item-2"]
        assert all(i.selected for i in session.items)
        assert session.analyzing is False
        assert session.view().totals.total_amount == 15

    @pytest.mark.asyncio
    async def test_no_itemization(self, session, sessions):
        await analyzed(session, sessions, candidate(0))
        assert session.items == []
        assert session.view().itemized is False
        assert session.view().totals.total_amount == 15

    @pytest.mark.asyncio
    async def test_missing_analyzer_key(self, session, sessions):
        with pytest.raises(ConfigurationMissing):
            await analyze_session(session, sessions, AppConfig(), AuditLogger(None))

    @pytest.mark.asyncio
    async def test_reentrant_analysis_rejected(self, session, sessions):
        session.analyzing = True
        with pytest.raises(AnalysisInProgress):
            await analyze_session(session, sessions, CONFIG, AuditLogger(None))

    @pytest.mark.asyncio
    async def test_analyzer_error_leaves_session_retryable(self, session, sessions):
        with patch("services.vision_service.analyze_receipt",
                   new_callable=AsyncMock, side_effect=AnalyzerError("The field 'date' could not be found")):
            with pytest.raises(AnalyzerError):
                await analyze_session(session, sessions, CONFIG, AuditLogger(None))
        assert session.analyzing is False
        assert session.receipt is None

        await analyzed(session, sessions)
        assert session.receipt is not None

    @pytest.mark.asyncio
    async def test_reset_during_analysis_discards_result(self, session, sessions):
        async def slow_analyze(image, key):
            sessions.discard(session.id)
            await asyncio.sleep(0)
            return candidate()

        with patch("services.vision_service.analyze_receipt", side_effect=slow_analyze):
            with pytest.raises(SessionReset):
                await analyze_session(session, sessions, CONFIG, AuditLogger(None))
        assert session.receipt is None
        assert len(sessions) == 0

    @pytest.mark.asyncio
    async def test_no_reanalysis_after_successful_save(self, session, sessions):
        await analyzed(session, sessions)
        await save_session(session, CONFIG, fake_client(), AuditLogger(None))
        with pytest.raises(InvalidTransition):
            await analyzed(session, sessions)


# ── toggle_session_item ──────────────────────────────────────────────────────

class TestToggleSessionItem:

    @pytest.mark.asyncio
    async def test_toggle_updates_totals(self, session, sessions):
        await analyzed(session, sessions)
        assert toggle_session_item(session, "item-2") is True
        assert session.view().totals.total_amount == 10
        assert session.view().selected_count == 1

    @pytest.mark.asyncio
    async def test_last_item_refused(self, session, sessions):
        await analyzed(session, sessions)
        toggle_session_item(session, "item-2")
        assert toggle_session_item(session, "item-1") is False
        assert session.view().selected_count == 1

    @pytest.mark.asyncio
    async def test_unknown_item(self, session, sessions):
        await analyzed(session, sessions)
        with pytest.raises(KeyError):
            toggle_session_item(session, "item-9")

    def test_not_itemized(self, session):
        with pytest.raises(KeyError):
            toggle_session_item(session, "item-1")

    @pytest.mark.asyncio
    async def test_toggle_dismisses_save_error(self, session, sessions):
        await analyzed(session, sessions)
        with pytest.raises(BaserowError):
            await save_session(session, CONFIG, fake_client(error=BaserowError("down")), AuditLogger(None))
        assert session.lifecycle.state == SaveState.ERROR

        toggle_session_item(session, "item-2")
        assert session.lifecycle.state == SaveState.IDLE

    @pytest.mark.asyncio
    async def test_toggle_after_success_rejected(self, session, sessions):
        await analyzed(session, sessions)
        await save_session(session, CONFIG, fake_client(), AuditLogger(None))
        with pytest.raises(InvalidTransition):
            toggle_session_item(session, "item-2")


# ── save_session ─────────────────────────────────────────────────────────────

class TestSaveSession:

    @pytest.mark.asyncio
    async def test_success_with_selected_items_only(self, session, sessions):
        await analyzed(session, sessions)
        toggle_session_item(session, "item-2")
        client = fake_client()

        outcome = await save_session(session, CONFIG, client, AuditLogger(None))

        assert outcome.row_id == 7
        assert session.lifecycle.state == SaveState.SUCCESS
        payload = client.save_receipt.call_args.args[0]
        assert payload.total_amount == 10
        assert payload.vat_amount == 2
        assert payload.net_amount == 8
        assert [i.id for i in payload.line_items] == ["item-1"]
        assert client.save_receipt.call_args.kwargs["photo"] == session.image

    @pytest.mark.asyncio
    async def test_photo_can_be_skipped(self, session, sessions):
        await analyzed(session, sessions)
        client = fake_client()
        await save_session(session, CONFIG, client, AuditLogger(None), attach_photo=False)
        assert client.save_receipt.call_args.kwargs["photo"] is None

    @pytest.mark.asyncio
    async def test_zero_selected_never_calls_collaborator(self, session, sessions):
        await analyzed(session, sessions)
        session.items = [i.model_copy(update={"selected": False}) for i in session.items]
        client = fake_client()

        with pytest.raises(SaveValidationError):
            await save_session(session, CONFIG, client, AuditLogger(None))
        client.save_receipt.assert_not_called()
        assert session.lifecycle.state == SaveState.IDLE

    @pytest.mark.asyncio
    async def test_missing_config_never_calls_collaborator(self, session, sessions):
        await analyzed(session, sessions)
        client = fake_client()
        with pytest.raises(ConfigurationMissing):
            await save_session(session, AppConfig(analyzer_api_key="k"), client, AuditLogger(None))
        client.save_receipt.assert_not_called()
        assert session.lifecycle.state == SaveState.IDLE

    @pytest.mark.asyncio
    async def test_not_analyzed(self, session):
        with pytest.raises(SaveValidationError):
            await save_session(session, CONFIG, fake_client(), AuditLogger(None))

    @pytest.mark.asyncio
    async def test_failure_then_retry(self, session, sessions):
        await analyzed(session, sessions)
        with pytest.raises(BaserowError):
            await save_session(session, CONFIG, fake_client(error=BaserowError("Saving to Baserow failed: nope")),
                               AuditLogger(None))
        assert session.lifecycle.state == SaveState.ERROR
        assert session.view().save_error == "Saving to Baserow failed: nope"

        await save_session(session, CONFIG, fake_client(), AuditLogger(None))
        assert session.lifecycle.state == SaveState.SUCCESS

    @pytest.mark.asyncio
    async def test_duplicate_save_rejected(self, session, sessions):
        await analyzed(session, sessions)
        await save_session(session, CONFIG, fake_client(), AuditLogger(None))
        client = fake_client()
        with pytest.raises(InvalidTransition):
            await save_session(session, CONFIG, client, AuditLogger(None))
        client.save_receipt.assert_not_called()

    @pytest.mark.asyncio
    async def test_concurrent_save_rejected(self, session, sessions):
        await analyzed(session, sessions)
        gate = asyncio.Event()

        async def slow_save(*args, **kwargs):
            await gate.wait()
            return SaveOutcome(row_id=1, photo_uploaded=False)

        client = fake_client()
        client.save_receipt = AsyncMock(side_effect=slow_save)
        first = asyncio.create_task(save_session(session, CONFIG, client, AuditLogger(None)))
        await asyncio.sleep(0)
        assert session.lifecycle.state == SaveState.LOADING

        with pytest.raises(InvalidTransition):
            await save_session(session, CONFIG, client, AuditLogger(None))

        gate.set()
        await first
        assert client.save_receipt.call_count == 1
        assert session.lifecycle.state == SaveState.SUCCESS


# ── Interleaved analyze / save ───────────────────────────────────────────────

class TestInterleavedFlows:

    @pytest.mark.asyncio
    async def test_save_waits_for_running_reanalysis(self, session, sessions):
        await analyzed(session, sessions)
        gate = asyncio.Event()

        async def slow_analyze(image, key):
            await gate.wait()
            return candidate()

        client = fake_client()
        with patch("services.vision_service.analyze_receipt", side_effect=slow_analyze):
            reanalysis = asyncio.create_task(analyze_session(session, sessions, CONFIG, AuditLogger(None)))
            await asyncio.sleep(0)
            assert session.analyzing is True

            with pytest.raises(AnalysisInProgress):
                await save_session(session, CONFIG, client, AuditLogger(None))
            with pytest.raises(AnalysisInProgress):
                toggle_session_item(session, "item-2")
            client.save_receipt.assert_not_called()
            assert session.lifecycle.state == SaveState.IDLE

            gate.set()
            await reanalysis

        await save_session(session, CONFIG, client, AuditLogger(None))
        with pytest.raises(InvalidTransition):
            await save_session(session, CONFIG, client, AuditLogger(None))
        assert client.save_receipt.call_count == 1
        assert session.lifecycle.state == SaveState.SUCCESS

    @pytest.mark.asyncio
    async def test_reanalysis_rejected_while_saving(self, session, sessions):
        await analyzed(session, sessions)
        gate = asyncio.Event()

        async def slow_save(*args, **kwargs):
            await gate.wait()
            return SaveOutcome(row_id=3, photo_uploaded=False)

        client = fake_client()
        client.save_receipt = AsyncMock(side_effect=slow_save)
        pending = asyncio.create_task(save_session(session, CONFIG, client, AuditLogger(None)))
        await asyncio.sleep(0)
        lifecycle = session.lifecycle
        assert lifecycle.state == SaveState.LOADING

        with pytest.raises(InvalidTransition):
            await analyzed(session, sessions)
        assert session.lifecycle is lifecycle

        gate.set()
        outcome = await pending
        assert outcome.row_id == 3
        assert session.lifecycle.state == SaveState.SUCCESS
        with pytest.raises(InvalidTransition):
            await save_session(session, CONFIG, client, AuditLogger(None))
        assert client.save_receipt.call_count == 1
