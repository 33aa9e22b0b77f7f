"""
Audit trail — optional rows in a second Baserow table (``logTableId``).

Logging must never get in the way of scanning or saving a receipt, so every
failure in here is swallowed after a debug line.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Optional

from models.schemas import LogActionType, LogEntry, LogStatus, ReceiptData
from services.baserow_service import BaserowClient

logger = logging.getLogger("bonnenmonster.audit")


def log_entry_row(entry: LogEntry) -> dict:
    return {
        "Timestamp": entry.timestamp,
        "Action": entry.action_type.value,
        "Status": entry.status.value,
        "Message": entry.message,
        "Error Details": entry.error_details or "",
        "Receipt Data": entry.receipt_data or "",
        "User Agent": entry.user_agent,
    }


class AuditLogger:
    def __init__(self, client: Optional[BaserowClient], user_agent: str = ""):
        self.client = client
        self.user_agent = user_agent

    @property
    def enabled(self) -> bool:
        c = self.client
        return bool(c and c.config.log_table_id and c.config.api_key)

    async def log(
        self,
        action: LogActionType,
        status: LogStatus,
        message: str,
        error: Optional[BaseException] = None,
        receipt: Optional[ReceiptData] = None,
    ) -> None:
        if not self.enabled:
            return
        try:
            entry = LogEntry(
                timestamp=datetime.now(timezone.utc).isoformat(),
                action_type=action,
                status=status,
                message=message,
                error_details=json.dumps({"type": type(error).__name__, "message": str(error)})
                if error is not None else None,
                receipt_data=receipt.model_dump_json(by_alias=True) if receipt is not None else None,
                user_agent=self.user_agent,
            )
            await self.client.create_row(self.client.config.log_table_id, log_entry_row(entry))
        except Exception as e:
            logger.debug("Audit log write failed (ignored): %s", e)

    async def photo_event(self, kind: str, message: str) -> None:
        """Adapter for BaserowClient.save_receipt's on_photo_event hook."""
        action, status = {
            "start": (LogActionType.PHOTO_UPLOAD_START, LogStatus.INFO),
            "success": (LogActionType.PHOTO_UPLOAD_SUCCESS, LogStatus.SUCCESS),
            "error": (LogActionType.PHOTO_UPLOAD_ERROR, LogStatus.WARNING),
        }.get(kind, (LogActionType.APP_ERROR, LogStatus.INFO))
        await self.log(action, status, message)
