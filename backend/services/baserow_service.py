"""
Baserow Service — stores finalized receipts in a Baserow table.

A save is up to two calls:
  1. POST /api/user-files/upload-file/      — the receipt photo (optional)
  2. POST /api/database/rows/table/{id}/    — the row, referencing the photo

A failed photo upload is logged and the row is created without it; the
receipt data matters more than the picture.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from models.schemas import AppConfig, BaserowFileUpload, ReceiptData
from services.selection_service import format_currency

logger = logging.getLogger("bonnenmonster.baserow")

TIMEOUT = 30.0

# Fixed column names in the user's Baserow table
FIELD_DATE = "Datum"
FIELD_TOTAL = "Totaal Bedrag"
FIELD_VAT = "BTW Bedrag"
FIELD_NET = "Netto Bedrag"
FIELD_ITEMS = "Items"
FIELD_ITEM_COUNT = "Aantal Items"
FIELD_PHOTO = "Photo"


class BaserowError(Exception):
    """Raised when Baserow rejects a request or cannot be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


@dataclass
class SaveOutcome:
    row_id: Optional[int]
    photo_uploaded: bool


def _error_detail(response: httpx.Response) -> str:
    """Baserow's own error text when it sent one, else the HTTP reason."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("detail"):
        detail = body["detail"]
        return detail if isinstance(detail, str) else str(detail)
    return response.reason_phrase or f"HTTP {response.status_code}"


def _format_item_line(item) -> str:
    prefix = ""
    if item.quantity:
        qty = int(item.quantity) if float(item.quantity).is_integer() else item.quantity
        prefix = f"{qty}x "
    return f"{prefix}{item.description} - {format_currency(item.total_amount)}"


def build_row(data: ReceiptData, supplier_field: str = "Leverancier",
              photo: Optional[BaserowFileUpload] = None) -> dict:
    """
    Map a save payload onto the table's columns.
    Amounts are rounded to cents here — Baserow number fields reject more
    decimals than they are configured for.
    """
    row = {
        FIELD_DATE: data.date,
        supplier_field: data.supplier_name,
        FIELD_TOTAL: round(data.total_amount, 2),
        FIELD_VAT: round(data.vat_amount, 2),
        FIELD_NET: round(data.net_amount, 2),
    }
    if data.line_items:
        row[FIELD_ITEMS] = "\n".join(_format_item_line(i) for i in data.line_items)
        row[FIELD_ITEM_COUNT] = len(data.line_items)
    if photo is not None:
        row[FIELD_PHOTO] = [{"name": photo.name}]
    return row


class BaserowClient:
    """Thin async client for the two Baserow endpoints we use."""

    def __init__(self, config: AppConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.api_url.rstrip("/"),
            headers={"Authorization": f"Token {self.config.api_key}"},
            timeout=TIMEOUT,
            transport=self.transport,
        )

    async def upload_photo(self, image_bytes: bytes, filename: str,
                           media_type: str = "image/jpeg") -> BaserowFileUpload:
        try:
            async with self._client() as client:
                response = await client.post(
                    "/api/user-files/upload-file/",
                    files={"file": (filename, image_bytes, media_type)},
                )
        except httpx.RequestError as e:
            raise BaserowError(f"Could not upload the photo: {e}") from e

        if response.is_error:
            detail = _error_detail(response)
            logger.error("Baserow file upload error: %s - %s", response.status_code, detail)
            raise BaserowError(f"Photo upload failed: {detail}", response.status_code)
        try:
            return BaserowFileUpload.model_validate(response.json())
        except ValueError as e:
            raise BaserowError(f"Unexpected upload response from Baserow: {e}") from e

    async def create_row(self, table_id: str, row: dict) -> dict:
        try:
            async with self._client() as client:
                response = await client.post(
                    f"/api/database/rows/table/{table_id}/",
                    params={"user_field_names": "true"},
                    json=row,
                )
        except httpx.RequestError as e:
            logger.error("Failed to connect to Baserow: %s", e)
            raise BaserowError("Could not connect to the Baserow API.") from e

        if response.is_error:
            detail = _error_detail(response)
            logger.error("Baserow API error: %s - %s", response.status_code, detail)
            raise BaserowError(f"Saving to Baserow failed: {detail}", response.status_code)
        try:
            return response.json()
        except ValueError:
            return {}

    async def save_receipt(
        self,
        data: ReceiptData,
        photo: Optional[bytes] = None,
        filename: str = "receipt.jpg",
        media_type: str = "image/jpeg",
        on_photo_event=None,
    ) -> SaveOutcome:
        """
        Upload the photo (if any), then create the row.
        ``on_photo_event(kind, message)`` is awaited with "start", "success"
        or "error" so the caller can keep an audit trail.
        """
        uploaded: Optional[BaserowFileUpload] = None
        if photo:
            if on_photo_event:
                await on_photo_event("start", f"Uploading {filename}")
            try:
                uploaded = await self.upload_photo(photo, filename, media_type)
                if on_photo_event:
                    await on_photo_event("success", f"Uploaded {uploaded.name}")
            except BaserowError as e:
                logger.warning("Photo upload failed, continuing without photo: %s", e)
                if on_photo_event:
                    await on_photo_event("error", str(e))

        row = build_row(data, self.config.supplier_field, uploaded)
        created = await self.create_row(self.config.table_id, row)
        row_id = created.get("id") if isinstance(created, dict) else None
        logger.info("Saved receipt from %s (%s) as row %s", data.supplier_name, data.date, row_id)
        return SaveOutcome(row_id=row_id, photo_uploaded=uploaded is not None)
