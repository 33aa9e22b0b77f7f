from datetime import date as _date
from enum import Enum
import re
from typing import Optional, List

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

ISO_DATE_RE = re.compile(r'^\d{4}-\d{2}-\d{2}$')
DEFAULT_BASEROW_URL = "https://api.baserow.io"


class CamelModel(BaseModel):
    """snake_case in Python, camelCase on the wire (matches the PWA's JSON)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Line Item ──────────────────────────────────────────
class LineItemBase(CamelModel):
    description: str
    quantity: Optional[float] = None
    unit_price: Optional[float] = None
    net_amount: float
    vat_amount: float
    vat_rate: Optional[float] = None      # percentage, e.g. 9 or 21
    total_amount: float                   # ≈ net + vat, not enforced

class LineItemCandidate(LineItemBase):
    """Line item as returned by the analyzer — id/selected may be missing."""
    id: Optional[str] = None
    selected: Optional[bool] = None

class LineItem(LineItemBase):
    id: str
    selected: bool = True


# ── Receipt ────────────────────────────────────────────
class Totals(CamelModel):
    total_amount: float
    vat_amount: float
    net_amount: float

class ReceiptBase(CamelModel):
    date: str                 # YYYY-MM-DD
    supplier_name: str
    total_amount: float
    vat_amount: float
    net_amount: float

    @field_validator("date")
    @classmethod
    def _iso_date(cls, v: str) -> str:
        v = v.strip()
        if not ISO_DATE_RE.match(v):
            raise ValueError("date must be in YYYY-MM-DD format")
        _date.fromisoformat(v)   # rejects 2024-02-31 etc.
        return v

    def totals(self) -> Totals:
        return Totals(
            total_amount=self.total_amount,
            vat_amount=self.vat_amount,
            net_amount=self.net_amount,
        )

class ReceiptCandidate(ReceiptBase):
    """Analyzer output validated at the boundary, before selection init."""
    line_items: Optional[List[LineItemCandidate]] = None

class ReceiptData(ReceiptBase):
    line_items: Optional[List[LineItem]] = None

    @property
    def itemized(self) -> bool:
        return bool(self.line_items)


# ── Save lifecycle ─────────────────────────────────────
class SaveState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


# ── Settings ───────────────────────────────────────────
class AppConfig(CamelModel):
    api_url: str = DEFAULT_BASEROW_URL
    api_key: str = ""                      # Baserow database token
    table_id: str = ""
    analyzer_api_key: str = ""
    log_table_id: Optional[str] = None
    supplier_field: str = "Leverancier"    # "Tankstation" on legacy tables

    @property
    def persistence_configured(self) -> bool:
        return bool(self.api_key and self.table_id)

    @property
    def analyzer_configured(self) -> bool:
        return bool(self.analyzer_api_key)

class AppConfigUpdate(CamelModel):
    """Sent by the settings form. Blank secrets mean "keep the stored one"."""
    api_url: Optional[str] = None
    api_key: Optional[str] = None
    table_id: Optional[str] = None
    analyzer_api_key: Optional[str] = None
    log_table_id: Optional[str] = None
    supplier_field: Optional[str] = None

class AppConfigView(CamelModel):
    # Never expose key material — only report presence
    api_url: str
    api_key_set: bool
    table_id: str
    analyzer_api_key_set: bool
    log_table_id: Optional[str] = None
    supplier_field: str
    persistence_configured: bool
    analyzer_configured: bool


# ── Baserow ────────────────────────────────────────────
class BaserowFileUpload(BaseModel):
    url: str
    name: str
    size: Optional[int] = None
    mime_type: Optional[str] = None
    is_image: bool = False
    image_width: Optional[int] = None
    image_height: Optional[int] = None
    uploaded_at: Optional[str] = None
    thumbnails: dict = Field(default_factory=dict)


# ── Audit log ──────────────────────────────────────────
class LogActionType(str, Enum):
    PHOTO_UPLOAD_START = "photo_upload_start"
    PHOTO_UPLOAD_SUCCESS = "photo_upload_success"
    PHOTO_UPLOAD_ERROR = "photo_upload_error"
    ANALYZE_START = "analyze_start"
    ANALYZE_SUCCESS = "analyze_success"
    ANALYZE_ERROR = "analyze_error"
    SAVE_START = "save_start"
    SAVE_SUCCESS = "save_success"
    SAVE_ERROR = "save_error"
    APP_ERROR = "app_error"

class LogStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

class LogEntry(CamelModel):
    timestamp: str            # ISO 8601
    action_type: LogActionType
    status: LogStatus
    message: str
    error_details: Optional[str] = None   # JSON-encoded
    receipt_data: Optional[str] = None    # JSON-encoded
    user_agent: str = ""


# ── Session / API responses ────────────────────────────
class SessionView(CamelModel):
    session_id: str
    filename: str
    media_type: str
    analyzed: bool
    analyzing: bool
    receipt: Optional[ReceiptData] = None
    items: List[LineItem] = []
    itemized: bool = False
    totals: Optional[Totals] = None
    display: dict[str, str] = {}          # nl-NL formatted date / amounts
    selected_count: int = 0
    save_state: SaveState = SaveState.IDLE
    save_error: Optional[str] = None

class ToggleResult(CamelModel):
    applied: bool
    session: SessionView

class SaveRequest(CamelModel):
    attach_photo: bool = True

class SaveResult(CamelModel):
    state: SaveState
    row_id: Optional[int] = None
    photo_uploaded: bool = False
