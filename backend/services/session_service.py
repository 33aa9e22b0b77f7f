"""
Receipt sessions — one per chosen image, kept in memory only.

A session holds the normalised photo, the analyzer result, the current line
items and the save lifecycle.  Choosing a new image or resetting drops the
session; nothing here survives a restart.
"""
import logging
import uuid
from dataclasses import dataclass, field
from typing import Optional

from models.schemas import LineItem, ReceiptData, SessionView, Totals
from services.save_lifecycle import SaveLifecycle
from services.selection_service import display_fields, recompute_totals, selected_items

logger = logging.getLogger("bonnenmonster.sessions")

MAX_SESSIONS = 100


class SessionNotFound(KeyError):
    pass


@dataclass
class ReceiptSession:
    image: bytes
    filename: str = "receipt.jpg"
    media_type: str = "image/jpeg"
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    receipt: Optional[ReceiptData] = None    # analyzer output (original amounts)
    items: list[LineItem] = field(default_factory=list)
    analyzing: bool = False
    lifecycle: SaveLifecycle = field(default_factory=SaveLifecycle)

    @property
    def itemized(self) -> bool:
        return bool(self.items)

    def totals(self) -> Optional[Totals]:
        if self.receipt is None:
            return None
        return recompute_totals(self.items, self.receipt.totals())

    def view(self) -> SessionView:
        totals = self.totals()
        return SessionView(
            session_id=self.id,
            filename=self.filename,
            media_type=self.media_type,
            analyzed=self.receipt is not None,
            analyzing=self.analyzing,
            receipt=self.receipt,
            items=self.items,
            itemized=self.itemized,
            totals=totals,
            display=display_fields(self.receipt, totals) if totals is not None else {},
            selected_count=len(selected_items(self.items)),
            save_state=self.lifecycle.state,
            save_error=self.lifecycle.error_message,
        )


class SessionStore:
    """In-memory session registry. Oldest sessions are evicted past MAX_SESSIONS."""

    def __init__(self, max_sessions: int = MAX_SESSIONS):
        self.max_sessions = max_sessions
        self._sessions: dict[str, ReceiptSession] = {}

    def create(self, image: bytes, filename: str, media_type: str = "image/jpeg") -> ReceiptSession:
        session = ReceiptSession(image=image, filename=filename, media_type=media_type)
        self._sessions[session.id] = session
        while len(self._sessions) > self.max_sessions:
            oldest = next(iter(self._sessions))
            logger.debug("Evicting session %s", oldest)
            del self._sessions[oldest]
        return session

    def get(self, session_id: str) -> ReceiptSession:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise SessionNotFound(session_id) from None

    def is_active(self, session: ReceiptSession) -> bool:
        return self._sessions.get(session.id) is session

    def discard(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    def __len__(self) -> int:
        return len(self._sessions)


store = SessionStore()


def get_session_store() -> SessionStore:
    """Dependency: the process-wide session store."""
    return store
