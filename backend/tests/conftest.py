"""
Shared fixtures for backend tests.

Every test gets a fresh in-memory SQLite database with the settings table,
plus small helpers for building receipts, line items and test images.
"""
import io

import pytest
import aiosqlite
from PIL import Image

from models.schemas import LineItem, ReceiptData

# ── Minimal schema (matches production) ───────────────────────────────────────

SCHEMA = """
CREATE TABLE settings (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    updated_at  TEXT DEFAULT (datetime('now'))
);
"""


@pytest.fixture
async def db():
    """Yield a fresh in-memory SQLite connection with the full schema."""
    async with aiosqlite.connect(":memory:") as conn:
        conn.row_factory = aiosqlite.Row
        await conn.executescript(SCHEMA)
        yield conn


@pytest.fixture(autouse=True)
def _no_env_settings(monkeypatch):
    """Keep a developer's real keys out of config tests."""
    for var in ("ANTHROPIC_API_KEY", "BASEROW_API_URL", "BASEROW_API_KEY",
                "BASEROW_TABLE_ID", "BASEROW_LOG_TABLE_ID"):
        monkeypatch.delenv(var, raising=False)


# ── Builders ──────────────────────────────────────────────────────────────────

def make_item(item_id, total, vat, net, selected=True, description=None, **extra):
    return LineItem(
        id=item_id,
        description=description or f"Item {item_id}",
        total_amount=total,
        vat_amount=vat,
        net_amount=net,
        selected=selected,
        **extra,
    )


def make_receipt(items=None, total=15.0, vat=3.0, net=12.0):
    return ReceiptData(
        date="2025-03-07",
        supplier_name="Shell Utrecht",
        total_amount=total,
        vat_amount=vat,
        net_amount=net,
        line_items=items,
    )


def image_bytes(fmt="PNG", size=(40, 60), color=(200, 200, 200)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format=fmt)
    return buf.getvalue()
