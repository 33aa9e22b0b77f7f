"""
Selection Service — the line-item selection engine.

Pure functions over the analyzer's ReceiptData:
  1. init_selection     — every item selected, every item gets a unique id
  2. toggle_item        — flip one item; never leaves zero items selected
  3. recompute_totals   — sum total/vat/net over the selected items
  4. build_save_payload — the record handed to the persistence layer

Nothing here mutates its input; callers replace their lists with the result.
"""
import logging
from datetime import date
from typing import Optional

from models.schemas import LineItem, ReceiptCandidate, ReceiptData, Totals

logger = logging.getLogger("bonnenmonster.selection")


class SaveValidationError(ValueError):
    """Raised when a save is attempted that the persistence layer must not see."""
    pass


def init_selection(candidate: ReceiptCandidate) -> ReceiptData:
    """
    Turn analyzer output into the working copy for a session.

    Supplied ids are kept unless blank or already taken; everything else gets
    ``item-<n>`` (n = 1-based position, bumped past any id in use).  An absent
    or empty item list means "no itemization" → ``line_items`` is None.
    """
    raw_items = candidate.line_items or []
    if not raw_items:
        return ReceiptData(**candidate.model_dump(exclude={"line_items"}), line_items=None)

    supplied = [(c.id or "").strip() for c in raw_items]
    taken: set[str] = set()
    # First pass: reserve supplied ids (first occurrence wins)
    keep: list[bool] = []
    for sid in supplied:
        ok = bool(sid) and sid not in taken
        if ok:
            taken.add(sid)
        keep.append(ok)

    items: list[LineItem] = []
    for pos, (cand, sid, ok) in enumerate(zip(raw_items, supplied, keep), start=1):
        if ok:
            item_id = sid
        else:
            n = pos
            while f"item-{n}" in taken:
                n += 1
            item_id = f"item-{n}"
            taken.add(item_id)
        items.append(LineItem(
            **cand.model_dump(exclude={"id", "selected"}),
            id=item_id,
            selected=True,
        ))

    return ReceiptData(**candidate.model_dump(exclude={"line_items"}), line_items=items)


def selected_items(items: list[LineItem]) -> list[LineItem]:
    return [i for i in items if i.selected]


def toggle_item(items: list[LineItem], item_id: str) -> tuple[list[LineItem], bool]:
    """
    Flip ``selected`` on the item with ``item_id``.

    Returns (items, applied).  When the flip would leave nothing selected the
    input list is returned as-is with applied=False.  Unknown ids raise KeyError.
    """
    idx = next((n for n, i in enumerate(items) if i.id == item_id), None)
    if idx is None:
        raise KeyError(item_id)

    target = items[idx]
    if target.selected and len(selected_items(items)) <= 1:
        logger.debug("Toggle of %s rejected — last selected item", item_id)
        return items, False

    updated = list(items)
    updated[idx] = target.model_copy(update={"selected": not target.selected})
    return updated, True


def recompute_totals(items: list[LineItem], fallback: Totals) -> Totals:
    """
    Sum total/vat/net independently over selected items, at full float precision.

    ``fallback`` (the receipt's own top-level amounts) is returned unchanged
    when there are no items, or when nothing is selected.
    """
    chosen = selected_items(items)
    if not chosen:
        return fallback
    return Totals(
        total_amount=sum(i.total_amount for i in chosen),
        vat_amount=sum(i.vat_amount for i in chosen),
        net_amount=sum(i.net_amount for i in chosen),
    )


def build_save_payload(
    original: ReceiptData,
    items: list[LineItem],
    totals: Optional[Totals] = None,
) -> ReceiptData:
    """
    Build the record for the persistence layer.

    Amounts are replaced by the recomputed totals.  With itemization only the
    selected items travel along; without it ``line_items`` is dropped entirely.
    """
    itemized = bool(items)
    chosen = selected_items(items)
    if itemized and not chosen:
        raise SaveValidationError("Select at least one item before saving.")

    if totals is None:
        totals = recompute_totals(items, original.totals())

    return original.model_copy(update={
        "total_amount": totals.total_amount,
        "vat_amount": totals.vat_amount,
        "net_amount": totals.net_amount,
        "line_items": [i.model_copy() for i in chosen] if itemized else None,
    })


# ── Display helpers ───────────────────────────────────────────────────────────

def format_currency(amount: float) -> str:
    """nl-NL euro formatting: 1234.5 → '€ 1.234,50', -5 → '€ -5,00'. Display only."""
    sign = "-" if amount < 0 else ""
    us = f"{abs(amount):,.2f}"                      # 1,234.50
    nl = us.replace(",", "_").replace(".", ",").replace("_", ".")
    return f"€ {sign}{nl}"


def format_date(iso: str) -> str:
    """'2025-03-07' → '07-03-2025'; anything unparsable is returned unchanged."""
    try:
        d = date.fromisoformat(iso)
    except (TypeError, ValueError):
        return iso
    return d.strftime("%d-%m-%Y")


def display_fields(receipt: ReceiptData, totals: Totals) -> dict[str, str]:
    return {
        "date": format_date(receipt.date),
        "totalAmount": format_currency(totals.total_amount),
        "vatAmount": format_currency(totals.vat_amount),
        "netAmount": format_currency(totals.net_amount),
    }
