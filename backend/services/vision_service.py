"""
Vision Service — reads the uploaded receipt photo and has Claude Vision
extract the receipt fields (date, supplier, totals, VAT and line items).

The model returns JSON which is validated here, at the boundary: a missing
required field or a malformed answer becomes an AnalyzerError with a single
user-facing message instead of leaking half-filled data into a session.
"""
import base64
import io
import json
import logging
import os
import re

import anthropic
from PIL import Image, ImageOps
from pydantic import ValidationError

from models.schemas import ReceiptCandidate

logger = logging.getLogger("bonnenmonster.vision")

ANTHROPIC_MODEL = os.environ.get("ANTHROPIC_MODEL", "claude-sonnet-4-5")
MAX_VISION_DIM = 1568     # Claude Vision optimal long side

REQUIRED_FIELDS = ("date", "supplierName", "totalAmount", "vatAmount", "netAmount")

# Register HEIC/HEIF support via pillow-heif if available
try:
    from pillow_heif import register_heif_opener
    register_heif_opener()
    HEIF_AVAILABLE = True
except ImportError:
    HEIF_AVAILABLE = False
    logger.info("pillow-heif not installed — HEIC files will not be supported")


class ImageReadError(Exception):
    """The uploaded file is missing, not an image, or cannot be decoded."""
    pass


class AnalyzerError(Exception):
    """Claude could not produce usable receipt data (API, parse or field error)."""
    pass


# ── Image handling ────────────────────────────────────────────────────────────

def normalize_upload(contents: bytes, content_type: str = "") -> bytes:
    """
    Validate an uploaded image and re-encode it as an upright JPEG.

    Phone photos are often rotated in EXIF metadata only, so orientation is
    applied to the pixels here once and every later step sees the same image.
    """
    if not contents:
        raise ImageReadError("Select an image first.")
    if content_type and not content_type.startswith("image/"):
        raise ImageReadError(f"Unsupported file type '{content_type}'. Choose an image.")

    try:
        img = Image.open(io.BytesIO(contents))
        img = ImageOps.exif_transpose(img)
        if img.mode not in ("RGB", "L"):
            img = img.convert("RGB")
        buf = io.BytesIO()
        img.save(buf, format="JPEG", quality=92, optimize=True)
    except Exception as e:
        msg = str(e)
        if ("heif" in msg.lower() or "heic" in msg.lower()) and not HEIF_AVAILABLE:
            raise ImageReadError("HEIC/HEIF photos require pillow-heif to be installed.") from e
        raise ImageReadError(f"Could not read the image file: {msg}") from e
    return buf.getvalue()


def _prepare_image_for_vision(image_bytes: bytes) -> tuple[bytes, str]:
    """
    Resize + compress an image so it fits within Claude Vision limits.
    Returns (bytes, media_type).  PDFs are passed through untouched so the
    caller can refuse them.
    """
    if image_bytes[:4] == b'\x89PNG':
        orig_type = "image/png"
    elif image_bytes[:3] == b'\xff\xd8\xff':
        orig_type = "image/jpeg"
    elif image_bytes[:4] == b'RIFF' and image_bytes[8:12] == b'WEBP':
        orig_type = "image/webp"
    elif image_bytes[:4] == b'%PDF':
        return image_bytes, "application/pdf"
    else:
        orig_type = "image/jpeg"

    try:
        img = Image.open(io.BytesIO(image_bytes))
        w, h = img.size
        long_side = max(w, h)
        if long_side <= MAX_VISION_DIM:
            return image_bytes, orig_type

        scale = MAX_VISION_DIM / long_side
        img = img.resize((int(w * scale), int(h * scale)), Image.LANCZOS)
        if img.mode not in ("RGB", "L"):
            img = img.convert("RGB")
        logger.debug("Resized image %d×%d → %d×%d", w, h, img.size[0], img.size[1])

        buf = io.BytesIO()
        img.save(buf, format="JPEG", quality=92, optimize=True)
        return buf.getvalue(), "image/jpeg"
    except Exception as e:
        logger.warning("Image prep failed (%s), sending original", e)
        return image_bytes, orig_type


# ── Claude call ───────────────────────────────────────────────────────────────

PROMPT = """You are a receipt data extractor for Dutch fuel and purchase receipts ("bonnen").
Read the receipt image carefully and output structured JSON.

Rules:
- date: the transaction date in YYYY-MM-DD format.
- supplierName: the name of the shop or fuel station as printed.
- totalAmount: the amount paid INCLUDING VAT (BTW).
- vatAmount: the VAT (BTW) amount. If several VAT rates are listed, add them up.
- netAmount: the amount EXCLUDING VAT (totalAmount − vatAmount).
- All amounts are plain numbers (use a dot as decimal separator, no currency symbols).

Line items:
- If the receipt lists separate products (fuel, car wash, shop items, …), return
  one entry per product in "lineItems".
- For every item give netAmount, vatAmount and totalAmount. When the receipt
  only prints the price including VAT, derive net and VAT from the item's VAT
  rate (vatRate, as a percentage such as 9 or 21).
- quantity and unitPrice are optional (for fuel: litres and price per litre).
- If the receipt is not itemized, return an empty "lineItems" array.

Return null for a field you cannot find. Output ONLY this JSON (no prose, no markdown):

{
  "date": "YYYY-MM-DD",
  "supplierName": "string",
  "totalAmount": number,
  "vatAmount": number,
  "netAmount": number,
  "lineItems": [
    {
      "description": "string",
      "quantity": number or null,
      "unitPrice": number or null,
      "netAmount": number,
      "vatAmount": number,
      "vatRate": number or null,
      "totalAmount": number
    }
  ]
}"""


async def _call_claude(api_key: str, b64: str, media_type: str) -> str:
    """Send the image to Claude and return the raw text answer."""
    client = anthropic.AsyncAnthropic(api_key=api_key)
    message = await client.messages.create(
        model=ANTHROPIC_MODEL,
        max_tokens=4096,
        messages=[{
            "role": "user",
            "content": [
                {
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": media_type,
                        "data": b64,
                    },
                },
                {"type": "text", "text": PROMPT},
            ],
        }],
    )
    return message.content[0].text


def parse_analyzer_response(raw: str) -> ReceiptCandidate:
    """Turn Claude's text answer into a validated ReceiptCandidate."""
    raw = (raw or "").strip()
    # Strip markdown fences if present
    raw = re.sub(r'^```[a-z]*\n?', '', raw)
    raw = re.sub(r'\n?```$', '', raw)
    if not raw.startswith("{"):
        m = re.search(r'\{.*\}', raw, flags=re.S)
        if not m:
            raise AnalyzerError("The analyzer response did not contain JSON.")
        raw = m.group(0)

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise AnalyzerError(f"The analyzer returned malformed JSON: {e.msg}") from e
    if not isinstance(data, dict):
        raise AnalyzerError("The analyzer returned an unexpected response.")

    for key in REQUIRED_FIELDS:
        if data.get(key) is None or data.get(key) == "":
            raise AnalyzerError(f"The field '{key}' could not be found on the receipt.")

    try:
        return ReceiptCandidate.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        where = ".".join(str(p) for p in first["loc"])
        raise AnalyzerError(f"The analyzer returned invalid data ({where}: {first['msg']}).") from e


async def analyze_receipt(image_bytes: bytes, api_key: str) -> ReceiptCandidate:
    """
    Extract receipt fields from an image with Claude Vision.
    Raises AnalyzerError for every failure — the caller shows one message and
    lets the user try again.
    """
    if not api_key:
        raise AnalyzerError("The analyzer API key is not configured.")

    vision_bytes, media_type = _prepare_image_for_vision(image_bytes)
    if media_type == "application/pdf":
        raise AnalyzerError("PDF files cannot be analyzed — upload a photo instead.")

    b64 = base64.standard_b64encode(vision_bytes).decode()
    logger.info("Sending %d KB b64 (%s) to Claude Vision", len(b64) // 1024, media_type)

    try:
        raw = await _call_claude(api_key, b64, media_type)
    except anthropic.APIError as e:
        logger.warning("Claude Vision call failed: %s", e)
        raise AnalyzerError(f"The AI service could not process the receipt: {e}") from e

    candidate = parse_analyzer_response(raw)
    logger.info(
        "Analyzed receipt from %s on %s: total %.2f, %d line item(s)",
        candidate.supplier_name, candidate.date, candidate.total_amount,
        len(candidate.line_items or []),
    )
    return candidate
