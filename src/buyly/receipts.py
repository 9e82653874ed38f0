"""Receipt images: upload URLs, deletion and AI extraction.

Images live in an S3-compatible bucket (see ``buyly.s3``). Extraction sends
the image to a Gemini vision model and asks for strict JSON back.

Required environment variables:
    GOOGLE_API_KEY – Gemini API key (used by google-genai)
"""

import json
import math
import re
import time
import uuid
from typing import Any, Dict, List, Optional
from urllib.parse import unquote, urlparse

import google.genai as genai
import requests
from google.genai.types import GenerateContentConfig, Part
from pydantic import BaseModel

from buyly import s3
from buyly.config import load_settings, require_env
from buyly.errors import UpstreamError
from buyly.log import get_logger
from buyly.models import DeleteReceiptRequest, ImageRequest, UploadReceiptRequest, parse
from buyly.utils import iso_timestamp

logger = get_logger(__name__)

_FENCE_RE = re.compile(r"```json\n?|\n?```")

RECEIPT_INSTRUCTIONS = """You are a receipt data extraction expert. Extract structured data from receipt images.

Rules:
- Extract ALL items from the receipt
- Use numeric values only for prices (no currency symbols)
- Infer reasonable categories: "groceries", "produce", "dairy", "meat", "beverages", "snacks", "household", "other"
- If date is unclear, use current date
- Set confidence between 0.0-1.0 based on image quality
- Return ONLY the JSON object, no additional text"""

PRICE_TAG_INSTRUCTIONS = """You are a price tag parser. Extract only the price and product name from the price tag in the provided image.

Rules:
1. Extract the product name and price from the image.
2. Output STRICT JSON in this schema: [{"i": "Item Name", "p": 0.00}].
3. If no price is found, use 0 for the price.
4. If no product name is found, use "unknown" for the product.
5. Return ONLY the JSON, no additional text or markdown formatting."""


class ReceiptLine(BaseModel):
    name: str
    quantity: float
    price: float
    category: Optional[str] = None


class ExtractedReceipt(BaseModel):
    merchant: str
    date: str
    items: List[ReceiptLine]
    subtotal: float
    tax: float
    total: float
    currency: str
    confidence: float


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


def create_upload_url(request: Optional[Dict[str, Any]] = None, settings: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Presigned PUT URL for a new receipt image and the URL it will be served at."""
    settings = settings or load_settings()
    req = parse(UploadReceiptRequest, request or {})
    expires_in = settings["receipts"]["upload_expires_in"]

    filename = f"receipt-{int(time.time() * 1000)}-{uuid.uuid4()}.{req.extension}"
    logger.info("Generating presigned URL for: %s", filename)

    upload_url = s3.presigned_put_url(filename, req.content_type, expires_in)
    (public_base,) = require_env("RECEIPTS_PUBLIC_BASE")

    return {
        "success": True,
        "uploadUrl": upload_url,
        "publicUrl": f"{public_base.rstrip('/')}/{filename}",
        "filename": filename,
        "expiresIn": expires_in,
        "instructions": "Use PUT request to uploadUrl with the file binary data",
    }


def object_key(filename: str) -> str:
    """Bucket key for a plain file name or a full public URL."""
    parsed = urlparse(filename)
    if parsed.scheme and parsed.netloc:
        return unquote(parsed.path[1:])
    return filename


def delete_receipt(request: Dict[str, Any]) -> Dict[str, Any]:
    req = parse(DeleteReceiptRequest, request)
    key = object_key(req.filename)
    logger.info("Deleting file: %s", key)
    s3.delete_object(key)
    return {"success": True, "message": "File deleted successfully", "filename": req.filename}


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


def _image_part(image_url: str) -> Part:
    try:
        response = requests.get(image_url, timeout=30)
        response.raise_for_status()
    except requests.RequestException as e:
        raise UpstreamError(f"Failed to download image: {e}")
    mime_type = response.headers.get("Content-Type", "image/jpeg").split(";")[0]
    return Part.from_bytes(data=response.content, mime_type=mime_type)


def _parse_json(text: Optional[str]) -> Any:
    if not text:
        raise UpstreamError("No data extracted from image")
    cleaned = _FENCE_RE.sub("", text).strip()
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        logger.error("Failed to parse model response: %s", text)
        raise UpstreamError("Failed to parse extracted data")


def extract_receipt(
    request: Dict[str, Any],
    client: Optional[genai.Client] = None,
    settings: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Extract merchant, line items and totals from a receipt image.

    Raises:
        ValidationError: if ``imageUrl`` is missing or blank
        ConfigurationError: if GOOGLE_API_KEY is not set
        UpstreamError: if the image can't be fetched or the model output
            isn't JSON
    """
    settings = settings or load_settings()
    req = parse(ImageRequest, request)
    require_env("GOOGLE_API_KEY")

    logger.info("Processing receipt extraction for user: %s", req.user_id or "anonymous")
    logger.info("Image URL: %s", req.image_url)

    client = client or genai.Client()
    response = client.models.generate_content(
        model=settings["receipts"]["model"],
        contents=[_image_part(req.image_url), "Extract all data from this receipt image. Return only valid JSON."],
        config=GenerateContentConfig(
            system_instruction=RECEIPT_INSTRUCTIONS,
            temperature=0.2,
            max_output_tokens=2000,
            response_mime_type="application/json",
            response_schema=ExtractedReceipt,
        ),
    )
    data = _parse_json(response.text)
    if not isinstance(data, dict):
        logger.error("Expected a JSON object from the model, got: %s", response.text)
        raise UpstreamError("Failed to parse extracted data")

    items = data.get("items")
    logger.info(
        "Merchant: %s, Items: %d, Total: %s",
        data.get("merchant"),
        len(items) if isinstance(items, list) else 0,
        data.get("total"),
    )

    usage = getattr(response, "usage_metadata", None)
    return {
        "success": True,
        "data": data,
        "metadata": {
            "imageUrl": req.image_url,
            "userId": req.user_id,
            "extractedAt": iso_timestamp(),
            "tokensUsed": (usage.total_token_count if usage else None) or 0,
        },
    }


def _valid_price(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
        and value >= 0
    )


def validate_price_tag_result(data: Any) -> Dict[str, Any]:
    """Coerce model output into ``{"i": name, "p": price}``.

    A list result uses its first element. An invalid name becomes
    ``"unknown"`` and an invalid price becomes 0.
    """
    candidate = data
    if isinstance(candidate, list):
        if not candidate:
            logger.warning("Price tag result array is empty, defaulting to unknown/0")
            return {"i": "unknown", "p": 0}
        candidate = candidate[0]

    if not isinstance(candidate, dict):
        logger.warning("Price tag result is not an object, defaulting to unknown/0")
        return {"i": "unknown", "p": 0}

    name = candidate.get("i")
    price = candidate.get("p")
    has_name = isinstance(name, str) and bool(name.strip())
    has_price = _valid_price(price)

    if not has_name and not has_price:
        logger.warning("Price tag result has both invalid name and price, using 'unknown' and 0")
    elif not has_name:
        logger.warning("Price tag result has valid price but invalid name, using 'unknown'")
    elif not has_price:
        logger.warning("Price tag result for product %r has invalid price (%r), using 0", name.strip(), price)

    return {
        "i": name.strip() if has_name else "unknown",
        "p": price if has_price else 0,
    }


def extract_price_tag(
    request: Dict[str, Any],
    client: Optional[genai.Client] = None,
    settings: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Read a product name and price off a shelf price tag image."""
    settings = settings or load_settings()
    req = parse(ImageRequest, request)
    require_env("GOOGLE_API_KEY")

    started = time.monotonic()
    logger.info("Processing price tag extraction for user: %s", req.user_id or "anonymous")

    client = client or genai.Client()
    response = client.models.generate_content(
        model=settings["receipts"]["price_tag_model"],
        contents=[PRICE_TAG_INSTRUCTIONS, _image_part(req.image_url)],
        config=GenerateContentConfig(
            temperature=0.1,
            max_output_tokens=200,
            response_mime_type="application/json",
        ),
    )
    result = validate_price_tag_result(_parse_json(response.text))

    elapsed_ms = round((time.monotonic() - started) * 1000)
    logger.info("Extracted price: %s, product: %s in %dms", result["p"], result["i"], elapsed_ms)
    return result
