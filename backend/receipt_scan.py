import base64
import json
import logging
import re
import urllib.error
import urllib.request
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

import config

logger = logging.getLogger(__name__)

RECEIPT_PROMPT = (
    "Analyze this receipt image and extract the following information in JSON format:\n"
    "1. items: an array of objects, each containing:\n"
    "   - name: string (item name, keep it concise)\n"
    "   - price: number (price per unit)\n"
    "   - quantity: number (default to 1 if not specified)\n"
    "2. serviceTax: number (service charge percentage, if found, else 0)\n"
    "3. taxProfiles: an array of taxes printed on the receipt, each containing:\n"
    "   - name: string (e.g. \"GST\", \"VAT\")\n"
    "   - rate: number (percentage)\n"
    "   - isGlobal: boolean (true if it applies to every item)\n"
    "   - isDouble: boolean (true when two equal components such as CGST and SGST are charged)\n"
    "4. currency: string (e.g., \"USD\", \"INR\", \"EUR\", \"GBP\", \"JPY\")\n"
    "Ignore totals, subtotals, and balance due lines. Focus on individual line items.\n"
    "If the image is not a receipt or unreadable, return {\"error\": \"<reason>\"}.\n"
    "Return ONLY valid JSON, no markdown formatting."
)

AMOUNT_PATTERN = re.compile(r"-?\d+(?:\.\d+)?")
CURRENCY_CODE_PATTERN = re.compile(r"^[A-Z]{3}$")


class ReceiptScanError(Exception):
    def __init__(self, message: str, retryable: bool = True, not_a_receipt: bool = False):
        super().__init__(message)
        self.retryable = retryable
        self.not_a_receipt = not_a_receipt


class ScannedItem(BaseModel):
    name: str = Field(min_length=1)
    price: float = Field(ge=0)
    quantity: int = Field(default=1, ge=1)


class ScannedTaxProfile(BaseModel):
    name: str = Field(min_length=1)
    rate: float = Field(ge=0)
    is_global: bool = False
    is_double: bool = False


class ReviewNote(BaseModel):
    entry: str
    reason: str


class ScannedReceipt(BaseModel):
    items: List[ScannedItem] = Field(default_factory=list)
    service_tax: float = Field(default=0, ge=0)
    tax_profiles: List[ScannedTaxProfile] = Field(default_factory=list)
    currency: str = config.DEFAULT_CURRENCY
    needs_review: List[ReviewNote] = Field(default_factory=list)


def extract_json_block(text: str) -> Optional[Dict[str, Any]]:
    text = text.strip()
    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?", "", text).strip()
        text = re.sub(r"```$", "", text).strip()
    try:
        parsed = json.loads(text)
        return parsed if isinstance(parsed, dict) else None
    except ValueError:
        pass

    match = re.search(r"\{[\s\S]*\}", text)
    if not match:
        return None
    try:
        parsed = json.loads(match.group(0))
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def parse_amount(value: Any) -> Optional[float]:
    # Model output may carry symbols or thousands separators: "₹1,250.00"
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        match = AMOUNT_PATTERN.search(value.replace(",", ""))
        if match:
            return float(match.group(0))
    return None


def parse_flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "yes", "1"}
    return bool(value)


def pick(entry: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in entry:
            return entry[key]
    return None


def normalize_scan_payload(data: Dict[str, Any]) -> ScannedReceipt:
    needs_review: List[ReviewNote] = []

    items: List[ScannedItem] = []
    raw_items = data.get("items")
    if not isinstance(raw_items, list):
        raw_items = []
    for entry in raw_items:
        if not isinstance(entry, dict):
            needs_review.append(ReviewNote(entry=str(entry), reason="malformed_item"))
            continue
        name = str(entry.get("name") or "").strip()
        label = name or json.dumps(entry, default=str)
        if not name:
            needs_review.append(ReviewNote(entry=label, reason="missing_name"))
            continue
        price = parse_amount(pick(entry, "price", "unit_price", "unitPrice"))
        if price is None or price < 0:
            needs_review.append(ReviewNote(entry=label, reason="invalid_price"))
            continue
        raw_qty = pick(entry, "quantity", "qty")
        quantity = 1.0 if raw_qty in (None, "") else parse_amount(raw_qty)
        if quantity is None or quantity < 1 or not float(quantity).is_integer():
            needs_review.append(ReviewNote(entry=label, reason="invalid_quantity"))
            continue
        items.append(ScannedItem(name=name, price=round(price, 2), quantity=int(quantity)))

    profiles: List[ScannedTaxProfile] = []
    raw_profiles = pick(data, "taxProfiles", "tax_profiles")
    if not isinstance(raw_profiles, list):
        raw_profiles = []
    seen_global = False
    for entry in raw_profiles:
        if not isinstance(entry, dict):
            needs_review.append(ReviewNote(entry=str(entry), reason="malformed_tax_profile"))
            continue
        name = str(entry.get("name") or "").strip()
        rate = parse_amount(entry.get("rate"))
        if not name or rate is None or rate < 0:
            needs_review.append(ReviewNote(entry=name or json.dumps(entry, default=str), reason="invalid_tax_profile"))
            continue
        is_global = parse_flag(pick(entry, "isGlobal", "is_global"))
        if is_global and seen_global:
            needs_review.append(ReviewNote(entry=name, reason="extra_global_profile"))
            is_global = False
        seen_global = seen_global or is_global
        profiles.append(
            ScannedTaxProfile(
                name=name,
                rate=rate,
                is_global=is_global,
                is_double=parse_flag(pick(entry, "isDouble", "is_double")),
            )
        )

    service_tax = parse_amount(pick(data, "serviceTax", "service_tax"))
    if service_tax is None or service_tax < 0:
        if service_tax is not None:
            needs_review.append(ReviewNote(entry=str(service_tax), reason="invalid_service_tax"))
        service_tax = 0.0

    currency = str(data.get("currency") or "").strip().upper()
    if not CURRENCY_CODE_PATTERN.match(currency):
        currency = config.DEFAULT_CURRENCY

    return ScannedReceipt(
        items=items,
        service_tax=service_tax,
        tax_profiles=profiles,
        currency=currency,
        needs_review=needs_review,
    )


def call_gemini(image_data: bytes, mime_type: str = "image/jpeg") -> str:
    if not config.GEMINI_API_KEY:
        raise ReceiptScanError("GEMINI_API_KEY is not set", retryable=False)

    payload = {
        "contents": [
            {
                "parts": [
                    {"text": RECEIPT_PROMPT},
                    {
                        "inline_data": {
                            "mime_type": mime_type,
                            "data": base64.b64encode(image_data).decode("utf-8"),
                        }
                    },
                ]
            }
        ],
        "generationConfig": {"responseMimeType": "application/json"},
    }
    url = (
        f"https://generativelanguage.googleapis.com/v1beta/models/{config.GEMINI_MODEL}:generateContent"
        f"?key={config.GEMINI_API_KEY}"
    )
    req = urllib.request.Request(
        url=url,
        data=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(req, timeout=config.GEMINI_TIMEOUT_SEC) as response:
            body = response.read().decode("utf-8")
    except urllib.error.HTTPError as ex:
        logger.warning("Gemini request failed with HTTP %s", ex.code)
        raise ReceiptScanError(f"Receipt model returned HTTP {ex.code}") from ex
    except (urllib.error.URLError, TimeoutError) as ex:
        logger.warning("Gemini request failed: %s", ex)
        raise ReceiptScanError("Receipt model is unreachable") from ex

    try:
        parsed = json.loads(body)
        parts = parsed["candidates"][0]["content"]["parts"]
        return "".join(part.get("text", "") for part in parts)
    except (ValueError, KeyError, IndexError, TypeError) as ex:
        logger.warning("Unexpected Gemini response shape")
        raise ReceiptScanError("Receipt model returned an unexpected response") from ex


def scan_receipt_image(image_data: bytes, mime_type: str = "image/jpeg") -> ScannedReceipt:
    text = call_gemini(image_data, mime_type)
    data = extract_json_block(text)
    if data is None:
        logger.warning("Failed to parse receipt model output: %.200s", text)
        raise ReceiptScanError("Failed to parse receipt data")
    if data.get("error"):
        raise ReceiptScanError(str(data["error"]), retryable=False, not_a_receipt=True)
    receipt = normalize_scan_payload(data)
    logger.info(
        "Scanned receipt: %d items, %d tax profiles, %d entries need review",
        len(receipt.items),
        len(receipt.tax_profiles),
        len(receipt.needs_review),
    )
    return receipt
