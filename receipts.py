import json
import logging
import re
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Optional, Protocol

from rapidfuzz.distance import Levenshtein

from errors import ExtractionFailure, TransientExternalFailure, ValidationFailed
from models import DEFAULT_EXPENSE_CATEGORY, EXPENSE_CATEGORIES
from schemas import ReceiptData


logger = logging.getLogger(__name__)

MAX_RECEIPT_BYTES = 5 * 1024 * 1024
_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)


class ReceiptModel(Protocol):
    def extract_receipt(self, image_bytes: bytes, mime_type: str) -> str: ...


def strip_fences(raw: str) -> str:
    return _FENCE_RE.sub("", raw or "").strip()


def coerce_category(value: object) -> str:
    name = str(value or "").strip().lower()
    if not name:
        return DEFAULT_EXPENSE_CATEGORY
    if name in EXPENSE_CATEGORIES:
        return name
    best_distance: Optional[int] = None
    best: list[str] = []
    for category in EXPENSE_CATEGORIES:
        dist = int(Levenshtein.distance(name, category))
        if best_distance is None or dist < best_distance:
            best_distance = dist
            best = [category]
        elif dist == best_distance:
            best.append(category)
    if best_distance is not None and best_distance <= 1 and len(best) == 1:
        return best[0]
    return DEFAULT_EXPENSE_CATEGORY


def coerce_amount(value: object) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ExtractionFailure(f"Unreadable amount: {value!r}")
    try:
        amount = Decimal(str(value).strip().replace(",", ""))
    except InvalidOperation as exc:
        raise ExtractionFailure(f"Unreadable amount: {value!r}") from exc
    if not amount.is_finite():
        raise ExtractionFailure(f"Unreadable amount: {value!r}")
    return abs(amount).quantize(Decimal("0.01"))


def coerce_date(value: object) -> Optional[date]:
    if value is None or value == "":
        return None
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError as exc:
        raise ExtractionFailure(f"Unreadable date: {value!r}") from exc


def parse_receipt_text(raw: str) -> Optional[ReceiptData]:
    """Turn model output into receipt data; ``None`` means no receipt found."""
    text = strip_fences(raw)
    if not text:
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        logger.info("receipt_unparseable_response")
        return None
    if not isinstance(payload, dict):
        raise ExtractionFailure("Receipt response is not a JSON object")
    if not payload:
        return None
    return ReceiptData(
        amount=coerce_amount(payload.get("amount")),
        date=coerce_date(payload.get("date")),
        description=str(payload.get("description") or ""),
        merchant_name=str(payload.get("merchantName") or ""),
        category=coerce_category(payload.get("category")),
    )


class ReceiptScanner:
    def __init__(self, model: ReceiptModel) -> None:
        self.model = model

    def extract(
        self, image_bytes: bytes, mime_type: Optional[str] = None
    ) -> Optional[ReceiptData]:
        if not image_bytes:
            raise ValidationFailed("Receipt image is empty")
        if len(image_bytes) > MAX_RECEIPT_BYTES:
            raise ValidationFailed("Receipt image must be 5MB or smaller")
        mime_type = mime_type or "image/jpeg"
        if not mime_type.startswith("image/"):
            raise ValidationFailed(f"Unsupported receipt type: {mime_type}")

        try:
            raw = self.model.extract_receipt(image_bytes, mime_type)
        except TransientExternalFailure as exc:
            raise ExtractionFailure("Receipt scan timed out or failed") from exc
        return parse_receipt_text(raw)
