"""
extract.py - Line-item extraction from receipt images and free text.

This module turns whatever the user captured (zero or more receipt photos,
an optional free-text description) into a list of validated `LineItem`s.

Pipeline role:
- It builds the prompt and the strict output schema for the completion call.
- It owns the validation/normalization gate between arbitrary model output
  and the rest of the pipeline.
- Downstream modules never see model output; they only consume `LineItem`s.

Error philosophy:
    Every failure maps to one stable category with a fixed message:
        no image and no text          -> NoInputProvided
        unusable image bytes / type   -> ImageUploadFailed (before any model call)
        provider failure / bad shape  -> ExtractionFailed ("OpenAI failed to respond")
        nothing survives normalizing  -> NoReceiptDetected
"""

from __future__ import annotations

import base64
from datetime import date
from typing import Any, Optional, Sequence

from errors import ExtractionFailed, ImageUploadFailed, NoInputProvided, NoReceiptDetected
from llm_client import CompletionClient, CompletionError, json_schema_format
from logging_config import get_logger
from models import ImageInput, LineItem
from normalize import normalize_cost, normalize_sheet_date, normalize_text

logger = get_logger(__name__)

# -- Configuration --

CATEGORIES = (
    "Groceries",
    "Dining",
    "Transport",
    "Entertainment",
    "Health",
    "Home",
    "Pet supplies",
    "Donations",
)

DEFAULT_CATEGORY = "Other"

SUPPORTED_IMAGE_TYPES = {
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/webp",
    "image/gif",
    "image/heic",
    "image/heif",
}

# Maximum decoded image size accepted for inline upload
MAX_IMAGE_BYTES = 20 * 1024 * 1024  # 20 MB

EXTRACTION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "items": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "merchant": {"type": "string"},
                    "date": {"type": "string", "pattern": r"^\d{4}-\d{2}-\d{2}$"},
                    "category": {"type": "string"},
                    "item": {"type": "string"},
                    "cost": {"type": "number"},
                },
                "required": ["merchant", "date", "category", "item", "cost"],
                "additionalProperties": False,
            },
        }
    },
    "required": ["items"],
    "additionalProperties": False,
}

EXTRACTION_RESPONSE_FORMAT = json_schema_format("transaction_extraction", EXTRACTION_SCHEMA)


def build_system_prompt(today: date) -> str:
    categories = ", ".join(CATEGORIES)
    return (
        "You are a financial assistant that extracts itemized purchase data from receipts "
        "and purchase descriptions.\n\n"
        f"Today's date is {today.isoformat()}. If the receipt or description has no date, "
        "use today's date.\n\n"
        "Return one entry per purchased item with:\n"
        "- merchant: the store or business name, identical for every item from the same receipt\n"
        "- date: the purchase date formatted as YYYY-MM-DD\n"
        f"- category: one of {categories}; choose the closest fit and reuse the same name "
        "for similar items\n"
        "- item: a short, readable description of the item\n"
        "- cost: the item's price as a number without currency symbols\n\n"
        "Do not include subtotals, taxes or totals as separate items unless they are the only "
        "amounts available. Output JSON only, following the provided schema."
    )


def encode_image(image: ImageInput) -> dict[str, Any]:
    """Return an inline `image_url` content part for one image.

    Raises:
        ImageUploadFailed: empty payload, unsupported MIME type or oversize image.
    """
    mime_type = normalize_text(image.mime_type).lower() or "image/jpeg"
    if not image.data:
        logger.warning("image_rejected | filename=%r | reason='empty payload'", image.filename)
        raise ImageUploadFailed("Uploaded image is empty")
    if mime_type not in SUPPORTED_IMAGE_TYPES:
        logger.warning("image_rejected | filename=%r | mime_type=%s | reason='unsupported type'", image.filename, mime_type)
        raise ImageUploadFailed(f"Unsupported image type: {mime_type}")
    if len(image.data) > MAX_IMAGE_BYTES:
        logger.warning(
            "image_rejected | filename=%r | size_bytes=%s | limit=%s | reason='too large'",
            image.filename,
            len(image.data),
            MAX_IMAGE_BYTES,
        )
        raise ImageUploadFailed("Uploaded image is too large")

    encoded = base64.b64encode(image.data).decode("ascii")
    return {
        "type": "image_url",
        "image_url": {"url": f"data:{mime_type};base64,{encoded}", "detail": "high"},
    }


def build_user_content(images: Sequence[ImageInput], text: str) -> Any:
    """Build the user turn: instruction text plus one inline part per image."""
    if not images:
        return f"Extract transaction data from this description: {text}"

    noun = "image" if len(images) == 1 else "images"
    if text:
        instruction = f"Extract transaction data from this {noun} and use the following additional context: {text}"
    else:
        instruction = f"Extract transaction data from this {noun}."

    parts: list[dict[str, Any]] = [{"type": "text", "text": instruction}]
    parts.extend(encode_image(image) for image in images)
    return parts


def build_messages(images: Sequence[ImageInput], text: str, today: date) -> list[dict[str, Any]]:
    return [
        {"role": "system", "content": build_system_prompt(today)},
        {"role": "user", "content": build_user_content(images, text)},
    ]


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def normalize_item(raw: Any, default_date: str) -> Optional[LineItem]:
    """Normalize one model item. Returns None when the item must be dropped."""
    if not isinstance(raw, dict):
        logger.debug("item_dropped | reason='not an object' | type=%s", type(raw).__name__)
        return None

    merchant = normalize_text(raw.get("merchant"))
    item = normalize_text(raw.get("item"))
    if not merchant or not item or _is_missing(raw.get("cost")):
        logger.debug(
            "item_dropped | reason='missing required field' | merchant=%r | item=%r | has_cost=%s",
            merchant,
            item,
            not _is_missing(raw.get("cost")),
        )
        return None

    item_date = normalize_sheet_date(raw.get("date"))
    if not item_date:
        if not _is_missing(raw.get("date")):
            logger.debug("item_date_defaulted | raw=%r | default=%s", raw.get("date"), default_date)
        item_date = default_date

    return LineItem(
        merchant=merchant,
        date=item_date,
        category=normalize_text(raw.get("category")) or DEFAULT_CATEGORY,
        item=item,
        cost=normalize_cost(raw.get("cost")),
    )


def normalize_items(raw_items: Sequence[Any], default_date: str) -> list[LineItem]:
    """Normalize model items in order, dropping the unusable ones."""
    items: list[LineItem] = []
    for raw in raw_items:
        normalized = normalize_item(raw, default_date)
        if normalized is not None:
            items.append(normalized)
    return items


def extract_line_items(
    images: Optional[Sequence[ImageInput]],
    text: Optional[str],
    client: CompletionClient,
    *,
    vision_model: str = "gpt-4o",
    text_model: str = "gpt-4o-mini",
    today: Optional[date] = None,
) -> list[LineItem]:
    """Extract line items from receipt images and/or a text description.

    This is the public entry point of the extraction stage. Images are
    encoded before the model is called, so a bad image never costs a
    completion request.

    Args:
        images: Zero or more receipt images.
        text: Optional description or additional context.
        client: Completion capability (see llm_client.CompletionClient).
        vision_model: Model used when at least one image is present.
        text_model: Model used for text-only input.
        today: Default purchase date; the server's local date when omitted.

    Returns:
        Non-empty list of LineItem in model order.

    Raises:
        NoInputProvided, ImageUploadFailed, ExtractionFailed, NoReceiptDetected.

    Examples:
        >>> items = extract_line_items([], "Coffee at Blue Bottle for $4.50", client)
        >>> items[0].merchant, items[0].cost
        ('Blue Bottle', 4.5)
    """
    images = list(images or [])
    text = normalize_text(text)
    if not images and not text:
        raise NoInputProvided()

    today = today or date.today()
    messages = build_messages(images, text, today)
    model = vision_model if images else text_model

    logger.info(
        "extract_started | images=%s | text_chars=%s | model=%s",
        len(images),
        len(text),
        model,
    )

    try:
        payload = client.complete(messages, EXTRACTION_RESPONSE_FORMAT, model=model)
    except CompletionError as exc:
        logger.error("extract_failed | reason=%s", exc.reason)
        raise ExtractionFailed() from exc

    raw_items = payload.get("items")
    if not isinstance(raw_items, list):
        logger.error("extract_failed | reason='items missing or not a list' | keys=%s", sorted(payload))
        raise ExtractionFailed()

    items = normalize_items(raw_items, today.isoformat())
    if not items:
        logger.warning("extract_empty | raw_items=%s", len(raw_items))
        raise NoReceiptDetected()

    logger.info(
        "extract_complete | raw_items=%s | kept=%s | dropped=%s",
        len(raw_items),
        len(items),
        len(raw_items) - len(items),
    )
    return items
