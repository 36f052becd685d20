"""
insights.py - Natural-language Q&A over the stored transactions.

Components:
    summarize_spending(transactions)   pandas totals by category and month
    ask(...)                           context + history + question -> ChatReply
    append_chat_entry(...)             persist one message to Chat History

Transaction context is optional: if the spreadsheet cannot be read the
question is still answered, just without data. Every provider or schema
failure is reported as LLMUnavailable.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

import pandas as pd
from pydantic import ValidationError

from errors import (
    AppendFailed,
    ChatHistoryTableNotFound,
    ExpenseError,
    InvalidStoreUrl,
    LLMUnavailable,
    MissingField,
    TableNotFound,
)
from llm_client import CompletionClient, CompletionError, json_schema_format
from logging_config import get_logger, graceful
from models import ChatEntry, ChatReply, ChatTurn, SpendingSummary, SummaryBucket, Transaction
from reader import read_transactions
from sheets_store import CHAT_HISTORY_TABLE, TabularStore, resolve_store_id

logger = get_logger(__name__)

DEFAULT_REPLY = "I'm sorry, I couldn't generate a response."

CHAT_TEMPERATURE = 0.7

CHAT_RANGE = "A:C"

SYSTEM_PROMPT = (
    "You are a helpful financial assistant that analyzes spending data. You help users "
    "understand their spending patterns, find savings opportunities, and answer questions "
    "about their transactions.\n\n"
    "Be concise, helpful, and data-driven. Use the transaction data to provide specific "
    "insights. Write `content` in markdown. When a comparison or trend is easier to see "
    "as a chart, include `chart` with a bar or line series; otherwise set it to null. "
    "Offer 3-4 short follow-up questions in `suggestedPrompts`, or null."
)

CHAT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "content": {"type": "string"},
        "chart": {
            "type": ["object", "null"],
            "properties": {
                "type": {"type": "string", "enum": ["bar", "line"]},
                "data": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "name": {"type": "string"},
                            "value": {"type": "number"},
                        },
                        "required": ["name", "value"],
                        "additionalProperties": False,
                    },
                },
            },
            "required": ["type", "data"],
            "additionalProperties": False,
        },
        "suggestedPrompts": {
            "type": ["array", "null"],
            "items": {"type": "string"},
        },
    },
    "required": ["content", "chart", "suggestedPrompts"],
    "additionalProperties": False,
}

CHAT_RESPONSE_FORMAT = json_schema_format("chat_response", CHAT_SCHEMA)


def summarize_spending(transactions: Sequence[Transaction]) -> SpendingSummary:
    """Total spend overall, by category (largest first) and by month (oldest first)."""
    records = [
        {"category": item.category or "Other", "cost": item.cost, "date": txn.date}
        for txn in transactions
        for item in txn.items
    ]
    if not records:
        return SpendingSummary(transaction_count=len(transactions))

    frame = pd.DataFrame.from_records(records)
    by_category = (
        frame.groupby("category", sort=False)["cost"].sum().round(2).sort_values(ascending=False, kind="stable")
    )

    frame["month"] = pd.to_datetime(frame["date"], format="%Y-%m-%d", errors="coerce").dt.strftime("%Y-%m")
    by_month = frame.dropna(subset=["month"]).groupby("month")["cost"].sum().round(2).sort_index()

    return SpendingSummary(
        total=round(float(frame["cost"].sum()), 2),
        transaction_count=len(transactions),
        by_category=[SummaryBucket(name=str(name), value=float(value)) for name, value in by_category.items()],
        by_month=[SummaryBucket(name=str(name), value=float(value)) for name, value in by_month.items()],
    )


@graceful(list)
def _load_context(store: TabularStore, sheet_url: str) -> list[Transaction]:
    return read_transactions(store, sheet_url)


def build_context_message(transactions: Sequence[Transaction], row_limit: int) -> Optional[dict[str, str]]:
    """User turn carrying up to `row_limit` items plus a spending summary."""
    items = [item.model_dump() for txn in transactions for item in txn.items]
    if not items:
        return None

    shown = items[:row_limit]
    note = f"\n\n(Showing first {len(shown)} of {len(items)} transactions)" if len(items) > len(shown) else ""
    summary = summarize_spending(transactions).model_dump(by_alias=True)
    return {
        "role": "user",
        "content": (
            f"Here is the user's transaction data ({len(items)} items):\n\n"
            f"{json.dumps(shown, indent=2)}{note}\n\n"
            f"Spending summary across all transactions:\n{json.dumps(summary, indent=2)}\n\n"
            "Now answer the user's question about their spending."
        ),
    }


def build_ask_messages(
    question: str,
    transactions: Sequence[Transaction],
    history: Sequence[ChatTurn],
    *,
    row_limit: int = 100,
    history_limit: int = 10,
) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = [{"role": "system", "content": SYSTEM_PROMPT}]

    context = build_context_message(transactions, row_limit)
    if context is not None:
        messages.append(context)

    recent = list(history)[-history_limit:] if history_limit > 0 else []
    messages.extend({"role": turn.role, "content": turn.content} for turn in recent)

    messages.append({"role": "user", "content": question})
    return messages


def ask(
    store: TabularStore,
    sheet_url: str,
    question: str,
    history: Optional[Sequence[ChatTurn]],
    client: CompletionClient,
    *,
    model: str = "gpt-4o-2024-08-06",
    row_limit: int = 100,
    history_limit: int = 10,
) -> ChatReply:
    """Answer a spending question using the spreadsheet as context.

    Raises:
        MissingField: blank question.
        InvalidStoreUrl: URL does not name a spreadsheet.
        LLMUnavailable: provider failure or a reply that does not fit the schema.
    """
    question = (question or "").strip()
    if not question:
        raise MissingField("Question is required")
    if not resolve_store_id(sheet_url):
        raise InvalidStoreUrl()

    transactions = _load_context(store, sheet_url)
    messages = build_ask_messages(
        question,
        transactions,
        history or [],
        row_limit=row_limit,
        history_limit=history_limit,
    )
    logger.info(
        "ask_started | transactions=%s | history_turns=%s | messages=%s",
        len(transactions),
        len(history or []),
        len(messages),
    )

    try:
        payload = client.complete(messages, CHAT_RESPONSE_FORMAT, model=model, temperature=CHAT_TEMPERATURE)
        reply = ChatReply.model_validate(payload)
    except CompletionError as exc:
        logger.error("ask_failed | reason=%s", exc.reason)
        raise LLMUnavailable() from exc
    except ValidationError as exc:
        logger.error("ask_failed | reason='schema mismatch' | errors=%s", exc.error_count())
        raise LLMUnavailable() from exc

    if not reply.content.strip():
        reply.content = DEFAULT_REPLY

    logger.info(
        "ask_complete | chart=%s | suggested_prompts=%s",
        reply.chart.type if reply.chart else None,
        len(reply.suggested_prompts or []),
    )
    return reply


def append_chat_entry(
    store: TabularStore,
    sheet_url: str,
    role: str,
    message: str,
    now: Optional[datetime] = None,
) -> ChatEntry:
    """Append one message to the Chat History tab.

    Raises:
        MissingField: role is not user/assistant, or message is blank.
        InvalidStoreUrl: URL does not name a spreadsheet.
        ChatHistoryTableNotFound: the Chat History tab is missing.
        AppendFailed: any other store failure.
    """
    if role not in ("user", "assistant"):
        raise MissingField("Role must be 'user' or 'assistant'")
    if not (message or "").strip():
        raise MissingField("Message is required")

    store_id = resolve_store_id(sheet_url)
    if not store_id:
        raise InvalidStoreUrl()

    moment = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    entry = ChatEntry(
        role=role,  # type: ignore[arg-type]
        message=message,
        timestamp=moment.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
    )

    try:
        store.ensure_table(store_id, CHAT_HISTORY_TABLE, ChatHistoryTableNotFound)
    except TableNotFound:
        raise
    except ExpenseError as exc:
        logger.error("chat_append_failed | store_id=%s | error_code=%s | error=%s", store_id, exc.code, exc.message)
        raise AppendFailed("Failed to append message") from exc

    # Tab confirmed above; any write error is an append failure.
    try:
        store.append(store_id, CHAT_HISTORY_TABLE, [entry.as_row()], CHAT_RANGE)
    except ExpenseError as exc:
        logger.error("chat_append_failed | store_id=%s | error_code=%s | error=%s", store_id, exc.code, exc.message)
        raise AppendFailed("Failed to append message") from exc

    logger.info("chat_appended | store_id=%s | role=%s | chars=%s", store_id, role, len(message))
    return entry
