"""
models.py - Data models for the expense ledger pipeline.

Every stage communicates through these models:

    extract.py    ->  list[LineItem]
    reconcile.py  ->  AppendResult      (LineItem -> Stored Row)
    reader.py     ->  list[Transaction] (Stored Row -> LineItem)
    insights.py   ->  ChatReply, ChatEntry, SpendingSummary

Schema relationships:
    LineItem    --grouped by (merchant, date)--> Transaction
    ChatTurn    --used by--> insights.ask (conversation history)
    ChartSpec   --used by--> ChatReply.chart

Field descriptions double as documentation for the API schema.
"""

from __future__ import annotations

from collections import Counter
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

Role = Literal["user", "assistant"]


class LineItem(BaseModel):
    """One purchased item as extracted from a receipt or description.

    A LineItem is transient: the extraction engine creates it and the append
    engine consumes it in the same flow. Items that share `(merchant, date)`
    belong to the same Transaction.
    """

    merchant: str = Field(
        ...,
        min_length=1,
        description="Store or merchant name, e.g. 'Trader Joe's'.",
    )
    date: str = Field(
        ...,
        min_length=1,
        description=(
            "Purchase date. ISO 8601 (YYYY-MM-DD) for extracted items; read-back "
            "items carry ISO when the stored value is recognized, else the raw text."
        ),
    )
    category: str = Field(
        default="",
        description="Spending category, e.g. 'Groceries', 'Dining', 'Transport'.",
    )
    item: str = Field(
        ...,
        min_length=1,
        description="Item name or short description.",
    )
    cost: float = Field(
        ...,
        ge=0,
        description="Numeric cost of this item. Never a currency-formatted string.",
    )

    @field_validator("merchant", "date", "category", "item", mode="before")
    @classmethod
    def _strip_text(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip()
        return value

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "merchant": "Trader Joe's",
                    "date": "2026-01-14",
                    "category": "Groceries",
                    "item": "Bananas",
                    "cost": 1.29,
                }
            ]
        }
    )


class Transaction(BaseModel):
    """A group of line items that share merchant and date.

    In the spreadsheet a Transaction is a contiguous row span whose Merchant
    and Date cells are merged. On read it is rebuilt by carry-forward parsing.
    """

    merchant: str
    date: str
    items: list[LineItem] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total(self) -> float:
        """Sum of item costs, rounded to cents."""
        return round(sum(item.cost for item in self.items), 2)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def item_count(self) -> int:
        return len(self.items)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def category(self) -> str:
        """Most common item category; earliest seen wins ties."""
        counts = Counter(item.category for item in self.items if item.category)
        if not counts:
            return ""
        return counts.most_common(1)[0][0]


class ImageInput(BaseModel):
    """Raw image bytes supplied for extraction."""

    data: bytes
    mime_type: str = "image/jpeg"
    filename: Optional[str] = None


class ChatTurn(BaseModel):
    """One prior turn of the Q&A conversation."""

    role: Role
    content: str


class ChatEntry(BaseModel):
    """One persisted row of the Chat History table."""

    role: Role
    message: str = Field(..., min_length=1)
    timestamp: str = Field(..., description="ISO 8601 datetime (UTC).")

    def as_row(self) -> list[str]:
        return [self.role, self.message, self.timestamp]


class ChartPoint(BaseModel):
    name: str
    value: float


class ChartSpec(BaseModel):
    """Chart-ready data the client can render directly."""

    type: Literal["bar", "line"]
    data: list[ChartPoint] = Field(default_factory=list)


class ChatReply(BaseModel):
    """Structured answer from the Insight Q&A engine."""

    model_config = ConfigDict(populate_by_name=True)

    content: str = Field(default="", description="Markdown answer text.")
    chart: Optional[ChartSpec] = None
    suggested_prompts: Optional[list[str]] = Field(
        default=None,
        alias="suggestedPrompts",
        description="Three or four follow-up questions.",
    )


class AppendResult(BaseModel):
    """Outcome of one append call."""

    rows_added: int = Field(default=0, serialization_alias="rowsAdded")
    transactions_added: int = Field(default=0, serialization_alias="transactionsAdded")
    merged_groups: int = Field(default=0, serialization_alias="mergedGroups")
    warnings: list[str] = Field(
        default_factory=list,
        description="Non-fatal conditions, e.g. merges that could not be applied.",
    )


class InitializeResult(BaseModel):
    spreadsheet_id: str = Field(serialization_alias="spreadsheetId")
    transactions_table_id: int = Field(serialization_alias="transactionsSheetId")
    chat_history_table_id: int = Field(serialization_alias="chatHistorySheetId")


class SummaryBucket(BaseModel):
    name: str
    value: float


class SpendingSummary(BaseModel):
    """Totals by category and by month over read-back transactions."""

    total: float = 0.0
    transaction_count: int = Field(default=0, serialization_alias="transactionCount")
    by_category: list[SummaryBucket] = Field(default_factory=list, serialization_alias="byCategory")
    by_month: list[SummaryBucket] = Field(default_factory=list, serialization_alias="byMonth")
