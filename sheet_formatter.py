"""
sheet_formatter.py - Canonical table shape for the Transactions and Chat History tabs.

Every request built here is a full overwrite of presentation state (header
cells, number formats, borders, widths, frozen row), never an append, so the
formatter can run any number of times without touching data rows.

Public entry point:
    initialize_store(store, sheet_url) -> InitializeResult
"""

from __future__ import annotations

from typing import Any

from errors import ExpenseError, InitializationFailed, InvalidStoreUrl
from logging_config import get_logger
from models import InitializeResult
from sheets_store import CHAT_HISTORY_TABLE, TRANSACTIONS_TABLE, TabularStore, resolve_store_id

logger = get_logger(__name__)

TRANSACTION_HEADERS = ["Merchant", "Date", "Category", "Item", "Cost"]
CHAT_HISTORY_HEADERS = ["Role", "Message", "Timestamp"]

# Borders are laid down once over a fixed block so appends never need them.
BORDER_ROW_LIMIT = 2000

BORDER_COLOR = {"red": 0.8, "green": 0.8, "blue": 0.8}

DATE_PATTERN = "mmmm d, yyyy"
CURRENCY_PATTERN = '"$"#,##0.00'

TRANSACTION_WIDTHS = [140, 140, 160, 360, 110]
CHAT_HISTORY_WIDTHS = [100, 500, 180]


def _column_range(table_id: int, column: int) -> dict[str, Any]:
    return {
        "sheetId": table_id,
        "startRowIndex": 1,
        "startColumnIndex": column,
        "endColumnIndex": column + 1,
    }


def _column_format(table_id: int, column: int, fmt: dict[str, Any]) -> dict[str, Any]:
    return {
        "repeatCell": {
            "range": _column_range(table_id, column),
            "cell": {"userEnteredFormat": fmt},
            "fields": "userEnteredFormat(" + ",".join(sorted(fmt)) + ")",
        }
    }


def header_requests(table_id: int, headers: list[str]) -> list[dict[str, Any]]:
    """Overwrite row 1 with `headers`, style it, and freeze it."""
    return [
        {
            "updateCells": {
                "range": {
                    "sheetId": table_id,
                    "startRowIndex": 0,
                    "endRowIndex": 1,
                    "startColumnIndex": 0,
                    "endColumnIndex": len(headers),
                },
                "rows": [{"values": [{"userEnteredValue": {"stringValue": text}} for text in headers]}],
                "fields": "userEnteredValue",
            }
        },
        {
            "repeatCell": {
                "range": {
                    "sheetId": table_id,
                    "startRowIndex": 0,
                    "endRowIndex": 1,
                    "startColumnIndex": 0,
                    "endColumnIndex": len(headers),
                },
                "cell": {
                    "userEnteredFormat": {
                        "textFormat": {"bold": True},
                        "horizontalAlignment": "LEFT",
                        "verticalAlignment": "MIDDLE",
                    }
                },
                "fields": "userEnteredFormat(textFormat,horizontalAlignment,verticalAlignment)",
            }
        },
        {
            "updateSheetProperties": {
                "properties": {"sheetId": table_id, "gridProperties": {"frozenRowCount": 1}},
                "fields": "gridProperties.frozenRowCount",
            }
        },
    ]


def border_request(table_id: int, column_count: int) -> dict[str, Any]:
    solid = {"style": "SOLID", "width": 1, "color": BORDER_COLOR}
    return {
        "updateBorders": {
            "range": {
                "sheetId": table_id,
                "startRowIndex": 0,
                "endRowIndex": BORDER_ROW_LIMIT,
                "startColumnIndex": 0,
                "endColumnIndex": column_count,
            },
            "top": solid,
            "bottom": solid,
            "left": solid,
            "right": solid,
            "innerHorizontal": solid,
            "innerVertical": solid,
        }
    }


def width_requests(table_id: int, widths: list[int]) -> list[dict[str, Any]]:
    return [
        {
            "updateDimensionProperties": {
                "range": {
                    "sheetId": table_id,
                    "dimension": "COLUMNS",
                    "startIndex": column,
                    "endIndex": column + 1,
                },
                "properties": {"pixelSize": width},
                "fields": "pixelSize",
            }
        }
        for column, width in enumerate(widths)
    ]


def transactions_format_requests(table_id: int) -> list[dict[str, Any]]:
    """Full request batch for the Transactions tab."""
    left = {"horizontalAlignment": "LEFT"}
    requests = header_requests(table_id, TRANSACTION_HEADERS)
    requests += [
        _column_format(table_id, 0, left),
        _column_format(
            table_id,
            1,
            {"numberFormat": {"type": "DATE", "pattern": DATE_PATTERN}, "horizontalAlignment": "LEFT"},
        ),
        _column_format(table_id, 2, left),
        _column_format(table_id, 3, {"wrapStrategy": "WRAP", "horizontalAlignment": "LEFT"}),
        _column_format(
            table_id,
            4,
            {"numberFormat": {"type": "CURRENCY", "pattern": CURRENCY_PATTERN}, "horizontalAlignment": "RIGHT"},
        ),
    ]
    requests.append(border_request(table_id, len(TRANSACTION_HEADERS)))
    requests += width_requests(table_id, TRANSACTION_WIDTHS)
    return requests


def chat_history_format_requests(table_id: int) -> list[dict[str, Any]]:
    """Full request batch for the Chat History tab."""
    left = {"horizontalAlignment": "LEFT"}
    requests = header_requests(table_id, CHAT_HISTORY_HEADERS)
    requests += [
        _column_format(table_id, 0, left),
        _column_format(table_id, 1, {"wrapStrategy": "WRAP", "horizontalAlignment": "LEFT"}),
        _column_format(table_id, 2, left),
    ]
    requests.append(border_request(table_id, len(CHAT_HISTORY_HEADERS)))
    requests += width_requests(table_id, CHAT_HISTORY_WIDTHS)
    return requests


def format_table(store: TabularStore, store_id: str, table: str) -> int:
    """Ensure `table` exists and carries its canonical format. Returns its id."""
    builders = {
        TRANSACTIONS_TABLE: transactions_format_requests,
        CHAT_HISTORY_TABLE: chat_history_format_requests,
    }
    if table not in builders:
        raise ValueError(f"No canonical format for table {table!r}")

    table_id = store.get_or_create_table(store_id, table)
    requests = builders[table](table_id)
    store.batch_format(store_id, requests)
    logger.info("table_formatted | table=%r | table_id=%s | requests=%s", table, table_id, len(requests))
    return table_id


def initialize_store(store: TabularStore, sheet_url: str) -> InitializeResult:
    """Create (if needed) and format both tables of the spreadsheet at `sheet_url`."""
    store_id = resolve_store_id(sheet_url)
    if not store_id:
        raise InvalidStoreUrl()

    logger.info("initialize_started | store_id=%s", store_id)
    try:
        transactions_id = format_table(store, store_id, TRANSACTIONS_TABLE)
        chat_id = format_table(store, store_id, CHAT_HISTORY_TABLE)
    except ExpenseError as exc:
        logger.error(
            "initialize_failed | store_id=%s | error_code=%s | error=%s",
            store_id,
            exc.code,
            exc.message,
        )
        raise InitializationFailed() from exc

    logger.info(
        "initialize_complete | store_id=%s | transactions_id=%s | chat_history_id=%s",
        store_id,
        transactions_id,
        chat_id,
    )
    return InitializeResult(
        spreadsheet_id=store_id,
        transactions_table_id=transactions_id,
        chat_history_table_id=chat_id,
    )
