"""
reader.py - Rebuild transactions from stored rows.

Stored rows carry merchant and date only in the first row of each
transaction (the rest of the span is merged). Reading reverses that with
carry-forward parsing, implemented as a fold over the row sequence:

    state = (carried merchant, carried date, groups)
    row   -> refresh merchant/date from non-empty cells
          -> open a new group on a non-empty merchant cell or a key change
          -> add a LineItem when merchant, date and item are all present

Rows that cannot contribute (stray blanks, header-like debris) are skipped
silently, so hand edits in the spreadsheet do not break reads.

Costs read back non-negative. A hand-typed refund such as "-5.00" or
"(5.00)" becomes cost 0.0 and is logged as `read_negative_cost`; it never
reduces a transaction total.
"""

from __future__ import annotations

from functools import reduce
from typing import Any, Iterable, NamedTuple, Sequence

from errors import ExpenseError, InvalidStoreUrl, ReadFailed, TableNotFound, TransactionsTableNotFound
from logging_config import get_logger
from models import LineItem, Transaction
from normalize import is_negative_cost, normalize_cost, normalize_sheet_date, normalize_text, parse_date_loose
from sheets_store import TRANSACTIONS_TABLE, TabularStore, resolve_store_id

logger = get_logger(__name__)

ORDERS = ("sheet", "recent")

# Data rows start below the frozen header.
DATA_RANGE = "A2:E"


class _Group(NamedTuple):
    merchant: str
    date: str
    items: tuple[LineItem, ...]


class _FoldState(NamedTuple):
    merchant: str
    date: str
    groups: tuple[_Group, ...]


def _cell(row: Sequence[Any], index: int) -> Any:
    return row[index] if index < len(row) else ""


def _step(state: _FoldState, row: Sequence[Any]) -> _FoldState:
    merchant_cell = normalize_text(_cell(row, 0))
    date_cell = normalize_text(_cell(row, 1))

    merchant = merchant_cell or state.merchant
    date_text = date_cell or state.date
    groups = state.groups

    if merchant_cell or (merchant, date_text) != (state.merchant, state.date):
        groups = groups + (_Group(merchant, date_text, ()),)

    item = normalize_text(_cell(row, 3))
    if not (merchant and date_text and item and groups):
        return _FoldState(merchant, date_text, groups)

    raw_cost = _cell(row, 4)
    if is_negative_cost(raw_cost):
        logger.warning("read_negative_cost | merchant=%s | item=%s | raw=%r | cost=0.0", merchant, item, raw_cost)
    line_item = LineItem(
        merchant=merchant,
        date=normalize_sheet_date(date_text) or date_text,
        category=normalize_text(_cell(row, 2)),
        item=item,
        cost=normalize_cost(raw_cost),
    )
    current = groups[-1]
    groups = groups[:-1] + (current._replace(items=current.items + (line_item,)),)
    return _FoldState(merchant, date_text, groups)


def parse_transaction_rows(rows: Iterable[Sequence[Any]]) -> list[Transaction]:
    """Fold data rows (header excluded) into transactions, in sheet order."""
    final = reduce(_step, rows, _FoldState("", "", ()))
    return [
        Transaction(
            merchant=group.merchant,
            date=normalize_sheet_date(group.date) or group.date,
            items=list(group.items),
        )
        for group in final.groups
        if group.items
    ]


def sort_recent_first(transactions: list[Transaction]) -> list[Transaction]:
    """Newest first by leniently parsed date; unparseable dates keep order at the end."""

    def sort_key(txn: Transaction) -> tuple[int, int]:
        parsed = parse_date_loose(txn.date)
        if parsed is None:
            return (1, 0)
        return (0, -parsed.date().toordinal())

    return sorted(transactions, key=sort_key)


def read_transactions(store: TabularStore, sheet_url: str, order: str = "sheet") -> list[Transaction]:
    """Read and regroup every transaction in the spreadsheet at `sheet_url`.

    Raises:
        InvalidStoreUrl: URL does not name a spreadsheet.
        TransactionsTableNotFound: the Transactions tab is missing.
        ReadFailed: any other store failure.
    """
    if order not in ORDERS:
        raise ValueError(f"order must be one of {ORDERS}, got {order!r}")

    store_id = resolve_store_id(sheet_url)
    if not store_id:
        raise InvalidStoreUrl()

    try:
        rows = store.read(store_id, TRANSACTIONS_TABLE, DATA_RANGE)
    except TableNotFound as exc:
        raise TransactionsTableNotFound() from exc
    except ExpenseError as exc:
        logger.error("read_transactions_failed | store_id=%s | error_code=%s | error=%s", store_id, exc.code, exc.message)
        raise ReadFailed() from exc

    transactions = parse_transaction_rows(rows)
    if order == "recent":
        transactions = sort_recent_first(transactions)

    logger.info(
        "read_transactions | store_id=%s | rows=%s | transactions=%s | order=%s",
        store_id,
        len(rows),
        len(transactions),
        order,
    )
    return transactions
