"""
reconcile.py - Duplicate reconciliation and append of new line items.

One append call runs four steps against the live spreadsheet:

    1. group      new items by exact (merchant, date), first-seen order
    2. check      re-read every stored row, regroup with the reader fold,
                  and compare totals per (merchant.lower(), date) key
    3. build      one row per item; merchant/date only on a group's first row
    4. write      one batched append, then best-effort Merchant/Date merges

Duplicate detection finishes before anything is written, so a duplicate
leaves the spreadsheet unchanged. Existing totals are recomputed on every
call and never cached.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator, Optional, Sequence

from errors import (
    AppendFailed,
    DuplicateDetected,
    ExpenseError,
    InvalidStoreUrl,
    MissingField,
    TableNotFound,
    TransactionsTableNotFound,
)
from logging_config import get_logger
from models import AppendResult, LineItem, Transaction
from normalize import duplicate_key, to_sheet_date
from reader import parse_transaction_rows
from sheets_store import TRANSACTIONS_TABLE, TabularStore, merge_request, resolve_store_id

logger = get_logger(__name__)

# Duplicate when |new - existing| <= max(new * 5%, $1.00).
RELATIVE_TOLERANCE = 0.05
ABSOLUTE_TOLERANCE = 1.00

APPEND_RANGE = "A:E"

MERCHANT_COLUMN = (0, 1)
DATE_COLUMN = (1, 2)

_store_locks: dict[str, threading.Lock] = {}
_store_locks_guard = threading.Lock()


@contextmanager
def _store_lock(store_id: str) -> Iterator[None]:
    """Serialize read-check-append per spreadsheet within this process."""
    with _store_locks_guard:
        lock = _store_locks.setdefault(store_id, threading.Lock())
    with lock:
        yield


def group_line_items(items: Sequence[LineItem]) -> list[Transaction]:
    """Group by exact (merchant, date), keeping first-seen key and item order."""
    groups: dict[tuple[str, str], list[LineItem]] = {}
    for item in items:
        groups.setdefault((item.merchant, item.date), []).append(item)
    return [Transaction(merchant=merchant, date=item_date, items=group) for (merchant, item_date), group in groups.items()]


def existing_totals(data_rows: Sequence[Sequence[object]]) -> dict[tuple[str, str], float]:
    """Summed cost per duplicate key over stored data rows (header excluded)."""
    totals: dict[tuple[str, str], float] = {}
    for txn in parse_transaction_rows(data_rows):
        key = duplicate_key(txn.merchant, txn.date)
        totals[key] = round(totals.get(key, 0.0) + txn.total, 2)
    return totals


def is_duplicate(new_total: float, existing_total: float) -> bool:
    """Tolerance rule: within 5% of the new total or one currency unit, whichever is larger."""
    allowed = max(new_total * RELATIVE_TOLERANCE, ABSOLUTE_TOLERANCE)
    return round(abs(new_total - existing_total), 2) <= allowed + 1e-9


def find_duplicate(
    transactions: Sequence[Transaction],
    totals: dict[tuple[str, str], float],
) -> Optional[tuple[Transaction, float]]:
    """Return the first new transaction matching a stored one, with the stored total."""
    for txn in transactions:
        key = duplicate_key(txn.merchant, txn.date)
        if key not in totals:
            continue
        existing = totals[key]
        logger.debug(
            "duplicate_compare | merchant=%r | date=%s | new_total=%.2f | existing_total=%.2f",
            txn.merchant,
            txn.date,
            txn.total,
            existing,
        )
        if is_duplicate(txn.total, existing):
            return txn, existing
    return None


def build_rows(transactions: Sequence[Transaction]) -> list[list[object]]:
    """One row per item; merchant and date only on each group's first row."""
    rows: list[list[object]] = []
    for txn in transactions:
        for index, item in enumerate(txn.items):
            if index == 0:
                rows.append([txn.merchant, to_sheet_date(txn.date), item.category, item.item, item.cost])
            else:
                rows.append(["", "", item.category, item.item, item.cost])
    return rows


def build_merge_requests(table_id: int, transactions: Sequence[Transaction], start_row: int) -> list[dict]:
    """Merchant and Date merges for every multi-item group, starting at 0-based `start_row`."""
    requests: list[dict] = []
    offset = start_row
    for txn in transactions:
        span = len(txn.items)
        if span > 1:
            for columns in (MERCHANT_COLUMN, DATE_COLUMN):
                requests.append(merge_request(table_id, offset, offset + span, columns[0], columns[1]))
        offset += span
    return requests


def _apply_merges(
    store: TabularStore,
    store_id: str,
    transactions: Sequence[Transaction],
    start_row: int,
) -> tuple[int, list[str]]:
    """Merge multi-item groups. Never raises; problems come back as warnings."""
    merge_groups = sum(1 for txn in transactions if len(txn.items) > 1)
    if merge_groups == 0:
        return 0, []

    try:
        table_id = store.get_table_id(store_id, TRANSACTIONS_TABLE)
    except ExpenseError as exc:
        logger.warning("merge_skipped | store_id=%s | reason='table lookup failed' | error=%s", store_id, exc.message)
        return 0, ["Rows were added but merchant/date cells could not be merged"]

    if table_id is None:
        logger.warning("merge_skipped | store_id=%s | reason='table id not found'", store_id)
        return 0, ["Rows were added but merchant/date cells could not be merged"]

    requests = build_merge_requests(table_id, transactions, start_row)
    try:
        store.batch_format(store_id, requests)
    except ExpenseError as exc:
        logger.warning(
            "merge_failed | store_id=%s | requests=%s | error_code=%s | error=%s",
            store_id,
            len(requests),
            exc.code,
            exc.message,
        )
        return 0, ["Rows were added but merchant/date cells could not be merged"]

    logger.info("merge_applied | store_id=%s | groups=%s | requests=%s", store_id, merge_groups, len(requests))
    return merge_groups, []


def append_line_items(store: TabularStore, sheet_url: str, items: Sequence[LineItem]) -> AppendResult:
    """Append validated line items to the Transactions tab.

    Raises:
        MissingField: no items.
        InvalidStoreUrl: URL does not name a spreadsheet.
        TransactionsTableNotFound: the Transactions tab is missing.
        DuplicateDetected: a new transaction matches a stored one; nothing written.
        AppendFailed: any other read or write failure.
    """
    if not items:
        raise MissingField("No transactions to append")

    store_id = resolve_store_id(sheet_url)
    if not store_id:
        raise InvalidStoreUrl()

    transactions = group_line_items(items)

    with _store_lock(store_id):
        try:
            store.ensure_table(store_id, TRANSACTIONS_TABLE, TransactionsTableNotFound)
            rows = store.read(store_id, TRANSACTIONS_TABLE, APPEND_RANGE)
        except TableNotFound:
            raise
        except ExpenseError as exc:
            logger.error("append_read_failed | store_id=%s | error_code=%s | error=%s", store_id, exc.code, exc.message)
            raise AppendFailed() from exc

        start_row = len(rows)
        totals = existing_totals(rows[1:])

        duplicate = find_duplicate(transactions, totals)
        if duplicate is not None:
            txn, existing_total = duplicate
            logger.warning(
                "duplicate_detected | store_id=%s | merchant=%r | date=%s | new_total=%.2f | existing_total=%.2f",
                store_id,
                txn.merchant,
                txn.date,
                txn.total,
                existing_total,
            )
            raise DuplicateDetected(
                merchant=txn.merchant,
                date=txn.date,
                newTotal=txn.total,
                existingTotal=existing_total,
            )

        new_rows = build_rows(transactions)
        try:
            store.append(store_id, TRANSACTIONS_TABLE, new_rows, APPEND_RANGE)
        except ExpenseError as exc:
            logger.error(
                "append_write_failed | store_id=%s | rows=%s | error_code=%s | error=%s",
                store_id,
                len(new_rows),
                exc.code,
                exc.message,
            )
            raise AppendFailed() from exc

        merged_groups, warnings = _apply_merges(store, store_id, transactions, start_row)

    logger.info(
        "append_complete | store_id=%s | rows=%s | transactions=%s | merged_groups=%s | start_row=%s",
        store_id,
        len(new_rows),
        len(transactions),
        merged_groups,
        start_row,
    )
    return AppendResult(
        rows_added=len(new_rows),
        transactions_added=len(transactions),
        merged_groups=merged_groups,
        warnings=warnings,
    )
