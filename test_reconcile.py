"""
test_reconcile.py - Reconciliation & Append Engine Tests

Checks for:
- grouping by (merchant, date) in first-seen order
- row construction and merge requests
- duplicate tolerance boundary (5% or $1, whichever is larger)
- all-or-nothing duplicate abort
- append -> read round trip through the in-memory store
- non-fatal merge failures and fatal write failures
- per-store serialization of concurrent appends

Usage: python test_reconcile.py
"""

from __future__ import annotations

import os
import sys
import threading
from typing import Any, Callable, Optional

# Ensure local imports resolve from project root.
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from errors import (
    AppendFailed,
    DuplicateDetected,
    InvalidStoreUrl,
    MissingField,
    StoreUnavailable,
    TransactionsTableNotFound,
)
from models import LineItem
from reader import read_transactions
from reconcile import (
    append_line_items,
    build_merge_requests,
    build_rows,
    existing_totals,
    find_duplicate,
    group_line_items,
    is_duplicate,
)
from sheet_formatter import initialize_store
from sheets_store import TRANSACTIONS_TABLE, MemoryStore


def _configure_output_symbols() -> tuple[str, str, str]:
    try:
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    except Exception:
        pass

    try:
        "✓✗═".encode(sys.stdout.encoding or "utf-8")
        return "✓", "✗", "═"
    except Exception:
        return "[OK]", "[FAIL]", "="


PASS, FAIL, LINE = _configure_output_symbols()

SHEET_URL = "https://docs.google.com/spreadsheets/d/reconcile-test-sheet/edit"
SHEET_ID = "reconcile-test-sheet"


def item(merchant: str, day: str, name: str, cost: float, category: str = "Home") -> LineItem:
    return LineItem(merchant=merchant, date=day, category=category, item=name, cost=cost)


class MergeFailStore(MemoryStore):
    fail_merges = False

    def batch_format(self, store_id: str, requests: list[dict[str, Any]]) -> None:
        if self.fail_merges and any("mergeCells" in request for request in requests):
            raise StoreUnavailable()
        super().batch_format(store_id, requests)


class NoTableIdStore(MemoryStore):
    def get_table_id(self, store_id: str, table: str) -> Optional[int]:
        return None


class WriteFailStore(MemoryStore):
    def append(self, store_id: str, table: str, rows: list[list[Any]], column_range: str) -> dict[str, Any]:
        raise StoreUnavailable()


def ready_store(store: Optional[MemoryStore] = None, existing: Optional[list[LineItem]] = None) -> MemoryStore:
    store = store or MemoryStore()
    initialize_store(store, SHEET_URL)
    if existing:
        append_line_items(store, SHEET_URL, existing)
    return store


def raises(exc_type: type[BaseException], func: Callable[..., Any], *args: Any, **kwargs: Any) -> bool:
    try:
        func(*args, **kwargs)
    except exc_type:
        return True
    except Exception:
        return False
    return False


def main() -> int:
    passed = 0
    failed = 0

    def check(name: str, condition: bool) -> None:
        nonlocal passed, failed
        if condition:
            print(f"    {PASS} {name}")
            passed += 1
        else:
            print(f"    {FAIL} {name}")
            failed += 1

    print(LINE * 62)
    print("  Reconciliation & Append Tests")
    print(LINE * 62)

    # Category 1: grouping, rows, merges
    print("\n  Grouping and rows")
    mixed = [
        item("Acme", "2024-03-01", "Hammer", 10),
        item("Blue Bottle", "2024-03-02", "Latte", 4.5, "Dining"),
        item("Acme", "2024-03-01", "Nails", 3),
        item("Acme", "2024-03-01", "Glue", 2),
        item("acme", "2024-03-01", "Tape", 1),
    ]
    groups = group_line_items(mixed)
    check("Exact key grouping, first-seen order", [(g.merchant, g.item_count) for g in groups] == [("Acme", 3), ("Blue Bottle", 1), ("acme", 1)])
    check("Insertion order kept within a group", [i.item for i in groups[0].items] == ["Hammer", "Nails", "Glue"])

    rows = build_rows(groups)
    check("One row per item", len(rows) == 5)
    check("First row carries merchant and M/D/YYYY date", rows[0] == ["Acme", "3/1/2024", "Home", "Hammer", 10.0])
    check("Continuation rows leave merchant/date blank", rows[1][:2] == ["", ""] and rows[2][:2] == ["", ""])
    check("Category, item, cost on every row", rows[2][2:] == ["Home", "Glue", 2.0])

    merges = build_merge_requests(9, groups, 5)
    spans = [
        (m["mergeCells"]["range"]["startRowIndex"], m["mergeCells"]["range"]["endRowIndex"], m["mergeCells"]["range"]["startColumnIndex"])
        for m in merges
    ]
    check("Only multi-item groups merged, Merchant then Date", spans == [(5, 8, 0), (5, 8, 1)])

    # Category 2: tolerance rule
    print("\n  Duplicate tolerance")
    check("100 -> 105 is duplicate (5%)", is_duplicate(105.00, 100.00))
    check("100 -> 106 is not duplicate", not is_duplicate(106.00, 100.00))
    check("10 -> 10.99 is duplicate ($1 floor)", is_duplicate(10.99, 10.00))
    check("10 -> 11.01 is not duplicate", not is_duplicate(11.01, 10.00))
    check("Lower new total inside tolerance", is_duplicate(95.50, 100.00))

    totals = existing_totals(
        [
            ["Acme", "3/1/2024", "Home", "Hammer", "$60.00"],
            ["", "", "Home", "Nails", "$40.00"],
            ["Blue Bottle", "2024-03-02", "Dining", "Latte", "4.50"],
            ["Acme", "March 1, 2024", "Home", "Saw", "25"],
        ]
    )
    check("Totals keyed by lowercased merchant and ISO date", totals[("acme", "2024-03-01")] == 125.0)
    check("ISO stored dates recognized", totals[("blue bottle", "2024-03-02")] == 4.5)
    check(
        "find_duplicate matches case-insensitively",
        find_duplicate(group_line_items([item("ACME", "2024-03-01", "Saw", 125)]), totals) is not None,
    )
    check(
        "Different date is not a duplicate",
        find_duplicate(group_line_items([item("Acme", "2024-03-02", "Saw", 125)]), totals) is None,
    )

    for new_cost, expect_dup in ((105.00, True), (106.00, False)):
        store = ready_store(existing=[item("Acme", "2024-03-01", "Order", 100.00)])
        outcome = "written"
        try:
            append_line_items(store, SHEET_URL, [item("Acme", "2024-03-01", "Order again", new_cost)])
        except DuplicateDetected:
            outcome = "duplicate"
        check(f"Stored 100.00 vs new {new_cost:.2f} -> {'duplicate' if expect_dup else 'written'}", (outcome == "duplicate") == expect_dup)

    for new_cost, expect_dup in ((10.99, True), (11.01, False)):
        store = ready_store(existing=[item("Acme", "2024-03-01", "Small", 10.00)])
        outcome = "written"
        try:
            append_line_items(store, SHEET_URL, [item("Acme", "2024-03-01", "Small again", new_cost)])
        except DuplicateDetected:
            outcome = "duplicate"
        check(f"Stored 10.00 vs new {new_cost:.2f} -> {'duplicate' if expect_dup else 'written'}", (outcome == "duplicate") == expect_dup)

    # Category 3: all-or-nothing abort
    print("\n  All-or-nothing duplicate abort")
    store = ready_store(existing=[item("Acme", "2024-03-01", "Order", 100.00)])
    before = store.snapshot(SHEET_ID, TRANSACTIONS_TABLE)
    details: dict[str, Any] = {}
    try:
        append_line_items(
            store,
            SHEET_URL,
            [item("Acme", "2024-03-01", "Order", 100.00), item("Blue Bottle", "2024-03-09", "Latte", 4.5)],
        )
    except DuplicateDetected as exc:
        details = exc.details
    check("Duplicate reported", details.get("merchant") == "Acme")
    check("Details carry both totals", details.get("newTotal") == 100.0 and details.get("existingTotal") == 100.0)
    check("No rows from either group written", store.snapshot(SHEET_ID, TRANSACTIONS_TABLE) == before)

    # Category 4: round trip
    print("\n  Round trip")
    store = ready_store(existing=[item("Corner Shop", "2024-02-28", "Milk", 3.49, "Groceries")])
    result = append_line_items(store, SHEET_URL, mixed)
    check("Result counts", (result.rows_added, result.transactions_added, result.merged_groups) == (5, 3, 1))
    check("No warnings on clean append", result.warnings == [])
    check(
        "Result serializes with camelCase keys",
        set(result.model_dump(by_alias=True)) == {"rowsAdded", "transactionsAdded", "mergedGroups", "warnings"},
    )
    check(
        "Merge spans start after existing rows",
        store.snapshot(SHEET_ID, TRANSACTIONS_TABLE)["merges"] == [(2, 5, 0, 1), (2, 5, 1, 2)],
    )
    read_back = read_transactions(store, SHEET_URL)
    expected = [("Corner Shop", ["Milk"])] + [(g.merchant, [i.item for i in g.items]) for g in groups]
    check("Groups reconstructed exactly", [(t.merchant, [i.item for i in t.items]) for t in read_back] == expected)
    check(
        "Per-item fields survive",
        [i.model_dump() for t in read_back[1:] for i in t.items] == [i.model_dump() for g in groups for i in g.items],
    )

    # Category 5: failure handling
    print("\n  Failure handling")
    check("Empty list -> MissingField", raises(MissingField, append_line_items, MemoryStore(), SHEET_URL, []))
    check("Bad URL -> InvalidStoreUrl", raises(InvalidStoreUrl, append_line_items, MemoryStore(), "https://x.test", mixed))

    bare = MemoryStore()
    check("Missing tab -> TransactionsTableNotFound", raises(TransactionsTableNotFound, append_line_items, bare, SHEET_URL, mixed))
    check("Missing tab is not created", bare.get_table_id(SHEET_ID, TRANSACTIONS_TABLE) is None)

    check(
        "Write failure -> AppendFailed",
        raises(AppendFailed, append_line_items, ready_store(WriteFailStore()), SHEET_URL, mixed),
    )

    merge_fail = ready_store(MergeFailStore())
    merge_fail.fail_merges = True
    degraded = append_line_items(merge_fail, SHEET_URL, mixed)
    check("Merge failure keeps rows", degraded.rows_added == 5 and len(read_transactions(merge_fail, SHEET_URL)) == 3)
    check("Merge failure reported as warning", degraded.merged_groups == 0 and len(degraded.warnings) == 1)

    no_id = append_line_items(ready_store(NoTableIdStore()), SHEET_URL, mixed)
    check("Missing table id is a warning, not an error", no_id.rows_added == 5 and len(no_id.warnings) == 1)

    # Category 6: serialization per store
    print("\n  Concurrent appends")
    store = ready_store()
    outcomes: list[str] = []
    outcomes_lock = threading.Lock()

    def attempt() -> None:
        try:
            append_line_items(store, SHEET_URL, [item("Acme", "2024-03-01", "Order", 50.0)])
            outcome = "written"
        except DuplicateDetected:
            outcome = "duplicate"
        with outcomes_lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=attempt) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    check("Second concurrent append sees the first", sorted(outcomes) == ["duplicate", "written"])

    print(f"\n{LINE * 62}")
    print(f"  Results: {passed}/{passed + failed} passed")
    if failed == 0:
        print(f"  Reconciliation: COMPLETE {PASS}")
    else:
        print(f"  Reconciliation: {failed} FAILED - fix before proceeding")
    print(f"{LINE * 62}")
    return failed


def test_reconcile() -> None:
    assert main() == 0


if __name__ == "__main__":
    sys.exit(1 if main() else 0)
