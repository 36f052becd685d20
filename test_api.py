"""
test_api.py - HTTP API regression checks.

Focus:
1) Route contracts over the in-memory store (initialize, list, append, summary)
2) Multipart extraction (process, submit) with a stubbed model
3) Chat routes (ask, append)
4) Error payloads: {"success": false, "error", "code"} with stable statuses

Usage:
    python test_api.py
"""

from __future__ import annotations

import os
import sys
from typing import Any

from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from api import app, get_completion_client, get_settings, get_store
from config import Settings
from sheets_store import CHAT_HISTORY_TABLE, MemoryStore
from test_extract import stub_client


def _configure_symbols() -> tuple[str, str, str]:
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


PASS, FAIL, LINE = _configure_symbols()

SHEET_URL = "https://docs.google.com/spreadsheets/d/api-test-sheet/edit"
SHEET_ID = "api-test-sheet"

EXTRACTED = {
    "items": [
        {"merchant": "Acme", "date": "2024-03-01", "category": "Home", "item": "Hammer", "cost": 12.5},
        {"merchant": "Acme", "date": "2024-03-01", "category": "Home", "item": "Nails", "cost": 3.0},
    ]
}

CHAT_REPLY = {
    "content": "Most of your spending went to **Home**.",
    "chart": {"type": "bar", "data": [{"name": "Home", "value": 15.5}]},
    "suggestedPrompts": ["What about dining?", "Show monthly totals", "Any big purchases?"],
}


def _wire(store: MemoryStore, *replies: Any) -> tuple[TestClient, Any]:
    completion_client, stub = stub_client(*replies)
    app.dependency_overrides[get_settings] = lambda: Settings(store_backend="memory")
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_completion_client] = lambda: completion_client
    return TestClient(app, raise_server_exceptions=False), stub


def _is_error(response: Any, status: int, code: str) -> bool:
    body = response.json()
    return response.status_code == status and body.get("success") is False and body.get("code") == code


def main() -> int:
    passed = 0
    failed = 0

    def check(name: str, condition: bool) -> None:
        nonlocal passed, failed
        if condition:
            passed += 1
            print(f"    {PASS} {name}")
        else:
            failed += 1
            print(f"    {FAIL} {name}")

    print(LINE * 62)
    print("  HTTP API Tests")
    print(LINE * 62)

    try:
        store = MemoryStore()
        client, stub = _wire(store, EXTRACTED)

        print("\n  Sheets routes")
        check("GET /health", client.get("/health").json() == {"status": "ok"})

        response = client.get("/sheets/transactions", params={"sheetUrl": SHEET_URL})
        check("List before initialize -> 404", _is_error(response, 404, "transactions_table_not_found"))

        check("Initialize without URL -> 400", _is_error(client.post("/sheets/initialize", json={}), 400, "missing_field"))
        check(
            "Initialize with bad URL -> 400",
            _is_error(client.post("/sheets/initialize", json={"sheetUrl": "https://x.test"}), 400, "invalid_store_url"),
        )

        response = client.post("/sheets/initialize", json={"sheetUrl": SHEET_URL})
        body = response.json()
        check("Initialize -> 200", response.status_code == 200 and body["success"] is True)
        check("Initialize returns ids", body["spreadsheetId"] == SHEET_ID and body["chatHistorySheetId"] == store.get_table_id(SHEET_ID, CHAT_HISTORY_TABLE))

        print("\n  Extraction routes")
        png = b"\x89PNG\r\n\x1a\nreceipt"
        response = client.post(
            "/transactions/process",
            files=[("images", ("receipt.png", png, "image/png"))],
            data={"text": "paid cash"},
        )
        body = response.json()
        check("Process -> 200 with items", response.status_code == 200 and len(body["items"]) == 2)
        check("Process does not write", client.get("/sheets/transactions", params={"sheetUrl": SHEET_URL}).json()["count"] == 0)
        check("Upload reached the model as an image part", stub.requests[-1]["messages"][1]["content"][1]["type"] == "image_url")

        response = client.post("/transactions/process", data={"text": "  "})
        check("Process without input -> 400", _is_error(response, 400, "no_input_provided"))

        response = client.post("/transactions/submit", data={"sheetUrl": SHEET_URL, "text": "Acme hammer and nails"})
        body = response.json()
        check("Submit -> 200", response.status_code == 200 and body["success"] is True)
        check("Submit reports rows and merges", (body["rowsAdded"], body["transactionsAdded"], body["mergedGroups"]) == (2, 1, 1))
        check("Submit echoes extracted items", [i["item"] for i in body["items"]] == ["Hammer", "Nails"])

        response = client.post("/transactions/submit", data={"sheetUrl": SHEET_URL, "text": "Acme again"})
        body = response.json()
        check("Submit duplicate -> 409", _is_error(response, 409, "duplicate_detected"))
        check("Duplicate details carry totals", body["details"]["newTotal"] == 15.5 and body["details"]["existingTotal"] == 15.5)

        response = client.post("/transactions/submit", data={"text": "no url"})
        check("Submit without URL -> 400", _is_error(response, 400, "missing_field"))

        print("\n  Append and read routes")
        response = client.post(
            "/transactions/append",
            json={
                "sheetUrl": SHEET_URL,
                "items": [
                    {"merchant": "Blue Bottle", "date": "2024-04-02", "category": "Dining", "item": "Latte", "cost": 4.5}
                ],
            },
        )
        check("Append with items payload -> 200", response.status_code == 200 and response.json()["rowsAdded"] == 1)
        check(
            "Append empty list -> 400",
            _is_error(client.post("/transactions/append", json={"sheetUrl": SHEET_URL, "items": []}), 400, "missing_field"),
        )

        body = client.get("/sheets/transactions", params={"sheetUrl": SHEET_URL}).json()
        check("List returns grouped transactions", body["count"] == 2 and [t["merchant"] for t in body["transactions"]] == ["Acme", "Blue Bottle"])
        check("Listed transaction carries totals", body["transactions"][0]["total"] == 15.5 and body["transactions"][0]["item_count"] == 2)
        recent = client.get("/sheets/transactions", params={"sheetUrl": SHEET_URL, "order": "recent"}).json()
        check("order=recent", [t["merchant"] for t in recent["transactions"]] == ["Blue Bottle", "Acme"])
        check("Unknown order -> 422", client.get("/sheets/transactions", params={"sheetUrl": SHEET_URL, "order": "x"}).status_code == 422)

        summary = client.get("/transactions/summary", params={"sheetUrl": SHEET_URL}).json()
        check("Summary total", summary["success"] is True and summary["total"] == 20.0)
        check("Summary by month", summary["byMonth"] == [{"name": "2024-03", "value": 15.5}, {"name": "2024-04", "value": 4.5}])

        print("\n  Chat routes")
        client, stub = _wire(store, CHAT_REPLY)
        response = client.post(
            "/chat/ask",
            json={
                "sheetUrl": SHEET_URL,
                "question": "Where does my money go?",
                "conversationHistory": [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}],
            },
        )
        body = response.json()
        check("Ask -> 200", response.status_code == 200 and body["success"] is True)
        check("Ask returns content, chart and prompts", body["chart"]["type"] == "bar" and len(body["suggestedPrompts"]) == 3)
        check("History forwarded", [m["content"] for m in stub.requests[0]["messages"][2:4]] == ["hi", "hello"])

        client, _ = _wire(store, {"content": "Plain answer.", "chart": None, "suggestedPrompts": None})
        body = client.post("/chat/ask", json={"sheetUrl": SHEET_URL, "question": "Total?"}).json()
        check("Null chart omitted from payload", "chart" not in body and body["content"] == "Plain answer.")

        client, _ = _wire(store, "not json")
        response = client.post("/chat/ask", json={"sheetUrl": SHEET_URL, "question": "Total?"})
        check("Model failure -> 502", _is_error(response, 502, "llm_unavailable"))
        check("Blank question -> 400", _is_error(client.post("/chat/ask", json={"sheetUrl": SHEET_URL, "question": " "}), 400, "missing_field"))

        response = client.post("/chat/append", json={"sheetUrl": SHEET_URL, "role": "user", "message": "Where does my money go?"})
        body = response.json()
        check("Chat append -> 200", response.status_code == 200 and body["entry"]["role"] == "user")
        check("Chat row stored", store.read(SHEET_ID, CHAT_HISTORY_TABLE, "A2:B2") == [["user", "Where does my money go?"]])
        check("Chat append missing role -> 400", _is_error(client.post("/chat/append", json={"sheetUrl": SHEET_URL, "message": "x"}), 400, "missing_field"))

        print("\n  Extraction failures")
        client, _ = _wire(MemoryStore(), "not json")
        check("Bad model output -> 502", _is_error(client.post("/transactions/process", data={"text": "x"}), 502, "extraction_failed"))
        client, _ = _wire(MemoryStore(), {"items": []})
        check("No items -> 422", _is_error(client.post("/transactions/process", data={"text": "x"}), 422, "no_receipt_detected"))

        print("\n  Process -> append hand-off")
        fresh = MemoryStore()
        client, _ = _wire(fresh, EXTRACTED)
        client.post("/sheets/initialize", json={"sheetUrl": SHEET_URL})
        processed = client.post("/transactions/process", data={"text": "Acme hammer and nails"}).json()
        response = client.post("/transactions/append", json={"sheetUrl": SHEET_URL, "items": processed["items"]})
        check("Process items posted back to append -> 200", response.status_code == 200 and response.json()["rowsAdded"] == 2)
        response = client.post(
            "/transactions/append",
            json={
                "sheetUrl": SHEET_URL,
                "transactions": [
                    {"merchant": "Deli", "date": "2024-05-01", "category": "Dining", "item": "Sandwich", "cost": 8}
                ],
            },
        )
        check("Legacy transactions key still accepted", response.status_code == 200 and response.json()["rowsAdded"] == 1)
    finally:
        app.dependency_overrides.clear()

    print(f"\n{LINE * 62}")
    print(f"  Results: {passed}/{passed + failed} passed")
    if failed == 0:
        print(f"  HTTP API: COMPLETE {PASS}")
    else:
        print(f"  HTTP API: {failed} FAILED - fix before proceeding")
    print(f"{LINE * 62}")
    return failed


def test_api() -> None:
    assert main() == 0


if __name__ == "__main__":
    sys.exit(1 if main() else 0)
