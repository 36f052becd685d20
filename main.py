"""
main.py - CLI for the expense ledger.

This module is orchestration-only:
    serve   run the HTTP API
    init    create and format the spreadsheet tables
    add     extract line items from receipts/text and append them
    list    print stored transactions
    ask     ask a question about spending
"""

from __future__ import annotations

import argparse
import json
import logging
import mimetypes
import sys
from pathlib import Path
from typing import Optional

from config import Settings, load_settings
from errors import DuplicateDetected, ExpenseError
from extract import extract_line_items
from insights import ask
from llm_client import build_completion_client
from logging_config import get_logger, setup_logging
from models import ImageInput, Transaction
from reader import read_transactions
from reconcile import append_line_items
from sheet_formatter import initialize_store
from sheets_store import build_store

logger = get_logger("expense-cli")


def _configure_output_symbols() -> tuple[str, str]:
    """Configure stdout encoding and return safe line/fail symbols."""
    try:
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    except Exception:
        pass

    try:
        "═✗".encode(sys.stdout.encoding or "utf-8")
        return "═", "✗"
    except Exception:
        return "=", "X"


BOX_CHAR, FAIL_CHAR = _configure_output_symbols()


def load_image(path: str) -> ImageInput:
    """Read a receipt image from disk."""
    image_path = Path(str(path).strip())
    if not image_path.exists():
        raise FileNotFoundError(f"Receipt image not found: {path}")
    mime_type = mimetypes.guess_type(image_path.name)[0] or "image/jpeg"
    return ImageInput(data=image_path.read_bytes(), mime_type=mime_type, filename=image_path.name)


def format_transactions(transactions: list[Transaction]) -> str:
    """Render transactions as a plain-text ledger."""
    if not transactions:
        return "No transactions found."

    lines: list[str] = []
    for txn in transactions:
        lines.append(BOX_CHAR * 62)
        lines.append(f"  {txn.merchant}  |  {txn.date}  |  {txn.category or '-'}")
        for item in txn.items:
            lines.append(f"    {item.item:<40} {item.cost:>12,.2f}")
        lines.append(f"    {'Total':<40} {txn.total:>12,.2f}")
    lines.append(BOX_CHAR * 62)
    return "\n".join(lines)


def cmd_serve(args: argparse.Namespace, settings: Settings) -> None:
    import uvicorn

    uvicorn.run("api:app", host=args.host, port=args.port or settings.port, reload=False)


def cmd_init(args: argparse.Namespace, settings: Settings) -> None:
    result = initialize_store(build_store(settings), args.sheet)
    print(json.dumps(result.model_dump(by_alias=True), indent=2))


def cmd_add(args: argparse.Namespace, settings: Settings) -> None:
    images = [load_image(path) for path in args.receipt or []]
    items = extract_line_items(
        images,
        args.text,
        build_completion_client(settings),
        vision_model=settings.vision_model,
        text_model=settings.text_model,
    )
    print(json.dumps([item.model_dump() for item in items], indent=2))
    if args.dry_run:
        return

    result = append_line_items(build_store(settings), args.sheet, items)
    print(json.dumps(result.model_dump(by_alias=True), indent=2))


def cmd_list(args: argparse.Namespace, settings: Settings) -> None:
    transactions = read_transactions(build_store(settings), args.sheet, order=args.order)
    if args.json:
        print(json.dumps([txn.model_dump() for txn in transactions], indent=2))
    else:
        print(format_transactions(transactions))


def cmd_ask(args: argparse.Namespace, settings: Settings) -> None:
    reply = ask(
        build_store(settings),
        args.sheet,
        " ".join(args.question),
        [],
        build_completion_client(settings),
        model=settings.chat_model,
        row_limit=settings.context_row_limit,
        history_limit=settings.history_turn_limit,
    )
    print(reply.content)
    if reply.chart:
        print(f"\n[{reply.chart.type} chart]")
        for point in reply.chart.data:
            print(f"  {point.name:<30} {point.value:>12,.2f}")
    for prompt in reply.suggested_prompts or []:
        print(f"  > {prompt}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="expense-ledger",
        description=(
            "Expense Ledger\n"
            "Turns receipt photos and descriptions into rows of a Google spreadsheet "
            "and answers questions about your spending."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  %(prog)s init --sheet https://docs.google.com/spreadsheets/d/ID/edit\n"
            "  %(prog)s add --sheet URL --receipt receipt.jpg\n"
            '  %(prog)s add --sheet URL --text "Lunch at Chipotle, burrito $11.50"\n'
            "  %(prog)s list --sheet URL --order recent\n"
            '  %(prog)s ask --sheet URL "How much did I spend on groceries?"\n'
        ),
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose (DEBUG-level) logging",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Output logs as JSON lines (for production/log aggregation)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=None, help="Defaults to PORT or 8000")
    serve.set_defaults(handler=cmd_serve)

    init = subparsers.add_parser("init", help="Create and format the spreadsheet tables")
    init.add_argument("--sheet", "-s", required=True, help="Google Sheets URL")
    init.set_defaults(handler=cmd_init)

    add = subparsers.add_parser("add", help="Extract and append transactions")
    add.add_argument("--sheet", "-s", required=True, help="Google Sheets URL")
    add.add_argument("--receipt", "-r", action="append", help="Receipt image path (repeatable)")
    add.add_argument("--text", "-t", help="Description or extra context")
    add.add_argument("--dry-run", action="store_true", help="Extract only, do not append")
    add.set_defaults(handler=cmd_add)

    listing = subparsers.add_parser("list", help="Print stored transactions")
    listing.add_argument("--sheet", "-s", required=True, help="Google Sheets URL")
    listing.add_argument("--order", choices=("sheet", "recent"), default="sheet")
    listing.add_argument("--json", action="store_true", help="Output transactions as JSON")
    listing.set_defaults(handler=cmd_list)

    question = subparsers.add_parser("ask", help="Ask a question about your spending")
    question.add_argument("--sheet", "-s", required=True, help="Google Sheets URL")
    question.add_argument("question", nargs="+")
    question.set_defaults(handler=cmd_ask)

    return parser


def main(argv: Optional[list[str]] = None) -> None:
    """CLI entry point for the Expense Ledger."""
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = load_settings()
    setup_logging(
        level=logging.DEBUG if args.verbose else getattr(logging, settings.log_level.upper(), logging.INFO),
        json_format=args.log_json or settings.log_json,
    )

    if args.command == "add" and not args.receipt and not args.text:
        parser.error("Provide --receipt PATH and/or --text TEXT")

    try:
        logger.info("cli_mode | command=%s", args.command)
        args.handler(args, settings)
    except DuplicateDetected as exc:
        logger.warning("cli_duplicate | details=%s", exc.details)
        print(f"\n{FAIL_CHAR} {exc.message}: {json.dumps(exc.details)}")
        raise SystemExit(2) from exc
    except ExpenseError as exc:
        logger.error("cli_error | code=%s | error=%s", exc.code, exc.message)
        print(f"\n{FAIL_CHAR} Error: {exc.message}")
        raise SystemExit(1) from exc
    except FileNotFoundError as exc:
        logger.error("cli_error | type=FileNotFoundError | error=%s", exc)
        print(f"\nError: {exc}")
        raise SystemExit(1) from exc
    except KeyboardInterrupt:
        print("\nInterrupted.")
        raise SystemExit(130)
    except Exception as exc:
        logger.error(
            "cli_error | type=%s | error=%s",
            type(exc).__name__,
            exc,
            exc_info=True,
        )
        print(f"\nUnexpected error: {exc}")
        print("Run with --verbose for full traceback.")
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
