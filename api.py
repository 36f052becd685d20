"""
api.py - FastAPI HTTP layer for the expense ledger.

Endpoints:
  - GET  /health
  - POST /sheets/initialize
  - GET  /sheets/transactions
  - POST /transactions/process      (multipart: image / images / text)
  - POST /transactions/append
  - POST /transactions/submit       (multipart: extract then append)
  - GET  /transactions/summary
  - POST /chat/ask
  - POST /chat/append

No business logic lives here: each route validates transport-level input,
calls one pipeline function and renders the result. Every ExpenseError is
rendered as {"success": false, "error": ..., "code": ...} with its status.
"""

from __future__ import annotations

import logging
import mimetypes
from functools import lru_cache
from typing import Any, Literal, Optional

import uvicorn
from fastapi import Depends, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from starlette.concurrency import run_in_threadpool

from config import Settings, load_settings
from errors import ExpenseError, ImageUploadFailed, MissingField
from extract import extract_line_items
from insights import append_chat_entry, ask, summarize_spending
from llm_client import CompletionClient, build_completion_client
from logging_config import get_logger, setup_logging
from models import ChatTurn, ImageInput, LineItem
from reader import read_transactions
from reconcile import append_line_items
from sheet_formatter import initialize_store
from sheets_store import TabularStore, build_store

logger = get_logger("expense-api")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()


def get_store(settings: Settings = Depends(get_settings)) -> TabularStore:
    return build_store(settings)


def get_completion_client(settings: Settings = Depends(get_settings)) -> CompletionClient:
    return build_completion_client(settings)


app = FastAPI(
    title="Expense Ledger API",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ExpenseError)
async def expense_error_handler(request: Request, exc: ExpenseError) -> JSONResponse:
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "api_error | path=%s | status=%s | code=%s | error=%s",
        request.url.path,
        exc.status_code,
        exc.code,
        exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "api_unexpected_error | path=%s | error_type=%s | error=%s",
        request.url.path,
        type(exc).__name__,
        exc,
        exc_info=True,
    )
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Unexpected server error.", "code": "internal_error"},
    )


# -- Request bodies --


class SheetRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sheet_url: Optional[str] = Field(default=None, alias="sheetUrl")


class AppendRequest(SheetRequest):
    # "transactions" is accepted for older callers.
    items: list[LineItem] = Field(default_factory=list, validation_alias=AliasChoices("items", "transactions"))


class AskRequest(SheetRequest):
    question: Optional[str] = None
    conversation_history: list[ChatTurn] = Field(default_factory=list, alias="conversationHistory")


class ChatAppendRequest(SheetRequest):
    role: Optional[str] = None
    message: Optional[str] = None


def _require_url(sheet_url: Optional[str]) -> str:
    if not sheet_url or not sheet_url.strip():
        raise MissingField("Sheet URL is required")
    return sheet_url.strip()


async def _read_uploads(uploads: list[UploadFile]) -> list[ImageInput]:
    images: list[ImageInput] = []
    for upload in uploads:
        try:
            data = await upload.read()
        except Exception as exc:
            logger.error("upload_read_error | filename=%r | error_type=%s | error=%s", upload.filename, type(exc).__name__, exc)
            raise ImageUploadFailed() from exc
        mime_type = upload.content_type or mimetypes.guess_type(upload.filename or "")[0] or "image/jpeg"
        images.append(ImageInput(data=data, mime_type=mime_type, filename=upload.filename))
    return images


async def _extract_from_form(
    image: Optional[UploadFile],
    images: Optional[list[UploadFile]],
    text: Optional[str],
    client: CompletionClient,
    settings: Settings,
) -> list[LineItem]:
    uploads = ([image] if image is not None else []) + list(images or [])
    inputs = await _read_uploads(uploads)
    return await run_in_threadpool(
        extract_line_items,
        inputs,
        text,
        client,
        vision_model=settings.vision_model,
        text_model=settings.text_model,
    )


# -- Routes --


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/sheets/initialize")
def initialize(body: SheetRequest, store: TabularStore = Depends(get_store)) -> dict[str, Any]:
    result = initialize_store(store, _require_url(body.sheet_url))
    return {"success": True, **result.model_dump(by_alias=True)}


@app.get("/sheets/transactions")
def list_transactions(
    sheet_url: Optional[str] = Query(default=None, alias="sheetUrl"),
    order: Literal["sheet", "recent"] = Query(default="sheet"),
    store: TabularStore = Depends(get_store),
) -> dict[str, Any]:
    transactions = read_transactions(store, _require_url(sheet_url), order=order)
    return {
        "success": True,
        "count": len(transactions),
        "transactions": [txn.model_dump() for txn in transactions],
    }


@app.get("/transactions/summary")
def spending_summary(
    sheet_url: Optional[str] = Query(default=None, alias="sheetUrl"),
    store: TabularStore = Depends(get_store),
) -> dict[str, Any]:
    transactions = read_transactions(store, _require_url(sheet_url))
    return {"success": True, **summarize_spending(transactions).model_dump(by_alias=True)}


@app.post("/transactions/process")
async def process_transaction(
    image: Optional[UploadFile] = File(default=None),
    images: Optional[list[UploadFile]] = File(default=None),
    text: Optional[str] = Form(default=None),
    settings: Settings = Depends(get_settings),
    client: CompletionClient = Depends(get_completion_client),
) -> dict[str, Any]:
    items = await _extract_from_form(image, images, text, client, settings)
    return {"success": True, "items": [item.model_dump() for item in items]}


@app.post("/transactions/append")
def append_transactions(body: AppendRequest, store: TabularStore = Depends(get_store)) -> dict[str, Any]:
    result = append_line_items(store, _require_url(body.sheet_url), body.items)
    return {"success": True, **result.model_dump(by_alias=True)}


@app.post("/transactions/submit")
async def submit_transaction(
    sheet_url: Optional[str] = Form(default=None, alias="sheetUrl"),
    image: Optional[UploadFile] = File(default=None),
    images: Optional[list[UploadFile]] = File(default=None),
    text: Optional[str] = Form(default=None),
    settings: Settings = Depends(get_settings),
    store: TabularStore = Depends(get_store),
    client: CompletionClient = Depends(get_completion_client),
) -> dict[str, Any]:
    url = _require_url(sheet_url)
    items = await _extract_from_form(image, images, text, client, settings)
    result = await run_in_threadpool(append_line_items, store, url, items)
    return {
        "success": True,
        "items": [item.model_dump() for item in items],
        **result.model_dump(by_alias=True),
    }


@app.post("/chat/ask")
def chat_ask(
    body: AskRequest,
    settings: Settings = Depends(get_settings),
    store: TabularStore = Depends(get_store),
    client: CompletionClient = Depends(get_completion_client),
) -> dict[str, Any]:
    reply = ask(
        store,
        _require_url(body.sheet_url),
        body.question or "",
        body.conversation_history,
        client,
        model=settings.chat_model,
        row_limit=settings.context_row_limit,
        history_limit=settings.history_turn_limit,
    )
    return {"success": True, **reply.model_dump(by_alias=True, exclude_none=True)}


@app.post("/chat/append")
def chat_append(body: ChatAppendRequest, store: TabularStore = Depends(get_store)) -> dict[str, Any]:
    if not body.role or not body.message:
        raise MissingField("Role and message are required")
    entry = append_chat_entry(store, _require_url(body.sheet_url), body.role, body.message)
    return {"success": True, "entry": entry.model_dump()}


if __name__ == "__main__":
    settings = get_settings()
    setup_logging(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        json_format=settings.log_json,
    )
    uvicorn.run("api:app", host="0.0.0.0", port=settings.port, reload=False)
