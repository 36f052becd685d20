"""
errors.py - Error taxonomy shared by every pipeline stage.

Each error carries a stable `code`, a user-presentable `message` and the HTTP
status the API layer answers with. Provider exceptions (OpenAI, Google) are
converted into one of these where they occur and never leak past a module.

Categories:
    input       -> 400  (caller can fix the request)
    not found   -> 404  (target table missing; caller may initialize)
    conflict    -> 409  (duplicate; resolution is user confirmation)
    extraction  -> 400/422/502
    fatal       -> 500/502/503
"""

from __future__ import annotations

from typing import Any, Optional


class ExpenseError(Exception):
    """Base class for all errors the service reports to callers."""

    code = "internal_error"
    default_message = "Unexpected server error."
    status_code = 500

    def __init__(self, message: Optional[str] = None, **details: Any) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": False, "error": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


# -- Input errors --


class InvalidStoreUrl(ExpenseError):
    code = "invalid_store_url"
    default_message = "Invalid Google Sheets URL"
    status_code = 400


class MissingField(ExpenseError):
    code = "missing_field"
    default_message = "A required field is missing"
    status_code = 400


class NoInputProvided(ExpenseError):
    code = "no_input_provided"
    default_message = "Either an image or text is required"
    status_code = 400


# -- Collaborator-not-found errors --


class TableNotFound(ExpenseError):
    code = "table_not_found"
    default_message = "Sheet not found"
    status_code = 404


class TransactionsTableNotFound(TableNotFound):
    code = "transactions_table_not_found"
    default_message = "Transactions sheet not found"


class ChatHistoryTableNotFound(TableNotFound):
    code = "chat_history_table_not_found"
    default_message = "Chat History sheet not found"


# -- Extraction / validation errors --


class ImageUploadFailed(ExpenseError):
    code = "image_upload_failed"
    default_message = "Failed to process the uploaded image"
    status_code = 400


class ExtractionFailed(ExpenseError):
    code = "extraction_failed"
    default_message = "OpenAI failed to respond"
    status_code = 502


class NoReceiptDetected(ExpenseError):
    code = "no_receipt_detected"
    default_message = "No valid transaction items extracted"
    status_code = 422


# -- Conflict --


class DuplicateDetected(ExpenseError):
    code = "duplicate_detected"
    default_message = "This transaction appears to already be in your spreadsheet"
    status_code = 409


# -- Fatal transport / server errors --


class ConfigurationError(ExpenseError):
    code = "configuration_error"
    default_message = "Server is not configured"
    status_code = 500


class StoreUnavailable(ExpenseError):
    code = "store_unavailable"
    default_message = "Spreadsheet service unavailable"
    status_code = 503


class AppendFailed(ExpenseError):
    code = "append_failed"
    default_message = "Failed to append transactions"
    status_code = 500


class ReadFailed(ExpenseError):
    code = "read_failed"
    default_message = "Failed to read transactions"
    status_code = 500


class InitializationFailed(ExpenseError):
    code = "initialization_failed"
    default_message = "Failed to initialize spreadsheet"
    status_code = 500


class LLMUnavailable(ExpenseError):
    code = "llm_unavailable"
    default_message = "OpenAI failed to respond"
    status_code = 502
