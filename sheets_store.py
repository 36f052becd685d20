"""
sheets_store.py - Tabular store adapter for the user's spreadsheet.

Two interchangeable backends implement the same range-addressed contract:

    GoogleSheetsStore  Google Sheets API v4 via a service account
    MemoryStore        process-local spreadsheet for development and tests

Both expose read / append / table lookup / batch format / merge, and both
report a missing tab as `TableNotFound` and every other failure as
`StoreUnavailable`. Callers never see googleapiclient exceptions.

Values are appended with USER_ENTERED semantics so date-like and number-like
strings become real date and number cells.
"""

from __future__ import annotations

import copy
import json
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable, Optional

from errors import ConfigurationError, StoreUnavailable, TableNotFound
from logging_config import get_logger

logger = get_logger(__name__)

TRANSACTIONS_TABLE = "Transactions"
CHAT_HISTORY_TABLE = "Chat History"

SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]

SPREADSHEET_URL_RE = re.compile(r"/spreadsheets/d/([a-zA-Z0-9-_]+)")

MISSING_TABLE_MARKERS = (
    "unable to parse range",
    "not found",
    "does not exist",
    "invalid range",
)


def match_table_title(titles: Iterable[str], table: str) -> Optional[str]:
    """Pick the existing tab title for `table`: exact, then case-insensitive, then trimmed."""
    candidates = list(titles)
    matchers = (
        lambda title: title == table,
        lambda title: title.lower() == table.lower(),
        lambda title: title.strip() == table.strip(),
    )
    for matcher in matchers:
        for title in candidates:
            if matcher(title):
                return title
    return None


def resolve_store_id(url: Optional[str]) -> Optional[str]:
    """Extract the spreadsheet id from a Google Sheets URL.

    Supports:
        https://docs.google.com/spreadsheets/d/SPREADSHEET_ID/edit
        https://docs.google.com/spreadsheets/d/SPREADSHEET_ID

    Returns None when the URL does not match; callers treat that as bad input.
    """
    if not url:
        return None
    match = SPREADSHEET_URL_RE.search(str(url).strip())
    return match.group(1) if match else None


def a1_range(table: str, range_spec: str) -> str:
    """Build an A1 reference with a quoted tab name, e.g. 'Chat History'!A:C."""
    escaped = table.replace("'", "''")
    return f"'{escaped}'!{range_spec}"


def merge_request(
    table_id: int,
    start_row: int,
    end_row: int,
    start_column: int,
    end_column: int,
) -> dict[str, Any]:
    """Build a MERGE_ALL request. Indices are 0-based, end-exclusive."""
    return {
        "mergeCells": {
            "range": {
                "sheetId": table_id,
                "startRowIndex": start_row,
                "endRowIndex": end_row,
                "startColumnIndex": start_column,
                "endColumnIndex": end_column,
            },
            "mergeType": "MERGE_ALL",
        }
    }


def _error_text(exc: Exception) -> str:
    parts = [str(exc)]
    reason = getattr(exc, "reason", None)
    if reason:
        parts.append(str(reason))
    content = getattr(exc, "content", None)
    if isinstance(content, bytes):
        parts.append(content.decode("utf-8", errors="replace"))
    return " ".join(parts).lower()


def _error_status(exc: Exception) -> Optional[int]:
    resp = getattr(exc, "resp", None)
    status = getattr(resp, "status", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def is_missing_table_error(exc: Exception) -> bool:
    """True when the store rejected a range because the tab does not exist."""
    if isinstance(exc, TableNotFound):
        return True
    if _error_status(exc) == 400:
        return True
    text = _error_text(exc)
    return any(marker in text for marker in MISSING_TABLE_MARKERS)


class TabularStore(ABC):
    """Range-addressed read/write/format contract against one spreadsheet."""

    @abstractmethod
    def read(self, store_id: str, table: str, range_spec: str) -> list[list[Any]]:
        """Return raw (display) cell values for the range, row by row."""

    @abstractmethod
    def append(
        self,
        store_id: str,
        table: str,
        rows: list[list[Any]],
        column_range: str,
    ) -> dict[str, Any]:
        """Insert rows after existing data with typed interpretation."""

    @abstractmethod
    def get_table_id(self, store_id: str, table: str) -> Optional[int]:
        """Return the numeric tab id, or None when the tab is absent."""

    @abstractmethod
    def get_or_create_table(self, store_id: str, table: str) -> int:
        """Return the tab id, creating the tab first when it is absent."""

    @abstractmethod
    def batch_format(self, store_id: str, requests: list[dict[str, Any]]) -> None:
        """Apply formatting/merge requests as one batch."""

    def merge_cells(
        self,
        store_id: str,
        table_id: int,
        row_range: tuple[int, int],
        column_range: tuple[int, int],
    ) -> None:
        """Merge one rectangle (0-based, end-exclusive row and column ranges)."""
        self.batch_format(
            store_id,
            [merge_request(table_id, row_range[0], row_range[1], column_range[0], column_range[1])],
        )

    def ensure_table(self, store_id: str, table: str, error_cls: type[TableNotFound] = TableNotFound) -> None:
        """Read A1 of a tab, re-raising a missing tab as `error_cls`."""
        try:
            self.read(store_id, table, "A1:A1")
        except TableNotFound as exc:
            raise error_cls(**exc.details) from exc


# -- Google Sheets backend --


class GoogleSheetsStore(TabularStore):
    """Google Sheets API v4 backend.

    The API client is built lazily from service-account JSON so constructing
    the store never touches the network. One store instance serves one request.
    """

    def __init__(
        self,
        credentials_json: Optional[str] = None,
        timeout: float = 30.0,
        service: Any = None,
    ) -> None:
        self._credentials_json = credentials_json
        self._timeout = timeout
        self._service = service

    @property
    def service(self) -> Any:
        if self._service is None:
            self._service = self._build_service()
        return self._service

    def _build_service(self) -> Any:
        if not self._credentials_json:
            raise ConfigurationError("GCP_SA_CREDENTIALS environment variable is required")
        try:
            info = json.loads(self._credentials_json)
        except json.JSONDecodeError as exc:
            logger.error("sheets_auth_error | reason='credentials are not valid JSON' | error=%s", exc)
            raise ConfigurationError("Invalid GCP_SA_CREDENTIALS format. Expected valid JSON.") from exc

        try:
            import httplib2
            from google.oauth2 import service_account
            from google_auth_httplib2 import AuthorizedHttp
            from googleapiclient.discovery import build

            credentials = service_account.Credentials.from_service_account_info(info, scopes=SCOPES)
            http = AuthorizedHttp(credentials, http=httplib2.Http(timeout=self._timeout))
            return build("sheets", "v4", http=http, cache_discovery=False)
        except ImportError as exc:
            raise ConfigurationError(
                "Google Sheets backend requires google-api-python-client and google-auth. "
                "Install with: pip install google-api-python-client google-auth google-auth-httplib2"
            ) from exc
        except ValueError as exc:
            logger.error("sheets_auth_error | error_type=%s | error=%s", type(exc).__name__, exc)
            raise ConfigurationError("Invalid GCP_SA_CREDENTIALS contents.") from exc

    def _execute(self, request: Any, action: str, table: Optional[str] = None) -> dict[str, Any]:
        try:
            return request.execute() or {}
        except Exception as exc:
            if table is not None and is_missing_table_error(exc):
                logger.warning(
                    "sheets_table_missing | action=%s | table=%r | error=%s",
                    action,
                    table,
                    exc,
                )
                raise TableNotFound(f"{table} sheet not found") from exc
            logger.error(
                "sheets_request_error | action=%s | table=%r | status=%s | error_type=%s | error=%s",
                action,
                table,
                _error_status(exc),
                type(exc).__name__,
                exc,
            )
            raise StoreUnavailable() from exc

    def read(self, store_id: str, table: str, range_spec: str) -> list[list[Any]]:
        request = self.service.spreadsheets().values().get(
            spreadsheetId=store_id,
            range=a1_range(table, range_spec),
        )
        result = self._execute(request, "read", table)
        rows = result.get("values", []) or []
        logger.debug("sheets_read | table=%r | range=%s | rows=%s", table, range_spec, len(rows))
        return rows

    def append(
        self,
        store_id: str,
        table: str,
        rows: list[list[Any]],
        column_range: str,
    ) -> dict[str, Any]:
        request = self.service.spreadsheets().values().append(
            spreadsheetId=store_id,
            range=a1_range(table, column_range),
            valueInputOption="USER_ENTERED",
            insertDataOption="INSERT_ROWS",
            body={"values": rows},
        )
        result = self._execute(request, "append", table)
        logger.info(
            "sheets_append | table=%r | rows=%s | updated_range=%s",
            table,
            len(rows),
            (result.get("updates") or {}).get("updatedRange"),
        )
        return result

    def _list_tables(self, store_id: str) -> list[dict[str, Any]]:
        request = self.service.spreadsheets().get(
            spreadsheetId=store_id,
            fields="sheets.properties(sheetId,title)",
        )
        result = self._execute(request, "metadata")
        return [sheet.get("properties") or {} for sheet in result.get("sheets", []) or []]

    def _find_table_id(self, store_id: str, table: str) -> tuple[Optional[int], list[str]]:
        ids = {
            str(props.get("title", "")): int(props["sheetId"])
            for props in self._list_tables(store_id)
            if props.get("sheetId") is not None
        }
        title = match_table_title(ids, table)
        return (ids[title] if title is not None else None), list(ids)

    def get_table_id(self, store_id: str, table: str) -> Optional[int]:
        table_id, titles = self._find_table_id(store_id, table)
        if table_id is None:
            logger.warning("sheets_table_lookup_miss | table=%r | available=%s", table, titles)
            return None
        logger.debug("sheets_table_found | table=%r | table_id=%s", table, table_id)
        return table_id

    def get_or_create_table(self, store_id: str, table: str) -> int:
        table_id, _ = self._find_table_id(store_id, table)
        if table_id is not None:
            return table_id

        request = self.service.spreadsheets().batchUpdate(
            spreadsheetId=store_id,
            body={"requests": [{"addSheet": {"properties": {"title": table}}}]},
        )
        result = self._execute(request, "add_sheet")
        replies = result.get("replies") or [{}]
        new_id = ((replies[0].get("addSheet") or {}).get("properties") or {}).get("sheetId")
        if new_id is None:
            logger.error("sheets_add_sheet_error | table=%r | reason='no sheetId in reply'", table)
            raise StoreUnavailable(f"Failed to create sheet: {table}")
        logger.info("sheets_table_created | table=%r | table_id=%s", table, new_id)
        return int(new_id)

    def batch_format(self, store_id: str, requests: list[dict[str, Any]]) -> None:
        if not requests:
            return
        request = self.service.spreadsheets().batchUpdate(
            spreadsheetId=store_id,
            body={"requests": requests},
        )
        self._execute(request, "batch_update")
        logger.debug("sheets_batch_update | requests=%s", len(requests))


# -- In-memory backend --

_COLUMN_RE = re.compile(r"^([A-Z]+)(\d*)$")
_MDY_RE = re.compile(r"^\d{1,2}/\d{1,2}/\d{4}$")
_ISO_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_NUMBER_RE = re.compile(r"^-?\$?-?[\d,]*\.?\d+$")


def _column_index(letters: str) -> int:
    index = 0
    for char in letters:
        index = index * 26 + (ord(char) - ord("A") + 1)
    return index - 1


def _parse_range(range_spec: str) -> tuple[int, Optional[int], int, Optional[int]]:
    """Parse 'A2:E', 'A:E', 'A1:A1' into 0-based (row0, row_end, col0, col_end)."""
    parts = range_spec.strip().upper().split(":")
    if not parts or len(parts) > 2:
        raise ValueError(f"Unable to parse range: {range_spec}")

    first = _COLUMN_RE.match(parts[0])
    last = _COLUMN_RE.match(parts[-1])
    if not first or not last:
        raise ValueError(f"Unable to parse range: {range_spec}")

    row_start = int(first.group(2)) - 1 if first.group(2) else 0
    row_end = int(last.group(2)) if last.group(2) else None
    col_start = _column_index(first.group(1))
    col_end = _column_index(last.group(1)) + 1
    return row_start, row_end, col_start, col_end


def _interpret_user_entered(value: Any) -> Any:
    """Mimic USER_ENTERED parsing: dates and numbers become typed cells."""
    if not isinstance(value, str):
        return value
    text = value.strip()
    if not text:
        return ""
    if _MDY_RE.match(text):
        try:
            return datetime.strptime(text, "%m/%d/%Y").date()
        except ValueError:
            return value
    if _ISO_RE.match(text):
        try:
            return datetime.strptime(text, "%Y-%m-%d").date()
        except ValueError:
            return value
    if _NUMBER_RE.match(text):
        try:
            return float(text.replace("$", "").replace(",", ""))
        except ValueError:
            return value
    return value


def _render_number(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return ("%.10f" % value).rstrip("0").rstrip(".")


@dataclass
class _MemoryTable:
    table_id: int
    title: str
    rows: list[list[Any]] = field(default_factory=list)
    cell_formats: dict[tuple, dict[str, Any]] = field(default_factory=dict)
    borders: dict[tuple, dict[str, Any]] = field(default_factory=dict)
    column_widths: dict[int, int] = field(default_factory=dict)
    frozen_rows: int = 0
    merges: list[tuple[int, int, int, int]] = field(default_factory=list)

    def set_cell(self, row: int, column: int, value: Any) -> None:
        while len(self.rows) <= row:
            self.rows.append([])
        cells = self.rows[row]
        while len(cells) <= column:
            cells.append("")
        cells[column] = value

    def last_data_row(self) -> int:
        """Index one past the last row holding any non-empty cell."""
        for index in range(len(self.rows) - 1, -1, -1):
            if any(cell not in ("", None) for cell in self.rows[index]):
                return index + 1
        return 0

    def number_format(self, row: int, column: int) -> Optional[dict[str, Any]]:
        found: Optional[dict[str, Any]] = None
        for (r0, r1, c0, c1), fmt in self.cell_formats.items():
            in_rows = row >= r0 and (r1 is None or row < r1)
            in_cols = column >= c0 and (c1 is None or column < c1)
            if in_rows and in_cols and "numberFormat" in fmt:
                found = fmt["numberFormat"]
        return found

    def render(self, row: int, column: int, value: Any) -> Any:
        fmt = self.number_format(row, column) or {}
        if isinstance(value, (date, datetime)):
            if fmt.get("type") == "DATE" and fmt.get("pattern") == "mmmm d, yyyy":
                return f"{value:%B} {value.day}, {value.year}"
            return f"{value.month}/{value.day}/{value.year}"
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            if fmt.get("type") == "CURRENCY":
                return f"${value:,.2f}"
            return _render_number(float(value))
        return "" if value is None else str(value)


def _grid_key(grid: dict[str, Any]) -> tuple:
    return (
        int(grid.get("startRowIndex", 0)),
        grid.get("endRowIndex"),
        int(grid.get("startColumnIndex", 0)),
        grid.get("endColumnIndex"),
    )


class MemoryStore(TabularStore):
    """Process-local spreadsheet honoring the same contract as Google Sheets.

    Spreadsheets are created on first access with a default 'Sheet1' tab, like
    a freshly created Google spreadsheet. Reads return display values: dates
    and currency render through the formats applied by `batch_format`.
    """

    def __init__(self) -> None:
        self._spreadsheets: dict[str, dict[str, _MemoryTable]] = {}
        self._next_table_id = 1
        self._lock = threading.Lock()

    def _tables(self, store_id: str) -> dict[str, _MemoryTable]:
        if store_id not in self._spreadsheets:
            self._spreadsheets[store_id] = {"Sheet1": _MemoryTable(table_id=0, title="Sheet1")}
        return self._spreadsheets[store_id]

    def _table(self, store_id: str, table: str, range_spec: str = "A1") -> _MemoryTable:
        tables = self._tables(store_id)
        # A1 sheet names resolve case-insensitively.
        for title, target in tables.items():
            if title.lower() == table.lower():
                return target
        raise TableNotFound(
            f"{table} sheet not found",
            reason=f"Unable to parse range: {table}!{range_spec}",
        )

    def read(self, store_id: str, table: str, range_spec: str) -> list[list[Any]]:
        with self._lock:
            target = self._table(store_id, table, range_spec)
            try:
                row_start, row_end, col_start, col_end = _parse_range(range_spec)
            except ValueError as exc:
                raise TableNotFound(f"{table} sheet not found", reason=str(exc)) from exc

            stop = target.last_data_row() if row_end is None else min(row_end, target.last_data_row())
            result: list[list[Any]] = []
            for row_index in range(row_start, stop):
                cells = target.rows[row_index] if row_index < len(target.rows) else []
                rendered = [
                    target.render(row_index, col, cells[col] if col < len(cells) else "")
                    for col in range(col_start, col_end if col_end is not None else len(cells))
                ]
                while rendered and rendered[-1] == "":
                    rendered.pop()
                result.append(rendered)

            while result and not result[-1]:
                result.pop()
            return result

    def append(
        self,
        store_id: str,
        table: str,
        rows: list[list[Any]],
        column_range: str,
    ) -> dict[str, Any]:
        with self._lock:
            target = self._table(store_id, table, column_range)
            _, _, col_start, _ = _parse_range(column_range)
            first_row = target.last_data_row()
            for offset, values in enumerate(rows):
                for col_offset, value in enumerate(values):
                    target.set_cell(first_row + offset, col_start + col_offset, _interpret_user_entered(value))
            return {
                "updates": {
                    "updatedRange": f"{table}!A{first_row + 1}:E{first_row + len(rows)}",
                    "updatedRows": len(rows),
                }
            }

    def get_table_id(self, store_id: str, table: str) -> Optional[int]:
        with self._lock:
            tables = self._tables(store_id)
            title = match_table_title(tables, table)
            return tables[title].table_id if title is not None else None

    def get_or_create_table(self, store_id: str, table: str) -> int:
        with self._lock:
            tables = self._tables(store_id)
            existing = match_table_title(tables, table)
            if existing is not None:
                return tables[existing].table_id
            tables[table] = _MemoryTable(table_id=self._next_table_id, title=table)
            self._next_table_id += 1
            logger.info("memory_table_created | table=%r | table_id=%s", table, tables[table].table_id)
            return tables[table].table_id

    def batch_format(self, store_id: str, requests: list[dict[str, Any]]) -> None:
        with self._lock:
            tables = self._tables(store_id)
            # Apply to a copy so a bad request leaves the spreadsheet untouched.
            staged = copy.deepcopy(tables)
            by_id = {target.table_id: target for target in staged.values()}
            for request in requests:
                self._apply(by_id, request)
            self._spreadsheets[store_id] = staged

    @staticmethod
    def _apply(by_id: dict[int, _MemoryTable], request: dict[str, Any]) -> None:
        if len(request) != 1:
            raise StoreUnavailable("Invalid batch request")
        kind, body = next(iter(request.items()))

        if kind == "updateSheetProperties":
            props = body.get("properties") or {}
            target = by_id.get(props.get("sheetId"))
            if target is None:
                raise StoreUnavailable(f"No grid with id: {props.get('sheetId')}")
            grid = props.get("gridProperties") or {}
            if "frozenRowCount" in grid:
                target.frozen_rows = int(grid["frozenRowCount"])
            return

        grid_range = body.get("range") or {}
        target = by_id.get(grid_range.get("sheetId"))
        if target is None:
            raise StoreUnavailable(f"No grid with id: {grid_range.get('sheetId')}")

        if kind == "updateCells":
            row0 = int(grid_range.get("startRowIndex", 0))
            col0 = int(grid_range.get("startColumnIndex", 0))
            for r_offset, row in enumerate(body.get("rows") or []):
                for c_offset, cell in enumerate(row.get("values") or []):
                    entered = cell.get("userEnteredValue") or {}
                    value = entered.get("stringValue", entered.get("numberValue", ""))
                    target.set_cell(row0 + r_offset, col0 + c_offset, value)
        elif kind == "repeatCell":
            fmt = (body.get("cell") or {}).get("userEnteredFormat") or {}
            target.cell_formats[_grid_key(grid_range)] = copy.deepcopy(fmt)
        elif kind == "updateDimensionProperties":
            if grid_range.get("dimension") == "COLUMNS":
                size = int((body.get("properties") or {}).get("pixelSize", 100))
                for column in range(int(grid_range["startIndex"]), int(grid_range["endIndex"])):
                    target.column_widths[column] = size
        elif kind == "updateBorders":
            borders = {key: value for key, value in body.items() if key != "range"}
            target.borders[_grid_key(grid_range)] = copy.deepcopy(borders)
        elif kind == "mergeCells":
            merge = _grid_key(grid_range)
            if merge not in target.merges:
                target.merges.append(merge)
        else:
            raise StoreUnavailable(f"Unsupported request: {kind}")

    def snapshot(self, store_id: str, table: str) -> dict[str, Any]:
        """Deep copy of one tab's raw values and presentation state."""
        with self._lock:
            target = self._table(store_id, table)
            return copy.deepcopy(
                {
                    "table_id": target.table_id,
                    "rows": target.rows,
                    "cell_formats": target.cell_formats,
                    "borders": target.borders,
                    "column_widths": target.column_widths,
                    "frozen_rows": target.frozen_rows,
                    "merges": target.merges,
                }
            )


_memory_store: Optional[MemoryStore] = None
_memory_store_lock = threading.Lock()


def shared_memory_store() -> MemoryStore:
    """Process-wide MemoryStore used when STORE_BACKEND=memory."""
    global _memory_store
    with _memory_store_lock:
        if _memory_store is None:
            _memory_store = MemoryStore()
        return _memory_store


def build_store(settings: Any) -> TabularStore:
    """Return the store backend selected by settings.store_backend."""
    if settings.store_backend == "memory":
        return shared_memory_store()
    return GoogleSheetsStore(
        credentials_json=settings.gcp_sa_credentials,
        timeout=settings.sheets_timeout_seconds,
    )
