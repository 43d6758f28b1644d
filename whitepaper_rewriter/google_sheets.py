from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Mapping, Sequence, Tuple

import logging
import ssl
import time

from google.oauth2.service_account import Credentials
from googleapiclient.discovery import Resource
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import HttpRequest
from httplib2 import HttpLib2Error

from .config import SheetsConfig
from .models import LOG_HEADER, DiffSpan, Grid

SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]

LOGGER = logging.getLogger(__name__)

HEADER_BACKGROUND = "#1A1A1A"
HEADER_FOREGROUND = "#FFFFFF"

_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
_MAX_RETRY_ATTEMPTS = 4
_INITIAL_BACKOFF_SECONDS = 1.0
_MAX_BACKOFF_SECONDS = 8.0
_RETRYABLE_EXCEPTIONS = (ssl.SSLEOFError, HttpLib2Error)


def quote_sheet_title(title: str) -> str:
    """Quote a tab title for use in an A1 range."""

    return "'" + title.replace("'", "''") + "'"


def hex_to_color(value: str) -> Dict[str, float]:
    """Convert ``#RRGGBB`` into a Sheets API color object."""

    text = value.lstrip("#")
    if len(text) != 6:
        raise ValueError(f"Expected a #RRGGBB color; received {value!r}")
    red, green, blue = (int(text[i : i + 2], 16) / 255.0 for i in (0, 2, 4))
    return {"red": red, "green": green, "blue": blue}


def utf16_offset(text: str, index: int) -> int:
    """Translate a code point index of ``text`` into UTF-16 code units."""

    return len(text[:index].encode("utf-16-le")) // 2


def build_text_format_runs(
    text: str,
    spans: Sequence[DiffSpan],
    color: str,
) -> List[Dict[str, Any]]:
    """Rich-text runs that color ``spans`` of ``text`` and reset the style after each."""

    runs: List[Dict[str, Any]] = []
    highlight = {"foregroundColor": hex_to_color(color)}
    text_length = len(text)
    for span in spans:
        if span.start >= span.end or span.start >= text_length:
            continue
        runs.append({"startIndex": utf16_offset(text, span.start), "format": highlight})
        if span.end < text_length:
            runs.append({"startIndex": utf16_offset(text, span.end), "format": {}})
    return runs


def _header_format() -> Dict[str, Any]:
    return {
        "backgroundColor": hex_to_color(HEADER_BACKGROUND),
        "textFormat": {
            "foregroundColor": hex_to_color(HEADER_FOREGROUND),
            "bold": True,
        },
    }


class GoogleSheetsClient:
    """Thin wrapper around the Google Sheets API for the whitepaper spreadsheet."""

    def __init__(self, conf: SheetsConfig) -> None:
        self._conf = conf
        self._service: Resource | None = None

    def _service_client(self) -> Resource:
        if self._service is None:
            creds = Credentials.from_service_account_file(
                str(self._conf.credentials_file), scopes=SCOPES
            )
            self._service = build("sheets", "v4", credentials=creds)
        return self._service

    # Reading -----------------------------------------------------------------
    def list_sheets(self) -> List[Tuple[str, int]]:
        """Return ``(title, sheetId)`` for every tab in workbook order."""

        def _build_request() -> HttpRequest:
            service = self._service_client()
            return service.spreadsheets().get(
                spreadsheetId=self._conf.spreadsheet_id,
                fields="sheets(properties(sheetId,title,index))",
            )

        result = self._execute_with_retry(_build_request, operation="list sheets")
        properties = [sheet.get("properties", {}) for sheet in result.get("sheets", [])]
        properties.sort(key=lambda item: item.get("index", 0))
        return [(item["title"], item["sheetId"]) for item in properties]

    def list_sheet_titles(self) -> List[str]:
        return [title for title, _ in self.list_sheets()]

    def fetch_grid(self, sheet_title: str) -> List[List[str]]:
        """Load all values of a tab as formatted strings."""

        def _build_request() -> HttpRequest:
            service = self._service_client()
            return (
                service.spreadsheets()
                .values()
                .get(
                    spreadsheetId=self._conf.spreadsheet_id,
                    range=quote_sheet_title(sheet_title),
                    valueRenderOption="FORMATTED_VALUE",
                )
            )

        result = self._execute_with_retry(_build_request, operation=f"fetch '{sheet_title}'")
        return result.get("values", [])

    def fetch_log_rows(self) -> List[List[str]]:
        """Load the revision log tab; empty when it does not exist yet."""

        if self._conf.log_sheet_name not in self.list_sheet_titles():
            return []
        return self.fetch_grid(self._conf.log_sheet_name)

    # Writing -----------------------------------------------------------------
    def write_grid(
        self,
        sheet_title: str,
        grid: Grid,
        highlights: Mapping[Tuple[int, int], Sequence[DiffSpan]],
        highlight_color: str,
    ) -> bool:
        """Replace a tab with ``grid`` and color the highlighted spans.

        The tab is created when missing. It is resized to exactly the grid's
        rows and columns so no empty rows or columns remain. Returns ``True``
        when the tab was created.
        """

        if not grid or not grid[0]:
            raise ValueError("Cannot write an empty grid")

        sheet_id, created = self._ensure_sheet(sheet_title)
        column_count = len(grid[0])

        rows_payload = []
        for row_idx, row in enumerate(grid):
            cells = []
            for col_idx in range(column_count):
                text = row[col_idx] if col_idx < len(row) else ""
                cell: Dict[str, Any] = {"userEnteredValue": {"stringValue": text}}
                if row_idx == 0:
                    cell["userEnteredFormat"] = _header_format()
                spans = highlights.get((row_idx, col_idx))
                if spans:
                    runs = build_text_format_runs(text, spans, highlight_color)
                    if runs:
                        cell["textFormatRuns"] = runs
                cells.append(cell)
            rows_payload.append({"values": cells})

        requests = [
            {
                "updateSheetProperties": {
                    "properties": {
                        "sheetId": sheet_id,
                        "gridProperties": {
                            "rowCount": len(grid),
                            "columnCount": column_count,
                        },
                    },
                    "fields": "gridProperties(rowCount,columnCount)",
                }
            },
            {
                "updateCells": {
                    "rows": rows_payload,
                    "fields": "userEnteredValue,userEnteredFormat,textFormatRuns",
                    "start": {"sheetId": sheet_id, "rowIndex": 0, "columnIndex": 0},
                }
            },
        ]
        self._batch_update(requests, operation=f"write '{sheet_title}'")
        LOGGER.info(
            "Wrote %s rows (%s highlighted cells) to '%s'",
            len(grid) - 1,
            len(highlights),
            sheet_title,
        )
        return created

    def append_log_rows(self, rows: Iterable[Sequence[str]]) -> None:
        """Append rows to the revision log tab, creating it with a header first."""

        values = [list(row) for row in rows]
        if not values:
            return

        title = self._conf.log_sheet_name
        sheet_id, created = self._ensure_sheet(title, column_count=len(LOG_HEADER))
        if created:
            self._batch_update(
                [
                    {
                        "updateCells": {
                            "rows": [
                                {
                                    "values": [
                                        {
                                            "userEnteredValue": {"stringValue": name},
                                            "userEnteredFormat": _header_format(),
                                        }
                                        for name in LOG_HEADER
                                    ]
                                }
                            ],
                            "fields": "userEnteredValue,userEnteredFormat",
                            "start": {"sheetId": sheet_id, "rowIndex": 0, "columnIndex": 0},
                        }
                    }
                ],
                operation="create log header",
            )

        def _append_request() -> HttpRequest:
            service = self._service_client()
            return (
                service.spreadsheets()
                .values()
                .append(
                    spreadsheetId=self._conf.spreadsheet_id,
                    range=f"{quote_sheet_title(title)}!A1",
                    valueInputOption="RAW",
                    insertDataOption="INSERT_ROWS",
                    body={"values": values},
                )
            )

        self._execute_with_retry(_append_request, operation="append log rows")

    # Internal ----------------------------------------------------------------
    def _ensure_sheet(self, title: str, *, column_count: int | None = None) -> Tuple[int, bool]:
        for existing_title, sheet_id in self.list_sheets():
            if existing_title == title:
                return sheet_id, False

        properties: Dict[str, Any] = {"title": title}
        if column_count is not None:
            properties["gridProperties"] = {"columnCount": column_count}
        response = self._batch_update(
            [{"addSheet": {"properties": properties}}],
            operation=f"create '{title}'",
        )
        replies = response.get("replies", [])
        sheet_id = replies[0]["addSheet"]["properties"]["sheetId"]
        LOGGER.info("Created sheet '%s'", title)
        return sheet_id, True

    def _batch_update(self, requests: List[Dict[str, Any]], *, operation: str) -> dict:
        def _build_request() -> HttpRequest:
            service = self._service_client()
            return service.spreadsheets().batchUpdate(
                spreadsheetId=self._conf.spreadsheet_id,
                body={"requests": requests},
            )

        return self._execute_with_retry(_build_request, operation=operation)

    def _reset_service(self) -> None:
        self._service = None

    def _execute_with_retry(
        self,
        request_builder: Callable[[], HttpRequest],
        *,
        operation: str,
    ) -> dict:
        """Run a Sheets request, retrying rate limits, 5xx and dropped connections.

        The request is rebuilt on a fresh service for every attempt; other
        errors propagate immediately.
        """

        for attempt in range(1, _MAX_RETRY_ATTEMPTS + 1):
            try:
                return request_builder().execute()
            except HttpError as exc:
                if getattr(exc.resp, "status", None) not in _RETRYABLE_STATUS_CODES:
                    raise
                failure: Exception = exc
            except _RETRYABLE_EXCEPTIONS as exc:
                failure = exc

            if attempt == _MAX_RETRY_ATTEMPTS:
                raise failure

            delay = min(_INITIAL_BACKOFF_SECONDS * 2 ** (attempt - 1), _MAX_BACKOFF_SECONDS)
            LOGGER.warning(
                "Sheets %s: attempt %s/%s failed (%s); next try in %.1fs",
                operation,
                attempt,
                _MAX_RETRY_ATTEMPTS,
                failure,
                delay,
            )
            self._reset_service()
            time.sleep(delay)

        raise RuntimeError(f"Sheets {operation} exhausted retries without an error")
