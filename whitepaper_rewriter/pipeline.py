from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .diff import DIFF_MODE_LCS, highlight_spans
from .errors import BatchParseError, EmptySheetError, InvalidInputError
from .models import CommentedRow, DiffSpan, Grid, RewriteResult
from .schema import ROW_INDEX_KEY

LOGGER = logging.getLogger(__name__)


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def normalize_grid(values: Sequence[Sequence[Any]]) -> Grid:
    """Return a copy where every row has the same column count.

    The width is that of the longest row, header included. The Sheets API
    drops trailing blank cells, so a blank comment header or a short row is
    padded with empty cells rather than shifting the comment column left.
    """

    if not values:
        return []
    if not values[0]:
        raise InvalidInputError("Header row is empty; the comment column cannot be located")
    width = max(len(row) for row in values)

    grid: Grid = []
    for row in values:
        cells = [_cell_text(cell) for cell in row]
        cells.extend([""] * (width - len(cells)))
        grid.append(cells)
    return grid


def collect_commented_rows(grid: Sequence[Sequence[Any]]) -> List[CommentedRow]:
    """Collect data rows whose rightmost (comment) cell is not blank."""

    if len(grid) < 2:
        raise EmptySheetError("Source sheet has no data rows")

    normalized = normalize_grid(grid)
    header = normalized[0]
    comment_idx = len(header) - 1
    field_names = header[:comment_idx]

    rows: List[CommentedRow] = []
    for row_index in range(1, len(normalized)):
        values = normalized[row_index]
        comment = values[comment_idx].strip()
        if not comment:
            continue
        rows.append(
            CommentedRow(
                row_index=row_index,
                fields={name: values[idx] for idx, name in enumerate(field_names)},
                comment=comment,
                values=list(values),
            )
        )
    return rows


def chunk_rows(rows: Sequence[CommentedRow], batch_size: int) -> List[List[CommentedRow]]:
    """Split rows into consecutive batches of ``batch_size`` (the last may be shorter)."""

    if batch_size <= 0:
        raise InvalidInputError(f"batch_size must be positive; received {batch_size}")
    return [list(rows[start : start + batch_size]) for start in range(0, len(rows), batch_size)]


def _coerce_row_index(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def parse_rewrite_response(payload: Any, headers: Sequence[str]) -> List[RewriteResult]:
    """Turn a ``{"rows": [...]}`` payload into rewrite results.

    Keys that are not headers are dropped; rows without a usable ``row_index``
    are skipped. A payload without a ``rows`` list raises ``BatchParseError``.
    """

    if not isinstance(payload, dict):
        raise BatchParseError(f"Rewrite response must be an object; received {type(payload).__name__}")
    rows_block = payload.get("rows")
    if not isinstance(rows_block, list):
        raise BatchParseError("Rewrite response does not contain a 'rows' array")

    allowed = set(headers)
    results: List[RewriteResult] = []
    for item in rows_block:
        if not isinstance(item, dict):
            LOGGER.warning("Ignoring non-object row in rewrite response: %r", item)
            continue
        row_index = _coerce_row_index(item.get(ROW_INDEX_KEY))
        if row_index is None:
            LOGGER.warning(
                "Ignoring rewrite row with invalid row_index: %r", item.get(ROW_INDEX_KEY)
            )
            continue
        fields: Dict[str, str] = {}
        for key, value in item.items():
            if key == ROW_INDEX_KEY or key not in allowed or value is None:
                continue
            fields[key] = _cell_text(value)
        results.append(RewriteResult(row_index=row_index, fields=fields))
    return results


def match_results(
    batch: Sequence[CommentedRow],
    results: Sequence[RewriteResult],
) -> Tuple[Dict[int, RewriteResult], List[int]]:
    """Pair results with batch rows by ``row_index``.

    Returns the matches and the row indices of discarded results. When the
    collaborator answers the same row twice, the first answer wins.
    """

    requested = {row.row_index for row in batch}
    matched: Dict[int, RewriteResult] = {}
    discarded: List[int] = []
    for result in results:
        if result.row_index not in requested or result.row_index in matched:
            discarded.append(result.row_index)
            continue
        matched[result.row_index] = result
    return matched, discarded


def build_revised_row(
    header: Sequence[str],
    original: Sequence[str],
    result: RewriteResult,
) -> List[str]:
    """Apply returned field values to a row; the comment column is never rewritten."""

    comment_idx = len(header) - 1
    revised = list(original)
    for idx, name in enumerate(header[:comment_idx]):
        if name in result.fields:
            revised[idx] = result.fields[name]
    return revised


def row_highlights(
    original: Sequence[str],
    revised: Sequence[str],
    *,
    diff_mode: str = DIFF_MODE_LCS,
    max_diff_chars: Optional[int] = None,
) -> Dict[int, List[DiffSpan]]:
    """Inserted spans per column index for cells that changed."""

    highlights: Dict[int, List[DiffSpan]] = {}
    for col, (old_text, new_text) in enumerate(zip(original, revised)):
        if old_text == new_text:
            continue
        spans = highlight_spans(old_text, new_text, mode=diff_mode, max_chars=max_diff_chars)
        if spans:
            highlights[col] = spans
    return highlights
