"""Batch revision of commented rows with per-batch failure containment."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .diff import DIFF_MODE_LCS, DIFF_MODES
from .errors import EmptySheetError, InvalidInputError
from .models import CommentedRow, DiffSpan, Grid, LogType, RevisedGrid, RevisionSummary
from .pipeline import (
    build_revised_row,
    chunk_rows,
    collect_commented_rows,
    match_results,
    normalize_grid,
    parse_rewrite_response,
    row_highlights,
)
from .revision_log import RevisionLog
from .rewriter import RewriteCollaborator
from .schema import build_row_schema

LOGGER = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 5
_POLL_SECONDS = 0.2


@dataclass(slots=True)
class _Dispatch:
    batch_index: int
    rows: List[CommentedRow]
    started_at: float


class _RevisionRun:
    """Mutable state of one run; only the dispatching thread touches it."""

    def __init__(
        self,
        grid: Grid,
        log: RevisionLog,
        batch_count: int,
        diff_mode: str,
        max_diff_chars: Optional[int],
    ) -> None:
        self.header = grid[0]
        self.source = grid
        # one slot per source row; every slot starts as an unchanged copy
        self.output: Grid = [list(row) for row in grid]
        self.highlights: Dict[Tuple[int, int], List[DiffSpan]] = {}
        self.log = log
        self.batch_count = batch_count
        self.diff_mode = diff_mode
        self.max_diff_chars = max_diff_chars
        self.summary = RevisionSummary(total_rows=len(grid) - 1)

    def apply_success(self, dispatch: _Dispatch, payload: Any) -> None:
        results = parse_rewrite_response(payload, self.header)
        matched, discarded = match_results(dispatch.rows, results)
        missing = [row.row_index for row in dispatch.rows if row.row_index not in matched]

        # build every revised row first; nothing is committed if one of them fails
        revisions: List[Tuple[int, List[str], Dict[int, List[DiffSpan]]]] = []
        for row in dispatch.rows:
            result = matched.get(row.row_index)
            if result is None:
                continue
            revised = build_revised_row(self.header, row.values, result)
            spans_by_col = row_highlights(
                row.values,
                revised,
                diff_mode=self.diff_mode,
                max_diff_chars=self.max_diff_chars,
            )
            revisions.append((row.row_index, revised, spans_by_col))

        self.log.record(
            LogType.API_RESPONSE,
            "SUCCESS",
            f"Batch {dispatch.batch_index + 1}/{self.batch_count} processed successfully",
            batch_index=dispatch.batch_index,
            detail={
                "rowsReturned": len(results),
                "rowsApplied": sorted(matched),
                "discardedRowIndexes": discarded,
                "missingRowIndexes": missing,
                "durationMs": int((time.monotonic() - dispatch.started_at) * 1000),
            },
        )
        if discarded:
            LOGGER.warning(
                "Batch %s returned rows that were not requested: %s",
                dispatch.batch_index + 1,
                discarded,
            )

        for row_index, revised, spans_by_col in revisions:
            self.output[row_index] = revised
            for col, spans in spans_by_col.items():
                self.highlights[(row_index, col)] = spans
        self.summary.revised_rows += len(revisions)
        self.summary.fallback_rows += len(missing)

    def apply_failure(self, dispatch: _Dispatch, exc: BaseException) -> None:
        self.summary.failed_batches += 1
        self.summary.fallback_rows += len(dispatch.rows)
        LOGGER.warning(
            "Batch %s/%s failed; copying %s rows unchanged: %s",
            dispatch.batch_index + 1,
            self.batch_count,
            len(dispatch.rows),
            exc,
        )
        self.log.record(
            LogType.ERROR,
            "FAILED",
            f"Batch failed: {exc}",
            batch_index=dispatch.batch_index,
            detail={
                "error": type(exc).__name__,
                "message": str(exc),
                "rowIndexes": [row.row_index for row in dispatch.rows],
            },
        )

    def apply_cancelled(self, unprocessed: Sequence[CommentedRow]) -> None:
        self.summary.cancelled = True
        self.summary.unprocessed_rows = len(unprocessed)
        self.summary.fallback_rows += len(unprocessed)
        self.log.record(
            LogType.ERROR,
            "CANCELLED",
            "Revision cancelled before all batches completed",
            detail={
                "unprocessedRows": len(unprocessed),
                "rowIndexes": [row.row_index for row in unprocessed],
            },
        )

    def build(self) -> RevisedGrid:
        return RevisedGrid(rows=self.output, highlights=self.highlights, summary=self.summary)


def _should_cancel(cancel_event: Optional[threading.Event], deadline: Optional[float]) -> bool:
    if cancel_event is not None and cancel_event.is_set():
        return True
    return deadline is not None and time.monotonic() >= deadline


def run_revision(
    source_grid: Sequence[Sequence[Any]],
    rewriter: RewriteCollaborator,
    log: RevisionLog,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    max_workers: int = 1,
    diff_mode: str = DIFF_MODE_LCS,
    max_diff_chars: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None,
    run_timeout: Optional[float] = None,
) -> RevisedGrid:
    """Rewrite every commented row of ``source_grid`` batch by batch.

    Output rows keep the source order. A failed batch (any exception from the
    collaborator or an unreadable response) is logged and its rows are copied
    unchanged; the remaining batches still run. Setting ``cancel_event`` or
    exceeding ``run_timeout`` stops dispatching and leaves every row that has
    not been revised as an unchanged copy.

    Raises:
        EmptySheetError: the grid has no data rows.
        InvalidInputError: bad header, batch size or worker count.
    """

    if len(source_grid) < 2:
        raise EmptySheetError("Source sheet has no data rows")
    if batch_size <= 0:
        raise InvalidInputError(f"batch_size must be positive; received {batch_size}")
    if max_workers <= 0:
        raise InvalidInputError(f"max_workers must be positive; received {max_workers}")
    if diff_mode not in DIFF_MODES:
        raise InvalidInputError(f"diff_mode must be one of {DIFF_MODES}; received {diff_mode!r}")

    grid = normalize_grid(source_grid)
    header = grid[0]
    commented = collect_commented_rows(grid)
    batches = chunk_rows(commented, batch_size)
    schema = build_row_schema(header) if batches else None

    run = _RevisionRun(grid, log, len(batches), diff_mode, max_diff_chars)
    run.summary.commented_rows = len(commented)

    log.record(
        LogType.INFO,
        "COLLECTED",
        f"Found {len(commented)} commented rows",
        detail={
            "totalRows": run.summary.total_rows,
            "commentedRows": len(commented),
            "batches": len(batches),
            "batchSize": batch_size,
        },
    )

    deadline = time.monotonic() + run_timeout if run_timeout else None
    poll = _POLL_SECONDS if cancel_event is not None or deadline is not None else None
    pending: Dict[Future, _Dispatch] = {}
    next_batch = 0
    cancelled = False

    executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="rewrite-batch")
    try:
        while next_batch < len(batches) or pending:
            if _should_cancel(cancel_event, deadline):
                cancelled = True
                break

            while next_batch < len(batches) and len(pending) < max_workers:
                rows = batches[next_batch]
                log.record(
                    LogType.API_REQUEST,
                    "SENDING",
                    f"Processing batch {next_batch + 1}/{len(batches)}",
                    batch_index=next_batch,
                    detail={
                        "batchSize": len(rows),
                        "rowIndexes": [row.row_index for row in rows],
                    },
                )
                future = executor.submit(rewriter.rewrite, rows, header, schema)
                pending[future] = _Dispatch(next_batch, rows, time.monotonic())
                next_batch += 1

            done, _ = wait(list(pending), timeout=poll, return_when=FIRST_COMPLETED)
            for future in done:
                dispatch = pending.pop(future)
                try:
                    run.apply_success(dispatch, future.result())
                except Exception as exc:
                    run.apply_failure(dispatch, exc)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    if cancelled:
        unprocessed = [row for dispatch in pending.values() for row in dispatch.rows]
        for rows in batches[next_batch:]:
            unprocessed.extend(rows)
        unprocessed.sort(key=lambda row: row.row_index)
        run.apply_cancelled(unprocessed)

    summary = run.summary
    LOGGER.info(
        "Revision complete: %s rows, %s revised, %s unchanged fallbacks, %s failed batches",
        summary.total_rows,
        summary.revised_rows,
        summary.fallback_rows,
        summary.failed_batches,
    )
    log.record(
        LogType.INFO,
        "COMPLETED",
        "Rewrite process completed" if not cancelled else "Rewrite process partially completed",
        detail=summary.to_dict(),
    )
    return run.build()
