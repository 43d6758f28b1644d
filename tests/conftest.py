"""Shared test fixtures for whitepaper_rewriter."""

from __future__ import annotations

import threading
from typing import Any, Callable, Dict, List, Sequence

import pytest

from whitepaper_rewriter.models import CommentedRow
from whitepaper_rewriter.revision_log import RevisionLog

Responder = Callable[[int, Sequence[CommentedRow], Sequence[str], Dict[str, Any]], Dict[str, Any]]


class FakeRewriter:
    """Rewrite collaborator driven by a responder function.

    The responder receives the zero-based call number, so tests can fail or
    alter a specific batch.
    """

    def __init__(self, responder: Responder) -> None:
        self._responder = responder
        self._lock = threading.Lock()
        self.calls: List[List[int]] = []
        self.schemas: List[Dict[str, Any]] = []

    def rewrite(
        self,
        batch: Sequence[CommentedRow],
        headers: Sequence[str],
        schema: Dict[str, Any],
    ) -> Dict[str, Any]:
        with self._lock:
            call_number = len(self.calls)
            self.calls.append([row.row_index for row in batch])
            self.schemas.append(schema)
        return self._responder(call_number, batch, headers, schema)


def append_to_column(column: str, suffix: str) -> Responder:
    """Responder that appends ``suffix`` to ``column`` for every requested row."""

    def _respond(
        call_number: int,
        batch: Sequence[CommentedRow],
        headers: Sequence[str],
        schema: Dict[str, Any],
    ) -> Dict[str, Any]:
        rows = []
        for row in batch:
            item: Dict[str, Any] = {"row_index": row.row_index}
            item.update(row.fields)
            item[column] = row.fields[column] + suffix
            item[headers[-1]] = row.comment
            rows.append(item)
        return {"rows": rows}

    return _respond


@pytest.fixture
def rewriter_factory() -> Callable[[Responder], FakeRewriter]:
    return FakeRewriter


@pytest.fixture
def appender() -> Callable[[str, str], Responder]:
    return append_to_column


@pytest.fixture
def revision_log() -> RevisionLog:
    return RevisionLog()


@pytest.fixture
def plan_grid() -> List[List[str]]:
    """Seven data rows, six of them commented."""

    return [
        ["No", "Title", "Summary", "Comment"],
        ["1", "Zero trust basics", "Intro to zero trust", "more concrete"],
        ["2", "Cloud cost guide", "How to cut cloud spend", ""],
        ["3", "SOC playbook", "Running a SOC", "simpler words"],
        ["4", "Backup strategy", "3-2-1 rule explained", "add numbers"],
        ["5", "Identity 101", "IAM overview", "shorter"],
        ["6", "Patch cadence", "Monthly patching", "add example"],
        ["7", "Vendor risk", "Third-party review", "more detail"],
    ]
