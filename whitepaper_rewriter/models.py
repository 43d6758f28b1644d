from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

Grid = List[List[str]]

LOG_HEADER = ["Timestamp", "Type", "Batch Index", "Status", "Message", "Details"]
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass(slots=True)
class CommentedRow:
    """A data row whose comment cell asks for a revision."""

    row_index: int  # position inside the grid; the header is row 0
    fields: Dict[str, str]  # every column except the comment column
    comment: str
    values: List[str]  # the full normalized source row

    def to_payload(self) -> Dict[str, Any]:
        return {
            "row_index": self.row_index,
            "fields": dict(self.fields),
            "comment": self.comment,
        }


@dataclass(slots=True)
class RewriteResult:
    """Field values proposed by the rewrite collaborator for one row."""

    row_index: int
    fields: Dict[str, str]


@dataclass(frozen=True, slots=True)
class DiffSpan:
    """Half-open range ``[start, end)`` of inserted characters in the new text."""

    start: int
    end: int

    def __len__(self) -> int:
        return self.end - self.start


class LogType(str, Enum):
    INFO = "INFO"
    API_REQUEST = "API_REQUEST"
    API_RESPONSE = "API_RESPONSE"
    ERROR = "ERROR"


@dataclass(frozen=True, slots=True)
class RevisionLogEntry:
    timestamp: datetime
    type: LogType
    batch_index: Optional[int]
    status: str
    message: str
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_row(self) -> List[str]:
        """Render the entry as a row of the six-column log sheet."""

        return [
            self.timestamp.strftime(TIMESTAMP_FORMAT),
            self.type.value,
            "none" if self.batch_index is None else str(self.batch_index),
            self.status,
            self.message,
            json.dumps(self.detail, ensure_ascii=False, default=str),
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "type": self.type.value,
            "batch_index": self.batch_index,
            "status": self.status,
            "message": self.message,
            "detail": self.detail,
        }


@dataclass(slots=True)
class RevisionSummary:
    total_rows: int = 0
    commented_rows: int = 0
    revised_rows: int = 0
    fallback_rows: int = 0
    unprocessed_rows: int = 0
    failed_batches: int = 0
    cancelled: bool = False

    @property
    def uncommented_rows(self) -> int:
        return self.total_rows - self.commented_rows

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalRows": self.total_rows,
            "commentedRows": self.commented_rows,
            "revisedRows": self.revised_rows,
            "fallbackRows": self.fallback_rows,
            "unprocessedRows": self.unprocessed_rows,
            "failedBatches": self.failed_batches,
            "cancelled": self.cancelled,
        }


@dataclass(slots=True)
class RevisedGrid:
    """Output of a revision run.

    ``highlights`` maps ``(row, column)`` positions of ``rows`` (header is row 0)
    to the inserted spans of that cell; cells without changes are absent.
    """

    rows: Grid
    highlights: Dict[Tuple[int, int], List[DiffSpan]]
    summary: RevisionSummary

    @property
    def header(self) -> List[str]:
        return self.rows[0]
