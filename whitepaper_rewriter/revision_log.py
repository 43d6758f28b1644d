"""Append-only audit trail of a revision run."""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from .errors import LogWriteError
from .models import LogType, RevisionLogEntry

LOGGER = logging.getLogger(__name__)

LogSink = Callable[[RevisionLogEntry], None]


class RevisionLog:
    """Keeps every entry in memory and forwards it to optional sinks.

    A failing sink never reaches the caller: the failure is reported on the
    process logger and the entry stays in memory.
    """

    def __init__(
        self,
        sinks: Sequence[LogSink] = (),
        *,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._entries: List[RevisionLogEntry] = []
        self._sinks = list(sinks)
        self._clock = clock
        self._lock = threading.Lock()

    def append(self, entry: RevisionLogEntry) -> None:
        with self._lock:
            self._entries.append(entry)
            for sink in self._sinks:
                try:
                    sink(entry)
                except Exception as exc:
                    error = exc if isinstance(exc, LogWriteError) else LogWriteError(str(exc))
                    LOGGER.warning(
                        "Failed to write revision log entry (%s/%s): %s",
                        entry.type.value,
                        entry.status,
                        error,
                    )

    def record(
        self,
        type_: LogType,
        status: str,
        message: str,
        *,
        batch_index: Optional[int] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> RevisionLogEntry:
        """Build an entry stamped with the current time and append it."""

        entry = RevisionLogEntry(
            timestamp=self._clock(),
            type=type_,
            batch_index=batch_index,
            status=status,
            message=message,
            detail=dict(detail or {}),
        )
        self.append(entry)
        return entry

    def entries(self) -> List[RevisionLogEntry]:
        with self._lock:
            return list(self._entries)

    def by_type(self, type_: LogType) -> List[RevisionLogEntry]:
        return [entry for entry in self.entries() if entry.type is type_]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
