from __future__ import annotations

import re
from typing import Iterable, Optional

DEFAULT_SHEET_NAME = "Whitepaper Plans"
LOG_SHEET_NAME = "Backlog"
FIRST_VERSION_NAME = "VER1"

_VERSION_PATTERN = re.compile(r"^VER(\d+)$", re.IGNORECASE)


def version_number(sheet_name: str) -> Optional[int]:
    """Return ``n`` for a ``VERn`` sheet name, otherwise ``None``."""

    match = _VERSION_PATTERN.match(sheet_name)
    if match is None:
        return None
    return int(match.group(1))


def resolve_source_sheet(
    sheet_names: Iterable[str],
    active_sheet_name: str,
    *,
    default_sheet_name: str = DEFAULT_SHEET_NAME,
    log_sheet_name: str = LOG_SHEET_NAME,
) -> str:
    """Pick the sheet holding the latest revision.

    Order: highest ``VERn``, the default plans sheet, ``VER1``, the first sheet
    that is not the log sheet, then the first sheet. ``sheet_names`` is read in
    workbook order; ``active_sheet_name`` is returned only when it is empty.
    """

    names = list(sheet_names)
    if not names:
        return active_sheet_name

    highest: Optional[tuple[int, str]] = None
    for name in names:
        number = version_number(name)
        if number is not None and (highest is None or number > highest[0]):
            highest = (number, name)
    if highest is not None:
        return highest[1]

    if default_sheet_name in names:
        return default_sheet_name
    if FIRST_VERSION_NAME in names:
        return FIRST_VERSION_NAME
    for name in names:
        if name != log_sheet_name:
            return name
    return names[0]


def next_version_name(current_name: str) -> str:
    """``VERn`` becomes ``VER(n+1)``; any other sheet counts as ``VER1``."""

    number = version_number(current_name)
    if number is None:
        return "VER2"
    return f"VER{number + 1}"
