"""Character-level diff used to highlight text added by a revision."""

from __future__ import annotations

from typing import List, Optional

from .models import DiffSpan

DIFF_MODE_LCS = "lcs"
DIFF_MODE_WHOLE = "whole"
DIFF_MODES = (DIFF_MODE_LCS, DIFF_MODE_WHOLE)


def compute_insertions(old_text: str, new_text: str) -> List[DiffSpan]:
    """Return the ranges of ``new_text`` that are insertions under an LCS alignment.

    Works on code points (``str`` indexing), so the spans line up with rendered
    characters for non-ASCII text. Runs in O(n*m) over the part of the strings
    that remains after the common prefix and suffix are removed.
    """

    if old_text == new_text or not new_text:
        return []
    if not old_text:
        return [DiffSpan(0, len(new_text))]

    prefix = 0
    limit = min(len(old_text), len(new_text))
    while prefix < limit and old_text[prefix] == new_text[prefix]:
        prefix += 1

    suffix = 0
    while (
        suffix < limit - prefix
        and old_text[len(old_text) - 1 - suffix] == new_text[len(new_text) - 1 - suffix]
    ):
        suffix += 1

    old_mid = old_text[prefix : len(old_text) - suffix]
    new_mid = new_text[prefix : len(new_text) - suffix]

    matched = _lcs_matches(old_mid, new_mid)
    inserted = [prefix + j for j in range(len(new_mid)) if not matched[j]]
    return _coalesce(inserted)


def mark_whole_text(old_text: str, new_text: str) -> List[DiffSpan]:
    """Simplified highlighting: the whole new text is marked when anything changed."""

    if old_text == new_text or not new_text:
        return []
    return [DiffSpan(0, len(new_text))]


def highlight_spans(
    old_text: str,
    new_text: str,
    *,
    mode: str = DIFF_MODE_LCS,
    max_chars: Optional[int] = None,
) -> List[DiffSpan]:
    """Pick the diff strategy for one cell.

    Texts longer than ``max_chars`` skip the LCS table and are marked whole.
    """

    if mode == DIFF_MODE_WHOLE:
        return mark_whole_text(old_text, new_text)
    if mode != DIFF_MODE_LCS:
        raise ValueError(f"Unknown diff mode: {mode}")
    if max_chars is not None and max(len(old_text), len(new_text)) > max_chars:
        return mark_whole_text(old_text, new_text)
    return compute_insertions(old_text, new_text)


def _lcs_matches(old_text: str, new_text: str) -> List[bool]:
    """Flags for each position of ``new_text`` consumed by the common subsequence."""

    n = len(old_text)
    m = len(new_text)
    matched = [False] * m
    if n == 0 or m == 0:
        return matched

    # dp[i][j] = LCS length of old_text[:i] and new_text[:j]
    dp = [[0] * (m + 1) for _ in range(n + 1)]
    for i in range(1, n + 1):
        row = dp[i]
        prev = dp[i - 1]
        old_char = old_text[i - 1]
        for j in range(1, m + 1):
            if old_char == new_text[j - 1]:
                row[j] = prev[j - 1] + 1
            elif prev[j] >= row[j - 1]:
                row[j] = prev[j]
            else:
                row[j] = row[j - 1]

    i, j = n, m
    while i > 0 and j > 0:
        if old_text[i - 1] == new_text[j - 1]:
            matched[j - 1] = True
            i -= 1
            j -= 1
        elif dp[i - 1][j] >= dp[i][j - 1]:
            # ties move toward old_text
            i -= 1
        else:
            j -= 1
    return matched


def _coalesce(positions: List[int]) -> List[DiffSpan]:
    spans: List[DiffSpan] = []
    start: Optional[int] = None
    previous = -2
    for position in positions:
        if position != previous + 1:
            if start is not None:
                spans.append(DiffSpan(start, previous + 1))
            start = position
        previous = position
    if start is not None:
        spans.append(DiffSpan(start, previous + 1))
    return spans
