from __future__ import annotations

import json
import re
from hashlib import sha256
from textwrap import dedent
from typing import List, Sequence, Tuple

from .models import CommentedRow

_REWRITE_PRINCIPLES = dedent(
    """
    Rewrite principles:

    1. The comment is the instruction and takes priority.
       - Apply every requested improvement boldly; "more X" must produce a clearly visible change.
       - Replace vague wording with concrete wording and trim redundant phrasing.
    2. Typical requests:
       - "plain language for beginners": replace jargon with plain words and add short explanations.
       - "more concrete examples": add figures, decision criteria or scenarios explicitly.
       - "more concise": remove filler modifiers and make the key point clear.
    3. Keep a natural business-document register and keep the language of the source text.
       Japanese text stays in the polite desu/masu form.
    """
).strip()

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


def _fill(template: str, **values: str) -> str:
    """Substitute every known placeholder in one pass; inserted text is never rescanned."""

    return _PLACEHOLDER.sub(lambda match: values.get(match.group(1), match.group(0)), template)


def compute_cache_key(headers: Sequence[str]) -> str:
    """Stable prompt cache key for a given column layout.

    Requests against the same sheet share the static prompt prefix, so the key
    only depends on the headers.
    """

    combined = "\n".join(headers)
    hash_value = sha256(combined.encode("utf-8")).hexdigest()
    return f"rewrite_{hash_value[:16]}"


def build_batch_messages(
    batch: Sequence[CommentedRow],
    headers: Sequence[str],
) -> Tuple[List[dict], str]:
    """Compose chat messages for a batch rewrite call.

    Static instructions come first and the row data last so the provider can
    reuse its prompt cache across batches.

    Returns:
        Tuple of (messages list, prompt_cache_key string)
    """

    system_prompt = dedent(
        """
        You are an expert editor of enterprise B2B whitepaper plans kept in a spreadsheet.
        Rewrite several rows at once, each according to the instruction in its comment.

        {principles}

        4. Keep rows consistent with each other: rows on the same topic or category use
           the same terms and phrasing.

        Respond only with valid JSON matching the response schema: an object with a "rows"
        array containing one object per input row. Every object must repeat the input
        "row_index" unchanged and contain every column, including columns you did not change.
        """
    ).strip()
    system_prompt = _fill(system_prompt, principles=_REWRITE_PRINCIPLES)

    columns_prompt = dedent(
        """
        The spreadsheet columns are, in order:
        {columns}

        The last column holds reviewer comments; return its value unchanged.
        """
    ).strip()
    columns_prompt = _fill(columns_prompt, columns="\n".join(f"- {name}" for name in headers))

    rows_payload = [row.to_payload() for row in batch]
    data_prompt = dedent(
        """
        Rewrite the following rows. Each row lists its current field values and the comment
        that tells you what to change. Never change a row_index.

        Rows:
        {rows_json}
        """
    ).strip()
    data_prompt = _fill(
        data_prompt, rows_json=json.dumps(rows_payload, ensure_ascii=False, indent=2)
    )

    messages = [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": columns_prompt},
        {"role": "user", "content": data_prompt},
    ]
    return messages, compute_cache_key(headers)


def build_cell_messages(
    original: str,
    instruction: str,
    column_name: str,
    row_index: int,
    headers: Sequence[str],
) -> List[dict]:
    """Compose chat messages for rewriting a single cell."""

    system_prompt = dedent(
        """
        You are an expert editor of enterprise B2B whitepaper plans kept in a spreadsheet.
        Rewrite one cell value following the user's instruction.

        {principles}

        Respond only with JSON of the form {"rewritten": "<new cell text>"}.
        """
    ).strip()
    system_prompt = _fill(system_prompt, principles=_REWRITE_PRINCIPLES)

    user_prompt = dedent(
        """
        Column: {column}
        Row: {row}
        Original text:
        {original}

        Instruction:
        {instruction}

        The sheet is a whitepaper plan table with these columns: {headers}
        """
    ).strip()
    user_prompt = _fill(
        user_prompt,
        column=column_name,
        row=str(row_index),
        headers=", ".join(headers),
        instruction=instruction,
        original=original,
    )

    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_prompt},
    ]
