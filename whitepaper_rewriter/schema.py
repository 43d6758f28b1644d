from __future__ import annotations

from typing import Any, Dict, Sequence

from .errors import InvalidInputError

ROW_INDEX_KEY = "row_index"


def build_row_schema(headers: Sequence[str]) -> Dict[str, Any]:
    """Build the strict JSON schema for a batch rewrite response.

    The response is ``{"rows": [...]}`` where every row carries an integer
    ``row_index`` and one string property per header. Header names are used
    verbatim as property keys.
    """

    names = list(headers)
    if not names:
        raise InvalidInputError("At least one header is required to build the row schema")

    seen: set[str] = set()
    for name in names:
        if not isinstance(name, str):
            raise InvalidInputError(f"Header names must be strings; received {name!r}")
        if name == ROW_INDEX_KEY:
            raise InvalidInputError(f"Header name '{ROW_INDEX_KEY}' is reserved")
        if name in seen:
            raise InvalidInputError(f"Duplicate header name: '{name}'")
        seen.add(name)

    properties: Dict[str, Any] = {ROW_INDEX_KEY: {"type": "integer"}}
    for name in names:
        properties[name] = {"type": "string"}

    return {
        "type": "object",
        "required": ["rows"],
        "additionalProperties": False,
        "properties": {
            "rows": {
                "type": "array",
                "items": {
                    "type": "object",
                    "required": [ROW_INDEX_KEY, *names],
                    "additionalProperties": False,
                    "properties": properties,
                },
            },
        },
    }
