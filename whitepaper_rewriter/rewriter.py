from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, Optional, Protocol, Sequence

import httpx

from .config import BackendConfig
from .errors import BatchParseError, BatchTransportError
from .llm_client import LLMClient
from .models import CommentedRow
from .prompt_builder import build_batch_messages, build_cell_messages

LOGGER = logging.getLogger(__name__)

BATCH_RESPONSE_NAME = "rewrite_batch_response"
CELL_RESPONSE_NAME = "rewrite_cell_response"
BATCH_ENDPOINT = "/api/rewrite/batch"

_CELL_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["rewritten"],
    "additionalProperties": False,
    "properties": {"rewritten": {"type": "string"}},
}


class RewriteCollaborator(Protocol):
    """Proposes new field values for a batch of commented rows.

    Returns the raw ``{"rows": [...]}`` payload; any exception counts as a
    failed batch.
    """

    def rewrite(
        self,
        batch: Sequence[CommentedRow],
        headers: Sequence[str],
        schema: Dict[str, Any],
    ) -> Dict[str, Any]:
        ...


def json_schema_format(name: str, schema: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "type": "json_schema",
        "json_schema": {"name": name, "schema": schema, "strict": True},
    }


class LLMRewriter:
    """Rewrites batches by calling the chat completions API directly."""

    def __init__(self, llm_client: LLMClient) -> None:
        self._llm = llm_client

    def rewrite(
        self,
        batch: Sequence[CommentedRow],
        headers: Sequence[str],
        schema: Dict[str, Any],
    ) -> Dict[str, Any]:
        messages, cache_key = build_batch_messages(batch, headers)
        LOGGER.debug(
            "Requesting rewrite for rows %s", [row.row_index for row in batch]
        )
        return self._llm.generate(
            messages,
            prompt_cache_key=cache_key,
            response_format=json_schema_format(BATCH_RESPONSE_NAME, schema),
        )

    def rewrite_cell(
        self,
        original: str,
        instruction: str,
        *,
        column_name: str,
        row_index: int,
        headers: Sequence[str],
    ) -> str:
        """Rewrite a single cell value following a free-form instruction."""

        messages = build_cell_messages(original, instruction, column_name, row_index, headers)
        payload = self._llm.generate(
            messages,
            response_format=json_schema_format(CELL_RESPONSE_NAME, _CELL_SCHEMA),
        )
        rewritten = payload.get("rewritten") if isinstance(payload, dict) else None
        if not isinstance(rewritten, str) or not rewritten.strip():
            raise BatchParseError("LLM returned an empty cell rewrite")
        return rewritten.strip()


class BackendRewriter:
    """Rewrites batches through the rewrite backend's HTTP API."""

    def __init__(self, conf: BackendConfig, *, transport: httpx.BaseTransport | None = None) -> None:
        self._conf = conf
        headers = {"Content-Type": "application/json"}
        api_key = conf.api_key
        if not api_key and conf.api_key_env:
            api_key = os.environ.get(conf.api_key_env)
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.Client(
            base_url=conf.base_url,
            headers=headers,
            timeout=conf.timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def rewrite(
        self,
        batch: Sequence[CommentedRow],
        headers: Sequence[str],
        schema: Dict[str, Any],
    ) -> Dict[str, Any]:
        body = {
            "batch": [row.to_payload() for row in batch],
            "headers": list(headers),
            "schema": schema,
        }
        try:
            response = self._client.post(BATCH_ENDPOINT, json=body)
        except httpx.RequestError as exc:
            raise BatchTransportError(f"Backend request failed: {exc}") from exc

        if response.status_code >= 300:
            raise BatchTransportError(
                f"Backend API error ({response.status_code}): {response.text}"
            )

        try:
            payload = response.json()
        except (json.JSONDecodeError, ValueError) as exc:
            raise BatchParseError(f"Backend response is not valid JSON: {response.text}") from exc

        return _unwrap_backend_payload(payload)


def _unwrap_backend_payload(payload: Any) -> Dict[str, Any]:
    """Accept both ``{"rows": ...}`` and ``{"success": ..., "data": {"rows": ...}}``."""

    if not isinstance(payload, dict):
        raise BatchParseError("Backend response must be a JSON object")
    if "success" not in payload:
        return payload
    if not payload.get("success"):
        error_block = payload.get("error") or {}
        message: Optional[str] = None
        if isinstance(error_block, dict):
            message = error_block.get("message")
        raise BatchTransportError(f"Backend API returned error: {message or 'unknown error'}")
    data = payload.get("data")
    if not isinstance(data, dict):
        raise BatchParseError("Backend response does not contain a 'data' object")
    metadata = data.get("metadata")
    if isinstance(metadata, dict):
        LOGGER.debug("Backend batch metadata: %s", metadata)
    return data
