from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple

from openai import APIError, APITimeoutError, OpenAI

from .config import LLMConfig, LLMProviderConfig
from .errors import BatchError, BatchParseError, BatchTransportError

LOGGER = logging.getLogger(__name__)

Message = Dict[str, str]

_JSON_OBJECT_FORMAT: Dict[str, Any] = {"type": "json_object"}

_REASK_INVALID_JSON = (
    "Your previous reply could not be parsed. Answer again with JSON only, matching the "
    "response schema exactly."
)
_REASK_TRUNCATED = (
    "Your previous reply hit the length limit. Rewrite more tightly, keep every row and "
    "return complete JSON."
)

_REJECTION_WORDS = ("unsupported", "unknown", "not allowed", "invalid", "cannot")

# optional request parameters a provider may refuse
_PARAM_REASONING = "reasoning"
_PARAM_CACHE_KEY = "prompt_cache_key"


def _rejects_parameter(error: BaseException, parameter: str) -> bool:
    """Guess from the error text whether the provider refused ``parameter``."""

    text = str(error).lower()
    return parameter in text and any(word in text for word in _REJECTION_WORDS)


def _from_env(value: Optional[str], env_name: Optional[str]) -> Optional[str]:
    if value:
        return value
    if env_name:
        return os.environ.get(env_name)
    return None


class _Reask(Exception):
    """The reply was unusable but another attempt may fix it."""

    def __init__(self, hint: str, reason: str) -> None:
        super().__init__(reason)
        self.hint = hint


@dataclass(slots=True)
class _Provider:
    priority: int
    name: str
    model: str
    client: OpenAI
    settings: LLMProviderConfig


def _read_payload(response: Any) -> Dict[str, Any]:
    """Extract the JSON object from a chat completion.

    Raises ``_Reask`` for failures a corrective follow-up can fix and
    ``BatchParseError`` for the rest.
    """

    if not response.choices:
        raise BatchParseError("LLM response does not contain choices")

    choice = response.choices[0]
    content = (choice.message.content or "").strip()
    finish_reason = getattr(choice, "finish_reason", None)

    if finish_reason == "length":
        raise _Reask(_REASK_TRUNCATED, f"LLM response was truncated: {content}")
    if finish_reason and finish_reason != "stop":
        raise BatchParseError(f"LLM stopped with finish_reason={finish_reason}: {content}")
    if not content:
        raise _Reask(_REASK_INVALID_JSON, "LLM response is empty")

    try:
        payload = json.loads(content)
    except json.JSONDecodeError as exc:
        raise _Reask(_REASK_INVALID_JSON, f"LLM response is not valid JSON ({exc}): {content}") from exc

    if not isinstance(payload, dict):
        raise BatchParseError(f"LLM response is not a JSON object: {content}")
    return payload


class LLMClient:
    """Chat-completions caller with JSON output and prioritized provider fallback."""

    def __init__(self, conf: LLMConfig) -> None:
        self._conf = conf
        self._providers: List[_Provider] = [
            provider
            for provider in (
                self._connect(priority, settings) for priority, settings in conf.provider_sequence
            )
            if provider is not None
        ]
        self._last_model: Optional[str] = None

        if not self._providers:
            raise RuntimeError(
                "No usable LLM provider: every provider is missing an API key or a model name"
            )

    @property
    def model_name(self) -> str:
        """Model that answered the latest call (the first provider's before any call)."""

        return self._last_model or self._providers[0].model

    def generate(
        self,
        messages: List[Message],
        prompt_cache_key: str | None = None,
        response_format: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        """Send ``messages`` and return the JSON object of the reply.

        Providers are tried in priority order until one answers. If all of
        them fail, ``BatchParseError`` is raised when every failure was an
        unusable reply and ``BatchTransportError`` otherwise.
        """

        failures: List[Tuple[str, BatchError]] = []
        for provider in self._providers:
            try:
                payload = self._ask(
                    provider,
                    messages,
                    prompt_cache_key,
                    response_format or _JSON_OBJECT_FORMAT,
                )
            except BatchError as exc:
                LOGGER.warning("Provider '%s' gave up: %s", provider.name, exc)
                failures.append((provider.name, exc))
                continue
            self._last_model = provider.model
            return payload

        summary = "; ".join(f"{name}: {exc}" for name, exc in failures)
        if all(isinstance(exc, BatchParseError) for _, exc in failures):
            raise BatchParseError(f"No provider returned usable JSON ({summary})")
        raise BatchTransportError(f"All LLM providers failed ({summary})")

    def _connect(self, priority: int, settings: LLMProviderConfig) -> _Provider | None:
        name = settings.name or f"provider-{priority}"

        api_key = _from_env(settings.api_key, settings.api_key_env)
        if not api_key:
            LOGGER.warning("Provider '%s' skipped: no API key", name)
            return None
        model = _from_env(settings.model, settings.model_env)
        if not model:
            LOGGER.warning("Provider '%s' skipped: no model name", name)
            return None

        options: Dict[str, Any] = {
            "api_key": api_key,
            "base_url": _from_env(settings.base_url, settings.base_url_env),
            "organization": settings.organization,
            # attempts are counted here, not inside the SDK
            "max_retries": 0,
        }
        attribution = {
            header: value
            for header, value in (
                ("HTTP-Referer", self._conf.http_referer),
                ("X-Title", self._conf.x_title),
            )
            if value
        }
        if attribution:
            options["default_headers"] = attribution

        return _Provider(
            priority=priority,
            name=name,
            model=model,
            client=OpenAI(**options),
            settings=settings,
        )

    def _request(
        self,
        provider: _Provider,
        messages: List[Message],
        response_format: Dict[str, Any],
        prompt_cache_key: str | None,
        refused: Set[str],
    ) -> Dict[str, Any]:
        settings = provider.settings
        request: Dict[str, Any] = {
            "model": provider.model,
            "messages": messages,
            "response_format": response_format,
            "max_completion_tokens": settings.max_output_tokens,
            "timeout": settings.request_timeout,
        }
        if settings.temperature is not None:
            request["temperature"] = settings.temperature

        extra: Dict[str, Any] = {}
        if settings.reasoning_enabled and _PARAM_REASONING not in refused:
            extra[_PARAM_REASONING] = {"effort": settings.reasoning_effort}
        if prompt_cache_key and _PARAM_CACHE_KEY not in refused:
            extra[_PARAM_CACHE_KEY] = prompt_cache_key
        if extra:
            request["extra_body"] = extra
        return request

    def _ask(
        self,
        provider: _Provider,
        messages: List[Message],
        prompt_cache_key: str | None,
        response_format: Dict[str, Any],
    ) -> Dict[str, Any]:
        attempts = self._conf.max_retries
        refused: Set[str] = set()
        conversation = [dict(message) for message in messages]
        attempt = 1

        while True:
            request = self._request(provider, conversation, response_format, prompt_cache_key, refused)
            try:
                response = provider.client.chat.completions.create(**request)
            except APITimeoutError as exc:
                raise BatchTransportError(
                    f"LLM request timed out after {provider.settings.request_timeout}s"
                ) from exc
            except APIError as exc:
                refusal = next(
                    (
                        param
                        for param in request.get("extra_body", {})
                        if _rejects_parameter(exc, param)
                    ),
                    None,
                )
                if refusal is None:
                    raise BatchTransportError(f"LLM request failed: {exc}") from exc
                # resend without the refused parameter; not counted as an attempt
                LOGGER.warning(
                    "Provider '%s' refused '%s'; resending without it: %s",
                    provider.name,
                    refusal,
                    exc,
                )
                refused.add(refusal)
                continue

            try:
                return _read_payload(response)
            except _Reask as exc:
                if attempt >= attempts:
                    raise BatchParseError(str(exc)) from exc
                LOGGER.warning(
                    "Provider '%s' reply unusable (attempt %s/%s): %s",
                    provider.name,
                    attempt,
                    attempts,
                    exc,
                )
                conversation = [dict(message) for message in messages]
                conversation.append({"role": "system", "content": exc.hint})
                attempt += 1
