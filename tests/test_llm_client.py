"""Tests for the OpenAI-compatible LLM client."""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any, List
from unittest.mock import MagicMock, patch

import httpx
import pytest
from openai import APIError, APITimeoutError

from whitepaper_rewriter.config import LLMConfig, LLMProviderConfig
from whitepaper_rewriter.errors import BatchParseError, BatchTransportError
from whitepaper_rewriter.llm_client import LLMClient

MESSAGES = [{"role": "system", "content": "rewrite"}, {"role": "user", "content": "rows"}]
_REQUEST = httpx.Request("POST", "https://api.test/v1/chat/completions")


def _completion(content: str | None, finish_reason: str = "stop") -> SimpleNamespace:
    message = SimpleNamespace(content=content)
    return SimpleNamespace(choices=[SimpleNamespace(message=message, finish_reason=finish_reason)])


def _config(*models: str, max_retries: int = 1) -> LLMConfig:
    providers = {
        priority: LLMProviderConfig(name=model, model=model, api_key=f"key-{priority}")
        for priority, model in enumerate(models, start=1)
    }
    return LLMConfig(max_retries=max_retries, providers=providers)


def _client(conf: LLMConfig, *responses: List[Any]):
    """Build an LLMClient whose providers answer with the given side effects."""

    provider_mocks = []
    for side_effect in responses:
        mock = MagicMock()
        mock.chat.completions.create.side_effect = side_effect
        provider_mocks.append(mock)

    with patch("whitepaper_rewriter.llm_client.OpenAI", side_effect=provider_mocks) as factory:
        client = LLMClient(conf)
    return client, provider_mocks, factory


class TestGenerate:
    def test_returns_parsed_json(self) -> None:
        """A valid answer is parsed and returned."""
        client, mocks, factory = _client(_config("model-a"), [_completion('{"rows": []}')])

        assert client.generate(MESSAGES, prompt_cache_key="rewrite_abc") == {"rows": []}
        assert client.model_name == "model-a"
        assert factory.call_args.kwargs["max_retries"] == 0

        params = mocks[0].chat.completions.create.call_args.kwargs
        assert params["model"] == "model-a"
        assert params["response_format"] == {"type": "json_object"}
        assert params["extra_body"] == {
            "reasoning": {"effort": "low"},
            "prompt_cache_key": "rewrite_abc",
        }
        assert "temperature" not in params

    def test_custom_response_format(self) -> None:
        client, mocks, _ = _client(_config("model-a"), [_completion('{"rows": []}')])
        response_format = {"type": "json_schema", "json_schema": {"name": "x", "schema": {}}}

        client.generate(MESSAGES, response_format=response_format)

        params = mocks[0].chat.completions.create.call_args.kwargs
        assert params["response_format"] is response_format
        assert "prompt_cache_key" not in params["extra_body"]

    def test_falls_back_to_next_provider(self) -> None:
        """A failing provider hands over to the next priority."""
        client, mocks, _ = _client(
            _config("model-a", "model-b"),
            [APIError("server overloaded", _REQUEST, body=None)],
            [_completion('{"rows": [{"row_index": 1}]}')],
        )

        assert client.generate(MESSAGES) == {"rows": [{"row_index": 1}]}
        assert client.model_name == "model-b"

    def test_all_transport_failures(self) -> None:
        client, _, _ = _client(
            _config("model-a", "model-b"),
            [APIError("server overloaded", _REQUEST, body=None)],
            [APITimeoutError(request=_REQUEST)],
        )
        with pytest.raises(BatchTransportError, match="model-a"):
            client.generate(MESSAGES)

    def test_all_parse_failures(self) -> None:
        """Unusable content from every provider is a parse error."""
        client, _, _ = _client(
            _config("model-a", "model-b"),
            [_completion("not json")],
            [_completion("[1, 2]")],
        )
        with pytest.raises(BatchParseError):
            client.generate(MESSAGES)

    @pytest.mark.parametrize(
        "completion",
        [
            SimpleNamespace(choices=[]),
            _completion(""),
            _completion('{"rows": [', finish_reason="length"),
            _completion('{"rows": []}', finish_reason="content_filter"),
        ],
    )
    def test_unusable_responses(self, completion: SimpleNamespace) -> None:
        client, _, _ = _client(_config("model-a"), [completion])
        with pytest.raises(BatchParseError):
            client.generate(MESSAGES)

    def test_invalid_json_is_reasked_when_retries_allowed(self) -> None:
        """With retries, bad JSON triggers a corrective hint."""
        client, mocks, _ = _client(
            _config("model-a", max_retries=2),
            [_completion("oops"), _completion('{"rows": []}')],
        )

        assert client.generate(MESSAGES) == {"rows": []}
        second_messages = mocks[0].chat.completions.create.call_args_list[1].kwargs["messages"]
        assert len(second_messages) == len(MESSAGES) + 1
        assert second_messages[-1]["role"] == "system"

    def test_unsupported_reasoning_is_dropped(self) -> None:
        """A rejected reasoning parameter is removed without using an attempt."""
        client, mocks, _ = _client(
            _config("model-a"),
            [
                APIError("Unsupported parameter: reasoning", _REQUEST, body=None),
                _completion('{"rows": []}'),
            ],
        )

        assert client.generate(MESSAGES) == {"rows": []}
        calls = mocks[0].chat.completions.create.call_args_list
        assert len(calls) == 2
        assert "extra_body" not in calls[1].kwargs

    def test_unsupported_prompt_cache_key_is_dropped(self) -> None:
        client, mocks, _ = _client(
            _config("model-a"),
            [
                APIError("Unknown field prompt_cache_key", _REQUEST, body=None),
                _completion('{"rows": []}'),
            ],
        )

        assert client.generate(MESSAGES, prompt_cache_key="rewrite_abc") == {"rows": []}
        extra_body = mocks[0].chat.completions.create.call_args_list[1].kwargs["extra_body"]
        assert "prompt_cache_key" not in extra_body


class TestProviderSetup:
    def test_provider_without_key_is_skipped(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Providers whose key is missing from the environment are ignored."""
        monkeypatch.delenv("MISSING_KEY", raising=False)
        conf = LLMConfig(
            providers={
                1: LLMProviderConfig(name="primary", model="model-a", api_key_env="MISSING_KEY"),
                2: LLMProviderConfig(name="backup", model="model-b", api_key="key"),
            }
        )
        client, _, factory = _client(conf, [_completion('{"rows": []}')])

        assert factory.call_count == 1
        assert client.model_name == "model-b"

    def test_no_usable_provider(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("MISSING_MODEL", raising=False)
        conf = LLMConfig(
            providers={1: LLMProviderConfig(model_env="MISSING_MODEL", api_key="key")}
        )
        with patch("whitepaper_rewriter.llm_client.OpenAI"):
            with pytest.raises(RuntimeError):
                LLMClient(conf)

    def test_attribution_headers(self) -> None:
        conf = LLMConfig(
            http_referer="https://plans.example",
            x_title="Whitepaper Rewriter",
            providers={1: LLMProviderConfig(model="model-a", api_key="key")},
        )
        _, _, factory = _client(conf, [_completion("{}")])

        assert factory.call_args.kwargs["default_headers"] == {
            "HTTP-Referer": "https://plans.example",
            "X-Title": "Whitepaper Rewriter",
        }
