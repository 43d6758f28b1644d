from __future__ import annotations

import re
from pathlib import Path
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .versions import DEFAULT_SHEET_NAME, LOG_SHEET_NAME

_HEX_COLOR = re.compile(r"^#[0-9A-Fa-f]{6}$")


class SheetsConfig(BaseModel):
    credentials_file: Path = Field(..., description="Service account key file (JSON)")
    spreadsheet_id: str = Field(..., description="ID of the whitepaper plan spreadsheet")
    source_sheet_name: Optional[str] = Field(
        None,
        description="Optional tab to revise; skips automatic VERn detection when set",
    )
    default_sheet_name: str = Field(
        DEFAULT_SHEET_NAME,
        description="Tab used as the source when no VERn tab exists",
    )
    log_sheet_name: str = Field(
        LOG_SHEET_NAME,
        description="Tab that receives the revision log",
    )

    @field_validator("credentials_file")
    @classmethod
    def _absolute_key_path(cls, value: Path) -> Path:
        return value.expanduser().resolve()


class RevisionConfig(BaseModel):
    batch_size: int = Field(5, gt=0, description="Number of commented rows per rewrite call")
    max_workers: int = Field(
        1,
        ge=1,
        le=10,
        description="Number of batches in flight at once (1 = sequential)",
    )
    highlight_color: str = Field(
        "#FF0000",
        description="Foreground color (#RRGGBB) applied to inserted text",
    )
    diff_mode: Literal["lcs", "whole"] = Field(
        "lcs",
        description="'lcs' highlights inserted characters; 'whole' marks every changed cell entirely",
    )
    max_diff_chars: Optional[int] = Field(
        4000,
        gt=0,
        description="Cells longer than this are marked entirely instead of diffed",
    )
    run_timeout: Optional[float] = Field(
        None,
        gt=0,
        description="Optional overall time limit in seconds; unfinished batches are left unchanged",
    )

    @field_validator("highlight_color")
    @classmethod
    def _validate_color(cls, value: str) -> str:
        if not _HEX_COLOR.match(value):
            raise ValueError("highlight_color must be a #RRGGBB hex color")
        return value.upper()


class LLMProviderConfig(BaseModel):
    """One entry of the provider fallback chain.

    Values may be given inline or through environment variables (``*_env``);
    the inline value wins.
    """

    name: str | None = Field(None, description="Label used in log messages")
    model: str | None = Field(None, description="Chat model to call")
    model_env: str | None = Field(None, description="Environment variable holding the model")
    api_key: str | None = Field(None, description="API key for this provider")
    api_key_env: str | None = Field(None, description="Environment variable holding the API key")
    base_url: str | None = Field(None, description="OpenAI-compatible endpoint, e.g. OpenRouter")
    base_url_env: str | None = Field(None, description="Environment variable holding the endpoint")
    organization: str | None = Field(None, description="OpenAI organization, if any")
    temperature: float | None = Field(
        None,
        ge=0.0,
        le=2.0,
        description="Sampling temperature; left out of the request when unset",
    )
    max_output_tokens: int = Field(16000, gt=0, description="Completion token limit per batch")
    request_timeout: int = Field(300, gt=0, description="Seconds to wait for one rewrite call")
    reasoning_enabled: bool = Field(True, description="Send a reasoning effort hint")
    reasoning_effort: Literal["minimal", "low", "medium", "high"] = Field(
        "low",
        description="Effort level sent when reasoning_enabled is set",
    )

    @model_validator(mode="after")
    def _check_sources(self) -> "LLMProviderConfig":
        for inline, env in (("model", "model_env"), ("api_key", "api_key_env")):
            if not getattr(self, inline) and not getattr(self, env):
                raise ValueError(f"each LLM provider needs '{inline}' or '{env}'")
        return self


class LLMConfig(BaseModel):
    max_retries: int = Field(
        1,
        ge=1,
        description="Attempts per provider before moving to the next one (1 = no retry)",
    )
    http_referer: str | None = Field(None, description="OpenRouter HTTP-Referer attribution header")
    x_title: str | None = Field(None, description="OpenRouter X-Title attribution header")
    providers: dict[int, LLMProviderConfig] = Field(
        ...,
        description="Providers keyed by priority, 1 being tried first",
    )

    @field_validator("providers")
    @classmethod
    def _order_providers(
        cls, value: dict[int, LLMProviderConfig]
    ) -> dict[int, LLMProviderConfig]:
        if not value:
            raise ValueError("configure at least one LLM provider")
        priorities = sorted(value)
        if priorities != list(range(1, len(priorities) + 1)):
            raise ValueError(
                f"provider priorities must be consecutive from 1; received {priorities}"
            )
        return {priority: value[priority] for priority in priorities}

    @property
    def provider_sequence(self) -> List[tuple[int, LLMProviderConfig]]:
        return list(self.providers.items())


class BackendConfig(BaseModel):
    base_url: str = Field(..., description="Base URL of the rewrite backend")
    timeout: float = Field(300.0, gt=0, description="Timeout in seconds for one batch call")
    api_key: str | None = Field(None, description="Optional bearer token")
    api_key_env: str | None = Field(
        None,
        description="Environment variable with the bearer token",
    )


class AppConfig(BaseModel):
    sheets: SheetsConfig
    revision: RevisionConfig = Field(default_factory=RevisionConfig)
    rewriter: Literal["llm", "backend"] = Field(
        "llm",
        description="Which rewrite collaborator to use",
    )
    llm: LLMConfig | None = None
    backend: BackendConfig | None = None

    @model_validator(mode="after")
    def _validate_rewriter(self) -> "AppConfig":
        if self.rewriter == "llm" and self.llm is None:
            raise ValueError("rewriter 'llm' requires an 'llm' section")
        if self.rewriter == "backend" and self.backend is None:
            raise ValueError("rewriter 'backend' requires a 'backend' section")
        return self


def load_config(path: str | Path) -> AppConfig:
    """Read and validate the YAML configuration at ``path``.

    Raises ``FileNotFoundError`` for a missing file and ``ValueError`` for an
    empty or invalid one.
    """

    config_path = Path(path).expanduser().resolve()
    if not config_path.is_file():
        raise FileNotFoundError(f"No configuration file at {config_path}")

    raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    if raw is None:
        raise ValueError(f"Configuration file {config_path} is empty")

    try:
        return AppConfig.model_validate(raw)
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration in {config_path}: {exc}") from exc
