from __future__ import annotations

import re
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_LANG_RE = re.compile(r"^[A-Za-z]{2,3}([-_][A-Za-z0-9]+)*$")


def _validate_env_var_name(value: str) -> str:
    name = (value or "").strip()
    if not _ENV_NAME_RE.fullmatch(name):
        raise ValueError("must be a valid environment variable name")
    return name


def _validate_base_url(value: str) -> str:
    url = (value or "").strip().rstrip("/")
    if not url.startswith(("http://", "https://")):
        raise ValueError("must be an http(s) URL")
    return url


PositiveInt = Annotated[int, Field(ge=1)]
NonNegativeInt = Annotated[int, Field(ge=0)]
NonNegativeFloat = Annotated[float, Field(ge=0.0)]
PositiveFloat = Annotated[float, Field(gt=0.0)]

DonePolicy = Literal["on_write", "fully_resolved"]


class MastodonConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    base_url: str
    access_token_env: str = "MASTODON_ACCESS_TOKEN"
    request_timeout_seconds: PositiveFloat = 30.0
    max_attempts: PositiveInt = 10
    backoff_seconds: NonNegativeFloat = 5.0
    reconnect_delay_seconds: NonNegativeFloat = 5.0

    @field_validator("base_url")
    @classmethod
    def _base_url_must_be_http(cls, v: str) -> str:
        return _validate_base_url(v)

    @field_validator("access_token_env")
    @classmethod
    def _token_env_must_be_valid(cls, v: str) -> str:
        return _validate_env_var_name(v)


class OpenAIConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    api_key_env: str = "OPENAI_API_KEY"
    base_url: str | None = None
    model: str = "gpt-4o-mini"
    max_output_tokens: PositiveInt = 512

    @field_validator("api_key_env")
    @classmethod
    def _api_key_env_must_be_valid(cls, v: str) -> str:
        return _validate_env_var_name(v)

    @field_validator("base_url")
    @classmethod
    def _optional_base_url(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        return _validate_base_url(v)

    @field_validator("model")
    @classmethod
    def _model_must_be_set(cls, v: str) -> str:
        model = (v or "").strip()
        if not model:
            raise ValueError("must be a non-empty model name")
        return model


class CaptioningConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    default_language: str = "en"
    max_attempts: PositiveInt = 10
    backoff_seconds: NonNegativeFloat = 5.0
    done_policy: DonePolicy = "on_write"

    @field_validator("default_language")
    @classmethod
    def _language_must_look_like_code(cls, v: str) -> str:
        lang = (v or "").strip()
        if not _LANG_RE.fullmatch(lang):
            raise ValueError("must be a language code such as 'en' or 'pt-BR'")
        return lang


class PollingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    enabled: bool = True
    initial_delay_seconds: NonNegativeFloat = 30.0
    interval_seconds: NonNegativeFloat = 300.0
    initial_statuses: PositiveInt = 40
    statuses: PositiveInt = 10
    pace_seconds: NonNegativeFloat = 1.0

    @model_validator(mode="after")
    def _limits_within_api_page(self) -> "PollingConfig":
        # Mastodon caps account status pages at 40 items.
        if self.initial_statuses > 40 or self.statuses > 40:
            raise ValueError("initial_statuses and statuses must be <= 40")
        return self


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    mastodon: MastodonConfig
    openai: OpenAIConfig = Field(default_factory=OpenAIConfig)
    captioning: CaptioningConfig = Field(default_factory=CaptioningConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
