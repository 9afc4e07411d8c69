from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ChatCompletionRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: str | None = None
    messages: list[dict[str, Any]] = Field(default_factory=list)
    router: str | None = None


class DispatchRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    prompt: str | None = None
    model: str | None = None
    system: str | None = None
    router: str | None = None


class KeysRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    keys: dict[str, str] | None = None
    openrouter_key: str | None = None
