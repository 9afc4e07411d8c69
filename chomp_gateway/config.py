from __future__ import annotations

import os
from collections.abc import Iterable, Iterator
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator


class BackendDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    base_url: str
    default_model: str
    headers: dict[str, str] = Field(default_factory=dict)
    api_key_env: str | None = None

    @field_validator("id")
    @classmethod
    def _validate_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Router id must not be empty.")
        if "/" in normalized:
            raise ValueError(f"Router id '{normalized}' must not contain '/'.")
        return normalized

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.strip().rstrip("/")

    def resolved_env_key(self) -> str | None:
        if not self.api_key_env:
            return None
        value = os.getenv(self.api_key_env, "").strip()
        return value or None


DEFAULT_BACKENDS: tuple[BackendDefinition, ...] = (
    BackendDefinition(
        id="zen",
        name="OpenCode Zen",
        base_url="https://opencode.ai/zen/v1",
        default_model="minimax-m2.5-free",
    ),
    BackendDefinition(
        id="groq",
        name="Groq",
        base_url="https://api.groq.com/openai/v1",
        default_model="llama-3.3-70b-versatile",
        api_key_env="GROQ_API_KEY",
    ),
    BackendDefinition(
        id="cerebras",
        name="Cerebras",
        base_url="https://api.cerebras.ai/v1",
        default_model="llama-3.3-70b",
        api_key_env="CEREBRAS_API_KEY",
    ),
    BackendDefinition(
        id="sambanova",
        name="SambaNova",
        base_url="https://api.sambanova.ai/v1",
        default_model="Meta-Llama-3.3-70B-Instruct",
        api_key_env="SAMBANOVA_API_KEY",
    ),
    BackendDefinition(
        id="fireworks",
        name="Fireworks",
        base_url="https://api.fireworks.ai/inference/v1",
        default_model="accounts/fireworks/models/llama-v3p3-70b-instruct",
        api_key_env="FIREWORKS_API_KEY",
    ),
    BackendDefinition(
        id="openrouter",
        name="OpenRouter",
        base_url="https://openrouter.ai/api/v1",
        default_model="auto",
        headers={
            "HTTP-Referer": "https://chomp.coey.dev",
            "X-Title": "chomp",
        },
        api_key_env="OPENROUTER_API_KEY",
    ),
)


class RouterRegistry:
    """Immutable table of upstream backends, in resolution order."""

    def __init__(self, backends: Iterable[BackendDefinition]) -> None:
        ordered = tuple(backends)
        by_id: dict[str, BackendDefinition] = {}
        for backend in ordered:
            if backend.id in by_id:
                raise ValueError(f"Duplicate router id '{backend.id}'.")
            by_id[backend.id] = backend
        self._backends = ordered
        self._by_id = by_id

    def __iter__(self) -> Iterator[BackendDefinition]:
        return iter(self._backends)

    def __len__(self) -> int:
        return len(self._backends)

    def __contains__(self, backend_id: object) -> bool:
        return backend_id in self._by_id

    def ids(self) -> list[str]:
        return [backend.id for backend in self._backends]

    def lookup(self, backend_id: str) -> BackendDefinition | None:
        return self._by_id.get(backend_id)

    def resolve(self, model_string: str) -> tuple[str | None, str]:
        prefix, sep, remainder = model_string.partition("/")
        if not sep:
            return None, model_string
        if prefix in self._by_id:
            return prefix, remainder
        # Model ids such as "accounts/fireworks/models/x" keep their slashes.
        return None, model_string


def load_router_registry(config_path: str | Path | None = None) -> RouterRegistry:
    if config_path is None:
        return RouterRegistry(DEFAULT_BACKENDS)
    path = Path(config_path)
    if not path.exists():
        return RouterRegistry(DEFAULT_BACKENDS)

    with path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Expected YAML object in '{path}'.")
    entries = raw.get("routers")
    if not isinstance(entries, list) or not entries:
        raise ValueError(f"Expected non-empty 'routers' list in '{path}'.")
    backends: list[BackendDefinition] = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise ValueError(f"Router entries in '{path}' must be objects.")
        backends.append(BackendDefinition.model_validate(entry))
    return RouterRegistry(backends)
