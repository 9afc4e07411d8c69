from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import Any

import httpx

from chomp_gateway.errors import ModelError

OPENROUTER_MODELS_URL = "https://openrouter.ai/api/v1/models"
CATALOG_BACKEND_ID = "openrouter"
FREE_MODEL_SUFFIX = ":free"

SMALL_MODEL_MARKERS = ("1b", "3b", "7b", "8b")
LARGE_MODEL_MARKERS = ("70b", "80b", "180b")


@dataclass(frozen=True, slots=True)
class FreeModel:
    id: str
    name: str
    context_length: int
    max_output: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    return 0


def is_capable_model_name(name: str) -> bool:
    normalized = name.lower()
    tiny = any(marker in normalized for marker in SMALL_MODEL_MARKERS)
    big = any(marker in normalized for marker in LARGE_MODEL_MARKERS)
    return not tiny or big


def filter_free_models(catalog: list[dict[str, Any]]) -> list[FreeModel]:
    candidates: list[FreeModel] = []
    for item in catalog:
        model_id = item.get("id")
        if not isinstance(model_id, str) or not model_id.endswith(FREE_MODEL_SUFFIX):
            continue
        name = item.get("name")
        if not isinstance(name, str) or not name.strip():
            name = model_id
        if not is_capable_model_name(name):
            continue
        top_provider = item.get("top_provider")
        max_output = (
            _as_int(top_provider.get("max_completion_tokens"))
            if isinstance(top_provider, dict)
            else 0
        )
        candidates.append(
            FreeModel(
                id=model_id,
                name=name,
                context_length=_as_int(item.get("context_length")),
                max_output=max_output,
            )
        )
    candidates.sort(key=lambda model: model.context_length, reverse=True)
    return candidates


class ModelAutoSelector:
    """Picks a free, reasonably sized default model from the public catalog."""

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        catalog_url: str = OPENROUTER_MODELS_URL,
        cache_ttl_seconds: float = 900.0,
        timeout_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._catalog_url = catalog_url
        self._cache_ttl_seconds = max(0.0, float(cache_ttl_seconds))
        self._timeout_seconds = max(0.1, float(timeout_seconds))
        self._clock = clock
        self._cached: tuple[float, list[dict[str, Any]]] | None = None
        self._lock = asyncio.Lock()

    async def fetch_catalog(self) -> list[dict[str, Any]]:
        async with self._lock:
            if self._cached is not None:
                fetched_at, catalog = self._cached
                if self._clock() - fetched_at < self._cache_ttl_seconds:
                    return catalog
            catalog = await self._fetch_remote()
            self._cached = (self._clock(), catalog)
            return catalog

    async def free_models(self) -> list[FreeModel]:
        return filter_free_models(await self.fetch_catalog())

    async def pick_default(self) -> str:
        models = await self.free_models()
        if not models:
            raise ModelError("No free models available")
        return models[0].id

    async def _fetch_remote(self) -> list[dict[str, Any]]:
        try:
            async with asyncio.timeout(self._timeout_seconds):
                response = await self._client.get(
                    self._catalog_url,
                    headers={"Accept": "application/json"},
                    timeout=httpx.Timeout(self._timeout_seconds),
                )
        except TimeoutError as exc:
            raise ModelError(
                f"Model catalog timed out after {self._timeout_seconds:g} seconds"
            ) from exc
        except httpx.RequestError as exc:
            raise ModelError(f"Model catalog unreachable: {exc}") from exc
        if response.status_code >= 400:
            raise ModelError(f"Model catalog returned {response.status_code}")
        try:
            body = response.json()
        except ValueError as exc:
            raise ModelError("Invalid model catalog response: not JSON.") from exc
        if not isinstance(body, dict):
            raise ModelError("Invalid model catalog response: expected top-level object.")
        data = body.get("data")
        if not isinstance(data, list):
            raise ModelError("Invalid model catalog response: missing 'data' list.")
        return [item for item in data if isinstance(item, dict)]
