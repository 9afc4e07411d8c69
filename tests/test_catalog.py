from __future__ import annotations

import asyncio
import time

import httpx
import pytest

from chomp_gateway.catalog import (
    OPENROUTER_MODELS_URL,
    ModelAutoSelector,
    filter_free_models,
    is_capable_model_name,
)
from chomp_gateway.errors import ModelError
from tests.client_test_utils import StubUpstream, catalog_payload

CATALOG = [
    {"id": "meta-llama/llama-3.2-3b-instruct:free", "name": "Llama 3.2 3B", "context_length": 200000},
    {"id": "meta-llama/llama-3.3-70b-instruct:free", "name": "Llama 3.3 70B", "context_length": 65536},
    {
        "id": "deepseek/deepseek-r1:free",
        "name": "DeepSeek R1",
        "context_length": 163840,
        "top_provider": {"max_completion_tokens": 8192},
    },
    {"id": "openai/gpt-4o", "name": "GPT-4o", "context_length": 128000},
    {"id": "qwen/qwen-2.5-7b-instruct:free", "name": "Qwen 2.5 7B", "context_length": 32768},
]


def test_size_heuristic_prefers_large_models() -> None:
    assert is_capable_model_name("DeepSeek R1")
    assert not is_capable_model_name("Llama 3.2 3B")
    assert is_capable_model_name("Llama 3.1 70B (8b draft)")
    assert not is_capable_model_name("Mistral 7B")


def test_filter_free_models_sorts_by_context_length() -> None:
    models = filter_free_models(CATALOG)

    assert [model.id for model in models] == [
        "deepseek/deepseek-r1:free",
        "meta-llama/llama-3.3-70b-instruct:free",
    ]
    assert models[0].max_output == 8192
    assert models[1].max_output == 0
    assert models[0].to_dict() == {
        "id": "deepseek/deepseek-r1:free",
        "name": "DeepSeek R1",
        "context_length": 163840,
        "max_output": 8192,
    }


def test_pick_default_returns_largest_context_free_model() -> None:
    stub = StubUpstream().json("GET", OPENROUTER_MODELS_URL, catalog_payload(CATALOG))
    selector = ModelAutoSelector(client=stub.client())

    assert asyncio.run(selector.pick_default()) == "deepseek/deepseek-r1:free"


def test_pick_default_fails_when_nothing_qualifies() -> None:
    stub = StubUpstream().json(
        "GET",
        OPENROUTER_MODELS_URL,
        catalog_payload([{"id": "openai/gpt-4o", "name": "GPT-4o", "context_length": 1}]),
    )
    selector = ModelAutoSelector(client=stub.client())

    with pytest.raises(ModelError, match="No free models available"):
        asyncio.run(selector.pick_default())


def test_catalog_failure_raises_model_error() -> None:
    stub = StubUpstream().json("GET", OPENROUTER_MODELS_URL, {"error": "down"}, status_code=503)
    selector = ModelAutoSelector(client=stub.client())

    with pytest.raises(ModelError) as excinfo:
        asyncio.run(selector.fetch_catalog())
    assert excinfo.value.status_code == 502


def test_catalog_unreachable_raises_model_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("dns failure", request=request)

    selector = ModelAutoSelector(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    with pytest.raises(ModelError, match="unreachable"):
        asyncio.run(selector.fetch_catalog())


def test_catalog_is_cached_until_ttl_expires() -> None:
    stub = StubUpstream().json("GET", OPENROUTER_MODELS_URL, catalog_payload(CATALOG))
    now = {"value": 0.0}
    selector = ModelAutoSelector(
        client=stub.client(),
        cache_ttl_seconds=900,
        clock=lambda: now["value"],
    )

    async def scenario() -> None:
        await selector.free_models()
        now["value"] = 899.0
        await selector.free_models()
        now["value"] = 900.0
        await selector.free_models()

    asyncio.run(scenario())
    assert len(stub.requests) == 2


def test_hung_catalog_fetch_times_out_and_releases_the_lock() -> None:
    async def hang(_request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return httpx.Response(200, json=catalog_payload(CATALOG))

    selector = ModelAutoSelector(
        client=httpx.AsyncClient(transport=httpx.MockTransport(hang)),
        timeout_seconds=0.2,
    )

    async def scenario() -> None:
        for _ in range(2):
            with pytest.raises(ModelError, match="timed out"):
                await selector.pick_default()

    started = time.monotonic()
    asyncio.run(scenario())
    assert time.monotonic() - started < 2.0
