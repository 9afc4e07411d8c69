from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, TypeVar

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ValidationError

from chomp_gateway.catalog import ModelAutoSelector
from chomp_gateway.config import RouterRegistry, load_router_registry
from chomp_gateway.dispatcher import Dispatcher
from chomp_gateway.errors import AuthError, DispatchError, GatewayError
from chomp_gateway.gateway.audit import JobAuditLogger
from chomp_gateway.gateway.auth import (
    CredentialStore,
    extract_bearer_token,
    unauthorized,
)
from chomp_gateway.gateway.upstream import UpstreamClient
from chomp_gateway.runtime.background import BackgroundTasks
from chomp_gateway.runtime.jobs import JobStore
from chomp_gateway.runtime.kv import (
    AsyncKeyValueStore,
    build_key_value_store,
    ensure_reachable,
)
from chomp_gateway.runtime.poll import PollEngine
from chomp_gateway.runtime.retry import RetryPolicy
from chomp_gateway.schemas import ChatCompletionRequest, DispatchRequest, KeysRequest
from chomp_gateway.settings import Settings, get_settings

app = FastAPI(
    title="chomp gateway",
    description="OpenAI-compatible gateway over several LLM backends with async jobs.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")

ModelT = TypeVar("ModelT", bound=BaseModel)


def _cors_headers() -> dict[str, str]:
    settings: Settings | None = getattr(app.state, "settings", None)
    origin = settings.cors_allow_origin if settings is not None else "*"
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type, Authorization",
    }


@app.middleware("http")
async def cors_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    if not request.url.path.startswith("/v1"):
        return await call_next(request)
    if request.method == "OPTIONS":
        return Response(status_code=204, headers=_cors_headers())
    response = await call_next(request)
    response.headers.update(_cors_headers())
    return response


def _build_upstream_client(settings: Settings) -> UpstreamClient:
    return UpstreamClient(
        connect_timeout_seconds=settings.upstream_connect_timeout_seconds,
        read_timeout_seconds=settings.upstream_read_timeout_seconds,
        write_timeout_seconds=settings.upstream_write_timeout_seconds,
        pool_timeout_seconds=settings.upstream_pool_timeout_seconds,
        metadata_timeout_seconds=settings.upstream_metadata_timeout_seconds,
    )


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    registry = load_router_registry(settings.routers_config_path)
    kv = await ensure_reachable(
        build_key_value_store(redis_url=settings.redis_url, logger=logger),
        logger=logger,
    )
    upstream = _build_upstream_client(settings)
    selector = ModelAutoSelector(
        client=upstream.client,
        catalog_url=settings.model_catalog_url,
        cache_ttl_seconds=settings.model_catalog_cache_seconds,
        timeout_seconds=settings.model_catalog_timeout_seconds,
    )
    job_store = JobStore(
        kv,
        ttl_seconds=settings.job_ttl_seconds,
        index_cap=settings.job_index_cap,
    )
    poll_engine = PollEngine(
        job_store,
        policy=RetryPolicy(
            max_attempts=max(1, settings.poll_max_attempts),
            base_delay=max(0.0, settings.poll_base_delay_seconds),
            timeout=settings.poll_timeout_seconds,
        ),
    )
    credentials = CredentialStore(
        kv,
        registry=registry,
        upstream=upstream,
        validate_legacy_keys=settings.validate_legacy_keys,
        allow_env_keys=settings.allow_env_keys,
    )
    background = BackgroundTasks(logger=logger)
    audit_logger = JobAuditLogger(
        path=settings.audit_log_path,
        enabled=settings.audit_log_enabled,
    )

    app.state.settings = settings
    app.state.registry = registry
    app.state.kv = kv
    app.state.upstream = upstream
    app.state.selector = selector
    app.state.credentials = credentials
    app.state.background = background
    app.state.audit_logger = audit_logger
    app.state.dispatcher = Dispatcher(
        registry=registry,
        credentials=credentials,
        upstream=upstream,
        selector=selector,
        job_store=job_store,
        poll_engine=poll_engine,
        background=background,
        audit=audit_logger,
        sync_timeout_seconds=settings.sync_timeout_seconds,
        jobs_list_limit=settings.jobs_list_limit,
        resolve_auto_before_enqueue=settings.resolve_auto_before_enqueue,
    )
    logger.info(
        (
            "startup complete routers=%s kv_backend=%s audit_log_enabled=%s "
            "resolve_auto_before_enqueue=%s"
        ),
        ",".join(registry.ids()),
        type(kv).__name__,
        settings.audit_log_enabled,
        settings.resolve_auto_before_enqueue,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    settings: Settings | None = getattr(app.state, "settings", None)
    background: BackgroundTasks | None = getattr(app.state, "background", None)
    if background is not None:
        await background.drain(
            timeout=settings.background_drain_timeout_seconds if settings else None
        )
    upstream: UpstreamClient | None = getattr(app.state, "upstream", None)
    if upstream is not None:
        await upstream.close()
    kv: AsyncKeyValueStore | None = getattr(app.state, "kv", None)
    close_kv = getattr(kv, "close", None)
    if close_kv is not None:
        await close_kv()
    audit_logger: JobAuditLogger | None = getattr(app.state, "audit_logger", None)
    if audit_logger is not None:
        audit_logger.close()
    logger.info("shutdown complete")


def _token(request: Request) -> str | None:
    return extract_bearer_token(request.headers)


def _require_token(request: Request) -> str:
    token = _token(request)
    if token is None:
        raise AuthError("Missing Bearer token.")
    return token


async def _parse_body(request: Request, model: type[ModelT]) -> ModelT:
    try:
        payload = await request.json()
    except ValueError as exc:
        raise DispatchError("invalid JSON body") from exc
    if not isinstance(payload, dict):
        raise DispatchError("Expected a JSON object request body.")
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        message = first.get("msg", "invalid request body")
        raise DispatchError(f"{location}: {message}" if location else message) from exc


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    dispatcher: Dispatcher = app.state.dispatcher
    try:
        body = await _parse_body(request, ChatCompletionRequest)
        status_code, payload = await dispatcher.complete(
            _token(request),
            messages=body.messages,
            model=body.model,
            router=body.router,
        )
    except GatewayError:
        raise
    except Exception as exc:
        logger.exception("chat_completion_unhandled_error")
        return JSONResponse(
            status_code=500,
            content={
                "error": {
                    "message": str(exc) or "internal server error",
                    "type": "internal_error",
                }
            },
        )
    return JSONResponse(status_code=status_code, content=payload)


@app.get("/v1/models")
async def models(request: Request) -> dict[str, Any]:
    dispatcher: Dispatcher = app.state.dispatcher
    data = await dispatcher.list_models(_token(request))
    return {"object": "list", "data": data}


@app.post("/api/dispatch")
async def dispatch(request: Request) -> dict[str, Any]:
    dispatcher: Dispatcher = app.state.dispatcher
    body = await _parse_body(request, DispatchRequest)
    return await dispatcher.dispatch(
        _token(request),
        prompt=body.prompt,
        model=body.model,
        system=body.system,
        router=body.router,
    )


@app.post("/api/ask")
async def ask(request: Request) -> dict[str, Any]:
    dispatcher: Dispatcher = app.state.dispatcher
    body = await _parse_body(request, DispatchRequest)
    job = await dispatcher.ask(
        _token(request),
        prompt=body.prompt,
        model=body.model,
        system=body.system,
        router=body.router,
    )
    return job.to_public_dict()


@app.get("/api/result/{job_id}")
async def result(job_id: str, request: Request, wait: bool = False) -> dict[str, Any]:
    dispatcher: Dispatcher = app.state.dispatcher
    if wait:
        job = await dispatcher.wait_for_result(_token(request), job_id)
    else:
        job = await dispatcher.get_result(_token(request), job_id)
    return job.to_public_dict()


@app.get("/api/jobs")
async def jobs(request: Request, limit: int | None = None) -> list[dict[str, Any]]:
    dispatcher: Dispatcher = app.state.dispatcher
    return [job.to_public_dict() for job in await dispatcher.list_jobs(_token(request), limit)]


@app.post("/api/keys")
async def register_keys(request: Request) -> dict[str, Any]:
    credentials: CredentialStore = app.state.credentials
    body = await _parse_body(request, KeysRequest)
    token, record = await credentials.register(body.keys, openrouter_key=body.openrouter_key)
    logger.info("caller_registered routers=%s", ",".join(sorted(record.keys)))
    return {"token": token, **credentials.describe(record)}


@app.get("/api/keys")
async def inspect_keys(request: Request) -> dict[str, Any]:
    credentials: CredentialStore = app.state.credentials
    record = await credentials.resolve_caller(_token(request))
    return credentials.describe(record)


@app.patch("/api/keys")
async def update_keys(request: Request) -> dict[str, Any]:
    credentials: CredentialStore = app.state.credentials
    token = _require_token(request)
    await credentials.resolve_caller(token)
    body = await _parse_body(request, KeysRequest)
    record = await credentials.add_keys(token, body.keys or {})
    return credentials.describe(record)


@app.delete("/api/keys")
async def delete_keys(request: Request, router: str | None = None) -> dict[str, Any]:
    credentials: CredentialStore = app.state.credentials
    token = _require_token(request)
    if router:
        record = await credentials.remove_key(token, router)
        return credentials.describe(record)
    await credentials.revoke(token)
    logger.info("caller_revoked")
    return {"revoked": True}


@app.get("/api/models/free")
async def free_models() -> JSONResponse:
    selector: ModelAutoSelector = app.state.selector
    settings: Settings = app.state.settings
    models = await selector.free_models()
    return JSONResponse(
        content={"count": len(models), "models": [model.to_dict() for model in models]},
        headers={
            "Cache-Control": f"public, max-age={int(settings.model_catalog_cache_seconds)}"
        },
    )


@app.get("/api/routers")
async def routers() -> dict[str, Any]:
    registry: RouterRegistry = app.state.registry
    return {
        "routers": [
            {"id": backend.id, "name": backend.name, "default_model": backend.default_model}
            for backend in registry
        ]
    }


@app.exception_handler(GatewayError)
async def gateway_error_handler(_: Request, exc: GatewayError) -> JSONResponse:
    if isinstance(exc, AuthError) or exc.status_code == 401:
        return unauthorized(exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


def run() -> None:
    import uvicorn

    uvicorn.run("chomp_gateway.main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    run()
