from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from chomp_gateway.catalog import CATALOG_BACKEND_ID, ModelAutoSelector
from chomp_gateway.config import BackendDefinition, RouterRegistry
from chomp_gateway.errors import (
    DispatchError,
    GatewayError,
    ModelError,
    StoreError,
    describe_error,
)
from chomp_gateway.gateway.audit import JobAuditLogger
from chomp_gateway.gateway.auth import CallerRecord, CredentialStore
from chomp_gateway.gateway.upstream import (
    UpstreamClient,
    error_message,
    extract_completion_text,
    extract_usage,
    is_error_response,
)
from chomp_gateway.runtime.background import BackgroundTasks
from chomp_gateway.runtime.jobs import Job, JobStore, generate_job_id
from chomp_gateway.runtime.poll import PollEngine

logger = logging.getLogger("uvicorn.error")

AUTO_MODEL = "auto"
NO_KEYS_MESSAGE = "unable to resolve a router: no keys configured"


@dataclass(frozen=True, slots=True)
class RouteResolution:
    backend: BackendDefinition
    model: str
    api_key: str
    # True when the model is still "auto" and the catalog selector must pick it.
    auto_select: bool = False

    @property
    def backend_id(self) -> str:
        return self.backend.id


@dataclass(slots=True)
class AskReply:
    """Text rendering of an ``ask`` outcome for tool-calling front ends."""

    text: str
    is_error: bool
    meta: dict[str, Any] = field(default_factory=dict)


def build_messages(prompt: str, system: str = "") -> list[dict[str, str]]:
    messages: list[dict[str, str]] = []
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": prompt})
    return messages


def _elapsed_ms(started: float) -> int:
    return max(0, int((time.perf_counter() - started) * 1000))


class Dispatcher:
    def __init__(
        self,
        *,
        registry: RouterRegistry,
        credentials: CredentialStore,
        upstream: UpstreamClient,
        selector: ModelAutoSelector,
        job_store: JobStore,
        poll_engine: PollEngine,
        background: BackgroundTasks,
        audit: JobAuditLogger | None = None,
        sync_timeout_seconds: float = 120.0,
        jobs_list_limit: int = 50,
        resolve_auto_before_enqueue: bool = False,
        job_id_factory: Callable[[], str] = generate_job_id,
    ) -> None:
        self._registry = registry
        self._credentials = credentials
        self._upstream = upstream
        self._selector = selector
        self._job_store = job_store
        self._poll_engine = poll_engine
        self._background = background
        self._audit = audit
        self._sync_timeout_seconds = max(0.1, float(sync_timeout_seconds))
        self._jobs_list_limit = max(1, int(jobs_list_limit))
        self._resolve_auto_before_enqueue = resolve_auto_before_enqueue
        self._job_id_factory = job_id_factory

    def resolve_route(
        self,
        record: CallerRecord,
        model: str | None,
        router: str | None,
        *,
        allow_auto_select: bool = False,
    ) -> RouteResolution:
        requested_model = (model or "").strip()
        explicit_router = (router or "").strip()

        backend_id: str | None
        if explicit_router:
            # An explicit router wins; the model string is sent as given.
            backend_id = explicit_router
            resolved_model = requested_model
        else:
            backend_id, resolved_model = self._registry.resolve(requested_model)
        if backend_id is None:
            backend_id = self._credentials.first_available_backend(
                record, self._registry.ids()
            )
        if backend_id is None:
            raise DispatchError(NO_KEYS_MESSAGE, status_code=502)

        backend = self._registry.lookup(backend_id)
        if backend is None:
            raise DispatchError(f"unknown router: {backend_id}", status_code=400)

        auto_select = False
        if not resolved_model or resolved_model == AUTO_MODEL:
            if allow_auto_select and backend.id == CATALOG_BACKEND_ID:
                resolved_model = AUTO_MODEL
                auto_select = True
            else:
                resolved_model = backend.default_model

        api_key = self._credentials.get_key(record, backend.id)
        if not api_key:
            raise DispatchError(f"no key for router {backend.id}", status_code=401)
        return RouteResolution(
            backend=backend,
            model=resolved_model,
            api_key=api_key,
            auto_select=auto_select,
        )

    async def complete(
        self,
        token: str | None,
        *,
        messages: Sequence[Mapping[str, Any]] | None,
        model: str | None = None,
        router: str | None = None,
    ) -> tuple[int, dict[str, Any]]:
        record = await self._credentials.resolve_caller(token)
        if not messages:
            raise DispatchError("messages array is required and must not be empty")
        route = self.resolve_route(record, model, router)

        started = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                self._upstream.call(route.backend, route.api_key, route.model, messages),
                timeout=self._sync_timeout_seconds,
            )
        except TimeoutError as exc:
            logger.warning(
                "chat_completion_timeout router=%s model=%s timeout_s=%.1f",
                route.backend_id,
                route.model,
                self._sync_timeout_seconds,
            )
            raise DispatchError("upstream timeout", status_code=504) from exc
        latency_ms = _elapsed_ms(started)

        payload = dict(response)
        payload["chomp"] = {"router": route.backend_id, "latency_ms": latency_ms}
        failed = is_error_response(response)
        logger.info(
            "chat_completion router=%s model=%s status=%s latency_ms=%d",
            route.backend_id,
            route.model,
            "error" if failed else "ok",
            latency_ms,
        )
        return (502 if failed else 200), payload

    async def dispatch(
        self,
        token: str | None,
        *,
        prompt: str | None,
        model: str | None = None,
        system: str | None = None,
        router: str | None = None,
    ) -> dict[str, Any]:
        token, record = await self._authenticate(token)
        if not prompt or not prompt.strip():
            raise DispatchError("prompt required")
        route = self.resolve_route(record, model, router, allow_auto_select=True)
        if route.auto_select and self._resolve_auto_before_enqueue:
            route = await self._select_now(route)

        job = Job(
            id=self._job_id_factory(),
            caller_token=token,
            prompt=prompt,
            system=system or "",
            router=route.backend_id,
            model=route.model,
        )
        try:
            await self._job_store.put(token, job)
        except StoreError as exc:
            raise DispatchError(exc.message, status_code=500) from exc
        try:
            await self._job_store.append_to_index(token, job.id)
        except StoreError as exc:
            # The record exists but will never run; close it out.
            job.finish_error(exc.message, latency_ms=0)
            await self._persist_final(token, job)
            raise DispatchError(exc.message, status_code=500) from exc

        logger.info(
            "job_dispatched job_id=%s router=%s model=%s auto_select=%s",
            job.id,
            job.router,
            job.model,
            route.auto_select,
        )
        if self._audit is not None:
            self._audit.job_dispatched(job)
        self._background.spawn(
            self._execute(token, job, route),
            name=f"job-{job.id}",
        )
        return {
            "id": job.id,
            "model": job.model,
            "router": job.router,
            "status": job.status.value,
        }

    async def get_result(self, token: str | None, job_id: str) -> Job:
        token, _ = await self._authenticate(token)
        return await self._poll_engine.get(token, job_id)

    async def wait_for_result(self, token: str | None, job_id: str) -> Job:
        token, _ = await self._authenticate(token)
        return await self._poll_engine.poll_until_done(token, job_id)

    async def list_jobs(self, token: str | None, limit: int | None = None) -> list[Job]:
        token, _ = await self._authenticate(token)
        effective = self._jobs_list_limit if limit is None else limit
        effective = max(1, min(int(effective), self._jobs_list_limit))
        return await self._job_store.list_recent(token, effective)

    async def ask(
        self,
        token: str | None,
        *,
        prompt: str | None,
        model: str | None = None,
        system: str | None = None,
        router: str | None = None,
    ) -> Job:
        dispatched = await self.dispatch(
            token, prompt=prompt, model=model, system=system, router=router
        )
        return await self._poll_engine.poll_until_done(str(token), dispatched["id"])

    async def ask_text(
        self,
        token: str | None,
        *,
        prompt: str | None,
        model: str | None = None,
        system: str | None = None,
        router: str | None = None,
    ) -> AskReply:
        try:
            job = await self.ask(
                token, prompt=prompt, model=model, system=system, router=router
            )
        except GatewayError as exc:
            return AskReply(text=describe_error(exc), is_error=True)
        if job.error:
            return AskReply(text=f"Error: {job.error}", is_error=True)
        return AskReply(
            text=job.result,
            is_error=False,
            meta={
                "model": job.model,
                "router": job.router,
                "tokens_in": job.tokens_in,
                "tokens_out": job.tokens_out,
                "latency_ms": job.latency_ms,
            },
        )

    async def list_models(self, token: str | None) -> list[dict[str, Any]]:
        record = await self._credentials.resolve_caller(token)
        targets = [
            (backend, key)
            for backend in self._registry
            if (key := record.keys.get(backend.id))
        ]
        results = await asyncio.gather(
            *(self._upstream.list_models(backend, key) for backend, key in targets),
            return_exceptions=True,
        )
        models: list[dict[str, Any]] = []
        for (backend, _), result in zip(targets, results, strict=True):
            if isinstance(result, BaseException):
                logger.warning(
                    "model_listing_failed router=%s error=%s", backend.id, result
                )
                continue
            for item in result:
                model_id = item.get("id")
                if not isinstance(model_id, str) or not model_id:
                    continue
                created = item.get("created")
                models.append(
                    {
                        "id": f"{backend.id}/{model_id}",
                        "object": "model",
                        "created": created if isinstance(created, int) else 0,
                        "owned_by": item.get("owned_by") or backend.id,
                    }
                )
        return models

    async def _authenticate(self, token: str | None) -> tuple[str, CallerRecord]:
        record = await self._credentials.resolve_caller(token)
        return str(token), record

    async def _select_now(self, route: RouteResolution) -> RouteResolution:
        try:
            selected = await self._selector.pick_default()
        except ModelError as exc:
            raise DispatchError(exc.message, status_code=502) from exc
        return RouteResolution(backend=route.backend, model=selected, api_key=route.api_key)

    async def _execute(self, token: str, job: Job, route: RouteResolution) -> None:
        started = time.perf_counter()
        try:
            if route.auto_select:
                job.model = await self._selector.pick_default()
            response = await self._upstream.call(
                route.backend,
                route.api_key,
                job.model,
                build_messages(job.prompt, job.system),
            )
            if is_error_response(response):
                job.finish_error(
                    error_message(response) or f"{route.backend.name} returned an error",
                    latency_ms=_elapsed_ms(started),
                )
            else:
                tokens_in, tokens_out = extract_usage(response)
                job.finish_done(
                    extract_completion_text(response),
                    tokens_in=tokens_in,
                    tokens_out=tokens_out,
                    latency_ms=_elapsed_ms(started),
                )
        except GatewayError as exc:
            job.finish_error(exc.message, latency_ms=_elapsed_ms(started))
        except asyncio.CancelledError:
            job.finish_error("job cancelled during shutdown", latency_ms=_elapsed_ms(started))
            raise
        except Exception as exc:
            logger.exception("job_execution_crashed job_id=%s", job.id)
            job.finish_error(
                str(exc) or exc.__class__.__name__,
                latency_ms=_elapsed_ms(started),
            )
        finally:
            if not job.status.is_terminal:
                job.finish_error("job execution interrupted", latency_ms=_elapsed_ms(started))
            # A shutdown cancel must not abort the terminal write.
            await asyncio.shield(self._persist_final(token, job))

    async def _persist_final(self, token: str, job: Job) -> None:
        try:
            await self._job_store.put(token, job)
        except StoreError as exc:
            logger.error(
                "job_final_write_failed job_id=%s status=%s error=%s",
                job.id,
                job.status.value,
                exc.message,
            )
            return
        logger.info(
            "job_finished job_id=%s router=%s model=%s status=%s latency_ms=%d",
            job.id,
            job.router,
            job.model,
            job.status.value,
            job.latency_ms,
        )
        if self._audit is not None:
            self._audit.job_finished(job)
