from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping, Sequence
from typing import Any

import httpx

from chomp_gateway.config import BackendDefinition

logger = logging.getLogger("uvicorn.error")

ERROR_BODY_PREVIEW_CHARS = 2000


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    return {
        "error": str(exc).strip() or repr(exc),
        "error_type": exc.__class__.__name__.strip() or "RequestError",
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }


def _status_message(status_code: int, reason: str, body: str) -> str:
    status_line = f"HTTP {status_code} {reason}".strip()
    preview = body[:ERROR_BODY_PREVIEW_CHARS].strip()
    return f"{status_line}: {preview}" if preview else status_line


def _synthesized_error(
    model: str,
    *,
    message: str,
    error_type: str,
    code: str | int | None,
) -> dict[str, Any]:
    return {
        "id": "",
        "object": "error",
        "created": 0,
        "model": model,
        "choices": [],
        "error": {"message": message, "type": error_type, "code": code},
    }


def _upstream_error_envelope(body: str) -> dict[str, Any] | None:
    if not body:
        return None
    try:
        parsed = json.loads(body)
    except ValueError:
        return None
    if not isinstance(parsed, dict):
        return None
    error = parsed.get("error")
    if not error:
        return None
    if isinstance(error, str):
        parsed["error"] = {"message": error, "type": "api_error", "code": None}
    elif isinstance(error, dict):
        error.setdefault("message", "upstream error")
    else:
        parsed["error"] = {"message": str(error), "type": "api_error", "code": None}
    # Error responses never carry completion choices.
    parsed.pop("choices", None)
    return parsed


def build_upstream_headers(backend: BackendDefinition, api_key: str) -> dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "Accept": "application/json",
        "Authorization": f"Bearer {api_key}",
    }
    headers.update(backend.headers)
    return headers


def is_error_response(response: Mapping[str, Any]) -> bool:
    return bool(response.get("error"))


def error_message(response: Mapping[str, Any]) -> str:
    error = response.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message.strip():
            return message.strip()
        return json.dumps(error, ensure_ascii=False)
    if error:
        return str(error)
    return ""


def extract_completion_text(response: Mapping[str, Any]) -> str:
    choices = response.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first = choices[0]
    if not isinstance(first, dict):
        return ""
    message = first.get("message")
    if isinstance(message, dict):
        content = message.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts = [
                item.get("text", "")
                for item in content
                if isinstance(item, dict) and isinstance(item.get("text"), str)
            ]
            return "".join(parts)
    text = first.get("text")
    return text if isinstance(text, str) else ""


def extract_usage(response: Mapping[str, Any]) -> tuple[int, int]:
    usage = response.get("usage")
    if not isinstance(usage, dict):
        return 0, 0

    def _as_int(value: Any) -> int:
        if isinstance(value, bool):
            return 0
        if isinstance(value, (int, float)):
            return max(0, int(value))
        return 0

    return _as_int(usage.get("prompt_tokens")), _as_int(usage.get("completion_tokens"))


class UpstreamClient:
    """Executes chat completions against OpenAI-compatible backends.

    ``call`` never raises for upstream-side failures: HTTP errors, timeouts
    and connection failures all come back as a response dict whose ``error``
    field is populated and whose ``choices`` field is absent or empty.
    """

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        connect_timeout_seconds: float = 10.0,
        read_timeout_seconds: float | None = None,
        write_timeout_seconds: float = 30.0,
        pool_timeout_seconds: float = 10.0,
        metadata_timeout_seconds: float = 30.0,
    ) -> None:
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout=None,
                connect=max(0.1, float(connect_timeout_seconds)),
                read=(
                    max(0.1, float(read_timeout_seconds))
                    if read_timeout_seconds is not None
                    else None
                ),
                write=max(0.1, float(write_timeout_seconds)),
                pool=max(0.1, float(pool_timeout_seconds)),
            ),
            limits=httpx.Limits(max_connections=256, max_keepalive_connections=64),
        )
        # Overall bound for model listings and key checks.
        self._metadata_timeout_seconds = max(0.1, float(metadata_timeout_seconds))

    async def close(self) -> None:
        await self.client.aclose()

    async def call(
        self,
        backend: BackendDefinition,
        api_key: str,
        model: str,
        messages: Sequence[Mapping[str, Any]],
        timeout: float | None = None,
    ) -> dict[str, Any]:
        url = f"{backend.base_url}/chat/completions"
        request_kwargs: dict[str, Any] = {
            "json": {"model": model, "messages": list(messages)},
            "headers": build_upstream_headers(backend, api_key),
        }
        if timeout is not None:
            request_kwargs["timeout"] = httpx.Timeout(timeout)
        try:
            upstream = await self.client.post(url, **request_kwargs)
        except httpx.TimeoutException as exc:
            details = _request_error_details(exc)
            logger.warning(
                "upstream_timeout router=%s model=%s error_type=%s",
                backend.id,
                model,
                details["error_type"],
            )
            return _synthesized_error(
                model,
                message=f"upstream timeout ({details['error_type']})",
                error_type="timeout",
                code="upstream_timeout",
            )
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            logger.warning(
                "upstream_request_error router=%s model=%s error_type=%s error=%s",
                backend.id,
                model,
                details["error_type"],
                details["error"],
            )
            return _synthesized_error(
                model,
                message=(
                    f"Could not reach {backend.name} "
                    f"({details['error_type']}): {details['error']}"
                ),
                error_type="upstream_connection_error",
                code="upstream_connection_error",
            )

        body = upstream.text
        if upstream.status_code >= 400:
            logger.info(
                "upstream_error_status router=%s model=%s status=%d",
                backend.id,
                model,
                upstream.status_code,
            )
            envelope = _upstream_error_envelope(body)
            if envelope is not None:
                return envelope
            reason = upstream.reason_phrase or ""
            return _synthesized_error(
                model,
                message=_status_message(upstream.status_code, reason, body),
                error_type="api_error",
                code=upstream.status_code,
            )

        try:
            parsed = json.loads(body)
        except ValueError:
            parsed = None
        if not isinstance(parsed, dict):
            return _synthesized_error(
                model,
                message="upstream returned a non-JSON completion body",
                error_type="invalid_response",
                code=upstream.status_code,
            )
        if parsed.get("error"):
            envelope = _upstream_error_envelope(body)
            if envelope is not None:
                return envelope
        return parsed

    async def list_models(
        self,
        backend: BackendDefinition,
        api_key: str,
    ) -> list[dict[str, Any]]:
        try:
            upstream = await self._get_metadata(
                f"{backend.base_url}/models",
                headers=build_upstream_headers(backend, api_key),
            )
        except TimeoutError:
            logger.warning(
                "upstream_models_timeout router=%s timeout_s=%.1f",
                backend.id,
                self._metadata_timeout_seconds,
            )
            return []
        except httpx.RequestError as exc:
            logger.warning(
                "upstream_models_request_error router=%s error=%s",
                backend.id,
                _request_error_details(exc)["error"],
            )
            return []
        if upstream.status_code >= 400:
            logger.warning(
                "upstream_models_error router=%s status=%d %s",
                backend.id,
                upstream.status_code,
                upstream.reason_phrase,
            )
            return []
        try:
            payload = upstream.json()
        except ValueError:
            return []
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list):
            return []
        return [item for item in data if isinstance(item, dict)]

    async def check_key(self, backend: BackendDefinition, api_key: str) -> bool:
        try:
            upstream = await self._get_metadata(
                f"{backend.base_url}/auth/key",
                headers={"Authorization": f"Bearer {api_key}"},
            )
        except TimeoutError:
            logger.warning(
                "upstream_key_check_timeout router=%s timeout_s=%.1f",
                backend.id,
                self._metadata_timeout_seconds,
            )
            return False
        except httpx.RequestError as exc:
            logger.warning(
                "upstream_key_check_failed router=%s error=%s",
                backend.id,
                _request_error_details(exc)["error"],
            )
            return False
        return upstream.status_code < 400

    async def _get_metadata(self, url: str, *, headers: dict[str, str]) -> httpx.Response:
        async with asyncio.timeout(self._metadata_timeout_seconds):
            return await self.client.get(
                url,
                headers=headers,
                timeout=httpx.Timeout(self._metadata_timeout_seconds),
            )
