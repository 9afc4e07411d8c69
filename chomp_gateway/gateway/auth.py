from __future__ import annotations

import json
import secrets
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from fastapi import status
from fastapi.responses import JSONResponse

from chomp_gateway.config import RouterRegistry
from chomp_gateway.errors import AuthError, RegistrationError, StoreError
from chomp_gateway.gateway.upstream import UpstreamClient
from chomp_gateway.runtime.jobs import utc_now_iso
from chomp_gateway.runtime.kv import AsyncKeyValueStore

LEGACY_BACKEND_ID = "openrouter"
LEGACY_KEY_PREFIX = "sk-or-"
TOKEN_BYTES = 32


@dataclass(slots=True)
class CallerRecord:
    keys: dict[str, str] = field(default_factory=dict)
    created: str = field(default_factory=utc_now_iso)

    def to_record(self) -> str:
        return json.dumps(
            {"keys": dict(self.keys), "created": self.created},
            ensure_ascii=True,
            separators=(",", ":"),
        )

    @classmethod
    def from_record(cls, raw: str) -> CallerRecord:
        payload = json.loads(raw)
        if not isinstance(payload, dict):
            raise ValueError("Caller record must be a JSON object.")
        created = str(payload.get("created") or "")
        keys = payload.get("keys")
        if not isinstance(keys, dict):
            # Legacy single-key shape: {"openrouter_key": ..., "created": ...}
            legacy_key = payload.get("openrouter_key")
            keys = {LEGACY_BACKEND_ID: legacy_key} if legacy_key else {}
        return cls(
            keys={str(k): str(v) for k, v in keys.items() if isinstance(v, str) and v},
            created=created,
        )


def user_key(token: str) -> str:
    return f"user:{token}"


def generate_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


def extract_bearer_token(headers: Mapping[str, str]) -> str | None:
    auth_header = headers.get("authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def mask_key(key: str) -> str:
    if len(key) <= 12:
        return "*" * len(key)
    return f"{key[:8]}...{key[-4:]}"


class CredentialStore:
    def __init__(
        self,
        kv: AsyncKeyValueStore,
        *,
        registry: RouterRegistry,
        upstream: UpstreamClient | None = None,
        validate_legacy_keys: bool = True,
        allow_env_keys: bool = False,
    ) -> None:
        self._kv = kv
        self._registry = registry
        self._upstream = upstream
        self._validate_legacy_keys = validate_legacy_keys
        self._allow_env_keys = allow_env_keys

    async def resolve_caller(self, token: str | None) -> CallerRecord:
        if not token:
            raise AuthError("Missing Bearer token.")
        try:
            raw = await self._kv.get(user_key(token))
        except Exception as exc:
            raise AuthError("Credential lookup failed.") from exc
        if raw is None:
            raise AuthError("Invalid token.")
        try:
            return CallerRecord.from_record(raw)
        except (TypeError, ValueError) as exc:
            raise AuthError("Corrupt caller record.") from exc

    def get_key(self, record: CallerRecord, backend_id: str) -> str | None:
        key = record.keys.get(backend_id)
        if key:
            return key
        if self._allow_env_keys:
            backend = self._registry.lookup(backend_id)
            if backend is not None:
                return backend.resolved_env_key()
        return None

    @staticmethod
    def first_available_backend(
        record: CallerRecord,
        ordered_backend_ids: Sequence[str],
    ) -> str | None:
        for backend_id in ordered_backend_ids:
            if record.keys.get(backend_id):
                return backend_id
        return None

    async def register(
        self,
        keys: Mapping[str, str] | None = None,
        *,
        openrouter_key: str | None = None,
    ) -> tuple[str, CallerRecord]:
        if openrouter_key is not None and not keys:
            cleaned = {LEGACY_BACKEND_ID: await self._validated_legacy_key(openrouter_key)}
        else:
            cleaned = self._clean_keys(keys or {})
            if openrouter_key:
                cleaned[LEGACY_BACKEND_ID] = await self._validated_legacy_key(
                    openrouter_key
                )
        if not cleaned:
            raise RegistrationError("At least one non-empty API key is required.")

        token = generate_token()
        record = CallerRecord(keys=cleaned)
        await self._write(token, record)
        return token, record

    async def add_keys(self, token: str, keys: Mapping[str, str]) -> CallerRecord:
        record = await self.resolve_caller(token)
        cleaned = self._clean_keys(keys)
        if not cleaned:
            raise RegistrationError("At least one non-empty API key is required.")
        record.keys.update(cleaned)
        await self._write(token, record)
        return record

    async def remove_key(self, token: str, backend_id: str) -> CallerRecord:
        record = await self.resolve_caller(token)
        if backend_id not in record.keys:
            raise RegistrationError(f"No key registered for router '{backend_id}'.")
        record.keys.pop(backend_id)
        await self._write(token, record)
        return record

    async def revoke(self, token: str) -> None:
        await self.resolve_caller(token)
        try:
            await self._kv.delete(user_key(token))
        except Exception as exc:
            raise StoreError(f"Token revocation failed: {exc}") from exc

    def describe(self, record: CallerRecord) -> dict[str, Any]:
        previews = {
            backend_id: mask_key(key) for backend_id, key in sorted(record.keys.items())
        }
        return {
            "keys": previews,
            "routers": [rid for rid in self._registry.ids() if rid in record.keys],
            "created": record.created,
        }

    def _clean_keys(self, keys: Mapping[str, str]) -> dict[str, str]:
        cleaned: dict[str, str] = {}
        for backend_id, key in keys.items():
            if not isinstance(key, str) or not key.strip():
                continue
            normalized_id = str(backend_id).strip()
            if normalized_id not in self._registry:
                raise RegistrationError(f"unknown router: {normalized_id}")
            cleaned[normalized_id] = key.strip()
        return cleaned

    async def _validated_legacy_key(self, key: str) -> str:
        normalized = key.strip()
        if not normalized.startswith(LEGACY_KEY_PREFIX):
            raise RegistrationError(
                f"openrouter_key required (must start with {LEGACY_KEY_PREFIX})"
            )
        if not self._validate_legacy_keys or self._upstream is None:
            return normalized
        backend = self._registry.lookup(LEGACY_BACKEND_ID)
        if backend is None:
            raise RegistrationError(f"unknown router: {LEGACY_BACKEND_ID}")
        if not await self._upstream.check_key(backend, normalized):
            raise RegistrationError("invalid OpenRouter key")
        return normalized

    async def _write(self, token: str, record: CallerRecord) -> None:
        try:
            await self._kv.set(user_key(token), record.to_record())
        except Exception as exc:
            raise StoreError(f"Caller record write failed: {exc}") from exc


def unauthorized(message: str = "unauthorized") -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        headers={"WWW-Authenticate": 'Bearer realm="chomp"'},
        content={
            "error": {
                "message": message,
                "type": "authentication_error",
                "code": "invalid_api_key",
            },
        },
    )
