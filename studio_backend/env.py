"""Deployment environment: variables, secrets, KV stores and rate limiters."""

from __future__ import annotations

import json
import os
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from starlette.requests import Request

from .errors import InternalError

Clock = Callable[[], float]

SECRET_NAMES = frozenset({"POSTHOG_API_KEY", "POSTHOG_DISTINCT_ID_SALT"})
KV_NAMESPACES_KEY = "KV_NAMESPACES"
DEFAULT_KV_NAMESPACES = "TELEMETRY_KV,VERSION_KV"
LIMITER_SUFFIX = "_LIMITER"


class BindingError(LookupError):
    """Raised when a variable, secret or binding is not configured."""


class KVNamespace:
    """In-memory key-value store with optional per-key expiry."""

    def __init__(self, clock: Clock = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[str, float | None]] = {}

    async def get(self, key: str) -> str | None:
        """Return the stored text, or None if absent or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    async def get_json(self, key: str) -> Any:
        """Return the stored value decoded as JSON, or None if absent."""
        raw = await self.get(key)
        return None if raw is None else json.loads(raw)

    async def put(self, key: str, value: str, expiration_ttl: float | None = None) -> None:
        """Store text under ``key``, expiring after ``expiration_ttl`` seconds."""
        if not isinstance(value, str):
            raise TypeError("KV values must be strings")
        if expiration_ttl is not None and expiration_ttl <= 0:
            raise ValueError("expiration_ttl must be positive")
        expires_at = None if expiration_ttl is None else self._clock() + expiration_ttl
        self._entries[key] = (value, expires_at)


class RateLimiter:
    """Sliding-window limiter allowing ``max_requests`` per key per ``period``."""

    def __init__(self, max_requests: int, period: float, clock: Clock = time.monotonic) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if period <= 0:
            raise ValueError("period must be positive")
        self.max_requests = max_requests
        self.period = period
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}

    async def limit(self, key: str) -> bool:
        """Record a request for ``key``; return False if it is over the limit."""
        now = self._clock()
        hits = self._hits.setdefault(key, deque())
        while hits and hits[0] <= now - self.period:
            hits.popleft()
        if len(hits) >= self.max_requests:
            return False
        hits.append(now)
        return True


def _parse_limiter(name: str, spec: str) -> RateLimiter:
    try:
        count, _, period = spec.partition("/")
        return RateLimiter(int(count), float(period))
    except ValueError as exc:
        raise ValueError(
            f"{name} must look like '<requests>/<seconds>', got {spec!r}"
        ) from exc


@dataclass
class WorkerEnv:
    """Named configuration and bindings available to request handlers."""

    variables: Mapping[str, str] = field(default_factory=dict)
    secrets: Mapping[str, str] = field(default_factory=dict)
    kv_namespaces: Mapping[str, KVNamespace] = field(default_factory=dict)
    rate_limiters: Mapping[str, RateLimiter] = field(default_factory=dict)

    def var(self, name: str) -> str:
        """Return a plain variable."""
        try:
            return self.variables[name]
        except KeyError:
            raise BindingError(f"variable {name} is not configured") from None

    def secret(self, name: str) -> str:
        """Return a secret."""
        try:
            return self.secrets[name]
        except KeyError:
            raise BindingError(f"secret {name} is not configured") from None

    def kv(self, name: str) -> KVNamespace:
        """Return a KV namespace binding."""
        try:
            return self.kv_namespaces[name]
        except KeyError:
            raise BindingError(f"KV namespace {name} is not bound") from None

    def rate_limiter(self, name: str) -> RateLimiter:
        """Return a rate limiter binding."""
        try:
            return self.rate_limiters[name]
        except KeyError:
            raise BindingError(f"rate limiter {name} is not bound") from None

    @classmethod
    def from_environ(cls, environ: Mapping[str, str] | None = None) -> WorkerEnv:
        """Build an environment from process environment variables.

        Names in SECRET_NAMES become secrets; names ending in ``_LIMITER``
        hold ``<requests>/<seconds>`` limiter settings; ``KV_NAMESPACES``
        lists the in-memory KV namespaces to create; the rest are variables.
        """
        environ = os.environ if environ is None else environ
        kv_names = [
            name.strip()
            for name in environ.get(KV_NAMESPACES_KEY, DEFAULT_KV_NAMESPACES).split(",")
            if name.strip()
        ]
        variables: dict[str, str] = {}
        secrets: dict[str, str] = {}
        limiters: dict[str, RateLimiter] = {}
        for name, value in environ.items():
            if name == KV_NAMESPACES_KEY:
                continue
            if name.endswith(LIMITER_SUFFIX):
                limiters[name] = _parse_limiter(name, value)
            elif name in SECRET_NAMES:
                secrets[name] = value
            else:
                variables[name] = value
        return cls(
            variables=variables,
            secrets=secrets,
            kv_namespaces={name: KVNamespace() for name in kv_names},
            rate_limiters=limiters,
        )


def get_env(request: Request) -> WorkerEnv:
    """Return the WorkerEnv from the request state, falling back to the app state."""
    env = getattr(request.state, "env", None)
    if env is None and "app" in request.scope:
        env = getattr(request.app.state, "env", None)
    if not isinstance(env, WorkerEnv):
        raise InternalError("worker environment missing from request")
    return env