"""Latest plugin release, proxied from GitHub and cached in KV.

Unauthenticated GitHub API calls are budgeted per IP and all workers
share few egress addresses, so the upstream answer is cached for five
minutes.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Mapping

import httpx
from starlette.requests import Request
from starlette.responses import JSONResponse

from ..env import BindingError, WorkerEnv, get_env
from ..errors import ExternalServiceError, InternalError
from ..schema import LatestVersionResponse

logger = logging.getLogger(__name__)

KV_NAMESPACE = "VERSION_KV"
CACHE_KEY = "latest_release"
CACHE_TTL_SECS = 300
USER_AGENT = "studio-activity-backend"
GITHUB_RELEASE_URL = "https://api.github.com/repos/{repo}/releases/latest"
GITHUB_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "application/vnd.github+json",
    "X-GitHub-Api-Version": "2022-11-28",
}


def _require_str(data: Mapping[str, Any], name: str) -> str:
    value = data.get(name)
    if not isinstance(value, str):
        raise ValueError(f"missing or invalid field {name}")
    return value


@dataclass(frozen=True)
class CachedRelease:
    """Release details as stored in the cache."""

    tag: str
    version: str
    html_url: str
    published_at: str

    @classmethod
    def _from_mapping(cls, data: Mapping[str, Any]) -> CachedRelease:
        return cls(**{f.name: _require_str(data, f.name) for f in dataclasses.fields(cls)})

    def to_response(self) -> LatestVersionResponse:
        """Return the API response message for this release."""
        return LatestVersionResponse(
            tag=self.tag,
            version=self.version,
            html_url=self.html_url,
            published_at=self.published_at,
        )


def read_var(env: WorkerEnv, key: str) -> str:
    """Return a required variable, raising InternalError if it is missing."""
    try:
        return env.var(key)
    except BindingError as exc:
        raise InternalError(f"missing required var {key}", source=exc) from exc


async def load_cached(env: WorkerEnv) -> CachedRelease | None:
    """Return the cached release, or None if absent or unreadable."""
    try:
        kv = env.kv(KV_NAMESPACE)
        data = await kv.get_json(CACHE_KEY)
    except (BindingError, ValueError):
        return None
    if not isinstance(data, Mapping):
        return None
    try:
        return CachedRelease._from_mapping(data)
    except ValueError:
        return None


async def store_cached(env: WorkerEnv, release: CachedRelease) -> None:
    """Cache a release; failures are logged and otherwise ignored."""
    try:
        kv = env.kv(KV_NAMESPACE)
    except BindingError:
        logger.debug("%s namespace unavailable, skipping cache write", KV_NAMESPACE)
        return
    try:
        await kv.put(
            CACHE_KEY,
            json.dumps(dataclasses.asdict(release)),
            expiration_ttl=CACHE_TTL_SECS,
        )
    except (ValueError, TypeError, OSError) as exc:
        logger.warning("%s put failed: %s", KV_NAMESPACE, exc)


@asynccontextmanager
async def _client_scope(
    client: httpx.AsyncClient | None,
) -> AsyncIterator[httpx.AsyncClient]:
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient() as owned:
        yield owned


async def fetch_from_github(
    repo: str, client: httpx.AsyncClient | None = None
) -> CachedRelease:
    """Fetch the latest release of ``repo`` (``owner/name``) from GitHub."""
    url = GITHUB_RELEASE_URL.format(repo=repo)
    try:
        async with _client_scope(client) as http:
            response = await http.get(url, headers=GITHUB_HEADERS)
            body = response.text
    except httpx.HTTPError as exc:
        raise ExternalServiceError("github", exc) from exc

    status = response.status_code
    if not 200 <= status < 300:
        raise ExternalServiceError(
            "github",
            OSError(f"github returned status {status}"),
            status_hint=status,
        )

    try:
        data = json.loads(body)
        if not isinstance(data, Mapping):
            raise ValueError("expected a JSON object")
        tag = _require_str(data, "tag_name")
        html_url = _require_str(data, "html_url")
        published_at = _require_str(data, "published_at")
    except ValueError as exc:
        raise ExternalServiceError("github", exc) from exc

    # The plugin compares against its own version, which has no "v" prefix.
    version = tag[1:] if tag.startswith("v") else tag
    return CachedRelease(
        tag=tag, version=version, html_url=html_url, published_at=published_at
    )


def _http_client(request: Request) -> httpx.AsyncClient | None:
    if "app" not in request.scope:
        return None
    return getattr(request.app.state, "http_client", None)


async def latest(request: Request) -> JSONResponse:
    """Return the latest release, from cache when possible."""
    env = get_env(request)

    cached = await load_cached(env)
    if cached is not None:
        logger.debug("version cache hit (version=%s)", cached.version)
        return JSONResponse(cached.to_response().to_json())

    repo = read_var(env, "GITHUB_REPO")
    release = await fetch_from_github(repo, _http_client(request))
    logger.info("version cache miss, fetched from github (version=%s)", release.version)

    await store_cached(env, release)
    return JSONResponse(release.to_response().to_json())