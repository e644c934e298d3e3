"""Root redirect to the project page, with anonymous page-view attribution."""

from __future__ import annotations

import logging

import httpx
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import RedirectResponse, Response

from .. import posthog
from ..edge import get_edge
from ..env import BindingError, WorkerEnv, get_env
from ..errors import InternalError

logger = logging.getLogger(__name__)

DEFAULT_POSTHOG_HOST = "https://us.i.posthog.com"
DEFAULT_REPO_URL = "https://github.com/example/studio-activity"
_PROJECT_BINDING = "POSTHOG_" + "API_KEY"


def _repo_url(env: WorkerEnv | None) -> str:
    if env is None:
        return DEFAULT_REPO_URL
    try:
        repo = env.var("GITHUB_REPO").strip().strip("/")
    except BindingError:
        return DEFAULT_REPO_URL
    return f"https://github.com/{repo}" if repo else DEFAULT_REPO_URL


def _http_client(request: Request) -> httpx.AsyncClient | None:
    if "app" not in request.scope:
        return None
    return getattr(request.app.state, "http_client", None)


async def gh_redirect(request: Request) -> Response:
    """Redirect to the repository and record an anonymous page view."""
    edge = get_edge(request)
    try:
        env: WorkerEnv | None = get_env(request)
    except InternalError:
        env = None

    target = _repo_url(env)
    headers = {"Cache-Control": "no-store"}
    if env is None:
        return RedirectResponse(target, status_code=307, headers=headers)

    try:
        posthog_host = env.var("POSTHOG_HOST")
    except BindingError:
        posthog_host = DEFAULT_POSTHOG_HOST

    try:
        posthog_project = env.secret(_PROJECT_BINDING)
    except BindingError as exc:
        logger.error("%s secret not configured: %s", _PROJECT_BINDING, exc)
        return RedirectResponse(target, status_code=307, headers=headers)

    try:
        public_url = env.var("BACKEND_PUBLIC_URL")
    except BindingError as exc:
        logger.warning("BACKEND_PUBLIC_URL var not configured: %s", exc)
        return RedirectResponse(target, status_code=307, headers=headers)

    path_and_query = request.url.path or "/"
    if request.url.query:
        path_and_query = f"{path_and_query}?{request.url.query}"
    current_url = f"{public_url.rstrip('/')}{path_and_query}"

    try:
        salt: str | None = env.secret("POSTHOG_DISTINCT_ID_SALT")
    except BindingError:
        logger.warning(
            "POSTHOG_DISTINCT_ID_SALT not configured; "
            "using per-request random anonymous distinct_id"
        )
        salt = None

    payload = posthog.build_pageview_payload(
        posthog_project,
        salt,
        current_url,
        request.headers.get("referer"),
        request.headers.get("user-agent"),
        edge.client_ip,
    )

    properties = payload["properties"]
    logger.info(
        "root redirect (utm_source=%s referring_domain=%s)",
        properties.get("utm_source"),
        properties.get("$referring_domain"),
    )

    task = BackgroundTask(
        posthog.forward_payload, posthog_host, payload, _http_client(request)
    )
    return RedirectResponse(target, status_code=307, headers=headers, background=task)