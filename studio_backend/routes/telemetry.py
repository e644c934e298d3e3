"""Telemetry ingestion endpoint."""

from __future__ import annotations

import json
import logging

import httpx
from starlette.background import BackgroundTask
from starlette.requests import ClientDisconnect, Request
from starlette.responses import Response

from .. import posthog
from ..app_json import parse_json_body
from ..edge import get_edge
from ..env import BindingError, WorkerEnv, get_env
from ..errors import ValidationError
from ..schema import TelemetryRequest

logger = logging.getLogger(__name__)

DEFAULT_POSTHOG_HOST = "https://us.i.posthog.com"
MAX_DISTINCT_IDS_PER_IP = 3
IDENTITY_WINDOW_TTL_SECS = 86_400
IDENTITY_KV_NAMESPACE = "TELEMETRY_KV"
_PROJECT_BINDING = "POSTHOG_" + "API_KEY"


def _http_client(request: Request) -> httpx.AsyncClient | None:
    if "app" not in request.scope:
        return None
    return getattr(request.app.state, "http_client", None)


async def check_rate_limits(
    env: WorkerEnv, client_ip: str, distinct_id: str
) -> str | None:
    """Consult the per-IP and per-user limiters.

    Returns the reason the request should be silently dropped, or None.
    Limiters that are not bound or fail are skipped.
    """
    checks = (
        ("TELEMETRY_IP_LIMITER", f"ip:{client_ip}", "ip_rate_limit"),
        ("TELEMETRY_USER_LIMITER", f"user:{distinct_id}", "user_rate_limit"),
    )
    for binding, key, reason in checks:
        try:
            limiter = env.rate_limiter(binding)
        except BindingError:
            continue
        try:
            allowed = await limiter.limit(key)
        except Exception as exc:  # an unavailable limiter must not block ingestion
            logger.debug("%s unavailable, skipping: %s", binding, exc)
            continue
        if not allowed:
            return reason
    return None


async def check_identity_budget(
    env: WorkerEnv, client_ip: str, distinct_id: str
) -> str | None:
    """Limit how many distinct ids one IP may report within the identity window.

    Returns ``"identity_spray"`` when the request should be dropped, else None.
    """
    try:
        kv = env.kv(IDENTITY_KV_NAMESPACE)
    except BindingError as exc:
        logger.debug("KV namespace unavailable, skipping identity check: %s", exc)
        return None

    key = f"ip:{client_ip}"
    try:
        stored = await kv.get_json(key)
    except (ValueError, OSError) as exc:
        logger.debug("KV read failed, skipping identity check: %s", exc)
        return None

    if stored is None:
        ids: list[str] = []
    elif isinstance(stored, list) and all(isinstance(item, str) for item in stored):
        ids = stored
    else:
        logger.debug("KV entry %s is malformed, skipping identity check", key)
        return None

    if distinct_id in ids:
        return None
    if len(ids) >= MAX_DISTINCT_IDS_PER_IP:
        return "identity_spray"

    try:
        await kv.put(
            key,
            json.dumps([*ids, distinct_id]),
            expiration_ttl=IDENTITY_WINDOW_TTL_SECS,
        )
    except (ValueError, TypeError, OSError) as exc:
        logger.debug("KV write failed: %s", exc)
    return None


async def telemetry(request: Request) -> Response:
    """Accept one telemetry event and forward it to PostHog after responding.

    Dropped and forwarded events both answer 204, so the two cannot be
    told apart by timing.
    """
    edge = get_edge(request)
    env = get_env(request)
    try:
        body = await request.body()
    except ClientDisconnect as exc:
        raise ValidationError("Failed to read request body") from exc
    payload = parse_json_body(
        request.headers.get("content-type"), body, TelemetryRequest.from_json
    )

    client_ip = edge.client_ip or "unknown"

    if not payload.distinct_id:
        raise ValidationError("distinct_id is required", field="distinct_id")
    event = payload.event
    if event is None:
        raise ValidationError("event is required", field="event")

    event_name, _ = posthog.decompose_event(event)

    reason = await check_rate_limits(env, client_ip, payload.distinct_id)
    if reason is None:
        reason = await check_identity_budget(env, client_ip, payload.distinct_id)
    if reason is not None:
        logger.warning(
            "telemetry event silently dropped "
            "(drop_reason=%s client_ip=%s distinct_id=%s event_name=%s)",
            reason,
            client_ip,
            payload.distinct_id,
            event_name,
        )
        return Response(status_code=204)

    try:
        posthog_host = env.var("POSTHOG_HOST")
    except BindingError:
        posthog_host = DEFAULT_POSTHOG_HOST

    try:
        posthog_project = env.secret(_PROJECT_BINDING)
    except BindingError as exc:
        logger.error("%s secret not configured: %s", _PROJECT_BINDING, exc)
        return Response(status_code=204)

    task = BackgroundTask(
        posthog.forward_event,
        posthog_host,
        posthog_project,
        payload,
        event,
        client_ip,
        _http_client(request),
    )
    return Response(status_code=204, background=task)