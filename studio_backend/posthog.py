"""Forwarding of opt-in telemetry and anonymous page views to PostHog.

Only validated events are forwarded. The distinct id is a one-way hash
computed by the client. The client IP is passed along solely for bot
detection and country-level geo enrichment and is not stored with events.
"""

from __future__ import annotations

import dataclasses
import enum
import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator
from urllib.parse import parse_qsl, urlsplit

import httpx

from .schema import (
    AccountLinked,
    AccountLinkStarted,
    Event,
    OnboardingCompleted,
    PluginLoaded,
    PresenceToggled,
    TelemetryRequest,
    UiOpened,
)

logger = logging.getLogger(__name__)

POSTHOG_CAPTURE_PATH = "/i/v0/e/"
LIB_NAME = "studio-activity-backend"
LIB_VERSION = "0.1.0"
UTM_PARAM_KEYS = (
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_content",
    "utm_term",
)

_IDENTIFIED_EVENTS = (
    PluginLoaded,
    UiOpened,
    OnboardingCompleted,
    AccountLinkStarted,
    AccountLinked,
    PresenceToggled,
)


def _json_value(default: Any, value: Any) -> Any:
    """Render a field value the way the message JSON mapping does."""
    if isinstance(default, enum.IntEnum):
        enum_type = type(default)
        try:
            return enum_type(value).name
        except ValueError:
            return int(value)
    return value


def decompose_event(event: Event) -> tuple[str, dict[str, Any]]:
    """Split an event into its snake_case name and a flat properties dict.

    Every field is included, default values too; unset (None) values are
    dropped. Enum fields are given by their canonical name.
    """
    name = getattr(event, "event_name", "")
    if not name or not dataclasses.is_dataclass(event):
        return "", {}
    properties: dict[str, Any] = {}
    for f in dataclasses.fields(event):
        value = getattr(event, f.name)
        if value is None:
            continue
        properties[f.name] = _json_value(f.default, value)
    return name, properties


def is_session_start(event: Event) -> bool:
    """Return True if the event marks the start of a plugin session."""
    return isinstance(event, PluginLoaded)


def is_identified(event: Event) -> bool:
    """Return True if the event needs per-user correlation in PostHog."""
    return isinstance(event, _IDENTIFIED_EVENTS)


def _inject_common_properties(
    props: dict[str, Any], request: TelemetryRequest, client_ip: str | None
) -> None:
    props["$lib"] = LIB_NAME
    props["$lib_version"] = LIB_VERSION
    if request.session_id:
        props["$session_id"] = request.session_id
    if request.plugin_version:
        props["$app_version"] = request.plugin_version
    if request.plugin_hash:
        props["$app_build"] = request.plugin_hash
    if request.plugin_channel:
        props["$app_namespace"] = request.plugin_channel
    if client_ip is not None:
        props["$ip"] = client_ip


def build_capture_payload(
    api_key: str,
    request: TelemetryRequest,
    event: Event,
    client_ip: str | None,
) -> dict[str, Any]:
    """Build the capture payload for a single telemetry event."""
    name, properties = decompose_event(event)
    _inject_common_properties(properties, request, client_ip)
    if not is_identified(event):
        properties["$process_person_profile"] = False
    return {
        "api_key": api_key,
        "event": name,
        "distinct_id": request.distinct_id,
        "properties": properties,
    }


def build_identify_payload(
    api_key: str,
    request: TelemetryRequest,
    event: Event,
    client_ip: str | None,
) -> dict[str, Any]:
    """Build a ``$identify`` payload linking the anonymous id to usage metadata."""
    set_props: dict[str, Any] = {}
    set_once: dict[str, Any] = {}

    if request.plugin_version:
        set_props["$app_version"] = request.plugin_version
        set_once["$initial_app_version"] = request.plugin_version
    if request.plugin_hash:
        set_props["$app_build"] = request.plugin_hash
    if request.plugin_channel:
        set_props["plugin_channel"] = request.plugin_channel

    if isinstance(event, PluginLoaded):
        set_props["account_count"] = event.account_count
        set_props["is_presence_active"] = event.is_presence_active
        if event.active_profile:
            set_props["active_profile"] = event.active_profile

    properties: dict[str, Any] = {
        "$lib": LIB_NAME,
        "$lib_version": LIB_VERSION,
        "$set": set_props,
        "$set_once": set_once,
    }
    if client_ip is not None:
        properties["$ip"] = client_ip

    return {
        "api_key": api_key,
        "event": "$identify",
        "distinct_id": request.distinct_id,
        "properties": properties,
    }


def build_screen_payload(
    api_key: str, request: TelemetryRequest, client_ip: str | None
) -> dict[str, Any]:
    """Build a ``$screen`` payload signalling that the plugin was opened."""
    properties: dict[str, Any] = {
        "$screen_name": "studio_activity",
        "$lib": LIB_NAME,
        "$lib_version": LIB_VERSION,
    }
    if request.plugin_version:
        properties["$app_version"] = request.plugin_version
    if client_ip is not None:
        properties["$ip"] = client_ip
    return {
        "api_key": api_key,
        "event": "$screen",
        "distinct_id": request.distinct_id,
        "properties": properties,
    }


def _split_absolute(url: str):
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    if not parts.scheme:
        return None
    return parts


def extract_utm_from_url(current_url: str) -> dict[str, str]:
    """Return the non-blank UTM parameters found in an absolute URL."""
    parts = _split_absolute(current_url)
    if parts is None:
        return {}
    out: dict[str, str] = {}
    for key, value in parse_qsl(parts.query, keep_blank_values=True):
        if key not in UTM_PARAM_KEYS:
            continue
        value = value.strip()
        if value:
            out[key] = value
    return out


def referring_domain(referrer: str) -> str | None:
    """Return the host of an absolute referrer URL, if it has one."""
    parts = _split_absolute(referrer)
    if parts is None:
        return None
    try:
        host = parts.hostname
    except ValueError:
        return None
    return host or None


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def stable_pageview_distinct_id(
    salt: str, client_ip: str | None, user_agent: str | None
) -> str:
    """Derive an anonymous, stable id from the salted IP and user agent.

    Falls back to a random id when neither input is present, so unknown
    visitors never share one identity.
    """
    ip = _clean(client_ip)
    ua = _clean(user_agent)
    if ip is None and ua is None:
        return str(uuid.uuid4())
    fingerprint = (
        f"root_pageview_v1|{salt}|{ip or 'unknown_ip'}|{ua or 'unknown_ua'}"
    )
    return str(uuid.uuid5(uuid.NAMESPACE_URL, fingerprint))


def build_pageview_payload(
    api_key: str,
    distinct_id_salt: str | None,
    current_url: str,
    referrer: str | None,
    user_agent: str | None,
    client_ip: str | None,
) -> dict[str, Any]:
    """Build an anonymous ``$pageview`` payload for root-domain attribution."""
    properties: dict[str, Any] = {
        "$current_url": current_url,
        "$lib": LIB_NAME,
        "$lib_version": LIB_VERSION,
        "$process_person_profile": False,
    }
    properties.update(extract_utm_from_url(current_url))

    ref = _clean(referrer)
    if ref is not None:
        properties["$referrer"] = ref
        domain = referring_domain(ref)
        if domain is not None:
            properties["$referring_domain"] = domain

    ua = _clean(user_agent)
    if ua is not None:
        properties["$useragent"] = ua

    ip = _clean(client_ip)
    if ip is not None:
        properties["$ip"] = ip

    salt = _clean(distinct_id_salt)
    if salt is None:
        distinct_id = str(uuid.uuid4())
    else:
        distinct_id = stable_pageview_distinct_id(salt, client_ip, user_agent)

    return {
        "api_key": api_key,
        "event": "$pageview",
        "distinct_id": distinct_id,
        "properties": properties,
    }


@asynccontextmanager
async def _client_scope(
    client: httpx.AsyncClient | None,
) -> AsyncIterator[httpx.AsyncClient]:
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient() as owned:
        yield owned


async def send_to_posthog(
    host: str, payload: dict[str, Any], client: httpx.AsyncClient | None = None
) -> None:
    """POST a payload to the PostHog capture API; failures are only logged."""
    url = f"{host}{POSTHOG_CAPTURE_PATH}"
    try:
        body = json.dumps(payload)
        async with _client_scope(client) as http:
            response = await http.post(
                url, content=body, headers={"Content-Type": "application/json"}
            )
    except (httpx.HTTPError, TypeError, ValueError) as exc:
        logger.warning("failed to send event to posthog: %s", exc)
        return
    if not 200 <= response.status_code < 300:
        logger.warning(
            "posthog capture returned non-2xx (status=%d)", response.status_code
        )


async def forward_payload(
    host: str, payload: dict[str, Any], client: httpx.AsyncClient | None = None
) -> None:
    """Forward a prebuilt payload to PostHog capture."""
    await send_to_posthog(host, payload, client)


async def forward_pageview(
    host: str,
    api_key: str,
    distinct_id_salt: str | None,
    current_url: str,
    referrer: str | None,
    user_agent: str | None,
    client_ip: str | None,
    client: httpx.AsyncClient | None = None,
) -> None:
    """Build and forward an anonymous ``$pageview`` event."""
    payload = build_pageview_payload(
        api_key, distinct_id_salt, current_url, referrer, user_agent, client_ip
    )
    await forward_payload(host, payload, client)


async def forward_event(
    host: str,
    api_key: str,
    request: TelemetryRequest,
    event: Event,
    client_ip: str | None,
    client: httpx.AsyncClient | None = None,
) -> None:
    """Forward a telemetry event; session starts also send $identify and $screen."""
    async with _client_scope(client) as http:
        await send_to_posthog(
            host, build_capture_payload(api_key, request, event, client_ip), http
        )
        if is_session_start(event):
            await send_to_posthog(
                host, build_identify_payload(api_key, request, event, client_ip), http
            )
            await send_to_posthog(
                host, build_screen_payload(api_key, request, client_ip), http
            )