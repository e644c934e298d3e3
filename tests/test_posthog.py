import json
import logging
import uuid

import httpx
import pytest
import respx

from studio_backend.posthog import (
    LIB_NAME,
    build_capture_payload,
    build_identify_payload,
    build_pageview_payload,
    build_screen_payload,
    decompose_event,
    extract_utm_from_url,
    forward_event,
    forward_pageview,
    forward_payload,
    is_identified,
    is_session_start,
    referring_domain,
    send_to_posthog,
    stable_pageview_distinct_id,
)
from studio_backend.schema import (
    AccountLinked,
    AccountLinkFlow,
    AccountLinkStarted,
    PluginLoaded,
    ProfileSelected,
    SessionError,
    TelemetryRequest,
    UiOpened,
)

API_KEY = "placeholder"
SALT = "secret"
HOST = "https://ph.example.com"
CAPTURE_URL = "https://ph.example.com/i/v0/e/"


def _request(**kwargs):
    defaults = dict(distinct_id="user-1", event=UiOpened())
    defaults.update(kwargs)
    return TelemetryRequest(**defaults)


# decompose_event


def test_decompose_produces_snake_case_name():
    name, _ = decompose_event(
        PluginLoaded(account_count=0, is_presence_active=False, active_profile="")
    )
    assert name == "plugin_loaded"


def test_decompose_includes_event_properties():
    event = AccountLinked(
        account_count=2,
        is_first_account=False,
        link_flow=AccountLinkFlow.ACCOUNT_LINK_FLOW_DEVICE_CODE,
    )
    name, props = decompose_event(event)
    assert name == "account_linked"
    assert props["account_count"] == 2
    assert props["is_first_account"] is False
    assert props["link_flow"] == "ACCOUNT_LINK_FLOW_DEVICE_CODE"


def test_decompose_plain_int_enum_value():
    _, props = decompose_event(AccountLinked(link_flow=1))
    assert props["link_flow"] == "ACCOUNT_LINK_FLOW_DEVICE_CODE"


def test_decompose_empty_event():
    name, props = decompose_event(UiOpened())
    assert name == "ui_opened"
    assert props == {}


def test_decompose_multiword_event_name():
    name, _ = decompose_event(AccountLinkStarted())
    assert name == "account_link_started"


def test_decompose_keeps_default_values():
    _, props = decompose_event(PluginLoaded())
    assert props == {
        "account_count": 0,
        "is_presence_active": False,
        "active_profile": "",
    }


def test_session_start_and_identified_classification():
    assert is_session_start(PluginLoaded())
    assert not is_session_start(UiOpened())
    assert is_identified(AccountLinked())
    assert not is_identified(ProfileSelected(profile="minimal"))
    assert not is_identified(SessionError(error="x"))


# capture / identify / screen


def test_capture_payload_identified_event():
    req = _request(
        session_id="s-1",
        plugin_version="1.2.0",
        plugin_hash="abc123",
        plugin_channel="stable",
    )
    payload = build_capture_payload(API_KEY, req, UiOpened(), "192.0.2.1")
    assert payload["api_key"] == API_KEY
    assert payload["event"] == "ui_opened"
    assert payload["distinct_id"] == "user-1"
    assert payload["properties"] == {
        "$lib": LIB_NAME,
        "$lib_version": payload["properties"]["$lib_version"],
        "$session_id": "s-1",
        "$app_version": "1.2.0",
        "$app_build": "abc123",
        "$app_namespace": "stable",
        "$ip": "192.0.2.1",
    }


def test_capture_payload_anonymous_event_skips_person_profile():
    event = ProfileSelected(profile="minimal")
    payload = build_capture_payload(API_KEY, _request(event=event), event, None)
    props = payload["properties"]
    assert props["$process_person_profile"] is False
    assert props["profile"] == "minimal"
    assert "$ip" not in props
    assert "$session_id" not in props


def test_identify_payload_for_plugin_loaded():
    event = PluginLoaded(account_count=2, is_presence_active=True, active_profile="default")
    req = _request(plugin_version="1.2.0", plugin_channel="stable", event=event)
    payload = build_identify_payload(API_KEY, req, event, "192.0.2.1")
    assert payload["event"] == "$identify"
    props = payload["properties"]
    assert props["$set"] == {
        "$app_version": "1.2.0",
        "plugin_channel": "stable",
        "account_count": 2,
        "is_presence_active": True,
        "active_profile": "default",
    }
    assert props["$set_once"] == {"$initial_app_version": "1.2.0"}
    assert props["$ip"] == "192.0.2.1"


def test_identify_payload_omits_empty_profile():
    event = PluginLoaded()
    payload = build_identify_payload(API_KEY, _request(event=event), event, None)
    assert "active_profile" not in payload["properties"]["$set"]
    assert payload["properties"]["$set_once"] == {}
    assert "$ip" not in payload["properties"]


def test_screen_payload():
    payload = build_screen_payload(API_KEY, _request(plugin_version="2.0"), None)
    assert payload["event"] == "$screen"
    assert payload["properties"]["$screen_name"] == "studio_activity"
    assert payload["properties"]["$app_version"] == "2.0"
    assert "$ip" not in payload["properties"]


# pageview helpers


def test_extract_utm_skips_blank_and_unknown_keys():
    utm = extract_utm_from_url(
        "https://example.com/?utm_source=%20a%20b%20&utm_medium=&other=1"
    )
    assert utm == {"utm_source": "a b"}


def test_extract_utm_requires_absolute_url():
    assert extract_utm_from_url("/?utm_source=x") == {}


def test_referring_domain():
    assert referring_domain("https://twitter.com/someone") == "twitter.com"
    assert referring_domain("not a url") is None


def test_stable_distinct_id_random_without_fingerprint():
    a = stable_pageview_distinct_id(SALT, None, "  ")
    b = stable_pageview_distinct_id(SALT, None, None)
    assert uuid.UUID(a).version == 4
    assert a != b


def test_stable_distinct_id_is_uuid_v5():
    value = stable_pageview_distinct_id(SALT, "203.0.113.7", None)
    assert uuid.UUID(value).version == 5
    assert value == stable_pageview_distinct_id(SALT, " 203.0.113.7 ", "")


def test_pageview_payload_includes_all_utm_parameters():
    current_url = (
        "https://activity.example.com/?utm_source=twitter&utm_medium=social"
        "&utm_campaign=launch&utm_content=hero&utm_term=plugin"
    )
    payload = build_pageview_payload(
        API_KEY, None, current_url, "https://t.co/example", "Mozilla/5.0", "192.0.2.1"
    )
    props = payload["properties"]
    assert payload["event"] == "$pageview"
    assert props["$current_url"] == current_url
    assert props["utm_source"] == "twitter"
    assert props["utm_medium"] == "social"
    assert props["utm_campaign"] == "launch"
    assert props["utm_content"] == "hero"
    assert props["utm_term"] == "plugin"


def test_pageview_payload_omits_utm_keys_when_absent():
    payload = build_pageview_payload(
        API_KEY, None, "https://activity.example.com/",
        "https://example.com/landing", None, None,
    )
    props = payload["properties"]
    for key in ("utm_source", "utm_medium", "utm_campaign", "utm_content", "utm_term"):
        assert key not in props


def test_pageview_payload_sets_referrer_and_domain():
    payload = build_pageview_payload(
        API_KEY, None, "https://activity.example.com/?utm_source=discord",
        "https://twitter.com/someone/status/123", "Mozilla/5.0", "198.51.100.2",
    )
    props = payload["properties"]
    assert props["$referrer"] == "https://twitter.com/someone/status/123"
    assert props["$referring_domain"] == "twitter.com"
    assert props["$process_person_profile"] is False
    assert props["$useragent"] == "Mozilla/5.0"
    assert props["$ip"] == "198.51.100.2"
    assert isinstance(payload["distinct_id"], str) and payload["distinct_id"]


def test_pageview_payload_omits_referrer_fields_when_missing():
    payload = build_pageview_payload(
        API_KEY, None, "https://activity.example.com/?utm_source=discord",
        None, None, None,
    )
    props = payload["properties"]
    assert "$referrer" not in props
    assert "$referring_domain" not in props
    assert props["$process_person_profile"] is False
    assert props["$current_url"] == "https://activity.example.com/?utm_source=discord"


def test_pageview_payload_distinct_id_is_stable_for_same_visitor_fingerprint():
    args = ("https://activity.example.com/?utm_source=discord", None, "Mozilla/5.0")
    a = build_pageview_payload(API_KEY, SALT, *args, "203.0.113.7")
    b = build_pageview_payload(API_KEY, SALT, *args, "203.0.113.7")
    assert a["distinct_id"] == b["distinct_id"]


def test_pageview_payload_distinct_id_changes_when_fingerprint_changes():
    args = ("https://activity.example.com/?utm_source=discord", None, "Mozilla/5.0")
    a = build_pageview_payload(API_KEY, SALT, *args, "203.0.113.7")
    b = build_pageview_payload(API_KEY, SALT, *args, "203.0.113.8")
    assert a["distinct_id"] != b["distinct_id"]


def test_pageview_blank_salt_uses_random_id():
    payload = build_pageview_payload(
        API_KEY, "  ", "https://activity.example.com/", None, "Mozilla/5.0", "203.0.113.7"
    )
    assert uuid.UUID(payload["distinct_id"]).version == 4


# forwarding


@pytest.mark.asyncio
async def test_forward_event_session_start_sends_three_payloads():
    event = PluginLoaded(account_count=1)
    req = _request(event=event)
    with respx.mock:
        route = respx.post(CAPTURE_URL).mock(return_value=httpx.Response(200))
        async with httpx.AsyncClient() as client:
            await forward_event(HOST, API_KEY, req, event, "192.0.2.1", client)
    bodies = [json.loads(call.request.content) for call in route.calls]
    assert [body["event"] for body in bodies] == ["plugin_loaded", "$identify", "$screen"]
    assert bodies == [
        build_capture_payload(API_KEY, req, event, "192.0.2.1"),
        build_identify_payload(API_KEY, req, event, "192.0.2.1"),
        build_screen_payload(API_KEY, req, "192.0.2.1"),
    ]
    assert route.calls[0].request.headers["content-type"] == "application/json"


@pytest.mark.asyncio
async def test_forward_event_other_event_sends_one_payload():
    req = _request()
    with respx.mock:
        route = respx.post(CAPTURE_URL).mock(return_value=httpx.Response(200))
        async with httpx.AsyncClient() as client:
            await forward_event(HOST, API_KEY, req, UiOpened(), None, client)
    assert route.call_count == 1
    body = json.loads(route.calls[0].request.content)
    assert body == build_capture_payload(API_KEY, req, UiOpened(), None)
    assert body["event"] == "ui_opened"


@pytest.mark.asyncio
async def test_forward_pageview_posts_payload():
    with respx.mock:
        route = respx.post(CAPTURE_URL).mock(return_value=httpx.Response(200))
        await forward_pageview(
            HOST, API_KEY, None, "https://activity.example.com/", None, None, None
        )
    body = json.loads(route.calls[0].request.content)
    assert body["event"] == "$pageview"
    assert body["api_key"] == API_KEY
    assert body["properties"]["$current_url"] == "https://activity.example.com/"


@pytest.mark.asyncio
async def test_send_failure_is_logged_not_raised(caplog):
    with respx.mock:
        route = respx.post(CAPTURE_URL).mock(side_effect=httpx.ConnectError("down"))
        with caplog.at_level(logging.WARNING, logger="studio_backend.posthog"):
            await send_to_posthog(HOST, {"event": "x"})
    assert route.called
    assert "failed to send event to posthog" in caplog.text


@pytest.mark.asyncio
async def test_non_2xx_is_logged(caplog):
    with respx.mock:
        route = respx.post(CAPTURE_URL).mock(return_value=httpx.Response(503))
        with caplog.at_level(logging.WARNING, logger="studio_backend.posthog"):
            await forward_payload(HOST, {"event": "x"})
    assert route.call_count == 1
    assert "non-2xx" in caplog.text