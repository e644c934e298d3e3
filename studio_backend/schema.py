"""Telemetry and version API messages with their JSON mapping.

Parsing follows the protobuf JSON conventions: both lowerCamelCase and
snake_case field names are accepted, unknown fields are rejected and
scalars must carry the right JSON type.
"""

from __future__ import annotations

import dataclasses
import enum
import json
import math
from dataclasses import dataclass, field
from typing import Any, ClassVar, Mapping, Union


class SchemaError(ValueError):
    """Raised when JSON does not match the message schema."""


class AccountLinkFlow(enum.IntEnum):
    """How an account was linked."""

    ACCOUNT_LINK_FLOW_UNSPECIFIED = 0
    ACCOUNT_LINK_FLOW_DEVICE_CODE = 1
    ACCOUNT_LINK_FLOW_BROWSER = 2


_INT_MIN = -(2**31)
_INT_MAX = 2**32 - 1


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _parse_int(value: Any, where: str) -> int:
    if isinstance(value, bool):
        raise SchemaError(f"{where}: expected an integer")
    if isinstance(value, float):
        if not (math.isfinite(value) and value.is_integer()):
            raise SchemaError(f"{where}: expected an integer")
        value = int(value)
    elif isinstance(value, str):
        try:
            value = int(value)
        except ValueError:
            raise SchemaError(f"{where}: expected an integer") from None
    elif not isinstance(value, int):
        raise SchemaError(f"{where}: expected an integer")
    if not _INT_MIN <= value <= _INT_MAX:
        raise SchemaError(f"{where}: integer out of range")
    return value


def _parse_enum(enum_type: type[enum.IntEnum], value: Any, where: str) -> enum.IntEnum:
    if isinstance(value, str):
        try:
            return enum_type[value]
        except KeyError:
            raise SchemaError(f"{where}: unknown enum value {value!r}") from None
    if isinstance(value, int) and not isinstance(value, bool):
        try:
            return enum_type(value)
        except ValueError:
            raise SchemaError(f"{where}: unknown enum value {value!r}") from None
    raise SchemaError(f"{where}: expected an enum name or number")


def _coerce(default: Any, value: Any, where: str) -> Any:
    if value is None:
        return default
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        raise SchemaError(f"{where}: expected a boolean")
    if isinstance(default, enum.IntEnum):
        return _parse_enum(type(default), value, where)
    if isinstance(default, int):
        return _parse_int(value, where)
    if isinstance(value, str):
        return value
    raise SchemaError(f"{where}: expected a string")


def _field_keys(cls: type) -> dict[str, dataclasses.Field]:
    keys: dict[str, dataclasses.Field] = {}
    for f in dataclasses.fields(cls):
        if f.metadata.get("oneof"):
            continue
        keys[f.name] = f
        keys[_camel(f.name)] = f
    return keys


def _decode_scalars(
    cls: type, items: list[tuple[str, Any]], where: str
) -> dict[str, Any]:
    keys = _field_keys(cls)
    values: dict[str, Any] = {}
    for key, raw in items:
        f = keys.get(key)
        if f is None:
            raise SchemaError(f"{where}: unknown field {key!r}")
        if f.name in values:
            raise SchemaError(f"{where}: duplicate field {f.name!r}")
        values[f.name] = _coerce(f.default, raw, f"{where}.{key}")
    return values


@dataclass(frozen=True)
class _Event:
    event_name: ClassVar[str] = ""

    @classmethod
    def _decode(cls, data: Any, where: str) -> _Event:
        if not isinstance(data, Mapping):
            raise SchemaError(f"{where}: expected an object")
        return cls(**_decode_scalars(cls, list(data.items()), where))


@dataclass(frozen=True)
class PluginLoaded(_Event):
    """The plugin started; carries the user's current setup."""

    event_name: ClassVar[str] = "plugin_loaded"
    account_count: int = 0
    is_presence_active: bool = False
    active_profile: str = ""


@dataclass(frozen=True)
class UiOpened(_Event):
    """The plugin window was opened."""

    event_name: ClassVar[str] = "ui_opened"


@dataclass(frozen=True)
class OnboardingCompleted(_Event):
    """The user finished onboarding."""

    event_name: ClassVar[str] = "onboarding_completed"
    opted_into_telemetry: bool = False


@dataclass(frozen=True)
class AccountLinkStarted(_Event):
    """The user began linking an account."""

    event_name: ClassVar[str] = "account_link_started"


@dataclass(frozen=True)
class AccountLinked(_Event):
    """An account was linked successfully."""

    event_name: ClassVar[str] = "account_linked"
    account_count: int = 0
    is_first_account: bool = False
    link_flow: AccountLinkFlow = AccountLinkFlow.ACCOUNT_LINK_FLOW_UNSPECIFIED


@dataclass(frozen=True)
class DeviceCodeFlowFailed(_Event):
    """The device-code linking flow failed."""

    event_name: ClassVar[str] = "device_code_flow_failed"
    error: str = ""


@dataclass(frozen=True)
class BrowserFlowFailed(_Event):
    """The browser linking flow failed."""

    event_name: ClassVar[str] = "browser_flow_failed"
    error: str = ""


@dataclass(frozen=True)
class PresenceToggled(_Event):
    """Presence was switched on or off."""

    event_name: ClassVar[str] = "presence_toggled"
    is_active: bool = False


@dataclass(frozen=True)
class ProfileSelected(_Event):
    """A presence profile was selected."""

    event_name: ClassVar[str] = "profile_selected"
    profile: str = ""


@dataclass(frozen=True)
class SessionError(_Event):
    """A session-level error occurred."""

    event_name: ClassVar[str] = "session_error"
    error: str = ""


Event = Union[
    PluginLoaded,
    UiOpened,
    OnboardingCompleted,
    AccountLinkStarted,
    AccountLinked,
    DeviceCodeFlowFailed,
    BrowserFlowFailed,
    PresenceToggled,
    ProfileSelected,
    SessionError,
]

EVENT_TYPES: dict[str, type[_Event]] = {
    cls.event_name: cls
    for cls in (
        PluginLoaded,
        UiOpened,
        OnboardingCompleted,
        AccountLinkStarted,
        AccountLinked,
        DeviceCodeFlowFailed,
        BrowserFlowFailed,
        PresenceToggled,
        ProfileSelected,
        SessionError,
    )
}
"""Event classes by their snake_case name, in the order of the event oneof."""

_EVENT_KEYS: dict[str, type[_Event]] = {
    key: cls
    for name, cls in EVENT_TYPES.items()
    for key in (name, _camel(name))
}


@dataclass(frozen=True)
class TelemetryRequest:
    """A single telemetry event with its client metadata."""

    distinct_id: str = ""
    session_id: str = ""
    plugin_version: str = ""
    plugin_channel: str = ""
    plugin_hash: str = ""
    event: Event | None = field(default=None, metadata={"oneof": True})

    @classmethod
    def from_json(cls, data: Any) -> TelemetryRequest:
        """Parse a request from a JSON document or an already decoded object."""
        if isinstance(data, (str, bytes, bytearray)):
            try:
                data = json.loads(data)
            except ValueError as exc:
                raise SchemaError(f"invalid JSON: {exc}") from exc
        if not isinstance(data, Mapping):
            raise SchemaError("TelemetryRequest: expected an object")

        event: Event | None = None
        event_key: str | None = None
        scalars: list[tuple[str, Any]] = []
        for key, raw in data.items():
            event_cls = _EVENT_KEYS.get(key)
            if event_cls is None:
                scalars.append((key, raw))
                continue
            if event_key is not None:
                raise SchemaError(
                    f"TelemetryRequest: multiple events given ({event_key!r} and {key!r})"
                )
            event_key = key
            if raw is not None:
                event = event_cls._decode(raw, key)

        values = _decode_scalars(cls, scalars, "TelemetryRequest")
        return cls(**values, event=event)


@dataclass(frozen=True)
class LatestVersionResponse:
    """The latest published plugin release."""

    tag: str = ""
    version: str = ""
    html_url: str = ""
    published_at: str = ""

    def to_json(self) -> dict[str, str]:
        """Return the JSON object, omitting empty fields."""
        return {
            _camel(f.name): value
            for f in dataclasses.fields(self)
            if (value := getattr(self, f.name)) != ""
        }