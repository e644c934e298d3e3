"""Strict JSON request body parsing.

Luau's JSON encoder cannot tell an empty array from an empty dictionary,
so every empty table arrives as ``[]``. Message JSON never uses an empty
array as a meaningful value, so bodies have every ``[]`` turned into
``{}`` before they reach the schema parser.
"""

from __future__ import annotations

import json
from typing import Any, Callable, TypeVar

from .errors import ValidationError

T = TypeVar("T")

JSON_CONTENT_TYPE = "application/json"


def normalize_empty_arrays(value: Any) -> Any:
    """Return a copy of ``value`` with every empty list replaced by a dict."""
    if isinstance(value, list):
        if not value:
            return {}
        return [normalize_empty_arrays(item) for item in value]
    if isinstance(value, dict):
        return {key: normalize_empty_arrays(item) for key, item in value.items()}
    return value


def _reject_constant(name: str) -> Any:
    raise ValueError(f"invalid JSON number {name}")


def parse_json_body(
    content_type: str | None,
    body: bytes | str,
    parser: Callable[[Any], T],
) -> T:
    """Validate the content type, decode and normalise the body, then parse it.

    Every failure is raised as a ValidationError.
    """
    if not (content_type or "").startswith(JSON_CONTENT_TYPE):
        raise ValidationError("Expected request with `Content-Type: application/json`")

    try:
        value = json.loads(body, parse_constant=_reject_constant)
    except ValueError as exc:
        raise ValidationError(
            "Request body contains invalid JSON", field=str(exc)
        ) from exc

    try:
        return parser(normalize_empty_arrays(value))
    except (ValueError, TypeError) as exc:
        raise ValidationError("Invalid JSON fields") from exc