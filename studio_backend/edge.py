"""Edge metadata captured for each incoming request."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from starlette.requests import Request

from .errors import InternalError


@dataclass(frozen=True)
class EdgeContext:
    """Snapshot of edge network metadata for a single request."""

    cf: Mapping[str, Any] | None = None
    asn: int | None = None
    as_organization: str | None = None
    country: str | None = None
    colo: str | None = None
    cf_ray: str | None = None
    """Correlation id taken from the ``cf-ray`` header, if present."""
    client_ip: str | None = None
    """Best-effort client address from the ``cf-connecting-ip`` header."""

    @classmethod
    def from_headers(
        cls,
        headers: Mapping[str, str],
        cf: Mapping[str, Any] | None = None,
    ) -> EdgeContext:
        """Build a context from request headers and optional edge properties."""
        lowered = {key.lower(): value for key, value in headers.items()}
        if cf is not None:
            asn = cf.get("asn")
            asn = int(asn) if asn is not None else None
            as_organization = cf.get("asOrganization")
            country = cf.get("country")
            colo = cf.get("colo", "")
        else:
            asn = as_organization = country = colo = None
        return cls(
            cf=cf,
            asn=asn,
            as_organization=as_organization,
            country=country,
            colo=colo,
            cf_ray=lowered.get("cf-ray"),
            client_ip=lowered.get("cf-connecting-ip"),
        )


def get_edge(request: Request) -> EdgeContext:
    """Return the EdgeContext attached to the request state."""
    edge = getattr(request.state, "edge", None)
    if not isinstance(edge, EdgeContext):
        raise InternalError("EdgeContext missing from request state")
    return edge