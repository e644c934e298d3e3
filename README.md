# studio-backend

Request handlers and supporting pieces for the backend of the Studio Activity
plugin, built on Starlette and httpx. The package provides:

- a telemetry ingestion handler that validates opt-in events from the plugin,
  applies per-IP and per-user rate limits plus a per-IP identity budget, and
  forwards accepted events to a PostHog capture endpoint after responding;
- a handler that reports the latest published release of the plugin from
  GitHub, cached for five minutes in a KV namespace;
- a handler that redirects visitors of the root URL to the repository page
  while recording an anonymous `$pageview` for attribution;
- problem-document errors, strict JSON body parsing and an in-memory
  environment with variables, secrets, KV stores and rate limiters.

## Installation

```
pip install .
```

For the test suite:

```
pip install ".[test]"
pytest
```

## What the package does not do

The package contains handlers, not a finished service. It has no ready-made
application object, no route table, no command to start a server and no
server dependency. It has no health-check handler and does not set an
`x-request-id` header on responses. To serve the handlers you assemble a
Starlette application yourself (see below) and run it with an ASGI server of
your choice.

KV namespaces and rate limiters are kept in process memory, so their contents
are lost on restart and not shared between processes.

## Modules

- `studio_backend.errors` — `AppError` and its subclasses `ValidationError`
  (400), `NotFoundError` (404), `UnauthorizedError` (401), `ForbiddenError`
  (403), `ExternalServiceError` and `InternalError` (both 500). `problem()`
  returns the JSON body with `type`, `title`, `status` and, for validation
  and not-found errors only, `detail`; `to_response()` logs the error and
  returns a `JSONResponse`. `app_error_handler` renders any exception this
  way, turning non-`AppError` exceptions into a generic 500.
- `studio_backend.edge` — `EdgeContext`, built with
  `EdgeContext.from_headers(headers, cf)` from the `cf-ray` and
  `cf-connecting-ip` headers and an optional mapping of edge properties
  (`asn`, `asOrganization`, `country`, `colo`). `get_edge(request)` reads it
  from `request.state.edge` and raises `InternalError` if it is missing.
- `studio_backend.schema` — the telemetry messages (`PluginLoaded`,
  `UiOpened`, `OnboardingCompleted`, `AccountLinkStarted`, `AccountLinked`,
  `DeviceCodeFlowFailed`, `BrowserFlowFailed`, `PresenceToggled`,
  `ProfileSelected`, `SessionError`), the `AccountLinkFlow` enum,
  `TelemetryRequest.from_json` and `LatestVersionResponse.to_json`. Parsing
  accepts camelCase and snake_case names and raises `SchemaError` for unknown
  events, unknown fields, more than one event and values of the wrong type.
- `studio_backend.app_json` — `parse_json_body(content_type, body, parser)`
  requires a `application/json` content type, decodes the body, replaces
  every empty array with an empty object (`normalize_empty_arrays`) and hands
  the result to `parser`; every failure is raised as `ValidationError`.
- `studio_backend.env` — `WorkerEnv` with `var`, `secret`, `kv` and
  `rate_limiter`, each raising `BindingError` when the name is not
  configured; `KVNamespace` (in-memory, with per-key expiry) and
  `RateLimiter` (sliding window). `get_env(request)` looks in
  `request.state.env`, then `app.state.env`.
- `studio_backend.posthog` — payload builders (`build_capture_payload`,
  `build_identify_payload`, `build_screen_payload`, `build_pageview_payload`),
  `decompose_event`, and the senders `send_to_posthog`, `forward_payload`,
  `forward_pageview` and `forward_event`. Sending failures and non-2xx
  answers are logged, never raised.
- `studio_backend.routes.telemetry` — `telemetry(request)`, plus
  `check_rate_limits` and `check_identity_budget`.
- `studio_backend.routes.version` — `latest(request)`, plus `CachedRelease`,
  `read_var`, `load_cached`, `store_cached` and `fetch_from_github`.
- `studio_backend.routes.redirect` — `gh_redirect(request)`.

## Assembling an application

The handlers expect an `EdgeContext` in `request.state.edge` and a
`WorkerEnv` in `request.state.env` or `app.state.env`. An optional shared
`httpx.AsyncClient` in `app.state.http_client` is used for outbound calls.

```python
from starlette.applications import Starlette
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.routing import Route

from studio_backend.edge import EdgeContext
from studio_backend.env import WorkerEnv
from studio_backend.errors import AppError, app_error_handler
from studio_backend.routes.redirect import gh_redirect
from studio_backend.routes.telemetry import telemetry
from studio_backend.routes.version import latest


async def attach_edge(request, call_next):
    request.state.edge = EdgeContext.from_headers(request.headers)
    return await call_next(request)


app = Starlette(
    routes=[
        Route("/", gh_redirect, methods=["GET"]),
        Route("/v1/telemetry", telemetry, methods=["POST"]),
        Route("/v1/version/latest", latest, methods=["GET"]),
    ],
    exception_handlers={AppError: app_error_handler},
)
app.add_middleware(BaseHTTPMiddleware, dispatch=attach_edge)
app.state.env = WorkerEnv.from_environ()
```

## Endpoint behaviour

- `telemetry` requires `Content-Type: application/json` and a
  `TelemetryRequest` with a non-empty `distinctId` and exactly one event:

  ```json
  {
    "distinctId": "user-1",
    "pluginVersion": "1.2.0",
    "pluginChannel": "stable",
    "pluginLoaded": {"accountCount": 2, "isPresenceActive": true}
  }
  ```

  Invalid bodies raise `ValidationError` (400 with the error handler above).
  Accepted and silently dropped events both answer 204; forwarding happens in
  a background task after the response. A `pluginLoaded` event also sends
  `$identify` and `$screen` payloads.
- `latest` answers `{"tag", "version", "htmlUrl", "publishedAt"}` (empty
  fields omitted), with `version` being the tag without a leading `v`. A
  missing `GITHUB_REPO` raises `InternalError`; a failed GitHub call raises
  `ExternalServiceError`; both become a generic 500.
- `gh_redirect` answers 307 with `Cache-Control: no-store` to
  `https://github.com/<GITHUB_REPO>`, or to
  `https://github.com/example/studio-activity` when that variable is unset.
  The page view is forwarded only when the environment, the PostHog key and
  `BACKEND_PUBLIC_URL` are all available.

## Configuration

`WorkerEnv.from_environ()` reads the process environment:

| Name                       | Kind       | Meaning                                                   |
|----------------------------|------------|-----------------------------------------------------------|
| `POSTHOG_HOST`             | variable   | Capture host; defaults to `https://us.i.posthog.com`      |
| `POSTHOG_API_KEY`          | secret     | Project key; nothing is forwarded without it              |
| `POSTHOG_DISTINCT_ID_SALT` | secret     | Salt for stable anonymous pageview ids; random when unset |
| `BACKEND_PUBLIC_URL`       | variable   | Public base URL used to build `$current_url`              |
| `GITHUB_REPO`              | variable   | `owner/name` of the repository                            |
| `KV_NAMESPACES`            | list       | Comma-separated KV namespaces; default `TELEMETRY_KV,VERSION_KV` |
| `*_LIMITER`                | limiter    | `<requests>/<seconds>`, e.g. `TELEMETRY_IP_LIMITER=60/60` |

The rate limiters used by the telemetry handler are `TELEMETRY_IP_LIMITER`
and `TELEMETRY_USER_LIMITER`. Any limiter or KV namespace that is not bound
is skipped.

## Privacy

Only the event name and its declared properties, the client-computed
anonymous id, plugin version metadata and the client IP (for bot detection
and country-level geo enrichment) are forwarded.