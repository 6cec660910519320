import logging
import time
from typing import Optional

from fastapi import APIRouter, Request, WebSocket
from fastapi.responses import HTMLResponse, JSONResponse, Response
from opentelemetry import trace
from starlette.requests import HTTPConnection

from edge_proxy.config import ProxyConfig
from edge_proxy.models import HealthStatus
from edge_proxy.proxy.access import AccessController
from edge_proxy.proxy.cache_policy import CachePolicy, classify, is_streaming_path
from edge_proxy.proxy.errors import PayloadTooLargeError, ProxyError
from edge_proxy.proxy.forwarder import BODYLESS_METHODS, ForwardingEngine
from edge_proxy.proxy.headers import HeaderMap
from edge_proxy.proxy.response import (
    assemble_headers,
    build_error_response,
    build_proxy_response,
    utc_timestamp,
    with_cors,
)
from edge_proxy.proxy.target import UpstreamTarget, resolve_target, split_inbound_path
from edge_proxy.proxy.websocket_bridge import POLICY_VIOLATION, WebSocketBridge
from edge_proxy.usage import render_usage_page
from edge_proxy.utils import client_label, mask_segment
from edge_proxy.utils.exception_logging import log_exception_with_details
from edge_proxy.utils.traced_requests import traced_request
from edge_proxy.vars import SERVICE_VERSION

router = APIRouter()

logger = logging.getLogger("uvicorn.error")

tracer = trace.get_tracer(__name__)


def _config(connection: HTTPConnection) -> ProxyConfig:
    return connection.app.state.proxy_config


def client_address(connection: HTTPConnection, config: ProxyConfig) -> Optional[str]:
    """Client IP from the trusted platform header, falling back to the socket peer."""
    trusted = connection.headers.get(config.client_ip_header)
    if trusted:
        return trusted.split(",")[0].strip()
    return connection.client.host if connection.client else None


def inbound_path(connection: HTTPConnection) -> str:
    """The still-percent-encoded request path, so encoded targets survive untouched."""
    raw_path = connection.scope.get("raw_path")
    if raw_path:
        return raw_path.decode("latin-1").split("?", 1)[0]
    return connection.url.path


def resolve_inbound_target(connection: HTTPConnection, config: ProxyConfig) -> UpstreamTarget:
    raw_target, _ = split_inbound_path(inbound_path(connection), config.auth_segment)
    return resolve_target(raw_target, connection.url.query, config.default_scheme)


async def read_body(request: Request, config: ProxyConfig) -> Optional[bytes]:
    if request.method.upper() in BODYLESS_METHODS:
        return None
    limit = config.max_body_size
    declared = request.headers.get("content-length", "")
    if limit > 0 and declared.isdigit() and int(declared) > limit:
        raise PayloadTooLargeError(
            f"Request body exceeds maximum size of {limit} bytes"
        )
    # chunked bodies carry no content-length; stop reading once over the limit
    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if limit > 0 and len(body) > limit:
            raise PayloadTooLargeError(
                f"Request body exceeds maximum size of {limit} bytes"
            )
    return bytes(body)


# HTTP routes are registered with methods=None so any verb (PROPFIND, PURGE, ...)
# reaches them; the catch-all goes last.
async def health(request: Request):
    status = HealthStatus(timestamp=utc_timestamp(), version=SERVICE_VERSION)
    return with_cors(JSONResponse(status.model_dump()))


async def usage(request: Request):
    page = render_usage_page(_config(request), SERVICE_VERSION)
    return with_cors(HTMLResponse(page))


router.add_route("/health", health, methods=None)
router.add_route("/ping", health, methods=None)
router.add_route("/", usage, methods=None)


async def forward_request(request: Request, config: ProxyConfig) -> Response:
    """
    Resolve the target from the path, run the access policy, forward the
    request and assemble the final streamed response.
    """
    started_at = time.monotonic()
    client_ip = client_address(request, config)
    method = request.method.upper()

    target = resolve_inbound_target(request, config)
    AccessController(config).evaluate(target, client_ip).raise_for_denial()
    body = await read_body(request, config)
    streaming = is_streaming_path(target.path, config)

    engine = ForwardingEngine(request.app.state.http_client, config)
    with traced_request(
        tracer,
        operation="proxy_request",
        auth_segment=config.auth_segment,
        client_ip=client_ip,
        start_message=(
            f"[Proxy] {method} {inbound_path(request)} -> {target.url} "
            f"(client {client_label(client_ip)})"
        ),
        extra_attrs={"proxy.target_host": target.host, "proxy.streaming": streaming},
    ) as span:
        outcome = await engine.forward(
            method, target, HeaderMap(request.headers.items()), body, streaming=streaming
        )
        span.set_attribute("http.status_code", outcome.response.status_code)

    upstream_headers = HeaderMap(outcome.response.headers.multi_items())
    if method in BODYLESS_METHODS:
        policy = classify(target.path, outcome.response.status_code, upstream_headers, config)
    else:
        policy = CachePolicy.not_cacheable("no-store")

    headers = assemble_headers(upstream_headers, target, policy, config, started_at)
    logger.debug(
        mask_segment(
            f"[Proxy] {method} {target.url} -> {outcome.response.status_code} "
            f"tier={policy.tier} hops={outcome.redirects_followed}",
            config.auth_segment,
        )
    )
    return build_proxy_response(outcome, headers)


async def proxy_all(request: Request):
    """Catch-all route that proxies every request to the target named in its path."""
    config = _config(request)
    if request.method.upper() == "OPTIONS":
        return with_cors(Response(status_code=204))

    try:
        return await forward_request(request, config)
    except ProxyError as e:
        logger.warning(
            mask_segment(
                f"[Proxy] {request.method} {inbound_path(request)} failed: "
                f"{e.status_code} {e.message}",
                config.auth_segment,
            )
        )
        return build_error_response(e, config)
    except Exception as e:
        log_exception_with_details(logger, "[Proxy]", e)
        return build_error_response(e, config, status_code=500)


router.add_route("/{path:path}", proxy_all, methods=None)


@router.websocket("/{path:path}")
async def proxy_websocket(websocket: WebSocket, path: str):
    """Bridge a websocket upgrade to the ws(s):// form of the target in its path."""
    config = _config(websocket)
    if not config.websocket_enabled:
        logger.info("[WebSocket] Upgrade refused, websocket bridging is disabled")
        await websocket.close(code=POLICY_VIOLATION)
        return

    client_ip = client_address(websocket, config)
    try:
        target = resolve_inbound_target(websocket, config)
        AccessController(config).evaluate(target, client_ip).raise_for_denial()
    except ProxyError as e:
        logger.warning(
            mask_segment(
                f"[WebSocket] Upgrade for {inbound_path(websocket)} refused: {e.message}",
                config.auth_segment,
            )
        )
        await websocket.close(code=POLICY_VIOLATION)
        return

    bridge = WebSocketBridge(config, connect=websocket.app.state.websocket_connect)
    with traced_request(
        tracer,
        operation="websocket_bridge",
        auth_segment=config.auth_segment,
        client_ip=client_ip,
        start_message=f"[WebSocket] Upgrade {inbound_path(websocket)} -> {target.host}",
        extra_attrs={"proxy.target_host": target.host},
    ):
        await bridge.bridge(websocket, target)
