import logging
import time
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

import httpx
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTask

from edge_proxy.config import ProxyConfig
from edge_proxy.models import ErrorBody
from edge_proxy.proxy.cache_policy import CachePolicy
from edge_proxy.proxy.errors import ProxyError
from edge_proxy.proxy.forwarder import ForwardOutcome
from edge_proxy.proxy.headers import HeaderMap, sanitize_response_headers
from edge_proxy.proxy.target import UpstreamTarget
from edge_proxy.utils import mask_segment
from edge_proxy.utils.exception_logging import truncated_traceback

logger = logging.getLogger("uvicorn.error")

CORS_HEADERS = (
    ("access-control-allow-origin", "*"),
    ("access-control-allow-methods", "*"),
    ("access-control-allow-headers", "*"),
    ("access-control-expose-headers", "*"),
    ("access-control-max-age", "86400"),
)


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def apply_cors(headers: HeaderMap) -> HeaderMap:
    for name, value in CORS_HEADERS:
        headers.set(name, value)
    return headers


def with_cors(response: Response) -> Response:
    for name, value in CORS_HEADERS:
        response.headers[name] = value
    return response


def apply_cache_policy(headers: HeaderMap, policy: CachePolicy, config: ProxyConfig) -> None:
    headers.set("cache-control", policy.directive)
    if policy.cacheable and config.edge_cache_enabled:
        headers.append("cache-control", f"s-maxage={policy.ttl_seconds}")
    if policy.tier != "none" or policy.cacheable:
        headers.set("x-cache-tier", policy.tier)
    if policy.cacheable and "vary" not in headers:
        headers.set("vary", "Accept-Encoding")


def assemble_headers(
    upstream_headers: HeaderMap,
    target: UpstreamTarget,
    policy: Optional[CachePolicy],
    config: ProxyConfig,
    started_at: float,
) -> HeaderMap:
    """
    Build the final response header set: sanitised upstream headers, cache
    directives, proxy identification and timing, then CORS.
    """
    headers = sanitize_response_headers(upstream_headers)
    if policy is not None:
        apply_cache_policy(headers, policy, config)

    headers.set("x-proxy-by", config.proxy_identifier)
    if config.expose_target_url:
        headers.set("x-target-url", target.url)
    if config.timing_headers:
        elapsed_ms = int((time.monotonic() - started_at) * 1000)
        headers.set("x-response-time", f"{elapsed_ms}ms")
        headers.set("x-proxy-timestamp", utc_timestamp())
    return apply_cors(headers)


async def stream_upstream(outcome: ForwardOutcome) -> AsyncIterator[bytes]:
    """Relay the upstream body byte-for-byte, content-encoding untouched."""
    try:
        if outcome.response.is_stream_consumed:
            # in-memory bodies are loaded eagerly by httpx
            yield outcome.response.content
            return
        async for chunk in outcome.response.aiter_raw():
            yield chunk
    except httpx.TransportError as e:
        # headers are already on the wire, nothing left but to cut the stream
        logger.warning(f"[Proxy] Upstream stream interrupted: {e!r}")
    finally:
        await outcome.aclose()


def build_proxy_response(outcome: ForwardOutcome, headers: HeaderMap) -> StreamingResponse:
    response = StreamingResponse(
        stream_upstream(outcome),
        status_code=outcome.response.status_code,
        background=BackgroundTask(outcome.aclose),
    )
    for name, value in headers.items():
        response.headers.append(name, value)
    return response


def build_error_response(
    exc: Exception, config: ProxyConfig, status_code: Optional[int] = None
) -> JSONResponse:
    """Render any terminal failure as the structured JSON error body."""
    if isinstance(exc, ProxyError):
        error, message = exc.error, exc.message
        status = status_code or exc.status_code
    else:
        error, message = ProxyError.error, str(exc) or "Internal server error"
        status = status_code or 500

    body = ErrorBody(
        error=error,
        message=mask_segment(message, config.auth_segment),
        timestamp=utc_timestamp(),
    )
    if config.verbose_errors:
        body.stack = [mask_segment(line, config.auth_segment) for line in truncated_traceback(exc)]

    response = JSONResponse(
        status_code=status,
        content=body.model_dump(exclude_none=True),
        headers={"x-proxy-by": config.proxy_identifier},
    )
    return with_cors(response)
