import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional

import httpx
from opentelemetry import trace
from prometheus_client import Counter

from edge_proxy.config import ProxyConfig
from edge_proxy.proxy.access import AccessController
from edge_proxy.proxy.errors import (
    MalformedTargetError,
    RequestTimeoutError,
    UpstreamNetworkError,
)
from edge_proxy.proxy.headers import HeaderMap, sanitize_request_headers
from edge_proxy.proxy.target import UpstreamTarget
from edge_proxy.utils import mask_segment

logger = logging.getLogger("uvicorn.error")
tracer = trace.get_tracer(__name__)

REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})
BODYLESS_METHODS = frozenset({"GET", "HEAD"})

UPSTREAM_ERRORS = Counter(
    "edge_proxy_upstream_errors_total",
    "Upstream requests that ended in a timeout or transport failure",
    ["kind"],
)
REDIRECTS_FOLLOWED = Counter(
    "edge_proxy_redirects_followed_total",
    "Upstream redirects followed internally",
)


@dataclass
class Deadline:
    """Cancellation budget shared by every hop of one logical request."""

    timeout_ms: int
    started_at: float = field(default_factory=time.monotonic)

    def remaining(self) -> float:
        return self.timeout_ms / 1000 - (time.monotonic() - self.started_at)

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    def timeout_error(self) -> RequestTimeoutError:
        return RequestTimeoutError(f"Request timeout after {self.timeout_ms}ms")


@dataclass(frozen=True)
class ForwardAttempt:
    index: int
    url: str
    status_code: int
    location: Optional[str] = None


@dataclass
class ForwardOutcome:
    response: httpx.Response
    attempts: List[ForwardAttempt]

    @property
    def final_url(self) -> str:
        return self.attempts[-1].url

    @property
    def redirects_followed(self) -> int:
        return len(self.attempts) - 1

    async def aclose(self) -> None:
        await self.response.aclose()


class ForwardingEngine:
    """
    Issues the upstream request and follows redirects internally.

    Transport-level redirects are disabled so every 3xx is observed here. The
    chain is bounded by ``max_redirects`` and the whole chain shares a single
    deadline. Each Location passes the target access stages before it is
    followed; a denied or unusable Location ends the chain with the 3xx as-is.
    The terminal response is returned unread; the caller streams it and must
    call ``ForwardOutcome.aclose()``.
    """

    def __init__(self, client: httpx.AsyncClient, config: ProxyConfig):
        self.client = client
        self.config = config
        self.access = AccessController(config)

    def deadline_for(self, streaming: bool) -> Deadline:
        timeout_ms = (
            self.config.stream_timeout_ms if streaming else self.config.request_timeout_ms
        )
        return Deadline(timeout_ms)

    async def forward(
        self,
        method: str,
        target: UpstreamTarget,
        headers: HeaderMap,
        body: Optional[bytes] = None,
        streaming: bool = False,
        deadline: Optional[Deadline] = None,
    ) -> ForwardOutcome:
        method = method.upper()
        deadline = deadline or self.deadline_for(streaming)
        base_headers = sanitize_request_headers(
            headers, target.authority, self.config.user_agent
        )
        content = None if method in BODYLESS_METHODS else (body or b"")

        with tracer.start_as_current_span("upstream_forward") as span:
            span.set_attribute("proxy.method", method)
            span.set_attribute(
                "proxy.target_url", mask_segment(target.url, self.config.auth_segment)
            )
            span.set_attribute("proxy.streaming", streaming)

            try:
                outcome = await self._follow(method, target, base_headers, content, deadline)
            except RequestTimeoutError:
                UPSTREAM_ERRORS.labels(kind="timeout").inc()
                span.set_attribute("proxy.error", "timeout")
                raise
            except UpstreamNetworkError as e:
                UPSTREAM_ERRORS.labels(kind="network").inc()
                span.set_attribute("proxy.error", str(e))
                raise

            span.set_attribute("proxy.status_code", outcome.response.status_code)
            span.set_attribute("proxy.redirects", outcome.redirects_followed)
            return outcome

    async def _follow(
        self,
        method: str,
        target: UpstreamTarget,
        base_headers: HeaderMap,
        content: Optional[bytes],
        deadline: Deadline,
    ) -> ForwardOutcome:
        attempts: List[ForwardAttempt] = []
        hop_target = target
        hops = 0

        while True:
            url = httpx.URL(hop_target.url)
            hop_headers = base_headers.copy()
            hop_headers.set("host", hop_target.authority)
            # the body goes out on the first hop only
            response = await self._issue(
                method, url, hop_headers, content if hops == 0 else None, deadline
            )
            location = response.headers.get("location")
            attempts.append(ForwardAttempt(hops, str(url), response.status_code, location))

            if response.status_code not in REDIRECT_STATUSES or not location:
                return ForwardOutcome(response, attempts)
            if hops >= self.config.max_redirects:
                logger.info(
                    f"[Redirect] Limit of {self.config.max_redirects} reached at {url.host}, "
                    f"returning {response.status_code}"
                )
                return ForwardOutcome(response, attempts)

            next_target = self._resolve_location(url, location)
            if next_target is None:
                logger.warning(
                    f"[Redirect] Unusable Location header from {url.host}, returning redirect as-is"
                )
                return ForwardOutcome(response, attempts)
            if not self.access.evaluate_target(next_target).allowed:
                logger.warning(
                    f"[Redirect] Hop from {url.host} to {next_target.host} denied, "
                    f"returning redirect as-is"
                )
                return ForwardOutcome(response, attempts)

            await response.aclose()
            REDIRECTS_FOLLOWED.inc()
            hops += 1
            logger.debug(f"[Redirect] Hop {hops}: {url.host} -> {next_target.host}")
            hop_target = next_target

    @staticmethod
    def _resolve_location(current: httpx.URL, location: str) -> Optional[UpstreamTarget]:
        try:
            next_url = current.join(location.strip())
            if next_url.scheme not in ("http", "https") or not next_url.host:
                return None
            return UpstreamTarget.from_url(next_url)
        except (httpx.InvalidURL, MalformedTargetError, ValueError, TypeError):
            return None

    async def _issue(
        self,
        method: str,
        url: httpx.URL,
        headers: HeaderMap,
        content: Optional[bytes],
        deadline: Deadline,
    ) -> httpx.Response:
        remaining = deadline.remaining()
        if remaining <= 0:
            raise deadline.timeout_error()

        request = self.client.build_request(
            method, url, headers=headers.items(), content=content
        )
        try:
            return await asyncio.wait_for(
                self.client.send(request, stream=True, follow_redirects=False),
                timeout=remaining,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.error(f"[Proxy] Upstream timeout for {url.host} after {deadline.timeout_ms}ms")
            raise deadline.timeout_error()
        except httpx.TransportError as e:
            logger.error(f"[Proxy] Failed to reach {url.host}: {e!r}")
            raise UpstreamNetworkError(f"Upstream request failed: {type(e).__name__}: {e}")
