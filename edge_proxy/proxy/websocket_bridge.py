import asyncio
import logging
from typing import Any, Callable, List, Optional

import websockets
from fastapi import WebSocket
from starlette.websockets import WebSocketState
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from edge_proxy.config import ProxyConfig
from edge_proxy.proxy.headers import HeaderMap, sanitize_websocket_headers
from edge_proxy.proxy.target import UpstreamTarget
from edge_proxy.utils import mask_segment
from edge_proxy.utils.exception_logging import log_exception_with_details

logger = logging.getLogger("uvicorn.error")

NORMAL_CLOSURE = 1000
POLICY_VIOLATION = 1008
INTERNAL_ERROR = 1011

# Reserved codes that must never be put on the wire in a close frame
_NO_STATUS_RECEIVED = 1005
_ABNORMAL_CLOSURE = 1006
_TLS_HANDSHAKE = 1015


def relayable_close_code(code: Optional[int]) -> int:
    if code is None or code == _NO_STATUS_RECEIVED:
        return NORMAL_CLOSURE
    if code in (_ABNORMAL_CLOSURE, _TLS_HANDSHAKE):
        return INTERNAL_ERROR
    if not 1000 <= code < 5000:
        return NORMAL_CLOSURE
    return code


def websocket_url(target: UpstreamTarget) -> str:
    return target.with_scheme("wss" if target.scheme == "https" else "ws").url


class WebSocketBridge:
    """
    Splices a client websocket onto a freshly opened upstream websocket.

    Frames are relayed unmodified in both directions until either side
    closes; the close is then propagated to the other side. No session
    timeout is applied.
    """

    def __init__(self, config: ProxyConfig, connect: Callable[..., Any] = websockets.connect):
        self.config = config
        self._connect = connect

    def _requested_subprotocols(self, websocket: WebSocket) -> List[str]:
        raw = websocket.headers.get("sec-websocket-protocol", "")
        return [p.strip() for p in raw.split(",") if p.strip()]

    async def open_upstream(self, websocket: WebSocket, target: UpstreamTarget):
        headers = sanitize_websocket_headers(HeaderMap(websocket.headers.items()))
        user_agent = self.config.user_agent or headers.get("user-agent")
        headers.remove("user-agent")

        kwargs = {
            "additional_headers": headers.items(),
            "open_timeout": self.config.request_timeout_ms / 1000,
            "max_size": None,
        }
        subprotocols = self._requested_subprotocols(websocket)
        if subprotocols:
            kwargs["subprotocols"] = subprotocols
        if user_agent:
            kwargs["user_agent_header"] = user_agent

        return await self._connect(websocket_url(target), **kwargs)

    async def bridge(self, websocket: WebSocket, target: UpstreamTarget) -> None:
        url = mask_segment(websocket_url(target), self.config.auth_segment)
        try:
            upstream = await self.open_upstream(websocket, target)
        except (OSError, asyncio.TimeoutError, InvalidHandshake, InvalidURI) as e:
            logger.error(f"[WebSocket] Could not connect to {url}: {e!r}")
            await websocket.close(code=INTERNAL_ERROR)
            return

        await websocket.accept(subprotocol=getattr(upstream, "subprotocol", None))
        logger.info(f"[WebSocket] Bridge open to {url}")
        try:
            await self._splice(websocket, upstream)
        finally:
            await upstream.close()
            logger.info(f"[WebSocket] Bridge closed to {url}")

    async def _splice(self, websocket: WebSocket, upstream) -> None:
        client_task = asyncio.create_task(self._client_to_upstream(websocket, upstream))
        upstream_task = asyncio.create_task(self._upstream_to_client(upstream, websocket))
        tasks = {client_task, upstream_task}
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        for task in done:
            if not task.cancelled() and task.exception() is not None:
                log_exception_with_details(logger, "[WebSocket]", task.exception())
                await self._close_client(websocket, INTERNAL_ERROR)
                await upstream.close(code=INTERNAL_ERROR)

    async def _client_to_upstream(self, websocket: WebSocket, upstream) -> None:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                code = relayable_close_code(message.get("code"))
                logger.debug(f"[WebSocket] Client closed with {code}")
                await upstream.close(code=code, reason=message.get("reason") or "")
                return
            if message.get("text") is not None:
                await upstream.send(message["text"])
            elif message.get("bytes") is not None:
                await upstream.send(message["bytes"])

    async def _upstream_to_client(self, upstream, websocket: WebSocket) -> None:
        try:
            async for message in upstream:
                if isinstance(message, str):
                    await websocket.send_text(message)
                else:
                    await websocket.send_bytes(message)
        except ConnectionClosed as e:
            logger.debug(f"[WebSocket] Upstream connection dropped: {e}")
        code = relayable_close_code(getattr(upstream, "close_code", None))
        reason = getattr(upstream, "close_reason", None) or ""
        logger.debug(f"[WebSocket] Upstream closed with {code}")
        await self._close_client(websocket, code, reason)

    @staticmethod
    async def _close_client(websocket: WebSocket, code: int, reason: str = "") -> None:
        if (
            websocket.client_state == WebSocketState.CONNECTED
            and websocket.application_state == WebSocketState.CONNECTED
        ):
            await websocket.close(code=code, reason=reason)
