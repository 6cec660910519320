import logging
from contextlib import asynccontextmanager
from typing import Any, Callable, Optional, Sequence

import httpx
import websockets
from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SpanExporter,
    SpanExportResult,
)
from prometheus_client import Info
from prometheus_fastapi_instrumentator import Instrumentator

from edge_proxy.config import ProxyConfig
from edge_proxy.routes import router
from edge_proxy.vars import OTLP_ENDPOINT, OTLP_HEADERS, SERVICE_NAME, SERVICE_VERSION

logger = logging.getLogger("uvicorn.error")


class FilteringSpanExporter(SpanExporter):
    """
    Wrapper exporter that filters out noisy ASGI body spans from streamed responses.
    A proxied media download would otherwise produce one span per chunk.
    """

    def __init__(self, exporter: SpanExporter):
        self.exporter = exporter

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        filtered_spans = [
            span
            for span in spans
            if not (
                span.attributes
                and span.attributes.get("asgi.event.type")
                in ("http.response.body", "websocket.send", "websocket.receive")
            )
        ]
        if filtered_spans:
            return self.exporter.export(filtered_spans)
        return SpanExportResult.SUCCESS

    def shutdown(self):
        return self.exporter.shutdown()

    def force_flush(self, timeout_millis: int = 30000):
        return self.exporter.force_flush(timeout_millis)


def configure_tracing() -> None:
    trace.set_tracer_provider(
        TracerProvider(
            resource=Resource.create(
                {"service.name": SERVICE_NAME, "service.version": SERVICE_VERSION}
            )
        )
    )
    if OTLP_ENDPOINT:
        otlp_exporter = OTLPSpanExporter(
            endpoint=OTLP_ENDPOINT,
            headers=((OTLP_HEADERS).split(",") if OTLP_HEADERS else None),
        )
        trace.get_tracer_provider().add_span_processor(
            BatchSpanProcessor(FilteringSpanExporter(otlp_exporter))
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    config: ProxyConfig = app.state.proxy_config
    logger.info(
        f"[Startup] {SERVICE_NAME} {SERVICE_VERSION}: default scheme {config.default_scheme}, "
        f"max redirects {config.max_redirects}, "
        f"auth segment {'enabled' if config.auth_segment else 'disabled'}"
    )
    try:
        yield
    finally:
        await app.state.http_client.aclose()


def create_app(
    config: Optional[ProxyConfig] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    websocket_connect: Optional[Callable[..., Any]] = None,
    instrument: bool = True,
) -> FastAPI:
    """
    Build the proxy application around one immutable ProxyConfig.

    ``transport`` and ``websocket_connect`` replace the upstream HTTP transport
    and websocket connector; ``instrument`` toggles the Prometheus and
    OpenTelemetry instrumentation, which registers process-wide collectors.
    """
    config = (config or ProxyConfig.from_env()).validate()

    app = FastAPI(title=SERVICE_NAME, version=SERVICE_VERSION, lifespan=lifespan)
    app.state.proxy_config = config
    app.state.http_client = httpx.AsyncClient(
        transport=transport,
        follow_redirects=False,
        timeout=httpx.Timeout(config.stream_timeout_ms / 1000),
    )
    app.state.websocket_connect = websocket_connect or websockets.connect

    if instrument:
        Instrumentator().instrument(app).expose(app)
        FastAPIInstrumentor.instrument_app(app, excluded_urls="health,ping,metrics")

    app.include_router(router)
    return app


configure_tracing()

# Add app_name to the metrics
app_info = Info("fastapi_app_info", "Application Info")
app_info.info({"app_name": SERVICE_NAME, "version": SERVICE_VERSION})

app = create_app()
