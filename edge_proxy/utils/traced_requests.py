import logging
from typing import Optional, Dict
from contextlib import contextmanager

from opentelemetry.trace import Tracer

from edge_proxy.utils import mask_segment

logger = logging.getLogger("uvicorn.error")


@contextmanager
def traced_request(
    tracer: Tracer,
    operation: str,
    auth_segment: Optional[str],
    client_ip: Optional[str],
    start_message: str,
    extra_attrs: Optional[Dict] = None,
):
    """Context manager to create a span, set common attributes, and log a start message."""
    with tracer.start_as_current_span(operation) as span:
        if client_ip:
            span.set_attribute("client.address", client_ip)
        if extra_attrs:
            for k, v in extra_attrs.items():
                span.set_attribute(k, mask_segment(str(v), auth_segment))
        logger.info(mask_segment(start_message, auth_segment))
        yield span
