# Ensure tests import the package from this checkout first, so
# `import edge_proxy.*` works without an editable install.
import os
import sys
from typing import Callable, List

import httpx
import pytest

SERVICE_ROOT = os.path.dirname(__file__)

if SERVICE_ROOT not in sys.path:
    sys.path.insert(0, SERVICE_ROOT)

from edge_proxy.config import ProxyConfig  # noqa: E402


class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every request it served, in order."""

    def __init__(self, handler: Callable):
        self.requests: List[httpx.Request] = []

        async def _record(request: httpx.Request):
            self.requests.append(request)
            result = handler(request)
            if hasattr(result, "__await__"):
                result = await result
            return result

        super().__init__(_record)


@pytest.fixture
def proxy_config():
    """Defaults with timing headers off so header assertions stay deterministic."""
    return ProxyConfig(timing_headers=False)


@pytest.fixture
def recording_transport():
    def _create(handler: Callable) -> RecordingTransport:
        return RecordingTransport(handler)

    return _create
