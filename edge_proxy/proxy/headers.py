"""
Header handling for both directions of the proxy.

``HeaderMap`` is an ordered multimap with case-insensitive names. ``set``
replaces every value of a name, ``append`` adds another value next to the
existing ones (cache-control composition relies on that), ``remove`` drops
all values of a name.
"""

from typing import Iterable, Iterator, List, Optional, Tuple

# Hop-by-hop headers that should NOT be forwarded (RFC 7230 §6.1)
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)

# Headers that reveal the original client to the upstream
CLIENT_IDENTITY_HEADERS = frozenset(
    {
        "x-forwarded-for",
        "x-forwarded-host",
        "x-forwarded-proto",
        "x-forwarded-port",
        "x-forwarded",
        "forwarded-for",
        "forwarded",
        "x-real-ip",
        "x-client-ip",
        "x-cluster-client-ip",
        "true-client-ip",
        "cf-connecting-ip",
        "cf-connecting-ipv6",
        "cf-ipcountry",
        "cf-ray",
        "cf-visitor",
        "cf-worker",
        "cdn-loop",
        "via",
        "referer",
    }
)

# Upstream response headers that block embedding or pin transport security
SECURITY_RESPONSE_HEADERS = frozenset(
    {
        "content-security-policy",
        "content-security-policy-report-only",
        "x-content-security-policy",
        "x-frame-options",
        "x-xss-protection",
        "strict-transport-security",
    }
)

# Set by the websocket client library during its own handshake
WEBSOCKET_HANDSHAKE_HEADERS = frozenset(
    {
        "host",
        "connection",
        "upgrade",
        "sec-websocket-key",
        "sec-websocket-version",
        "sec-websocket-extensions",
        "sec-websocket-accept",
        "sec-websocket-protocol",
        "content-length",
    }
)


class HeaderMap:
    def __init__(self, items: Optional[Iterable[Tuple[str, str]]] = None):
        self._items: List[Tuple[str, str]] = []
        for name, value in items or ():
            self.append(name, value)

    @classmethod
    def from_raw(cls, raw: Iterable[Tuple[bytes, bytes]]) -> "HeaderMap":
        """Build from ASGI/httpx raw header pairs."""
        return cls((k.decode("latin-1"), v.decode("latin-1")) for k, v in raw)

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        key = name.lower()
        for existing, value in self._items:
            if existing.lower() == key:
                return value
        return default

    def get_all(self, name: str) -> List[str]:
        key = name.lower()
        return [value for existing, value in self._items if existing.lower() == key]

    def set(self, name: str, value: str) -> None:
        self.remove(name)
        self._items.append((name.lower(), value))

    def append(self, name: str, value: str) -> None:
        self._items.append((name.lower(), value))

    def remove(self, *names: str) -> None:
        keys = {name.lower() for name in names}
        self._items = [(k, v) for k, v in self._items if k.lower() not in keys]

    def remove_all(self, names: Iterable[str]) -> None:
        self.remove(*names)

    def copy(self) -> "HeaderMap":
        return HeaderMap(self._items)

    def items(self) -> List[Tuple[str, str]]:
        return list(self._items)

    def to_dict(self) -> dict:
        """Single-valued view; repeated names are folded with ', '."""
        folded: dict = {}
        for name, value in self._items:
            folded[name] = f"{folded[name]}, {value}" if name in folded else value
        return folded

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and any(
            existing.lower() == name.lower() for existing, _ in self._items
        )

    def __iter__(self) -> Iterator[str]:
        return iter(name for name, _ in self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"HeaderMap({self._items!r})"


def sanitize_request_headers(
    headers: HeaderMap, authority: str, user_agent: Optional[str] = None
) -> HeaderMap:
    """
    Prepare inbound headers for the upstream hop.
    Strips hop-by-hop and client identity headers and points ``host`` at the
    upstream. Range and conditional headers are passed through untouched.
    """
    prepared = headers.copy()
    prepared.remove_all(HOP_BY_HOP_HEADERS)
    prepared.remove_all(CLIENT_IDENTITY_HEADERS)
    # httpx derives the length from the body it actually sends
    prepared.remove("content-length")
    prepared.set("host", authority)
    if user_agent:
        prepared.set("user-agent", user_agent)
    return prepared


def sanitize_response_headers(headers: HeaderMap) -> HeaderMap:
    """Drop hop-by-hop and embedding-blocking headers from an upstream response."""
    cleaned = headers.copy()
    cleaned.remove_all(HOP_BY_HOP_HEADERS)
    cleaned.remove_all(SECURITY_RESPONSE_HEADERS)
    return cleaned


def sanitize_websocket_headers(
    headers: HeaderMap, user_agent: Optional[str] = None
) -> HeaderMap:
    prepared = headers.copy()
    prepared.remove_all(HOP_BY_HOP_HEADERS)
    prepared.remove_all(CLIENT_IDENTITY_HEADERS)
    prepared.remove_all(WEBSOCKET_HANDSHAKE_HEADERS)
    if user_agent:
        prepared.set("user-agent", user_agent)
    return prepared
