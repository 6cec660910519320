import ipaddress
import re
import socket
from dataclasses import dataclass, replace
from typing import List, Optional, Tuple

import httpx

from edge_proxy.proxy.errors import AuthenticationError, MalformedTargetError

# "https://host" arrives as "https:/host" once empty path segments are dropped
_SINGLE_SLASH_SCHEME = re.compile(r"^([a-zA-Z][a-zA-Z0-9+-]*):/(?!/)")
_HAS_SCHEME = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")

_DEFAULT_PORTS = {"http": 80, "https": 443, "ws": 80, "wss": 443}

# decimal, octal or hex IPv4 part ("127", "0177", "0x7f")
_NUMERIC_LABEL = re.compile(r"^(0x[0-9a-f]*|[0-9]+)$", re.IGNORECASE)


def canonical_host(host: str) -> str:
    """
    Rewrite shorthand IPv4 hosts (``127.1``, ``2130706433``, ``0x7f000001``)
    to dotted-quad form, as browsers and the system resolver read them.
    A host whose last label is numeric must parse as IPv4.
    """
    host = host.lower()
    if ":" in host:
        return host
    last_label = host.rstrip(".").rsplit(".", 1)[-1]
    if not _NUMERIC_LABEL.match(last_label):
        return host
    try:
        return str(ipaddress.IPv4Address(socket.inet_aton(host.rstrip("."))))
    except (OSError, ValueError):
        raise MalformedTargetError(f"Invalid IPv4 address: {host}")


@dataclass(frozen=True)
class UpstreamTarget:
    scheme: str
    host: str
    port: Optional[int]
    path: str
    query: str = ""

    @property
    def authority(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        if self.port is None or self.port == _DEFAULT_PORTS.get(self.scheme):
            return host
        return f"{host}:{self.port}"

    @property
    def url(self) -> str:
        query = f"?{self.query}" if self.query else ""
        return f"{self.scheme}://{self.authority}{self.path}{query}"

    def with_scheme(self, scheme: str) -> "UpstreamTarget":
        return replace(self, scheme=scheme)

    @classmethod
    def from_url(cls, url: httpx.URL) -> "UpstreamTarget":
        if not url.host:
            raise MalformedTargetError(f"Invalid URL: {url} has no host")
        return cls(
            scheme=url.scheme.lower(),
            host=canonical_host(url.host),
            port=url.port,
            path=url.raw_path.decode("ascii").split("?", 1)[0] or "/",
            query=url.query.decode("ascii"),
        )

    def __str__(self) -> str:
        return self.url


def split_inbound_path(path: str, auth_segment: Optional[str]) -> Tuple[str, List[str]]:
    """
    Split the inbound request path into the target portion.

    Empty segments are dropped, the leading auth segment is checked and removed
    when configured, and a trailing slash is kept on the remaining path.
    """
    parts = [p for p in path.split("/") if p]
    if auth_segment:
        if not parts or parts[0] != auth_segment:
            raise AuthenticationError("Missing or invalid access segment")
        parts = parts[1:]
    if not parts:
        raise MalformedTargetError("No target specified")
    remainder = "/".join(parts)
    if path.endswith("/") and len(parts) > 1:
        remainder += "/"
    return remainder, parts


def resolve_target(raw_path: str, query: str, default_scheme: str) -> UpstreamTarget:
    """
    Turn ``example.com/a/b`` (plus the inbound query string) into an absolute
    upstream target. An inbound query replaces any query embedded in the path.
    Non-http(s) schemes are parsed and returned; rejecting them is left to the
    access controller.
    """
    candidate = raw_path.lstrip("/")
    candidate = _SINGLE_SLASH_SCHEME.sub(lambda m: f"{m.group(1)}://", candidate)
    if not _HAS_SCHEME.match(candidate):
        candidate = f"{default_scheme}://{candidate}"

    try:
        url = httpx.URL(candidate)
    except (httpx.InvalidURL, ValueError, TypeError) as e:
        raise MalformedTargetError(f"Invalid URL: {candidate} ({e})")

    if query:
        url = url.copy_with(query=query.lstrip("?").encode("ascii", "ignore"))

    return UpstreamTarget.from_url(url)
