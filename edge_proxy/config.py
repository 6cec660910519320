import os
from dataclasses import dataclass, field, replace
from typing import Mapping, Optional, Tuple

from edge_proxy.proxy.matching import MatchRule, parse_rules

DEFAULT_BLOCKED_DOMAINS = ("localhost", "127.0.0.1", "0.0.0.0", "::1")

# Credential files, VCS metadata, admin panels and traversal sequences
DEFAULT_BLOCKED_PATHS = (
    "/.env",
    "/.git",
    "/.svn",
    "/.htaccess",
    "/.htpasswd",
    "/.aws",
    "/.ssh",
    "/id_rsa",
    "/etc/passwd",
    "/etc/shadow",
    "/wp-admin",
    "/phpmyadmin",
    "/server-status",
    "../",
    "..\\",
    "%2e%2e",
    "..%2f",
)

DEFAULT_STATIC_EXTENSIONS = (
    "css", "js", "mjs", "map", "wasm",
    "png", "jpg", "jpeg", "gif", "webp", "avif", "svg", "ico", "bmp",
    "woff", "woff2", "ttf", "otf", "eot",
    "mp3", "mp4", "webm", "ogg", "wav", "flac",
    "pdf", "zip",
)

DEFAULT_STREAMING_MARKERS = (
    "/stream",
    "/live/",
    "/hls/",
    "/dash/",
    ".m3u8",
    ".mpd",
    "/videoplayback",
)

DEFAULT_IMAGE_MARKERS = ("/images/", "/img/", "/thumbnails/", "/avatars/")

DEFAULT_NO_CACHE_MARKERS = ("/login", "/logout", "/auth/", "/oauth/", "/session")


def _parse_list(raw: Optional[str], default: Tuple[str, ...] = ()) -> Tuple[str, ...]:
    if raw is None:
        return default
    return tuple(entry.strip() for entry in raw.split(",") if entry.strip())


def _parse_bool(raw: Optional[str], default: bool) -> bool:
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("true", "1")


def _parse_int(raw: Optional[str], default: int, name: str) -> int:
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _parse_optional(raw: Optional[str]) -> Optional[str]:
    if raw is None:
        return None
    raw = raw.strip()
    return raw or None


@dataclass(frozen=True)
class ProxyConfig:
    """Immutable proxy settings, built once per process and passed to every component."""

    auth_segment: Optional[str] = None
    default_scheme: str = "https"
    max_redirects: int = 3
    request_timeout_ms: int = 30000
    stream_timeout_ms: int = 300000
    user_agent: Optional[str] = None

    blocked_domains: Tuple[MatchRule, ...] = field(
        default_factory=lambda: parse_rules(DEFAULT_BLOCKED_DOMAINS)
    )
    allowed_domains: Tuple[MatchRule, ...] = ()
    blocked_paths: Tuple[str, ...] = DEFAULT_BLOCKED_PATHS
    blocked_client_ips: Tuple[MatchRule, ...] = ()
    allowed_client_ips: Tuple[MatchRule, ...] = ()
    client_ip_header: str = "cf-connecting-ip"

    static_cache_ttl: int = 2592000
    dynamic_cache_ttl: int = 300
    image_cache_ttl: int = 604800
    default_cache_ttl: int = 3600
    static_extensions: Tuple[str, ...] = DEFAULT_STATIC_EXTENSIONS
    streaming_markers: Tuple[str, ...] = DEFAULT_STREAMING_MARKERS
    image_markers: Tuple[str, ...] = DEFAULT_IMAGE_MARKERS
    no_cache_markers: Tuple[str, ...] = DEFAULT_NO_CACHE_MARKERS

    edge_cache_enabled: bool = False
    websocket_enabled: bool = True

    max_body_size: int = 0
    verbose_errors: bool = False
    timing_headers: bool = True
    proxy_identifier: str = "edge-proxy"
    expose_target_url: bool = True

    def __post_init__(self):
        # paths and markers are compared against lowercased request paths
        for name in ("blocked_paths", "streaming_markers", "image_markers", "no_cache_markers"):
            object.__setattr__(self, name, tuple(v.lower() for v in getattr(self, name)))
        object.__setattr__(
            self,
            "static_extensions",
            tuple(ext.lower().lstrip(".") for ext in self.static_extensions),
        )
        object.__setattr__(self, "client_ip_header", self.client_ip_header.strip().lower())

    def validate(self) -> "ProxyConfig":
        """Raise ValueError when a setting is out of range; returns self for chaining."""
        if self.default_scheme not in ("http", "https"):
            raise ValueError(f"Default scheme must be http or https: {self.default_scheme}")
        if self.max_redirects < 0:
            raise ValueError(f"Max redirects must not be negative: {self.max_redirects}")
        if self.request_timeout_ms <= 0:
            raise ValueError(f"Request timeout must be positive: {self.request_timeout_ms}")
        if self.stream_timeout_ms < self.request_timeout_ms:
            raise ValueError(
                f"Stream timeout ({self.stream_timeout_ms}ms) must not be shorter than "
                f"request timeout ({self.request_timeout_ms}ms)"
            )
        for name in (
            "static_cache_ttl",
            "dynamic_cache_ttl",
            "image_cache_ttl",
            "default_cache_ttl",
            "max_body_size",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative: {getattr(self, name)}")
        if self.auth_segment and "/" in self.auth_segment:
            raise ValueError("Auth segment must be a single path segment")
        return self

    def with_overrides(self, **changes) -> "ProxyConfig":
        return replace(self, **changes).validate()

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ProxyConfig":
        env = os.environ if environ is None else environ
        defaults = cls()
        config = cls(
            auth_segment=_parse_optional(env.get("PROXY_AUTH_SEGMENT")),
            default_scheme=env.get("PROXY_DEFAULT_SCHEME", defaults.default_scheme)
            .strip()
            .lower(),
            max_redirects=_parse_int(
                env.get("PROXY_MAX_REDIRECTS"), defaults.max_redirects, "PROXY_MAX_REDIRECTS"
            ),
            request_timeout_ms=_parse_int(
                env.get("PROXY_REQUEST_TIMEOUT_MS"),
                defaults.request_timeout_ms,
                "PROXY_REQUEST_TIMEOUT_MS",
            ),
            stream_timeout_ms=_parse_int(
                env.get("PROXY_STREAM_TIMEOUT_MS"),
                defaults.stream_timeout_ms,
                "PROXY_STREAM_TIMEOUT_MS",
            ),
            user_agent=_parse_optional(env.get("PROXY_USER_AGENT")),
            blocked_domains=parse_rules(
                _parse_list(env.get("PROXY_BLOCKED_DOMAINS"), DEFAULT_BLOCKED_DOMAINS)
            ),
            allowed_domains=parse_rules(
                _parse_list(env.get("PROXY_ALLOWED_DOMAINS")), allow_substring=False
            ),
            blocked_paths=_parse_list(env.get("PROXY_BLOCKED_PATHS"), DEFAULT_BLOCKED_PATHS),
            blocked_client_ips=parse_rules(_parse_list(env.get("PROXY_BLOCKED_CLIENT_IPS"))),
            allowed_client_ips=parse_rules(
                _parse_list(env.get("PROXY_ALLOWED_CLIENT_IPS")), allow_substring=False
            ),
            client_ip_header=env.get("PROXY_CLIENT_IP_HEADER", defaults.client_ip_header),
            static_cache_ttl=_parse_int(
                env.get("PROXY_STATIC_CACHE_TTL"),
                defaults.static_cache_ttl,
                "PROXY_STATIC_CACHE_TTL",
            ),
            dynamic_cache_ttl=_parse_int(
                env.get("PROXY_DYNAMIC_CACHE_TTL"),
                defaults.dynamic_cache_ttl,
                "PROXY_DYNAMIC_CACHE_TTL",
            ),
            image_cache_ttl=_parse_int(
                env.get("PROXY_IMAGE_CACHE_TTL"),
                defaults.image_cache_ttl,
                "PROXY_IMAGE_CACHE_TTL",
            ),
            default_cache_ttl=_parse_int(
                env.get("PROXY_DEFAULT_CACHE_TTL"),
                defaults.default_cache_ttl,
                "PROXY_DEFAULT_CACHE_TTL",
            ),
            static_extensions=_parse_list(
                env.get("PROXY_STATIC_EXTENSIONS"), DEFAULT_STATIC_EXTENSIONS
            ),
            streaming_markers=_parse_list(
                env.get("PROXY_STREAMING_MARKERS"), DEFAULT_STREAMING_MARKERS
            ),
            image_markers=_parse_list(env.get("PROXY_IMAGE_MARKERS"), DEFAULT_IMAGE_MARKERS),
            no_cache_markers=_parse_list(
                env.get("PROXY_NO_CACHE_MARKERS"), DEFAULT_NO_CACHE_MARKERS
            ),
            edge_cache_enabled=_parse_bool(
                env.get("PROXY_EDGE_CACHE_ENABLED"), defaults.edge_cache_enabled
            ),
            websocket_enabled=_parse_bool(
                env.get("PROXY_WEBSOCKET_ENABLED"), defaults.websocket_enabled
            ),
            max_body_size=_parse_int(
                env.get("PROXY_MAX_BODY_SIZE"), defaults.max_body_size, "PROXY_MAX_BODY_SIZE"
            ),
            verbose_errors=_parse_bool(
                env.get("PROXY_VERBOSE_ERRORS"), defaults.verbose_errors
            ),
            timing_headers=_parse_bool(
                env.get("PROXY_TIMING_HEADERS"), defaults.timing_headers
            ),
            proxy_identifier=env.get("PROXY_IDENTIFIER", defaults.proxy_identifier).strip()
            or defaults.proxy_identifier,
            expose_target_url=_parse_bool(
                env.get("PROXY_EXPOSE_TARGET_URL"), defaults.expose_target_url
            ),
        )
        return config.validate()
