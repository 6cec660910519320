from dataclasses import dataclass
from typing import Optional

from edge_proxy.config import ProxyConfig
from edge_proxy.proxy.headers import HeaderMap

NO_STORE_DIRECTIVE = "no-store, no-cache, must-revalidate"

CACHEABLE_STATUSES = frozenset({200, 301, 302, 304})

MEDIA_TYPE_PREFIXES = ("image/", "font/", "audio/", "video/")


@dataclass(frozen=True)
class CachePolicy:
    cacheable: bool
    ttl_seconds: int
    tier: str
    directive: str

    @classmethod
    def not_cacheable(cls, directive: str = NO_STORE_DIRECTIVE) -> "CachePolicy":
        return cls(cacheable=False, ttl_seconds=0, tier="none", directive=directive)


def _matches_marker(path: str, markers) -> bool:
    return any(marker and marker in path for marker in markers)


def _extension(path: str) -> Optional[str]:
    last_segment = path.rsplit("/", 1)[-1]
    if "." not in last_segment:
        return None
    return last_segment.rsplit(".", 1)[-1].lower() or None


def is_streaming_path(path: str, config: ProxyConfig) -> bool:
    return _matches_marker(path.lower(), config.streaming_markers)


def _policy(tier: str, ttl: int, directive: str) -> CachePolicy:
    if ttl <= 0:
        return CachePolicy(cacheable=False, ttl_seconds=0, tier=tier, directive="no-cache")
    return CachePolicy(cacheable=True, ttl_seconds=ttl, tier=tier, directive=directive)


def classify(
    path: str, status_code: int, headers: HeaderMap, config: ProxyConfig
) -> CachePolicy:
    """
    Decide how long clients and edge caches may keep a proxied response.

    Streaming-class paths are never cached, whatever their extension, since a
    cached partial byte range would poison later range requests. Otherwise the
    first matching rule wins: no-cache marker, uncacheable status, origin
    ``no-store``/``private``, static extension, media content type, HTML, JSON,
    then the default tier.
    """
    lowered = path.lower()
    if is_streaming_path(lowered, config):
        return CachePolicy.not_cacheable()
    if _matches_marker(lowered, config.no_cache_markers):
        return CachePolicy.not_cacheable()
    if status_code not in CACHEABLE_STATUSES:
        return CachePolicy.not_cacheable("no-store")

    origin_directive = ", ".join(headers.get_all("cache-control"))
    lowered_directive = origin_directive.lower()
    if "no-store" in lowered_directive or "private" in lowered_directive:
        return CachePolicy.not_cacheable(origin_directive)

    extension = _extension(lowered)
    if extension and extension in config.static_extensions:
        ttl = config.static_cache_ttl
        return _policy("static", ttl, f"public, max-age={ttl}, immutable")

    content_type = (headers.get("content-type") or "").lower()
    if content_type.startswith(MEDIA_TYPE_PREFIXES) or _matches_marker(
        lowered, config.image_markers
    ):
        is_image = content_type.startswith("image/") or (
            not content_type.startswith(MEDIA_TYPE_PREFIXES)
        )
        ttl = config.image_cache_ttl if is_image else config.static_cache_ttl
        return _policy("media", ttl, f"public, max-age={ttl}")

    if "text/html" in content_type:
        ttl = config.dynamic_cache_ttl
        return _policy("html", ttl, f"public, max-age={ttl}, stale-while-revalidate={ttl}")

    if "application/json" in content_type:
        ttl = config.dynamic_cache_ttl
        return _policy("api", ttl, f"public, max-age={ttl}")

    ttl = config.default_cache_ttl
    return _policy("default", ttl, f"public, max-age={ttl}")
