"""
Access policy evaluated before any upstream I/O, for the inbound target and
again for every redirect hop (stages 1-5).

Stages run in order and the first failure wins:

1. protocol          (400)  scheme must be http or https
2. domain block list (403)
3. domain allow list (403)  only when configured
4. dangerous path    (403)
5. private address   (403)  literal loopback/private/link-local hosts
6. client IP lists   (403)

The controller is a pure function of (target, client IP, config).
"""

import ipaddress
import logging
from dataclasses import dataclass
from typing import Optional, Union

from prometheus_client import Counter

from edge_proxy.config import ProxyConfig
from edge_proxy.proxy.errors import AccessDeniedError, ProtocolNotAllowedError
from edge_proxy.proxy.matching import first_match
from edge_proxy.proxy.target import UpstreamTarget

logger = logging.getLogger("uvicorn.error")

ACCESS_DENIED = Counter(
    "edge_proxy_access_denied_total",
    "Requests rejected by the access controller",
    ["stage"],
)

ALLOWED_SCHEMES = ("http", "https")


@dataclass(frozen=True)
class Allowed:
    allowed: bool = True

    def raise_for_denial(self) -> None:
        return None


@dataclass(frozen=True)
class Denied:
    reason: str
    status_code: int
    stage: str
    allowed: bool = False

    def raise_for_denial(self) -> None:
        if self.stage == "protocol":
            raise ProtocolNotAllowedError(self.reason, self.status_code)
        raise AccessDeniedError(self.reason, self.status_code)


AccessDecision = Union[Allowed, Denied]

ALLOWED = Allowed()


def _is_private_ipv4(address: ipaddress.IPv4Address) -> bool:
    first, second = address.packed[0], address.packed[1]
    if first in (0, 10, 127):
        return True
    if first == 169 and second == 254:
        return True
    if first == 172 and 16 <= second <= 31:
        return True
    return first == 192 and second == 168


_PRIVATE_IPV6_NETWORKS = (
    ipaddress.ip_network("fc00::/7"),
    ipaddress.ip_network("fe80::/10"),
)


def is_private_address(host: str) -> bool:
    """
    True when ``host`` is a literal IP in a loopback, private, link-local or
    unspecified range. Hostnames are never resolved here.
    """
    try:
        address = ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        return False
    if isinstance(address, ipaddress.IPv4Address):
        return _is_private_ipv4(address)
    if address.ipv4_mapped is not None:
        return _is_private_ipv4(address.ipv4_mapped)
    if address.is_loopback or address.is_unspecified:
        return True
    return any(address in network for network in _PRIVATE_IPV6_NETWORKS)


class AccessController:
    def __init__(self, config: ProxyConfig):
        self.config = config

    def evaluate(self, target: UpstreamTarget, client_ip: Optional[str] = None) -> AccessDecision:
        decision = self.evaluate_target(target)
        if not decision.allowed:
            return decision

        denial = self._check_client(client_ip)
        if denial is not None:
            return self._deny(denial, target)
        return ALLOWED

    def evaluate_target(self, target: UpstreamTarget) -> AccessDecision:
        """Target-only stages; also applied to every redirect hop."""
        for stage in (
            self._check_protocol,
            self._check_blocked_domain,
            self._check_allowed_domain,
            self._check_path,
            self._check_private_address,
        ):
            denial = stage(target)
            if denial is not None:
                return self._deny(denial, target)
        return ALLOWED

    def _deny(self, decision: Denied, target: UpstreamTarget) -> Denied:
        ACCESS_DENIED.labels(stage=decision.stage).inc()
        logger.warning(f"[Access] Denied {target.host} at {decision.stage}: {decision.reason}")
        return decision

    def _check_protocol(self, target: UpstreamTarget) -> Optional[Denied]:
        if target.scheme not in ALLOWED_SCHEMES:
            return Denied(
                f"Only HTTP and HTTPS protocols are supported, got '{target.scheme}:'",
                400,
                "protocol",
            )
        return None

    def _check_blocked_domain(self, target: UpstreamTarget) -> Optional[Denied]:
        rule = first_match(self.config.blocked_domains, target.host)
        if rule is not None:
            return Denied(f"Domain is blocked: {target.host}", 403, "blocked_domain")
        return None

    def _check_allowed_domain(self, target: UpstreamTarget) -> Optional[Denied]:
        if not self.config.allowed_domains:
            return None
        if first_match(self.config.allowed_domains, target.host) is None:
            return Denied(f"Domain not in allowed list: {target.host}", 403, "allowed_domain")
        return None

    def _check_path(self, target: UpstreamTarget) -> Optional[Denied]:
        path = target.path.lower()
        for marker in self.config.blocked_paths:
            if marker in path:
                return Denied("Path is blocked", 403, "blocked_path")
        return None

    def _check_private_address(self, target: UpstreamTarget) -> Optional[Denied]:
        if is_private_address(target.host):
            return Denied(
                f"Private or loopback address is not allowed: {target.host}",
                403,
                "private_address",
            )
        return None

    def _check_client(self, client_ip: Optional[str]) -> Optional[Denied]:
        if first_match(self.config.blocked_client_ips, client_ip) is not None:
            return Denied("Client address is blocked", 403, "blocked_client")
        if self.config.allowed_client_ips and (
            first_match(self.config.allowed_client_ips, client_ip) is None
        ):
            return Denied("Client address not in allowed list", 403, "allowed_client")
        return None
