"""
Pattern rules for the domain and client-IP allow/block lists.

Every list entry carries its own strictness:

- ``=host``      exact match only
- ``host``       dotted-suffix match (``host`` itself or ``*.host``); default
- ``*.host``     same as ``host``
- ``~token``     raw substring containment. This is the most aggressive mode
                 and over-matches: ``~gov`` also blocks ``governance.example.com``.
- ``10.0.0.0/8`` network membership (only meaningful for IP addresses)

Matching is case-insensitive.
"""

import ipaddress
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Tuple

logger = logging.getLogger("uvicorn.error")


class MatchMode(str, Enum):
    EXACT = "exact"
    SUFFIX = "suffix"
    SUBSTRING = "substring"
    NETWORK = "network"


@dataclass(frozen=True)
class MatchRule:
    pattern: str
    mode: MatchMode = MatchMode.SUFFIX

    def matches(self, value: Optional[str]) -> bool:
        if not value:
            return False
        candidate = value.lower().rstrip(".")
        if self.mode is MatchMode.EXACT:
            return candidate == self.pattern
        if self.mode is MatchMode.SUFFIX:
            return candidate == self.pattern or candidate.endswith("." + self.pattern)
        if self.mode is MatchMode.SUBSTRING:
            return self.pattern in candidate
        try:
            address = ipaddress.ip_address(candidate.strip("[]"))
            return address in ipaddress.ip_network(self.pattern, strict=False)
        except ValueError:
            return False

    def __str__(self) -> str:
        prefix = {MatchMode.EXACT: "=", MatchMode.SUBSTRING: "~"}.get(self.mode, "")
        return f"{prefix}{self.pattern}"


def parse_rule(entry: str, allow_substring: bool = True) -> Optional[MatchRule]:
    """Parse one list entry into a MatchRule, or None for blank entries."""
    entry = entry.strip().lower()
    if not entry:
        return None
    if entry.startswith("="):
        return MatchRule(entry[1:].strip(), MatchMode.EXACT)
    if entry.startswith("~"):
        token = entry[1:].strip()
        if allow_substring:
            return MatchRule(token, MatchMode.SUBSTRING)
        logger.warning(
            f"[Config] Substring rule '{entry}' not permitted in an allow list, using suffix match"
        )
        return MatchRule(token.lstrip("."), MatchMode.SUFFIX)
    if "/" in entry:
        try:
            ipaddress.ip_network(entry, strict=False)
            return MatchRule(entry, MatchMode.NETWORK)
        except ValueError:
            logger.warning(f"[Config] Ignoring invalid network rule '{entry}'")
            return None
    if entry.startswith("*."):
        entry = entry[2:]
    return MatchRule(entry.lstrip("."), MatchMode.SUFFIX)


def parse_rules(entries: Iterable[str], allow_substring: bool = True) -> Tuple[MatchRule, ...]:
    rules = (parse_rule(entry, allow_substring) for entry in entries)
    return tuple(rule for rule in rules if rule is not None)


def first_match(rules: Iterable[MatchRule], value: Optional[str]) -> Optional[MatchRule]:
    for rule in rules:
        if rule.matches(value):
            return rule
    return None
