"""
Destination rule sets for Socksgate.

A rule set decides whether the proxy may open a connection to the destination
a client asked for. The engine consults it once per request, after
authentication and before dialing out.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Tuple, Union


class Command(IntEnum):
    """SOCKS5 commands (RFC 1928)."""

    CONNECT = 0x01
    BIND = 0x02
    UDP_ASSOCIATE = 0x03


@dataclass(frozen=True)
class DestinationRequest:
    """A destination requested by a client."""

    host: str
    port: int
    command: Command = Command.CONNECT
    client: Optional[Tuple[str, int]] = None
    username: Optional[str] = None


class RuleSet(ABC):
    """Base class for destination rule sets."""

    @abstractmethod
    def allow(self, request: DestinationRequest) -> bool:
        """Return True if the proxy may connect to the requested destination."""
        pass


class PermitAll(RuleSet):
    """Allows every destination."""

    def allow(self, request: DestinationRequest) -> bool:
        return True


@dataclass(frozen=True)
class ExactMatch:
    """Matches one host name, ignoring case."""

    host: str

    def matches(self, host: str) -> bool:
        return host.lower() == self.host


@dataclass(frozen=True)
class SuffixMatch:
    """Matches any host with at least one label in front of ``suffix``."""

    suffix: str

    def matches(self, host: str) -> bool:
        host = host.lower()
        tail = "." + self.suffix
        if not host.endswith(tail):
            return False
        prefix = host[: -len(tail)]
        return bool(prefix) and "" not in prefix.split(".")


@dataclass(frozen=True)
class MatchNothing:
    """Stands in for a pattern that could not be parsed."""

    pattern: str

    def matches(self, host: str) -> bool:
        return False


HostMatcher = Union[ExactMatch, SuffixMatch, MatchNothing]


def _valid_name(name: str) -> bool:
    if not name or "*" in name:
        return False
    if any(ch.isspace() for ch in name):
        return False
    return "" not in name.split(".")


def parse_pattern(pattern: str) -> HostMatcher:
    """Parse an allow-pattern into a host matcher.

    ``*.example.com`` matches every host below ``example.com`` (any depth) but
    not ``example.com`` itself. Any other pattern must equal the host exactly.
    Comparison is case-insensitive. Patterns that are neither form match
    nothing.
    """
    text = pattern.strip().lower()
    if text.startswith("*."):
        suffix = text[2:]
        if _valid_name(suffix):
            return SuffixMatch(suffix)
        return MatchNothing(pattern)
    if _valid_name(text):
        return ExactMatch(text)
    return MatchNothing(pattern)


class DestinationPolicy(RuleSet):
    """Allows only destinations whose host matches a single pattern.

    Only the host is checked; the port and command are ignored.
    """

    def __init__(self, pattern: str):
        self.pattern = pattern
        self.matcher = parse_pattern(pattern)

    def allow(self, request: DestinationRequest) -> bool:
        if not request.host:
            return False
        return self.matcher.matches(request.host)

    def __repr__(self) -> str:
        return f"DestinationPolicy({self.pattern!r})"
