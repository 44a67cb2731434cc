"""
Socksgate - a SOCKS5 proxy front-end with destination filtering.

Socksgate accepts SOCKS5 clients, optionally requires a single static
username/password pair, allows only destinations that match a configured
host pattern, and caps the total lifetime of every client connection.

Patterns are either an exact host name (``db.corp.internal``) or a leading
wildcard (``*.corp.internal``) covering every host below a domain. Matching
is case-insensitive and a malformed pattern allows nothing.
"""

from .app import build_server_config, open_listener, run
from .auth import (
    AuthContext,
    AuthenticationError,
    AuthMethod,
    AuthProvider,
    NoAuthProvider,
    StaticCredentials,
    UsernamePasswordProvider,
)
from .config import ProxyConfig, parse_duration
from .listener import (
    Connection,
    ConnectionClosedError,
    DeadlineExceeded,
    Listener,
    ListenerClosed,
    TCPListener,
    TimedListener,
)
from .rules import (
    Command,
    DestinationPolicy,
    DestinationRequest,
    ExactMatch,
    MatchNothing,
    PermitAll,
    RuleSet,
    SuffixMatch,
    parse_pattern,
)
from .server import ConfigError, ServerConfig, Socks5Server

__version__ = "0.1.0"
__all__ = [
    "AuthContext",
    "AuthenticationError",
    "AuthMethod",
    "AuthProvider",
    "Command",
    "ConfigError",
    "Connection",
    "ConnectionClosedError",
    "DeadlineExceeded",
    "DestinationPolicy",
    "DestinationRequest",
    "ExactMatch",
    "Listener",
    "ListenerClosed",
    "MatchNothing",
    "NoAuthProvider",
    "PermitAll",
    "ProxyConfig",
    "RuleSet",
    "ServerConfig",
    "Socks5Server",
    "StaticCredentials",
    "SuffixMatch",
    "TCPListener",
    "TimedListener",
    "UsernamePasswordProvider",
    "build_server_config",
    "open_listener",
    "parse_duration",
    "run",
]
