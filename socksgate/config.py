"""
Proxy configuration loaded from environment variables.
"""

import logging
import os
import re
from dataclasses import dataclass
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

ENV_USER = "PROXY_USER"
ENV_PASSWORD = "PROXY_PASSWORD"
ENV_PORT = "PROXY_PORT"
ENV_ALLOWED_DEST = "ALLOWED_DEST_FQDN"
ENV_TIMEOUT = "CONNECTION_TIMEOUT"
ENV_BIND_ADDRESS = "PROXY_BIND_ADDRESS"

DEFAULT_PORT = "1080"

_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,  # micro sign
    "μs": 1e-6,  # greek mu
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_TERM = re.compile(r"([0-9]+\.?[0-9]*|\.[0-9]+)(ns|us|µs|μs|ms|s|m|h)")


def parse_duration(text: str) -> float:
    """Parse a duration such as ``90s``, ``1m30s`` or ``1.5h`` into seconds.

    Accepts an optional sign followed by one or more number/unit terms. Valid
    units are ns, us (or µs), ms, s, m and h. A bare ``0`` is also accepted.

    Raises:
        ValueError: the text is not a valid duration
    """
    s = text.strip()
    sign = 1.0
    if s[:1] in ("+", "-"):
        if s[0] == "-":
            sign = -1.0
        s = s[1:]
    if s == "0":
        return 0.0
    if not s:
        raise ValueError(f"invalid duration {text!r}")

    total = 0.0
    pos = 0
    while pos < len(s):
        match = _TERM.match(s, pos)
        if match is None:
            raise ValueError(f"invalid duration {text!r}")
        number, unit = match.groups()
        total += float(number) * _UNITS[unit]
        pos = match.end()
    return sign * total


@dataclass(frozen=True)
class ProxyConfig:
    """Settings for one proxy process.

    Attributes:
        user: Username clients must present; empty disables authentication
        password: Password clients must present; empty disables authentication
        port: TCP port to listen on
        allowed_dest_pattern: Destination allow-pattern; empty allows everything
        connection_timeout: Maximum connection lifetime in seconds; zero or
            less disables the limit
        bind_address: Address to bind; empty binds every interface
    """

    user: str = ""
    password: str = ""
    port: str = DEFAULT_PORT
    allowed_dest_pattern: str = ""
    connection_timeout: float = 0.0
    bind_address: str = ""

    @property
    def auth_enabled(self) -> bool:
        # a half-configured pair means no authentication at all
        return bool(self.user) and bool(self.password)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ProxyConfig":
        """Load settings from the environment.

        Invalid values are logged and replaced by their defaults.
        """
        env = os.environ if environ is None else environ

        port = env.get(ENV_PORT, DEFAULT_PORT) or DEFAULT_PORT
        if not (port.isascii() and port.isdigit()) or not 0 < int(port) < 65536:
            logger.warning("Invalid %s %r, using %s", ENV_PORT, port, DEFAULT_PORT)
            port = DEFAULT_PORT

        timeout = 0.0
        raw_timeout = env.get(ENV_TIMEOUT, "")
        if raw_timeout:
            try:
                timeout = parse_duration(raw_timeout)
            except ValueError as e:
                logger.warning("Invalid %s: %s, connection timeout disabled", ENV_TIMEOUT, e)

        return cls(
            user=env.get(ENV_USER, ""),
            password=env.get(ENV_PASSWORD, ""),
            port=port,
            allowed_dest_pattern=env.get(ENV_ALLOWED_DEST, ""),
            connection_timeout=timeout,
            bind_address=env.get(ENV_BIND_ADDRESS, ""),
        )
