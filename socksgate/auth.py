"""
Authentication providers for Socksgate.

Each provider owns one SOCKS5 authentication method and runs its
subnegotiation directly on the client connection.
"""

import hmac
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, Mapping, Optional

from .listener import Connection


class AuthMethod(IntEnum):
    """SOCKS5 authentication methods (RFC 1928)."""

    NO_AUTH = 0x00
    GSSAPI = 0x01
    USERNAME_PASSWORD = 0x02
    NO_ACCEPTABLE = 0xFF


USERPASS_VERSION = 0x01
USERPASS_SUCCESS = 0x00
USERPASS_FAILURE = 0x01


class AuthenticationError(Exception):
    """The client failed authentication."""


@dataclass
class AuthContext:
    """Result of a successful authentication."""

    method: AuthMethod
    payload: Dict[str, str] = field(default_factory=dict)

    @property
    def username(self) -> Optional[str]:
        return self.payload.get("username")


class StaticCredentials:
    """A fixed username -> password mapping."""

    def __init__(self, credentials: Mapping[str, str]):
        self._credentials = dict(credentials)

    def valid(self, username: str, password: str) -> bool:
        expected = self._credentials.get(username)
        if expected is None:
            return False
        return hmac.compare_digest(expected.encode("utf-8"), password.encode("utf-8"))


class AuthProvider(ABC):
    """Base class for authentication providers."""

    @abstractmethod
    async def authenticate(self, conn: Connection) -> AuthContext:
        """Run the method's subnegotiation on ``conn``.

        Called after the server has announced this provider's method.

        Raises:
            AuthenticationError: the client could not be authenticated
        """
        pass

    @property
    @abstractmethod
    def method(self) -> AuthMethod:
        """Return the SOCKS5 authentication method code."""
        pass


class NoAuthProvider(AuthProvider):
    """No authentication provider."""

    async def authenticate(self, conn: Connection) -> AuthContext:
        return AuthContext(AuthMethod.NO_AUTH)

    @property
    def method(self) -> AuthMethod:
        return AuthMethod.NO_AUTH


class UsernamePasswordProvider(AuthProvider):
    """Username/password authentication provider (RFC 1929)."""

    def __init__(self, credentials: StaticCredentials):
        self.credentials = credentials

    async def authenticate(self, conn: Connection) -> AuthContext:
        version = (await conn.readexactly(1))[0]
        if version != USERPASS_VERSION:
            raise AuthenticationError(f"unsupported auth version {version}")

        ulen = (await conn.readexactly(1))[0]
        username = (await conn.readexactly(ulen)).decode("utf-8", "replace")
        plen = (await conn.readexactly(1))[0]
        password = (await conn.readexactly(plen)).decode("utf-8", "replace")

        if not self.credentials.valid(username, password):
            await conn.write(bytes([USERPASS_VERSION, USERPASS_FAILURE]))
            raise AuthenticationError(f"invalid credentials for user {username!r}")

        await conn.write(bytes([USERPASS_VERSION, USERPASS_SUCCESS]))
        return AuthContext(AuthMethod.USERNAME_PASSWORD, {"username": username})

    @property
    def method(self) -> AuthMethod:
        return AuthMethod.USERNAME_PASSWORD
