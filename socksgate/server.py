"""
SOCKS5 server implementation for Socksgate.

Implements the RFC 1928 handshake and CONNECT command, with RFC 1929
username/password authentication. The server is configured with a
ServerConfig and serves any Listener.
"""

import asyncio
import ipaddress
import logging
import socket
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import List, Optional, Set, Tuple

from .auth import AuthContext, AuthenticationError, AuthMethod, AuthProvider, NoAuthProvider
from .listener import Connection, DeadlineExceeded, Listener, ListenerClosed
from .rules import Command, DestinationRequest, PermitAll, RuleSet

SOCKS_VERSION = 0x05
BUFFER_SIZE = 32 * 1024


class AddressType(IntEnum):
    """SOCKS5 address types (RFC 1928)."""

    IPV4 = 0x01
    DOMAIN = 0x03
    IPV6 = 0x04


class Reply(IntEnum):
    """SOCKS5 reply codes (RFC 1928)."""

    SUCCEEDED = 0x00
    GENERAL_FAILURE = 0x01
    NOT_ALLOWED = 0x02
    NETWORK_UNREACHABLE = 0x03
    HOST_UNREACHABLE = 0x04
    CONNECTION_REFUSED = 0x05
    TTL_EXPIRED = 0x06
    COMMAND_NOT_SUPPORTED = 0x07
    ADDRESS_NOT_SUPPORTED = 0x08


class ConfigError(Exception):
    """The server configuration is unusable."""


class ProtocolError(Exception):
    """The client sent something that is not valid SOCKS5."""


@dataclass
class ServerConfig:
    """Configuration consumed by Socks5Server.

    Attributes:
        logger: Logger for server events
        auth_methods: Authentication providers, in order of preference.
            Empty means no authentication.
        rules: Destination rule set. None allows every destination.
        dial_timeout: Seconds to wait for the destination to accept
    """

    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("socksgate"))
    auth_methods: List[AuthProvider] = field(default_factory=list)
    rules: Optional[RuleSet] = None
    dial_timeout: float = 10.0


class Socks5Server:
    """SOCKS5 proxy server implementation."""

    def __init__(self, config: Optional[ServerConfig] = None):
        config = config or ServerConfig()
        for provider in config.auth_methods:
            if not isinstance(provider, AuthProvider):
                raise ConfigError(f"not an authentication provider: {provider!r}")
        if config.rules is not None and not callable(getattr(config.rules, "allow", None)):
            raise ConfigError(f"rule set has no allow method: {config.rules!r}")

        self.logger = config.logger
        self.auth_providers = list(config.auth_methods) or [NoAuthProvider()]
        self.rules = config.rules if config.rules is not None else PermitAll()
        self.dial_timeout = config.dial_timeout
        self._tasks: Set[asyncio.Task] = set()

    async def serve(self, listener: Listener) -> None:
        """Accept connections from ``listener`` until it is closed."""
        try:
            while True:
                try:
                    conn = await listener.accept()
                except ListenerClosed:
                    return
                except (ConnectionError, OSError) as e:
                    self.logger.warning("Failed to accept connection: %s", e)
                    continue

                task = asyncio.create_task(self.serve_conn(conn))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        finally:
            for task in list(self._tasks):
                task.cancel()
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)

    async def serve_conn(self, conn: Connection) -> None:
        """Handle one client connection and close it."""
        client = _host_port(conn.remote_addr)
        try:
            auth = await self._negotiate_auth(conn)
            if auth is None:
                return
            await self._handle_request(conn, client, auth)
        except DeadlineExceeded:
            self.logger.info("Connection from %s:%s reached its deadline", *client)
        except AuthenticationError as e:
            self.logger.warning("Authentication failed for %s:%s: %s", *client, e)
        except ProtocolError as e:
            self.logger.warning("Protocol error from %s:%s: %s", *client, e)
        except (asyncio.IncompleteReadError, ConnectionError) as e:
            self.logger.debug("Connection from %s:%s dropped: %s", *client, e)
        except Exception:
            self.logger.exception("Unexpected error serving %s:%s", *client)
        finally:
            await conn.close()

    async def _negotiate_auth(self, conn: Connection) -> Optional[AuthContext]:
        """Pick an authentication method and run it."""
        version, nmethods = struct.unpack("!BB", await conn.readexactly(2))
        if version != SOCKS_VERSION:
            raise ProtocolError(f"unsupported SOCKS version {version}")
        methods = await conn.readexactly(nmethods)

        # first method offered by the client that we support
        provider = None
        for method in methods:
            provider = next((p for p in self.auth_providers if p.method == method), None)
            if provider is not None:
                break

        if provider is None:
            await conn.write(struct.pack("!BB", SOCKS_VERSION, AuthMethod.NO_ACCEPTABLE))
            self.logger.warning(
                "No acceptable authentication method from %s:%s",
                *_host_port(conn.remote_addr),
            )
            return None

        await conn.write(struct.pack("!BB", SOCKS_VERSION, provider.method))
        return await provider.authenticate(conn)

    async def _handle_request(
        self, conn: Connection, client: Tuple[str, int], auth: AuthContext
    ) -> None:
        version, cmd, _, atyp = struct.unpack("!BBBB", await conn.readexactly(4))
        if version != SOCKS_VERSION:
            raise ProtocolError(f"unsupported SOCKS version {version}")

        try:
            dest_host, dest_port = await self._read_address(conn, atyp)
        except ValueError as e:
            await self._send_reply(conn, Reply.ADDRESS_NOT_SUPPORTED)
            raise ProtocolError(str(e)) from e

        try:
            command = Command(cmd)
        except ValueError:
            await self._send_reply(conn, Reply.COMMAND_NOT_SUPPORTED)
            raise ProtocolError(f"unknown command {cmd}")

        request = DestinationRequest(
            host=dest_host,
            port=dest_port,
            command=command,
            client=client,
            username=auth.username,
        )
        if not self.rules.allow(request):
            self.logger.info(
                "Denied %s from %s:%s to %s:%s",
                command.name, *client, dest_host, dest_port,
            )
            await self._send_reply(conn, Reply.NOT_ALLOWED)
            return

        if command is not Command.CONNECT:
            await self._send_reply(conn, Reply.COMMAND_NOT_SUPPORTED)
            self.logger.info("Unsupported command %s from %s:%s", command.name, *client)
            return

        await self._handle_connect(conn, request)

    async def _handle_connect(self, conn: Connection, request: DestinationRequest) -> None:
        remaining = conn.time_remaining()
        if remaining is None:
            timeout = self.dial_timeout
        else:
            timeout = min(self.dial_timeout, remaining)
        try:
            dest_reader, dest_writer = await asyncio.wait_for(
                asyncio.open_connection(request.host, request.port), timeout=timeout
            )
        except asyncio.TimeoutError:
            if remaining is not None and remaining <= self.dial_timeout:
                raise DeadlineExceeded(f"deadline exceeded for {conn.remote_addr}")
            await self._send_reply(conn, Reply.TTL_EXPIRED)
            self.logger.info("Timed out dialing %s:%s", request.host, request.port)
            return
        except ConnectionRefusedError:
            await self._send_reply(conn, Reply.CONNECTION_REFUSED)
            self.logger.info("Connection refused by %s:%s", request.host, request.port)
            return
        except OSError as e:
            await self._send_reply(conn, Reply.HOST_UNREACHABLE)
            self.logger.info("Failed to dial %s:%s: %s", request.host, request.port, e)
            return

        try:
            bound_host, bound_port = _host_port(dest_writer.get_extra_info("sockname"))
            await self._send_reply(conn, Reply.SUCCEEDED, bound_host, bound_port)
            self.logger.info(
                "Proxying %s:%s -> %s:%s",
                *request.client, request.host, request.port,
            )
            await self._proxy_data(conn, dest_reader, dest_writer)
        finally:
            dest_writer.close()
            try:
                await dest_writer.wait_closed()
            except (ConnectionError, OSError) as e:
                self.logger.debug("Error closing %s:%s: %s", request.host, request.port, e)

    async def _read_address(self, conn: Connection, atyp: int) -> Tuple[str, int]:
        """Read a destination address and port.

        Raises:
            ValueError: the address type is not supported
        """
        if atyp == AddressType.IPV4:
            addr = socket.inet_ntoa(await conn.readexactly(4))
        elif atyp == AddressType.IPV6:
            addr = socket.inet_ntop(socket.AF_INET6, await conn.readexactly(16))
        elif atyp == AddressType.DOMAIN:
            addr_len = (await conn.readexactly(1))[0]
            addr = (await conn.readexactly(addr_len)).decode("utf-8", "replace")
        else:
            raise ValueError(f"unsupported address type {atyp}")

        port = struct.unpack("!H", await conn.readexactly(2))[0]
        return addr, port

    async def _send_reply(
        self,
        conn: Connection,
        rep: Reply,
        bound_addr: str = "0.0.0.0",
        bound_port: int = 0,
    ) -> None:
        try:
            ip = ipaddress.ip_address(bound_addr)
            if ip.version == 6:
                atyp = AddressType.IPV6
            else:
                atyp = AddressType.IPV4
            addr_bytes = ip.packed
        except ValueError:
            atyp = AddressType.DOMAIN
            encoded = bound_addr.encode("utf-8")
            addr_bytes = bytes([len(encoded)]) + encoded

        reply = struct.pack("!BBBB", SOCKS_VERSION, rep, 0, atyp)
        await conn.write(reply + addr_bytes + struct.pack("!H", bound_port))

    async def _proxy_data(
        self,
        conn: Connection,
        dest_reader: asyncio.StreamReader,
        dest_writer: asyncio.StreamWriter,
    ) -> None:
        """Relay data between the client and the destination.

        Bounded by the client connection's deadline, if it has one.
        """
        tasks = [
            asyncio.create_task(self._copy_to_dest(conn, dest_writer)),
            asyncio.create_task(self._copy_to_client(dest_reader, conn)),
        ]
        try:
            done, pending = await asyncio.wait(
                tasks,
                timeout=conn.time_remaining(),
                return_when=asyncio.FIRST_EXCEPTION,
            )
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        for task in done:
            exc = task.exception()
            if exc is not None:
                raise exc
        if pending:
            raise DeadlineExceeded(f"deadline exceeded for {conn.remote_addr}")

    async def _copy_to_dest(self, conn: Connection, dest_writer: asyncio.StreamWriter) -> None:
        while True:
            data = await conn.read(BUFFER_SIZE)
            if not data:
                break
            dest_writer.write(data)
            await dest_writer.drain()
        # client finished sending; half-close so the destination sees EOF
        if dest_writer.can_write_eof():
            dest_writer.write_eof()

    async def _copy_to_client(self, dest_reader: asyncio.StreamReader, conn: Connection) -> None:
        while True:
            data = await dest_reader.read(BUFFER_SIZE)
            if not data:
                break
            await conn.write(data)
        if conn.writer.can_write_eof():
            conn.writer.write_eof()


def _host_port(addr) -> Tuple[str, int]:
    if addr:
        return addr[0], addr[1]
    return "unknown", 0
