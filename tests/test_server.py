"""
Tests for Socksgate server.
"""

import asyncio
import logging
import socket
import struct
import pytest
from socksgate import (
    ConfigError,
    ConnectionClosedError,
    DestinationPolicy,
    Listener,
    ListenerClosed,
    NoAuthProvider,
    PermitAll,
    ProxyConfig,
    ServerConfig,
    Socks5Server,
    StaticCredentials,
    TCPListener,
    TimedListener,
    build_server_config,
)


async def start_echo_server():
    async def echo(reader, writer):
        while True:
            data = await reader.read(1024)
            if not data:
                break
            writer.write(data)
            await writer.drain()
        writer.close()

    return await asyncio.start_server(echo, "127.0.0.1", 0)


async def start_proxy(config):
    listener = await TCPListener.bind("127.0.0.1", 0)
    server = Socks5Server(config)
    task = asyncio.create_task(server.serve(listener))
    return listener, task


async def stop_proxy(listener, task):
    listener.close()
    await asyncio.wait_for(task, timeout=5)


def connect_request(host, port):
    try:
        addr = socket.inet_aton(host)
        return struct.pack("!BBBB", 5, 1, 0, 1) + addr + struct.pack("!H", port)
    except OSError:
        encoded = host.encode()
        return (
            struct.pack("!BBBBB", 5, 1, 0, 3, len(encoded))
            + encoded
            + struct.pack("!H", port)
        )


async def read_reply(reader):
    ver, rep, _, atyp = struct.unpack("!BBBB", await reader.readexactly(4))
    assert ver == 5
    if atyp == 1:
        await reader.readexactly(4)
    elif atyp == 4:
        await reader.readexactly(16)
    else:
        await reader.readexactly((await reader.readexactly(1))[0])
    await reader.readexactly(2)
    return rep


async def open_client(listener, methods=b"\x00"):
    host, port = listener.addr[:2]
    reader, writer = await asyncio.open_connection(host, port)
    writer.write(bytes([5, len(methods)]) + methods)
    await writer.drain()
    return reader, writer


class TestSocks5Server:
    """Test cases for Socks5Server."""

    def test_server_creation(self):
        """Test server defaults to no authentication and no restrictions."""
        server = Socks5Server()
        assert [type(p) for p in server.auth_providers] == [NoAuthProvider]
        assert isinstance(server.rules, PermitAll)

    def test_invalid_config(self):
        """Test unusable configuration is rejected at construction."""
        with pytest.raises(ConfigError):
            Socks5Server(ServerConfig(auth_methods=["not a provider"]))
        with pytest.raises(ConfigError):
            Socks5Server(ServerConfig(rules=object()))

    def test_static_credentials(self):
        """Test username/password checking."""
        creds = StaticCredentials({"user": "pass"})
        assert creds.valid("user", "pass") is True
        assert creds.valid("user", "wrong") is False
        assert creds.valid("wrong", "pass") is False
        assert creds.valid("", "") is False

    @pytest.mark.asyncio
    async def test_connect_allowed(self):
        """Test a permitted CONNECT is relayed to the destination."""
        echo = await start_echo_server()
        echo_port = echo.sockets[0].getsockname()[1]
        listener, task = await start_proxy(
            ServerConfig(rules=DestinationPolicy("127.0.0.1"))
        )
        try:
            reader, writer = await open_client(listener)
            assert await reader.readexactly(2) == b"\x05\x00"
            writer.write(connect_request("127.0.0.1", echo_port))
            await writer.drain()
            assert await read_reply(reader) == 0x00

            writer.write(b"hello")
            await writer.drain()
            assert await reader.readexactly(5) == b"hello"
            writer.close()
        finally:
            await stop_proxy(listener, task)
            echo.close()

    @pytest.mark.asyncio
    async def test_connect_denied(self, caplog):
        """Test a destination outside the pattern gets 'not allowed'."""
        listener, task = await start_proxy(
            ServerConfig(rules=DestinationPolicy("*.corp.internal"))
        )
        try:
            with caplog.at_level(logging.INFO, logger="socksgate"):
                reader, writer = await open_client(listener)
                assert await reader.readexactly(2) == b"\x05\x00"
                writer.write(connect_request("corp.internal", 80))
                await writer.drain()
                assert await read_reply(reader) == 0x02
                assert await reader.read() == b""
            assert "Denied CONNECT" in caplog.text
            writer.close()
        finally:
            await stop_proxy(listener, task)

    @pytest.mark.asyncio
    async def test_bind_not_supported(self):
        """Test BIND is answered with 'command not supported'."""
        listener, task = await start_proxy(ServerConfig())
        try:
            reader, writer = await open_client(listener)
            assert await reader.readexactly(2) == b"\x05\x00"
            writer.write(struct.pack("!BBBB", 5, 2, 0, 1) + bytes(4) + b"\x00\x50")
            await writer.drain()
            assert await read_reply(reader) == 0x07
            writer.close()
        finally:
            await stop_proxy(listener, task)

    @pytest.mark.asyncio
    async def test_connection_refused(self):
        """Test dialing a closed port gets 'connection refused'."""
        probe = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
        closed_port = probe.sockets[0].getsockname()[1]
        probe.close()
        await probe.wait_closed()

        listener, task = await start_proxy(ServerConfig())
        try:
            reader, writer = await open_client(listener)
            assert await reader.readexactly(2) == b"\x05\x00"
            writer.write(connect_request("127.0.0.1", closed_port))
            await writer.drain()
            assert await read_reply(reader) == 0x05
            writer.close()
        finally:
            await stop_proxy(listener, task)

    @pytest.mark.asyncio
    async def test_username_password(self):
        """Test RFC 1929 authentication with good and bad credentials."""
        echo = await start_echo_server()
        echo_port = echo.sockets[0].getsockname()[1]
        config = build_server_config(ProxyConfig(user="user", password="pass"))
        listener, task = await start_proxy(config)
        try:
            # client only offers no-auth
            reader, writer = await open_client(listener)
            assert await reader.readexactly(2) == b"\x05\xff"
            writer.close()

            reader, writer = await open_client(listener, b"\x00\x02")
            assert await reader.readexactly(2) == b"\x05\x02"
            writer.write(b"\x01\x04user\x05wrong")
            await writer.drain()
            assert await reader.readexactly(2) == b"\x01\x01"
            assert await reader.read() == b""
            writer.close()

            reader, writer = await open_client(listener, b"\x02")
            assert await reader.readexactly(2) == b"\x05\x02"
            writer.write(b"\x01\x04user\x04pass")
            await writer.drain()
            assert await reader.readexactly(2) == b"\x01\x00"
            writer.write(connect_request("127.0.0.1", echo_port))
            await writer.drain()
            assert await read_reply(reader) == 0x00
            writer.write(b"ok")
            await writer.drain()
            assert await reader.readexactly(2) == b"ok"
            writer.close()
        finally:
            await stop_proxy(listener, task)
            echo.close()

    @pytest.mark.asyncio
    async def test_timed_connection_is_cut(self):
        """Test an active relay is closed once the connection deadline passes."""
        echo = await start_echo_server()
        echo_port = echo.sockets[0].getsockname()[1]
        inner = await TCPListener.bind("127.0.0.1", 0)
        listener = TimedListener(inner, 0.5)
        task = asyncio.create_task(Socks5Server().serve(listener))
        loop = asyncio.get_running_loop()
        try:
            start = loop.time()
            reader, writer = await open_client(listener)
            assert await reader.readexactly(2) == b"\x05\x00"
            writer.write(connect_request("127.0.0.1", echo_port))
            await writer.drain()
            assert await read_reply(reader) == 0x00

            with pytest.raises((asyncio.IncompleteReadError, ConnectionError)):
                while True:
                    writer.write(b"x")
                    await writer.drain()
                    await reader.readexactly(1)
                    await asyncio.sleep(0.05)
            assert loop.time() - start >= 0.45
            writer.close()
        finally:
            await stop_proxy(listener, task)
            echo.close()

    @pytest.mark.asyncio
    async def test_idle_relay_is_cut_at_deadline(self):
        """Test a silent relay is closed when the connection deadline passes."""
        echo = await start_echo_server()
        echo_port = echo.sockets[0].getsockname()[1]
        inner = await TCPListener.bind("127.0.0.1", 0)
        listener = TimedListener(inner, 0.4)
        task = asyncio.create_task(Socks5Server().serve(listener))
        loop = asyncio.get_running_loop()
        try:
            start = loop.time()
            reader, writer = await open_client(listener)
            assert await reader.readexactly(2) == b"\x05\x00"
            writer.write(connect_request("127.0.0.1", echo_port))
            await writer.drain()
            assert await read_reply(reader) == 0x00

            assert await asyncio.wait_for(reader.read(), timeout=5) == b""
            elapsed = loop.time() - start
            assert 0.35 <= elapsed < 2.0
            writer.close()
        finally:
            await stop_proxy(listener, task)
            echo.close()

    @pytest.mark.asyncio
    async def test_serve_survives_accept_errors(self, caplog):
        """Test a failed accept is logged and the loop keeps going."""

        class FlakyListener(Listener):
            def __init__(self):
                self.results = [
                    ConnectionClosedError("peer went away"),
                    OSError("too many open files"),
                    ListenerClosed("closed"),
                ]

            async def accept(self):
                raise self.results.pop(0)

            def close(self):
                pass

            @property
            def addr(self):
                return ("127.0.0.1", 0)

        listener = FlakyListener()
        with caplog.at_level(logging.WARNING, logger="socksgate"):
            await asyncio.wait_for(Socks5Server().serve(listener), timeout=5)
        assert listener.results == []
        assert caplog.text.count("Failed to accept connection") == 2

    @pytest.mark.asyncio
    async def test_bad_version_closes_connection(self):
        """Test a non-SOCKS5 greeting closes the connection."""
        listener, task = await start_proxy(ServerConfig())
        try:
            host, port = listener.addr[:2]
            reader, writer = await asyncio.open_connection(host, port)
            writer.write(b"\x04\x01")
            await writer.drain()
            assert await reader.read() == b""
            writer.close()
        finally:
            await stop_proxy(listener, task)
