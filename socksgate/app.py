"""
Wires a ProxyConfig into a running Socks5Server.
"""

import logging
from typing import List, Optional

from .auth import AuthProvider, StaticCredentials, UsernamePasswordProvider
from .config import ProxyConfig
from .listener import Listener, TCPListener, TimedListener
from .rules import DestinationPolicy
from .server import ServerConfig, Socks5Server

logger = logging.getLogger(__name__)


def build_server_config(
    cfg: ProxyConfig, logger: Optional[logging.Logger] = None
) -> ServerConfig:
    """Translate proxy settings into the server's configuration."""
    auth_methods: List[AuthProvider] = []
    if cfg.auth_enabled:
        creds = StaticCredentials({cfg.user: cfg.password})
        auth_methods.append(UsernamePasswordProvider(creds))

    rules = None
    if cfg.allowed_dest_pattern:
        rules = DestinationPolicy(cfg.allowed_dest_pattern)

    return ServerConfig(
        logger=logger or logging.getLogger("socksgate"),
        auth_methods=auth_methods,
        rules=rules,
    )


async def open_listener(cfg: ProxyConfig) -> Listener:
    """Bind the proxy's listening socket.

    The listener caps connection lifetime when a timeout is configured.
    """
    listener: Listener = await TCPListener.bind(cfg.bind_address or None, int(cfg.port))
    if cfg.connection_timeout > 0:
        listener = TimedListener(listener, cfg.connection_timeout)
    return listener


async def run(cfg: ProxyConfig) -> None:
    """Serve the proxy until the listener is closed or the task is cancelled."""
    server = Socks5Server(build_server_config(cfg, logger))

    logger.info("Start listening proxy service on port %s", cfg.port)
    listener = await open_listener(cfg)
    if cfg.auth_enabled:
        logger.info("Username/password authentication enabled")
    elif cfg.user or cfg.password:
        logger.warning("Only one of user/password is set, authentication disabled")
    if cfg.allowed_dest_pattern:
        logger.info("Allowed destinations: %s", cfg.allowed_dest_pattern)
    if cfg.connection_timeout > 0:
        logger.info("Connection timeout: %ss", cfg.connection_timeout)

    try:
        await server.serve(listener)
    finally:
        listener.close()
