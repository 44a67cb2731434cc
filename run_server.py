#!/usr/bin/env python3
"""
Entrypoint script for running the Socksgate proxy.

Configured through PROXY_USER, PROXY_PASSWORD, PROXY_PORT, ALLOWED_DEST_FQDN,
CONNECTION_TIMEOUT, PROXY_BIND_ADDRESS and LOG_LEVEL.
"""

import asyncio
import logging
import os
import sys

from socksgate import ConfigError, ProxyConfig, run


def main():
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    if not isinstance(logging.getLevelName(level), int):
        level = "INFO"
    logging.basicConfig(
        stream=sys.stdout,
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger = logging.getLogger("socksgate")

    cfg = ProxyConfig.from_env()

    try:
        asyncio.run(run(cfg))
    except KeyboardInterrupt:
        logger.info("Shutting down proxy...")
    except ConfigError as e:
        logger.critical("Failed to create proxy server: %s", e)
        sys.exit(1)
    except OSError as e:
        logger.critical("Failed to listen on port %s: %s", cfg.port, e)
        sys.exit(1)


if __name__ == "__main__":
    main()
