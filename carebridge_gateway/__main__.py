"""Entry point for the access gateway."""

from __future__ import annotations

import asyncio

from carebridge_framework import setup_logging

from .config import GatewayConfig
from .gateway import AccessGateway


def main() -> None:
    setup_logging(service="access-gateway")
    gateway = AccessGateway(GatewayConfig())
    asyncio.run(gateway.run())


if __name__ == "__main__":
    main()
