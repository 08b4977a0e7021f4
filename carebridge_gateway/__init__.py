"""Carebridge Access Gateway — presigned create-only upload grants."""

from .app import create_gateway_app
from .config import GatewayConfig
from .gateway import AccessGateway

__all__ = [
    "AccessGateway",
    "GatewayConfig",
    "create_gateway_app",
]
