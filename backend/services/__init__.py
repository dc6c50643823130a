# services/__init__.py
# ============================================================================
# CAYMAN <-> MINDBODY BRIDGE - EXTERNAL SERVICE ADAPTERS
# ============================================================================
# Mindbody (downstream sales) and Cayman Gateway (hosted payments)
# ============================================================================

from services.mindbody_client import (
    DownstreamError,
    IDownstreamClient,
    MindbodyClient,
    MindbodyConfig,
)

from services.cayman_client import (
    CaymanClient,
    GatewayError,
    IGatewayClient,
    is_ok,
)

__all__ = [
    # Mindbody
    "DownstreamError",
    "IDownstreamClient",
    "MindbodyClient",
    "MindbodyConfig",
    # Cayman
    "CaymanClient",
    "GatewayError",
    "IGatewayClient",
    "is_ok",
]
