# storage/__init__.py
# ============================================================================
# CAYMAN <-> MINDBODY BRIDGE - STORAGE MODULE
# ============================================================================
# Checkout session store and event idempotency guard
# ============================================================================

from storage.session_store import (
    ISessionStore,
    InMemorySessionStore,
    InvalidTransitionError,
)
from storage.idempotency import IdempotencyGuard

__all__ = [
    "ISessionStore",
    "InMemorySessionStore",
    "InvalidTransitionError",
    "IdempotencyGuard",
]
