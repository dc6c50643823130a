# api/deps.py
# ============================================================================
# CAYMAN <-> MINDBODY BRIDGE - DEPENDENCY CONTAINER
# ============================================================================
# One container per app instance, stored on app.state. Every collaborator can
# be injected, which is how tests swap in fakes.
# ============================================================================

from typing import Optional

from fastapi import Request

from config import CredentialProvider, Settings
from pipeline.checkout import CheckoutService
from pipeline.fulfillment import FulfillmentOrchestrator, FulfillmentPolicy
from services.cayman_client import CaymanClient, IGatewayClient
from services.mindbody_client import IDownstreamClient, MindbodyClient, MindbodyConfig
from storage.idempotency import IdempotencyGuard
from storage.session_store import InMemorySessionStore, ISessionStore


class ServiceContainer:
    """Wires store, guard, adapters and pipelines together"""

    def __init__(
        self,
        settings: Settings,
        store: Optional[ISessionStore] = None,
        guard: Optional[IdempotencyGuard] = None,
        downstream: Optional[IDownstreamClient] = None,
        gateway: Optional[IGatewayClient] = None,
        credentials: Optional[CredentialProvider] = None,
        policy: Optional[FulfillmentPolicy] = None,
    ):
        self.settings = settings
        self.credentials = credentials or CredentialProvider(settings)
        self.store = store if store is not None else InMemorySessionStore()
        self.guard = guard if guard is not None else IdempotencyGuard(default_ttl=settings.IDEMPOTENCY_TTL_SECONDS)
        self.downstream = downstream or MindbodyClient(MindbodyConfig.from_settings(settings))
        self.gateway = gateway or CaymanClient(
            self.credentials,
            default_billing=settings.DEFAULT_BILLING,
            timeout_seconds=settings.HTTP_TIMEOUT_SECONDS,
        )
        self.orchestrator = FulfillmentOrchestrator(
            self.store,
            self.downstream,
            policy or FulfillmentPolicy.from_settings(settings),
        )
        self.checkout = CheckoutService(
            self.store, self.downstream, self.gateway, self.orchestrator, settings, guard=self.guard
        )

    async def close(self):
        await self.downstream.close()
        await self.gateway.close()


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services
