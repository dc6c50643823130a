"""
Checkout Service
================
Starts hosted checkouts and reconciles the customer's return from Cayman.

create_session: price the Mindbody service, create a Session, ask Cayman for a
hosted payment page and persist the session only once a redirect URL exists.

handle_return: when the return URL carries a gateway outcome, run it through
the same idempotency guard and fulfillment pipeline as the webhook, then
report the session.
"""

import time
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional

import structlog
from pydantic import BaseModel

from config import Settings
from pipeline.fulfillment import FulfillmentOrchestrator
from pipeline.normalizer import clean_session_id, first_string, normalize_notification
from schemas.checkout import (
    CheckoutCustomer,
    CheckoutRequest,
    CheckoutSessionResponse,
    GatewayMeta,
    HostedPaymentBilling,
    HostedPaymentRequest,
    NormalizedNotification,
    NotificationResult,
    NotificationStatus,
    Session,
    SessionCustomer,
    SessionLine,
)
from services.cayman_client import GatewayError, IGatewayClient
from services.mindbody_client import DownstreamError, IDownstreamClient
from storage.idempotency import IdempotencyGuard
from storage.session_store import ISessionStore

logger = structlog.get_logger().bind(component="checkout")


class CheckoutError(Exception):
    """Checkout could not be started; carries the HTTP status and error code."""

    def __init__(self, error: str, status_code: int = 400, **detail):
        super().__init__(error)
        self.error = error
        self.status_code = status_code
        self.detail = detail

    def to_response(self) -> Dict[str, Any]:
        return {"error": self.error, **self.detail}


class ReturnOutcome(BaseModel):
    session: Session
    notification: Optional[NotificationResult] = None

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "status": self.session.status.value,
            "session": self.session.to_public(),
        }
        if self.notification is not None:
            body["notification"] = self.notification.model_dump(mode="json", by_alias=True, exclude_none=True)
        return body


def price_from_service(service: Mapping[str, Any]) -> Optional[Decimal]:
    """OnlinePrice first, then Price; None when neither is a finite number."""
    online = service.get("OnlinePrice")
    candidates = [online, service.get("Price"), service.get("price")]
    if isinstance(online, Mapping):
        candidates.append(online.get("Amount"))

    for candidate in candidates:
        if isinstance(candidate, bool) or candidate is None:
            continue
        if isinstance(candidate, (int, float, str)):
            try:
                price = Decimal(str(candidate).strip())
            except InvalidOperation:
                continue
            if price.is_finite() and price >= 0:
                return price
    return None


def build_billing(customer: CheckoutCustomer, defaults: Mapping[str, Any]) -> HostedPaymentBilling:
    """Billing address from the request's address block, customer fields, then defaults."""
    address = customer.address or {}
    extra = customer.model_extra or {}

    def pick(*values):
        for value in values:
            text = first_string(value)
            if text:
                return text
        return None

    billing = dict(defaults)
    overrides = {
        "street1": pick(address.get("street1"), extra.get("street1")),
        "city": pick(address.get("city"), extra.get("city")),
        "country": pick(address.get("country"), extra.get("country")),
        "zip": pick(address.get("zip"), address.get("postal"), extra.get("zip"), extra.get("postalCode")),
        "state": pick(address.get("state"), extra.get("state")),
        "street2": pick(
            address.get("street2"), address.get("address2"), extra.get("street2"), extra.get("address2")
        ),
        "phone": pick(address.get("phone"), extra.get("phone")),
    }
    if overrides["country"]:
        overrides["country"] = overrides["country"].upper()
    billing.update({k: v for k, v in overrides.items() if v})
    return HostedPaymentBilling(**billing)


def _has_gateway_outcome(notification: NormalizedNotification) -> bool:
    return any(
        value is not None
        for value in (
            notification.success_flag,
            notification.result_code,
            notification.result_text,
            notification.transaction_id,
        )
    )


class CheckoutService:
    """Checkout initiation and return reconciliation"""

    def __init__(
        self,
        store: ISessionStore,
        downstream: IDownstreamClient,
        gateway: IGatewayClient,
        orchestrator: FulfillmentOrchestrator,
        settings: Settings,
        guard: Optional[IdempotencyGuard] = None,
    ):
        self.store = store
        self.downstream = downstream
        self.gateway = gateway
        self.orchestrator = orchestrator
        self.settings = settings
        self.guard = guard if guard is not None else IdempotencyGuard(default_ttl=settings.IDEMPOTENCY_TTL_SECONDS)

    async def create_session(self, request: CheckoutRequest) -> CheckoutSessionResponse:
        try:
            service = await self.downstream.get_service_by_id(request.product_id)
        except DownstreamError as e:
            logger.error("service_lookup_failed", product_id=request.product_id, error=e.message)
            raise CheckoutError(
                "service_lookup_failed", 502, productId=request.product_id, detail=e.message
            ) from e

        if not service or service.get("Id") is None:
            raise CheckoutError("service_not_found", 400, productId=request.product_id)

        unit_price = price_from_service(service)
        if unit_price is None:
            raise CheckoutError("invalid_service_price", 402, productId=str(service["Id"]))

        customer = SessionCustomer(
            email=request.customer.email,
            first_name=request.customer.first_name,
            last_name=request.customer.last_name,
        )
        session = Session(
            site_key=request.site_key,
            customer=customer,
            lines=[
                SessionLine(
                    product_id=str(service["Id"]),
                    name=str(service.get("Name") or service.get("name") or "Service"),
                    unit_price=unit_price,
                    quantity=request.qty or 1,
                )
            ],
        )
        order_id = f"os_{int(time.time() * 1000)}_{session.id}"
        session = session.model_copy(update={"gateway_meta": GatewayMeta(order_id=order_id)})

        hosted_request = HostedPaymentRequest(
            amount=session.total,
            order_id=order_id,
            session_id=session.id,
            currency=self.settings.CAYMAN_DEFAULT_CURRENCY,
            customer=customer,
            notification_url=self.settings.absolute_url("/webhooks/cayman", sessionId=session.id),
            return_url=self.settings.absolute_url("/v1/checkout/return", sessionId=session.id),
            cancel_url=self.settings.absolute_url("/v1/checkout/return", sessionId=session.id, cancel=1),
            billing=build_billing(request.customer, self.settings.DEFAULT_BILLING),
            receipt_text=self.settings.CAYMAN_RECEIPT_TEXT,
            site_key=request.site_key,
        )

        try:
            hosted = await self.gateway.create_hosted_payment(hosted_request)
        except GatewayError as e:
            logger.error("gateway_session_failed", session_id=session.id, error=str(e))
            raise CheckoutError("gateway_session_failed", 402, sessionId=session.id, message=str(e)) from e

        if not hosted.ok or not hosted.redirect_url:
            logger.error("gateway_session_failed", session_id=session.id, response=hosted.raw)
            raise CheckoutError("gateway_session_failed", 402, sessionId=session.id, response=hosted.raw)

        await self.store.save(session)
        logger.info(
            "checkout_session_created",
            session_id=session.id,
            site_key=request.site_key,
            product_id=request.product_id,
            total=str(session.total),
        )
        return CheckoutSessionResponse(redirect_url=hosted.redirect_url, session_id=session.id)

    async def get_session(self, session_id: str) -> Optional[Session]:
        return await self.store.get(session_id)

    async def handle_return(
        self,
        session_id: Any,
        query: Mapping[str, Any],
        raw_query: Optional[str] = None,
    ) -> ReturnOutcome:
        cleaned = clean_session_id(session_id)
        if not cleaned:
            raise CheckoutError("invalid_session", 400, sessionId=first_string(session_id))

        session = await self.store.get(cleaned)
        if session is None:
            raise CheckoutError("session_not_found", 400, sessionId=cleaned)

        result = None
        notification = normalize_notification(query=query, raw_query=raw_query, source="return")
        if not session.status.is_terminal and _has_gateway_outcome(notification):
            try:
                key = notification.idempotency_key
                if key and not await self.guard.once(key):
                    logger.info("return_deduped", session_id=cleaned, event_id=notification.event_id)
                    result = NotificationResult(status=NotificationStatus.DEDUPED, session_id=cleaned)
                else:
                    result = await self.orchestrator.process(notification)
            except Exception as e:
                logger.exception("return_processing_failed", session_id=cleaned)
                result = NotificationResult(
                    status=NotificationStatus.FAILED,
                    session_id=cleaned,
                    detail=str(e) or "return_processing_failed",
                )

        refreshed = await self.store.get(cleaned) or session
        return ReturnOutcome(session=refreshed, notification=result)
