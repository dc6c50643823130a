"""
Fulfillment Orchestrator
========================
Turns a normalized gateway notification into exactly one Mindbody sale.

State machine (per session):

    created ──► processing ──► paid
       │             │
       └─────────────┴──────► failed

`paid` and `failed` are terminal; a re-delivered notification for a terminal
session is a no-op that reports the existing status. The `created→processing`
compare-and-set is the single mutual-exclusion point: only the caller that
wins it talks to Mindbody, and no lock is held across network calls.

Failures after `processing` are terminal and need manual reconciliation;
there is no automatic retry of the sale.
"""

import re
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel

from config import Settings
from schemas.checkout import (
    CartCheckout,
    CartItem,
    ErrorCode,
    NormalizedNotification,
    NotificationResult,
    NotificationStatus,
    Session,
    SessionStatus,
    quantize_money,
)
from services.mindbody_client import DownstreamError, IDownstreamClient
from storage.session_store import ISessionStore

logger = structlog.get_logger().bind(component="fulfillment")


SUCCESS_CODES = frozenset({"00", "0", "000", "100"})
SUCCESS_TEXTS = frozenset({"succeeded", "success", "approved", "1"})

ITEM_TYPES = {
    "product": "Product",
    "package": "PricingOption",
    "pricingoption": "PricingOption",
}

REFERENCE_MAX_LENGTH = 30
_REFERENCE_STRIP = re.compile(r"[^A-Za-z0-9_-]")

_STATUS_REPORT = {
    SessionStatus.PROCESSING: NotificationStatus.PROCESSING,
    SessionStatus.PAID: NotificationStatus.ALREADY_PAID,
    SessionStatus.FAILED: NotificationStatus.FAILED,
}


class FulfillmentPolicy(BaseModel):
    # Treat a notification carrying only a transaction id as successful
    lenient_success: bool = True
    strict_amount_match: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "FulfillmentPolicy":
        return cls(
            lenient_success=settings.LENIENT_SUCCESS,
            strict_amount_match=settings.STRICT_AMOUNT_MATCH,
        )


# =============================================================================
# PURE HELPERS
# =============================================================================

def determine_success(notification: NormalizedNotification, lenient: bool = True) -> bool:
    """Decide whether the gateway reported a successful payment."""
    if notification.success_flag is True:
        return True
    if notification.result_code in SUCCESS_CODES:
        return True
    if notification.result_text in SUCCESS_TEXTS:
        return True

    no_indicator = (
        notification.success_flag is None
        and not notification.result_code
        and not notification.result_text
    )
    return lenient and no_indicator and bool(notification.transaction_id)


def sanitize_reference(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    cleaned = _REFERENCE_STRIP.sub("", value.strip())[:REFERENCE_MAX_LENGTH]
    return cleaned or None


def resolve_item_type(line_type: Optional[str]) -> str:
    return ITEM_TYPES.get((line_type or "").strip().lower(), "Service")


def _item_id(product_id: str):
    return int(product_id) if product_id.isdigit() else product_id


def build_notes(notification: NormalizedNotification, order_id: Optional[str]) -> str:
    parts = ["Gateway=Cayman"]
    txn_id = sanitize_reference(notification.transaction_id)
    if txn_id:
        parts.append(f"TxnId={txn_id}")
    if notification.auth_code:
        parts.append(f"Auth={notification.auth_code}")
    if notification.last4:
        parts.append(f"Last4={notification.last4}")
    if notification.result_code:
        parts.append(f"ResultCode={notification.result_code}")
    if notification.result_text:
        parts.append(f"Result={notification.result_text}")
    order_ref = sanitize_reference(order_id)
    if order_ref:
        parts.append(f"OrderId={order_ref}")
    return " | ".join(parts)


def build_reference(notification: NormalizedNotification, session: Session) -> Optional[str]:
    for candidate in (
        notification.transaction_id,
        session.gateway_meta.order_id or notification.order_id,
        session.id,
    ):
        reference = sanitize_reference(candidate)
        if reference:
            return reference
    return None


def build_cart(session: Session, customer_id: str, notification: NormalizedNotification) -> CartCheckout:
    """Price the Mindbody cart exactly as the session was priced at creation."""
    items: List[CartItem] = [
        CartItem(
            type=resolve_item_type(line.type),
            item_id=_item_id(line.product_id),
            quantity=line.quantity,
            price=quantize_money(line.unit_price),
            description=line.name,
        )
        for line in session.lines
    ]
    order_id = session.gateway_meta.order_id or notification.order_id
    return CartCheckout(
        customer_id=customer_id,
        items=items,
        total=session.total,
        reference=build_reference(notification, session),
        notes=build_notes(notification, order_id),
        in_store=session.in_store,
    )


def receipt_id_from(receipt: Dict[str, Any]):
    for key in ("ReceiptId", "SaleId"):
        value = receipt.get(key)
        if isinstance(value, (int, str)) and not isinstance(value, bool):
            return value
    return None


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class FulfillmentOrchestrator:
    """
    Drives one notification through the session state machine.

    Example:
        orchestrator = FulfillmentOrchestrator(store, mindbody)
        result = await orchestrator.process(normalize_notification(body=payload))
    """

    def __init__(
        self,
        store: ISessionStore,
        downstream: IDownstreamClient,
        policy: Optional[FulfillmentPolicy] = None,
    ):
        self.store = store
        self.downstream = downstream
        self.policy = policy or FulfillmentPolicy()

    def _report(
        self,
        status: NotificationStatus,
        notification: NormalizedNotification,
        **fields,
    ) -> NotificationResult:
        result = NotificationResult(status=status, session_id=notification.session_id, **fields)
        if status != NotificationStatus.PAID:
            log = logger.warning if result.error_code else logger.info
            log(
                "notification_outcome",
                session_id=notification.session_id,
                event_id=notification.event_id,
                source=notification.source,
                status=status.value,
                error_code=result.error_code.value if result.error_code else None,
                detail=result.detail,
            )
        return result

    def _report_current(self, session: Optional[Session], notification: NormalizedNotification) -> NotificationResult:
        if session is None:
            return self._report(
                NotificationStatus.NO_SESSION, notification, error_code=ErrorCode.NO_SESSION
            )
        status = _STATUS_REPORT.get(session.status, NotificationStatus.PROCESSING)
        detail = "session already failed" if session.status == SessionStatus.FAILED else None
        return self._report(status, notification, detail=detail)

    async def _fail(
        self,
        session_id: str,
        expected: SessionStatus,
        notification: NormalizedNotification,
        error_code: ErrorCode,
        detail: str,
        **fields,
    ) -> NotificationResult:
        swapped, current = await self.store.compare_and_set_status(
            session_id, expected, SessionStatus.FAILED
        )
        if not swapped:
            return self._report_current(current, notification)
        return self._report(
            NotificationStatus.FAILED,
            notification,
            error_code=error_code,
            detail=detail,
            **fields,
        )

    async def process(self, notification: NormalizedNotification) -> NotificationResult:
        """Reconcile one notification. Never raises for gateway or Mindbody failures."""
        if notification.missing_session:
            if not determine_success(notification, lenient=self.policy.lenient_success):
                return self._report(
                    NotificationStatus.IGNORED,
                    notification,
                    detail="non-success notification without a session id",
                )
            return self._report(
                NotificationStatus.MISSING_SESSION,
                notification,
                error_code=ErrorCode.MISSING_SESSION,
                detail="notification did not carry a session id",
            )

        session_id = notification.session_id
        session = await self.store.get(session_id)
        if session is None or session.status != SessionStatus.CREATED:
            return self._report_current(session, notification)

        if not determine_success(notification, lenient=self.policy.lenient_success):
            return await self._fail(
                session_id,
                SessionStatus.CREATED,
                notification,
                ErrorCode.GATEWAY_REPORTED_FAILURE,
                f"gateway reported failure (result={notification.result_text or notification.result_code or 'unknown'})",
            )

        if (
            self.policy.strict_amount_match
            and notification.amount is not None
            and quantize_money(notification.amount) != session.total
        ):
            return await self._fail(
                session_id,
                SessionStatus.CREATED,
                notification,
                ErrorCode.AMOUNT_MISMATCH,
                f"amount {quantize_money(notification.amount)} does not match session total {session.total}",
            )

        swapped, session = await self.store.compare_and_set_status(
            session_id, SessionStatus.CREATED, SessionStatus.PROCESSING
        )
        if not swapped:
            return self._report_current(session, notification)

        # Only the winner of created->processing reaches this point
        customer_id = session.client_id
        if not customer_id:
            if session.customer is None:
                return await self._fail(
                    session_id,
                    SessionStatus.PROCESSING,
                    notification,
                    ErrorCode.DOWNSTREAM_RESOLUTION_FAILURE,
                    "session has neither a client id nor customer details",
                )
            try:
                customer_id = await self.downstream.find_or_create_customer(
                    session.customer.email,
                    session.customer.first_name,
                    session.customer.last_name,
                )
            except DownstreamError as e:
                return await self._fail(
                    session_id,
                    SessionStatus.PROCESSING,
                    notification,
                    ErrorCode.DOWNSTREAM_RESOLUTION_FAILURE,
                    f"Mindbody client resolution failed: {e.message}",
                    downstream=e.to_detail(),
                )
            except Exception as e:
                logger.exception("client_resolution_crashed", session_id=session_id)
                return await self._fail(
                    session_id,
                    SessionStatus.PROCESSING,
                    notification,
                    ErrorCode.DOWNSTREAM_RESOLUTION_FAILURE,
                    str(e) or "Mindbody client resolution failed",
                )
            session = await self.store.update(session_id, {"client_id": customer_id}) or session

        cart = build_cart(session, str(customer_id), notification)
        try:
            receipt = await self.downstream.checkout_cart(cart)
        except DownstreamError as e:
            status_suffix = f" (status {e.status})" if e.status else ""
            return await self._fail(
                session_id,
                SessionStatus.PROCESSING,
                notification,
                ErrorCode.DOWNSTREAM_SALE_FAILURE,
                f"Mindbody checkout failed{status_suffix}: {e.message}",
                downstream=e.to_detail(),
            )
        except Exception as e:
            logger.exception("checkout_crashed", session_id=session_id)
            return await self._fail(
                session_id,
                SessionStatus.PROCESSING,
                notification,
                ErrorCode.DOWNSTREAM_SALE_FAILURE,
                str(e) or "Mindbody fulfillment failed",
            )

        swapped, session = await self.store.compare_and_set_status(
            session_id,
            SessionStatus.PROCESSING,
            SessionStatus.PAID,
            patch={
                "gateway_meta": {
                    "transaction_id": sanitize_reference(notification.transaction_id)
                    or sanitize_reference(notification.order_id),
                    "auth_code": notification.auth_code,
                    "last4": notification.last4,
                }
            },
        )
        if not swapped:
            # Sale is posted but the session moved underneath us (stale recovery)
            logger.error(
                "paid_transition_lost",
                session_id=session_id,
                event_id=notification.event_id,
                current=session.status.value if session else None,
            )

        result = NotificationResult(
            status=NotificationStatus.PAID,
            session_id=session_id,
            receipt_id=receipt_id_from(receipt),
        )
        # The sale is posted; nothing past this point may change the outcome
        try:
            logger.info(
                "session_paid",
                session_id=session_id,
                event_id=notification.event_id,
                transaction_id=notification.transaction_id,
                receipt_id=result.receipt_id,
                total=str(cart.total),
            )
        except Exception as e:
            logger.warning("session_paid_log_failed", session_id=session_id, error=type(e).__name__)
        return result
