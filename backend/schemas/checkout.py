# schemas/checkout.py
# ============================================================================
# CAYMAN <-> MINDBODY BRIDGE - CHECKOUT SCHEMAS
# ============================================================================
# Typed models for checkout sessions, gateway notifications, fulfillment
# results, Mindbody carts and Cayman hosted payments. Untyped payloads are
# converted into these models at the HTTP boundary.
# ============================================================================

import uuid
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel


TWO_PLACES = Decimal("0.01")


def quantize_money(value: Union[Decimal, float, int, str]) -> Decimal:
    """Round a monetary amount to 2 decimal places (half up)."""
    return Decimal(str(value)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base model: snake_case in Python, camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class SessionStatus(str, Enum):
    CREATED = "created"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.PAID, SessionStatus.FAILED)

    def can_transition_to(self, new: "SessionStatus") -> bool:
        return new in _ALLOWED_TRANSITIONS[self]


_ALLOWED_TRANSITIONS = {
    SessionStatus.CREATED: {SessionStatus.PROCESSING, SessionStatus.FAILED},
    SessionStatus.PROCESSING: {SessionStatus.PAID, SessionStatus.FAILED},
    SessionStatus.PAID: set(),
    SessionStatus.FAILED: set(),
}


class NotificationStatus(str, Enum):
    IGNORED = "ignored"
    MISSING_SESSION = "missing_session"
    NO_SESSION = "no_session"
    FAILED = "failed"
    PAID = "paid"
    ALREADY_PAID = "already_paid"
    PROCESSING = "processing"
    DEDUPED = "deduped"


class ErrorCode(str, Enum):
    SIGNATURE_INVALID = "signature_invalid"
    MALFORMED_PAYLOAD = "malformed_payload"
    MISSING_SESSION = "missing_session"
    NO_SESSION = "no_session"
    DUPLICATE_EVENT = "duplicate_event"
    GATEWAY_REPORTED_FAILURE = "gateway_reported_failure"
    AMOUNT_MISMATCH = "amount_mismatch"
    DOWNSTREAM_RESOLUTION_FAILURE = "downstream_resolution_failure"
    DOWNSTREAM_SALE_FAILURE = "downstream_sale_failure"


# ============================================================================
# SECTION 2: SESSION
# ============================================================================

class SessionCustomer(CamelModel):
    email: str
    first_name: str
    last_name: str


class SessionLine(CamelModel):
    """One priced line of a checkout."""
    product_id: str
    name: str
    unit_price: Decimal = Field(ge=0)
    quantity: int = Field(default=1, ge=1, validation_alias=AliasChoices("quantity", "qty"))
    type: Optional[str] = None

    @field_validator("product_id", mode="before")
    @classmethod
    def _product_id_as_str(cls, v):
        return str(v).strip() if v is not None else v

    @property
    def extension(self) -> Decimal:
        return self.unit_price * self.quantity

    @field_serializer("unit_price")
    def _serialize_price(self, v: Decimal) -> float:
        return float(quantize_money(v))


def lines_total(lines: List[SessionLine]) -> Decimal:
    return quantize_money(sum((line.extension for line in lines), Decimal("0")))


class GatewayMeta(CamelModel):
    order_id: Optional[str] = None
    transaction_id: Optional[str] = None
    auth_code: Optional[str] = None
    last4: Optional[str] = None


class Session(CamelModel):
    """
    A single checkout attempt.

    `total` is computed from the lines when omitted and validated when given.
    Updates go through `model_copy`, which never re-runs validation, so the
    total is never recomputed after creation.
    """
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    site_key: Optional[str] = None
    status: SessionStatus = SessionStatus.CREATED
    customer: Optional[SessionCustomer] = None
    lines: List[SessionLine] = Field(min_length=1)
    total: Optional[Decimal] = None
    client_id: Optional[str] = None
    gateway_meta: GatewayMeta = Field(default_factory=GatewayMeta)
    in_store: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("client_id", mode="before")
    @classmethod
    def _client_id_as_str(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @model_validator(mode="after")
    def _check_invariants(self) -> "Session":
        expected = lines_total(self.lines)
        if self.total is None:
            self.total = expected
        elif quantize_money(self.total) != expected:
            raise ValueError(f"total {self.total} does not match line sum {expected}")
        else:
            self.total = expected

        if self.customer is None and not self.client_id:
            raise ValueError("customer is required unless clientId is known")
        return self

    @field_serializer("total")
    def _serialize_total(self, v: Optional[Decimal]) -> Optional[float]:
        return float(quantize_money(v)) if v is not None else None

    def to_public(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ============================================================================
# SECTION 3: NOTIFICATIONS & RESULTS
# ============================================================================

class NormalizedNotification(CamelModel):
    """Canonical view of a gateway notification, whatever shape it arrived in."""
    source: str = "webhook"
    session_id: Optional[str] = None
    event_id: Optional[str] = None
    transaction_id: Optional[str] = None
    auth_code: Optional[str] = None
    masked_pan: Optional[str] = None
    result_code: Optional[str] = None
    result_text: Optional[str] = None
    success_flag: Optional[bool] = None
    order_id: Optional[str] = None
    amount: Optional[Decimal] = None
    payload: Dict[str, Any] = Field(default_factory=dict, exclude=True)

    @property
    def missing_session(self) -> bool:
        return not self.session_id

    @property
    def last4(self) -> Optional[str]:
        if self.masked_pan and len(self.masked_pan) >= 4:
            return self.masked_pan[-4:]
        return None

    @property
    def idempotency_key(self) -> Optional[str]:
        key = self.event_id or self.transaction_id
        return f"cg:{key}" if key else None


class DownstreamDetail(CamelModel):
    status: Optional[int] = None
    status_text: Optional[str] = None
    data: Any = None


class NotificationResult(CamelModel):
    status: NotificationStatus
    session_id: Optional[str] = None
    detail: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    receipt_id: Optional[Union[int, str]] = None
    downstream: Optional[DownstreamDetail] = None

    def to_response(self, **extra) -> Dict[str, Any]:
        body = {"received": True}
        body.update(self.model_dump(mode="json", by_alias=True, exclude_none=True))
        body.update(extra)
        return body


# ============================================================================
# SECTION 4: MINDBODY CART
# ============================================================================

class CartItem(CamelModel):
    type: str = "Service"
    item_id: Union[int, str]
    quantity: int = 1
    price: Decimal
    description: Optional[str] = None


class CartCheckout(CamelModel):
    customer_id: str
    items: List[CartItem] = Field(min_length=1)
    total: Decimal
    reference: Optional[str] = None
    notes: Optional[str] = None
    in_store: bool = False


# ============================================================================
# SECTION 5: CAYMAN HOSTED PAYMENT
# ============================================================================

class HostedPaymentBilling(BaseModel):
    street1: str
    city: str
    country: str
    zip: str
    state: Optional[str] = None
    street2: Optional[str] = None
    phone: Optional[str] = None


class HostedPaymentRequest(BaseModel):
    amount: Decimal
    order_id: str
    session_id: str
    currency: str = "USD"
    customer: SessionCustomer
    notification_url: str
    return_url: str
    cancel_url: Optional[str] = None
    billing: Optional[HostedPaymentBilling] = None
    receipt_text: Optional[str] = None
    site_key: Optional[str] = None


class HostedPaymentResult(BaseModel):
    ok: bool
    redirect_url: Optional[str] = None
    raw: Any = None


# ============================================================================
# SECTION 6: CHECKOUT API
# ============================================================================

class CheckoutCustomer(CamelModel):
    """Customer block of a checkout request; address fields feed billing."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    email: str = Field(pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    address: Optional[Dict[str, Any]] = None

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_email(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("first_name", "last_name", mode="before")
    @classmethod
    def _strip(cls, v):
        return v.strip() if isinstance(v, str) else v


class CheckoutRequest(CamelModel):
    site_key: str = Field(min_length=1)
    product_id: str = Field(min_length=1)
    qty: Optional[int] = Field(default=None, ge=1)
    customer: CheckoutCustomer

    @field_validator("site_key", "product_id", mode="before")
    @classmethod
    def _strip(cls, v):
        return v.strip() if isinstance(v, str) else v


class CheckoutSessionResponse(CamelModel):
    redirect_url: str
    session_id: str
