"""
Cayman Client - Gateway Adapter
===============================
Creates hosted "three-step" payment sessions on Cayman Gateway and returns
the consumer redirect URL.

Credentials are resolved per tenant through CredentialProvider. Transport and
HTTP errors never raise: they come back as `HostedPaymentResult(ok=False)`
with the most useful parts of the gateway response in `raw`.
"""

import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx
import structlog

from config import ConfigurationError, CredentialProvider, GatewayCredentials
from schemas.checkout import (
    HostedPaymentBilling,
    HostedPaymentRequest,
    HostedPaymentResult,
    quantize_money,
)

logger = structlog.get_logger().bind(component="cayman_client")

_REDIRECT_KEYS = ("consumer-url", "consumerUrl", "redirect_url", "redirectUrl")


class GatewayError(Exception):
    """The hosted payment could not even be attempted (credentials, bad input)."""


def is_ok(data: Any) -> bool:
    """Cayman reports success with no code, `000`, `0` or any 2xx-style code."""
    if not isinstance(data, dict):
        return False

    code = data.get("result_code", data.get("resultCode", data.get("code")))
    code = "" if code is None else str(code).strip()
    if not code:
        return True
    return code in ("000", "0") or code.startswith("2")


def redirect_url_from(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    for key in _REDIRECT_KEYS:
        value = data.get(key)
        if isinstance(value, str) and value:
            return value
    return None


class IGatewayClient(ABC):
    """Hosted payment creation"""

    @abstractmethod
    async def create_hosted_payment(self, request: HostedPaymentRequest) -> HostedPaymentResult:
        pass

    async def close(self):
        pass


class CaymanClient(IGatewayClient):
    """
    Cayman three-step adapter.

    Example:
        client = CaymanClient(CredentialProvider(settings), default_billing=settings.DEFAULT_BILLING)
        result = await client.create_hosted_payment(request)
        if result.ok:
            redirect(result.redirect_url)
    """

    def __init__(
        self,
        credentials: CredentialProvider,
        default_billing: Optional[Dict[str, Any]] = None,
        timeout_seconds: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.credentials = credentials
        self.default_billing = dict(default_billing or {})
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _billing(self, request: HostedPaymentRequest) -> Dict[str, Any]:
        billing = dict(self.default_billing)
        if request.billing:
            billing.update(request.billing.model_dump(exclude_none=True))
        return HostedPaymentBilling(**billing).model_dump(exclude_none=True)

    def build_sale_payload(self, request: HostedPaymentRequest, api_key: str) -> Dict[str, Any]:
        billing = self._billing(request)
        sale: Dict[str, Any] = {
            "api-key": api_key,
            "notificationUrl": request.notification_url,
            "firstName": request.customer.first_name,
            "lastName": request.customer.last_name,
            "email": request.customer.email,
            "street1": billing["street1"],
            "city": billing["city"],
            "country": billing["country"],
            "zip": billing["zip"],
            "amount": float(quantize_money(request.amount)),
            "currency": request.currency,
            "returnUrl": request.return_url,
        }
        for key in ("state", "street2", "phone"):
            if billing.get(key):
                sale[key] = billing[key]
        if request.receipt_text:
            sale["receiptText"] = request.receipt_text
        if request.order_id:
            sale["invoiceno"] = request.order_id
        if request.session_id:
            sale["customfield-data"] = json.dumps({"sessionId": request.session_id}, separators=(",", ":"))
        return sale

    def _resolve_credentials(self, site_key: Optional[str]) -> GatewayCredentials:
        try:
            return self.credentials.gateway_credentials(site_key)
        except ConfigurationError as e:
            raise GatewayError(str(e)) from e

    async def create_hosted_payment(self, request: HostedPaymentRequest) -> HostedPaymentResult:
        creds = self._resolve_credentials(request.site_key)
        if not request.amount.is_finite():
            raise GatewayError("Invalid amount supplied for Cayman hosted payment")

        sale = self.build_sale_payload(request, creds.api_key)

        try:
            async with httpx.AsyncClient(
                base_url=creds.base_url,
                timeout=self.timeout_seconds,
                headers={"Content-Type": "application/json", "X-API-KEY": creds.api_key},
                auth=(creds.username, creds.password),
                transport=self._transport,
            ) as client:
                response = await client.post("/three-step", json={"sale": sale})
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            logger.warning(
                "cayman_http_error",
                session_id=request.session_id,
                status=e.response.status_code,
            )
            try:
                body = e.response.json()
            except ValueError:
                body = e.response.text[:200]
            return HostedPaymentResult(
                ok=False,
                raw={
                    "status": e.response.status_code,
                    "statusText": e.response.reason_phrase,
                    "data": body,
                },
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("cayman_request_failed", session_id=request.session_id, error=str(e))
            return HostedPaymentResult(ok=False, raw={"message": str(e) or "Unknown Cayman error"})

        ok = is_ok(data)
        redirect_url = redirect_url_from(data)
        logger.info(
            "cayman_hosted_payment",
            session_id=request.session_id,
            ok=ok,
            has_redirect=redirect_url is not None,
        )
        return HostedPaymentResult(ok=ok, redirect_url=redirect_url, raw=data)
