"""
Mindbody Client - Downstream Adapter
====================================
Thin async adapter over the Mindbody Public API v6 used by fulfillment:
catalog lookup, client find-or-create and shopping-cart checkout.

Every failure surfaces as DownstreamError carrying the HTTP status, reason and
response body (or a snippet of it when Mindbody answers with HTML/XML).
Requests are bounded by a timeout and not retried, except once after an
expired staff user token is refreshed on HTTP 401.
"""

import asyncio
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx
import structlog
from pydantic import BaseModel

from config import Settings
from schemas.checkout import CartCheckout, DownstreamDetail, quantize_money

logger = structlog.get_logger().bind(component="mindbody_client")


class DownstreamError(Exception):
    """A Mindbody call failed or returned something unusable."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        status_text: Optional[str] = None,
        data: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.status = status
        self.status_text = status_text
        self.data = data

    def to_detail(self) -> DownstreamDetail:
        return DownstreamDetail(status=self.status, status_text=self.status_text, data=self.data)


# =============================================================================
# INTERFACE
# =============================================================================

class IDownstreamClient(ABC):
    """What fulfillment and checkout need from the business-management API"""

    @abstractmethod
    async def find_or_create_customer(self, email: str, first_name: str, last_name: str) -> str:
        pass

    @abstractmethod
    async def checkout_cart(self, cart: CartCheckout) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def get_service_by_id(self, service_id: str) -> Optional[Dict[str, Any]]:
        pass

    async def close(self):
        pass


# =============================================================================
# CONFIGURATION
# =============================================================================

class MindbodyConfig(BaseModel):
    base_url: str
    api_key: str = ""
    site_id: str = "-99"
    user_token: Optional[str] = None
    staff_username: Optional[str] = None
    staff_password: Optional[str] = None
    payment_method_id: Optional[int] = None
    checkout_test: bool = False
    timeout_seconds: float = 20.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "MindbodyConfig":
        return cls(
            base_url=settings.MINDBODY_BASE_URL,
            api_key=settings.MINDBODY_API_KEY,
            site_id=str(settings.MINDBODY_SITE_ID),
            user_token=settings.MINDBODY_USER_TOKEN,
            staff_username=settings.MINDBODY_STAFF_USERNAME,
            staff_password=settings.MINDBODY_STAFF_PASSWORD,
            payment_method_id=settings.MINDBODY_PAYMENT_METHOD_ID,
            checkout_test=settings.MINDBODY_CHECKOUT_TEST,
            timeout_seconds=settings.HTTP_TIMEOUT_SECONDS,
        )

    @property
    def can_refresh_token(self) -> bool:
        return bool(self.staff_username and self.staff_password)


def _extract_error_message(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    error = data.get("Error") or data.get("error")
    if isinstance(error, dict):
        message = error.get("Message") or error.get("message")
        if isinstance(message, str) and message.strip():
            return message.strip()
    return None


def _client_id(client: Optional[Dict[str, Any]]) -> Optional[str]:
    if not isinstance(client, dict):
        return None
    for key in ("Id", "ID", "UniqueId"):
        value = client.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


# =============================================================================
# CLIENT
# =============================================================================

class MindbodyClient(IDownstreamClient):
    """
    Async Mindbody adapter.

    Example:
        client = MindbodyClient(MindbodyConfig.from_settings(settings))
        customer_id = await client.find_or_create_customer("a@b.co", "Ada", "Lovelace")
    """

    def __init__(self, config: MindbodyConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._user_token = config.user_token
        self._token_lock = asyncio.Lock()

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.timeout_seconds,
                headers={
                    "Accept": "application/json",
                    "Content-Type": "application/json",
                    "Api-Key": self.config.api_key,
                    "SiteId": self.config.site_id,
                },
                transport=self._transport,
            )
        return self._client

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        content_type = response.headers.get("content-type", "").lower()
        text = response.text
        if "json" in content_type or text.lstrip().startswith(("{", "[")):
            try:
                return response.json()
            except ValueError:
                pass
        raise DownstreamError(
            "Mindbody API returned non-JSON response.",
            status=response.status_code,
            status_text=response.reason_phrase,
            data={"contentType": content_type or None, "snippet": text[:200]},
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        authenticated: bool = True,
        retry_on_401: bool = True,
    ) -> Any:
        if not path.startswith("/"):
            raise ValueError(f"Mindbody path must be absolute and start with '/': got {path!r}")
        if not self.config.base_url or not self.config.api_key or not self.config.site_id:
            raise DownstreamError(
                "Mindbody configuration incomplete: MINDBODY_BASE_URL, MINDBODY_API_KEY and MINDBODY_SITE_ID are required."
            )

        headers = {}
        token = self._user_token
        if authenticated and token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            response = await self._http().request(
                method,
                path,
                params={**(params or {}), "SiteId": self.config.site_id},
                json=json,
                headers=headers,
            )
        except httpx.TimeoutException as e:
            logger.error("mindbody_timeout", method=method, path=path)
            raise DownstreamError(f"Mindbody request timed out: {method} {path}") from e
        except httpx.HTTPError as e:
            logger.error("mindbody_transport_error", method=method, path=path, error=str(e))
            raise DownstreamError(f"Mindbody request failed: {e}") from e

        if (
            response.status_code == 401
            and authenticated
            and retry_on_401
            and self.config.can_refresh_token
        ):
            logger.info("mindbody_token_refresh", path=path)
            await self._refresh_user_token(stale=token)
            return await self._request(
                method, path, params=params, json=json, authenticated=True, retry_on_401=False
            )

        data = self._decode(response)
        if response.is_error:
            message = _extract_error_message(data) or f"Mindbody {method} {path} failed"
            raise DownstreamError(
                message,
                status=response.status_code,
                status_text=response.reason_phrase,
                data=data,
            )
        return data

    async def _refresh_user_token(self, stale: Optional[str]) -> str:
        async with self._token_lock:
            # another coroutine already refreshed it
            if self._user_token and self._user_token != stale:
                return self._user_token
            self._user_token = await self.issue_user_token()
            return self._user_token

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def issue_user_token(self) -> str:
        """Issue a staff user token from the configured staff credentials."""
        if not self.config.can_refresh_token:
            raise DownstreamError("Mindbody staff credentials are not configured.")

        data = await self._request(
            "POST",
            "/usertoken/issue",
            json={"Username": self.config.staff_username, "Password": self.config.staff_password},
            authenticated=False,
            retry_on_401=False,
        )
        token = data.get("AccessToken") if isinstance(data, dict) else None
        if not isinstance(token, str) or not token:
            raise DownstreamError("Mindbody did not return an access token.", data=data)
        return token

    async def list_services(self) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/sale/services")
        services = (data.get("Services") or data.get("services")) if isinstance(data, dict) else None
        return services if isinstance(services, list) else []

    async def get_service_by_id(self, service_id: str) -> Optional[Dict[str, Any]]:
        wanted = (service_id or "").strip()
        if not wanted:
            return None
        for service in await self.list_services():
            if str(service.get("Id", service.get("id"))) == wanted:
                return service
        return None

    async def find_client_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        if not email:
            return None
        data = await self._request("GET", "/client/clients", params={"SearchText": email})
        clients = (data.get("Clients") or data.get("clients")) if isinstance(data, dict) else None
        if not isinstance(clients, list) or not clients:
            return None
        for client in clients:
            if str(client.get("Email") or "").lower() == email.lower():
                return client
        return clients[0]

    async def add_client(self, email: str, first_name: str, last_name: str) -> Optional[Dict[str, Any]]:
        data = await self._request(
            "POST",
            "/client/addclient",
            json={"Client": {"Email": email, "FirstName": first_name, "LastName": last_name}},
        )
        if not isinstance(data, dict):
            return None
        client = data.get("Client")
        if client is None and isinstance(data.get("Clients"), list) and data["Clients"]:
            client = data["Clients"][0]
        return client

    async def find_or_create_customer(self, email: str, first_name: str, last_name: str) -> str:
        existing = await self.find_client_by_email(email)
        customer_id = _client_id(existing)
        if customer_id:
            return customer_id

        created = await self.add_client(email, first_name, last_name)
        customer_id = _client_id(created)
        if not customer_id:
            raise DownstreamError("Mindbody client missing", data=created)

        logger.info("mindbody_client_created", customer_id=customer_id)
        return customer_id

    async def checkout_cart(self, cart: CartCheckout) -> Dict[str, Any]:
        payment_method_id = self.config.payment_method_id
        if payment_method_id is None:
            raise DownstreamError("MINDBODY_PAYMENT_METHOD_ID is required")

        amount = quantize_money(cart.total)
        if amount <= Decimal("0"):
            raise DownstreamError("Invalid Mindbody checkout amount")

        items = []
        for item in cart.items:
            entry: Dict[str, Any] = {
                "Item": {"Type": item.type, "Id": item.item_id, "Metadata": {"id": str(item.item_id)}},
                "Quantity": item.quantity,
                "Amount": float(quantize_money(item.price)),
                "Price": float(quantize_money(item.price)),
            }
            if item.description:
                entry["Description"] = item.description
            items.append(entry)

        notes = (cart.notes or "").strip() or None
        reference = cart.reference or notes

        payment: Dict[str, Any] = {
            "Type": "Custom",
            "Amount": float(amount),
            "PaymentMethodId": payment_method_id,
            "CustomPaymentMethodId": payment_method_id,
            "Metadata": {"amount": f"{amount:.2f}", "id": str(payment_method_id)},
        }
        if notes:
            payment["Note"] = notes
        if reference:
            payment["Reference"] = reference

        body: Dict[str, Any] = {
            "ClientId": cart.customer_id,
            "Items": items,
            "Payments": [payment],
            "InStore": cart.in_store,
            "Test": self.config.checkout_test,
            "SendEmail": True,
        }
        if notes:
            body["Notes"] = notes[:255]
        if cart.reference:
            body["ExternalReferenceId"] = cart.reference

        data = await self._request("POST", "/sale/checkoutshoppingcart", json=body)
        return data if isinstance(data, dict) else {"response": data}
