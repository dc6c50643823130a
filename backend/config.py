"""
Configuration - Settings and Tenant Credentials
================================================
Environment-driven settings for the Cayman <-> Mindbody bridge, plus the
synchronous credential provider used by the gateway adapter.

Tenant credentials live in a JSON file (TENANTS_PATH) shaped like:

    [
      {"siteKey": "default", "caymanApiKey": "...",
       "caymanApiUsername": "...", "caymanApiPassword": "..."}
    ]

Lookups fall back to the "default" tenant and finally to CAYMAN_API_*
environment variables.
"""

import json
import os
from pathlib import Path
from typing import Dict, Optional
from urllib.parse import urlencode

import structlog
from pydantic import BaseModel, Field, ValidationError

logger = structlog.get_logger().bind(component="config")


def _env_bool(key: str, default: str = "false") -> bool:
    return os.getenv(key, default).strip().lower() in {"1", "true", "yes", "on"}


class ConfigurationError(RuntimeError):
    """Raised when required credentials or settings are missing."""


# =============================================================================
# SETTINGS
# =============================================================================

class Settings:
    """Application settings from environment"""

    def __init__(self):
        # Server
        self.HOST = os.getenv("HOST", "0.0.0.0")
        self.PORT = int(os.getenv("PORT", "4000"))
        self.PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:4000").rstrip("/")
        self.CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

        # Logging
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self.LOG_FORMAT = os.getenv("LOG_FORMAT", "json").lower()

        # Outbound HTTP
        self.HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "20"))

        # Cayman Gateway
        self.CAYMAN_API_BASE_URL = os.getenv("CAYMAN_API_BASE_URL", "")
        self.CAYMAN_WEBHOOK_SECRET = os.getenv("CAYMAN_WEBHOOK_SECRET", "")
        self.CAYMAN_DEFAULT_CURRENCY = "KYD" if os.getenv("CAYMAN_DEFAULT_CURRENCY", "USD").upper() == "KYD" else "USD"
        self.CAYMAN_RECEIPT_TEXT = os.getenv(
            "CAYMAN_RECEIPT_TEXT", "Payment complete. You may close this window."
        )
        self.DEFAULT_BILLING = {
            "street1": os.getenv("CAYMAN_DEFAULT_STREET1", "1 Demo Way"),
            "city": os.getenv("CAYMAN_DEFAULT_CITY", "George Town"),
            "country": os.getenv("CAYMAN_DEFAULT_COUNTRY", "KY").upper(),
            "zip": os.getenv("CAYMAN_DEFAULT_ZIP", "KY1-1201"),
            "state": os.getenv("CAYMAN_DEFAULT_STATE") or None,
            "street2": os.getenv("CAYMAN_DEFAULT_STREET2") or None,
            "phone": os.getenv("CAYMAN_DEFAULT_PHONE") or None,
        }

        # Mindbody
        self.MINDBODY_BASE_URL = os.getenv("MINDBODY_BASE_URL", "https://api.mindbodyonline.com/public/v6")
        self.MINDBODY_API_KEY = os.getenv("MINDBODY_API_KEY", "")
        self.MINDBODY_SITE_ID = os.getenv("MINDBODY_SITE_ID", "-99")
        self.MINDBODY_USER_TOKEN = os.getenv("MINDBODY_USER_TOKEN") or None
        self.MINDBODY_STAFF_USERNAME = os.getenv("MINDBODY_STAFF_USERNAME") or None
        self.MINDBODY_STAFF_PASSWORD = os.getenv("MINDBODY_STAFF_PASSWORD") or None
        payment_method = os.getenv("MINDBODY_PAYMENT_METHOD_ID", "").strip()
        self.MINDBODY_PAYMENT_METHOD_ID = int(payment_method) if payment_method.isdigit() else None
        self.MINDBODY_CHECKOUT_TEST = _env_bool("MINDBODY_CHECKOUT_TEST")

        # Fulfillment policy
        self.LENIENT_SUCCESS = _env_bool("LENIENT_SUCCESS", "true")
        self.STRICT_AMOUNT_MATCH = _env_bool("STRICT_AMOUNT_MATCH")
        self.IDEMPOTENCY_TTL_SECONDS = float(os.getenv("IDEMPOTENCY_TTL_SECONDS", "600"))

        # Stale processing recovery (0 disables)
        self.STALE_PROCESSING_TIMEOUT_SECONDS = float(os.getenv("STALE_PROCESSING_TIMEOUT_SECONDS", "0"))
        self.STALE_CHECK_INTERVAL_SECONDS = float(os.getenv("STALE_CHECK_INTERVAL_SECONDS", "60"))

        # Tenants
        self.TENANTS_PATH = os.getenv("TENANTS_PATH", "./tenants.json")

    def absolute_url(self, path: str, **query) -> str:
        """Build an absolute URL under PUBLIC_BASE_URL, dropping None query values."""
        if not path.startswith("/"):
            path = f"/{path}"
        params = {k: str(v) for k, v in query.items() if v is not None}
        url = f"{self.PUBLIC_BASE_URL}{path}"
        return f"{url}?{urlencode(params)}" if params else url


# =============================================================================
# TENANT CREDENTIALS
# =============================================================================

class TenantConfig(BaseModel):
    """Gateway credentials for one tenant (site)."""
    site_key: str = Field(alias="siteKey")
    label: Optional[str] = None
    cayman_api_key: str = Field(alias="caymanApiKey")
    cayman_api_username: str = Field(alias="caymanApiUsername")
    cayman_api_password: str = Field(default="", alias="caymanApiPassword")
    currency: Optional[str] = None

    model_config = {"populate_by_name": True}


class GatewayCredentials(BaseModel):
    base_url: str
    api_key: str
    username: str
    password: str = ""


class CredentialProvider:
    """
    Synchronous per-tenant credential lookup.

    Order: requested site key -> MINDBODY_SITE_ID -> "default" -> environment.
    """

    def __init__(self, settings: Settings, tenants: Optional[Dict[str, TenantConfig]] = None):
        self.settings = settings
        self._tenants = tenants

    @property
    def tenants(self) -> Dict[str, TenantConfig]:
        if self._tenants is None:
            self._tenants = self._load_tenants(self.settings.TENANTS_PATH)
        return self._tenants

    @staticmethod
    def _load_tenants(path: str) -> Dict[str, TenantConfig]:
        file = Path(path)
        if not file.exists():
            logger.info("tenants_file_missing", path=path)
            return {}

        try:
            entries = json.loads(file.read_text(encoding="utf-8"))
        except ValueError as e:
            raise ConfigurationError(f"Failed to parse tenants file at {path}: {e}") from e

        if not isinstance(entries, list):
            raise ConfigurationError(f"Tenants file at {path} must contain an array")

        tenants: Dict[str, TenantConfig] = {}
        for entry in entries:
            try:
                tenant = TenantConfig.model_validate(entry)
            except ValidationError as e:
                logger.warning("tenant_entry_invalid", path=path, error=str(e))
                continue
            tenants[tenant.site_key] = tenant
        return tenants

    def gateway_credentials(self, site_key: Optional[str] = None) -> GatewayCredentials:
        base_url = self.settings.CAYMAN_API_BASE_URL.strip()
        if not base_url:
            raise ConfigurationError("CAYMAN_API_BASE_URL environment variable is required.")

        candidates = []
        for key in (site_key, self.settings.MINDBODY_SITE_ID, "default"):
            key = (key or "").strip()
            if key and key not in candidates:
                candidates.append(key)

        for key in candidates:
            tenant = self.tenants.get(key)
            if tenant:
                return GatewayCredentials(
                    base_url=base_url,
                    api_key=tenant.cayman_api_key,
                    username=tenant.cayman_api_username,
                    password=tenant.cayman_api_password,
                )

        api_key = os.getenv("CAYMAN_API_KEY", "").strip()
        username = os.getenv("CAYMAN_API_USERNAME", "").strip()
        if api_key and username:
            return GatewayCredentials(
                base_url=base_url,
                api_key=api_key,
                username=username,
                password=os.getenv("CAYMAN_API_PASSWORD", ""),
            )

        raise ConfigurationError(
            "Cayman API credentials are not configured. Add a tenant entry or set CAYMAN_API_KEY/CAYMAN_API_USERNAME."
        )

    def webhook_secret(self) -> str:
        return self.settings.CAYMAN_WEBHOOK_SECRET


settings = Settings()
