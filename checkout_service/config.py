"""
config.py — Service Configuration

All tunables of the checkout service live in one `Settings` object that is built
once at startup and handed to every collaborator that needs it (pricing, payment
clients, the order workflow). Nothing reads the environment after that point.

Environment variables:
    DATABASE_URL                 SQLAlchemy URL of the order/catalog database
    TAX_RATE                     VAT rate applied to the subtotal (e.g. 0.19)
    SHIPPING_COST                Flat shipping cost in minor currency units
    PAYMENT_BACKEND              local | mock_http | webpay
    PAYMENT_SERVICE_URL          Base URL of the mock payment provider
    WEBPAY_REDIRECT_URL          Redirect URL handed out by the local simulator
    WEBPAY_RETURN_URL            URL the provider sends the customer back to
    WEBPAY_HOST                  Webpay Plus REST host
    WEBPAY_COMMERCE_CODE         Webpay commerce code (Tbk-Api-Key-Id)
    WEBPAY_API_KEY               Webpay secret (Tbk-Api-Key-Secret)
    PAYMENT_CONNECT_TIMEOUT      Connect timeout for provider calls, seconds
    PAYMENT_READ_TIMEOUT         Read timeout for provider calls, seconds
    PENDING_ORDER_TTL_MINUTES    Age after which unpaid orders are expired
    VERIFY_CALLBACKS             Check success callbacks with the provider before approving
    SEED_DEMO_CATALOG            Seed a few demo products into an empty catalog
    LOG_LEVEL / LOG_FILE         Logging level and optional log file
"""

import os
from decimal import Decimal
from typing import Literal, Mapping, Optional

from pydantic import BaseModel, Field

# Webpay Plus integration (testing) environment, published by Transbank.
WEBPAY_INTEGRATION_HOST = "https://webpay3gint.transbank.cl"
WEBPAY_INTEGRATION_COMMERCE_CODE = "597055555532"
WEBPAY_INTEGRATION_API_KEY = "579B532A7440BB0C9079DED94D31EA1615BACEB56610332264630D42D0A36B1C"

_ENV_NAMES = {
    "database_url": "DATABASE_URL",
    "tax_rate": "TAX_RATE",
    "shipping_cost": "SHIPPING_COST",
    "payment_backend": "PAYMENT_BACKEND",
    "payment_service_url": "PAYMENT_SERVICE_URL",
    "webpay_redirect_url": "WEBPAY_REDIRECT_URL",
    "webpay_return_url": "WEBPAY_RETURN_URL",
    "webpay_host": "WEBPAY_HOST",
    "webpay_commerce_code": "WEBPAY_COMMERCE_CODE",
    "webpay_api_key": "WEBPAY_API_KEY",
    "connect_timeout": "PAYMENT_CONNECT_TIMEOUT",
    "read_timeout": "PAYMENT_READ_TIMEOUT",
    "pending_order_ttl_minutes": "PENDING_ORDER_TTL_MINUTES",
    "verify_callbacks": "VERIFY_CALLBACKS",
    "seed_demo_catalog": "SEED_DEMO_CATALOG",
    "log_level": "LOG_LEVEL",
    "log_file": "LOG_FILE",
}


class Settings(BaseModel):
    """
    Immutable configuration of the checkout service.

    Attributes:
        database_url (str): SQLAlchemy database URL.
        tax_rate (Decimal): VAT rate, applied with round-half-up on whole units.
        shipping_cost (int): Flat shipping cost in minor currency units.
        payment_backend (str): Which payment gateway implementation to build.
        payment_service_url (str): Base URL of the mock payment provider.
        webpay_redirect_url (str): Redirect target returned by the local simulator.
        webpay_return_url (str): Return URL registered with the provider.
        webpay_host (str): Webpay Plus REST API host.
        webpay_commerce_code (str): Webpay commerce code.
        webpay_api_key (str): Webpay API secret.
        connect_timeout (float): Provider connect timeout in seconds.
        read_timeout (float): Provider read timeout in seconds.
        pending_order_ttl_minutes (int): Lifetime of an unpaid PENDING order.
        verify_callbacks (bool): Ask the provider to confirm a success callback before
            approving the order; unconfirmed claims are refused.
        seed_demo_catalog (bool): Seed demo products on startup when the catalog is empty.
        log_level (str): Root log level.
        log_file (Optional[str]): Log file path, or None for console only.
    """
    model_config = {"frozen": True}

    database_url: str = "sqlite:///./checkout.db"
    tax_rate: Decimal = Decimal("0.19")
    shipping_cost: int = Field(3990, ge=0)
    payment_backend: Literal["local", "mock_http", "webpay"] = "local"
    payment_service_url: str = "http://payment_service:8001"
    webpay_redirect_url: str = "https://webpay.mock/redirect"
    webpay_return_url: str = "http://localhost:8000/v1/orders/webpay/return"
    webpay_host: str = WEBPAY_INTEGRATION_HOST
    webpay_commerce_code: str = WEBPAY_INTEGRATION_COMMERCE_CODE
    webpay_api_key: str = WEBPAY_INTEGRATION_API_KEY
    connect_timeout: float = Field(5.0, gt=0)
    read_timeout: float = Field(8.0, gt=0)
    pending_order_ttl_minutes: int = Field(30, gt=0)
    verify_callbacks: bool = False
    seed_demo_catalog: bool = False
    log_level: str = "INFO"
    log_file: Optional[str] = "order_processing.log"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Builds settings from environment variables, falling back to defaults.

        Args:
            environ (Mapping[str, str], optional): Variables to read. Defaults to `os.environ`.

        Returns:
            Settings: Validated configuration.

        Raises:
            pydantic.ValidationError: If a variable holds a value of the wrong type.
        """
        environ = os.environ if environ is None else environ
        values = {
            field: environ[env_name]
            for field, env_name in _ENV_NAMES.items()
            if env_name in environ
        }
        # An empty LOG_FILE switches file logging off.
        if values.get("log_file") == "":
            values["log_file"] = None
        return cls(**values)
