"""
models.py — Data Models for Order Processing

This module defines the data structures exchanged by the checkout workflow.
It uses Pydantic models to ensure type safety and automatic validation of
incoming data. Python code uses snake_case attribute names; JSON payloads use
camelCase (`productId`, `redirectUrl`, ...).

Models:
    - OrderItem / NewOrderRequest / CallbackRequest: API request payloads.
    - OrderLine / Order / Pricing: read views of persisted orders.
    - PaymentInit / PaymentOutcome / PaymentDetails: normalized payment gateway results.
    - InitResult / CallbackResult / OrderPage / PaymentStatusView: operation results.
    - StockInfo: catalog availability answer.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator
from pydantic.alias_generators import to_camel


class OrderStatus(str, Enum):
    """Persisted order states. PENDING is initial, the other two are terminal."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"

    @property
    def is_terminal(self) -> bool:
        return self is not OrderStatus.PENDING


class Role(str, Enum):
    """Capabilities resolved by the identity provider for a caller."""
    CLIENT = "CLIENT"
    SELLER = "SELLER"
    ADMIN = "ADMIN"


# Roles allowed to read every order, not only their own.
ELEVATED_ROLES = frozenset({Role.ADMIN, Role.SELLER})


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OrderItem(CamelModel):
    """
    Represents a single product item in a cart.

    Attributes:
        product_id (int): Catalog product identifier (`productId` on the wire).
        quantity (int): The quantity to order. Must be greater than zero.
    """
    product_id: int
    quantity: int = Field(..., gt=0)


class NewOrderRequest(CamelModel):
    """
    A cart submitted by a customer.

    Attributes:
        items (List[OrderItem]): Non-empty list of cart lines.
        include_shipping (bool): Whether the flat shipping cost is charged.
    """
    items: List[OrderItem] = Field(..., min_length=1)
    include_shipping: bool = True


class CallbackRequest(CamelModel):
    """Asynchronous provider notification: transaction token plus provider status."""
    token: str = Field(..., min_length=1)
    status: str = Field(..., min_length=1)


class Pricing(CamelModel):
    model_config = ConfigDict(frozen=True)

    subtotal: int
    tax: int
    shipping: int
    total: int


class OrderLine(CamelModel):
    """
    One product+quantity+price-at-purchase-time entry of an order.

    The product name and unit price are snapshots taken when the order was
    created and never follow later catalog changes.
    """
    model_config = ConfigDict(frozen=True)

    product_id: int
    product_name: str
    quantity: int = Field(..., gt=0)
    unit_price: int = Field(..., ge=0)

    @computed_field
    @property
    def total_price(self) -> int:
        return self.unit_price * self.quantity


class PaymentDetails(CamelModel):
    """
    Transaction details reported by the provider when a payment is committed.

    Attributes:
        response_code (Optional[int]): Provider response code; 0 means authorized.
        payment_type_code (Optional[str]): VD (debit), VN (credit, no installments), ...
        installments_number (Optional[int]): Number of installments.
        card_number (Optional[str]): Last digits of the card.
        transaction_date (Optional[str]): Provider timestamp of the transaction.
    """
    model_config = ConfigDict(frozen=True)

    response_code: Optional[int] = None
    payment_type_code: Optional[str] = None
    installments_number: Optional[int] = None
    card_number: Optional[str] = None
    transaction_date: Optional[str] = None


class Order(CamelModel):
    """Read view of a persisted order and its lines."""
    model_config = ConfigDict(frozen=True)

    id: int
    owner_id: str
    status: OrderStatus
    subtotal: int
    tax: int
    shipping: int
    total: int
    external_token: str
    buy_order: str
    authorization_code: Optional[str] = None
    status_reason: Optional[str] = None
    created_at: datetime
    resolved_at: Optional[datetime] = None
    payment: Optional[PaymentDetails] = None
    lines: List[OrderLine]

    @property
    def pricing(self) -> Pricing:
        return Pricing(subtotal=self.subtotal, tax=self.tax, shipping=self.shipping, total=self.total)


class PaymentInit(CamelModel):
    """Answer of a gateway to the start of a redirect-based payment."""
    token: str
    redirect_url: str


class PaymentOutcome(CamelModel):
    """
    Normalized result of a payment attempt, whatever backend produced it.

    Attributes:
        approved (bool): Whether the provider authorized the payment.
        gateway_token (Optional[str]): The provider's transaction token, if it assigned one.
        authorization_code (Optional[str]): Present only when approved.
        failure_reason (Optional[str]): Present only when not approved.
        message (Optional[str]): Provider message, for display.
        details (Optional[PaymentDetails]): Transaction details, when the provider sent any.
    """
    approved: bool
    gateway_token: Optional[str] = None
    authorization_code: Optional[str] = None
    failure_reason: Optional[str] = None
    message: Optional[str] = None
    details: Optional[PaymentDetails] = None

    @model_validator(mode="after")
    def _check_consistency(self):
        if self.approved and self.failure_reason is not None:
            raise ValueError("an approved outcome carries no failure reason")
        if not self.approved and self.authorization_code is not None:
            raise ValueError("a rejected outcome carries no authorization code")
        return self

    @classmethod
    def rejected(cls, reason: str, gateway_token: Optional[str] = None) -> "PaymentOutcome":
        return cls(approved=False, gateway_token=gateway_token, failure_reason=reason, message=reason)


class InitResult(CamelModel):
    token: str
    redirect_url: str
    order_id: int
    pricing: Pricing


class CallbackResult(CamelModel):
    message: str
    order_id: int
    status: OrderStatus
    total: int


class OrderPage(CamelModel):
    items: List[Order]
    page: int
    size: int
    total_items: int
    total_pages: int


class PaymentStatusView(CamelModel):
    """Local order state, plus the provider's answer while the order is still PENDING."""
    order_id: int
    token: str
    status: OrderStatus
    subtotal: int
    tax: int
    shipping: int
    total: int
    created_at: datetime
    items_count: int
    provider: Optional[PaymentOutcome] = None


class ExpiryResult(CamelModel):
    expired_order_ids: List[int]


class StockInfo(CamelModel):
    """
    Catalog answer to an availability check.

    Attributes:
        product_id (int): The product that was checked.
        available (bool): Whether `current_stock` covers the requested quantity.
        current_stock (int): Stock at the time of the check.
        unit_price (int): Current price in minor currency units.
        name (str): Current product name.
    """
    product_id: int
    available: bool
    current_stock: int
    unit_price: int
    name: str
