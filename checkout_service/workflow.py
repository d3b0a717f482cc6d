"""
workflow.py — Core Orchestration Logic for Order Processing

This module contains the order lifecycle manager: it validates carts against
the catalog, prices them, persists orders, talks to the payment gateway and
reconciles the payment result with local stock and order state.

State machine:
    PENDING ──► APPROVED   (terminal)
            └─► REJECTED   (terminal)

Workflow Overview:
    Flow A (synchronous, local simulator or mock provider):
        1. Validate the cart against current stock (read-only, nothing reserved)
        2. Price the order and persist it as PENDING
        3. Settle the payment immediately via the gateway
        4. Approved → consume stock line by line; a shortfall rolls back the
           already-consumed lines (compensation) and rejects the order
        5. Declined or unreachable provider → REJECTED, stock untouched

    Flow B (redirect based, Webpay):
        1. Validate and price exactly as Flow A
        2. Start the transaction at the provider, then persist PENDING with the
           provider's token (no order is persisted if the provider is unreachable)
        3. The provider's callback moves the order to APPROVED or REJECTED;
           stock is consumed only on approval, and stock truth wins over an
           authorization when a line can no longer be covered

No lock is held on an order between PENDING and its resolution. The race with
concurrent buyers is settled when stock is consumed, by the catalog's atomic
conditional update.
"""

import uuid
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence, Tuple

import sqlalchemy as sa

from .catalog import CatalogGateway
from .clients import PaymentGateway, build_payment_gateway
from .config import Settings
from .db import create_db_engine, create_session_factory, init_db, utcnow
from .errors import (
    CheckoutError,
    GatewayFailure,
    InsufficientStock,
    InvalidStateTransition,
    PermissionDenied,
    ProductNotFound,
    ValidationError,
)
from .ledger import LedgerStore
from .logging_config import get_logger
from .models import (
    ELEVATED_ROLES,
    CallbackResult,
    InitResult,
    Order,
    OrderItem,
    OrderLine,
    OrderPage,
    OrderStatus,
    PaymentDetails,
    PaymentOutcome,
    PaymentStatusView,
    Pricing,
    Role,
)
from .pricing import compute_pricing

log = get_logger(__name__)

# Provider statuses that mean "payment authorized". Everything else is a failure.
PROVIDER_SUCCESS_STATUSES = frozenset({"AUTHORIZED", "OK"})

STOCK_CHANGED_REASON = "stock changed during processing"
EXPIRED_REASON = "payment window expired"

MAX_PAGE_SIZE = 100


def is_provider_success(provider_status: Optional[str]) -> bool:
    return (provider_status or "").strip().upper() in PROVIDER_SUCCESS_STATUSES


def _new_local_token() -> str:
    return f"ord_{uuid.uuid4().hex}"


def _new_buy_order() -> str:
    # Webpay accepts at most 26 characters.
    return f"ORD{uuid.uuid4().hex[:20].upper()}"


class OrderLifecycleManager:
    """
    Orchestrates order creation, payment and reconciliation.

    Args:
        settings (Settings): Pricing configuration (tax rate, shipping cost, expiry).
        ledger (LedgerStore): Order persistence.
        catalog (CatalogGateway): Stock and price collaborator.
        gateway (PaymentGateway): Configured payment backend.
    """

    def __init__(self, settings: Settings, ledger: LedgerStore, catalog: CatalogGateway, gateway: PaymentGateway):
        self.settings = settings
        self.ledger = ledger
        self.catalog = catalog
        self.gateway = gateway

    def close(self):
        self.gateway.close()

    # --- Flow A ---
    def create_order_sync(self, owner_id: str, items: Sequence[OrderItem], include_shipping: bool = True) -> Order:
        """
        Creates an order and settles its payment in one call.

        Args:
            owner_id (str): Purchasing identity.
            items (Sequence[OrderItem]): Cart lines.
            include_shipping (bool): Whether the flat shipping cost applies.

        Returns:
            Order: The order in its final state (APPROVED or REJECTED).

        Raises:
            ValidationError: Empty cart, bad quantity, or a backend that needs redirection.
            ProductNotFound: Unknown product in the cart.
            InsufficientStock: Stock does not cover the cart. No order is persisted.
        """
        if not self.gateway.supports_sync:
            raise ValidationError("The configured payment backend requires redirection; use the Webpay flow.")

        lines, pricing = self._prepare(items, include_shipping)
        order = self.ledger.create(owner_id, lines, pricing, _new_local_token(), _new_buy_order())
        log_prefix = f"[Order: {order.id}]"
        log.info(f"{log_prefix} Saved as PENDING (total: {order.total}). Requesting payment...")

        try:
            outcome = self.gateway.resolve_synchronously(order.buy_order, order.total)
        except GatewayFailure as e:
            outcome = PaymentOutcome.rejected(e.reason)

        if outcome.approved:
            log.info(f"{log_prefix} Payment approved (auth: {outcome.authorization_code}). Consuming stock.")
            return self._settle(order, True, outcome.message or "Payment approved",
                                authorization_code=outcome.authorization_code,
                                external_token=outcome.gateway_token, payment=outcome.details)

        log.warning(f"{log_prefix} Payment rejected: {outcome.failure_reason}")
        return self._settle(order, False, outcome.failure_reason,
                            external_token=outcome.gateway_token, payment=outcome.details)

    # --- Flow B ---
    def init_order_async(self, owner_id: str, items: Sequence[OrderItem], include_shipping: bool = True) -> InitResult:
        """
        Starts a redirect-based payment and persists the order as PENDING.

        Returns:
            InitResult: Provider token and redirect URL, order id and pricing.

        Raises:
            ValidationError, ProductNotFound, InsufficientStock: As for `create_order_sync`.
            GatewayFailure: The provider could not start the transaction. No order is persisted.
        """
        lines, pricing = self._prepare(items, include_shipping)
        buy_order = _new_buy_order()

        try:
            init = self.gateway.initiate(buy_order, pricing.total)
        except GatewayFailure as e:
            log.error(f"[BuyOrder: {buy_order}] Payment initiation failed ({e.kind}). No order persisted.")
            raise

        order = self.ledger.create(owner_id, lines, pricing, init.token, buy_order)
        log.info(f"[Order: {order.id}] Saved as PENDING, awaiting provider callback (token: {init.token}).")
        return InitResult(token=init.token, redirect_url=init.redirect_url, order_id=order.id, pricing=pricing)

    def handle_callback(self, token: str, provider_status: str) -> CallbackResult:
        """
        Applies the provider's asynchronous answer to the order holding `token`.

        The callback route is public and the buyer knows the token, so a success
        status is only trustworthy if the caller is the provider. With
        `settings.verify_callbacks` the provider is asked for the transaction
        state first, and a success the provider does not confirm is refused.

        Args:
            token (str): Gateway token of the order.
            provider_status (str): AUTHORIZED/OK for success; FAILED, REJECTED,
                ABORTED, TIMEOUT or anything else for failure.

        Returns:
            CallbackResult: Acknowledgment with the final order status.

        Raises:
            OrderNotFound: No order holds this token.
            InvalidStateTransition: The order was already resolved. Nothing is changed.
            PermissionDenied: Success claimed but not confirmed by the provider. Nothing is changed.
        """
        order = self.ledger.find_by_token(token)
        self._ensure_pending(order)

        status = (provider_status or "").strip().upper()
        if not is_provider_success(status):
            return self._apply_callback(order, False, f"Payment {status or 'FAILED'} by provider")

        if not self.settings.verify_callbacks:
            return self._apply_callback(order, True, "Payment approved")

        verified = self.gateway.query_status(token)
        if not verified.approved:
            log.warning(f"[Order: {order.id}] Success callback not confirmed by the provider: "
                        f"{verified.failure_reason}. Order left PENDING.")
            raise PermissionDenied("Payment not confirmed by the provider.")
        return self._apply_callback(order, True, "Payment approved",
                                    authorization_code=verified.authorization_code, payment=verified.details)

    def handle_return(self, token_ws: Optional[str] = None, tbk_token: Optional[str] = None,
                      tbk_buy_order: Optional[str] = None, tbk_session_id: Optional[str] = None) -> CallbackResult:
        """
        Handles the customer coming back from the Webpay form.

        - `token_ws` present: the payment form was completed; commit it at the provider.
        - `tbk_token` present: the customer aborted the payment.
        - Only buy order and session id: the payment form timed out.

        Raises:
            ValidationError: None of the combinations above was received.
            OrderNotFound, InvalidStateTransition: As for `handle_callback`.
        """
        if token_ws:
            order = self.ledger.find_by_token(token_ws)
            self._ensure_pending(order)
            outcome = self.gateway.confirm(token_ws)
            if outcome.approved:
                return self._apply_callback(order, True, outcome.message or "Payment approved",
                                            authorization_code=outcome.authorization_code, payment=outcome.details)
            return self._apply_callback(order, False, outcome.failure_reason, payment=outcome.details)

        if tbk_token:
            log.info(f"[Token: {tbk_token}] Customer aborted the payment.")
            return self.handle_callback(tbk_token, "ABORTED")

        if tbk_buy_order and tbk_session_id:
            log.info(f"[BuyOrder: {tbk_buy_order}] Payment form timed out.")
            order = self.ledger.find_by_buy_order(tbk_buy_order)
            return self.handle_callback(order.external_token, "TIMEOUT")

        raise ValidationError("No valid Webpay return parameters received.")

    # --- Read projections ---
    def get_order(self, order_id: int, caller_id: str, caller_roles: Iterable[Role]) -> Order:
        order = self.ledger.get(order_id)
        if not (ELEVATED_ROLES & set(caller_roles)) and order.owner_id != caller_id:
            raise PermissionDenied("You do not have permission to view this order.")
        return order

    def list_orders(self, caller_id: str) -> List[Order]:
        return self.ledger.list_by_owner(caller_id)

    def list_all_orders(self, page: int = 0, size: int = 20, caller_roles: Iterable[Role] = ()) -> OrderPage:
        if not ELEVATED_ROLES & set(caller_roles):
            raise PermissionDenied("Listing all orders requires the ADMIN or SELLER role.")
        if page < 0 or not 1 <= size <= MAX_PAGE_SIZE:
            raise ValidationError(f"page must be >= 0 and size between 1 and {MAX_PAGE_SIZE}.")
        return self.ledger.list_all(page, size)

    def get_payment_status(self, token: str) -> PaymentStatusView:
        """
        Reports the local state of the order holding `token`. While the order is
        still PENDING, the provider's view of the transaction is included; it is
        reported only, never applied.
        """
        order = self.ledger.find_by_token(token)
        provider = self.gateway.query_status(token) if order.status is OrderStatus.PENDING else None
        return PaymentStatusView(
            order_id=order.id,
            token=order.external_token,
            status=order.status,
            subtotal=order.subtotal,
            tax=order.tax,
            shipping=order.shipping,
            total=order.total,
            created_at=order.created_at,
            items_count=len(order.lines),
            provider=provider,
        )

    def expire_stale_orders(self, now: Optional[datetime] = None) -> List[int]:
        """
        Rejects PENDING orders whose payment window has passed.

        The provider is asked about each order first: a payment it reports as
        authorized is settled like an approval callback instead of expiring
        (callback lost in transit). Any other answer, including an unreachable
        provider, expires the order. Stock is untouched on expiry since a
        PENDING order never consumed any. Orders that a callback resolves while
        the sweep runs are skipped.

        Returns:
            List[int]: Ids of the expired orders.
        """
        cutoff = (now or utcnow()) - timedelta(minutes=self.settings.pending_order_ttl_minutes)
        expired = []
        for order in self.ledger.list_pending_before(cutoff):
            outcome = self.gateway.query_status(order.external_token)
            try:
                if outcome.approved:
                    log.info(f"[Order: {order.id}] Provider reports the payment authorized. Settling instead of expiring.")
                    self._settle(order, True, outcome.message or "Payment approved",
                                 authorization_code=outcome.authorization_code, payment=outcome.details)
                    continue
                self.ledger.resolve(order.id, OrderStatus.REJECTED, EXPIRED_REASON)
            except InvalidStateTransition:
                log.info(f"[Order: {order.id}] Resolved concurrently, not expired.")
                continue
            log.info(f"[Order: {order.id}] Expired after {self.settings.pending_order_ttl_minutes} minutes without payment.")
            expired.append(order.id)
        return expired

    # --- Internals ---
    def _prepare(self, items: Sequence[OrderItem], include_shipping: bool) -> Tuple[List[OrderLine], Pricing]:
        """
        Validates a cart against the catalog and prices it. Nothing is persisted
        or reserved; quantities of repeated products are checked together.
        """
        if not items:
            raise ValidationError("The order must contain at least one item.")

        requested = {}
        for item in items:
            if item.quantity < 1:
                raise ValidationError(f"Quantity must be at least 1 (product {item.product_id}).")
            requested[item.product_id] = requested.get(item.product_id, 0) + item.quantity

        stock = {}
        for product_id, quantity in requested.items():
            info = self.catalog.check_availability(product_id, quantity)
            if not info.available:
                raise InsufficientStock(product_id, quantity, available=info.current_stock, name=info.name)
            stock[product_id] = info

        lines = [
            OrderLine(
                product_id=item.product_id,
                product_name=stock[item.product_id].name,
                quantity=item.quantity,
                unit_price=stock[item.product_id].unit_price,
            )
            for item in items
        ]
        pricing = compute_pricing(
            ((line.unit_price, line.quantity) for line in lines),
            self.settings.tax_rate,
            include_shipping,
            self.settings.shipping_cost,
        )
        return lines, pricing

    def _ensure_pending(self, order: Order):
        if order.status.is_terminal:
            log.warning(f"[Order: {order.id}] Callback for an order already {order.status.value}; ignored.")
            raise InvalidStateTransition(order.id, order.status.value)

    def _apply_callback(self, order: Order, approved: bool, reason: Optional[str],
                        authorization_code: Optional[str] = None,
                        payment: Optional[PaymentDetails] = None) -> CallbackResult:
        final = self._settle(order, approved, reason, authorization_code=authorization_code, payment=payment)
        if final.status is OrderStatus.APPROVED:
            message = "Payment approved"
        elif approved:
            message = f"Payment authorized but rejected: {STOCK_CHANGED_REASON}"
        else:
            message = "Payment rejected"
        return CallbackResult(message=message, order_id=final.id, status=final.status, total=final.total)

    def _settle(self, order: Order, approved: bool, reason: Optional[str],
                authorization_code: Optional[str] = None, external_token: Optional[str] = None,
                payment: Optional[PaymentDetails] = None) -> Order:
        """
        Moves a PENDING order to its terminal status, consuming stock on approval.

        Stock consumed for an approval is given back whenever the APPROVED status
        cannot be recorded, so stock only ever moves for APPROVED orders.

        Raises:
            InvalidStateTransition: Another request resolved the order first; any
                stock consumed by this call has been given back.
        """
        log_prefix = f"[Order: {order.id}]"
        if approved:
            if self._consume_stock(order):
                try:
                    final = self.ledger.resolve(order.id, OrderStatus.APPROVED, reason,
                                                authorization_code=authorization_code,
                                                external_token=external_token, payment=payment)
                except InvalidStateTransition:
                    log.warning(f"{log_prefix} Resolved concurrently. Releasing consumed stock.")
                    self._release_stock(order, order.lines)
                    raise
                except Exception as e:
                    log.error(f"{log_prefix} Could not record the approval ({type(e).__name__}). "
                              f"Releasing consumed stock.")
                    self._release_stock(order, order.lines)
                    raise
                log.info(f"{log_prefix} APPROVED.")
                return final
            reason = STOCK_CHANGED_REASON

        final = self.ledger.resolve(order.id, OrderStatus.REJECTED, reason,
                                    external_token=external_token, payment=payment)
        log.info(f"{log_prefix} REJECTED ({reason}).")
        return final

    def _consume_stock(self, order: Order) -> bool:
        """
        Decrements stock for every line. On the first shortfall the lines already
        consumed are given back and False is returned.
        """
        consumed = []
        for line in order.lines:
            try:
                self.catalog.adjust_stock(line.product_id, -line.quantity)
            except (InsufficientStock, ProductNotFound) as e:
                log.warning(f"[Order: {order.id}] Stock changed during processing: {e.message} Starting compensation.")
                self._release_stock(order, consumed)
                return False
            consumed.append(line)
        return True

    def _release_stock(self, order: Order, lines: Sequence[OrderLine]):
        for line in reversed(lines):
            try:
                self.catalog.adjust_stock(line.product_id, line.quantity)
            except CheckoutError as e:
                log.critical(f"[Order: {order.id}] COMPENSATION FAILED for product {line.product_id}: "
                             f"{e.message}. MANUAL ACTION REQUIRED!")


def build_order_manager(settings: Settings, engine: Optional[sa.Engine] = None,
                        gateway: Optional[PaymentGateway] = None) -> OrderLifecycleManager:
    """
    Wires database, catalog, ledger and payment backend into a manager.

    Args:
        settings (Settings): Service configuration.
        engine (sa.Engine, optional): Existing engine; built from `settings.database_url` if omitted.
        gateway (PaymentGateway, optional): Payment backend; built from settings if omitted.

    Returns:
        OrderLifecycleManager: Ready-to-use manager with the schema created.
    """
    engine = engine if engine is not None else create_db_engine(settings.database_url)
    init_db(engine)
    session_factory = create_session_factory(engine)

    catalog = CatalogGateway(session_factory)
    if settings.seed_demo_catalog:
        catalog.seed_demo_catalog()

    return OrderLifecycleManager(
        settings=settings,
        ledger=LedgerStore(session_factory),
        catalog=catalog,
        gateway=gateway if gateway is not None else build_payment_gateway(settings),
    )
