"""
main.py — FastAPI Entry Point for the Checkout Service

This module provides the REST API interface of the checkout service. It is a
thin layer over `OrderLifecycleManager`: it parses requests, resolves the
caller's identity and maps business errors to HTTP responses.

Responsibilities:
    • Accept carts for immediate payment (local simulator / mock provider)
    • Start redirect-based Webpay payments and receive provider callbacks
    • Serve order read projections with owner/role checks
    • Provide system health information

Identity:
    Authentication happens upstream. The identity provider forwards the caller
    as `X-User-Id` and a comma separated `X-User-Roles` header (ADMIN, SELLER,
    CLIENT).

Run:
    uvicorn checkout_service.main:create_app --factory --port 8000
"""

from typing import FrozenSet, List, NamedTuple, Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse

from .config import Settings
from .errors import CheckoutError, PermissionDenied
from .logging_config import get_logger, setup_logging
from .models import (
    ELEVATED_ROLES,
    CallbackRequest,
    CallbackResult,
    ExpiryResult,
    InitResult,
    NewOrderRequest,
    Order,
    OrderPage,
    PaymentStatusView,
    Role,
)
from .workflow import OrderLifecycleManager, build_order_manager

log = get_logger(__name__)


class Caller(NamedTuple):
    user_id: str
    roles: FrozenSet[Role]


def parse_roles(header_value: Optional[str]) -> FrozenSet[Role]:
    """Parses a comma separated role header; unknown roles are ignored."""
    roles = set()
    for raw in (header_value or "").split(","):
        name = raw.strip().upper()
        if name.startswith("ROLE_"):
            name = name[len("ROLE_"):]
        if name in Role.__members__:
            roles.add(Role[name])
    return frozenset(roles)


def get_caller(
        x_user_id: str = Header(..., alias="X-User-Id"),
        x_user_roles: str = Header("", alias="X-User-Roles"),
) -> Caller:
    return Caller(user_id=x_user_id, roles=parse_roles(x_user_roles))


def get_manager(request: Request) -> OrderLifecycleManager:
    return request.app.state.manager


def create_app(manager: Optional[OrderLifecycleManager] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Builds the FastAPI application.

    Args:
        manager (OrderLifecycleManager, optional): Pre-built manager (used in tests).
            Built from `settings` if omitted.
        settings (Settings, optional): Configuration; read from the environment if omitted.

    Returns:
        FastAPI: The configured application.
    """
    settings = settings if settings is not None else Settings.from_env()
    setup_logging(settings)
    if manager is None:
        manager = build_order_manager(settings)

    app = FastAPI(title="Checkout Service")
    app.state.manager = manager

    @app.on_event("startup")
    def on_startup():
        log.info(f"Checkout service starting (payment backend: {type(manager.gateway).__name__}).")

    @app.on_event("shutdown")
    def on_shutdown():
        manager.close()
        log.info("Checkout service stopped.")

    @app.exception_handler(CheckoutError)
    async def checkout_error_handler(request: Request, exc: CheckoutError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message, "code": exc.code})

    # API Endpoint: synchronous checkout (Flow A)
    @app.post("/v1/orders", status_code=201, response_model=Order)
    def create_order(
            order: NewOrderRequest,
            caller: Caller = Depends(get_caller),
            manager: OrderLifecycleManager = Depends(get_manager),
    ):
        """
        Creates an order and settles its payment immediately.

        Returns:
            Order: The order in its final state (APPROVED or REJECTED).
        """
        log.info(f"New order from user {caller.user_id} ({len(order.items)} items).")
        return manager.create_order_sync(caller.user_id, order.items, order.include_shipping)

    # API Endpoint: start a Webpay payment (Flow B)
    @app.post("/v1/orders/webpay/init", status_code=201, response_model=InitResult)
    def init_webpay(
            order: NewOrderRequest,
            caller: Caller = Depends(get_caller),
            manager: OrderLifecycleManager = Depends(get_manager),
    ):
        """
        Creates a PENDING order and returns the provider token and redirect URL.
        Stock is consumed only once the provider confirms the payment.
        """
        return manager.init_order_async(caller.user_id, order.items, order.include_shipping)

    # API Endpoint: provider callback, public
    @app.post("/v1/orders/webpay/callback", response_model=CallbackResult)
    def webpay_callback(callback: CallbackRequest, manager: OrderLifecycleManager = Depends(get_manager)):
        """
        Receives the provider's asynchronous answer (AUTHORIZED/OK or a failure status).
        A callback for an already resolved order answers 409 and changes nothing.

        Warning:
            This route is unauthenticated and the buyer receives the token from
            /webpay/init. Unless VERIFY_CALLBACKS is enabled, a success status is
            trusted as sent; with it, unconfirmed success claims answer 403.
        """
        log.info(f"[Token: {callback.token}] Provider callback received (status: {callback.status}).")
        return manager.handle_callback(callback.token, callback.status)

    # API Endpoint: customer returning from the Webpay form, public
    @app.api_route("/v1/orders/webpay/return", methods=["GET", "POST"], response_model=CallbackResult)
    def webpay_return(
            token_ws: Optional[str] = Query(None),
            tbk_token: Optional[str] = Query(None, alias="TBK_TOKEN"),
            tbk_buy_order: Optional[str] = Query(None, alias="TBK_ORDEN_COMPRA"),
            tbk_session_id: Optional[str] = Query(None, alias="TBK_ID_SESION"),
            manager: OrderLifecycleManager = Depends(get_manager),
    ):
        return manager.handle_return(token_ws, tbk_token, tbk_buy_order, tbk_session_id)

    @app.get("/v1/orders/payment-status/{token}", response_model=PaymentStatusView)
    def payment_status(token: str, manager: OrderLifecycleManager = Depends(get_manager)):
        return manager.get_payment_status(token)

    @app.get("/v1/orders", response_model=List[Order])
    def my_orders(caller: Caller = Depends(get_caller), manager: OrderLifecycleManager = Depends(get_manager)):
        return manager.list_orders(caller.user_id)

    @app.get("/v1/orders/all", response_model=OrderPage)
    def all_orders(
            page: int = Query(0, ge=0),
            size: int = Query(20, ge=1, le=100),
            caller: Caller = Depends(get_caller),
            manager: OrderLifecycleManager = Depends(get_manager),
    ):
        return manager.list_all_orders(page, size, caller.roles)

    @app.post("/v1/orders/expire", response_model=ExpiryResult)
    def expire_orders(caller: Caller = Depends(get_caller), manager: OrderLifecycleManager = Depends(get_manager)):
        """Rejects PENDING orders whose payment window has passed (ADMIN or SELLER only)."""
        if not ELEVATED_ROLES & caller.roles:
            raise PermissionDenied("Expiring orders requires the ADMIN or SELLER role.")
        return ExpiryResult(expired_order_ids=manager.expire_stale_orders())

    @app.get("/v1/orders/{order_id}", response_model=Order)
    def get_order(
            order_id: int,
            caller: Caller = Depends(get_caller),
            manager: OrderLifecycleManager = Depends(get_manager),
    ):
        return manager.get_order(order_id, caller.user_id, caller.roles)

    # Health Check Endpoint
    @app.get("/health")
    def health_check():
        """
        Simple health check endpoint for monitoring systems and container orchestrators.

        Returns:
            dict: A basic JSON object indicating service availability.
        """
        return {"status": "ok"}

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
