"""
errors.py — Error Taxonomy of the Checkout Service

Every business failure of the order workflow is one of the exceptions below.
Each carries the HTTP status and machine-readable code the API layer renders,
so the FastAPI exception handler in `main.py` needs no per-type branching.

Hierarchy:
    CheckoutError
        ├── ValidationError          400  malformed request (empty cart, bad quantity)
        ├── PermissionDenied         403  caller may not see the requested data
        ├── NotFound                 404
        │     ├── OrderNotFound          unknown order id, token or buy order
        │     └── ProductNotFound        unknown product id
        ├── InsufficientStock        409  not enough stock for a line
        ├── InvalidStateTransition   409  order already left PENDING
        └── GatewayFailure           502  payment provider unreachable or faulty
"""

# Failure kinds reported by the payment gateway adapters.
CLIENT_ERROR = "client-error"
SERVER_ERROR = "server-error"
NETWORK_ERROR = "network-error"


class CheckoutError(Exception):
    """Base class for all business errors raised by the checkout core."""
    status_code = 500
    code = "checkout_error"

    def __init__(self, message):
        self.message = message
        super().__init__(message)


class ValidationError(CheckoutError):
    status_code = 400
    code = "validation_error"


class PermissionDenied(CheckoutError):
    status_code = 403
    code = "permission_denied"


class NotFound(CheckoutError):
    status_code = 404
    code = "not_found"


class OrderNotFound(NotFound):
    code = "order_not_found"


class ProductNotFound(NotFound):
    code = "product_not_found"

    def __init__(self, product_id):
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class InsufficientStock(CheckoutError):
    """
    Raised when a product does not hold enough stock.

    Attributes:
        product_id (int): The product that ran short.
        available (int): Stock at the time of the check, if known.
        requested (int): Quantity that was asked for.
    """
    status_code = 409
    code = "insufficient_stock"

    def __init__(self, product_id, requested, available=None, name=None):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        label = f"'{name}'" if name else f"product {product_id}"
        if available is None:
            message = f"Insufficient stock for {label}, requested: {requested}"
        else:
            message = f"Insufficient stock for {label}. Available: {available}, requested: {requested}"
        super().__init__(message)


class InvalidStateTransition(CheckoutError):
    status_code = 409
    code = "invalid_state_transition"

    def __init__(self, order_id, current_status):
        self.order_id = order_id
        self.current_status = current_status
        super().__init__(f"Order {order_id} was already processed. Current status: {current_status}")


class GatewayFailure(CheckoutError):
    """
    Transport or provider-side failure of a payment gateway call.

    Attributes:
        kind (str): One of CLIENT_ERROR, SERVER_ERROR, NETWORK_ERROR.
    """
    status_code = 502
    code = "gateway_failure"

    def __init__(self, kind, message):
        self.kind = kind
        super().__init__(message)

    @property
    def reason(self):
        """Failure reason as stored on a rejected order."""
        return f"{self.kind}: {self.message}"
