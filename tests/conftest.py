"""
Shared fixtures: an in-memory database, a seeded catalog and a scripted
payment gateway whose answers each test can set.
"""

import pytest

from checkout_service.clients import PaymentGateway
from checkout_service.config import Settings
from checkout_service.db import create_db_engine
from checkout_service.errors import GatewayFailure
from checkout_service.models import OrderItem, PaymentInit, PaymentOutcome
from checkout_service.workflow import build_order_manager

REDIRECT_URL = "https://pay.example/form"


class ScriptedGateway(PaymentGateway):
    """
    Test double for the payment backend.

    Attributes:
        outcome (PaymentOutcome): Answer of `resolve_synchronously`.
        confirm_outcome (PaymentOutcome): Answer of `confirm`.
        status_outcome (PaymentOutcome): Answer of `query_status`.
        init_failure (GatewayFailure): Raised by `initiate` when set.
        before_resolve (callable): Hook run inside `resolve_synchronously`, used
            to simulate concurrent buyers while the payment is in flight.
    """

    def __init__(self):
        self.supports_sync = True
        self.outcome = PaymentOutcome(approved=True, gateway_token="tbk_sync0001",
                                      authorization_code="AUTH-1", message="Payment approved")
        self.confirm_outcome = PaymentOutcome(approved=True, authorization_code="AUTH-2", message="Payment approved")
        self.status_outcome = PaymentOutcome.rejected("Transaction not completed")
        self.init_failure = None
        self.before_resolve = None
        self.resolved = []
        self.confirmed = []
        self.queried = []
        self._counter = 0

    def initiate(self, order_ref, amount):
        if self.init_failure is not None:
            raise self.init_failure
        self._counter += 1
        return PaymentInit(token=f"tbk_async{self._counter:04d}", redirect_url=REDIRECT_URL)

    def resolve_synchronously(self, order_ref, amount):
        self.resolved.append((order_ref, amount))
        if self.before_resolve is not None:
            self.before_resolve()
        return self.outcome

    def confirm(self, token):
        self.confirmed.append(token)
        return self.confirm_outcome.model_copy(update={"gateway_token": token})

    def query_status(self, token):
        self.queried.append(token)
        return self.status_outcome.model_copy(update={"gateway_token": token})


@pytest.fixture
def settings():
    return Settings(database_url="sqlite://", log_file=None)


@pytest.fixture
def engine(settings):
    engine = create_db_engine(settings.database_url)
    yield engine
    engine.dispose()


@pytest.fixture
def gateway():
    return ScriptedGateway()


@pytest.fixture
def manager(settings, engine, gateway):
    return build_order_manager(settings, engine=engine, gateway=gateway)


@pytest.fixture
def catalog(manager):
    return manager.catalog


@pytest.fixture
def ledger(manager):
    return manager.ledger


@pytest.fixture
def products(catalog):
    """Two products: a controller (price 1000, stock 5) and a headset (price 2500, stock 3)."""
    return {
        "controller": catalog.add_product("Controller", 1000, 5),
        "headset": catalog.add_product("Headset", 2500, 3),
    }


def cart(*pairs):
    return [OrderItem(product_id=product_id, quantity=quantity) for product_id, quantity in pairs]


def network_failure():
    return GatewayFailure("network-error", "Payment provider unreachable (ConnectError)")
