"""
The mock payment provider on its own, and the checkout service talking to it
over HTTP through the `mock_http` backend.
"""

from datetime import timedelta

import httpx
import pytest
from fastapi.testclient import TestClient

from checkout_service.clients import MockPaymentClient
from checkout_service.db import utcnow
from checkout_service.models import OrderStatus
from checkout_service.workflow import build_order_manager
from mock_services import mock_payment_service

from conftest import cart

TRANSACTION = {
    "buy_order": "ORD123",
    "amount": 6370,
    "session_id": "session-1",
    "return_url": "http://localhost:8000/v1/orders/webpay/return",
}


@pytest.fixture(autouse=True)
def reset_provider():
    mock_payment_service.SCENARIO.update(mode="approve", delay_seconds=10.0)
    mock_payment_service.TRANSACTIONS.clear()
    yield
    mock_payment_service.TRANSACTIONS.clear()


@pytest.fixture
def provider():
    return TestClient(mock_payment_service.app)


def test_immediate_charge_is_approved(provider):
    response = provider.post("/api/transaction", json=TRANSACTION, headers={"Idempotency-Key": "ORD123"})

    assert response.status_code == 200
    body = response.json()
    assert body["approved"] is True
    assert body["status"] == "AUTHORIZED"
    assert body["response_code"] == 0
    assert body["authorization_code"].startswith("AUTH-")
    assert provider.get(f"/api/transaction/status/{body['token']}").json()["status"] == "AUTHORIZED"


def test_decline_scenario(provider):
    provider.post("/chaos/scenario", json={"mode": "decline"})

    body = provider.post("/api/transaction", json=TRANSACTION).json()

    assert body["approved"] is False
    assert body["status"] == "FAILED"
    assert body["authorization_code"] is None


@pytest.mark.parametrize("mode, status_code", [("reject", 400), ("error", 500)])
def test_failure_scenarios(provider, mode, status_code):
    provider.post("/chaos/scenario", json={"mode": mode})

    assert provider.post("/api/transaction", json=TRANSACTION).status_code == status_code
    assert mock_payment_service.TRANSACTIONS == {}


def test_timeout_scenario_delay_is_configurable(provider):
    response = provider.post("/chaos/scenario", json={"mode": "timeout", "delaySeconds": 0})

    assert response.json() == {"mode": "timeout", "delaySeconds": 0}
    assert provider.post("/api/transaction", json=TRANSACTION).json()["approved"] is True


def test_unknown_scenario_is_refused(provider):
    assert provider.post("/chaos/scenario", json={"mode": "explode"}).status_code == 422


def test_buy_order_longer_than_26_characters_is_refused(provider):
    assert provider.post("/api/transaction", json={**TRANSACTION, "buy_order": "X" * 27}).status_code == 422


def test_init_then_confirm_once(provider):
    init = provider.post("/api/transaction/init", json=TRANSACTION).json()

    assert init["url"] == mock_payment_service.REDIRECT_URL
    assert provider.get(f"/api/transaction/status/{init['token']}").json()["status"] == "INITIALIZED"

    first = provider.post("/api/transaction/confirm", json={"token": init["token"]})
    second = provider.post("/api/transaction/confirm", json={"token": init["token"]})

    assert first.json()["approved"] is True
    assert second.status_code == 422


def test_confirm_unknown_token(provider):
    assert provider.post("/api/transaction/confirm", json={"token": "tbk_missing"}).status_code == 404
    assert provider.get("/api/transaction/status/tbk_missing").status_code == 404


# --- Checkout service against the mock provider ---

def _forwarding_transport(provider):
    def forward(request):
        headers = {"content-type": request.headers.get("content-type", "application/json")}
        if "Idempotency-Key" in request.headers:
            headers["Idempotency-Key"] = request.headers["Idempotency-Key"]
        response = provider.request(request.method, request.url.path, content=request.content, headers=headers)
        return httpx.Response(response.status_code, content=response.content,
                              headers={"content-type": response.headers.get("content-type", "application/json")})

    return httpx.MockTransport(forward)


@pytest.fixture
def http_manager(settings, engine, provider):
    http_settings = settings.model_copy(update={"payment_backend": "mock_http"})
    gateway = MockPaymentClient(http_settings, transport=_forwarding_transport(provider))
    manager = build_order_manager(http_settings, engine=engine, gateway=gateway)
    yield manager
    manager.close()


@pytest.fixture
def stock(http_manager):
    return http_manager.catalog.add_product("Controller", 1000, 5)


def test_sync_order_through_the_provider(http_manager, stock):
    order = http_manager.create_order_sync("alice", cart((stock, 2)))

    assert order.status is OrderStatus.APPROVED
    assert order.external_token in mock_payment_service.TRANSACTIONS
    assert order.authorization_code.startswith("AUTH-")
    assert http_manager.catalog.get_stock(stock) == 3


@pytest.mark.parametrize("mode, reason_prefix", [
    ("decline", "Card declined"),
    ("reject", "client-error"),
    ("error", "server-error"),
])
def test_sync_order_rejected_by_the_provider(http_manager, stock, provider, mode, reason_prefix):
    provider.post("/chaos/scenario", json={"mode": mode})

    order = http_manager.create_order_sync("alice", cart((stock, 2)))

    assert order.status is OrderStatus.REJECTED
    assert order.status_reason.startswith(reason_prefix)
    assert http_manager.catalog.get_stock(stock) == 5


def test_redirect_flow_through_the_provider(http_manager, stock):
    init = http_manager.init_order_async("alice", cart((stock, 1)))

    assert init.redirect_url == mock_payment_service.REDIRECT_URL

    ack = http_manager.handle_return(token_ws=init.token)

    assert ack.status is OrderStatus.APPROVED
    assert mock_payment_service.TRANSACTIONS[init.token]["status"] == "AUTHORIZED"
    assert http_manager.catalog.get_stock(stock) == 4
    assert http_manager.ledger.get(init.order_id).payment.card_number == "6623"


def test_payment_status_includes_the_provider_view(http_manager, stock, provider):
    init = http_manager.init_order_async("alice", cart((stock, 1)))

    assert http_manager.get_payment_status(init.token).provider.approved is False

    provider.post("/api/transaction/confirm", json={"token": init.token})

    status = http_manager.get_payment_status(init.token)
    assert status.status is OrderStatus.PENDING
    assert status.provider.approved is True


def test_sweep_recovers_a_lost_callback(http_manager, stock, provider, settings):
    paid = http_manager.init_order_async("alice", cart((stock, 2)))
    abandoned = http_manager.init_order_async("bob", cart((stock, 1)))
    # The customer paid, but the callback never reached the checkout service.
    provider.post("/api/transaction/confirm", json={"token": paid.token})
    later = utcnow() + timedelta(minutes=settings.pending_order_ttl_minutes + 1)

    assert http_manager.expire_stale_orders(now=later) == [abandoned.order_id]
    assert http_manager.ledger.get(paid.order_id).status is OrderStatus.APPROVED
    assert http_manager.ledger.get(paid.order_id).payment.response_code == 0
    assert http_manager.catalog.get_stock(stock) == 3
