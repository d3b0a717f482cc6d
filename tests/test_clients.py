import json

import httpx
import pytest

from checkout_service.clients import (
    LocalPaymentSimulator,
    MockPaymentClient,
    WebpayPlusClient,
    build_payment_gateway,
    details_from_provider,
    outcome_from_provider,
)
from checkout_service.config import Settings
from checkout_service.errors import GatewayFailure
from checkout_service.models import PaymentDetails

SETTINGS = Settings(
    payment_service_url="http://payment.test",
    webpay_host="https://webpay.test",
    webpay_commerce_code="597000000001",
    webpay_api_key="secret",
    connect_timeout=1.5,
    read_timeout=4.0,
    log_file=None,
)


def _client(cls, handler):
    return cls(SETTINGS, transport=httpx.MockTransport(handler))


def _approved_body(**overrides):
    body = {
        "token": "tbk_abc12345",
        "approved": True,
        "status": "AUTHORIZED",
        "message": "Payment approved",
        "authorization_code": "AUTH-42",
        "response_code": 0,
    }
    body.update(overrides)
    return body


# --- Response normalization ---

@pytest.mark.parametrize("payload", [
    {"approved": True},
    {"status": "authorized"},
    {"response_code": 0},
])
def test_any_success_signal_counts_as_approved(payload):
    assert outcome_from_provider(payload).approved is True


def test_declined_payload_becomes_rejected_outcome():
    outcome = outcome_from_provider({"approved": False, "status": "FAILED", "response_code": -1,
                                     "authorization_code": "IGNORED"}, token="tbk_x")

    assert outcome.approved is False
    assert outcome.gateway_token == "tbk_x"
    assert outcome.authorization_code is None
    assert "FAILED" in outcome.failure_reason


# --- Mock provider client ---

def test_mock_client_sync_charge():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        seen["idempotency"] = request.headers.get("Idempotency-Key")
        return httpx.Response(200, json=_approved_body())

    outcome = _client(MockPaymentClient, handler).resolve_synchronously("ORD123", 6370)

    assert outcome.approved is True
    assert outcome.gateway_token == "tbk_abc12345"
    assert outcome.authorization_code == "AUTH-42"
    assert seen["path"] == "/api/transaction"
    assert seen["body"]["buy_order"] == "ORD123"
    assert seen["body"]["amount"] == 6370
    assert seen["body"]["return_url"] == SETTINGS.webpay_return_url
    assert seen["idempotency"] == "ORD123"


def test_mock_client_business_decline():
    def handler(request):
        return httpx.Response(200, json={"token": "tbk_d", "approved": False, "status": "FAILED",
                                         "message": "Card declined", "response_code": -1})

    outcome = _client(MockPaymentClient, handler).resolve_synchronously("ORD1", 100)

    assert outcome.approved is False
    assert outcome.failure_reason == "Card declined"


@pytest.mark.parametrize("handler, kind", [
    (lambda request: httpx.Response(400, json={"errorCode": "invalid_request"}), "client-error"),
    (lambda request: httpx.Response(402, json={"errorCode": "payment_declined"}), "client-error"),
    (lambda request: httpx.Response(500, text="boom"), "server-error"),
    (lambda request: httpx.Response(503, text="maintenance"), "server-error"),
    (lambda request: httpx.Response(200, text="<html>not json</html>"), "server-error"),
    (lambda request: httpx.Response(200, content=b"null"), "server-error"),
])
def test_mock_client_http_failures_are_classified(handler, kind):
    outcome = _client(MockPaymentClient, handler).resolve_synchronously("ORD1", 100)

    assert outcome.approved is False
    assert outcome.failure_reason.startswith(f"{kind}: ")


@pytest.mark.parametrize("exception", [httpx.ReadTimeout, httpx.ConnectTimeout, httpx.ConnectError])
def test_mock_client_transport_failures_are_network_errors(exception):
    def handler(request):
        raise exception("simulated", request=request)

    outcome = _client(MockPaymentClient, handler).resolve_synchronously("ORD1", 100)

    assert outcome.approved is False
    assert outcome.failure_reason.startswith("network-error: ")


def test_mock_client_timeouts_come_from_settings():
    client = _client(MockPaymentClient, lambda request: httpx.Response(200, json={}))

    assert client.client.timeout.connect == 1.5
    assert client.client.timeout.read == 4.0


def test_mock_client_initiate():
    def handler(request):
        assert request.url.path == "/api/transaction/init"
        return httpx.Response(200, json={"token": "tbk_init", "url": "https://webpay.mock/redirect"})

    init = _client(MockPaymentClient, handler).initiate("ORD1", 100)

    assert init.token == "tbk_init"
    assert init.redirect_url == "https://webpay.mock/redirect"


@pytest.mark.parametrize("handler, kind", [
    (lambda request: httpx.Response(503, text="down"), "server-error"),
    (lambda request: httpx.Response(200, json={"token": "tbk_only"}), "server-error"),
    (lambda request: httpx.Response(422, json={}), "client-error"),
])
def test_mock_client_initiate_raises_gateway_failure(handler, kind):
    with pytest.raises(GatewayFailure) as exc_info:
        _client(MockPaymentClient, handler).initiate("ORD1", 100)

    assert exc_info.value.kind == kind


def test_mock_client_confirm():
    def handler(request):
        assert request.url.path == "/api/transaction/confirm"
        assert json.loads(request.content) == {"token": "tbk_init"}
        return httpx.Response(200, json=_approved_body(token=None))

    outcome = _client(MockPaymentClient, handler).confirm("tbk_init")

    assert outcome.approved is True
    assert outcome.gateway_token == "tbk_init"


def test_mock_client_confirm_network_failure_is_rejection():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    outcome = _client(MockPaymentClient, handler).confirm("tbk_init")

    assert outcome.approved is False
    assert outcome.gateway_token == "tbk_init"


# --- Webpay Plus client ---

def test_webpay_initiate_creates_transaction():
    seen = {}

    def handler(request):
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "token": "01ab23cd",
            "url": "https://webpay.test/webpayserver/initTransaction",
        })

    init = _client(WebpayPlusClient, handler).initiate("ORDABC", 9345)

    assert init.token == "01ab23cd"
    assert init.redirect_url.endswith("/initTransaction")
    assert seen["method"] == "POST"
    assert seen["path"] == WebpayPlusClient.TRANSACTIONS_PATH
    assert seen["headers"]["Tbk-Api-Key-Id"] == "597000000001"
    assert seen["headers"]["Tbk-Api-Key-Secret"] == "secret"
    assert seen["body"]["buy_order"] == "ORDABC"
    assert seen["body"]["amount"] == 9345
    assert len(seen["body"]["session_id"]) == 20


def test_webpay_confirm_commits_transaction():
    def handler(request):
        assert request.method == "PUT"
        assert request.url.path == f"{WebpayPlusClient.TRANSACTIONS_PATH}/01ab23cd"
        return httpx.Response(200, json={
            "vci": "TSY",
            "amount": 9345,
            "status": "AUTHORIZED",
            "buy_order": "ORDABC",
            "authorization_code": "1213",
            "payment_type_code": "VN",
            "response_code": 0,
            "installments_number": 0,
        })

    outcome = _client(WebpayPlusClient, handler).confirm("01ab23cd")

    assert outcome.approved is True
    assert outcome.authorization_code == "1213"
    assert outcome.gateway_token == "01ab23cd"


def test_webpay_confirm_declined():
    def handler(request):
        return httpx.Response(200, json={"status": "FAILED", "response_code": -1, "authorization_code": "000000"})

    outcome = _client(WebpayPlusClient, handler).confirm("01ab23cd")

    assert outcome.approved is False
    assert outcome.authorization_code is None


def test_webpay_cannot_resolve_synchronously():
    calls = []
    client = _client(WebpayPlusClient, lambda request: calls.append(request) or httpx.Response(500))

    outcome = client.resolve_synchronously("ORD1", 100)

    assert client.supports_sync is False
    assert outcome.approved is False
    assert outcome.failure_reason.startswith("client-error: ")
    assert calls == []


# --- Local simulator and backend selection ---

def test_local_simulator_approves():
    outcome = LocalPaymentSimulator(SETTINGS).resolve_synchronously("ORD1", 100)

    assert outcome.approved is True
    assert outcome.gateway_token.startswith("tbk_")
    assert outcome.authorization_code.startswith("AUTH-")


def test_local_simulator_can_decline():
    simulator = LocalPaymentSimulator(SETTINGS, approve=False)

    assert simulator.resolve_synchronously("ORD1", 100).approved is False
    assert simulator.confirm("tbk_1").approved is False


def test_local_simulator_initiate_returns_redirect():
    init = LocalPaymentSimulator(SETTINGS).initiate("ORD1", 100)

    assert init.token.startswith("tbk_")
    assert init.redirect_url == SETTINGS.webpay_redirect_url


@pytest.mark.parametrize("backend, expected", [
    ("local", LocalPaymentSimulator),
    ("mock_http", MockPaymentClient),
    ("webpay", WebpayPlusClient),
])
def test_build_payment_gateway(backend, expected):
    gateway = build_payment_gateway(SETTINGS.model_copy(update={"payment_backend": backend}))
    try:
        assert type(gateway) is expected
    finally:
        gateway.close()


# --- Transaction status queries ---

def test_mock_client_query_status_of_unsettled_transaction():
    def handler(request):
        assert request.method == "GET"
        assert request.url.path == "/api/transaction/status/tbk_init"
        return httpx.Response(200, json={"token": "tbk_init", "buy_order": "ORD1", "amount": 100,
                                         "status": "INITIALIZED"})

    outcome = _client(MockPaymentClient, handler).query_status("tbk_init")

    assert outcome.approved is False
    assert outcome.gateway_token == "tbk_init"
    assert outcome.details is None


def test_mock_client_query_status_of_authorized_transaction():
    def handler(request):
        return httpx.Response(200, json={"token": "tbk_init", "status": "AUTHORIZED", "authorization_code": "AUTH-42",
                                         "response_code": 0, "payment_type_code": "VD",
                                         "card_detail": {"card_number": "6623"}})

    outcome = _client(MockPaymentClient, handler).query_status("tbk_init")

    assert outcome.approved is True
    assert outcome.authorization_code == "AUTH-42"
    assert outcome.details.card_number == "6623"


@pytest.mark.parametrize("handler, kind", [
    (lambda request: httpx.Response(404, json={"detail": "Unknown token."}), "client-error"),
    (lambda request: httpx.Response(502, text="bad gateway"), "server-error"),
])
def test_mock_client_query_status_failures_are_rejections(handler, kind):
    outcome = _client(MockPaymentClient, handler).query_status("tbk_init")

    assert outcome.approved is False
    assert outcome.failure_reason.startswith(f"{kind}: ")


def test_mock_client_query_status_network_failure():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    outcome = _client(MockPaymentClient, handler).query_status("tbk_init")

    assert outcome.approved is False
    assert outcome.failure_reason.startswith("network-error: ")


def test_webpay_query_status():
    def handler(request):
        assert request.method == "GET"
        assert request.url.path == f"{WebpayPlusClient.TRANSACTIONS_PATH}/01ab23cd"
        return httpx.Response(200, json={"status": "AUTHORIZED", "response_code": 0, "authorization_code": "1213",
                                         "payment_type_code": "VN", "installments_number": 0,
                                         "card_detail": {"card_number": "6623"},
                                         "transaction_date": "2026-10-18T12:00:00.000Z"})

    outcome = _client(WebpayPlusClient, handler).query_status("01ab23cd")

    assert outcome.approved is True
    assert outcome.details == PaymentDetails(response_code=0, payment_type_code="VN", installments_number=0,
                                             card_number="6623", transaction_date="2026-10-18T12:00:00.000Z")


def test_local_simulator_query_status():
    simulator = LocalPaymentSimulator(SETTINGS)
    init = simulator.initiate("ORD1", 100)

    assert simulator.query_status(init.token).approved is False

    simulator.confirm(init.token)

    assert simulator.query_status(init.token).approved is True


def test_local_simulator_tokens_are_full_length_and_distinct():
    simulator = LocalPaymentSimulator(SETTINGS)
    tokens = {simulator.resolve_synchronously(f"ORD{i}", 100).gateway_token for i in range(50)}

    assert len(tokens) == 50
    assert all(len(token) == len("tbk_") + 32 for token in tokens)


def test_details_from_provider():
    assert details_from_provider({"approved": True}) is None
    assert details_from_provider({"response_code": -1, "card_detail": None}) == PaymentDetails(response_code=-1)
