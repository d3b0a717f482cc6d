"""
This module provides the payment gateway adapters used by the checkout workflow.
One interface (`PaymentGateway`) is implemented by three backends, selected by
configuration in `build_payment_gateway`:
- LocalPaymentSimulator: in-process simulator, resolves immediately
- MockPaymentClient: REST client for the mock payment provider (mock_services)
- WebpayPlusClient: REST client for Transbank Webpay Plus (redirect only)
Each class encapsulates its protocol logic, error handling, and connection management.

Transport problems never leave this module as raw httpx exceptions. They are
classified as client-error, server-error or network-error and either turned into
a rejected PaymentOutcome (`resolve_synchronously`, `confirm`, `query_status`) or raised as
GatewayFailure (`initiate`, where no order exists yet).
"""

import abc
import time
import uuid
from typing import Dict, Optional

import httpx

from .config import Settings
from .errors import CLIENT_ERROR, NETWORK_ERROR, SERVER_ERROR, GatewayFailure
from .logging_config import get_logger
from .models import PaymentDetails, PaymentInit, PaymentOutcome

log = get_logger(__name__)

APPROVED_STATUS = "AUTHORIZED"


def _new_token() -> str:
    return f"tbk_{uuid.uuid4().hex}"


def _new_session_id() -> str:
    return uuid.uuid4().hex[:20]


def outcome_from_provider(payload: dict, token: Optional[str] = None) -> PaymentOutcome:
    """
    Normalizes a provider response body into a PaymentOutcome.

    A payment counts as approved if the provider says `approved`, reports the
    status AUTHORIZED, or answers with response code 0.

    Args:
        payload (dict): Decoded JSON response.
        token (str, optional): Token to fall back to when the body carries none.

    Returns:
        PaymentOutcome: The normalized result.
    """
    status = str(payload.get("status") or "").upper()
    response_code = payload.get("response_code")
    approved = bool(payload.get("approved")) or status == APPROVED_STATUS or response_code == 0
    gateway_token = payload.get("token") or token
    message = payload.get("message")
    details = details_from_provider(payload)

    if approved:
        return PaymentOutcome(
            approved=True,
            gateway_token=gateway_token,
            authorization_code=payload.get("authorization_code"),
            message=message or "Payment approved",
            details=details,
        )

    reason = message or f"Payment {status or 'REJECTED'} by provider (response code: {response_code})"
    return PaymentOutcome(approved=False, gateway_token=gateway_token, failure_reason=reason,
                          message=reason, details=details)


def details_from_provider(payload: dict) -> Optional[PaymentDetails]:
    """Extracts the transaction details of a commit or status answer, if any."""
    card = payload.get("card_detail")
    values = {
        "response_code": payload.get("response_code"),
        "payment_type_code": payload.get("payment_type_code"),
        "installments_number": payload.get("installments_number"),
        "card_number": card.get("card_number") if isinstance(card, dict) else None,
        "transaction_date": payload.get("transaction_date"),
    }
    if all(value is None for value in values.values()):
        return None
    return PaymentDetails(**values)


class PaymentGateway(abc.ABC):
    """
    Uniform contract over the configured payment backend.

    Attributes:
        supports_sync (bool): Whether `resolve_synchronously` can settle a payment
            without browser redirection.
    """
    supports_sync = True

    @abc.abstractmethod
    def initiate(self, order_ref: str, amount: int) -> PaymentInit:
        """
        Starts a redirect-based payment.

        Raises:
            GatewayFailure: If the provider cannot be reached or refuses the request.
        """

    @abc.abstractmethod
    def resolve_synchronously(self, order_ref: str, amount: int) -> PaymentOutcome:
        """Settles a payment immediately. Never raises for provider failures."""

    @abc.abstractmethod
    def confirm(self, token: str) -> PaymentOutcome:
        """Completes a payment started by `initiate`. Never raises for provider failures."""

    @abc.abstractmethod
    def query_status(self, token: str) -> PaymentOutcome:
        """
        Asks the provider for the current state of a transaction without changing it.
        Only an authorized transaction is reported as approved. Never raises for
        provider failures.
        """

    def close(self):
        """Releases network resources, if any."""


# --- Local simulator (no network) ---
class LocalPaymentSimulator(PaymentGateway):
    """
    In-process payment simulator. Approves every payment unless built with
    `approve=False`.
    """

    def __init__(self, settings: Settings, approve: bool = True):
        self.redirect_url = settings.webpay_redirect_url
        self.approve = approve
        # token -> outcome of every transaction settled by this simulator
        self.settled: Dict[str, PaymentOutcome] = {}

    def initiate(self, order_ref: str, amount: int) -> PaymentInit:
        token = _new_token()
        log.info(f"[Order: {order_ref}] Local simulator: transaction initiated (token: {token}, amount: {amount}).")
        return PaymentInit(token=token, redirect_url=self.redirect_url)

    def resolve_synchronously(self, order_ref: str, amount: int) -> PaymentOutcome:
        log.info(f"[Order: {order_ref}] Local simulator: processing payment of {amount}.")
        return self._settle(_new_token())

    def confirm(self, token: str) -> PaymentOutcome:
        return self._settle(token)

    def query_status(self, token: str) -> PaymentOutcome:
        outcome = self.settled.get(token)
        if outcome is None:
            return PaymentOutcome.rejected("Transaction not completed", gateway_token=token)
        return outcome

    def _settle(self, token: str) -> PaymentOutcome:
        if not self.approve:
            outcome = PaymentOutcome.rejected("Payment declined by local simulator", gateway_token=token)
        else:
            outcome = PaymentOutcome(
                approved=True,
                gateway_token=token,
                authorization_code=f"AUTH-{int(time.time() * 1000)}",
                message="Payment approved",
            )
        self.settled[token] = outcome
        return outcome


# --- Shared HTTP plumbing ---
class _HttpPaymentClient(PaymentGateway):
    """
    Base for REST backends: owns the httpx client and the error classification.
    """

    def __init__(self, base_url: str, settings: Settings, headers: Optional[dict] = None,
                 transport: Optional[httpx.BaseTransport] = None):
        """
        Initializes the HTTP client with proper timeout configuration.

        Args:
            base_url (str): Provider base URL.
            settings (Settings): Supplies the connect and read timeouts.
            headers (dict, optional): Headers sent with every request.
            transport (httpx.BaseTransport, optional): Custom transport (used in tests).
        """
        timeout_config = httpx.Timeout(settings.connect_timeout, read=settings.read_timeout)
        self.client = httpx.Client(base_url=base_url, timeout=timeout_config, headers=headers, transport=transport)

    def close(self):
        """Closes the HTTP client session."""
        self.client.close()

    def _send(self, method: str, path: str, log_prefix: str, **kwargs) -> dict:
        """
        Sends one request and returns the decoded JSON object.

        Raises:
            GatewayFailure: kind network-error for timeouts and connection problems,
                client-error for 4xx answers, server-error for 5xx answers and
                malformed bodies.
        """
        try:
            response = self.client.request(method, path, **kwargs)
            response.raise_for_status()
            payload = response.json()
        except httpx.TimeoutException as e:
            log.error(f"{log_prefix} Payment provider timeout ({type(e).__name__}). Status unknown.")
            raise GatewayFailure(NETWORK_ERROR, f"Payment provider timed out ({type(e).__name__})") from e
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            if status_code < 500:
                log.warning(f"{log_prefix} Payment provider rejected the request (HTTP {status_code}): {e.response.text}")
                raise GatewayFailure(CLIENT_ERROR, f"Payment provider rejected the request (HTTP {status_code})") from e
            log.error(f"{log_prefix} Payment provider failure (HTTP {status_code}): {e.response.text}")
            raise GatewayFailure(SERVER_ERROR, f"Payment provider failed (HTTP {status_code})") from e
        except httpx.TransportError as e:
            log.error(f"{log_prefix} Payment provider unreachable: {e}")
            raise GatewayFailure(NETWORK_ERROR, f"Payment provider unreachable ({type(e).__name__})") from e
        except ValueError as e:
            log.error(f"{log_prefix} Payment provider sent an undecodable body: {e}")
            raise GatewayFailure(SERVER_ERROR, "Payment provider sent a malformed response") from e

        if not isinstance(payload, dict):
            log.error(f"{log_prefix} Payment provider sent an unexpected body: {payload!r}")
            raise GatewayFailure(SERVER_ERROR, "Payment provider sent a malformed response")
        return payload

    def _init_from_payload(self, payload: dict, log_prefix: str) -> PaymentInit:
        token = payload.get("token")
        url = payload.get("url") or payload.get("redirect_url")
        if not token or not url:
            log.error(f"{log_prefix} Init answer without token or url: {payload}")
            raise GatewayFailure(SERVER_ERROR, "Payment provider sent a malformed response")
        return PaymentInit(token=token, redirect_url=url)

    def _outcome_of(self, method: str, path: str, token: str, **kwargs) -> PaymentOutcome:
        """Calls a token-scoped endpoint; failures become a rejected outcome."""
        log_prefix = f"[Token: {token}]"
        try:
            payload = self._send(method, path, log_prefix, **kwargs)
        except GatewayFailure as e:
            return PaymentOutcome.rejected(e.reason, gateway_token=token)

        log.info(f"{log_prefix} Provider answered (status: {payload.get('status')}, "
                 f"response_code: {payload.get('response_code')}).")
        return outcome_from_provider(payload, token=token)


# --- Mock provider client (REST) ---
class MockPaymentClient(_HttpPaymentClient):
    """
    Client for the mock payment provider (see mock_services/mock_payment_service.py).
    Supports both the immediate charge and the init/confirm redirect flow.
    """
    TRANSACTION_PATH = "/api/transaction"

    def __init__(self, settings: Settings, transport: Optional[httpx.BaseTransport] = None):
        super().__init__(settings.payment_service_url, settings, transport=transport)
        self.return_url = settings.webpay_return_url

    def _transaction_body(self, order_ref: str, amount: int) -> dict:
        return {
            "buy_order": order_ref,
            "amount": amount,
            "session_id": _new_session_id(),
            "return_url": self.return_url,
        }

    def initiate(self, order_ref: str, amount: int) -> PaymentInit:
        log_prefix = f"[Order: {order_ref}]"
        payload = self._send(
            "POST", f"{self.TRANSACTION_PATH}/init", log_prefix,
            json=self._transaction_body(order_ref, amount),
            headers={"Idempotency-Key": order_ref},
        )
        return self._init_from_payload(payload, log_prefix)

    def resolve_synchronously(self, order_ref: str, amount: int) -> PaymentOutcome:
        log_prefix = f"[Order: {order_ref}]"
        log.info(f"{log_prefix} Calling mock payment provider (amount: {amount}).")
        try:
            payload = self._send(
                "POST", self.TRANSACTION_PATH, log_prefix,
                json=self._transaction_body(order_ref, amount),
                headers={"Idempotency-Key": order_ref},
            )
        except GatewayFailure as e:
            return PaymentOutcome.rejected(e.reason)

        outcome = outcome_from_provider(payload)
        log.info(f"{log_prefix} Mock provider answered (token: {outcome.gateway_token}, approved: {outcome.approved}).")
        return outcome

    def confirm(self, token: str) -> PaymentOutcome:
        return self._outcome_of("POST", f"{self.TRANSACTION_PATH}/confirm", token, json={"token": token})

    def query_status(self, token: str) -> PaymentOutcome:
        return self._outcome_of("GET", f"{self.TRANSACTION_PATH}/status/{token}", token)


# --- Webpay Plus client (REST) ---
class WebpayPlusClient(_HttpPaymentClient):
    """
    Client for the Transbank Webpay Plus REST API (v1.2).

    Webpay always requires browser redirection: `initiate` creates the
    transaction, the customer pays on the Webpay form, and `confirm` commits
    the transaction once the customer is sent back with `token_ws`.
    """
    supports_sync = False
    TRANSACTIONS_PATH = "/rswebpaytransaction/api/webpay/v1.2/transactions"

    def __init__(self, settings: Settings, transport: Optional[httpx.BaseTransport] = None):
        headers = {
            "Tbk-Api-Key-Id": settings.webpay_commerce_code,
            "Tbk-Api-Key-Secret": settings.webpay_api_key,
            "Content-Type": "application/json",
        }
        super().__init__(settings.webpay_host, settings, headers=headers, transport=transport)
        self.return_url = settings.webpay_return_url

    def initiate(self, order_ref: str, amount: int) -> PaymentInit:
        log_prefix = f"[Order: {order_ref}]"
        payload = self._send(
            "POST", self.TRANSACTIONS_PATH, log_prefix,
            json={
                "buy_order": order_ref,
                "session_id": _new_session_id(),
                "amount": amount,
                "return_url": self.return_url,
            },
        )
        init = self._init_from_payload(payload, log_prefix)
        log.info(f"{log_prefix} Webpay transaction created (token: {init.token}).")
        return init

    def resolve_synchronously(self, order_ref: str, amount: int) -> PaymentOutcome:
        log.warning(f"[Order: {order_ref}] Webpay cannot settle a payment without redirection.")
        return PaymentOutcome.rejected(f"{CLIENT_ERROR}: Webpay Plus requires browser redirection")

    def confirm(self, token: str) -> PaymentOutcome:
        """Commits the transaction (PUT). Webpay answers a second commit with HTTP 422."""
        return self._outcome_of("PUT", f"{self.TRANSACTIONS_PATH}/{token}", token)

    def query_status(self, token: str) -> PaymentOutcome:
        return self._outcome_of("GET", f"{self.TRANSACTIONS_PATH}/{token}", token)


def build_payment_gateway(settings: Settings) -> PaymentGateway:
    """
    Builds the payment backend named by `settings.payment_backend`.

    Returns:
        PaymentGateway: LocalPaymentSimulator, MockPaymentClient or WebpayPlusClient.
    """
    backends = {
        "local": LocalPaymentSimulator,
        "mock_http": MockPaymentClient,
        "webpay": WebpayPlusClient,
    }
    gateway = backends[settings.payment_backend](settings)
    log.info(f"Payment backend configured: {type(gateway).__name__}")
    return gateway
