"""
mock_payment_service.py — Mock Implementation of the Payment Provider (REST API)

This module provides a simulated Transbank-style payment provider for local
development and for the `mock_http` payment backend of the checkout service.
It exposes a small FastAPI application that mimics real-world payment
processing behavior.

Simulation Scenarios (switchable at runtime via POST /chaos/scenario):
    • approve  — payments are authorized (default)
    • decline  — payments are answered with approved=false / FAILED
    • reject   — requests are refused with HTTP 400
    • error    — the provider fails with HTTP 500
    • timeout  — the provider answers only after `delaySeconds`

Endpoints:
    POST /api/transaction            — Immediate charge (no redirection).
    POST /api/transaction/init       — Starts a redirect-based transaction.
    POST /api/transaction/confirm    — Confirms a transaction started with /init.
    GET  /api/transaction/status/{token} — Current state of a transaction.
    POST /chaos/scenario             — Selects the simulation scenario.

Port:
    Default: 8001 (HTTP)
"""

import logging
import time
import uuid
from typing import Dict, Literal, Optional

from fastapi import FastAPI, Header, HTTPException
from pydantic import BaseModel, Field

app = FastAPI(title="Mock Payment Service")
logging.basicConfig(level=logging.INFO)

REDIRECT_URL = "https://webpay.mock/redirect"

SCENARIO = {
    "mode": "approve",
    "delay_seconds": 10.0,
}

# token -> transaction record
TRANSACTIONS: Dict[str, dict] = {}


class TransactionRequest(BaseModel):
    """
    Represents a payment transaction request payload.

    Attributes:
        buy_order (str): Merchant order reference (at most 26 characters).
        amount (int): Amount in minor currency units.
        session_id (str): Merchant session identifier.
        return_url (str): URL the customer is sent back to after paying.
    """
    buy_order: str = Field(..., max_length=26)
    amount: int = Field(..., gt=0)
    session_id: str
    return_url: str


class ConfirmRequest(BaseModel):
    token: str


class ScenarioRequest(BaseModel):
    mode: Literal["approve", "decline", "reject", "error", "timeout"]
    delaySeconds: Optional[float] = Field(None, ge=0)


def _simulate_failures(reference: str):
    """
    Applies the active scenario to a request.

    Raises:
        HTTPException(400): In `reject` mode.
        HTTPException(500): In `error` mode.
    """
    mode = SCENARIO["mode"]
    if mode == "reject":
        logging.warning(f"[PS] Request for {reference} refused (simulated 400).")
        raise HTTPException(status_code=400, detail={"errorCode": "invalid_request", "message": "Request refused."})
    if mode == "error":
        logging.error(f"[PS] Internal failure for {reference} (simulated 500).")
        raise HTTPException(status_code=500, detail={"errorCode": "internal_error", "message": "Provider failure."})
    if mode == "timeout":
        logging.info(f"[PS] Simulating timeout for {reference}...")
        time.sleep(SCENARIO["delay_seconds"])
        logging.error(f"[PS] Timeout request {reference} finished (too late).")


def _result(transaction: dict) -> dict:
    """Settles a transaction under the active scenario and records the outcome on it."""
    approved = SCENARIO["mode"] != "decline"
    transaction.update({
        "status": "AUTHORIZED" if approved else "FAILED",
        "authorization_code": f"AUTH-{int(time.time() * 1000)}" if approved else None,
        "response_code": 0 if approved else -1,
        "payment_type_code": "VD",
        "installments_number": 0,
        "card_detail": {"card_number": "6623"},
        "transaction_date": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
    })
    return {
        **transaction,
        "approved": approved,
        "message": "Payment approved" if approved else "Card declined",
    }


def _new_transaction(request: TransactionRequest) -> dict:
    token = f"tbk_{uuid.uuid4().hex}"
    transaction = {
        "token": token,
        "buy_order": request.buy_order,
        "session_id": request.session_id,
        "amount": request.amount,
        "status": "INITIALIZED",
    }
    TRANSACTIONS[token] = transaction
    return transaction


@app.post("/api/transaction")
def create_transaction(
        request: TransactionRequest,
        idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key")
):
    """
    Processes a payment immediately, without redirection.

    Args:
        request (TransactionRequest): Buy order, amount, session id and return URL.
        idempotency_key (str, optional): Client supplied idempotency key.

    Returns:
        dict: Transaction result including token, approved flag, status and authorization code.
    """
    logging.info(f"[PS] Payment request for {request.buy_order} (idempotency: {idempotency_key})")
    _simulate_failures(request.buy_order)
    transaction = _new_transaction(request)
    result = _result(transaction)
    logging.info(f"[PS] Payment for {request.buy_order}: {result['status']}.")
    return result


@app.post("/api/transaction/init")
def init_transaction(
        request: TransactionRequest,
        idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key")
):
    """
    Starts a transaction that the customer completes on the (mock) payment form.

    Returns:
        dict: `token` and `url` of the payment form.
    """
    logging.info(f"[PS] Init request for {request.buy_order} (idempotency: {idempotency_key})")
    _simulate_failures(request.buy_order)
    transaction = _new_transaction(request)
    return {"token": transaction["token"], "url": REDIRECT_URL}


@app.post("/api/transaction/confirm")
def confirm_transaction(request: ConfirmRequest):
    """
    Confirms a transaction previously started with /api/transaction/init.

    Raises:
        HTTPException(404): Unknown token.
        HTTPException(422): Transaction already confirmed.
    """
    transaction = TRANSACTIONS.get(request.token)
    if transaction is None:
        raise HTTPException(status_code=404, detail={"errorCode": "not_found", "message": "Unknown token."})
    if transaction["status"] != "INITIALIZED":
        raise HTTPException(status_code=422, detail={"errorCode": "already_confirmed", "message": "Transaction already confirmed."})
    _simulate_failures(transaction["buy_order"])
    return _result(transaction)


@app.get("/api/transaction/status/{token}")
def transaction_status(token: str):
    """
    Current state of a transaction: INITIALIZED until settled, then AUTHORIZED or
    FAILED with the settlement details. Does not change the transaction.
    """
    transaction = TRANSACTIONS.get(token)
    if transaction is None:
        raise HTTPException(status_code=404, detail={"errorCode": "not_found", "message": "Unknown token."})
    return transaction


@app.post("/chaos/scenario")
def set_scenario(request: ScenarioRequest):
    """Selects the behavior of subsequent payment requests."""
    SCENARIO["mode"] = request.mode
    if request.delaySeconds is not None:
        SCENARIO["delay_seconds"] = request.delaySeconds
    logging.info(f"[PS] Scenario set to {request.mode}.")
    return {"mode": SCENARIO["mode"], "delaySeconds": SCENARIO["delay_seconds"]}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8001)
