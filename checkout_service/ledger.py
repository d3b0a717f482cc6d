"""
ledger.py — Ledger Store

Persistent record of orders and their lines. Orders are append-only: after the
PENDING record is written, the only mutation allowed is the single transition
to a terminal status, which may carry the gateway's own token once.

The transition is a conditional UPDATE guarded by `status = 'PENDING'`, which
makes the ledger the arbiter when two callbacks for the same order race.
"""

import math
from datetime import datetime
from typing import List, Optional, Sequence

import sqlalchemy as sa
from sqlalchemy.orm import sessionmaker

from .db import OrderLineRecord, OrderRecord, utcnow
from .errors import InvalidStateTransition, OrderNotFound
from .models import Order, OrderLine, OrderPage, OrderStatus, PaymentDetails, Pricing

PAYMENT_DETAIL_FIELDS = tuple(PaymentDetails.model_fields)


def _payment_details(record: OrderRecord) -> Optional[PaymentDetails]:
    values = {field: getattr(record, field) for field in PAYMENT_DETAIL_FIELDS}
    if all(value is None for value in values.values()):
        return None
    return PaymentDetails(**values)


def _to_order(record: OrderRecord) -> Order:
    return Order(
        id=record.id,
        owner_id=record.owner_id,
        status=OrderStatus(record.status),
        subtotal=record.subtotal,
        tax=record.tax,
        shipping=record.shipping,
        total=record.total,
        external_token=record.external_token,
        buy_order=record.buy_order,
        authorization_code=record.authorization_code,
        status_reason=record.status_reason,
        created_at=record.created_at,
        resolved_at=record.resolved_at,
        payment=_payment_details(record),
        lines=[
            OrderLine(
                product_id=line.product_id,
                product_name=line.product_name,
                quantity=line.quantity,
                unit_price=line.unit_price,
            )
            for line in record.lines
        ],
    )


class LedgerStore:
    """Order persistence on top of a SQLAlchemy session factory."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def create(
            self,
            owner_id: str,
            lines: Sequence[OrderLine],
            pricing: Pricing,
            external_token: str,
            buy_order: str,
    ) -> Order:
        """
        Persists a new PENDING order with its lines.

        Args:
            owner_id (str): Purchasing identity.
            lines (Sequence[OrderLine]): Line snapshots, in cart order.
            pricing (Pricing): Totals computed for these lines.
            external_token (str): Token correlating the order with the payment provider.
            buy_order (str): Provider-facing order reference.

        Returns:
            Order: The persisted order.
        """
        record = OrderRecord(
            owner_id=owner_id,
            status=OrderStatus.PENDING.value,
            subtotal=pricing.subtotal,
            tax=pricing.tax,
            shipping=pricing.shipping,
            total=pricing.total,
            external_token=external_token,
            buy_order=buy_order,
            created_at=utcnow(),
            lines=[
                OrderLineRecord(
                    position=position,
                    product_id=line.product_id,
                    product_name=line.product_name,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                )
                for position, line in enumerate(lines)
            ],
        )
        with self.session_factory() as session:
            with session.begin():
                session.add(record)
            return _to_order(record)

    def get(self, order_id: int) -> Order:
        with self.session_factory() as session:
            record = session.get(OrderRecord, order_id)
            if record is None:
                raise OrderNotFound(f"Order not found with id: {order_id}")
            return _to_order(record)

    def find_by_token(self, token: str) -> Order:
        return self._find_one(OrderRecord.external_token == token, f"Order not found with token: {token}")

    def find_by_buy_order(self, buy_order: str) -> Order:
        return self._find_one(OrderRecord.buy_order == buy_order, f"Order not found with buy order: {buy_order}")

    def _find_one(self, criterion, not_found_message: str) -> Order:
        with self.session_factory() as session:
            record = session.execute(sa.select(OrderRecord).where(criterion)).scalar_one_or_none()
            if record is None:
                raise OrderNotFound(not_found_message)
            return _to_order(record)

    def list_by_owner(self, owner_id: str) -> List[Order]:
        """Orders of one owner, newest first."""
        with self.session_factory() as session:
            records = session.execute(
                sa.select(OrderRecord)
                .where(OrderRecord.owner_id == owner_id)
                .order_by(OrderRecord.created_at.desc(), OrderRecord.id.desc())
            ).scalars().all()
            return [_to_order(record) for record in records]

    def list_all(self, page: int, size: int) -> OrderPage:
        """
        One page of all orders, newest first.

        Args:
            page (int): Zero-based page number.
            size (int): Page size.
        """
        with self.session_factory() as session:
            total_items = session.execute(sa.select(sa.func.count(OrderRecord.id))).scalar_one()
            records = session.execute(
                sa.select(OrderRecord)
                .order_by(OrderRecord.created_at.desc(), OrderRecord.id.desc())
                .offset(page * size)
                .limit(size)
            ).scalars().all()
            return OrderPage(
                items=[_to_order(record) for record in records],
                page=page,
                size=size,
                total_items=total_items,
                total_pages=math.ceil(total_items / size) if size else 0,
            )

    def list_pending_before(self, cutoff: datetime) -> List[Order]:
        with self.session_factory() as session:
            records = session.execute(
                sa.select(OrderRecord)
                .where(OrderRecord.status == OrderStatus.PENDING.value, OrderRecord.created_at < cutoff)
                .order_by(OrderRecord.created_at)
            ).scalars().all()
            return [_to_order(record) for record in records]

    def resolve(
            self,
            order_id: int,
            status: OrderStatus,
            reason: Optional[str] = None,
            authorization_code: Optional[str] = None,
            external_token: Optional[str] = None,
            payment: Optional[PaymentDetails] = None,
    ) -> Order:
        """
        Moves a PENDING order to a terminal status.

        Args:
            order_id (int): The order to resolve.
            status (OrderStatus): APPROVED or REJECTED.
            reason (str, optional): Message stored with the final status.
            authorization_code (str, optional): Provider authorization code (approved orders).
            external_token (str, optional): Gateway token replacing the locally generated one.
            payment (PaymentDetails, optional): Provider transaction details.

        Returns:
            Order: The resolved order.

        Raises:
            InvalidStateTransition: If the order is no longer PENDING. Nothing is changed.
            OrderNotFound: If the order does not exist.
        """
        if not status.is_terminal:
            raise ValueError(f"Cannot resolve an order to {status.value}")

        values = {
            "status": status.value,
            "status_reason": reason,
            "authorization_code": authorization_code,
            "resolved_at": utcnow(),
        }
        if external_token:
            values["external_token"] = external_token
        if payment is not None:
            values.update(payment.model_dump())

        with self.session_factory() as session:
            with session.begin():
                result = session.execute(
                    sa.update(OrderRecord)
                    .where(OrderRecord.id == order_id, OrderRecord.status == OrderStatus.PENDING.value)
                    .values(**values)
                )
            if (result.rowcount or 0) == 0:
                current = self.get(order_id)
                raise InvalidStateTransition(order_id, current.status.value)
        return self.get(order_id)
