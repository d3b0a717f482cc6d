"""
db.py — Persistence Schema

SQLAlchemy tables for the catalog (`products`) and the order ledger
(`orders`, `order_lines`), plus the engine/session factories shared by the
catalog gateway and the ledger store.
"""

from datetime import datetime, timezone
from typing import List, Optional

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker
from sqlalchemy.pool import StaticPool


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (sa.CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),)

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    price: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    stock: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)


class OrderRecord(Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(sa.String(255), nullable=False, index=True)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False, default="PENDING")
    subtotal: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    tax: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    shipping: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    total: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    external_token: Mapped[str] = mapped_column(sa.String(128), nullable=False, unique=True, index=True)
    buy_order: Mapped[str] = mapped_column(sa.String(26), nullable=False, unique=True)
    authorization_code: Mapped[Optional[str]] = mapped_column(sa.String(64))
    status_reason: Mapped[Optional[str]] = mapped_column(sa.String(512))
    # Provider transaction details, recorded with the final status.
    response_code: Mapped[Optional[int]] = mapped_column(sa.Integer)
    payment_type_code: Mapped[Optional[str]] = mapped_column(sa.String(8))
    installments_number: Mapped[Optional[int]] = mapped_column(sa.Integer)
    card_number: Mapped[Optional[str]] = mapped_column(sa.String(19))
    transaction_date: Mapped[Optional[str]] = mapped_column(sa.String(64))
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=utcnow)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))

    lines: Mapped[List["OrderLineRecord"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderLineRecord.position",
        lazy="selectin",
    )


class OrderLineRecord(Base):
    __tablename__ = "order_lines"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    position: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    # Foreign to this module: referenced by id only, no relationship to Product.
    product_id: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    product_name: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    unit_price: Mapped[int] = mapped_column(sa.Integer, nullable=False)

    order: Mapped[OrderRecord] = relationship(back_populates="lines")


def create_db_engine(database_url: str) -> sa.Engine:
    """
    Creates the SQLAlchemy engine for the given URL.

    SQLite connections are shared across the request threadpool; an in-memory
    SQLite database is pinned to a single connection so every session sees it.
    """
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        return sa.create_engine(database_url, **kwargs)
    return sa.create_engine(database_url, pool_pre_ping=True)


def create_session_factory(engine: sa.Engine) -> sessionmaker:
    return sessionmaker(engine, expire_on_commit=False)


def init_db(engine: sa.Engine) -> None:
    Base.metadata.create_all(engine)
