from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

MONEY = Numeric(18, 3)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    username: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)
    # Only ever mutated through database.adjust_balance.
    balance: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    orders: Mapped[List["Order"]] = relationship(back_populates="user")


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)

    # Snapshot of the vendor service at placement time
    service_id: Mapped[int] = mapped_column(Integer)
    service_name: Mapped[str] = mapped_column(String(512))

    quantity: Mapped[int] = mapped_column(Integer)
    link: Mapped[str] = mapped_column(String(1024))

    # Amount actually charged (3 decimals), independent of later vendor rates
    price: Mapped[Decimal] = mapped_column(MONEY)

    status: Mapped[str] = mapped_column(String(64), default="Pending")
    api_order_id: Mapped[str] = mapped_column(String(64), index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, index=True)

    user: Mapped["User"] = relationship(back_populates="orders")


class ReconciliationEntry(Base):
    """Vendor order that was accepted upstream but never committed locally."""

    __tablename__ = "reconciliation_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    api_order_id: Mapped[str] = mapped_column(String(64), index=True)

    service_id: Mapped[int] = mapped_column(Integer)
    service_name: Mapped[str] = mapped_column(String(512))
    quantity: Mapped[int] = mapped_column(Integer)
    link: Mapped[str] = mapped_column(String(1024))
    amount: Mapped[Decimal] = mapped_column(MONEY)

    reason: Mapped[str] = mapped_column(String(512))
    resolved: Mapped[bool] = mapped_column(Boolean, default=False, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
