# models/schema.py
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import (
    JSON, Boolean, String, Text, Integer, Numeric, DateTime, CheckConstraint,
    UniqueConstraint, Index, text
)
from models.base import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


PAYMENT_STATUSES = ("PENDING", "PROCESSING", "COMPLETED", "FAILED", "REFUNDED")
ACTIVE_PAYMENT_STATUSES = ("PENDING", "PROCESSING", "COMPLETED")
TERMINAL_PAYMENT_STATUSES = ("COMPLETED", "FAILED", "REFUNDED")
PROVIDERS = ("CARD", "WALLET")

_ACTIVE_SQL = "status IN ('PENDING','PROCESSING','COMPLETED')"


# --- USERS

class User(Base):
    __tablename__ = "users"
    username: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str | None] = mapped_column(String(255))
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    role: Mapped[str] = mapped_column(
        String, nullable=False)  # ('admin','client','professional')
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False)
    __table_args__ = (
        CheckConstraint("role in ('admin','client','professional')",
                        name="ck_users_role"),
    )


# --- CONTESTS (only the columns settlement touches)

class Contest(Base):
    __tablename__ = "contests"
    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: uuid4().hex)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    budget: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0"))
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default="PENDING_APPROVAL")
    client_id: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("budget >= 0", name="ck_contests_budget_ge_0"),
        Index("idx_contests_client", "client_id"),
        Index("idx_contests_status", "status"),
    )


# --- PAYMENTS

class Payment(Base):
    __tablename__ = "payments"
    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(16), nullable=False)
    provider_order_id: Mapped[str] = mapped_column(String, nullable=False)
    provider_payment_id: Mapped[str | None] = mapped_column(String)
    # plain reference: payments outlive the contest row
    contest_id: Mapped[str] = mapped_column(String(36), nullable=False)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    # display-currency decimal, never minor units
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default="PENDING")
    meta: Mapped[dict | None] = mapped_column("metadata", JSON)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_payments_amount_ge_0"),
        CheckConstraint(
            "status in ('PENDING','PROCESSING','COMPLETED','FAILED','REFUNDED')",
            name="ck_payments_status"),
        CheckConstraint("provider in ('CARD','WALLET')",
                        name="ck_payments_provider"),
        UniqueConstraint("provider", "provider_order_id",
                         name="uq_payments_provider_order"),
        Index("idx_payments_contest", "contest_id"),
        Index("idx_payments_status", "status"),
        # at most one active payment per contest
        Index("uq_payments_contest_active", "contest_id", unique=True,
              postgresql_where=text(_ACTIVE_SQL),
              sqlite_where=text(_ACTIVE_SQL)),
    )


class PaymentEvent(Base):
    __tablename__ = "payment_events"
    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(16), nullable=False)
    external_event_id: Mapped[str | None] = mapped_column(String)
    payment_id: Mapped[int | None] = mapped_column(
        Integer)  # intended FK to payments.id (nullable)
    event_type: Mapped[str] = mapped_column(String, nullable=False)
    raw: Mapped[str] = mapped_column(Text, nullable=False)
    signature_ok: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False)
    __table_args__ = (
        UniqueConstraint("provider", "external_event_id",
                         name="uq_paymentevents_provider_external"),
    )


# --- SETTINGS

class Setting(Base):
    __tablename__ = "settings"
    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False, default="")
    encrypted: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


# --- NOTIFICATIONS

class Notification(Base):
    __tablename__ = "notifications"
    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    link: Mapped[str | None] = mapped_column(String(512))
    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_notifications_user", "user_id", "read"),
    )
