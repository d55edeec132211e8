"""contest fee payments: users, contests, payments, events, settings, notifications

Revision ID: 4c1f0a9e7b21
Revises:
Create Date: 2026-10-19 09:41:12.118204

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '4c1f0a9e7b21'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_ACTIVE = "status IN ('PENDING','PROCESSING','COMPLETED')"


def upgrade():
    op.create_table(
        "users",
        sa.Column("username", sa.String(), primary_key=True),
        sa.Column("email", sa.String(255)),
        sa.Column("password_hash", sa.Text(), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("role in ('admin','client','professional')", name="ck_users_role"),
    )

    op.create_table(
        "contests",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("budget", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("client_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("budget >= 0", name="ck_contests_budget_ge_0"),
    )
    op.create_index("idx_contests_client", "contests", ["client_id"])
    op.create_index("idx_contests_status", "contests", ["status"])

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("provider", sa.String(16), nullable=False),
        sa.Column("provider_order_id", sa.String(), nullable=False),
        sa.Column("provider_payment_id", sa.String()),
        sa.Column("contest_id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("metadata", sa.JSON()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint("amount >= 0", name="ck_payments_amount_ge_0"),
        sa.CheckConstraint(
            "status in ('PENDING','PROCESSING','COMPLETED','FAILED','REFUNDED')",
            name="ck_payments_status"),
        sa.CheckConstraint("provider in ('CARD','WALLET')", name="ck_payments_provider"),
        sa.UniqueConstraint("provider", "provider_order_id", name="uq_payments_provider_order"),
    )
    op.create_index("idx_payments_contest", "payments", ["contest_id"])
    op.create_index("idx_payments_status", "payments", ["status"])
    op.create_index(
        "uq_payments_contest_active", "payments", ["contest_id"], unique=True,
        postgresql_where=sa.text(_ACTIVE),
        sqlite_where=sa.text(_ACTIVE),
    )

    op.create_table(
        "payment_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("provider", sa.String(16), nullable=False),
        sa.Column("external_event_id", sa.String()),
        sa.Column("payment_id", sa.Integer()),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("raw", sa.Text(), nullable=False),
        sa.Column("signature_ok", sa.Boolean(), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("provider", "external_event_id",
                            name="uq_paymentevents_provider_external"),
    )

    op.create_table(
        "settings",
        sa.Column("key", sa.String(64), primary_key=True),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("encrypted", sa.Boolean(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("link", sa.String(512)),
        sa.Column("read", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_notifications_user", "notifications", ["user_id", "read"])


def downgrade():
    op.drop_index("idx_notifications_user", table_name="notifications")
    op.drop_table("notifications")
    op.drop_table("settings")
    op.drop_table("payment_events")
    op.drop_index("uq_payments_contest_active", table_name="payments")
    op.drop_index("idx_payments_status", table_name="payments")
    op.drop_index("idx_payments_contest", table_name="payments")
    op.drop_table("payments")
    op.drop_index("idx_contests_status", table_name="contests")
    op.drop_index("idx_contests_client", table_name="contests")
    op.drop_table("contests")
    op.drop_table("users")
