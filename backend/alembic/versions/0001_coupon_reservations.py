"""coupons, reservations, redemptions and payment webhook ledger

Revision ID: 0001
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    discount_type = sa.Enum("percentage", "fixed", name="discounttype", native_enum=False)
    reservation_status = sa.Enum("held", "consumed", "expired", name="reservationstatus", native_enum=False)

    op.create_table(
        "coupons",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("code", sa.String(length=50), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=True),
        sa.Column("discount_type", discount_type, nullable=False),
        sa.Column("discount_value", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=True),
        sa.Column("usage_limit_global", sa.Integer(), nullable=True),
        sa.Column("usage_limit_per_user", sa.Integer(), nullable=True),
        sa.Column("current_usage_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("allowed_product_ids", sa.JSON(), nullable=False),
        sa.Column("allowed_emails", sa.JSON(), nullable=False),
        sa.Column("exclude_order_bumps", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index(op.f("ix_coupons_code"), "coupons", ["code"], unique=True)

    op.create_table(
        "coupon_reservations",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "coupon_id",
            sa.UUID(as_uuid=True),
            sa.ForeignKey("coupons.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("customer_email", sa.String(length=255), nullable=False),
        sa.Column("status", reservation_status, nullable=False),
        sa.Column("session_id", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(op.f("ix_coupon_reservations_coupon_id"), "coupon_reservations", ["coupon_id"], unique=False)
    op.create_index(
        "ix_coupon_reservations_status_expires",
        "coupon_reservations",
        ["status", "expires_at"],
        unique=False,
    )
    op.create_index(
        "uq_coupon_reservations_held",
        "coupon_reservations",
        ["coupon_id", "customer_email"],
        unique=True,
        postgresql_where=sa.text("status = 'held'"),
        sqlite_where=sa.text("status = 'held'"),
    )

    op.create_table(
        "coupon_redemptions",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "coupon_id",
            sa.UUID(as_uuid=True),
            sa.ForeignKey("coupons.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "reservation_id",
            sa.UUID(as_uuid=True),
            sa.ForeignKey("coupon_reservations.id", ondelete="SET NULL"),
            nullable=True,
            unique=True,
        ),
        sa.Column("customer_email", sa.String(length=255), nullable=False),
        sa.Column("discount_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("session_id", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index(op.f("ix_coupon_redemptions_coupon_id"), "coupon_redemptions", ["coupon_id"], unique=False)
    op.create_index(
        op.f("ix_coupon_redemptions_customer_email"),
        "coupon_redemptions",
        ["customer_email"],
        unique=False,
    )

    op.create_table(
        "payment_webhook_events",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("coupon_action", sa.String(length=16), nullable=True),
        sa.Column("reservation_id", sa.UUID(as_uuid=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
    )
    op.create_index(op.f("ix_payment_webhook_events_event_id"), "payment_webhook_events", ["event_id"], unique=True)
    op.create_index(
        op.f("ix_payment_webhook_events_processed_at"),
        "payment_webhook_events",
        ["processed_at"],
        unique=False,
    )
    op.create_index(
        op.f("ix_payment_webhook_events_reservation_id"),
        "payment_webhook_events",
        ["reservation_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index(op.f("ix_payment_webhook_events_reservation_id"), table_name="payment_webhook_events")
    op.drop_index(op.f("ix_payment_webhook_events_processed_at"), table_name="payment_webhook_events")
    op.drop_index(op.f("ix_payment_webhook_events_event_id"), table_name="payment_webhook_events")
    op.drop_table("payment_webhook_events")

    op.drop_index(op.f("ix_coupon_redemptions_customer_email"), table_name="coupon_redemptions")
    op.drop_index(op.f("ix_coupon_redemptions_coupon_id"), table_name="coupon_redemptions")
    op.drop_table("coupon_redemptions")

    op.drop_index("uq_coupon_reservations_held", table_name="coupon_reservations")
    op.drop_index("ix_coupon_reservations_status_expires", table_name="coupon_reservations")
    op.drop_index(op.f("ix_coupon_reservations_coupon_id"), table_name="coupon_reservations")
    op.drop_table("coupon_reservations")

    op.drop_index(op.f("ix_coupons_code"), table_name="coupons")
    op.drop_table("coupons")
