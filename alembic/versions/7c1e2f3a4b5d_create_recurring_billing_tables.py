"""Create payment sources, billing attempts and subscriptions.

Revision ID: 7c1e2f3a4b5d
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "7c1e2f3a4b5d"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    source_status = postgresql.ENUM("active", "cancelled", name="paymentsourcestatus")
    attempt_status = postgresql.ENUM(
        "pending", "approved", "declined", "error", name="billingattemptstatus"
    )
    source_status.create(op.get_bind(), checkfirst=True)
    attempt_status.create(op.get_bind(), checkfirst=True)

    source_status = postgresql.ENUM(
        "active", "cancelled", name="paymentsourcestatus", create_type=False
    )
    attempt_status = postgresql.ENUM(
        "pending",
        "approved",
        "declined",
        "error",
        name="billingattemptstatus",
        create_type=False,
    )

    bind = op.get_bind()
    inspector = sa.inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "payment_sources" not in existing_tables:
        op.create_table(
            "payment_sources",
            sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
            sa.Column("subscriber_id", sa.String(64), nullable=False),
            sa.Column("gateway_source_id", sa.String(120), nullable=False),
            sa.Column("card_brand", sa.String(40)),
            sa.Column("card_last_four", sa.String(4)),
            sa.Column("customer_email", sa.String(255)),
            sa.Column("status", source_status, nullable=False, server_default="active"),
            sa.Column("cancelled_at", sa.DateTime(timezone=True)),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        )
        op.create_index(
            "ix_payment_sources_subscriber_id", "payment_sources", ["subscriber_id"]
        )
        op.create_index(
            "uq_payment_sources_active_subscriber",
            "payment_sources",
            ["subscriber_id"],
            unique=True,
            postgresql_where=sa.text("status = 'active'"),
        )

    if "billing_attempts" not in existing_tables:
        op.create_table(
            "billing_attempts",
            sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
            sa.Column("subscriber_id", sa.String(64), nullable=False),
            sa.Column("plan_id", sa.String(40), nullable=False),
            sa.Column("amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("currency", sa.String(3), nullable=False),
            sa.Column("status", attempt_status, nullable=False, server_default="pending"),
            sa.Column("reference", sa.String(160), nullable=False),
            sa.Column("gateway_transaction_id", sa.String(120)),
            sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
            sa.Column("next_retry_at", sa.DateTime(timezone=True)),
            sa.Column("error_detail", sa.Text),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.UniqueConstraint("reference", name="uq_billing_attempts_reference"),
        )
        op.create_index(
            "ix_billing_attempts_gateway_transaction_id",
            "billing_attempts",
            ["gateway_transaction_id"],
        )
        op.create_index(
            "ix_billing_attempts_subscriber_plan",
            "billing_attempts",
            ["subscriber_id", "plan_id", "created_at"],
        )
        op.create_index(
            "ix_billing_attempts_next_retry_at", "billing_attempts", ["next_retry_at"]
        )

    if "subscriptions" not in existing_tables:
        op.create_table(
            "subscriptions",
            sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
            sa.Column("subscriber_id", sa.String(64), nullable=False, unique=True),
            sa.Column("plan_id", sa.String(40), nullable=False, server_default="free"),
            sa.Column("language", sa.String(8), nullable=False, server_default="es"),
            sa.Column("started_at", sa.DateTime(timezone=True)),
            sa.Column("next_billing_date", sa.DateTime(timezone=True)),
            sa.Column("auto_renew", sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column("cancelled_at", sa.DateTime(timezone=True)),
            sa.Column("renewal_failed_at", sa.DateTime(timezone=True)),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        )


def downgrade() -> None:
    op.drop_table("subscriptions")
    op.drop_index("ix_billing_attempts_next_retry_at", table_name="billing_attempts")
    op.drop_index("ix_billing_attempts_subscriber_plan", table_name="billing_attempts")
    op.drop_index(
        "ix_billing_attempts_gateway_transaction_id", table_name="billing_attempts"
    )
    op.drop_table("billing_attempts")
    op.drop_index("uq_payment_sources_active_subscriber", table_name="payment_sources")
    op.drop_index("ix_payment_sources_subscriber_id", table_name="payment_sources")
    op.drop_table("payment_sources")
    postgresql.ENUM(name="billingattemptstatus").drop(op.get_bind(), checkfirst=True)
    postgresql.ENUM(name="paymentsourcestatus").drop(op.get_bind(), checkfirst=True)
